from __future__ import annotations

import os

from pydantic import BaseModel, Field

DEFAULT_BASE_URL = "https://app.tracia.io"


class TraciaConfig(BaseModel):
    # Tracia API
    api_key: str | None = Field(default_factory=lambda: os.getenv("TRACIA_API_KEY"))
    base_url: str = Field(default_factory=lambda: os.getenv("TRACIA_BASE_URL", DEFAULT_BASE_URL))
    request_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("TRACIA_TIMEOUT_SECONDS", "30"))
    )

    # Background span writes
    max_pending_spans: int = Field(default_factory=lambda: int(os.getenv("TRACIA_MAX_PENDING_SPANS", "1000")))
    span_retry_attempts: int = Field(default_factory=lambda: int(os.getenv("TRACIA_SPAN_RETRY_ATTEMPTS", "2")))
    span_retry_delay_seconds: float = Field(
        default_factory=lambda: float(os.getenv("TRACIA_SPAN_RETRY_DELAY_SECONDS", "0.5"))
    )

    # Provider HTTP behavior
    provider_max_attempts: int = Field(default_factory=lambda: int(os.getenv("PROVIDER_MAX_ATTEMPTS", "3")))
    provider_backoff_initial_seconds: float = Field(
        default_factory=lambda: float(os.getenv("PROVIDER_BACKOFF_INITIAL_SECONDS", "0.5"))
    )
    provider_backoff_max_seconds: float = Field(
        default_factory=lambda: float(os.getenv("PROVIDER_BACKOFF_MAX_SECONDS", "8.0"))
    )
    openai_base_url: str = Field(
        default_factory=lambda: os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    )
    anthropic_base_url: str = Field(
        default_factory=lambda: os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1")
    )
    google_base_url: str = Field(
        default_factory=lambda: os.getenv("GOOGLE_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
    )

    # Observability
    configure_logging: bool = Field(
        default_factory=lambda: os.getenv("TRACIA_CONFIGURE_LOGGING", "false").lower() == "true"
    )
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))
