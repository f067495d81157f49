from __future__ import annotations

import os
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import httpx

from ..config import TraciaConfig
from ..errors import MissingProviderApiKeyError, UnsupportedModelError
from ..types import LLMProvider
from .anthropic import AnthropicCapability
from .base import TextGenerationCapability
from .google import GoogleCapability
from .openai import OpenAICapability

ENV_VAR_MAP: dict[LLMProvider, str] = {
    LLMProvider.OPENAI: "OPENAI_API_KEY",
    LLMProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
    LLMProvider.GOOGLE: "GOOGLE_API_KEY",
}

MODEL_PROVIDERS: dict[str, LLMProvider] = {
    # OpenAI
    "gpt-4o": LLMProvider.OPENAI,
    "gpt-4o-mini": LLMProvider.OPENAI,
    "gpt-4-turbo": LLMProvider.OPENAI,
    "gpt-4.1": LLMProvider.OPENAI,
    "gpt-4.1-mini": LLMProvider.OPENAI,
    "gpt-4.1-nano": LLMProvider.OPENAI,
    "gpt-5": LLMProvider.OPENAI,
    "gpt-5-mini": LLMProvider.OPENAI,
    "o1": LLMProvider.OPENAI,
    "o1-mini": LLMProvider.OPENAI,
    "o3": LLMProvider.OPENAI,
    "o3-mini": LLMProvider.OPENAI,
    "o4-mini": LLMProvider.OPENAI,
    # Anthropic
    "claude-opus-4-1-20250805": LLMProvider.ANTHROPIC,
    "claude-opus-4-20250514": LLMProvider.ANTHROPIC,
    "claude-sonnet-4-20250514": LLMProvider.ANTHROPIC,
    "claude-3-7-sonnet-20250219": LLMProvider.ANTHROPIC,
    "claude-3-5-sonnet-20241022": LLMProvider.ANTHROPIC,
    "claude-3-5-haiku-20241022": LLMProvider.ANTHROPIC,
    "claude-3-haiku-20240307": LLMProvider.ANTHROPIC,
    # Google
    "gemini-2.5-pro": LLMProvider.GOOGLE,
    "gemini-2.5-flash": LLMProvider.GOOGLE,
    "gemini-2.0-flash": LLMProvider.GOOGLE,
    "gemini-2.0-flash-lite": LLMProvider.GOOGLE,
    "gemini-1.5-pro": LLMProvider.GOOGLE,
    "gemini-1.5-flash": LLMProvider.GOOGLE,
}

_PREFIXES: list[tuple[tuple[str, ...], LLMProvider]] = [
    (("gpt-", "o1", "o3", "o4"), LLMProvider.OPENAI),
    (("claude-",), LLMProvider.ANTHROPIC),
    (("gemini-",), LLMProvider.GOOGLE),
]


def resolve_provider(model: str, explicit: LLMProvider | str | None = None) -> LLMProvider:
    """Explicit override, then the static model table, then name prefixes."""
    if explicit:
        try:
            return LLMProvider(explicit)
        except ValueError as e:
            raise UnsupportedModelError(f"Unsupported provider: {explicit}") from e

    known = MODEL_PROVIDERS.get(model)
    if known is not None:
        return known

    for prefixes, provider in _PREFIXES:
        if model.startswith(prefixes):
            return provider

    raise UnsupportedModelError(
        f"Cannot determine provider for model: {model}. Specify provider explicitly."
    )


def resolve_api_key(provider: LLMProvider, override: str | None = None) -> str:
    if override:
        return override
    env_var = ENV_VAR_MAP[provider]
    key = os.environ.get(env_var)
    if not key:
        raise MissingProviderApiKeyError(
            f"Missing API key for {provider.value}. Set the {env_var} environment variable "
            "or provide provider_api_key in options."
        )
    return key


CapabilityFactory = Callable[[], TextGenerationCapability]


class ProviderRegistry:
    """
    One capability per provider family, built on first use.

    Injected capabilities take precedence over the built-in HTTP ones.
    """

    def __init__(
        self,
        cfg: TraciaConfig,
        *,
        capabilities: Mapping[LLMProvider, TextGenerationCapability] | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
    ):
        self._instances: dict[LLMProvider, TextGenerationCapability] = dict(capabilities or {})
        self._injected = set(self._instances)

        common: dict[str, Any] = {
            "client": http_client,
            "max_attempts": cfg.provider_max_attempts,
            "backoff_initial_seconds": cfg.provider_backoff_initial_seconds,
            "backoff_max_seconds": cfg.provider_backoff_max_seconds,
            "sleeper": sleeper,
        }
        self._factories: dict[LLMProvider, CapabilityFactory] = {
            LLMProvider.OPENAI: lambda: OpenAICapability(base_url=cfg.openai_base_url, **common),
            LLMProvider.ANTHROPIC: lambda: AnthropicCapability(base_url=cfg.anthropic_base_url, **common),
            LLMProvider.GOOGLE: lambda: GoogleCapability(base_url=cfg.google_base_url, **common),
        }

    def get(self, provider: LLMProvider) -> TextGenerationCapability:
        capability = self._instances.get(provider)
        if capability is not None:
            return capability
        factory = self._factories.get(provider)
        if factory is None:
            raise UnsupportedModelError(f"No capability registered for provider: {provider.value}")
        capability = self._instances[provider] = factory()
        return capability

    async def close(self) -> None:
        for provider, capability in list(self._instances.items()):
            if provider not in self._injected:
                await capability.close()
        self._instances = {p: c for p, c in self._instances.items() if p in self._injected}
