from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, MutableMapping
from typing import Any, TypeAlias, cast

import structlog

# Exact (lower-cased) keys whose values are never logged.
_SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "x-api-key",
        "x-goog-api-key",
        "apikey",
        "credential",
    }
)
# Substrings that mark a key as sensitive (api_key, provider_api_key, access_token, ...).
_SENSITIVE_FRAGMENTS = ("api_key", "token", "secret", "password")

_REDACTED = "[REDACTED]"

# Credential shapes scrubbed from provider error text and log strings alike.
_CREDENTIAL_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(sk-|tr_|key-|api[_-]?key[=:\s]+)[A-Za-z0-9_-]{10,}\b", re.IGNORECASE), _REDACTED),
    (re.compile(r"Bearer\s+[A-Za-z0-9_.-]+", re.IGNORECASE), f"Bearer {_REDACTED}"),
    (re.compile(r"Basic\s+[A-Za-z0-9+/=]{20,}", re.IGNORECASE), f"Basic {_REDACTED}"),
    (re.compile(r"(authorization[=:\s]+)[^\s,}]+", re.IGNORECASE), rf"\1{_REDACTED}"),
]

ProcessorReturn: TypeAlias = Mapping[str, Any] | str | bytes | bytearray | tuple[Any, ...]
Processor: TypeAlias = Callable[[Any, str, MutableMapping[str, Any]], ProcessorReturn]


def sanitize_error_message(message: str) -> str:
    """Strip API keys and auth header values from an error message."""
    out = message
    for pattern, replacement in _CREDENTIAL_PATTERNS:
        out = pattern.sub(replacement, out)
    return out


def _is_sensitive_key(key: object) -> bool:
    name = str(key).lower()
    return name in _SENSITIVE_KEYS or any(fragment in name for fragment in _SENSITIVE_FRAGMENTS)


class _Redactor:
    """Masks known secret values, credential-shaped strings and sensitive keys in an event."""

    def __init__(self, secrets: Iterable[str]):
        self._secrets = [s for s in secrets if isinstance(s, str) and s]

    def text(self, value: str) -> str:
        for secret in self._secrets:
            value = value.replace(secret, _REDACTED)
        return sanitize_error_message(value)

    def value(self, obj: Any) -> Any:
        if isinstance(obj, str):
            return self.text(obj)
        if isinstance(obj, Mapping):
            return {k: _REDACTED if _is_sensitive_key(k) else self.value(v) for k, v in obj.items()}
        if isinstance(obj, (list, tuple)):
            return type(obj)(self.value(v) for v in obj)
        return obj

    def __call__(self, _logger: Any, _method_name: str, event_dict: MutableMapping[str, Any]) -> ProcessorReturn:
        return cast(dict[str, Any], self.value(event_dict))


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: Iterable[str] | None = None) -> None:
    """
    Route structlog through stdlib logging at `level`.

    `fmt` is "json" or anything else for console output. Values in `secrets`
    (the Tracia API key, typically) are masked wherever they appear.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level)

    renderer = structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer()
    processors: list[Processor] = [
        cast(Processor, structlog.contextvars.merge_contextvars),
        cast(Processor, structlog.processors.add_log_level),
        cast(Processor, structlog.processors.TimeStamper(fmt="iso")),
        _Redactor(secrets or ()),
        cast(Processor, renderer),
    ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=True,
    )
