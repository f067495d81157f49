from __future__ import annotations

from enum import Enum


class TraciaErrorCode(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    MISSING_PROVIDER_KEY = "MISSING_PROVIDER_KEY"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    MISSING_VARIABLES = "MISSING_VARIABLES"
    INVALID_REQUEST = "INVALID_REQUEST"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    ABORTED = "ABORTED"
    UNKNOWN = "UNKNOWN"
    MISSING_PROVIDER_API_KEY = "MISSING_PROVIDER_API_KEY"
    UNSUPPORTED_MODEL = "UNSUPPORTED_MODEL"


class TraciaError(Exception):
    """Base error for everything raised by the SDK."""

    code: TraciaErrorCode = TraciaErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        code: TraciaErrorCode | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r}, status_code={self.status_code!r})"


class InvalidRequestError(TraciaError):
    """Caller input violates a precondition. Never retried."""

    code = TraciaErrorCode.INVALID_REQUEST


class UnsupportedModelError(TraciaError):
    code = TraciaErrorCode.UNSUPPORTED_MODEL


class MissingProviderApiKeyError(TraciaError):
    code = TraciaErrorCode.MISSING_PROVIDER_API_KEY


class ProviderError(TraciaError):
    """The text-generation capability failed. Message is already scrubbed of credentials."""

    code = TraciaErrorCode.PROVIDER_ERROR


class RequestTimeoutError(TraciaError):
    code = TraciaErrorCode.TIMEOUT


class AbortedError(TraciaError):
    code = TraciaErrorCode.ABORTED


class NetworkError(TraciaError):
    code = TraciaErrorCode.NETWORK_ERROR


class ApiError(TraciaError):
    """Non-success response from the Tracia REST API."""


_API_CODES = {
    "UNAUTHORIZED": TraciaErrorCode.UNAUTHORIZED,
    "NOT_FOUND": TraciaErrorCode.NOT_FOUND,
    "CONFLICT": TraciaErrorCode.CONFLICT,
    "MISSING_PROVIDER_KEY": TraciaErrorCode.MISSING_PROVIDER_KEY,
    "PROVIDER_ERROR": TraciaErrorCode.PROVIDER_ERROR,
    "MISSING_VARIABLES": TraciaErrorCode.MISSING_VARIABLES,
    "INVALID_REQUEST": TraciaErrorCode.INVALID_REQUEST,
}


def api_error_code(value: str | None) -> TraciaErrorCode:
    if not value:
        return TraciaErrorCode.UNKNOWN
    return _API_CODES.get(value, TraciaErrorCode.UNKNOWN)
