from ._version import __version__
from .cancellation import CancellationToken
from .client import Tracia
from .config import TraciaConfig
from .errors import (
    AbortedError,
    ApiError,
    InvalidRequestError,
    MissingProviderApiKeyError,
    NetworkError,
    ProviderError,
    RequestTimeoutError,
    TraciaError,
    TraciaErrorCode,
    UnsupportedModelError,
)
from .ids import generate_span_id, generate_trace_id, is_valid_span_id, is_valid_trace_id
from .session import TraciaSession
from .streaming import LocalStream
from .types import (
    CreateSpanPayload,
    LLMProvider,
    Message,
    NamedToolChoice,
    RunLocalInput,
    RunLocalResult,
    Span,
    SpanStatus,
    StreamResult,
    TextPart,
    TokenUsage,
    ToolCall,
    ToolCallPart,
    ToolDefinition,
)

__all__ = [
    "AbortedError",
    "ApiError",
    "CancellationToken",
    "CreateSpanPayload",
    "InvalidRequestError",
    "LLMProvider",
    "LocalStream",
    "Message",
    "MissingProviderApiKeyError",
    "NamedToolChoice",
    "NetworkError",
    "ProviderError",
    "RequestTimeoutError",
    "RunLocalInput",
    "RunLocalResult",
    "Span",
    "SpanStatus",
    "StreamResult",
    "TextPart",
    "TokenUsage",
    "ToolCall",
    "ToolCallPart",
    "ToolDefinition",
    "Tracia",
    "TraciaConfig",
    "TraciaError",
    "TraciaErrorCode",
    "TraciaSession",
    "UnsupportedModelError",
    "__version__",
    "generate_span_id",
    "generate_trace_id",
    "is_valid_span_id",
    "is_valid_trace_id",
]
