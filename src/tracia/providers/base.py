from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from ..cancellation import CancellationToken
from ..types import LLMProvider

# Provider-neutral message shape handed to capabilities:
#   {"role": "system" | "user", "content": str}
#   {"role": "assistant", "content": str | [{"type": "text", "text"} | {"type": "tool-call", "toolCallId", "toolName", "input"}]}
#   {"role": "tool", "content": [{"type": "tool-result", "toolCallId", "toolName", "output": {"type": "text", "value"}}]}
ModelMessage = dict[str, Any]


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float | None = None
    top_p: float | None = None
    max_output_tokens: int | None = None
    stop_sequences: list[str] | None = None
    # [{"name", "description", "parameters", "strict"}]
    tools: list[dict[str, Any]] | None = None
    # "auto" | "none" | "required" | {"type": "tool", "toolName": str}
    tool_choice: str | dict[str, Any] | None = None
    provider_options: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class GenerationResult:
    """Raw capability output. Numeric usage fields may be missing."""

    text: str
    usage: Mapping[str, int | None] | None = None
    # [{"toolCallId", "toolName", "input"}]
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    # "stop" | "length" | "tool-calls" | "content-filter" | "error" | "other"
    finish_reason: str | None = None


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class StreamError:
    error: BaseException


@dataclass(frozen=True)
class StreamFinish:
    result: GenerationResult


StreamEvent = Union[TextDelta, StreamError, StreamFinish]


class TextGenerationCapability(Protocol):
    provider: LLMProvider

    async def complete(
        self,
        *,
        model: str,
        messages: list[ModelMessage],
        api_key: str,
        config: GenerationConfig,
        timeout: float | None = None,
    ) -> GenerationResult: ...

    def stream(
        self,
        *,
        model: str,
        messages: list[ModelMessage],
        api_key: str,
        config: GenerationConfig,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]: ...

    async def close(self) -> None: ...
