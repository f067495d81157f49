from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .cancellation import CancellationToken


class _WireModel(BaseModel):
    """Snake-case in Python, camelCase on the wire; both accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class LLMProvider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class SpanStatus(str, Enum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


MessageRole = Literal["system", "developer", "user", "assistant", "tool"]
FinishReason = Literal["stop", "tool_calls", "max_tokens"]


class TextPart(_WireModel):
    type: Literal["text"] = "text"
    text: str


class ToolCallPart(_WireModel):
    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


ContentPart = Annotated[Union[TextPart, ToolCallPart], Field(discriminator="type")]


class Message(_WireModel):
    role: MessageRole
    content: Union[str, list[ContentPart]]
    # Required when role == "tool".
    tool_call_id: str | None = None
    tool_name: str | None = None

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(p.text for p in self.content if isinstance(p, TextPart))


class ToolDefinition(_WireModel):
    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})


class ToolCall(_WireModel):
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class NamedToolChoice(_WireModel):
    tool: str


ToolChoice = Union[Literal["auto", "none", "required"], NamedToolChoice]


class TokenUsage(_WireModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class RunLocalInput(_WireModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        extra="forbid",
    )

    model: str
    messages: list[Message]
    provider: LLMProvider | None = None

    temperature: float | None = None
    max_output_tokens: int | None = None
    top_p: float | None = None
    stop_sequences: list[str] | None = None
    # Seconds.
    timeout: float | None = None
    custom_options: dict[str, dict[str, Any]] | None = None

    variables: dict[str, str] | None = None
    provider_api_key: str | None = None

    tags: list[str] | None = None
    user_id: str | None = None
    session_id: str | None = None
    send_trace: bool = True
    span_id: str | None = None
    trace_id: str | None = None
    parent_span_id: str | None = None

    tools: list[ToolDefinition] | None = None
    tool_choice: ToolChoice | None = None

    cancel_token: CancellationToken | None = Field(default=None, exclude=True)


class RunLocalResult(_WireModel):
    text: str
    span_id: str | None
    trace_id: str | None
    latency_ms: int
    usage: TokenUsage
    cost: float | None = None
    provider: LLMProvider
    model: str
    tool_calls: list[ToolCall] = Field(default_factory=list)
    finish_reason: FinishReason = "stop"
    message: Message


class StreamResult(RunLocalResult):
    aborted: bool = False


class SpanInput(_WireModel):
    messages: list[Message]


class CreateSpanPayload(_WireModel):
    """The full record of one model invocation, as sent to the span endpoint."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    span_id: str
    trace_id: str | None = None
    parent_span_id: str | None = None
    model: str
    provider: LLMProvider
    input: SpanInput
    variables: dict[str, str] | None = None
    output: str | None = None
    status: SpanStatus
    error: str | None = None
    latency_ms: int
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    tags: list[str] | None = None
    user_id: str | None = None
    session_id: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    top_p: float | None = None
    tools: list[ToolDefinition] | None = None
    tool_calls: list[ToolCall] | None = None


class CreateSpanResult(_WireModel):
    span_id: str
    cost: float | None = None


class Span(_WireModel):
    id: str
    span_id: str
    trace_id: str
    parent_span_id: str | None = None
    prompt_slug: str | None = None
    prompt_version: int | None = None
    model: str
    provider: str
    input: SpanInput
    variables: dict[str, str] | None = None
    output: str | None = None
    status: SpanStatus
    error: str | None = None
    latency_ms: int
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float | None = None
    tags: list[str] = Field(default_factory=list)
    user_id: str | None = None
    session_id: str | None = None
    created_at: datetime


class SpanListItem(_WireModel):
    id: str
    span_id: str
    trace_id: str
    parent_span_id: str | None = None
    prompt_slug: str | None = None
    model: str
    status: SpanStatus
    latency_ms: int
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost: float | None = None
    created_at: datetime


class ListSpansResult(_WireModel):
    spans: list[SpanListItem]
    next_cursor: str | None = None


class EvaluateResult(_WireModel):
    id: str
    evaluator_key: str
    evaluator_name: str
    value: float
    source: str
    note: str | None = None
    created_at: datetime
