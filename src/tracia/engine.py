from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog

from .cancellation import CancellationToken
from .errors import AbortedError, ProviderError, RequestTimeoutError, TraciaError
from .logging import sanitize_error_message
from .providers.base import (
    GenerationConfig,
    GenerationResult,
    ModelMessage,
    StreamError,
    StreamFinish,
    TextDelta,
    TextGenerationCapability,
)
from .types import (
    FinishReason,
    LLMProvider,
    Message,
    NamedToolChoice,
    TextPart,
    TokenUsage,
    ToolCall,
    ToolCallPart,
    ToolChoice,
    ToolDefinition,
)

log = structlog.get_logger()

T = TypeVar("T")

# Lenient tool schemas by default: strict mode rejects open-ended object schemas.
DEFAULT_PROVIDER_OPTIONS: dict[str, dict[str, Any]] = {"openai": {"strictJsonSchema": False}}


@dataclass(frozen=True)
class CompletionRequest:
    model: str
    messages: list[Message]
    api_key: str
    provider: LLMProvider
    temperature: float | None = None
    top_p: float | None = None
    stop_sequences: list[str] | None = None
    max_output_tokens: int | None = None
    tools: list[ToolDefinition] | None = None
    tool_choice: ToolChoice | None = None
    # Seconds.
    timeout: float | None = None
    custom_options: Mapping[str, Mapping[str, Any]] | None = None
    cancel_token: CancellationToken | None = None


@dataclass(frozen=True)
class CompletionResult:
    text: str
    usage: TokenUsage
    provider: LLMProvider
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: FinishReason = "stop"
    aborted: bool = False


def convert_messages(messages: list[Message]) -> list[ModelMessage]:
    """Canonical messages -> the provider-neutral shape capabilities consume."""
    out: list[ModelMessage] = []
    for msg in messages:
        if msg.role == "tool":
            out.append(
                {
                    "role": "tool",
                    "content": [
                        {
                            "type": "tool-result",
                            "toolCallId": msg.tool_call_id,
                            "toolName": msg.tool_name or msg.tool_call_id,
                            "output": {"type": "text", "value": msg.content},
                        }
                    ],
                }
            )
            continue

        if msg.role == "assistant" and isinstance(msg.content, list):
            parts: list[dict[str, Any]] = []
            for part in msg.content:
                if isinstance(part, ToolCallPart):
                    parts.append(
                        {"type": "tool-call", "toolCallId": part.id, "toolName": part.name, "input": part.arguments}
                    )
                else:
                    parts.append({"type": "text", "text": part.text})
            out.append({"role": "assistant", "content": parts if parts else ""})
            continue

        role = "system" if msg.role == "developer" else msg.role
        out.append({"role": role, "content": msg.text})
    return out


def convert_tools(tools: list[ToolDefinition] | None) -> list[dict[str, Any]] | None:
    if not tools:
        return None
    return [
        {"name": t.name, "description": t.description, "parameters": t.parameters, "strict": False}
        for t in tools
    ]


def convert_tool_choice(choice: ToolChoice | None) -> str | dict[str, Any] | None:
    if choice is None:
        return None
    if isinstance(choice, NamedToolChoice):
        return {"type": "tool", "toolName": choice.tool}
    return choice


def merge_provider_options(
    custom: Mapping[str, Mapping[str, Any]] | None,
) -> dict[str, dict[str, Any]]:
    merged = {name: dict(opts) for name, opts in DEFAULT_PROVIDER_OPTIONS.items()}
    for name, opts in (custom or {}).items():
        merged.setdefault(str(getattr(name, "value", name)), {}).update(opts)
    return merged


def parse_finish_reason(raw: str | None) -> FinishReason:
    if raw == "tool-calls":
        return "tool_calls"
    if raw == "length":
        return "max_tokens"
    return "stop"


def extract_tool_calls(raw: list[dict[str, Any]] | None) -> list[ToolCall]:
    if not raw:
        return []
    return [
        ToolCall(id=tc["toolCallId"], name=tc["toolName"], arguments=tc.get("input") or {})
        for tc in raw
        if tc.get("toolCallId") and tc.get("toolName")
    ]


def normalize_usage(raw: Mapping[str, int | None] | None) -> TokenUsage:
    raw = raw or {}
    return TokenUsage(
        input_tokens=raw.get("inputTokens") or 0,
        output_tokens=raw.get("outputTokens") or 0,
        total_tokens=raw.get("totalTokens") or 0,
    )


def assistant_message(text: str, tool_calls: list[ToolCall]) -> Message:
    """The assistant turn to append when continuing the conversation."""
    if not tool_calls:
        return Message(role="assistant", content=text)
    parts: list[TextPart | ToolCallPart] = []
    if text:
        parts.append(TextPart(text=text))
    parts.extend(ToolCallPart(id=tc.id, name=tc.name, arguments=tc.arguments) for tc in tool_calls)
    return Message(role="assistant", content=parts)


def _generation_config(request: CompletionRequest) -> GenerationConfig:
    return GenerationConfig(
        temperature=request.temperature,
        top_p=request.top_p,
        max_output_tokens=request.max_output_tokens,
        stop_sequences=request.stop_sequences,
        tools=convert_tools(request.tools),
        tool_choice=convert_tool_choice(request.tool_choice),
        provider_options=merge_provider_options(request.custom_options),
    )


def _provider_error(error: BaseException, provider: LLMProvider) -> TraciaError:
    if isinstance(error, TraciaError):
        return error
    wrapped = ProviderError(f"{provider.value} error: {sanitize_error_message(str(error))}")
    wrapped.__cause__ = error
    return wrapped


async def _run_with_deadline(
    call: Awaitable[T],
    *,
    timeout: float | None,
    cancel_token: CancellationToken | None,
) -> T:
    task = asyncio.ensure_future(call)
    cancel_wait = asyncio.ensure_future(cancel_token.wait()) if cancel_token is not None else None
    try:
        waiters: set[asyncio.Future[Any]] = {task}
        if cancel_wait is not None:
            waiters.add(cancel_wait)
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_wait is not None:
            cancel_wait.cancel()
        if not task.done():
            task.cancel()
            await asyncio.wait({task})

    if task in done:
        return task.result()
    if cancel_token is not None and cancel_token.cancelled:
        raise AbortedError("Request aborted")
    raise RequestTimeoutError(f"Request timed out after {timeout}s")


async def complete(capability: TextGenerationCapability, request: CompletionRequest) -> CompletionResult:
    """Run one non-streaming completion and normalize the result."""
    provider = request.provider
    call = capability.complete(
        model=request.model,
        messages=convert_messages(request.messages),
        api_key=request.api_key,
        config=_generation_config(request),
        timeout=request.timeout,
    )
    try:
        if request.timeout is None and request.cancel_token is None:
            raw = await call
        else:
            raw = await _run_with_deadline(call, timeout=request.timeout, cancel_token=request.cancel_token)
    except Exception as e:
        error = _provider_error(e, provider)
        if error is e:
            raise
        raise error from e

    return CompletionResult(
        text=raw.text or "",
        usage=normalize_usage(raw.usage),
        provider=provider,
        tool_calls=extract_tool_calls(raw.tool_calls),
        finish_reason=parse_finish_reason(raw.finish_reason),
    )


class _StreamAborted(Exception):
    pass


_DONE = object()


async def _anext(it: AsyncIterator[Any]) -> Any:
    try:
        return await it.__anext__()
    except StopAsyncIteration:
        return _DONE


async def _next_event(events: AsyncIterator[Any], token: CancellationToken) -> Any:
    """Next capability event, or `_StreamAborted` as soon as the token fires."""
    if token.cancelled:
        raise _StreamAborted
    step = asyncio.ensure_future(_anext(events))
    stop = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({step, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not step.done():
            step.cancel()
            await asyncio.wait({step})
    if token.cancelled:
        raise _StreamAborted
    return step.result()


class CompletionStream:
    """
    Incremental completion with two outputs: `chunks`, a single-use async
    iterator of text fragments, and `result()`, which settles only once
    `chunks` has been drained (or cancelled).

    The concatenation of all yielded fragments equals the settled result's
    `text`. Cancellation resolves the result with `aborted=True` and the text
    accumulated so far; any other failure rejects it with a `ProviderError`,
    which the iterator raises as well.
    """

    def __init__(self, capability: TextGenerationCapability, request: CompletionRequest):
        self._capability = capability
        self._request = request
        self._abort_token = CancellationToken()
        self._settled = asyncio.Event()
        self._result: CompletionResult | None = None
        self._error: TraciaError | None = None
        self._fragments: list[str] = []
        self.chunks: AsyncIterator[str] = self._generate()

    @property
    def settled(self) -> bool:
        return self._settled.is_set()

    @property
    def collected_text(self) -> str:
        return "".join(self._fragments)

    def abort(self) -> None:
        self._abort_token.cancel("aborted")

    async def result(self) -> CompletionResult:
        await self._settled.wait()
        if self._result is None:
            raise self._error or ProviderError(f"{self._request.provider.value} error: No output generated.")
        return self._result

    def outcome(self) -> tuple[CompletionResult | None, TraciaError | None]:
        """Settled `(result, error)`; both are None while the stream is open."""
        return self._result, self._error

    def _resolve(self, result: CompletionResult) -> None:
        if self._settled.is_set():
            return
        self._result = result
        self._settled.set()

    def _reject(self, error: TraciaError) -> None:
        if self._settled.is_set():
            return
        self._error = error
        self._settled.set()

    def _resolve_aborted(self) -> None:
        self._resolve(
            CompletionResult(
                text=self.collected_text,
                usage=TokenUsage(),
                provider=self._request.provider,
                aborted=True,
            )
        )

    async def _generate(self) -> AsyncIterator[str]:
        request = self._request
        timeout_token = CancellationToken.with_timeout(request.timeout) if request.timeout else None
        token = CancellationToken.any_of(request.cancel_token, self._abort_token, timeout_token)
        events: AsyncIterator[Any] | None = None
        captured: BaseException | None = None
        finished: GenerationResult | None = None
        try:
            events = self._capability.stream(
                model=request.model,
                messages=convert_messages(request.messages),
                api_key=request.api_key,
                config=_generation_config(request),
                timeout=request.timeout,
                cancel_token=token,
            )
            while True:
                event = await _next_event(events, token)
                if event is _DONE:
                    break
                if isinstance(event, StreamError):
                    # Keep the first reported error; later failures are usually its fallout.
                    captured = event.error
                    break
                if isinstance(event, TextDelta):
                    if event.text:
                        self._fragments.append(event.text)
                        yield event.text
                elif isinstance(event, StreamFinish):
                    finished = event.result

            if token.cancelled:
                raise _StreamAborted
            if captured is not None:
                raise captured
            if finished is None:
                raise ProviderError(f"{request.provider.value} error: No output generated.")

            self._resolve(
                CompletionResult(
                    text=self.collected_text,
                    usage=normalize_usage(finished.usage),
                    provider=request.provider,
                    tool_calls=extract_tool_calls(finished.tool_calls),
                    finish_reason=parse_finish_reason(finished.finish_reason),
                )
            )
        except _StreamAborted:
            log.debug("stream_aborted", provider=request.provider.value, reason=token.reason)
            self._resolve_aborted()
        except Exception as e:
            if token.cancelled:
                self._resolve_aborted()
                return
            error = _provider_error(captured if captured is not None else e, request.provider)
            self._reject(error)
            if error is e:
                raise
            raise error from e
        finally:
            token.dispose()
            if timeout_token is not None:
                timeout_token.dispose()
            aclose = getattr(events, "aclose", None)
            if callable(aclose):
                await aclose()
            if not self._settled.is_set():
                # The consumer stopped iterating early.
                self._resolve_aborted()


def stream(capability: TextGenerationCapability, request: CompletionRequest) -> CompletionStream:
    return CompletionStream(capability, request)
