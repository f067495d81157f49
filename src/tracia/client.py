from __future__ import annotations

import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from . import engine
from .config import TraciaConfig
from .engine import CompletionRequest, CompletionResult, assistant_message
from .errors import InvalidRequestError, TraciaError
from .http_client import HttpClient
from .ids import generate_span_id, generate_trace_id, is_valid_span_id, is_valid_trace_id
from .logging import configure_logging
from .messages import interpolate_messages
from .metrics import provider_request_latency_seconds, provider_requests_total
from .persistence import SpanErrorCallback, SpanPersistenceManager
from .providers import ProviderRegistry, TextGenerationCapability, resolve_api_key, resolve_provider
from .session import TraciaSession
from .spans import Spans
from .streaming import LocalStream
from .types import (
    CreateSpanPayload,
    LLMProvider,
    Message,
    RunLocalInput,
    RunLocalResult,
    SpanInput,
    SpanStatus,
    TokenUsage,
    ToolCall,
)
from .validation import SPAN_ID_FORMAT, TRACE_ID_FORMAT, parse_run_input, validate_run_input

log = structlog.get_logger()


@dataclass(frozen=True)
class _PreparedCall:
    params: RunLocalInput
    messages: list[Message]
    provider: LLMProvider
    capability: TextGenerationCapability
    api_key: str
    span_id: str | None
    trace_id: str | None
    parent_span_id: str | None


class Tracia:
    """
    Tracia client.

    `run_local` / `run_local_stream` call a model provider directly and record
    a span for every call in the background. Span writes never block or fail
    the call; use `flush()` before shutdown and `on_span_error` to observe
    write failures.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        config: TraciaConfig | None = None,
        on_span_error: SpanErrorCallback | None = None,
        http_client: httpx.AsyncClient | None = None,
        capabilities: Mapping[LLMProvider, TextGenerationCapability] | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
    ):
        self.cfg = config or TraciaConfig()
        api_key = api_key or self.cfg.api_key
        if not api_key:
            raise InvalidRequestError("api_key is required")

        if self.cfg.configure_logging:
            configure_logging(level=self.cfg.log_level, fmt=self.cfg.log_format, secrets=[api_key])

        self._http = HttpClient(
            api_key=api_key,
            base_url=self.cfg.base_url,
            timeout_seconds=self.cfg.request_timeout_seconds,
            client=http_client,
        )
        self._pending = SpanPersistenceManager(
            self._write_span,
            on_error=on_span_error,
            max_pending=self.cfg.max_pending_spans,
            retry_attempts=self.cfg.span_retry_attempts,
            retry_delay_seconds=self.cfg.span_retry_delay_seconds,
            sleeper=sleeper,
        )
        self.spans = Spans(self._http, pending=self._pending)
        self._providers = ProviderRegistry(
            self.cfg, capabilities=capabilities, http_client=http_client, sleeper=sleeper
        )

    async def __aenter__(self) -> Tracia:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.flush()
        await self._providers.close()
        await self._http.close()

    async def flush(self) -> None:
        """Wait for span writes pending at the time of the call."""
        await self._pending.flush()

    def create_session(self, trace_id: str | None = None, parent_span_id: str | None = None) -> TraciaSession:
        if trace_id and not is_valid_trace_id(trace_id):
            raise InvalidRequestError(TRACE_ID_FORMAT)
        if parent_span_id and not is_valid_span_id(parent_span_id):
            raise InvalidRequestError(f"Invalid parent span ID. {SPAN_ID_FORMAT}")
        return TraciaSession(self, trace_id=trace_id, parent_span_id=parent_span_id)

    async def run_local(self, input: RunLocalInput | None = None, /, **options: Any) -> RunLocalResult:
        """
        Call a model and return its complete response.

        Options mirror `RunLocalInput`. Raises `InvalidRequestError`,
        `UnsupportedModelError` or `MissingProviderApiKeyError` before any
        network call; provider failures raise `ProviderError` (or
        `RequestTimeoutError` / `AbortedError`) after the failed span has been
        scheduled.
        """
        call = self._prepare(parse_run_input(input, options))
        params = call.params

        started = time.monotonic()
        try:
            result = await engine.complete(call.capability, self._completion_request(call))
        except TraciaError as error:
            latency_ms = int((time.monotonic() - started) * 1000)
            self._observe(call.provider, "complete", False, latency_ms)
            if call.span_id:
                self._schedule_span(
                    call,
                    call.span_id,
                    latency_ms=latency_ms,
                    output=None,
                    error=error.message,
                    usage=TokenUsage(),
                    tool_calls=None,
                )
            log.warning(
                "run_local_failed",
                provider=call.provider.value,
                model=params.model,
                code=error.code.value,
                span_id=call.span_id,
            )
            raise
        latency_ms = int((time.monotonic() - started) * 1000)

        self._observe(call.provider, "complete", True, latency_ms)
        if call.span_id:
            self._schedule_span(
                call,
                call.span_id,
                latency_ms=latency_ms,
                output=result.text,
                error=None,
                usage=result.usage,
                tool_calls=result.tool_calls,
            )

        return RunLocalResult(
            text=result.text,
            span_id=call.span_id,
            trace_id=call.trace_id,
            latency_ms=latency_ms,
            usage=result.usage,
            provider=call.provider,
            model=params.model,
            tool_calls=result.tool_calls,
            finish_reason=result.finish_reason,
            message=assistant_message(result.text, result.tool_calls),
        )

    def run_local_stream(self, input: RunLocalInput | None = None, /, **options: Any) -> LocalStream:
        """
        Call a model and stream its response.

        Validation, provider resolution and credential errors are raised here,
        before the stream is returned. Iterate the returned `LocalStream`, then
        `await stream.result()`.
        """
        call = self._prepare(parse_run_input(input, options))
        completion = engine.stream(call.capability, self._completion_request(call))

        def _record(result: CompletionResult | None, error: TraciaError | None, latency_ms: int, partial: str) -> None:
            completed = result if result is not None and not result.aborted else None
            self._observe(call.provider, "stream", completed is not None, latency_ms)
            if not call.span_id:
                return
            if completed is not None:
                self._schedule_span(
                    call,
                    call.span_id,
                    latency_ms=latency_ms,
                    output=completed.text,
                    error=None,
                    usage=completed.usage,
                    tool_calls=completed.tool_calls,
                )
                return
            self._schedule_span(
                call,
                call.span_id,
                latency_ms=latency_ms,
                output=partial or None,
                error=error.message if error is not None else "Stream aborted",
                usage=TokenUsage(),
                tool_calls=None,
            )

        return LocalStream(
            completion,
            model=call.params.model,
            provider=call.provider,
            span_id=call.span_id,
            trace_id=call.trace_id,
            record_span=_record,
        )

    def _prepare(self, params: RunLocalInput) -> _PreparedCall:
        validate_run_input(params)

        span_id = trace_id = parent_span_id = None
        if params.send_trace:
            span_id = params.span_id or generate_span_id()
            trace_id = params.trace_id or generate_trace_id()
            parent_span_id = params.parent_span_id

        messages = interpolate_messages(params.messages, params.variables)
        provider = resolve_provider(params.model, params.provider)
        capability = self._providers.get(provider)
        api_key = resolve_api_key(provider, params.provider_api_key)

        return _PreparedCall(
            params=params,
            messages=messages,
            provider=provider,
            capability=capability,
            api_key=api_key,
            span_id=span_id,
            trace_id=trace_id,
            parent_span_id=parent_span_id,
        )

    @staticmethod
    def _completion_request(call: _PreparedCall) -> CompletionRequest:
        params = call.params
        return CompletionRequest(
            model=params.model,
            messages=call.messages,
            api_key=call.api_key,
            provider=call.provider,
            temperature=params.temperature,
            top_p=params.top_p,
            stop_sequences=params.stop_sequences,
            max_output_tokens=params.max_output_tokens,
            tools=params.tools,
            tool_choice=params.tool_choice,
            timeout=params.timeout,
            custom_options=params.custom_options,
            cancel_token=params.cancel_token,
        )

    def _schedule_span(
        self,
        call: _PreparedCall,
        span_id: str,
        *,
        latency_ms: int,
        output: str | None,
        error: str | None,
        usage: TokenUsage,
        tool_calls: list[ToolCall] | None,
    ) -> None:
        params = call.params
        payload = CreateSpanPayload(
            span_id=span_id,
            trace_id=call.trace_id,
            parent_span_id=call.parent_span_id,
            model=params.model,
            provider=call.provider,
            input=SpanInput(messages=call.messages),
            variables=params.variables,
            output=output,
            status=SpanStatus.ERROR if error is not None else SpanStatus.SUCCESS,
            error=error,
            latency_ms=latency_ms,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            tags=params.tags,
            user_id=params.user_id,
            session_id=params.session_id,
            temperature=params.temperature,
            max_output_tokens=params.max_output_tokens,
            top_p=params.top_p,
            tools=params.tools,
            tool_calls=tool_calls or None,
        )
        self._pending.schedule(span_id, payload)

    async def _write_span(self, payload: CreateSpanPayload) -> None:
        await self.spans.create(payload)

    @staticmethod
    def _observe(provider: LLMProvider, mode: str, ok: bool, latency_ms: int) -> None:
        provider_requests_total.labels(provider=provider.value, mode=mode, status="success" if ok else "error").inc()
        provider_request_latency_seconds.labels(provider=provider.value, mode=mode).observe(latency_ms / 1000)
