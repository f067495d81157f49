from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Callable

import structlog

from .engine import CompletionResult, CompletionStream, assistant_message
from .errors import TraciaError
from .types import LLMProvider, StreamResult, TokenUsage

log = structlog.get_logger()

# (result, error, latency_ms, partial_text) -> None
SpanRecorder = Callable[[CompletionResult | None, TraciaError | None, int, str], None]


class LocalStream:
    """
    Streaming response from `Tracia.run_local_stream`.

    `span_id` and `trace_id` are known up front. Iterate the stream (once) to
    receive text chunks; `await stream.result()` resolves only after iteration
    has finished or the stream was aborted. `abort()` stops the stream and
    resolves the result with `aborted=True` instead of raising.
    """

    def __init__(
        self,
        completion: CompletionStream,
        *,
        model: str,
        provider: LLMProvider,
        span_id: str | None,
        trace_id: str | None,
        record_span: SpanRecorder | None = None,
    ):
        self.span_id = span_id
        self.trace_id = trace_id
        self.model = model
        self.provider = provider
        self._completion = completion
        self._record_span = record_span
        self._started_at = time.monotonic()
        self._settled = asyncio.Event()
        self._result: StreamResult | None = None
        self._error: TraciaError | None = None
        self._callbacks: list[Callable[[StreamResult], None]] = []
        self._iterator = self._iterate()

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterator

    def abort(self) -> None:
        self._completion.abort()

    async def result(self) -> StreamResult:
        await self._settled.wait()
        if self._result is None:
            raise self._error or TraciaError("Stream ended without a result")
        return self._result

    def add_done_callback(self, cb: Callable[[StreamResult], None]) -> None:
        """Call `cb(result)` once the stream resolves. Not called when it fails."""
        if self._settled.is_set():
            if self._result is not None:
                cb(self._result)
            return
        self._callbacks.append(cb)

    async def _iterate(self) -> AsyncIterator[str]:
        chunks = self._completion.chunks
        try:
            async for chunk in chunks:
                yield chunk
        finally:
            aclose = getattr(chunks, "aclose", None)
            if callable(aclose):
                await aclose()
            self._finish()

    def _finish(self) -> None:
        if self._settled.is_set():
            return
        latency_ms = int((time.monotonic() - self._started_at) * 1000)
        completion, error = self._completion.outcome()
        partial = self._completion.collected_text

        if self._record_span is not None:
            self._record_span(completion, error, latency_ms, partial)

        if error is not None or completion is None:
            self._error = error or TraciaError("Stream ended without a result")
            self._settled.set()
            return

        self._result = StreamResult(
            text=completion.text,
            span_id=self.span_id,
            trace_id=self.trace_id,
            latency_ms=latency_ms,
            usage=completion.usage if not completion.aborted else TokenUsage(),
            provider=self.provider,
            model=self.model,
            tool_calls=completion.tool_calls,
            finish_reason=completion.finish_reason,
            message=assistant_message(completion.text, completion.tool_calls),
            aborted=completion.aborted,
        )
        self._settled.set()
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb(self._result)
        log.debug(
            "stream_settled",
            provider=self.provider.value,
            model=self.model,
            aborted=completion.aborted,
            latency_ms=latency_ms,
        )
