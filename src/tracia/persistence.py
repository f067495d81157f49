from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

import structlog

from .metrics import pending_spans, span_writes_total

log = structlog.get_logger()

MAX_PENDING_SPANS = 1000
SPAN_RETRY_ATTEMPTS = 2
SPAN_RETRY_DELAY_SECONDS = 0.5

SpanWriter = Callable[[Any], Awaitable[Any]]
SpanErrorCallback = Callable[[BaseException, str], None]


class SpanPersistenceManager:
    """
    Best-effort background writer for span records.

    `schedule` never blocks and never raises for write failures: each write is
    retried with a linearly growing delay, and only after the last attempt
    fails is `on_error(error, span_id)` invoked. At most `max_pending` writes
    are tracked; admitting a new one at capacity abandons the oldest.

    `flush` waits for the writes pending when it is called. Writes scheduled
    after that point, even while it is still waiting, are not covered.
    """

    def __init__(
        self,
        writer: SpanWriter,
        *,
        on_error: SpanErrorCallback | None = None,
        max_pending: int = MAX_PENDING_SPANS,
        retry_attempts: int = SPAN_RETRY_ATTEMPTS,
        retry_delay_seconds: float = SPAN_RETRY_DELAY_SECONDS,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
    ):
        self._writer = writer
        self._on_error = on_error
        self._max_pending = max(1, max_pending)
        self._retry_attempts = max(0, retry_attempts)
        self._retry_delay_seconds = max(0.0, retry_delay_seconds)
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep
        # Insertion-ordered: the first key is the oldest write.
        self._pending: dict[str, asyncio.Task[None]] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, span_id: object) -> bool:
        return span_id in self._pending

    def schedule(self, span_id: str, payload: Any) -> None:
        if span_id in self._pending:
            self._abandon(span_id)
        while len(self._pending) >= self._max_pending:
            self._abandon(next(iter(self._pending)))

        task = asyncio.get_running_loop().create_task(self._write_with_retry(span_id, payload))
        self._pending[span_id] = task
        pending_spans.inc()
        task.add_done_callback(partial(self._discard, span_id))

    async def wait_for(self, span_id: str) -> None:
        """Wait for the in-flight write of `span_id`, if any."""
        task = self._pending.get(span_id)
        if task is not None:
            await asyncio.wait({task})

    async def flush(self) -> None:
        snapshot = list(self._pending.values())
        if snapshot:
            await asyncio.wait(snapshot)

    def _abandon(self, span_id: str) -> None:
        task = self._pending.pop(span_id)
        pending_spans.dec()
        span_writes_total.labels(outcome="evicted").inc()
        log.warning("span_write_evicted", span_id=span_id, max_pending=self._max_pending)
        task.cancel()

    def _discard(self, span_id: str, task: asyncio.Task[None]) -> None:
        if self._pending.get(span_id) is task:
            del self._pending[span_id]
            pending_spans.dec()

    async def _write_with_retry(self, span_id: str, payload: Any) -> None:
        last_error: BaseException | None = None
        for attempt in range(self._retry_attempts + 1):
            try:
                await self._writer(payload)
            except Exception as e:
                last_error = e
                log.debug("span_write_attempt_failed", span_id=span_id, attempt=attempt + 1, error=str(e))
                if attempt < self._retry_attempts:
                    span_writes_total.labels(outcome="retry").inc()
                    await self._sleep(self._retry_delay_seconds * (attempt + 1))
                continue
            span_writes_total.labels(outcome="success").inc()
            return

        span_writes_total.labels(outcome="failed").inc()
        log.warning("span_write_failed", span_id=span_id, attempts=self._retry_attempts + 1, error=str(last_error))
        if self._on_error is not None and last_error is not None:
            try:
                self._on_error(last_error, span_id)
            except Exception:
                log.exception("span_error_callback_failed", span_id=span_id)
