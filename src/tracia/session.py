from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .types import RunLocalInput, RunLocalResult
from .validation import parse_run_input

if TYPE_CHECKING:
    from .client import Tracia
    from .streaming import LocalStream


class TraciaSession:
    """
    Chains consecutive calls into one trace.

    The first call that resolves fixes the session's trace id (unless one was
    given up front); every later call is sent with that trace id and the
    previous call's span id as its parent, replacing any `trace_id` or
    `parent_span_id` passed to the call. Calls that fail leave the session
    unchanged.
    """

    def __init__(self, tracia: Tracia, trace_id: str | None = None, parent_span_id: str | None = None):
        self._tracia = tracia
        self._trace_id = trace_id
        self._last_span_id = parent_span_id

    @property
    def trace_id(self) -> str | None:
        return self._trace_id

    @property
    def last_span_id(self) -> str | None:
        return self._last_span_id

    def reset(self) -> None:
        self._trace_id = None
        self._last_span_id = None

    async def run_local(self, input: RunLocalInput | None = None, /, **options: Any) -> RunLocalResult:
        params = self._chain(parse_run_input(input, options))
        result = await self._tracia.run_local(params)
        self._update(result.span_id, result.trace_id)
        return result

    def run_local_stream(self, input: RunLocalInput | None = None, /, **options: Any) -> LocalStream:
        params = self._chain(parse_run_input(input, options))
        stream = self._tracia.run_local_stream(params)
        stream.add_done_callback(lambda result: self._update(result.span_id, result.trace_id))
        return stream

    def _chain(self, params: RunLocalInput) -> RunLocalInput:
        if not params.send_trace:
            return params
        # The session owns trace linkage; caller-supplied ids are replaced.
        return params.model_copy(update={"trace_id": self._trace_id, "parent_span_id": self._last_span_id})

    def _update(self, span_id: str | None, trace_id: str | None) -> None:
        if span_id is None:
            return
        if self._trace_id is None:
            self._trace_id = trace_id
        self._last_span_id = span_id
