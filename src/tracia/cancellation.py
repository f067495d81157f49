from __future__ import annotations

import asyncio
from collections.abc import Callable


class CancellationToken:
    """
    Cooperative cancellation signal.

    Tokens are observed at the boundary with a provider capability, never
    preempting work in progress. `any_of` derives a token that fires when any
    of its sources fires; `with_timeout` derives one that fires after a delay.
    Derived tokens must be `dispose()`d to detach from their sources.
    """

    def __init__(self) -> None:
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []
        self._waiters: list[asyncio.Future[None]] = []
        self._detach: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "aborted") -> None:
        if self._reason is not None:
            return
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            cb(reason)
        waiters, self._waiters = self._waiters, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(None)

    def add_callback(self, cb: Callable[[str], None]) -> Callable[[], None]:
        """Run `cb(reason)` on cancellation. Returns a function that unregisters it."""
        if self._reason is not None:
            cb(self._reason)
            return lambda: None
        self._callbacks.append(cb)

        def _remove() -> None:
            if cb in self._callbacks:
                self._callbacks.remove(cb)

        return _remove

    async def wait(self) -> None:
        if self._reason is not None:
            return
        fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        finally:
            if fut in self._waiters:
                self._waiters.remove(fut)

    def dispose(self) -> None:
        detach, self._detach = self._detach, []
        for fn in detach:
            fn()

    @classmethod
    def any_of(cls, *sources: CancellationToken | None) -> CancellationToken:
        combined = cls()
        for source in sources:
            if source is None:
                continue
            if source.cancelled:
                combined.cancel(source.reason or "aborted")
                break
            combined._detach.append(source.add_callback(combined.cancel))
        return combined

    @classmethod
    def with_timeout(cls, seconds: float) -> CancellationToken:
        """Must be called from a running event loop."""
        token = cls()
        handle = asyncio.get_running_loop().call_later(max(0.0, seconds), token.cancel, "timeout")
        token._detach.append(handle.cancel)
        return token
