from __future__ import annotations

import asyncio
import json
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

import httpx
import structlog

from ..cancellation import CancellationToken
from ..errors import ProviderError, RequestTimeoutError
from ..logging import sanitize_error_message
from ..metrics import provider_upstream_retries_total
from ..types import LLMProvider

log = structlog.get_logger()


class HttpCapability:
    """
    Shared transport for the HTTP-backed provider capabilities.

    Retries transport failures, 429 and 5xx with exponential backoff; any other
    4xx fails immediately. Streams are only retried before the first event is
    delivered.
    """

    provider: LLMProvider

    def __init__(
        self,
        *,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 60,
        max_attempts: int = 3,
        backoff_initial_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._base_url = base_url.rstrip("/")
        self._max_attempts = max(1, max_attempts)
        self._backoff_initial_seconds = max(0.0, backoff_initial_seconds)
        self._backoff_max_seconds = max(self._backoff_initial_seconds, backoff_max_seconds)
        self._sleep: Callable[[float], Awaitable[None]] = sleeper or asyncio.sleep

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _compute_backoff(self, attempt_index: int, retry_after: str | None = None) -> float:
        if retry_after and retry_after.isdigit():
            return float(retry_after)
        # attempt_index: 0-based retry count (0 for first retry)
        base = float(min(self._backoff_max_seconds, self._backoff_initial_seconds * (2**attempt_index)))
        jitter = float(random.uniform(0.0, min(0.25, base * 0.1))) if base > 0 else 0.0
        return base + jitter

    def _error(self, message: str, status_code: int | None = None) -> ProviderError:
        return ProviderError(
            f"{self.provider.value} error: {sanitize_error_message(message)}",
            status_code=status_code,
        )

    def _status_error(self, resp: httpx.Response) -> ProviderError:
        message = f"HTTP {resp.status_code}"
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, dict) and isinstance(err.get("message"), str):
                message = f"{message}: {err['message']}"
            elif isinstance(err, str):
                message = f"{message}: {err}"
        elif resp.text:
            message = f"{message}: {resp.text[:500]}"
        return self._error(message, status_code=resp.status_code)

    @staticmethod
    def _retryable(status_code: int) -> bool:
        return status_code == 429 or 500 <= status_code <= 599

    def _on_retry(self, reason: str, attempt: int) -> None:
        provider_upstream_retries_total.labels(provider=self.provider.value, reason=reason).inc()
        log.debug("provider_upstream_retry", provider=self.provider.value, reason=reason, attempt=attempt + 1)

    def _on_transport_error(self, e: httpx.HTTPError) -> ProviderError | RequestTimeoutError:
        if isinstance(e, httpx.TimeoutException):
            return RequestTimeoutError(f"{self.provider.value} request timed out.")
        return self._error(f"Upstream request failed: {e}")

    async def _post_json(
        self,
        url: str,
        *,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        for attempt in range(self._max_attempts):
            last = attempt >= self._max_attempts - 1
            try:
                resp = await self._client.post(
                    url,
                    params=params,
                    headers=headers,
                    json=payload,
                    timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
                )
            except httpx.HTTPError as e:
                if last:
                    raise self._on_transport_error(e) from e
                self._on_retry("transport", attempt)
                await self._sleep(self._compute_backoff(attempt))
                continue

            if resp.status_code >= 400:
                if self._retryable(resp.status_code) and not last:
                    self._on_retry(str(resp.status_code), attempt)
                    await self._sleep(self._compute_backoff(attempt, resp.headers.get("retry-after")))
                    continue
                log.warning(
                    "provider_upstream_error",
                    provider=self.provider.value,
                    status_code=resp.status_code,
                    body=sanitize_error_message(resp.text[:500]),
                )
                raise self._status_error(resp)

            try:
                data = resp.json()
            except ValueError as e:
                raise self._error("Failed to decode upstream JSON.", status_code=resp.status_code) from e
            if not isinstance(data, dict):
                raise self._error("Unexpected upstream response shape.", status_code=resp.status_code)
            return data

        raise self._error("Upstream request failed after retries.")  # pragma: no cover

    async def _post_sse(
        self,
        url: str,
        *,
        payload: dict[str, Any],
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[tuple[str | None, dict[str, Any]]]:
        """Yield `(event_name, data)` for each SSE `data:` line. `[DONE]` ends the stream."""
        for attempt in range(self._max_attempts):
            last = attempt >= self._max_attempts - 1
            delivered = False
            try:
                async with self._client.stream(
                    "POST",
                    url,
                    params=params,
                    headers=headers,
                    json=payload,
                    timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
                ) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        if self._retryable(resp.status_code) and not last:
                            self._on_retry(str(resp.status_code), attempt)
                            await self._sleep(self._compute_backoff(attempt, resp.headers.get("retry-after")))
                            continue
                        raise self._status_error(resp)

                    event_name: str | None = None
                    async for line in resp.aiter_lines():
                        if cancel_token is not None and cancel_token.cancelled:
                            return
                        if not line:
                            event_name = None
                            continue
                        if line.startswith("event:"):
                            event_name = line[len("event:") :].strip() or None
                            continue
                        if not line.startswith("data:"):
                            continue
                        raw = line[len("data:") :].strip()
                        if not raw:
                            continue
                        if raw == "[DONE]":
                            return
                        try:
                            data = json.loads(raw)
                        except json.JSONDecodeError as e:
                            raise self._error("Failed to decode upstream SSE JSON.") from e
                        if isinstance(data, dict):
                            delivered = True
                            yield event_name, data
                    return
            except httpx.HTTPError as e:
                if last or delivered:
                    raise self._on_transport_error(e) from e
                self._on_retry("transport", attempt)
                await self._sleep(self._compute_backoff(attempt))

        raise self._error("Upstream request failed after retries.")  # pragma: no cover
