from __future__ import annotations

import numbers
from datetime import datetime
from typing import Any
from urllib.parse import quote

from .errors import InvalidRequestError
from .http_client import HttpClient
from .persistence import SpanPersistenceManager
from .types import (
    CreateSpanPayload,
    CreateSpanResult,
    EvaluateResult,
    ListSpansResult,
    Span,
    SpanStatus,
)


class Spans:
    """Span records stored by the Tracia API."""

    def __init__(self, client: HttpClient, *, pending: SpanPersistenceManager | None = None):
        self._client = client
        self._pending = pending

    async def create(self, payload: CreateSpanPayload | dict[str, Any]) -> CreateSpanResult:
        body = payload.to_wire() if isinstance(payload, CreateSpanPayload) else payload
        data = await self._client.post("/api/v1/spans", body)
        return CreateSpanResult.model_validate(data)

    async def get(self, span_id: str) -> Span:
        data = await self._client.get(f"/api/v1/spans/{quote(span_id, safe='')}")
        return Span.model_validate(data)

    async def list(
        self,
        *,
        prompt_slug: str | None = None,
        status: SpanStatus | str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        user_id: str | None = None,
        session_id: str | None = None,
        tags: list[str] | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> ListSpansResult:
        params: dict[str, str] = {}
        if prompt_slug:
            params["promptSlug"] = prompt_slug
        if status:
            params["status"] = SpanStatus(status).value
        if start_date:
            params["startDate"] = start_date.isoformat()
        if end_date:
            params["endDate"] = end_date.isoformat()
        if user_id:
            params["userId"] = user_id
        if session_id:
            params["sessionId"] = session_id
        if tags:
            params["tags"] = ",".join(tags)
        if limit:
            params["limit"] = str(limit)
        if cursor:
            params["cursor"] = cursor

        data = await self._client.get("/api/v1/spans", params=params or None)
        return ListSpansResult.model_validate(data)

    async def evaluate(
        self,
        span_id: str,
        *,
        evaluator: str,
        value: float,
        note: str | None = None,
    ) -> EvaluateResult:
        # The span may still be in flight from a just-finished call.
        if self._pending is not None:
            await self._pending.wait_for(span_id)

        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise InvalidRequestError("Invalid evaluation value. Must be a number.")

        body: dict[str, Any] = {"evaluatorKey": evaluator, "value": value}
        if note is not None:
            body["note"] = note

        data = await self._client.post(f"/api/v1/spans/{quote(span_id, safe='')}/evaluations", body)
        return EvaluateResult.model_validate(data)
