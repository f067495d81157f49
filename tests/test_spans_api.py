import asyncio
import json

import httpx
import pytest

from tracia.errors import ApiError, InvalidRequestError, NetworkError, RequestTimeoutError, TraciaErrorCode
from tracia.http_client import HttpClient
from tracia.persistence import SpanPersistenceManager
from tracia.spans import Spans

from fakes import no_sleep

SPAN_LIST = {
    "spans": [
        {
            "id": "1",
            "spanId": "sp_0000000000000001",
            "traceId": "tr_0000000000000001",
            "model": "gpt-4o",
            "status": "SUCCESS",
            "latencyMs": 12,
            "createdAt": "2025-01-01T00:00:00Z",
        }
    ],
    "nextCursor": "c2",
}


def _http(handler):
    return HttpClient(
        api_key="tr_key",
        base_url="https://tracia.test/",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_list_spans_builds_camel_case_query():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/spans"
        assert request.url.params["userId"] == "u1"
        assert request.url.params["tags"] == "a,b"
        assert request.url.params["limit"] == "5"
        assert request.url.params["status"] == "SUCCESS"
        assert request.headers["user-agent"].startswith("tracia-sdk-python/")
        return httpx.Response(200, json=SPAN_LIST)

    out = await Spans(_http(handler)).list(user_id="u1", tags=["a", "b"], limit=5, status="SUCCESS")
    assert out.next_cursor == "c2"
    assert out.spans[0].latency_ms == 12


@pytest.mark.asyncio
async def test_api_error_maps_code_and_status():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"code": "NOT_FOUND", "message": "Span not found"}})

    with pytest.raises(ApiError) as exc:
        await Spans(_http(handler)).get("sp_0000000000000001")
    assert exc.value.code == TraciaErrorCode.NOT_FOUND
    assert exc.value.status_code == 404
    assert exc.value.message == "Span not found"


@pytest.mark.asyncio
async def test_non_json_error_falls_back_to_status_line():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>bad gateway</html>")

    with pytest.raises(ApiError) as exc:
        await _http(handler).get("/api/v1/spans")
    assert exc.value.message == "HTTP 502: Bad Gateway"
    assert exc.value.code == TraciaErrorCode.UNKNOWN


@pytest.mark.asyncio
async def test_transport_errors_map_to_network_and_timeout():
    def connect_fail(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    def too_slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(NetworkError):
        await _http(connect_fail).get("/x")
    with pytest.raises(RequestTimeoutError):
        await _http(too_slow).get("/x")


@pytest.mark.asyncio
async def test_evaluate_waits_for_pending_span_write():
    gate = asyncio.Event()
    order = []

    async def writer(_payload):
        await gate.wait()
        order.append("span")

    def handler(request: httpx.Request) -> httpx.Response:
        order.append("evaluate")
        body = json.loads(request.content)
        assert request.url.path == "/api/v1/spans/sp_0000000000000001/evaluations"
        assert body == {"evaluatorKey": "quality", "value": 1, "note": "good"}
        return httpx.Response(
            200,
            json={
                "id": "e1",
                "evaluatorKey": "quality",
                "evaluatorName": "Quality",
                "value": 1,
                "source": "sdk",
                "note": "good",
                "createdAt": "2025-01-01T00:00:00Z",
            },
        )

    pending = SpanPersistenceManager(writer, sleeper=no_sleep)
    pending.schedule("sp_0000000000000001", {})
    spans = Spans(_http(handler), pending=pending)

    evaluating = asyncio.create_task(spans.evaluate("sp_0000000000000001", evaluator="quality", value=1, note="good"))
    await asyncio.sleep(0.01)
    assert order == []
    gate.set()
    result = await evaluating

    assert order == ["span", "evaluate"]
    assert result.evaluator_key == "quality"


@pytest.mark.asyncio
async def test_evaluate_rejects_non_numeric_values():
    def handler(_: httpx.Request) -> httpx.Response:  # pragma: no cover
        raise AssertionError("no request expected")

    spans = Spans(_http(handler))
    with pytest.raises(InvalidRequestError):
        await spans.evaluate("sp_0000000000000001", evaluator="quality", value="high")
    with pytest.raises(InvalidRequestError):
        await spans.evaluate("sp_0000000000000001", evaluator="quality", value=True)
