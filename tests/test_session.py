import httpx
import pytest

from tracia import ProviderError, Tracia, TraciaConfig

from fakes import FakeCapability, SpanApi, no_sleep

HI = [{"role": "user", "content": "hi"}]


def _tracia(api, capability):
    return Tracia(
        "tr_test_key",
        config=TraciaConfig(base_url="https://tracia.test"),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(api)),
        capabilities={capability.provider: capability},
        sleeper=no_sleep,
    )


@pytest.fixture(autouse=True)
def openai_key(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env-key")


@pytest.mark.asyncio
async def test_session_chains_spans_into_one_trace():
    api = SpanApi()
    tracia = _tracia(api, FakeCapability(text="ok"))
    session = tracia.create_session()

    first = await session.run_local(model="gpt-4o", messages=HI)
    second = await session.run_local(model="gpt-4o", messages=HI)
    await tracia.flush()

    assert session.trace_id == first.trace_id
    assert second.trace_id == first.trace_id
    assert session.last_span_id == second.span_id

    by_id = {s["spanId"]: s for s in api.spans}
    assert by_id[first.span_id]["parentSpanId"] is None
    assert by_id[second.span_id]["parentSpanId"] == first.span_id
    assert by_id[second.span_id]["traceId"] == first.trace_id
    await tracia.aclose()


@pytest.mark.asyncio
async def test_session_stream_updates_state_when_settled():
    api = SpanApi()
    tracia = _tracia(api, FakeCapability(chunks=["a", "b"]))
    session = tracia.create_session()

    stream = session.run_local_stream(model="gpt-4o", messages=HI)
    assert session.last_span_id is None
    async for _ in stream:
        pass
    result = await stream.result()

    assert session.last_span_id == result.span_id
    assert session.trace_id == result.trace_id

    follow_up = await session.run_local(model="gpt-4o", messages=HI)
    await tracia.flush()
    assert {s["spanId"]: s for s in api.spans}[follow_up.span_id]["parentSpanId"] == result.span_id
    await tracia.aclose()


@pytest.mark.asyncio
async def test_session_initial_ids_and_reset():
    api = SpanApi()
    tracia = _tracia(api, FakeCapability(text="ok"))
    session = tracia.create_session(trace_id="tr_00000000000000aa", parent_span_id="sp_00000000000000bb")

    result = await session.run_local(model="gpt-4o", messages=HI)
    assert result.trace_id == "tr_00000000000000aa"

    session.reset()
    assert session.trace_id is None and session.last_span_id is None
    fresh = await session.run_local(model="gpt-4o", messages=HI)
    await tracia.flush()

    assert fresh.trace_id != "tr_00000000000000aa"
    assert {s["spanId"]: s for s in api.spans}[result.span_id]["parentSpanId"] == "sp_00000000000000bb"
    await tracia.aclose()


@pytest.mark.asyncio
async def test_failed_call_leaves_session_unchanged():
    tracia = _tracia(SpanApi(), FakeCapability(error=RuntimeError("down")))
    session = tracia.create_session()
    with pytest.raises(ProviderError):
        await session.run_local(model="gpt-4o", messages=HI)
    assert session.trace_id is None and session.last_span_id is None
    await tracia.aclose()


@pytest.mark.asyncio
async def test_untraced_calls_do_not_touch_session():
    tracia = _tracia(SpanApi(), FakeCapability(text="ok"))
    session = tracia.create_session()
    result = await session.run_local(model="gpt-4o", messages=HI, send_trace=False)
    assert result.span_id is None
    assert session.last_span_id is None
    await tracia.aclose()
