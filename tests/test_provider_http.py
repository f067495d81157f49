import json

import httpx
import pytest

from tracia.errors import ProviderError, RequestTimeoutError
from tracia.providers import (
    AnthropicCapability,
    GenerationConfig,
    GoogleCapability,
    OpenAICapability,
    StreamError,
    StreamFinish,
    TextDelta,
)

from fakes import no_sleep

USER = [{"role": "user", "content": "hi"}]


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _sse(*events):
    lines = []
    for event in events:
        if isinstance(event, tuple):
            name, data = event
            lines.append(f"event: {name}")
        else:
            data = event
        lines.append("data: " + (data if isinstance(data, str) else json.dumps(data)))
        lines.append("")
    return "\n".join(lines) + "\n"


async def _collect(agen):
    return [event async for event in agen]


@pytest.mark.asyncio
async def test_openai_complete_builds_payload_and_parses_tool_calls():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        seen.update(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {"id": "call_1", "type": "function", "function": {"name": "weather", "arguments": '{"city":"Oslo"}'}}
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ],
                "usage": {"prompt_tokens": 7, "completion_tokens": 3, "total_tokens": 10},
            },
        )

    cap = OpenAICapability(base_url="https://example.test/v1", client=_client(handler))
    config = GenerationConfig(
        temperature=0.1,
        max_output_tokens=64,
        tools=[{"name": "weather", "description": "", "parameters": {"type": "object"}, "strict": False}],
        tool_choice={"type": "tool", "toolName": "weather"},
        provider_options={"openai": {"strictJsonSchema": False, "user": "u1"}},
    )
    out = await cap.complete(model="gpt-4o", messages=USER, api_key="sk-test", config=config)

    assert seen["max_completion_tokens"] == 64
    assert seen["user"] == "u1"
    assert "strictJsonSchema" not in seen
    assert seen["tools"][0]["function"]["strict"] is False
    assert seen["tool_choice"] == {"type": "function", "function": {"name": "weather"}}
    assert out.tool_calls == [{"toolCallId": "call_1", "toolName": "weather", "input": {"city": "Oslo"}}]
    assert out.finish_reason == "tool-calls"
    assert out.usage["totalTokens"] == 10


@pytest.mark.asyncio
async def test_openai_retries_5xx_then_succeeds():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(503, json={"error": {"message": "busy"}})
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}]})

    cap = OpenAICapability(base_url="https://example.test/v1", client=_client(handler), sleeper=no_sleep)
    out = await cap.complete(model="gpt-4o", messages=USER, api_key="k", config=GenerationConfig())
    assert out.text == "ok"
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_openai_4xx_is_not_retried_and_is_sanitized():
    calls = {"n": 0}

    def handler(_: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(401, json={"error": {"message": "Incorrect API key provided: sk-abcdefghijklmnop1234"}})

    cap = OpenAICapability(base_url="https://example.test/v1", client=_client(handler), sleeper=no_sleep)
    with pytest.raises(ProviderError) as exc:
        await cap.complete(model="gpt-4o", messages=USER, api_key="k", config=GenerationConfig())
    assert calls["n"] == 1
    assert exc.value.status_code == 401
    assert "sk-abcdefghijklmnop1234" not in exc.value.message
    assert exc.value.message.startswith("openai error: HTTP 401")


@pytest.mark.asyncio
async def test_transport_timeout_maps_to_request_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    cap = OpenAICapability(
        base_url="https://example.test/v1", client=_client(handler), max_attempts=1, sleeper=no_sleep
    )
    with pytest.raises(RequestTimeoutError):
        await cap.complete(model="gpt-4o", messages=USER, api_key="k", config=GenerationConfig())


@pytest.mark.asyncio
async def test_openai_stream_yields_deltas_and_accumulates_tool_calls():
    body = _sse(
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "c1", "function": {"name": "w", "arguments": '{"a":'}}]}}]},
        {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": "1}"}}]}, "finish_reason": "tool_calls"}]},
        {"choices": [], "usage": {"prompt_tokens": 2, "completion_tokens": 3, "total_tokens": 5}},
        "[DONE]",
    )

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    cap = OpenAICapability(base_url="https://example.test/v1", client=_client(handler))
    events = await _collect(cap.stream(model="gpt-4o", messages=USER, api_key="k", config=GenerationConfig()))

    assert [e.text for e in events if isinstance(e, TextDelta)] == ["Hel", "lo"]
    finish = events[-1]
    assert isinstance(finish, StreamFinish)
    assert finish.result.text == "Hello"
    assert finish.result.tool_calls == [{"toolCallId": "c1", "toolName": "w", "input": {"a": 1}}]
    assert finish.result.finish_reason == "tool-calls"
    assert finish.result.usage["totalTokens"] == 5


@pytest.mark.asyncio
async def test_openai_stream_error_chunk_becomes_stream_error():
    body = _sse({"choices": [{"delta": {"content": "x"}}]}, {"error": {"message": "server overloaded"}})

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=body)

    cap = OpenAICapability(base_url="https://example.test/v1", client=_client(handler))
    events = await _collect(cap.stream(model="gpt-4o", messages=USER, api_key="k", config=GenerationConfig()))
    assert isinstance(events[-1], StreamError)
    assert "server overloaded" in str(events[-1].error)


@pytest.mark.asyncio
async def test_anthropic_payload_splits_system_and_merges_tool_results():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["x-api-key"] == "ak"
        assert request.headers["anthropic-version"] == "2023-06-01"
        seen.update(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "content": [{"type": "text", "text": "Sunny"}],
                "stop_reason": "end_turn",
                "usage": {"input_tokens": 4, "output_tokens": 2},
            },
        )

    messages = [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "weather?"},
        {"role": "assistant", "content": [{"type": "tool-call", "toolCallId": "t1", "toolName": "w", "input": {}}]},
        {"role": "tool", "content": [{"type": "tool-result", "toolCallId": "t1", "toolName": "w", "output": {"type": "text", "value": "sun"}}]},
        {"role": "user", "content": "and?"},
    ]
    cap = AnthropicCapability(base_url="https://example.test/v1", client=_client(handler))
    out = await cap.complete(
        model="claude-sonnet-4-20250514",
        messages=messages,
        api_key="ak",
        config=GenerationConfig(tool_choice="required"),
    )

    assert seen["system"] == "be brief"
    assert seen["max_tokens"] == 4096
    assert seen["tool_choice"] == {"type": "any"}
    assert [t["role"] for t in seen["messages"]] == ["user", "assistant", "user"]
    assert seen["messages"][2]["content"][0] == {"type": "tool_result", "tool_use_id": "t1", "content": "sun"}
    assert seen["messages"][2]["content"][1] == {"type": "text", "text": "and?"}
    assert out.text == "Sunny"
    assert out.usage == {"inputTokens": 4, "outputTokens": 2, "totalTokens": 6}


@pytest.mark.asyncio
async def test_anthropic_stream_parses_text_and_tool_use():
    body = _sse(
        ("message_start", {"type": "message_start", "message": {"usage": {"input_tokens": 5, "output_tokens": 0}}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hi"}}),
        ("content_block_start", {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "id": "tu1", "name": "w"}}),
        ("content_block_delta", {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"c":"x"}'}}),
        ("message_delta", {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 9}}),
        ("message_stop", {"type": "message_stop"}),
    )

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=body)

    cap = AnthropicCapability(base_url="https://example.test/v1", client=_client(handler))
    events = await _collect(
        cap.stream(model="claude-sonnet-4-20250514", messages=USER, api_key="ak", config=GenerationConfig())
    )

    assert [e.text for e in events if isinstance(e, TextDelta)] == ["Hi"]
    result = events[-1].result
    assert result.tool_calls == [{"toolCallId": "tu1", "toolName": "w", "input": {"c": "x"}}]
    assert result.finish_reason == "tool-calls"
    assert result.usage == {"inputTokens": 5, "outputTokens": 9, "totalTokens": 14}


@pytest.mark.asyncio
async def test_google_complete_uses_header_key_and_assigns_call_ids():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1beta/models/gemini-2.5-flash:generateContent"
        assert request.headers["x-goog-api-key"] == "gk"
        assert "key" not in request.url.params
        seen.update(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {"content": {"parts": [{"functionCall": {"name": "w", "args": {"c": "x"}}}]}, "finishReason": "STOP"}
                ],
                "usageMetadata": {"promptTokenCount": 3, "candidatesTokenCount": 1, "totalTokenCount": 4},
            },
        )

    cap = GoogleCapability(base_url="https://example.test/v1beta", client=_client(handler))
    out = await cap.complete(
        model="gemini-2.5-flash",
        messages=[{"role": "system", "content": "sys"}, *USER],
        api_key="gk",
        config=GenerationConfig(tool_choice={"type": "tool", "toolName": "w"}),
    )

    assert seen["systemInstruction"] == {"parts": [{"text": "sys"}]}
    assert seen["toolConfig"] == {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": ["w"]}}
    assert out.finish_reason == "tool-calls"
    assert out.tool_calls[0]["toolCallId"].startswith("call_")
    assert out.usage["totalTokens"] == 4


@pytest.mark.asyncio
async def test_google_stream_requests_sse():
    body = _sse(
        {"candidates": [{"content": {"parts": [{"text": "a"}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "b"}]}, "finishReason": "MAX_TOKENS"}]},
    )

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith(":streamGenerateContent")
        assert request.url.params.get("alt") == "sse"
        return httpx.Response(200, text=body)

    cap = GoogleCapability(base_url="https://example.test/v1beta", client=_client(handler))
    events = await _collect(cap.stream(model="gemini-2.5-flash", messages=USER, api_key="gk", config=GenerationConfig()))
    assert [e.text for e in events if isinstance(e, TextDelta)] == ["a", "b"]
    assert events[-1].result.finish_reason == "length"
