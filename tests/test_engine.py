import asyncio

import pytest

from tracia import engine
from tracia.cancellation import CancellationToken
from tracia.engine import CompletionRequest
from tracia.errors import AbortedError, ProviderError, RequestTimeoutError
from tracia.types import LLMProvider, Message, NamedToolChoice, ToolCall, ToolCallPart, ToolDefinition

from fakes import FakeCapability


def _request(**overrides):
    base = dict(
        model="gpt-4o",
        messages=[Message(role="user", content="hi")],
        api_key="sk-test",
        provider=LLMProvider.OPENAI,
    )
    base.update(overrides)
    return CompletionRequest(**base)


def test_convert_messages_maps_developer_assistant_tool_calls_and_tool_results():
    out = engine.convert_messages(
        [
            Message(role="developer", content="be brief"),
            Message(role="assistant", content=[ToolCallPart(id="c1", name="weather", arguments={"city": "Oslo"})]),
            Message(role="tool", content="rainy", tool_call_id="c1", tool_name="weather"),
        ]
    )
    assert out[0] == {"role": "system", "content": "be brief"}
    assert out[1]["content"] == [
        {"type": "tool-call", "toolCallId": "c1", "toolName": "weather", "input": {"city": "Oslo"}}
    ]
    assert out[2]["content"][0]["output"] == {"type": "text", "value": "rainy"}


def test_convert_tools_and_tool_choice():
    tools = engine.convert_tools([ToolDefinition(name="weather", description="d")])
    assert tools[0]["strict"] is False
    assert tools[0]["parameters"] == {"type": "object", "properties": {}}
    assert engine.convert_tool_choice("required") == "required"
    assert engine.convert_tool_choice(NamedToolChoice(tool="weather")) == {"type": "tool", "toolName": "weather"}
    assert engine.convert_tools(None) is None


def test_custom_provider_options_merge_over_defaults():
    merged = engine.merge_provider_options({"openai": {"strictJsonSchema": True, "user": "u1"}, "google": {"x": 1}})
    assert merged["openai"] == {"strictJsonSchema": True, "user": "u1"}
    assert merged["google"] == {"x": 1}
    assert engine.merge_provider_options(None) == {"openai": {"strictJsonSchema": False}}


@pytest.mark.parametrize(
    "raw,expected",
    [("tool-calls", "tool_calls"), ("length", "max_tokens"), ("stop", "stop"), ("content-filter", "stop"), (None, "stop")],
)
def test_parse_finish_reason(raw, expected):
    assert engine.parse_finish_reason(raw) == expected


def test_usage_defaults_missing_fields_to_zero():
    usage = engine.normalize_usage({"inputTokens": 3, "outputTokens": None})
    assert (usage.input_tokens, usage.output_tokens, usage.total_tokens) == (3, 0, 0)


def test_extract_tool_calls_drops_incomplete_entries():
    calls = engine.extract_tool_calls(
        [
            {"toolCallId": "c1", "toolName": "weather", "input": {"city": "Oslo"}},
            {"toolCallId": "", "toolName": "weather"},
            {"toolCallId": "c3"},
        ]
    )
    assert calls == [ToolCall(id="c1", name="weather", arguments={"city": "Oslo"})]


def test_assistant_message_carries_tool_calls_as_parts():
    msg = engine.assistant_message("", [ToolCall(id="c1", name="weather", arguments={})])
    assert msg.role == "assistant"
    assert msg.content[0].type == "tool_call"
    assert engine.assistant_message("hi", []).content == "hi"


@pytest.mark.asyncio
async def test_complete_normalizes_result():
    cap = FakeCapability(
        text="",
        tool_calls=[{"toolCallId": "c1", "toolName": "weather", "input": {"city": "Oslo"}}],
        finish_reason="tool-calls",
    )
    out = await engine.complete(cap, _request(tools=[ToolDefinition(name="weather")], temperature=0.2))

    assert out.finish_reason == "tool_calls"
    assert out.tool_calls[0].name == "weather"
    assert out.usage.total_tokens == 15
    config = cap.calls[0]["config"]
    assert config.temperature == 0.2
    assert config.provider_options["openai"]["strictJsonSchema"] is False


@pytest.mark.asyncio
async def test_complete_wraps_and_sanitizes_capability_errors():
    cap = FakeCapability(error=RuntimeError("401 invalid key sk-abcdefghijklmnopqrstuvwxyz"))
    with pytest.raises(ProviderError) as exc:
        await engine.complete(cap, _request())
    assert exc.value.message.startswith("openai error: ")
    assert "sk-abcdefghij" not in exc.value.message
    assert isinstance(exc.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_complete_timeout_raises_request_timeout():
    cap = FakeCapability(text="late", delay=1.0)
    with pytest.raises(RequestTimeoutError):
        await engine.complete(cap, _request(timeout=0.01))


@pytest.mark.asyncio
async def test_complete_cancel_token_raises_aborted():
    cap = FakeCapability(text="late", delay=1.0)
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel)
    with pytest.raises(AbortedError):
        await engine.complete(cap, _request(cancel_token=token))
