from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import structlog

from ..cancellation import CancellationToken
from ..types import LLMProvider
from ._http import HttpCapability
from .base import GenerationConfig, GenerationResult, ModelMessage, StreamError, StreamEvent, StreamFinish, TextDelta

log = structlog.get_logger()

OPENAI_API_BASE = "https://api.openai.com/v1"

_FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        log.warning("openai_tool_arguments_invalid_json", length=len(raw))
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAICapability(HttpCapability):
    provider = LLMProvider.OPENAI

    def __init__(self, *, base_url: str = OPENAI_API_BASE, **kwargs: Any):
        super().__init__(base_url=base_url, **kwargs)

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    def _convert_messages(self, messages: list[ModelMessage]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for msg in messages:
            role = msg["role"]
            content = msg["content"]
            if role == "tool":
                for part in content:
                    out.append(
                        {
                            "role": "tool",
                            "tool_call_id": part["toolCallId"],
                            "content": part["output"]["value"],
                        }
                    )
                continue
            if role == "assistant" and isinstance(content, list):
                text = "".join(p.get("text", "") for p in content if p.get("type") == "text")
                tool_calls = [
                    {
                        "id": p["toolCallId"],
                        "type": "function",
                        "function": {"name": p["toolName"], "arguments": json.dumps(p.get("input") or {})},
                    }
                    for p in content
                    if p.get("type") == "tool-call"
                ]
                converted: dict[str, Any] = {"role": "assistant", "content": text or None}
                if tool_calls:
                    converted["tool_calls"] = tool_calls
                out.append(converted)
                continue
            out.append({"role": role, "content": content})
        return out

    def _build_payload(self, model: str, messages: list[ModelMessage], config: GenerationConfig) -> dict[str, Any]:
        options = dict(config.provider_options.get(self.provider.value, {}))
        strict = bool(options.pop("strictJsonSchema", False))

        payload: dict[str, Any] = {"model": model, "messages": self._convert_messages(messages)}
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if config.top_p is not None:
            payload["top_p"] = config.top_p
        if config.max_output_tokens is not None:
            payload["max_completion_tokens"] = config.max_output_tokens
        if config.stop_sequences:
            payload["stop"] = config.stop_sequences
        if config.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t["name"],
                        "description": t.get("description", ""),
                        "parameters": t["parameters"],
                        "strict": strict or bool(t.get("strict")),
                    },
                }
                for t in config.tools
            ]
        if config.tool_choice is not None:
            if isinstance(config.tool_choice, dict):
                payload["tool_choice"] = {"type": "function", "function": {"name": config.tool_choice["toolName"]}}
            else:
                payload["tool_choice"] = config.tool_choice
        for key, value in options.items():
            payload.setdefault(key, value)
        return payload

    async def complete(
        self,
        *,
        model: str,
        messages: list[ModelMessage],
        api_key: str,
        config: GenerationConfig,
        timeout: float | None = None,
    ) -> GenerationResult:
        payload = self._build_payload(model, messages, config)
        data = await self._post_json(
            f"{self._base_url}/chat/completions",
            payload=payload,
            headers=self._headers(api_key),
            timeout=timeout,
        )

        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            raise self._error("Missing choices in upstream response.")
        choice = choices[0]
        message = choice.get("message") or {}

        tool_calls = []
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function") or {}
            tool_calls.append(
                {"toolCallId": tc.get("id"), "toolName": fn.get("name"), "input": _parse_arguments(fn.get("arguments"))}
            )

        usage = data.get("usage") or {}
        return GenerationResult(
            text=message.get("content") or "",
            usage={
                "inputTokens": usage.get("prompt_tokens"),
                "outputTokens": usage.get("completion_tokens"),
                "totalTokens": usage.get("total_tokens"),
            },
            tool_calls=tool_calls,
            finish_reason=_FINISH_REASONS.get(choice.get("finish_reason") or "", "other"),
        )

    async def stream(
        self,
        *,
        model: str,
        messages: list[ModelMessage],
        api_key: str,
        config: GenerationConfig,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        payload = self._build_payload(model, messages, config)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}

        text_parts: list[str] = []
        # index -> {"id", "name", "arguments"}
        pending_calls: dict[int, dict[str, str]] = {}
        finish_reason: str | None = None
        usage: dict[str, Any] = {}

        async for _event, data in self._post_sse(
            f"{self._base_url}/chat/completions",
            payload=payload,
            headers=self._headers(api_key),
            timeout=timeout,
            cancel_token=cancel_token,
        ):
            if "error" in data:
                err = data["error"]
                message = err.get("message") if isinstance(err, dict) else str(err)
                yield StreamError(self._error(message or "stream error"))
                return
            if isinstance(data.get("usage"), dict):
                usage = data["usage"]
            for choice in data.get("choices") or []:
                delta = choice.get("delta") or {}
                piece = delta.get("content")
                if isinstance(piece, str) and piece:
                    text_parts.append(piece)
                    yield TextDelta(piece)
                for tc in delta.get("tool_calls") or []:
                    slot = pending_calls.setdefault(int(tc.get("index", 0)), {"id": "", "name": "", "arguments": ""})
                    if tc.get("id"):
                        slot["id"] = tc["id"]
                    fn = tc.get("function") or {}
                    if fn.get("name"):
                        slot["name"] = fn["name"]
                    if fn.get("arguments"):
                        slot["arguments"] += fn["arguments"]
                if choice.get("finish_reason"):
                    finish_reason = _FINISH_REASONS.get(choice["finish_reason"], "other")

        if cancel_token is not None and cancel_token.cancelled:
            return

        tool_calls = [
            {"toolCallId": slot["id"], "toolName": slot["name"], "input": _parse_arguments(slot["arguments"])}
            for _index, slot in sorted(pending_calls.items())
        ]
        yield StreamFinish(
            GenerationResult(
                text="".join(text_parts),
                usage={
                    "inputTokens": usage.get("prompt_tokens"),
                    "outputTokens": usage.get("completion_tokens"),
                    "totalTokens": usage.get("total_tokens"),
                },
                tool_calls=tool_calls,
                finish_reason=finish_reason,
            )
        )
