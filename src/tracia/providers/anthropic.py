from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import structlog

from ..cancellation import CancellationToken
from ..errors import InvalidRequestError
from ..types import LLMProvider
from ._http import HttpCapability
from .base import GenerationConfig, GenerationResult, ModelMessage, StreamError, StreamEvent, StreamFinish, TextDelta

log = structlog.get_logger()

ANTHROPIC_API_BASE = "https://api.anthropic.com/v1"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

_FINISH_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool-calls",
    "refusal": "content-filter",
}

# Options that would override the request shape built here.
_RESERVED_OPTIONS = {"model", "messages", "system", "max_tokens", "stream", "tools", "tool_choice"}


class AnthropicCapability(HttpCapability):
    provider = LLMProvider.ANTHROPIC

    def __init__(self, *, base_url: str = ANTHROPIC_API_BASE, **kwargs: Any):
        super().__init__(base_url=base_url, **kwargs)

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}

    def _split_messages(self, messages: list[ModelMessage]) -> tuple[str | None, list[dict[str, Any]]]:
        system_parts: list[str] = []
        turns: list[dict[str, Any]] = []
        for msg in messages:
            role = msg["role"]
            content = msg["content"]
            if role == "system":
                if content:
                    system_parts.append(content)
                continue

            blocks: list[dict[str, Any]]
            if role == "tool":
                role = "user"
                blocks = [
                    {"type": "tool_result", "tool_use_id": p["toolCallId"], "content": p["output"]["value"]}
                    for p in content
                ]
            elif isinstance(content, str):
                blocks = [{"type": "text", "text": content}] if content else []
            else:
                blocks = []
                for p in content:
                    if p.get("type") == "tool-call":
                        blocks.append(
                            {"type": "tool_use", "id": p["toolCallId"], "name": p["toolName"], "input": p.get("input") or {}}
                        )
                    elif p.get("text"):
                        blocks.append({"type": "text", "text": p["text"]})
            if not blocks:
                continue

            # The Messages API requires alternating turns.
            if turns and turns[-1]["role"] == role:
                turns[-1]["content"].extend(blocks)
            else:
                turns.append({"role": role, "content": blocks})

        system = "\n\n".join(system_parts).strip() or None
        return system, turns

    def _build_payload(self, model: str, messages: list[ModelMessage], config: GenerationConfig) -> dict[str, Any]:
        system, turns = self._split_messages(messages)
        if not turns:
            raise InvalidRequestError("Anthropic requires at least one user or assistant message")

        payload: dict[str, Any] = {
            "model": model,
            "messages": turns,
            "max_tokens": config.max_output_tokens or DEFAULT_MAX_TOKENS,
        }
        if system:
            payload["system"] = system
        if config.temperature is not None:
            payload["temperature"] = config.temperature
        if config.top_p is not None:
            payload["top_p"] = config.top_p
        if config.stop_sequences:
            payload["stop_sequences"] = config.stop_sequences
        if config.tools:
            payload["tools"] = [
                {"name": t["name"], "description": t.get("description", ""), "input_schema": t["parameters"]}
                for t in config.tools
            ]
        if config.tool_choice is not None:
            choice = config.tool_choice
            if isinstance(choice, dict):
                payload["tool_choice"] = {"type": "tool", "name": choice["toolName"]}
            elif choice == "required":
                payload["tool_choice"] = {"type": "any"}
            else:
                payload["tool_choice"] = {"type": choice}
        for key, value in config.provider_options.get(self.provider.value, {}).items():
            if key not in _RESERVED_OPTIONS:
                payload.setdefault(key, value)
        return payload

    @staticmethod
    def _usage(usage: dict[str, Any]) -> dict[str, int | None]:
        input_tokens = usage.get("input_tokens")
        output_tokens = usage.get("output_tokens")
        total = input_tokens + output_tokens if input_tokens is not None and output_tokens is not None else None
        return {"inputTokens": input_tokens, "outputTokens": output_tokens, "totalTokens": total}

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
            f"{self._base_url}/messages",
            payload=payload,
            headers=self._headers(api_key),
            timeout=timeout,
        )

        content = data.get("content")
        if not isinstance(content, list):
            raise self._error("Missing content in upstream response.")
        text = "".join(b.get("text", "") for b in content if b.get("type") == "text")
        tool_calls = [
            {"toolCallId": b.get("id"), "toolName": b.get("name"), "input": b.get("input") or {}}
            for b in content
            if b.get("type") == "tool_use"
        ]
        return GenerationResult(
            text=text,
            usage=self._usage(data.get("usage") or {}),
            tool_calls=tool_calls,
            finish_reason=_FINISH_REASONS.get(data.get("stop_reason") or "", "other"),
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

        text_parts: list[str] = []
        # content block index -> {"id", "name", "json"}
        tool_blocks: dict[int, dict[str, str]] = {}
        usage: dict[str, Any] = {}
        finish_reason: str | None = None

        async for event, data in self._post_sse(
            f"{self._base_url}/messages",
            payload=payload,
            headers=self._headers(api_key),
            timeout=timeout,
            cancel_token=cancel_token,
        ):
            kind = data.get("type") or event
            if kind == "error":
                err = data.get("error") or {}
                message = err.get("message") if isinstance(err, dict) else str(err)
                yield StreamError(self._error(message or "stream error"))
                return
            if kind == "message_start":
                usage.update((data.get("message") or {}).get("usage") or {})
            elif kind == "content_block_start":
                block = data.get("content_block") or {}
                if block.get("type") == "tool_use":
                    tool_blocks[int(data.get("index", 0))] = {
                        "id": block.get("id", ""),
                        "name": block.get("name", ""),
                        "json": "",
                    }
            elif kind == "content_block_delta":
                delta = data.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    text_parts.append(delta["text"])
                    yield TextDelta(delta["text"])
                elif delta.get("type") == "input_json_delta":
                    slot = tool_blocks.get(int(data.get("index", 0)))
                    if slot is not None:
                        slot["json"] += delta.get("partial_json", "")
            elif kind == "message_delta":
                delta = data.get("delta") or {}
                if delta.get("stop_reason"):
                    finish_reason = _FINISH_REASONS.get(delta["stop_reason"], "other")
                usage.update(data.get("usage") or {})

        if cancel_token is not None and cancel_token.cancelled:
            return

        tool_calls = []
        for _index, slot in sorted(tool_blocks.items()):
            try:
                arguments = json.loads(slot["json"]) if slot["json"] else {}
            except json.JSONDecodeError:
                log.warning("anthropic_tool_input_invalid_json", tool=slot["name"])
                arguments = {}
            tool_calls.append({"toolCallId": slot["id"], "toolName": slot["name"], "input": arguments})

        yield StreamFinish(
            GenerationResult(
                text="".join(text_parts),
                usage=self._usage(usage),
                tool_calls=tool_calls,
                finish_reason=finish_reason,
            )
        )
