from __future__ import annotations

import secrets
from collections.abc import AsyncIterator
from typing import Any

import structlog

from ..cancellation import CancellationToken
from ..types import LLMProvider
from ._http import HttpCapability
from .base import GenerationConfig, GenerationResult, ModelMessage, StreamError, StreamEvent, StreamFinish, TextDelta

log = structlog.get_logger()

GEMINI_DEV_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content-filter",
    "RECITATION": "content-filter",
    "BLOCKLIST": "content-filter",
    "PROHIBITED_CONTENT": "content-filter",
}

_TOOL_MODES = {"auto": "AUTO", "none": "NONE", "required": "ANY"}


def _call_id() -> str:
    # Gemini function calls carry no id; callers need one to answer with a tool result.
    return f"call_{secrets.token_hex(8)}"


class GoogleCapability(HttpCapability):
    provider = LLMProvider.GOOGLE

    def __init__(self, *, base_url: str = GEMINI_DEV_API_BASE, **kwargs: Any):
        super().__init__(base_url=base_url, **kwargs)

    def _headers(self, api_key: str) -> dict[str, str]:
        return {"x-goog-api-key": api_key}

    def _build_payload(self, messages: list[ModelMessage], config: GenerationConfig) -> dict[str, Any]:
        system_parts: list[str] = []
        contents: list[dict[str, Any]] = []
        for msg in messages:
            role = msg["role"]
            content = msg["content"]
            if role == "system":
                if content:
                    system_parts.append(content)
                continue
            if role == "tool":
                parts = [
                    {
                        "functionResponse": {
                            "name": p["toolName"],
                            "response": {"name": p["toolName"], "content": p["output"]["value"]},
                        }
                    }
                    for p in content
                ]
                contents.append({"role": "user", "parts": parts})
                continue

            gemini_role = "model" if role == "assistant" else "user"
            if isinstance(content, str):
                parts = [{"text": content}]
            else:
                parts = []
                for p in content:
                    if p.get("type") == "tool-call":
                        parts.append({"functionCall": {"name": p["toolName"], "args": p.get("input") or {}}})
                    elif p.get("text"):
                        parts.append({"text": p["text"]})
            if parts:
                contents.append({"role": gemini_role, "parts": parts})

        payload: dict[str, Any] = {"contents": contents}
        system_instruction = "\n\n".join(system_parts).strip()
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        generation_config: dict[str, Any] = {}
        if config.temperature is not None:
            generation_config["temperature"] = config.temperature
        if config.top_p is not None:
            generation_config["topP"] = config.top_p
        if config.max_output_tokens is not None:
            generation_config["maxOutputTokens"] = config.max_output_tokens
        if config.stop_sequences:
            generation_config["stopSequences"] = config.stop_sequences
        generation_config.update(config.provider_options.get(self.provider.value, {}))
        if generation_config:
            payload["generationConfig"] = generation_config

        if config.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t["name"], "description": t.get("description", ""), "parameters": t["parameters"]}
                        for t in config.tools
                    ]
                }
            ]
        if config.tool_choice is not None:
            choice = config.tool_choice
            if isinstance(choice, dict):
                calling: dict[str, Any] = {"mode": "ANY", "allowedFunctionNames": [choice["toolName"]]}
            else:
                calling = {"mode": _TOOL_MODES.get(choice, "AUTO")}
            payload["toolConfig"] = {"functionCallingConfig": calling}
        return payload

    @staticmethod
    def _usage(metadata: dict[str, Any]) -> dict[str, int | None]:
        return {
            "inputTokens": metadata.get("promptTokenCount"),
            "outputTokens": metadata.get("candidatesTokenCount"),
            "totalTokens": metadata.get("totalTokenCount"),
        }

    @staticmethod
    def _candidate_parts(data: dict[str, Any]) -> tuple[list[dict[str, Any]], str | None]:
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return [], None
        candidate = candidates[0]
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        return (parts if isinstance(parts, list) else []), candidate.get("finishReason")

    @staticmethod
    def _finish(raw: str | None, tool_calls: list[dict[str, Any]]) -> str | None:
        if tool_calls:
            return "tool-calls"
        if raw is None:
            return None
        return _FINISH_REASONS.get(raw, "other")

    async def complete(
        self,
        *,
        model: str,
        messages: list[ModelMessage],
        api_key: str,
        config: GenerationConfig,
        timeout: float | None = None,
    ) -> GenerationResult:
        data = await self._post_json(
            f"{self._base_url}/models/{model}:generateContent",
            payload=self._build_payload(messages, config),
            headers=self._headers(api_key),
            timeout=timeout,
        )

        if not isinstance(data.get("candidates"), list) or not data["candidates"]:
            raise self._error("Missing candidates in upstream response.")
        parts, raw_finish = self._candidate_parts(data)
        text = "".join(p["text"] for p in parts if isinstance(p.get("text"), str))
        tool_calls = [
            {"toolCallId": _call_id(), "toolName": p["functionCall"].get("name"), "input": p["functionCall"].get("args") or {}}
            for p in parts
            if isinstance(p.get("functionCall"), dict)
        ]

        log.debug("gemini_generate_ok", model=model, parts=len(parts))
        return GenerationResult(
            text=text,
            usage=self._usage(data.get("usageMetadata") or {}),
            tool_calls=tool_calls,
            finish_reason=self._finish(raw_finish, tool_calls),
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
        text_parts: list[str] = []
        tool_calls: list[dict[str, Any]] = []
        usage: dict[str, Any] = {}
        raw_finish: str | None = None

        async for _event, data in self._post_sse(
            f"{self._base_url}/models/{model}:streamGenerateContent",
            payload=self._build_payload(messages, config),
            headers=self._headers(api_key),
            params={"alt": "sse"},
            timeout=timeout,
            cancel_token=cancel_token,
        ):
            if "error" in data:
                err = data["error"]
                message = err.get("message") if isinstance(err, dict) else str(err)
                yield StreamError(self._error(message or "stream error"))
                return
            if isinstance(data.get("usageMetadata"), dict):
                usage = data["usageMetadata"]
            parts, finish = self._candidate_parts(data)
            if finish:
                raw_finish = finish
            for p in parts:
                text = p.get("text")
                if isinstance(text, str) and text:
                    text_parts.append(text)
                    yield TextDelta(text)
                elif isinstance(p.get("functionCall"), dict):
                    fc = p["functionCall"]
                    tool_calls.append({"toolCallId": _call_id(), "toolName": fc.get("name"), "input": fc.get("args") or {}})

        if cancel_token is not None and cancel_token.cancelled:
            return

        yield StreamFinish(
            GenerationResult(
                text="".join(text_parts),
                usage=self._usage(usage),
                tool_calls=tool_calls,
                finish_reason=self._finish(raw_finish, tool_calls),
            )
        )
