from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from .errors import InvalidRequestError
from .ids import is_valid_span_id, is_valid_trace_id
from .types import RunLocalInput

SPAN_ID_FORMAT = "Invalid span ID format. Must match: sp_ + 16 hex characters (e.g., sp_1234567890abcdef)"
TRACE_ID_FORMAT = "Invalid trace ID format. Must match: tr_ + 16 hex characters (e.g., tr_1234567890abcdef)"


def _field_names(options: Mapping[str, Any]) -> dict[str, Any]:
    """Key options by field name so camelCase overrides replace the matching dumped field."""
    by_alias = {field.alias: name for name, field in RunLocalInput.model_fields.items() if field.alias}
    return {by_alias.get(key, key): value for key, value in options.items()}


def parse_run_input(input: RunLocalInput | None, options: Mapping[str, Any]) -> RunLocalInput:
    """Accept either a `RunLocalInput` (optionally overridden by keywords) or keywords alone."""
    try:
        if input is not None:
            if not options:
                return input
            merged = {**input.model_dump(), "cancel_token": input.cancel_token, **_field_names(options)}
            return RunLocalInput.model_validate(merged)
        return RunLocalInput.model_validate(dict(options))
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid run options: {e}") from e


def validate_run_input(params: RunLocalInput) -> None:
    if not params.model or not params.model.strip():
        raise InvalidRequestError("model is required and cannot be empty")
    if not params.messages:
        raise InvalidRequestError("messages array is required and cannot be empty")

    for index, msg in enumerate(params.messages):
        if msg.role != "tool":
            continue
        if not isinstance(msg.content, str):
            raise InvalidRequestError(f"messages[{index}]: tool messages must have string content")
        if not msg.tool_call_id:
            raise InvalidRequestError(f"messages[{index}]: tool messages require a tool_call_id")

    if params.tools:
        names = [t.name for t in params.tools]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise InvalidRequestError(f"Duplicate tool names: {', '.join(duplicates)}")

    if not params.send_trace:
        return
    if params.span_id and not is_valid_span_id(params.span_id):
        raise InvalidRequestError(SPAN_ID_FORMAT)
    if params.trace_id and not is_valid_trace_id(params.trace_id):
        raise InvalidRequestError(TRACE_ID_FORMAT)
    if params.parent_span_id and not is_valid_span_id(params.parent_span_id):
        raise InvalidRequestError(f"Invalid parent span ID. {SPAN_ID_FORMAT}")
