from __future__ import annotations

import re
import secrets

_SPAN_ID_RE = re.compile(r"sp_[0-9a-f]{16}", re.IGNORECASE)
_TRACE_ID_RE = re.compile(r"tr_[0-9a-f]{16}", re.IGNORECASE)


def generate_span_id() -> str:
    return f"sp_{secrets.token_hex(8)}"


def generate_trace_id() -> str:
    return f"tr_{secrets.token_hex(8)}"


def is_valid_trace_id(value: str | None) -> bool:
    return isinstance(value, str) and _TRACE_ID_RE.fullmatch(value) is not None


def is_valid_span_id(value: str | None) -> bool:
    # Legacy spans were keyed by trace-style ids.
    if not isinstance(value, str):
        return False
    return _SPAN_ID_RE.fullmatch(value) is not None or _TRACE_ID_RE.fullmatch(value) is not None
