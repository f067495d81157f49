from __future__ import annotations

import re
from collections.abc import Mapping, Sequence

from .types import Message, TextPart

_VARIABLE_RE = re.compile(r"\{\{(\w+)\}\}")


def interpolate_text(text: str, variables: Mapping[str, str]) -> str:
    """Replace `{{key}}` with `variables[key]`; unknown keys stay verbatim."""
    return _VARIABLE_RE.sub(lambda m: variables.get(m.group(1), m.group(0)), text)


def interpolate_messages(messages: Sequence[Message], variables: Mapping[str, str] | None) -> list[Message]:
    """
    Return new messages with variables substituted in text content.

    Tool-role messages carry tool output verbatim and are never interpolated.
    Inputs are not mutated.
    """
    if not variables:
        return [m.model_copy(deep=True) for m in messages]

    out: list[Message] = []
    for msg in messages:
        if msg.role == "tool":
            out.append(msg.model_copy(deep=True))
            continue
        if isinstance(msg.content, str):
            out.append(msg.model_copy(update={"content": interpolate_text(msg.content, variables)}))
            continue
        parts = [
            p.model_copy(update={"text": interpolate_text(p.text, variables)})
            if isinstance(p, TextPart)
            else p.model_copy(deep=True)
            for p in msg.content
        ]
        out.append(msg.model_copy(update={"content": parts}))
    return out
