"""Tolerant JSON object extraction from LLM responses."""

from __future__ import annotations

import json
import re

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_object(text: str) -> dict | None:
    """Return the first JSON object found in *text*, or ``None``.

    Handles bare JSON, markdown fenced blocks and prose around the object.
    """
    if not text or not text.strip():
        return None

    candidates = [text.strip()]
    candidates.extend(block.strip() for block in _FENCE_RE.findall(text))
    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed

    start = text.find("{")
    while start != -1:
        parsed = _balanced_object(text, start)
        if parsed is not None:
            return parsed
        start = text.find("{", start + 1)
    return None


def _balanced_object(text: str, start: int) -> dict | None:
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
        elif ch == "\\" and in_string:
            escape = True
        elif ch == '"':
            in_string = not in_string
        elif in_string:
            continue
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                try:
                    parsed = json.loads(text[start : i + 1])
                except ValueError:
                    return None
                return parsed if isinstance(parsed, dict) else None
    return None
