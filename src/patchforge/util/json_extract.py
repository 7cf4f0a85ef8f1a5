"""Strict JSON extraction from model output."""

from __future__ import annotations

import json
import re
from typing import Any


_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)```$", re.DOTALL | re.IGNORECASE)


class JsonPayloadError(ValueError):
    """Raised when model output does not contain the expected JSON payload."""


def _strip_fences(text: str) -> str:
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def _extract_json_block(text: str) -> str:
    start_index = None
    for idx, char in enumerate(text):
        if char in "{[":
            start_index = idx
            break
    if start_index is None:
        raise JsonPayloadError("No JSON object found in model output")
    depth = 0
    in_string = False
    escape = False
    for idx in range(start_index, len(text)):
        char = text[idx]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
            continue
        if char in "{[":
            depth += 1
        elif char in "}]":
            depth -= 1
            if depth == 0:
                return text[start_index : idx + 1]
    raise JsonPayloadError("Unbalanced JSON braces in model output")


def parse_json_object(text: str, allow_prose: bool = False) -> dict[str, Any]:
    """Decode a JSON object from model output.

    A surrounding markdown fence is always tolerated. With ``allow_prose`` the
    first balanced JSON block is taken from free text; without it, anything
    outside the object is an error. Malformed JSON is never repaired.
    """
    content = _strip_fences(text)
    if allow_prose:
        content = _extract_json_block(content)
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise JsonPayloadError(f"Invalid JSON: {exc.msg} at position {exc.pos}") from exc
    if not isinstance(payload, dict):
        raise JsonPayloadError("Expected a JSON object")
    return payload
