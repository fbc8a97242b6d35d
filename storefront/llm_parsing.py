from __future__ import annotations

import json
import re
from typing import Any, Optional

_FENCED_JSON_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_FENCED_ANY_RE = re.compile(r"```\s*([\s\S]*?)```")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def _balanced_object_slice(s: str) -> Optional[str]:
    """Return the first brace-balanced {...} slice, ignoring braces inside strings."""
    in_str = False
    esc = False
    depth = 0
    start_idx = -1
    for i, ch in enumerate(s):
        if in_str:
            if esc:
                esc = False
            elif ch == "\\":
                esc = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            if depth == 0:
                start_idx = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start_idx != -1:
                return s[start_idx : i + 1]
    return None


def json_object_from_text(text: str) -> dict:
    """Extract a JSON object from model output; raise ValueError when none is usable.

    Tries the raw text, fenced ```json blocks, any fenced block, then the first
    balanced object. Each candidate gets one repair pass (trailing commas, smart quotes).
    """
    t = (text or "").strip()
    if not t:
        raise ValueError("empty model output")

    candidates = [t]
    m = _FENCED_JSON_RE.search(t) or _FENCED_ANY_RE.search(t)
    if m:
        candidates.append(m.group(1).strip())
    sliced = _balanced_object_slice(t)
    if sliced:
        candidates.append(sliced)

    for candidate in candidates:
        for attempt in (candidate, _repair(candidate)):
            try:
                value: Any = json.loads(attempt)
            except json.JSONDecodeError:
                continue
            if isinstance(value, dict):
                return value
    raise ValueError("no JSON object found in model output")


def _repair(s: str) -> str:
    s = _TRAILING_COMMA_RE.sub(r"\1", s)
    return s.replace("“", '"').replace("”", '"').replace("’", "'")


def strip_wrapping_quotes(text: str) -> str:
    t = (text or "").strip()
    return re.sub(r"^[\"']|[\"']$", "", t).strip()
