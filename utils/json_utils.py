"""JSON helpers for model replies.

Every AI call in the app asks for a JSON object, but replies still arrive
wrapped in prose or code fences now and then. `safe_parse_json` is the one
place that digs the object back out.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, List, Optional, Sequence

# Keys whose non-empty list marks "the payload we asked for".
PAYLOAD_KEYS: Sequence[str] = ("lessons", "questions", "steps", "cards")

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", flags=re.DOTALL | re.IGNORECASE)


def _has_payload(obj: Any, keys: Sequence[str]) -> bool:
    if not isinstance(obj, dict):
        return False
    return any(isinstance(obj.get(k), list) and obj.get(k) for k in keys)


def _pick(objs: Iterable[Any], keys: Sequence[str]) -> Optional[Any]:
    found = list(objs)
    for o in found:
        if _has_payload(o, keys):
            return o
    for o in found:
        if isinstance(o, dict):
            return o
    return found[0] if found else None


def _top_level_objects(s: str) -> List[str]:
    """Slice out every top-level {...} span, ignoring braces inside strings."""
    spans = []
    depth = 0
    in_str = False
    esc = False
    start = None
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
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start is not None:
                spans.append(s[start: i + 1])
                start = None
    return spans


def _loads_all(chunks: Iterable[str]) -> List[Any]:
    out = []
    for chunk in chunks:
        try:
            out.append(json.loads(chunk))
        except ValueError:
            continue
    return out


def safe_parse_json(text_str: str, prefer_keys: Sequence[str] = PAYLOAD_KEYS) -> Optional[Any]:
    """Best-effort extraction of a JSON object from a model reply.

    Tries a direct parse, then fenced blocks, then balanced-brace spans.
    When several objects are found, the first one carrying a non-empty list
    under one of ``prefer_keys`` wins.
    """
    s = (text_str or "").strip()
    if not s:
        return None

    try:
        return json.loads(s)
    except ValueError:
        pass

    picked = _pick(_loads_all(m.group(1) for m in _FENCE_RE.finditer(s)), prefer_keys)
    if picked is not None:
        return picked

    return _pick(_loads_all(_top_level_objects(s)), prefer_keys)


def as_list(value: Any) -> List[Any]:
    """Coerce a reply field that should be a list (None, scalar or list)."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, tuple):
        return list(value)
    return [value]
