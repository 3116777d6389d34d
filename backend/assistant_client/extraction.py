from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)
_PREFIX_RE = re.compile(r"ACTION:\s*(\{[\s\S]*\})", re.IGNORECASE)
_LABEL_TAIL_RE = re.compile(r"ACTION:\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ExtractedAction:
    action: str
    params: dict[str, Any]
    cleaned_text: str
    strategy: str


def _as_payload(candidate: str) -> tuple[str, dict[str, Any]] | None:
    try:
        obj = json.loads(candidate.strip())
    except (ValueError, RecursionError):
        return None
    if not isinstance(obj, dict):
        return None
    action = obj.get("action")
    params = obj.get("params")
    if not isinstance(action, str) or not action.strip() or not isinstance(params, dict):
        return None
    return action.strip(), params


def _without(text: str, start: int, end: int) -> str:
    return (text[:start] + text[end:]).strip()


def _from_fence(text: str) -> ExtractedAction | None:
    match = _FENCE_RE.search(text)
    if not match:
        return None
    payload = _as_payload(match.group(1))
    if payload is None:
        return None
    return ExtractedAction(payload[0], payload[1], _without(text, match.start(), match.end()), "fence")


def _from_braces(text: str) -> ExtractedAction | None:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    payload = _as_payload(text[start : end + 1])
    if payload is None:
        return None
    label = _LABEL_TAIL_RE.search(text, 0, start)
    cut = label.start() if label else start
    return ExtractedAction(payload[0], payload[1], _without(text, cut, end + 1), "object")


def _from_prefix(text: str) -> ExtractedAction | None:
    match = _PREFIX_RE.search(text)
    if not match:
        return None
    payload = _as_payload(match.group(1))
    if payload is None:
        return None
    return ExtractedAction(payload[0], payload[1], _without(text, match.start(), match.end()), "prefix")


def extract_action_payload(text: Any) -> ExtractedAction | None:
    """Find an ``{"action": ..., "params": {...}}`` object embedded in a reply.

    Tries a fenced ``json`` block, then the span from the first ``{`` to the last
    ``}``, then an ``ACTION: {...}`` suffix. Returns ``None`` when nothing parses.
    """
    if not isinstance(text, str) or not text.strip():
        return None
    for strategy in (_from_fence, _from_braces, _from_prefix):
        found = strategy(text)
        if found is not None:
            return found
    return None
