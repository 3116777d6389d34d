from __future__ import annotations

import json
from typing import Any, Dict, List

DONE = "[DONE]"


def parse_sse_data(payload_text: str) -> List[str]:
    data: List[str] = []
    for raw_line in payload_text.splitlines():
        line = raw_line.strip("\r")
        if line.startswith("data: "):
            data.append(line[6:])
    return data


def sse_payloads(payload_text: str) -> List[Dict[str, Any]]:
    return [json.loads(item) for item in parse_sse_data(payload_text) if item != DONE]


def delta_text(payload_text: str) -> str:
    parts: List[str] = []
    for payload in sse_payloads(payload_text):
        for choice in payload.get("choices", []):
            parts.append((choice.get("delta") or {}).get("content") or "")
    return "".join(parts)


def error_events(payload_text: str) -> List[Dict[str, Any]]:
    return [payload for payload in sse_payloads(payload_text) if "error" in payload]
