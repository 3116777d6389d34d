from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class SSELineDecoder:
    """Incremental ``data:`` line decoder; lines may straddle network chunks."""

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.finished = False

    def feed(self, chunk: bytes | str) -> Iterator[dict[str, Any]]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            payload = self._parse_line(line)
            if payload is not None:
                yield payload

    def flush(self) -> Iterator[dict[str, Any]]:
        line, self._buffer = self._buffer + self._decoder.decode(b"", final=True), ""
        payload = self._parse_line(line)
        if payload is not None:
            yield payload

    def _parse_line(self, line: str) -> dict[str, Any] | None:
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            return None
        data = line[len("data:"):].strip()
        if not data:
            return None
        if data == DONE_SENTINEL:
            self.finished = True
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("skipping undecodable stream line (%d chars)", len(data))
            return None
        return payload if isinstance(payload, dict) else None


@dataclass
class ToolCallFragment:
    index: int
    call_id: str = ""
    function_name: str = ""
    arguments_buffer: str = ""


@dataclass
class ParsedToolCall:
    index: int
    call_id: str
    function_name: str
    raw_arguments: str
    arguments: dict[str, Any] | None = None
    parse_error: str | None = None

    def as_message_call(self) -> dict[str, Any]:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.function_name, "arguments": self.raw_arguments},
        }


@dataclass
class ToolCallAccumulator:
    calls: dict[int, ToolCallFragment] = field(default_factory=dict)

    def add(self, delta: dict[str, Any]) -> None:
        index = int(delta.get("index", 0) or 0)
        fragment = self.calls.get(index)
        if fragment is None:
            fragment = ToolCallFragment(index=index)
            self.calls[index] = fragment
        if delta.get("id") and not fragment.call_id:
            fragment.call_id = str(delta["id"])
        function = delta.get("function") or {}
        if function.get("name") and not fragment.function_name:
            fragment.function_name = str(function["name"])
        if function.get("arguments"):
            fragment.arguments_buffer += str(function["arguments"])

    def __bool__(self) -> bool:
        return bool(self.calls)

    def finalize(self) -> list[ParsedToolCall]:
        parsed: list[ParsedToolCall] = []
        for index in sorted(self.calls):
            fragment = self.calls[index]
            call = ParsedToolCall(
                index=index,
                call_id=fragment.call_id or f"call_{index}",
                function_name=fragment.function_name,
                raw_arguments=fragment.arguments_buffer or "{}",
            )
            try:
                arguments = json.loads(call.raw_arguments)
                if isinstance(arguments, dict):
                    call.arguments = arguments
                else:
                    call.parse_error = "Tool arguments must be a JSON object."
            except json.JSONDecodeError as exc:
                call.parse_error = f"Malformed tool arguments: {exc.msg}"
            if call.parse_error:
                logger.warning("tool call %s (%s) skipped: %s", index, call.function_name, call.parse_error)
            parsed.append(call)
        return parsed


def chunk_deltas(payload: dict[str, Any]) -> tuple[str, list[dict[str, Any]]]:
    text_parts: list[str] = []
    tool_deltas: list[dict[str, Any]] = []
    for choice in payload.get("choices") or []:
        delta = choice.get("delta") or {}
        content = delta.get("content")
        if isinstance(content, str):
            text_parts.append(content)
        for tool_delta in delta.get("tool_calls") or []:
            if isinstance(tool_delta, dict):
                tool_deltas.append(tool_delta)
    return "".join(text_parts), tool_deltas


def encode_sse(payload: dict[str, Any] | str) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode("utf-8")
