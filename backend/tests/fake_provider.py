from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Union

import httpx


class ChunkedStream(httpx.AsyncByteStream):
    def __init__(self, chunks: list[bytes], *, delay: float = 0.0, fail_with: Exception | None = None) -> None:
        self.chunks = list(chunks)
        self.delay = delay
        self.fail_with = fail_with

    async def __aiter__(self):
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield chunk
        if self.fail_with is not None:
            raise self.fail_with

    async def aclose(self) -> None:
        return None


def sse(payload: dict[str, Any] | str) -> bytes:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {data}\n\n".encode("utf-8")


def text_chunks(*pieces: str) -> list[bytes]:
    chunks = [sse({"choices": [{"index": 0, "delta": {"content": piece}}]}) for piece in pieces]
    chunks.append(sse("[DONE]"))
    return chunks


def tool_call_chunks(*calls: tuple[str, str, list[str]]) -> list[bytes]:
    chunks: list[bytes] = []
    for index, (call_id, name, fragments) in enumerate(calls):
        for position, fragment in enumerate(fragments):
            delta: dict[str, Any] = {"index": index, "function": {"arguments": fragment}}
            if position == 0:
                delta["id"] = call_id
                delta["type"] = "function"
                delta["function"]["name"] = name
            chunks.append(sse({"choices": [{"index": 0, "delta": {"tool_calls": [delta]}}]}))
    chunks.append(sse({"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]}))
    chunks.append(sse("[DONE]"))
    return chunks


def stream_response(
    chunks: list[bytes], *, delay: float = 0.0, fail_with: Exception | None = None
) -> httpx.Response:
    return httpx.Response(
        200,
        headers={"content-type": "text/event-stream"},
        stream=ChunkedStream(chunks, delay=delay, fail_with=fail_with),
    )


def completion_response(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": text}}]})


def error_response(status_code: int, message: str) -> httpx.Response:
    return httpx.Response(status_code, json={"error": {"message": message}})


Scripted = Union[httpx.Response, Callable[[httpx.Request], httpx.Response], Exception]


class ScriptedProvider:
    """Answers provider requests from a queue and records every request body."""

    def __init__(self, *responses: Scripted) -> None:
        self.responses: list[Scripted] = list(responses)
        self.requests: list[dict[str, Any]] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content.decode("utf-8")))
        if not self.responses:
            raise AssertionError("unexpected provider request")
        scripted = self.responses.pop(0)
        if isinstance(scripted, Exception):
            raise scripted
        if callable(scripted) and not isinstance(scripted, httpx.Response):
            return scripted(request)
        return scripted
