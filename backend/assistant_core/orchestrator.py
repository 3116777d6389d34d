from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from records.time_utils import resolve_zone, utc_now

from . import schemas
from .dispatcher import ActionDispatcher
from .errors import PipelineError, ProviderTimeoutError
from .models import DEFAULT_TIMEZONE, ActionRequest
from .provider import ChatCompletionsProvider, stream_bytes
from .registry import ActionRegistry
from .streaming import ParsedToolCall, SSELineDecoder, ToolCallAccumulator, chunk_deltas, encode_sse

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are the practice assistant for a therapist's practice-management workspace.
You can look up and change clients, appointments, invoices, reminders and SOAP notes by calling the
provided tools. Refer to clients by their full name ("Jane Doe"); the system resolves names to records.
If a name is ambiguous or unknown, ask the therapist which client they mean instead of guessing.
Never invent record ids. Keep replies short and confirm what was done after every tool call.
Today is {today} and the therapist's timezone is {timezone}."""

ROUTER_PROMPT = """You are the practice assistant for a therapist's practice-management workspace.
Reply naturally and briefly. When the therapist asks for a change you can perform, end your reply with a
JSON object on its own, shaped exactly as {{"action": "<action name>", "params": {{...}}}}.
Available actions: {actions}.
Use the client's full name in "client_name". Omit the JSON when no action is needed.
Today is {today} and the therapist's timezone is {timezone}."""


@dataclass
class FirstPhase:
    raw_chunks: list[bytes] = field(default_factory=list)
    text: str = ""
    tool_calls: list[ParsedToolCall] = field(default_factory=list)
    tool_messages: list[dict[str, Any]] = field(default_factory=list)


class StreamingOrchestrator:
    def __init__(
        self,
        *,
        provider: ChatCompletionsProvider,
        dispatcher: ActionDispatcher,
        registry: ActionRegistry,
        timeout_seconds: float = 25.0,
        default_timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        self.provider = provider
        self.dispatcher = dispatcher
        self.registry = registry
        self.timeout_seconds = timeout_seconds
        self.default_timezone = default_timezone

    def tool_declarations(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": action.name.value,
                    "description": action.description,
                    "parameters": schemas.tool_parameters(action.name),
                },
            }
            for action in self.registry.definitions()
        ]

    def _prompt(self, template: str, timezone: str) -> str:
        today = utc_now().astimezone(resolve_zone(timezone)).strftime("%A, %B %d, %Y")
        return template.format(
            today=today,
            timezone=timezone,
            actions=", ".join(self.registry.list_names()),
        )

    def _base_messages(self, messages: list[dict[str, Any]], timezone: str, template: str) -> list[dict[str, Any]]:
        return [{"role": "system", "content": self._prompt(template, timezone)}, *messages]

    async def stream_reply(
        self,
        *,
        user_id: str,
        messages: list[dict[str, Any]],
        timezone: str | None = None,
        timeout_seconds: float | None = None,
    ) -> AsyncIterator[bytes]:
        """Run the first provider turn and return the byte stream for the client.

        The first turn (stream read plus tool execution) is bounded by the timeout and
        raises before any byte is returned, so callers can still pick a status code.
        """
        zone_name = timezone or self.default_timezone
        conversation = self._base_messages(messages, zone_name, SYSTEM_PROMPT)
        limit = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        try:
            phase = await asyncio.wait_for(self._first_phase(user_id, conversation, zone_name), timeout=limit)
        except asyncio.TimeoutError as exc:
            logger.warning("first phase exceeded %.1fs for user=%s", limit, user_id)
            raise ProviderTimeoutError(f"Assistant turn exceeded {limit} seconds.") from exc

        if not phase.tool_calls:
            return self._replay(phase.raw_chunks)
        follow_up = [
            *conversation,
            {"role": "assistant", "content": None, "tool_calls": [call.as_message_call() for call in phase.tool_calls]},
            *phase.tool_messages,
        ]
        return self._follow_up(follow_up, limit)

    async def _first_phase(self, user_id: str, conversation: list[dict[str, Any]], timezone: str) -> FirstPhase:
        phase = FirstPhase()
        decoder = SSELineDecoder()
        accumulator = ToolCallAccumulator()
        text_parts: list[str] = []
        async with self.provider.stream(conversation, tools=self.tool_declarations()) as response:
            async for chunk in stream_bytes(response):
                phase.raw_chunks.append(chunk)
                for payload in decoder.feed(chunk):
                    text, tool_deltas = chunk_deltas(payload)
                    if text:
                        text_parts.append(text)
                    for delta in tool_deltas:
                        accumulator.add(delta)
        for payload in decoder.flush():
            text, tool_deltas = chunk_deltas(payload)
            text_parts.append(text)
            for delta in tool_deltas:
                accumulator.add(delta)
        phase.text = "".join(text_parts)

        if accumulator:
            phase.tool_calls = accumulator.finalize()
            for call in phase.tool_calls:
                result = await self._run_tool(user_id, call, timezone)
                phase.tool_messages.append(
                    {
                        "tool_call_id": call.call_id,
                        "role": "tool",
                        "name": call.function_name,
                        "content": json.dumps(result, default=str),
                    }
                )
        return phase

    async def _run_tool(self, user_id: str, call: ParsedToolCall, timezone: str) -> dict[str, Any]:
        if call.parse_error or call.arguments is None:
            return {"success": False, "error": call.parse_error or "Missing tool arguments.", "error_kind": "ValidationError"}
        outcome = await self.dispatcher.execute(
            ActionRequest(
                action_name=call.function_name,
                parameters=call.arguments,
                requesting_user_id=user_id,
                timezone=timezone,
            )
        )
        return outcome.as_tool_result()

    @staticmethod
    async def _replay(chunks: list[bytes]) -> AsyncIterator[bytes]:
        for chunk in chunks:
            yield chunk

    async def _follow_up(self, conversation: list[dict[str, Any]], limit: float) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + limit
        try:
            async with self.provider.stream(conversation) as response:
                chunks = stream_bytes(response)
                try:
                    while True:
                        remaining = deadline - loop.time()
                        if remaining <= 0:
                            raise ProviderTimeoutError(f"Follow-up stream exceeded {limit} seconds.")
                        try:
                            chunk = await asyncio.wait_for(chunks.__anext__(), timeout=remaining)
                        except StopAsyncIteration:
                            break
                        except asyncio.TimeoutError as exc:
                            raise ProviderTimeoutError(f"Follow-up stream exceeded {limit} seconds.") from exc
                        yield chunk
                finally:
                    await chunks.aclose()
        except PipelineError as exc:
            logger.error("follow-up stream failed: %s", exc)
            yield encode_sse({"error": exc.user_message, "kind": exc.kind})
            yield encode_sse("[DONE]")

    async def complete_with_action(
        self,
        *,
        messages: list[dict[str, Any]],
        timezone: str | None = None,
    ) -> tuple[str, str]:
        zone_name = timezone or self.default_timezone
        conversation = self._base_messages(messages, zone_name, ROUTER_PROMPT)
        try:
            return await asyncio.wait_for(self.provider.complete(conversation), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError(f"Completion exceeded {self.timeout_seconds} seconds.") from exc
