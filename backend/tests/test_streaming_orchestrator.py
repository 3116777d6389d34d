from __future__ import annotations

import json

import httpx
import pytest

from assistant_core import (
    ChatCompletionsProvider,
    ProviderCandidate,
    ProviderError,
    ProviderQuotaError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    StreamingOrchestrator,
)
from conftest import count_rows, seed_client
from fake_provider import (
    ScriptedProvider,
    completion_response,
    error_response,
    stream_response,
    text_chunks,
    tool_call_chunks,
)
from sse_utils import DONE, error_events, parse_sse_data

CANDIDATES = [
    ProviderCandidate(name="primary", base_url="https://provider.test/v1", api_key="k", model="model-a"),
    ProviderCandidate(name="fallback", base_url="https://provider.test/v1", api_key="k", model="model-b"),
]
USER_TURN = [{"role": "user", "content": "Create an appointment for Jane Doe tomorrow at 2pm"}]


def _orchestrator(services, scripted: ScriptedProvider, *, timeout: float = 5.0, max_retries: int = 1):
    provider = ChatCompletionsProvider(
        candidates=CANDIDATES,
        timeout_seconds=timeout,
        max_retries=max_retries,
        retry_base_delay=0,
        transport=scripted.transport,
    )
    return StreamingOrchestrator(
        provider=provider,
        dispatcher=services.dispatcher,
        registry=services.registry,
        timeout_seconds=timeout,
    )


async def _collect(body) -> bytes:
    return b"".join([chunk async for chunk in body])


@pytest.mark.asyncio
async def test_text_only_reply_is_replayed_byte_for_byte_with_one_request(services):
    chunks = text_chunks("Hello", ", how can ", "I help?")
    scripted = ScriptedProvider(stream_response(chunks))

    body = await _orchestrator(services, scripted).stream_reply(user_id="therapist-a", messages=USER_TURN)

    assert await _collect(body) == b"".join(chunks)
    assert len(scripted.requests) == 1
    request = scripted.requests[0]
    assert request["stream"] is True
    assert request["tool_choice"] == "auto"
    assert {tool["function"]["name"] for tool in request["tools"]} >= {"create_appointment", "list_clients"}
    assert request["messages"][0]["role"] == "system"
    assert request["messages"][-1] == USER_TURN[0]


@pytest.mark.asyncio
async def test_tool_call_is_dispatched_then_follow_up_is_streamed(services):
    client_id = seed_client(services.db, "therapist-a", "Jane", "Doe")
    follow_up = text_chunks("Booked Jane Doe for tomorrow at 2pm.")
    scripted = ScriptedProvider(
        stream_response(
            tool_call_chunks(
                ("call_1", "create_appointment", ['{"client_name": "Ja', 'ne Doe", "appointment_da', 'te": "tomorrow at 2pm"}'])
            )
        ),
        stream_response(follow_up),
    )

    body = await _orchestrator(services, scripted).stream_reply(
        user_id="therapist-a", messages=USER_TURN, timezone="America/New_York"
    )

    assert await _collect(body) == b"".join(follow_up)
    assert count_rows(services.db, "appointments", "client_id = ?", (client_id,)) == 1
    assert len(scripted.requests) == 2

    second = scripted.requests[1]
    assert "tools" not in second
    assistant_turn, tool_turn = second["messages"][-2:]
    assert assistant_turn["role"] == "assistant"
    assert assistant_turn["tool_calls"][0]["id"] == "call_1"
    assert assistant_turn["tool_calls"][0]["function"]["name"] == "create_appointment"
    assert tool_turn["role"] == "tool"
    assert tool_turn["tool_call_id"] == "call_1"
    result = json.loads(tool_turn["content"])
    assert result["success"] is True
    assert result["client_name"] == "Jane Doe"
    await services.hooks.drain()


@pytest.mark.asyncio
async def test_malformed_arguments_are_reported_back_not_dispatched(services):
    scripted = ScriptedProvider(
        stream_response(tool_call_chunks(("call_1", "create_reminder", ['{"title": "Call', " back"]))),
        stream_response(text_chunks("Sorry, could you repeat that?")),
    )

    body = await _orchestrator(services, scripted).stream_reply(user_id="therapist-a", messages=USER_TURN)
    await _collect(body)

    tool_turn = scripted.requests[1]["messages"][-1]
    result = json.loads(tool_turn["content"])
    assert result["success"] is False
    assert result["error_kind"] == "ValidationError"
    assert count_rows(services.db, "ai_actions") == 0


@pytest.mark.asyncio
async def test_failed_action_is_reported_to_the_model(services):
    seed_client(services.db, "therapist-a", "John", "Doe")
    seed_client(services.db, "therapist-a", "John", "Smith")
    scripted = ScriptedProvider(
        stream_response(tool_call_chunks(("call_1", "create_invoice", ['{"client_name": "John", "amount": 90}']))),
        stream_response(text_chunks("Which John did you mean?")),
    )

    body = await _orchestrator(services, scripted).stream_reply(user_id="therapist-a", messages=USER_TURN)
    await _collect(body)

    result = json.loads(scripted.requests[1]["messages"][-1]["content"])
    assert result == {
        "success": False,
        "error": result["error"],
        "error_kind": "Ambiguous",
    }
    assert "John Doe, John Smith" in result["error"]


@pytest.mark.asyncio
async def test_slow_first_phase_times_out_without_follow_up(services):
    scripted = ScriptedProvider(stream_response(text_chunks("a", "b", "c"), delay=0.2))

    with pytest.raises(ProviderTimeoutError):
        await _orchestrator(services, scripted, timeout=0.1).stream_reply(user_id="therapist-a", messages=USER_TURN)
    assert len(scripted.requests) == 1


@pytest.mark.asyncio
async def test_transient_errors_retry_up_to_the_ceiling(services):
    scripted = ScriptedProvider(
        error_response(503, "upstream unavailable"),
        error_response(503, "upstream unavailable"),
        error_response(503, "upstream unavailable"),
    )

    with pytest.raises(ProviderError):
        await _orchestrator(services, scripted, max_retries=1).stream_reply(user_id="therapist-a", messages=USER_TURN)
    assert len(scripted.requests) == 2


@pytest.mark.asyncio
async def test_network_error_then_success_recovers(services):
    chunks = text_chunks("Back online.")
    scripted = ScriptedProvider(httpx.ConnectError("connection refused"), stream_response(chunks))

    body = await _orchestrator(services, scripted).stream_reply(user_id="therapist-a", messages=USER_TURN)

    assert await _collect(body) == b"".join(chunks)
    assert len(scripted.requests) == 2


@pytest.mark.asyncio
async def test_status_codes_map_to_typed_provider_errors(services):
    scripted = ScriptedProvider(error_response(429, "Rate limit reached"), error_response(429, "Rate limit reached"))
    with pytest.raises(ProviderRateLimitedError):
        await _orchestrator(services, scripted).stream_reply(user_id="therapist-a", messages=USER_TURN)

    scripted = ScriptedProvider(error_response(402, "insufficient credits"))
    with pytest.raises(ProviderQuotaError):
        await _orchestrator(services, scripted).stream_reply(user_id="therapist-a", messages=USER_TURN)
    assert len(scripted.requests) == 1


@pytest.mark.asyncio
async def test_follow_up_failure_becomes_an_error_event(services):
    scripted = ScriptedProvider(
        stream_response(tool_call_chunks(("call_1", "list_clients", ["{}"]))),
        error_response(400, "context length exceeded"),
    )

    body = await _orchestrator(services, scripted).stream_reply(user_id="therapist-a", messages=USER_TURN)
    text = (await _collect(body)).decode("utf-8")

    assert [event["kind"] for event in error_events(text)] == ["ProviderError"]
    assert parse_sse_data(text)[-1] == DONE


@pytest.mark.asyncio
async def test_follow_up_connection_drop_ends_with_an_error_event(services):
    partial = text_chunks("Booked ")[:1]
    scripted = ScriptedProvider(
        stream_response(tool_call_chunks(("call_1", "list_clients", ["{}"]))),
        stream_response(partial, fail_with=httpx.ReadError("connection reset")),
    )

    body = await _orchestrator(services, scripted).stream_reply(user_id="therapist-a", messages=USER_TURN)
    text = (await _collect(body)).decode("utf-8")

    assert text.startswith(partial[0].decode("utf-8"))
    assert [event["kind"] for event in error_events(text)] == ["ProviderError"]
    assert parse_sse_data(text)[-1] == DONE


@pytest.mark.asyncio
async def test_slow_follow_up_is_cut_off_at_the_deadline(services):
    scripted = ScriptedProvider(
        stream_response(tool_call_chunks(("call_1", "list_clients", ["{}"]))),
        stream_response(text_chunks("one ", "two ", "three"), delay=0.3),
    )

    body = await _orchestrator(services, scripted, timeout=0.5).stream_reply(
        user_id="therapist-a", messages=USER_TURN
    )
    text = (await _collect(body)).decode("utf-8")

    assert [event["kind"] for event in error_events(text)] == ["Timeout"]
    assert parse_sse_data(text)[-1] == DONE
    assert "three" not in text


@pytest.mark.asyncio
async def test_read_timeout_in_first_phase_is_a_typed_timeout(services):
    scripted = ScriptedProvider(
        stream_response(text_chunks("Hel")[:1], fail_with=httpx.ReadTimeout("read timed out")),
    )

    with pytest.raises(ProviderTimeoutError):
        await _orchestrator(services, scripted).stream_reply(user_id="therapist-a", messages=USER_TURN)


@pytest.mark.asyncio
async def test_router_completion_falls_back_to_the_next_candidate(services):
    scripted = ScriptedProvider(
        error_response(500, "model overloaded"),
        completion_response('Sure. {"action": "create_reminder", "params": {"title": "Call Jane"}}'),
    )

    text, provider_name = await _orchestrator(services, scripted).complete_with_action(messages=USER_TURN)

    assert provider_name == "fallback"
    assert text.endswith("}")
    assert [request["model"] for request in scripted.requests] == ["model-a", "model-b"]
    assert '"action"' in scripted.requests[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_router_completion_stops_on_quota_errors(services):
    scripted = ScriptedProvider(error_response(402, "insufficient credits"))

    with pytest.raises(ProviderQuotaError):
        await _orchestrator(services, scripted).complete_with_action(messages=USER_TURN)
    assert len(scripted.requests) == 1
