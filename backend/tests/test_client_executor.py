from __future__ import annotations

import json

import httpx
import pytest

from assistant_client import ClientActionExecutor, extract_action_payload, friendly_failure


def test_fenced_block_is_preferred_and_removed():
    text = (
        "I'll set that up.\n"
        '```json\n{"action": "create_reminder", "params": {"title": "Call Jane", "reminder_date": "tomorrow"}}\n```\n'
        "Anything else?"
    )
    found = extract_action_payload(text)

    assert found.strategy == "fence"
    assert found.action == "create_reminder"
    assert found.params == {"title": "Call Jane", "reminder_date": "tomorrow"}
    assert found.cleaned_text == "I'll set that up.\n\nAnything else?"


def test_bare_object_is_found_between_outer_braces():
    found = extract_action_payload(
        'Scheduling now {"action": "create_appointment", "params": {"client_name": "Jane Doe"}}'
    )
    assert found.strategy == "object"
    assert found.params == {"client_name": "Jane Doe"}
    assert found.cleaned_text == "Scheduling now"


def test_action_prefix_is_the_last_resort():
    text = 'Note {draft} then ACTION: {"action": "list_clients", "params": {}}'
    found = extract_action_payload(text)
    assert found.strategy == "prefix"
    assert found.action == "list_clients"
    assert found.cleaned_text == "Note {draft} then"


def test_action_label_is_removed_with_the_object():
    found = extract_action_payload('Sure. ACTION: {"action": "list_clients", "params": {}}')
    assert found.strategy == "object"
    assert found.action == "list_clients"
    assert found.cleaned_text == "Sure."


@pytest.mark.parametrize(
    "text",
    [
        "",
        None,
        "Just chatting, no action here.",
        '{"action": "list_clients"}',
        '{"params": {}}',
        '```json\n{"action": ""\n```',
        "{" * 5000 + "}" * 5000,
    ],
)
def test_extraction_never_raises(text):
    assert extract_action_payload(text) is None


@pytest.mark.parametrize(
    ("message", "category"),
    [
        ("You do not have authorization to access this client's information.", "permission"),
        ('Multiple clients match "John": John Doe, John Smith.', "ambiguous"),
        ('Client "Bob" not found. Available clients: Jane Doe', "client"),
        ("Invalid date/time: Could not understand the date 'soonish'.", "datetime"),
        ("Amount must be positive.", "generic"),
    ],
)
def test_failure_categories(message, category):
    assert friendly_failure(message)[0] == category


class Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


async def _no_sleep(_delay):
    return None


def _executor(recorder: Recorder, *, token: str | None = "therapist-a", max_retries: int = 2) -> ClientActionExecutor:
    return ClientActionExecutor(
        base_url="http://assistant.test/",
        access_token=token,
        max_retries=max_retries,
        base_delay=0,
        transport=httpx.MockTransport(recorder),
        sleep=_no_sleep,
    )


@pytest.mark.asyncio
async def test_success_posts_the_action_with_bearer_token():
    recorder = Recorder(
        httpx.Response(200, json={"success": True, "result": {"id": "a-1"}, "action_id": "act-1", "lifecycle": []})
    )

    result = await _executor(recorder).execute(
        "create_appointment", {"client_name": "Jane Doe"}, timezone="America/Chicago"
    )

    assert result.success
    assert result.message == "Appointment scheduled successfully!"
    assert result.result == {"id": "a-1"}
    assert result.attempts == 1
    request = recorder.requests[0]
    assert request.url.path == "/actions/execute"
    assert request.headers["Authorization"] == "Bearer therapist-a"
    assert json.loads(request.content) == {
        "action": "create_appointment",
        "params": {"client_name": "Jane Doe"},
        "timezone": "America/Chicago",
    }


@pytest.mark.asyncio
async def test_transient_failures_retry_then_succeed():
    recorder = Recorder(
        httpx.ConnectTimeout("timed out"),
        httpx.Response(503, json={"error": "Service temporarily unavailable"}),
        httpx.Response(200, json={"success": True, "result": {}}),
    )

    result = await _executor(recorder).execute("list_clients", {})

    assert result.success
    assert result.attempts == 3
    assert result.message == "Action completed successfully!"


@pytest.mark.asyncio
async def test_retry_ceiling_yields_a_transient_failure():
    recorder = Recorder(
        *[httpx.Response(429, json={"error": "Rate limit exceeded. Please try again later."}) for _ in range(3)]
    )

    result = await _executor(recorder, max_retries=2).execute("create_client", {"first_name": "A"})

    assert not result.success
    assert result.category == "transient"
    assert result.attempts == 3
    assert len(recorder.requests) == 3


@pytest.mark.asyncio
async def test_terminal_failure_is_not_retried_and_is_friendly():
    recorder = Recorder(
        httpx.Response(400, json={"error": 'Client "Bob" not found. Available clients: Jane Doe', "error_kind": "NotFound"})
    )

    result = await _executor(recorder).execute("create_invoice", {"client_name": "Bob", "amount": 10})

    assert not result.success
    assert result.category == "client"
    assert result.message.startswith("Could not find the client")
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_missing_token_or_bad_input_never_calls_the_backend():
    recorder = Recorder()

    unsigned = await _executor(recorder, token=None).execute("list_clients", {})
    bad_params = await _executor(recorder).execute("list_clients", ["nope"])

    assert unsigned.category == "auth"
    assert bad_params.message == "Invalid parameters provided."
    assert recorder.requests == []
