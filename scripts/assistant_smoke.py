#!/usr/bin/env python3
from __future__ import annotations

import asyncio
import importlib
import json
import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from fastapi.testclient import TestClient


@dataclass
class Scenario:
  name: str
  message: str
  provider_turns: list[httpx.Response]
  expected_action: str | None


def sse(payload: dict[str, Any] | str) -> bytes:
  data = payload if isinstance(payload, str) else json.dumps(payload)
  return f"data: {data}\n\n".encode("utf-8")


def text_turn(text: str) -> httpx.Response:
  words = text.split(" ")
  chunks = [sse({"choices": [{"delta": {"content": word + (" " if i < len(words) - 1 else "")}}]}) for i, word in enumerate(words)]
  chunks.append(sse("[DONE]"))
  return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=b"".join(chunks))


def tool_turn(call_id: str, name: str, arguments: dict[str, Any]) -> httpx.Response:
  raw = json.dumps(arguments)
  cut = max(1, len(raw) // 3)
  fragments = [raw[:cut], raw[cut : 2 * cut], raw[2 * cut :]]
  chunks = []
  for position, fragment in enumerate(fragments):
    delta: dict[str, Any] = {"index": 0, "function": {"arguments": fragment}}
    if position == 0:
      delta["id"] = call_id
      delta["function"]["name"] = name
    chunks.append(sse({"choices": [{"delta": {"tool_calls": [delta]}}]}))
  chunks.append(sse("[DONE]"))
  return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=b"".join(chunks))


def scripted_transport(turns: list[httpx.Response], seen: list[dict[str, Any]]) -> httpx.MockTransport:
  queue = list(turns)

  def handle(request: httpx.Request) -> httpx.Response:
    seen.append(json.loads(request.content.decode("utf-8")))
    if not queue:
      return httpx.Response(500, json={"error": {"message": "smoke script ran out of provider turns"}})
    return queue.pop(0)

  return httpx.MockTransport(handle)


def stream_text(payload_text: str) -> str:
  parts: list[str] = []
  for line in payload_text.splitlines():
    if not line.startswith("data: ") or line[6:] == "[DONE]":
      continue
    try:
      payload = json.loads(line[6:])
    except json.JSONDecodeError:
      continue
    for choice in payload.get("choices", []):
      parts.append((choice.get("delta") or {}).get("content") or "")
    if payload.get("error"):
      parts.append(f"[error: {payload['error']}]")
  return "".join(parts)


def run() -> int:
  repo_root = Path(__file__).resolve().parents[1]
  backend_dir = repo_root / "backend"
  if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

  workdir = tempfile.mkdtemp(prefix="assistant-smoke-")
  os.environ["ASSISTANT_DB_PATH"] = str(Path(workdir) / "smoke.sqlite")
  os.environ.setdefault("ASSISTANT_PROVIDER_API_KEY", "smoke-key")
  os.environ.setdefault("ASSISTANT_PROVIDER_RETRY_BASE_DELAY", "0")

  backend_module = importlib.import_module("main")
  backend_module = importlib.reload(backend_module)

  from assistant_client import ClientActionExecutor, extract_action_payload

  headers = {"Authorization": "Bearer smoke-therapist"}
  scenarios = [
    Scenario(
      name="Plain reply is replayed",
      message="Good morning!",
      provider_turns=[text_turn("Good morning! How can I help with the practice today?")],
      expected_action=None,
    ),
    Scenario(
      name="Appointment for Jane Doe",
      message="Create an appointment for Jane Doe tomorrow at 2pm",
      provider_turns=[
        tool_turn("call_1", "create_appointment", {"client_name": "Jane Doe", "appointment_date": "tomorrow at 2pm"}),
        text_turn("Jane Doe is booked for tomorrow at 2pm."),
      ],
      expected_action="create_appointment",
    ),
    Scenario(
      name="Ambiguous first name is reported",
      message="Invoice John for $120",
      provider_turns=[
        tool_turn("call_2", "create_invoice", {"client_name": "John", "amount": 120}),
        text_turn("There are two Johns. Which one did you mean?"),
      ],
      expected_action="create_invoice",
    ),
  ]

  results: list[dict[str, Any]] = []
  with TestClient(backend_module.app) as client:
    for first, last in (("Jane", "Doe"), ("John", "Doe"), ("John", "Smith")):
      client.post(
        "/actions/execute",
        headers=headers,
        json={"action": "create_client", "params": {"first_name": first, "last_name": last}},
      )

    for scenario in scenarios:
      seen: list[dict[str, Any]] = []
      backend_module.container.use_provider_transport(scripted_transport(scenario.provider_turns, seen))
      response = client.post(
        "/chat/stream",
        headers=headers,
        json={"messages": [{"role": "user", "content": scenario.message}], "timezone": "America/New_York"},
      )
      tool_results = [
        json.loads(message["content"])
        for request in seen
        for message in request.get("messages", [])
        if message.get("role") == "tool"
      ]
      item: dict[str, Any] = {
        "name": scenario.name,
        "status_code": response.status_code,
        "provider_requests": len(seen),
        "reply": stream_text(response.text)[:240],
        "tool_results": tool_results,
      }
      if scenario.expected_action is None:
        item["pass"] = response.status_code == 200 and len(seen) == 1
      else:
        item["pass"] = response.status_code == 200 and len(seen) == 2 and bool(tool_results)
      results.append(item)

    audit = client.get("/logs/audit", headers=headers).json()

  async def client_side() -> dict[str, Any]:
    reply = 'Sure. {"action": "create_reminder", "params": {"title": "Call Jane Doe", "reminder_date": "in 2 hours"}}'
    extracted = extract_action_payload(reply)
    if extracted is None:
      return {"name": "Client-side executor", "pass": False, "error": "no action extracted"}
    executor = ClientActionExecutor(
      base_url="http://assistant.local",
      access_token="smoke-therapist",
      transport=httpx.ASGITransport(app=backend_module.app),
    )
    outcome = await executor.execute_extracted(extracted, timezone="America/New_York")
    await backend_module.container.hooks.drain()
    return {
      "name": "Client-side executor",
      "pass": outcome.success,
      "message": outcome.message,
      "attempts": outcome.attempts,
      "cleaned_text": extracted.cleaned_text,
    }

  results.append(asyncio.run(client_side()))

  passed = sum(1 for item in results if item.get("pass"))
  report = {
    "database": os.environ["ASSISTANT_DB_PATH"],
    "passed": passed,
    "failed": len(results) - passed,
    "audit_entries": len(audit.get("items", [])),
    "phi_access_entries": len(audit.get("phi_access", [])),
    "scenarios": results,
  }
  print(json.dumps(report, indent=2, ensure_ascii=True))
  return 0 if passed == len(results) else 1


if __name__ == "__main__":
  raise SystemExit(run())
