from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from assistant_core.retry import backoff_delay, is_transient

from .extraction import ExtractedAction

logger = logging.getLogger(__name__)

ACTION_SUCCESS: dict[str, str] = {
    "create_client": "Client added successfully!",
    "update_client": "Client updated successfully!",
    "delete_client": "Client deleted successfully!",
    "create_reminder": "Reminder created successfully!",
    "update_reminder": "Reminder updated successfully!",
    "delete_reminder": "Reminder deleted successfully!",
    "create_appointment": "Appointment scheduled successfully!",
    "update_appointment": "Appointment updated successfully!",
    "delete_appointment": "Appointment deleted successfully!",
    "create_invoice": "Invoice created successfully!",
    "update_invoice": "Invoice updated successfully!",
    "delete_invoice": "Invoice deleted successfully!",
    "create_soap_note": "SOAP note saved successfully!",
}
DEFAULT_SUCCESS = "Action completed successfully!"

FRIENDLY_PERMISSION = "You don't have permission to perform this action."
FRIENDLY_CLIENT = "Could not find the client. Please make sure the client name is correct and try again."
FRIENDLY_DATE = "There was an issue with the date or time. Please try again with a clearer date/time."
FRIENDLY_TRANSIENT = "The assistant service is busy or unreachable right now. Please try again in a moment."

_PERMISSION_RE = re.compile(r"unauthori[sz]ed|permission|denied|authorization", re.IGNORECASE)
_CLIENT_RE = re.compile(r"client", re.IGNORECASE)
_DATE_RE = re.compile(r"date|time", re.IGNORECASE)


@dataclass(frozen=True)
class ClientActionResult:
    success: bool
    message: str
    result: Any = None
    attempts: int = 1
    category: str | None = None
    action_id: str | None = None


def friendly_failure(message: str) -> tuple[str, str]:
    if _PERMISSION_RE.search(message):
        return "permission", FRIENDLY_PERMISSION
    if message.startswith("Multiple clients match"):
        return "ambiguous", message
    if _CLIENT_RE.search(message):
        return "client", FRIENDLY_CLIENT
    if _DATE_RE.search(message):
        return "datetime", FRIENDLY_DATE
    return "generic", message or "The assistant could not complete that request."


class _AttemptFailed(Exception):
    pass


class ClientActionExecutor:
    """Calls ``/actions/execute`` for an action lifted out of a text reply."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: str | None,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        base_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._transport = transport
        self._sleep = sleep

    async def execute_extracted(self, extracted: ExtractedAction, *, timezone: str | None = None) -> ClientActionResult:
        return await self.execute(extracted.action, extracted.params, timezone=timezone)

    async def execute(
        self,
        action: Any,
        params: Any,
        *,
        timezone: str | None = None,
    ) -> ClientActionResult:
        if not self.access_token:
            return ClientActionResult(
                success=False,
                message="You need to be signed in to let the assistant perform this action.",
                attempts=0,
                category="auth",
            )
        if not isinstance(action, str) or not action.strip():
            return ClientActionResult(success=False, message="Invalid action specified.", attempts=0, category="generic")
        if not isinstance(params, dict):
            return ClientActionResult(success=False, message="Invalid parameters provided.", attempts=0, category="generic")

        attempt = 0
        while True:
            attempt += 1
            try:
                body = await self._post(action, params, timezone)
            except _AttemptFailed as exc:
                message = str(exc)
                if is_transient(message) and attempt <= self.max_retries:
                    delay = backoff_delay(attempt, self.base_delay)
                    logger.info("retrying %s after transient failure (attempt %d): %s", action, attempt, message)
                    await self._sleep(delay)
                    continue
                if is_transient(message):
                    category, friendly = "transient", FRIENDLY_TRANSIENT
                else:
                    category, friendly = friendly_failure(message)
                logger.info("%s failed after %d attempt(s): %s", action, attempt, category)
                return ClientActionResult(success=False, message=friendly, attempts=attempt, category=category)

            return ClientActionResult(
                success=True,
                message=ACTION_SUCCESS.get(action, DEFAULT_SUCCESS),
                result=body.get("result"),
                attempts=attempt,
                action_id=body.get("action_id"),
            )

    async def _post(self, action: str, params: dict[str, Any], timezone: str | None) -> dict[str, Any]:
        payload: dict[str, Any] = {"action": action, "params": params}
        if timezone:
            payload["timezone"] = timezone
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.post(
                    f"{self.base_url}/actions/execute",
                    headers={"Authorization": f"Bearer {self.access_token}"},
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise _AttemptFailed("Request timeout") from exc
        except httpx.TransportError as exc:
            raise _AttemptFailed(f"Network error: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if response.status_code >= 400 or body.get("error") or not body.get("success", False):
            detail = body.get("error") or response.text.strip() or f"HTTP {response.status_code}"
            if response.status_code == 429 and not is_transient(detail):
                detail = f"Rate limit exceeded: {detail}"
            if response.status_code in {502, 503, 504} and not is_transient(detail):
                detail = f"Service temporarily unavailable: {detail}"
            raise _AttemptFailed(str(detail))
        return body
