from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from records import ComplianceService

from .models import ActionOutcome, ExecutionContext
from .notifications import Notification, Notifier
from .registry import ActionDefinition, ActionName
from .schemas import ActionParams, requested_fields

logger = logging.getLogger(__name__)


BeforeHook = Callable[[ExecutionContext, ActionDefinition, ActionParams, dict[str, Any]], "HookDecision"]
AfterHook = Callable[[ExecutionContext, ActionDefinition, ActionOutcome], Awaitable[None]]


@dataclass(frozen=True)
class HookDecision:
    allowed: bool
    code: str = "ok"
    message: str = "allowed"


class HookRunner:
    def __init__(self) -> None:
        self._before_hooks: list[BeforeHook] = []
        self._after_hooks: list[AfterHook] = []
        self._pending: set[asyncio.Task[Any]] = set()

    def add_before(self, hook: BeforeHook) -> None:
        self._before_hooks.append(hook)

    def add_after(self, hook: AfterHook) -> None:
        self._after_hooks.append(hook)

    def run_before(
        self,
        ctx: ExecutionContext,
        action: ActionDefinition,
        params: ActionParams,
        raw: dict[str, Any],
    ) -> HookDecision:
        for hook in self._before_hooks:
            decision = hook(ctx, action, params, raw)
            if not decision.allowed:
                return decision
        return HookDecision(allowed=True)

    def run_after(self, ctx: ExecutionContext, action: ActionDefinition, outcome: ActionOutcome) -> None:
        # After-hooks never delay or fail the action that triggered them.
        for hook in self._after_hooks:
            task = asyncio.create_task(self._guarded(hook, ctx, action, outcome))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    async def _guarded(hook: AfterHook, ctx: ExecutionContext, action: ActionDefinition, outcome: ActionOutcome) -> None:
        try:
            await hook(ctx, action, outcome)
        except Exception as exc:
            logger.warning("after-hook failed for %s: %s", action.name.value, exc)


def minimum_necessary_hook(compliance: ComplianceService) -> BeforeHook:
    def hook(ctx: ExecutionContext, action: ActionDefinition, params: ActionParams, raw: dict[str, Any]) -> HookDecision:
        check = compliance.validate_minimum_necessary(action.name.value, requested_fields(action.name, raw))
        if not check.valid:
            return HookDecision(allowed=False, code="minimum_necessary", message=check.error or "Too many fields.")
        return HookDecision(allowed=True)

    return hook


def _appointment_notice(ctx: ExecutionContext, data: dict[str, Any]) -> Notification:
    return Notification(
        user_id=ctx.user_id,
        title="Appointment scheduled",
        message=f"Appointment with {data.get('client_name') or 'client'} on {data.get('appointment_date')}.",
        link="/calendar",
    )


def _invoice_notice(ctx: ExecutionContext, data: dict[str, Any]) -> Notification:
    return Notification(
        user_id=ctx.user_id,
        title="Invoice created",
        message=f"Invoice {data.get('invoice_number')} for ${float(data.get('amount') or 0):.2f} created.",
        link="/billing",
    )


def _reminder_notice(ctx: ExecutionContext, data: dict[str, Any]) -> Notification:
    return Notification(
        user_id=ctx.user_id,
        title="Reminder set",
        message=f"Reminder \"{data.get('title')}\" set for {data.get('reminder_date')}.",
        link="/dashboard",
    )


_NOTICES: dict[ActionName, Callable[[ExecutionContext, dict[str, Any]], Notification]] = {
    ActionName.CREATE_APPOINTMENT: _appointment_notice,
    ActionName.CREATE_INVOICE: _invoice_notice,
    ActionName.CREATE_REMINDER: _reminder_notice,
}


def notification_hook(notifier: Notifier) -> AfterHook:
    async def hook(ctx: ExecutionContext, action: ActionDefinition, outcome: ActionOutcome) -> None:
        build = _NOTICES.get(action.name)
        if build is None or not outcome.success:
            return
        await notifier.notify(build(ctx, outcome.data))

    return hook
