from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from records import (
    AuditRecord,
    ComplianceLogError,
    ComplianceService,
    PersistenceError,
    PHIAccessRecord,
    PracticeStore,
    is_psychotherapy_note,
)

from . import schemas
from .errors import (
    ActionValidationError,
    AmbiguousMatchError,
    ComplianceFailure,
    FieldViolation,
    NotFoundError,
    PersistenceFailure,
    PipelineError,
    UnauthorizedError,
    UnknownActionError,
)
from .hooks import HookRunner
from .lifecycle import ActionLifecycleService, LifecycleError
from .models import (
    DEFAULT_TIMEZONE,
    ActionOutcome,
    ActionRequest,
    ActionTarget,
    ExecutionContext,
    MutationResult,
)
from .registry import ActionDefinition, ActionRegistry
from .resolver import EntityResolver

logger = logging.getLogger(__name__)

_ENTITY_ID_FIELDS = {
    "client": "client_id",
    "appointment": "appointment_id",
    "invoice": "invoice_id",
    "reminder": "reminder_id",
    "soap_note": "soap_note_id",
}


class ActionDispatcher:
    def __init__(
        self,
        *,
        registry: ActionRegistry,
        store: PracticeStore,
        resolver: EntityResolver,
        compliance: ComplianceService,
        hooks: HookRunner,
        lifecycle: ActionLifecycleService,
        default_timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        self.registry = registry
        self.store = store
        self.resolver = resolver
        self.compliance = compliance
        self.hooks = hooks
        self.lifecycle = lifecycle
        self.default_timezone = default_timezone

    async def execute(self, request: ActionRequest) -> ActionOutcome:
        ctx = ExecutionContext(
            user_id=request.requesting_user_id,
            request_id=uuid.uuid4().hex,
            timezone=request.timezone or self.default_timezone,
        )
        action = self.registry.resolve(request.action_name)
        if action is None:
            error = UnknownActionError(request.action_name)
            logger.info("rejected unknown action %r for user=%s", request.action_name, ctx.user_id)
            return ActionOutcome(status="failed", error_kind=error.kind, message=error.user_message)

        raw = request.parameters if isinstance(request.parameters, dict) else {}
        logger.info("dispatching %s for user=%s keys=%s", action.name.value, ctx.user_id, sorted(raw))
        try:
            record = await self.lifecycle.start(
                user_id=ctx.user_id,
                action_type=action.name.value,
                entity_type=action.entity_type,
                parameter_keys=list(raw),
            )
        except LifecycleError as exc:
            logger.error("could not open lifecycle for %s: %s", action.name.value, exc)
            failure = PersistenceFailure(str(exc))
            return ActionOutcome(status="failed", error_kind=failure.kind, message=failure.user_message)

        state = _StageTracker(self.lifecycle, record.action_id, record.lifecycle)
        target = ActionTarget()
        try:
            await state.advance("validating")
            params = schemas.validate(action.name, request.parameters, timezone=ctx.timezone)

            await state.advance("resolving")
            params = await self._resolve(ctx, params)

            await state.advance("authorizing")
            target = await self._authorize(ctx, action, params, raw)

            await state.advance("mutating")
            mutation = await self._mutate(ctx, action, params, target)
            target.entity_id = mutation.entity_id or target.entity_id

            await state.advance("auditing", entity_id=target.entity_id)
            await self._audit_success(ctx, action, mutation)

            await state.advance("completed", result=mutation.data)
        except PipelineError as exc:
            return await self._fail(ctx, action, state, target, exc)
        except asyncio.CancelledError:
            await self._fail(ctx, action, state, target, PipelineError("Action cancelled before completion."))
            raise

        outcome = ActionOutcome(
            status="completed",
            data=mutation.data,
            lifecycle=list(state.lifecycle),
            action_id=record.action_id,
            message=mutation.message,
        )
        self.hooks.run_after(ctx, action, outcome)
        return outcome

    async def _resolve(self, ctx: ExecutionContext, params: schemas.ActionParams) -> schemas.ActionParams:
        reference = getattr(params, "client_id", None)
        if not reference or schemas.is_uuid(reference):
            return params
        client_id = await self.resolver.resolve_client(ctx.user_id, reference)
        return params.model_copy(update={"client_id": client_id})

    async def _authorize(
        self,
        ctx: ExecutionContext,
        action: ActionDefinition,
        params: schemas.ActionParams,
        raw: dict[str, Any],
    ) -> ActionTarget:
        id_field = _ENTITY_ID_FIELDS.get(action.entity_type, "")
        target = ActionTarget(client_id=getattr(params, "client_id", None))
        if action.operation == "create":
            target.entity_id = self.store.new_id()
        elif action.operation in {"update", "delete"}:
            target.entity_id = getattr(params, id_field, None)

        creating_client = action.entity_type == "client" and action.operation == "create"
        if creating_client:
            target.client_id = target.entity_id
        elif action.protected and action.entity_type != "client" and action.operation in {"update", "delete"}:
            target.existing = await self._load_owned(ctx, action, target.entity_id)
            target.client_id = target.existing.get("client_id")

        if action.protected and target.client_id and not creating_client:
            if not await self.compliance.verify_access(ctx.user_id, target.client_id):
                raise UnauthorizedError(f"Access to client {target.client_id} denied.")

        if is_psychotherapy_note(action.entity_type, list(raw)):
            raise UnauthorizedError(
                "Psychotherapy notes require separate authorization.",
                user_message="Psychotherapy notes need separate authorization and cannot be written by the assistant.",
            )

        decision = self.hooks.run_before(ctx, action, params, raw)
        if not decision.allowed:
            raise ActionValidationError([FieldViolation(field="parameters", message=decision.message)])

        if action.protected and target.client_id:
            try:
                await self.compliance.log_access(
                    PHIAccessRecord(
                        actor_id=ctx.user_id,
                        access_type=action.access_type,
                        entity_type=action.entity_type,
                        entity_id=target.entity_id,
                        client_id=target.client_id,
                        justification=f"Assistant {action.name.value} requested by the practice owner",
                        accessed_fields=schemas.accessed_fields(params),
                    )
                )
            except ComplianceLogError as exc:
                raise ComplianceFailure(str(exc)) from exc
        return target

    async def _load_owned(self, ctx: ExecutionContext, action: ActionDefinition, record_id: str | None) -> dict[str, Any]:
        label = action.entity_type.replace("_", " ").capitalize()
        if not record_id:
            raise NotFoundError(f"{label} not found.")
        try:
            existing = await self.store.get_owned(action.entity_type, record_id, ctx.user_id)
        except PersistenceError as exc:
            raise PersistenceFailure(str(exc)) from exc
        if existing is None:
            raise NotFoundError(f"{label} not found.")
        return existing

    async def _mutate(
        self,
        ctx: ExecutionContext,
        action: ActionDefinition,
        params: schemas.ActionParams,
        target: ActionTarget,
    ) -> MutationResult:
        try:
            return await action.handler(ctx, params, target)
        except PersistenceError as exc:
            raise PersistenceFailure(str(exc)) from exc

    async def _audit_success(self, ctx: ExecutionContext, action: ActionDefinition, mutation: MutationResult) -> None:
        if action.operation == "read":
            return
        try:
            await self.compliance.record(
                AuditRecord(
                    actor_id=ctx.user_id,
                    action=action.audit_action,
                    entity_type=action.entity_type,
                    entity_id=mutation.entity_id,
                    success=True,
                    justification=f"Assistant {action.name.value}",
                    old_value=mutation.old_value,
                    new_value=mutation.new_value,
                ),
                protected=action.protected,
            )
        except ComplianceLogError as exc:
            raise ComplianceFailure(str(exc)) from exc

    async def _fail(
        self,
        ctx: ExecutionContext,
        action: ActionDefinition,
        state: "_StageTracker",
        target: ActionTarget,
        error: PipelineError,
    ) -> ActionOutcome:
        logger.info("%s failed at %s for user=%s: %s", action.name.value, state.current, ctx.user_id, error.kind)
        final = error
        if action.operation != "read":
            try:
                await self.compliance.record(
                    AuditRecord(
                        actor_id=ctx.user_id,
                        action=action.audit_action,
                        entity_type=action.entity_type,
                        entity_id=target.entity_id,
                        success=False,
                        justification=f"Assistant {action.name.value}",
                        error_message=f"{error.kind}: {error.message}",
                    ),
                    protected=action.protected,
                )
            except ComplianceLogError as exc:
                final = ComplianceFailure(str(exc))
        await state.fail(error_kind=final.kind, error_message=final.message)

        errors: list[dict[str, Any]] = [{"code": final.kind, "message": final.user_message}]
        if isinstance(final, ActionValidationError):
            errors = [violation.as_dict() for violation in final.violations]
        data: dict[str, Any] = {}
        if isinstance(final, NotFoundError) and final.suggestions:
            data["suggestions"] = final.suggestions
        if isinstance(final, AmbiguousMatchError):
            data["candidates"] = final.candidates
        return ActionOutcome(
            status="failed",
            data=data,
            errors=errors,
            lifecycle=list(state.lifecycle),
            action_id=state.action_id,
            error_kind=final.kind,
            message=final.user_message,
        )


class _StageTracker:
    def __init__(self, lifecycle: ActionLifecycleService, action_id: str, states: list[str]) -> None:
        self._lifecycle = lifecycle
        self.action_id = action_id
        self.lifecycle = list(states)

    @property
    def current(self) -> str:
        return self.lifecycle[-1]

    async def advance(self, next_state: str, **fields: Any) -> None:
        try:
            self.lifecycle = await self._lifecycle.transition(
                action_id=self.action_id, next_state=next_state, **fields
            )
        except LifecycleError as exc:
            raise PersistenceFailure(str(exc)) from exc

    async def fail(self, *, error_kind: str, error_message: str) -> None:
        if self.current in {"completed", "failed"}:
            return
        try:
            self.lifecycle = await self._lifecycle.transition(
                action_id=self.action_id,
                next_state="failed",
                error_kind=error_kind,
                error_message=error_message,
            )
        except LifecycleError as exc:
            logger.error("could not mark action %s failed: %s", self.action_id, exc)
            self.lifecycle = [*self.lifecycle, "failed"]
