from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .errors import ComplianceLogError, PersistenceError
from .practice_store import PracticeStore

logger = logging.getLogger(__name__)

UNAUTHORIZED_ACCESS_ATTEMPT = "UNAUTHORIZED_ACCESS_ATTEMPT"
ACCESS_TYPES = {"read", "write", "delete", "export"}

MINIMUM_NECESSARY_FIELDS: dict[str, frozenset[str]] = {
    "create_client": frozenset({"first_name", "last_name", "email", "phone", "notes"}),
    "update_client": frozenset({"client_id", "first_name", "last_name", "email", "phone", "notes"}),
    "delete_client": frozenset({"client_id"}),
    "create_appointment": frozenset({"client_id", "appointment_date", "duration_minutes", "status", "notes"}),
    "update_appointment": frozenset({"appointment_id", "appointment_date", "duration_minutes", "status", "notes"}),
    "delete_appointment": frozenset({"appointment_id"}),
    "create_invoice": frozenset({"client_id", "amount", "due_date", "notes"}),
    "update_invoice": frozenset({"invoice_id", "amount", "due_date", "status", "notes"}),
    "delete_invoice": frozenset({"invoice_id"}),
    "create_reminder": frozenset({"title", "description", "reminder_date", "priority"}),
    "create_soap_note": frozenset({"client_id", "subjective", "objective", "assessment", "plan"}),
}


@dataclass(frozen=True)
class AuditRecord:
    actor_id: str
    action: str
    entity_type: str
    entity_id: str | None = None
    success: bool = True
    justification: str | None = None
    old_value: Any = None
    new_value: Any = None
    error_message: str | None = None


@dataclass(frozen=True)
class PHIAccessRecord:
    actor_id: str
    access_type: str
    entity_type: str
    client_id: str
    justification: str
    entity_id: str | None = None
    accessed_fields: list[str] | None = field(default=None)


@dataclass(frozen=True)
class MinimumNecessaryResult:
    valid: bool
    error: str | None = None


def is_psychotherapy_note(entity_type: str, fields: Iterable[str] | None) -> bool:
    if entity_type != "soap_note" or not fields:
        return False
    return any("psychotherapy" in name.lower() for name in fields)


class ComplianceService:
    """Access control plus the two audit trails.

    General audit records are best-effort for ordinary records and load-bearing for
    protected ones; PHI access records are always load-bearing.
    """

    def __init__(
        self,
        store: PracticeStore,
        minimum_fields: dict[str, frozenset[str]] | None = None,
    ) -> None:
        self._store = store
        self._minimum_fields = dict(MINIMUM_NECESSARY_FIELDS if minimum_fields is None else minimum_fields)

    async def verify_access(self, actor_id: str, client_id: str) -> bool:
        try:
            if await self._store.owns_client(actor_id, client_id):
                return True
            if await self._store.is_portal_user(actor_id, client_id):
                return True
        except PersistenceError as exc:
            logger.error("access verification lookup failed for actor=%s: %s", actor_id, exc)

        await self.record(
            AuditRecord(
                actor_id=actor_id,
                action=UNAUTHORIZED_ACCESS_ATTEMPT,
                entity_type="client",
                entity_id=client_id,
                success=False,
                error_message="Actor attempted to access a client record without authorization.",
            ),
            protected=True,
        )
        return False

    async def log_access(self, record: PHIAccessRecord) -> str:
        if record.access_type not in ACCESS_TYPES:
            raise ComplianceLogError(f"Invalid PHI access type: {record.access_type}")
        if not record.client_id:
            raise ComplianceLogError("PHI access must name the client record being accessed.")
        if not (record.justification or "").strip():
            raise ComplianceLogError("PHI access requires a documented justification.")
        try:
            return await self._store.append_phi_access(
                user_id=record.actor_id,
                access_type=record.access_type,
                entity_type=record.entity_type,
                entity_id=record.entity_id,
                client_id=record.client_id,
                justification=record.justification,
                accessed_fields=record.accessed_fields,
            )
        except PersistenceError as exc:
            logger.error("PHI access logging failed for actor=%s client=%s: %s", record.actor_id, record.client_id, exc)
            raise ComplianceLogError("Compliance logging failed: PHI access record could not be written.") from exc

    async def record(self, audit: AuditRecord, *, protected: bool) -> str | None:
        try:
            return await self._store.append_audit(
                user_id=audit.actor_id,
                action=audit.action,
                entity_type=audit.entity_type,
                entity_id=audit.entity_id,
                success=audit.success,
                justification=audit.justification,
                old_values=audit.old_value,
                new_values=audit.new_value,
                error_message=audit.error_message,
            )
        except PersistenceError as exc:
            if protected:
                logger.error("audit write failed for protected %s %s: %s", audit.entity_type, audit.action, exc)
                raise ComplianceLogError("Compliance logging failed: audit record could not be written.") from exc
            logger.warning("audit write skipped for %s %s: %s", audit.entity_type, audit.action, exc)
            return None

    def validate_minimum_necessary(self, action_name: str, accessed_fields: Iterable[str]) -> MinimumNecessaryResult:
        allowed = self._minimum_fields.get(action_name)
        if allowed is None:
            logger.info("no minimum-necessary declaration for action %s; allowing", action_name)
            return MinimumNecessaryResult(valid=True)
        extra = sorted(set(accessed_fields) - allowed)
        if extra:
            return MinimumNecessaryResult(
                valid=False,
                error=(
                    f"Action '{action_name}' is accessing more fields than necessary: "
                    f"{', '.join(extra)}"
                ),
            )
        return MinimumNecessaryResult(valid=True)

    async def recent_audit(self, actor_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return await self._store.get_audit_logs(actor_id, limit)

    async def recent_phi_access(self, actor_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return await self._store.get_phi_access_logs(actor_id, limit)
