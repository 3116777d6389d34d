from __future__ import annotations

import secrets
import string
from datetime import timedelta
from typing import Any

from assistant_core import schemas
from assistant_core.dates import local_day_bounds
from assistant_core.errors import NotFoundError
from assistant_core.models import ActionTarget, ExecutionContext, MutationResult
from assistant_core.registry import ActionDefinition, ActionName, ActionRegistry
from records import PracticeStore
from records.time_utils import parse_iso, resolve_zone, utc_now

_INVOICE_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits
DEFAULT_INVOICE_TERMS_DAYS = 30


def invoice_number(ctx: ExecutionContext) -> str:
    today = utc_now().astimezone(resolve_zone(ctx.timezone)).strftime("%Y%m%d")
    suffix = "".join(secrets.choice(_INVOICE_SUFFIX_ALPHABET) for _ in range(5))
    return f"INV-{today}-{suffix}"


def _changes(params: schemas.ActionParams, fields: frozenset[str]) -> dict[str, Any]:
    return {name: getattr(params, name) for name in sorted(fields & params.model_fields_set)}


def _roster_entry(row: dict[str, Any]) -> dict[str, Any]:
    return {key: row.get(key) for key in ("id", "first_name", "last_name", "email", "phone")}


class PracticeActionset:
    def __init__(self, store: PracticeStore) -> None:
        self.store = store

    async def _client_name(self, ctx: ExecutionContext, client_id: str) -> str:
        client = await self.store.get_owned("client", client_id, ctx.user_id)
        if not client:
            return ""
        return f"{client['first_name']} {client['last_name']}".strip()

    # Clients

    async def list_clients(
        self, ctx: ExecutionContext, params: schemas.ListClientsParams, target: ActionTarget
    ) -> MutationResult:
        rows = await self.store.list_clients(ctx.user_id, params.limit)
        clients = [_roster_entry(row) for row in rows]
        return MutationResult(
            data={"clients": clients, "count": len(clients)},
            message=f"Found {len(clients)} client(s).",
        )

    async def create_client(
        self, ctx: ExecutionContext, params: schemas.CreateClientParams, target: ActionTarget
    ) -> MutationResult:
        row = await self.store.insert(
            "client",
            record_id=target.entity_id or self.store.new_id(),
            therapist_id=ctx.user_id,
            values={
                "first_name": params.first_name,
                "last_name": params.last_name,
                "email": params.email,
                "phone": params.phone,
                "notes": params.notes,
            },
        )
        return MutationResult(
            data={"client": row, "id": row["id"]},
            entity_id=row["id"],
            new_value=row,
            message=f"Created client {params.first_name} {params.last_name}",
        )

    async def update_client(
        self, ctx: ExecutionContext, params: schemas.UpdateClientParams, target: ActionTarget
    ) -> MutationResult:
        outcome = await self.store.update_owned(
            "client",
            record_id=params.client_id,
            therapist_id=ctx.user_id,
            changes=_changes(params, params.changeable),
        )
        if outcome is None:
            raise NotFoundError("Client not found.")
        before, after = outcome
        return MutationResult(
            data={"client": after, "id": after["id"]},
            entity_id=after["id"],
            old_value=before,
            new_value=after,
            message="Client updated successfully",
        )

    async def delete_client(
        self, ctx: ExecutionContext, params: schemas.DeleteClientParams, target: ActionTarget
    ) -> MutationResult:
        before = await self.store.delete_owned("client", record_id=params.client_id, therapist_id=ctx.user_id)
        if before is None:
            raise NotFoundError("Client not found.")
        return MutationResult(
            data={"id": before["id"]},
            entity_id=before["id"],
            old_value=before,
            message="Client deleted successfully",
        )

    # Appointments

    async def list_appointments(
        self, ctx: ExecutionContext, params: schemas.ListAppointmentsParams, target: ActionTarget
    ) -> MutationResult:
        rows = await self.store.list_appointments(ctx.user_id, upcoming_only=params.upcoming_only, limit=params.limit)
        appointments = [
            {
                "id": row["id"],
                "client_id": row["client_id"],
                "client_name": f"{row['client_first_name']} {row['client_last_name']}",
                "appointment_date": row["appointment_date"],
                "duration_minutes": row["duration_minutes"],
                "status": row["status"],
            }
            for row in rows
        ]
        return MutationResult(
            data={"appointments": appointments, "count": len(appointments)},
            message=f"Found {len(appointments)} appointment(s).",
        )

    async def create_appointment(
        self, ctx: ExecutionContext, params: schemas.CreateAppointmentParams, target: ActionTarget
    ) -> MutationResult:
        row = await self.store.insert(
            "appointment",
            record_id=target.entity_id or self.store.new_id(),
            therapist_id=ctx.user_id,
            values={
                "client_id": params.client_id,
                "appointment_date": params.appointment_date,
                "duration_minutes": params.duration_minutes,
                "status": params.status,
                "notes": params.notes,
            },
        )
        client_name = await self._client_name(ctx, params.client_id)
        return MutationResult(
            data={
                "appointment": row,
                "id": row["id"],
                "client_name": client_name,
                "appointment_date": row["appointment_date"],
            },
            entity_id=row["id"],
            new_value=row,
            message="Appointment created successfully",
        )

    async def update_appointment(
        self, ctx: ExecutionContext, params: schemas.UpdateAppointmentParams, target: ActionTarget
    ) -> MutationResult:
        outcome = await self.store.update_owned(
            "appointment",
            record_id=params.appointment_id,
            therapist_id=ctx.user_id,
            changes=_changes(params, params.changeable),
        )
        if outcome is None:
            raise NotFoundError("Appointment not found.")
        before, after = outcome
        return MutationResult(
            data={"appointment": after, "id": after["id"]},
            entity_id=after["id"],
            old_value=before,
            new_value=after,
            message="Appointment updated successfully",
        )

    async def delete_appointment(
        self, ctx: ExecutionContext, params: schemas.DeleteAppointmentParams, target: ActionTarget
    ) -> MutationResult:
        before = await self.store.delete_owned(
            "appointment", record_id=params.appointment_id, therapist_id=ctx.user_id
        )
        if before is None:
            raise NotFoundError("Appointment not found.")
        return MutationResult(
            data={"id": before["id"]},
            entity_id=before["id"],
            old_value=before,
            message="Appointment deleted successfully",
        )

    # Invoices

    async def create_invoice(
        self, ctx: ExecutionContext, params: schemas.CreateInvoiceParams, target: ActionTarget
    ) -> MutationResult:
        due_date = params.due_date
        if not due_date:
            local_today = utc_now().astimezone(resolve_zone(ctx.timezone)).date()
            due_date = (local_today + timedelta(days=DEFAULT_INVOICE_TERMS_DAYS)).isoformat()
        number = invoice_number(ctx)
        row = await self.store.insert(
            "invoice",
            record_id=target.entity_id or self.store.new_id(),
            therapist_id=ctx.user_id,
            values={
                "client_id": params.client_id,
                "invoice_number": number,
                "amount": round(params.amount, 2),
                "due_date": due_date,
                "status": "pending",
                "notes": params.notes,
            },
        )
        return MutationResult(
            data={"invoice": row, "id": row["id"], "invoice_number": number, "amount": row["amount"]},
            entity_id=row["id"],
            new_value=row,
            message=f"Invoice {number} created successfully",
        )

    async def update_invoice(
        self, ctx: ExecutionContext, params: schemas.UpdateInvoiceParams, target: ActionTarget
    ) -> MutationResult:
        changes = _changes(params, params.changeable)
        if changes.get("amount") is not None:
            changes["amount"] = round(changes["amount"], 2)
        outcome = await self.store.update_owned(
            "invoice", record_id=params.invoice_id, therapist_id=ctx.user_id, changes=changes
        )
        if outcome is None:
            raise NotFoundError("Invoice not found.")
        before, after = outcome
        return MutationResult(
            data={"invoice": after, "id": after["id"]},
            entity_id=after["id"],
            old_value=before,
            new_value=after,
            message="Invoice updated successfully",
        )

    async def delete_invoice(
        self, ctx: ExecutionContext, params: schemas.DeleteInvoiceParams, target: ActionTarget
    ) -> MutationResult:
        before = await self.store.delete_owned("invoice", record_id=params.invoice_id, therapist_id=ctx.user_id)
        if before is None:
            raise NotFoundError("Invoice not found.")
        return MutationResult(
            data={"id": before["id"]},
            entity_id=before["id"],
            old_value=before,
            message="Invoice deleted successfully",
        )

    # Reminders

    async def list_reminders(
        self, ctx: ExecutionContext, params: schemas.ListRemindersParams, target: ActionTarget
    ) -> MutationResult:
        rows = await self.store.list_open_reminders(ctx.user_id, title_fragment=params.title)
        reminders = [
            {key: row[key] for key in ("id", "title", "description", "reminder_date", "priority")}
            for row in rows
        ]
        return MutationResult(
            data={"reminders": reminders, "count": len(reminders)},
            message=f"Found {len(reminders)} open reminder(s).",
        )

    async def create_reminder(
        self, ctx: ExecutionContext, params: schemas.CreateReminderParams, target: ActionTarget
    ) -> MutationResult:
        row = await self.store.insert(
            "reminder",
            record_id=target.entity_id or self.store.new_id(),
            therapist_id=ctx.user_id,
            values={
                "title": params.title,
                "description": params.description,
                "reminder_date": params.reminder_date,
                "priority": params.priority,
                "completed": 0,
            },
        )
        return MutationResult(
            data={"reminder": row, "id": row["id"], "title": row["title"], "reminder_date": row["reminder_date"]},
            entity_id=row["id"],
            new_value=row,
            message=f"Reminder created successfully for {row['reminder_date']}",
        )

    async def update_reminder(
        self, ctx: ExecutionContext, params: schemas.UpdateReminderParams, target: ActionTarget
    ) -> MutationResult:
        changes = _changes(params, params.changeable)
        if "completed" in changes:
            changes["completed"] = 1 if changes["completed"] else 0
        outcome = await self.store.update_owned(
            "reminder", record_id=params.reminder_id, therapist_id=ctx.user_id, changes=changes
        )
        if outcome is None:
            raise NotFoundError("Reminder not found.")
        before, after = outcome
        return MutationResult(
            data={"reminder": after, "id": after["id"]},
            entity_id=after["id"],
            old_value=before,
            new_value=after,
            message="Reminder updated successfully",
        )

    async def delete_reminder(
        self, ctx: ExecutionContext, params: schemas.DeleteReminderParams, target: ActionTarget
    ) -> MutationResult:
        reminder_id = params.reminder_id
        if reminder_id is None:
            date_from = date_to = None
            if params.reminder_date:
                moment = parse_iso(params.reminder_date).astimezone(resolve_zone(ctx.timezone))
                date_from, date_to = local_day_bounds(moment)
            matches = await self.store.list_open_reminders(
                ctx.user_id, title_fragment=params.title, date_from=date_from, date_to=date_to
            )
            if not matches:
                raise NotFoundError("No matching reminder found.")
            reminder_id = matches[0]["id"]
        before = await self.store.delete_owned("reminder", record_id=reminder_id, therapist_id=ctx.user_id)
        if before is None:
            raise NotFoundError("No matching reminder found.")
        return MutationResult(
            data={"id": before["id"], "title": before["title"]},
            entity_id=before["id"],
            old_value=before,
            message=f"Reminder '{before['title']}' for {before['reminder_date']} deleted successfully",
        )

    # Clinical notes

    async def create_soap_note(
        self, ctx: ExecutionContext, params: schemas.CreateSoapNoteParams, target: ActionTarget
    ) -> MutationResult:
        row = await self.store.insert(
            "soap_note",
            record_id=target.entity_id or self.store.new_id(),
            therapist_id=ctx.user_id,
            values={
                "client_id": params.client_id,
                "subjective": params.subjective,
                "objective": params.objective,
                "assessment": params.assessment,
                "plan": params.plan,
            },
        )
        return MutationResult(
            data={"soap_note": {"id": row["id"], "client_id": row["client_id"]}, "id": row["id"]},
            entity_id=row["id"],
            new_value={"id": row["id"], "client_id": row["client_id"], "sections": sorted(schemas.accessed_fields(params))},
            message="SOAP note created successfully",
        )


_CATALOGUE: tuple[tuple[ActionName, str, str, bool, str], ...] = (
    (ActionName.LIST_CLIENTS, "client", "read", False, "List the practice's clients."),
    (ActionName.CREATE_CLIENT, "client", "create", True, "Add a new client."),
    (ActionName.UPDATE_CLIENT, "client", "update", True, "Update a client's contact details or notes."),
    (ActionName.DELETE_CLIENT, "client", "delete", True, "Delete a client and their records."),
    (ActionName.LIST_APPOINTMENTS, "appointment", "read", False, "List appointments, upcoming by default."),
    (ActionName.CREATE_APPOINTMENT, "appointment", "create", True, "Schedule an appointment for a client."),
    (ActionName.UPDATE_APPOINTMENT, "appointment", "update", True, "Reschedule or change an appointment."),
    (ActionName.DELETE_APPOINTMENT, "appointment", "delete", True, "Delete an appointment."),
    (ActionName.CREATE_INVOICE, "invoice", "create", True, "Create an invoice for a client."),
    (ActionName.UPDATE_INVOICE, "invoice", "update", True, "Change an invoice's amount, due date, status or notes."),
    (ActionName.DELETE_INVOICE, "invoice", "delete", True, "Delete an invoice."),
    (ActionName.LIST_REMINDERS, "reminder", "read", False, "List open reminders."),
    (ActionName.CREATE_REMINDER, "reminder", "create", False, "Create a reminder."),
    (ActionName.UPDATE_REMINDER, "reminder", "update", False, "Update or complete a reminder."),
    (ActionName.DELETE_REMINDER, "reminder", "delete", False, "Delete a reminder by id, title or date."),
    (ActionName.CREATE_SOAP_NOTE, "soap_note", "create", True, "Write a SOAP note for a client session."),
)


def register_actions(registry: ActionRegistry, actionset: PracticeActionset) -> None:
    for name, entity_type, operation, protected, description in _CATALOGUE:
        registry.register(
            ActionDefinition(
                name=name,
                handler=getattr(actionset, name.value),
                entity_type=entity_type,
                operation=operation,
                protected=protected,
                description=description,
            )
        )
    registry.add_alias("schedule_appointment", ActionName.CREATE_APPOINTMENT)
    registry.add_alias("add_client", ActionName.CREATE_CLIENT)
    registry.ensure_complete()
