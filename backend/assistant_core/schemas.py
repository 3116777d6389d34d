from __future__ import annotations

import re
from datetime import datetime
from typing import Any, ClassVar, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)

from records.time_utils import resolve_zone

from .dates import parse_due_date, to_utc_iso
from .errors import ActionValidationError, FieldViolation, UnknownActionError
from .registry import ActionName

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PHONE_PATTERN = r"^[+]?[0-9\s()-]{7,20}$"

AppointmentStatus = Literal["scheduled", "completed", "cancelled", "no-show"]
InvoiceStatus = Literal["pending", "paid", "void", "overdue"]
ReminderPriority = Literal["low", "medium", "high"]

MAX_AMOUNT = 999999.99


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(UUID_PATTERN.match(value.strip()))


def _require_uuid(value: str | None, label: str) -> str | None:
    if value is None:
        return None
    if not is_uuid(value):
        raise ValueError(f"{label} must be a valid ID.")
    return value.lower()


def _when(value: str | None, info: ValidationInfo) -> str | None:
    if value is None:
        return None
    context = info.context or {}
    zone = context.get("zone") or resolve_zone(None)
    now: datetime | None = context.get("now")
    try:
        return to_utc_iso(value, zone=zone, now=now)
    except ValueError as exc:
        raise ValueError(f"Invalid date/time: {exc}") from exc


def _client_field(**kwargs: Any) -> Any:
    return Field(
        min_length=1,
        max_length=200,
        validation_alias=AliasChoices("client_id", "client_name", "client"),
        description="The client's ID, or their full name (e.g. 'Jane Doe').",
        **kwargs,
    )


class ActionParams(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, populate_by_name=True)

    changeable: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def requires_some_change(self) -> "ActionParams":
        if self.changeable and not (self.changeable & self.model_fields_set):
            raise ValueError(f"Provide at least one field to change: {', '.join(sorted(self.changeable))}.")
        return self


# Clients


class ListClientsParams(ActionParams):
    limit: int = Field(default=50, ge=1, le=100)


class CreateClientParams(ActionParams):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: str | None = Field(default=None, max_length=255)
    phone: str | None = Field(default=None, pattern=PHONE_PATTERN)
    notes: str | None = Field(default=None, max_length=5000)

    @field_validator("email")
    @classmethod
    def email_must_look_valid(cls, v: str | None) -> str | None:
        if v and not EMAIL_PATTERN.match(v):
            raise ValueError("Invalid email address.")
        return v or None


class UpdateClientParams(CreateClientParams):
    changeable: ClassVar[frozenset[str]] = frozenset({"first_name", "last_name", "email", "phone", "notes"})

    client_id: str = _client_field()
    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)


class DeleteClientParams(ActionParams):
    client_id: str = _client_field()


# Appointments


class ListAppointmentsParams(ActionParams):
    upcoming_only: bool = True
    limit: int = Field(default=20, ge=1, le=100)


class CreateAppointmentParams(ActionParams):
    client_id: str = _client_field()
    appointment_date: str = Field(
        validation_alias=AliasChoices("appointment_date", "date", "start_time"),
        description="When the session starts, ISO 8601 or a phrase like 'tomorrow at 2pm'.",
    )
    duration_minutes: int = Field(default=60, ge=15, le=480, validation_alias=AliasChoices("duration_minutes", "duration"))
    status: AppointmentStatus = "scheduled"
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("appointment_date")
    @classmethod
    def appointment_date_must_parse(cls, v: str, info: ValidationInfo) -> str:
        return _when(v, info)


class UpdateAppointmentParams(ActionParams):
    changeable: ClassVar[frozenset[str]] = frozenset({"appointment_date", "duration_minutes", "status", "notes"})

    appointment_id: str = Field(validation_alias=AliasChoices("appointment_id", "id"))
    appointment_date: str | None = Field(default=None, validation_alias=AliasChoices("appointment_date", "date", "start_time"))
    duration_minutes: int | None = Field(
        default=None, ge=15, le=480, validation_alias=AliasChoices("duration_minutes", "duration")
    )
    status: AppointmentStatus | None = None
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("appointment_id")
    @classmethod
    def appointment_id_must_be_uuid(cls, v: str) -> str:
        return _require_uuid(v, "Appointment ID")

    @field_validator("appointment_date")
    @classmethod
    def appointment_date_must_parse(cls, v: str | None, info: ValidationInfo) -> str | None:
        return _when(v, info)


class DeleteAppointmentParams(ActionParams):
    appointment_id: str = Field(validation_alias=AliasChoices("appointment_id", "id"))

    @field_validator("appointment_id")
    @classmethod
    def appointment_id_must_be_uuid(cls, v: str) -> str:
        return _require_uuid(v, "Appointment ID")


# Invoices


class CreateInvoiceParams(ActionParams):
    client_id: str = _client_field()
    amount: float = Field(gt=0, le=MAX_AMOUNT)
    due_date: str | None = Field(default=None, description="YYYY-MM-DD")
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("due_date")
    @classmethod
    def due_date_must_be_calendar_date(cls, v: str | None) -> str | None:
        return parse_due_date(v) if v else None


class UpdateInvoiceParams(ActionParams):
    changeable: ClassVar[frozenset[str]] = frozenset({"amount", "due_date", "status", "notes"})

    invoice_id: str = Field(validation_alias=AliasChoices("invoice_id", "id"))
    amount: float | None = Field(default=None, gt=0, le=MAX_AMOUNT)
    due_date: str | None = None
    status: InvoiceStatus | None = None
    notes: str | None = Field(default=None, max_length=2000)

    @field_validator("invoice_id")
    @classmethod
    def invoice_id_must_be_uuid(cls, v: str) -> str:
        return _require_uuid(v, "Invoice ID")

    @field_validator("due_date")
    @classmethod
    def due_date_must_be_calendar_date(cls, v: str | None) -> str | None:
        return parse_due_date(v) if v else None


class DeleteInvoiceParams(ActionParams):
    invoice_id: str = Field(validation_alias=AliasChoices("invoice_id", "id"))

    @field_validator("invoice_id")
    @classmethod
    def invoice_id_must_be_uuid(cls, v: str) -> str:
        return _require_uuid(v, "Invoice ID")


# Reminders


class ListRemindersParams(ActionParams):
    title: str | None = Field(default=None, max_length=200)


class CreateReminderParams(ActionParams):
    title: str = Field(min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    reminder_date: str = Field(
        validation_alias=AliasChoices("reminder_date", "date"),
        description="ISO 8601 or a phrase like 'tomorrow', 'next week', 'in 3 days', 'in 2 hours'.",
    )
    priority: ReminderPriority = "medium"

    @field_validator("reminder_date")
    @classmethod
    def reminder_date_must_parse(cls, v: str, info: ValidationInfo) -> str:
        return _when(v, info)


class UpdateReminderParams(ActionParams):
    changeable: ClassVar[frozenset[str]] = frozenset({"title", "description", "reminder_date", "priority", "completed"})

    reminder_id: str = Field(validation_alias=AliasChoices("reminder_id", "id"))
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    reminder_date: str | None = Field(default=None, validation_alias=AliasChoices("reminder_date", "date"))
    priority: ReminderPriority | None = None
    completed: bool | None = None

    @field_validator("reminder_id")
    @classmethod
    def reminder_id_must_be_uuid(cls, v: str) -> str:
        return _require_uuid(v, "Reminder ID")

    @field_validator("reminder_date")
    @classmethod
    def reminder_date_must_parse(cls, v: str | None, info: ValidationInfo) -> str | None:
        return _when(v, info)


class DeleteReminderParams(ActionParams):
    reminder_id: str | None = Field(default=None, validation_alias=AliasChoices("reminder_id", "id"))
    title: str | None = Field(default=None, min_length=1, max_length=200)
    reminder_date: str | None = Field(default=None, validation_alias=AliasChoices("reminder_date", "date"))

    @field_validator("reminder_id")
    @classmethod
    def reminder_id_must_be_uuid(cls, v: str | None) -> str | None:
        return _require_uuid(v, "Reminder ID")

    @field_validator("reminder_date")
    @classmethod
    def reminder_date_must_parse(cls, v: str | None, info: ValidationInfo) -> str | None:
        return _when(v, info)

    @model_validator(mode="after")
    def needs_some_identifier(self) -> "DeleteReminderParams":
        if not (self.reminder_id or self.title or self.reminder_date):
            raise ValueError("Identify the reminder by id, title or date.")
        return self


# Clinical notes


class CreateSoapNoteParams(ActionParams):
    client_id: str = _client_field()
    subjective: str | None = Field(default=None, max_length=5000)
    objective: str | None = Field(default=None, max_length=5000)
    assessment: str | None = Field(default=None, max_length=5000)
    plan: str | None = Field(default=None, max_length=5000)

    @model_validator(mode="after")
    def needs_some_section(self) -> "CreateSoapNoteParams":
        if not any((self.subjective, self.objective, self.assessment, self.plan)):
            raise ValueError("A SOAP note needs at least one of subjective, objective, assessment or plan.")
        return self


SCHEMAS: dict[ActionName, type[ActionParams]] = {
    ActionName.LIST_CLIENTS: ListClientsParams,
    ActionName.CREATE_CLIENT: CreateClientParams,
    ActionName.UPDATE_CLIENT: UpdateClientParams,
    ActionName.DELETE_CLIENT: DeleteClientParams,
    ActionName.LIST_APPOINTMENTS: ListAppointmentsParams,
    ActionName.CREATE_APPOINTMENT: CreateAppointmentParams,
    ActionName.UPDATE_APPOINTMENT: UpdateAppointmentParams,
    ActionName.DELETE_APPOINTMENT: DeleteAppointmentParams,
    ActionName.CREATE_INVOICE: CreateInvoiceParams,
    ActionName.UPDATE_INVOICE: UpdateInvoiceParams,
    ActionName.DELETE_INVOICE: DeleteInvoiceParams,
    ActionName.LIST_REMINDERS: ListRemindersParams,
    ActionName.CREATE_REMINDER: CreateReminderParams,
    ActionName.UPDATE_REMINDER: UpdateReminderParams,
    ActionName.DELETE_REMINDER: DeleteReminderParams,
    ActionName.CREATE_SOAP_NOTE: CreateSoapNoteParams,
}


def _canonical_field(model: type[ActionParams], key: str) -> str:
    for name, info in model.model_fields.items():
        if key == name:
            return name
        alias = info.validation_alias
        if isinstance(alias, AliasChoices) and key in alias.choices:
            return name
    return key


def _violations(model: type[ActionParams], exc: ValidationError) -> list[FieldViolation]:
    violations = []
    for error in exc.errors():
        loc = error.get("loc") or ()
        field = _canonical_field(model, str(loc[0])) if loc else "parameters"
        message = str(error.get("msg") or "Invalid value.")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        if error.get("type") == "missing":
            message = f"{field} is required."
        violations.append(FieldViolation(field=field, message=message))
    return violations


def schema_for(action_name: str | ActionName) -> type[ActionParams]:
    name = action_name if isinstance(action_name, ActionName) else ActionName.parse(action_name)
    if name is None:
        raise UnknownActionError(str(action_name))
    return SCHEMAS[name]


def validate(
    action_name: str | ActionName,
    parameters: Any,
    *,
    timezone: str | None = None,
    now: datetime | None = None,
) -> ActionParams:
    model = schema_for(action_name)
    if not isinstance(parameters, dict):
        raise ActionValidationError([FieldViolation(field="parameters", message="Parameters must be an object.")])
    try:
        return model.model_validate(parameters, context={"zone": resolve_zone(timezone), "now": now})
    except ValidationError as exc:
        raise ActionValidationError(_violations(model, exc)) from exc


def accessed_fields(params: ActionParams) -> list[str]:
    return sorted(params.model_fields_set)


def requested_fields(action_name: str | ActionName, parameters: dict[str, Any]) -> list[str]:
    """Canonical names of every key the caller sent, including keys the schema drops."""
    model = schema_for(action_name)
    return sorted({_canonical_field(model, str(key)) for key in parameters})


def tool_parameters(action_name: ActionName) -> dict[str, Any]:
    schema = SCHEMAS[action_name].model_json_schema()
    schema.pop("title", None)
    for prop in schema.get("properties", {}).values():
        prop.pop("title", None)
    return schema
