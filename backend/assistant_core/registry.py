from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .models import ActionTarget, ExecutionContext, MutationResult


class ActionName(str, Enum):
    LIST_CLIENTS = "list_clients"
    CREATE_CLIENT = "create_client"
    UPDATE_CLIENT = "update_client"
    DELETE_CLIENT = "delete_client"
    LIST_APPOINTMENTS = "list_appointments"
    CREATE_APPOINTMENT = "create_appointment"
    UPDATE_APPOINTMENT = "update_appointment"
    DELETE_APPOINTMENT = "delete_appointment"
    CREATE_INVOICE = "create_invoice"
    UPDATE_INVOICE = "update_invoice"
    DELETE_INVOICE = "delete_invoice"
    LIST_REMINDERS = "list_reminders"
    CREATE_REMINDER = "create_reminder"
    UPDATE_REMINDER = "update_reminder"
    DELETE_REMINDER = "delete_reminder"
    CREATE_SOAP_NOTE = "create_soap_note"

    @classmethod
    def parse(cls, value: str) -> "ActionName | None":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return None


# (ctx, validated params, prepared target) -> mutation result
ActionHandler = Callable[[ExecutionContext, Any, ActionTarget], Awaitable[MutationResult]]


@dataclass(frozen=True)
class ActionDefinition:
    name: ActionName
    handler: ActionHandler
    entity_type: str
    operation: str
    protected: bool = False
    description: str = ""

    @property
    def access_type(self) -> str:
        return {"create": "write", "update": "write", "delete": "delete"}.get(self.operation, "read")

    @property
    def audit_action(self) -> str:
        return self.operation.upper()


class RegistryIncompleteError(RuntimeError):
    pass


class ActionRegistry:
    def __init__(self) -> None:
        self._actions: dict[ActionName, ActionDefinition] = {}
        self._aliases: dict[str, ActionName] = {}

    def register(self, action: ActionDefinition) -> None:
        if action.name in self._actions:
            raise ValueError(f"Action already registered: {action.name.value}")
        self._actions[action.name] = action

    def add_alias(self, alias: str, target: ActionName) -> None:
        self._aliases[alias] = target

    def ensure_complete(self) -> None:
        missing = [name.value for name in ActionName if name not in self._actions]
        if missing:
            raise RegistryIncompleteError(f"Actions without a handler: {', '.join(missing)}")

    def resolve(self, name: str) -> ActionDefinition | None:
        canonical = self._aliases.get(name) or ActionName.parse(name)
        if canonical is None:
            return None
        return self._actions.get(canonical)

    def list_names(self) -> list[str]:
        return sorted(name.value for name in self._actions)

    def definitions(self) -> list[ActionDefinition]:
        return [self._actions[name] for name in ActionName if name in self._actions]
