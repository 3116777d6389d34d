from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


LIFECYCLE_STATES = (
    "pending",
    "validating",
    "resolving",
    "authorizing",
    "mutating",
    "auditing",
    "completed",
    "failed",
)
TERMINAL_STATES = {"completed", "failed"}

DEFAULT_TIMEZONE = "America/New_York"


@dataclass
class ExecutionContext:
    user_id: str
    request_id: str
    timezone: str = DEFAULT_TIMEZONE


@dataclass
class ActionRequest:
    action_name: str
    parameters: dict[str, Any]
    requesting_user_id: str
    timezone: str | None = None


@dataclass
class ActionOutcome:
    status: str
    data: dict[str, Any] = field(default_factory=dict)
    errors: list[dict[str, Any]] = field(default_factory=list)
    lifecycle: list[str] = field(default_factory=list)
    action_id: str | None = None
    error_kind: str | None = None
    message: str | None = None

    @property
    def success(self) -> bool:
        return self.status == "completed"

    def as_tool_result(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        return {"success": False, "error": self.message, "error_kind": self.error_kind}


@dataclass
class ActionTarget:
    entity_id: str | None = None
    client_id: str | None = None
    existing: dict[str, Any] | None = None


@dataclass
class MutationResult:
    data: dict[str, Any]
    entity_id: str | None = None
    old_value: Any = None
    new_value: Any = None
    message: str = ""
