from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from records import SQLitePracticeDB
from records.time_utils import to_iso, utc_now

from .models import TERMINAL_STATES


@dataclass
class ActionRecord:
    action_id: str
    status: str
    lifecycle: list[str]


class LifecycleError(Exception):
    pass


class ActionLifecycleService:
    _TRANSITIONS = {
        "pending": {"validating", "failed"},
        "validating": {"resolving", "failed"},
        "resolving": {"authorizing", "failed"},
        "authorizing": {"mutating", "failed"},
        "mutating": {"auditing", "failed"},
        "auditing": {"completed", "failed"},
        "completed": set(),
        "failed": set(),
    }

    def __init__(self, db: SQLitePracticeDB) -> None:
        self._db = db

    async def start(
        self,
        *,
        user_id: str,
        action_type: str,
        entity_type: str,
        parameter_keys: list[str],
    ) -> ActionRecord:
        return await asyncio.to_thread(
            self._start_sync,
            user_id=user_id,
            action_type=action_type,
            entity_type=entity_type,
            parameter_keys=parameter_keys,
        )

    async def transition(
        self,
        *,
        action_id: str,
        next_state: str,
        entity_id: str | None = None,
        result: dict[str, Any] | None = None,
        error_kind: str | None = None,
        error_message: str | None = None,
    ) -> list[str]:
        return await asyncio.to_thread(
            self._transition_sync,
            action_id=action_id,
            next_state=next_state,
            entity_id=entity_id,
            result=result,
            error_kind=error_kind,
            error_message=error_message,
        )

    async def recent(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._recent_sync, user_id, limit)

    def _start_sync(
        self,
        *,
        user_id: str,
        action_type: str,
        entity_type: str,
        parameter_keys: list[str],
    ) -> ActionRecord:
        now = to_iso(utc_now())
        action_id = uuid.uuid4().hex
        lifecycle = ["pending"]
        try:
            with self._db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO ai_actions (
                      id, user_id, action_type, entity_type, entity_id, parameter_keys,
                      status, lifecycle_json, result_json, error_kind, error_message,
                      created_at, completed_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, NULL, ?, ?, ?, NULL, NULL, NULL, ?, NULL, ?)
                    """,
                    (
                        action_id,
                        user_id,
                        action_type,
                        entity_type,
                        json.dumps(sorted(parameter_keys)),
                        "pending",
                        json.dumps(lifecycle),
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise LifecycleError(f"Could not record action start: {exc}") from exc
        return ActionRecord(action_id=action_id, status="pending", lifecycle=lifecycle)

    def _transition_sync(
        self,
        *,
        action_id: str,
        next_state: str,
        entity_id: str | None,
        result: dict[str, Any] | None,
        error_kind: str | None,
        error_message: str | None,
    ) -> list[str]:
        try:
            with self._db.connection() as conn:
                row = conn.execute(
                    "SELECT status, lifecycle_json FROM ai_actions WHERE id = ?",
                    (action_id,),
                ).fetchone()
                if not row:
                    raise LifecycleError(f"Action not found: {action_id}")
                current = row["status"]
                lifecycle = json.loads(row["lifecycle_json"])
                if next_state not in self._TRANSITIONS.get(current, set()):
                    raise LifecycleError(f"Invalid transition: {current} -> {next_state}")

                lifecycle.append(next_state)
                now = to_iso(utc_now())
                completed_at = now if next_state in TERMINAL_STATES else None
                conn.execute(
                    """
                    UPDATE ai_actions
                    SET status = ?,
                        lifecycle_json = ?,
                        entity_id = COALESCE(?, entity_id),
                        result_json = COALESCE(?, result_json),
                        error_kind = COALESCE(?, error_kind),
                        error_message = COALESCE(?, error_message),
                        completed_at = COALESCE(?, completed_at),
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        next_state,
                        json.dumps(lifecycle),
                        entity_id,
                        json.dumps(result, sort_keys=True, default=str) if result is not None else None,
                        error_kind,
                        error_message,
                        completed_at,
                        now,
                        action_id,
                    ),
                )
                return lifecycle
        except sqlite3.Error as exc:
            raise LifecycleError(f"Could not record transition to {next_state}: {exc}") from exc

    def _recent_sync(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, action_type, entity_type, entity_id, parameter_keys, status,
                       lifecycle_json, error_kind, error_message, created_at, completed_at
                FROM ai_actions
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, max(1, min(int(limit), 200))),
            ).fetchall()
        items = []
        for row in rows:
            item = dict(row)
            item["parameter_keys"] = json.loads(item["parameter_keys"])
            item["lifecycle"] = json.loads(item.pop("lifecycle_json"))
            items.append(item)
        return items
