from __future__ import annotations

import asyncio
import functools
import json
import sqlite3
import uuid
from typing import Any, Callable

from .database import SQLitePracticeDB
from .errors import PersistenceError
from .time_utils import to_iso, utc_now


_TABLES: dict[str, tuple[str, set[str]]] = {
    "client": ("clients", {"first_name", "last_name", "email", "phone", "notes"}),
    "appointment": (
        "appointments",
        {"client_id", "appointment_date", "duration_minutes", "status", "notes"},
    ),
    "invoice": (
        "invoices",
        {"client_id", "invoice_number", "amount", "due_date", "status", "notes"},
    ),
    "reminder": ("reminders", {"title", "description", "reminder_date", "priority", "completed"}),
    "soap_note": ("soap_notes", {"client_id", "subjective", "objective", "assessment", "plan"}),
}


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def _json_loads(value: str | None) -> Any:
    return json.loads(value) if value else None


def _table(entity_type: str) -> tuple[str, set[str]]:
    try:
        return _TABLES[entity_type]
    except KeyError as exc:
        raise PersistenceError(f"Unsupported entity type: {entity_type}") from exc


def _offload(fn: Callable[..., Any]) -> Callable[..., Any]:
    @functools.wraps(fn)
    async def wrapper(self: "PracticeStore", *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, self, *args, **kwargs)
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc

    return wrapper


class PracticeStore:
    """Owner-scoped access to practice records.

    Every query on a domain table filters on ``therapist_id``. Updates and deletes
    that match no row return ``None`` instead of raising, so callers can tell a
    wrong-owner or missing record apart from a storage failure.
    """

    def __init__(self, db: SQLitePracticeDB) -> None:
        self._db = db

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())

    # Domain records

    @_offload
    def client_directory(self, therapist_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, first_name, last_name
                FROM clients
                WHERE therapist_id = ?
                ORDER BY last_name, first_name
                """,
                (therapist_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    @_offload
    def get_owned(self, entity_type: str, record_id: str, therapist_id: str) -> dict[str, Any] | None:
        table, _ = _table(entity_type)
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE id = ? AND therapist_id = ?",
                (record_id, therapist_id),
            ).fetchone()
        return dict(row) if row else None

    @_offload
    def insert(
        self,
        entity_type: str,
        *,
        record_id: str,
        therapist_id: str,
        values: dict[str, Any],
    ) -> dict[str, Any]:
        table, columns = _table(entity_type)
        unknown = set(values) - columns
        if unknown:
            raise PersistenceError(f"Unknown columns for {entity_type}: {', '.join(sorted(unknown))}")
        now = to_iso(utc_now())
        row = {"id": record_id, "therapist_id": therapist_id, **values, "created_at": now, "updated_at": now}
        names = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with self._db.connection() as conn:
            conn.execute(f"INSERT INTO {table} ({names}) VALUES ({placeholders})", tuple(row.values()))
            stored = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return dict(stored)

    @_offload
    def update_owned(
        self,
        entity_type: str,
        *,
        record_id: str,
        therapist_id: str,
        changes: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[str, Any]] | None:
        table, columns = _table(entity_type)
        unknown = set(changes) - columns
        if unknown:
            raise PersistenceError(f"Unknown columns for {entity_type}: {', '.join(sorted(unknown))}")
        with self._db.connection() as conn:
            before = conn.execute(
                f"SELECT * FROM {table} WHERE id = ? AND therapist_id = ?",
                (record_id, therapist_id),
            ).fetchone()
            if not before:
                return None
            assignments = {**changes, "updated_at": to_iso(utc_now())}
            set_clause = ", ".join(f"{name} = ?" for name in assignments)
            cursor = conn.execute(
                f"UPDATE {table} SET {set_clause} WHERE id = ? AND therapist_id = ?",
                (*assignments.values(), record_id, therapist_id),
            )
            if cursor.rowcount == 0:
                return None
            after = conn.execute(f"SELECT * FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return dict(before), dict(after)

    @_offload
    def delete_owned(self, entity_type: str, *, record_id: str, therapist_id: str) -> dict[str, Any] | None:
        table, _ = _table(entity_type)
        with self._db.connection() as conn:
            before = conn.execute(
                f"SELECT * FROM {table} WHERE id = ? AND therapist_id = ?",
                (record_id, therapist_id),
            ).fetchone()
            if not before:
                return None
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE id = ? AND therapist_id = ?",
                (record_id, therapist_id),
            )
            if cursor.rowcount == 0:
                return None
        return dict(before)

    @_offload
    def list_clients(self, therapist_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, first_name, last_name, email, phone, notes
                FROM clients
                WHERE therapist_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (therapist_id, limit if limit else -1),
            ).fetchall()
        return [dict(row) for row in rows]

    @_offload
    def list_appointments(
        self,
        therapist_id: str,
        *,
        upcoming_only: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        query = """
            SELECT a.id, a.client_id, a.appointment_date, a.duration_minutes, a.status, a.notes,
                   c.first_name AS client_first_name, c.last_name AS client_last_name
            FROM appointments a
            JOIN clients c ON c.id = a.client_id
            WHERE a.therapist_id = ?
        """
        params: list[Any] = [therapist_id]
        if upcoming_only:
            query += " AND a.appointment_date >= ?"
            params.append(to_iso(utc_now()))
        query += " ORDER BY a.appointment_date ASC LIMIT ?"
        params.append(limit if limit else -1)
        with self._db.connection() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [dict(row) for row in rows]

    @_offload
    def list_open_reminders(
        self,
        therapist_id: str,
        *,
        title_fragment: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM reminders WHERE therapist_id = ? AND completed = 0"
        params: list[Any] = [therapist_id]
        if title_fragment:
            query += " AND LOWER(title) LIKE ?"
            params.append(f"%{title_fragment.lower()}%")
        if date_from:
            query += " AND reminder_date >= ?"
            params.append(date_from)
        if date_to:
            query += " AND reminder_date <= ?"
            params.append(date_to)
        query += " ORDER BY reminder_date ASC"
        with self._db.connection() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [dict(row) for row in rows]

    # Access relationships

    @_offload
    def owns_client(self, therapist_id: str, client_id: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM clients WHERE id = ? AND therapist_id = ? LIMIT 1",
                (client_id, therapist_id),
            ).fetchone()
        return row is not None

    @_offload
    def is_portal_user(self, user_id: str, client_id: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM client_users WHERE client_id = ? AND user_id = ? LIMIT 1",
                (client_id, user_id),
            ).fetchone()
        return row is not None

    @_offload
    def link_portal_user(self, *, client_id: str, user_id: str) -> str:
        link_id = uuid.uuid4().hex
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO client_users (id, client_id, user_id, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(client_id, user_id) DO NOTHING
                """,
                (link_id, client_id, user_id, to_iso(utc_now())),
            )
        return link_id

    # Append-only logs

    @_offload
    def append_audit(
        self,
        *,
        user_id: str,
        action: str,
        entity_type: str,
        entity_id: str | None,
        success: bool,
        justification: str | None = None,
        old_values: Any = None,
        new_values: Any = None,
        error_message: str | None = None,
    ) -> str:
        record_id = uuid.uuid4().hex
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (
                  id, user_id, action, entity_type, entity_id, success, justification,
                  old_values, new_values, error_message, timestamp
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    user_id,
                    action,
                    entity_type,
                    entity_id,
                    1 if success else 0,
                    justification,
                    _json_dumps(old_values) if old_values is not None else None,
                    _json_dumps(new_values) if new_values is not None else None,
                    error_message,
                    to_iso(utc_now()),
                ),
            )
        return record_id

    @_offload
    def append_phi_access(
        self,
        *,
        user_id: str,
        access_type: str,
        entity_type: str,
        entity_id: str | None,
        client_id: str,
        justification: str,
        accessed_fields: list[str] | None,
    ) -> str:
        record_id = uuid.uuid4().hex
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO phi_access_log (
                  id, user_id, access_type, entity_type, entity_id, client_id,
                  justification, accessed_fields, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    user_id,
                    access_type,
                    entity_type,
                    entity_id,
                    client_id,
                    justification,
                    _json_dumps(sorted(accessed_fields)) if accessed_fields is not None else None,
                    to_iso(utc_now()),
                ),
            )
        return record_id

    @_offload
    def append_notification(
        self,
        *,
        user_id: str,
        title: str,
        message: str,
        link: str | None,
        notification_type: str = "ai_action",
    ) -> str:
        record_id = uuid.uuid4().hex
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO notifications (id, user_id, type, title, message, link, read, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (record_id, user_id, notification_type, title, message, link, to_iso(utc_now())),
            )
        return record_id

    # Operator views

    @_offload
    def get_audit_logs(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, action, entity_type, entity_id, success, justification,
                       old_values, new_values, error_message, timestamp
                FROM audit_logs
                WHERE user_id = ?
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, max(1, min(int(limit), 500))),
            ).fetchall()
        items = []
        for row in rows:
            item = dict(row)
            item["success"] = bool(item["success"])
            item["old_values"] = _json_loads(item["old_values"])
            item["new_values"] = _json_loads(item["new_values"])
            items.append(item)
        return items

    @_offload
    def get_phi_access_logs(self, user_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, access_type, entity_type, entity_id, client_id, justification,
                       accessed_fields, created_at
                FROM phi_access_log
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, max(1, min(int(limit), 500))),
            ).fetchall()
        items = []
        for row in rows:
            item = dict(row)
            item["accessed_fields"] = _json_loads(item["accessed_fields"])
            items.append(item)
        return items

    @_offload
    def get_notifications(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT id, type, title, message, link, read, created_at
                FROM notifications
                WHERE user_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (user_id, max(1, min(int(limit), 200))),
            ).fetchall()
        return [dict(row) for row in rows]
