from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLitePracticeDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS clients (
                  id TEXT PRIMARY KEY,
                  therapist_id TEXT NOT NULL,
                  first_name TEXT NOT NULL,
                  last_name TEXT NOT NULL,
                  email TEXT,
                  phone TEXT,
                  notes TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS client_users (
                  id TEXT PRIMARY KEY,
                  client_id TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
                  user_id TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  UNIQUE(client_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS appointments (
                  id TEXT PRIMARY KEY,
                  therapist_id TEXT NOT NULL,
                  client_id TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
                  appointment_date TEXT NOT NULL,
                  duration_minutes INTEGER NOT NULL DEFAULT 60,
                  status TEXT NOT NULL DEFAULT 'scheduled',
                  notes TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS invoices (
                  id TEXT PRIMARY KEY,
                  therapist_id TEXT NOT NULL,
                  client_id TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
                  invoice_number TEXT NOT NULL,
                  amount REAL NOT NULL,
                  due_date TEXT,
                  status TEXT NOT NULL DEFAULT 'pending',
                  notes TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS reminders (
                  id TEXT PRIMARY KEY,
                  therapist_id TEXT NOT NULL,
                  title TEXT NOT NULL,
                  description TEXT,
                  reminder_date TEXT NOT NULL,
                  priority TEXT NOT NULL DEFAULT 'medium',
                  completed INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS soap_notes (
                  id TEXT PRIMARY KEY,
                  therapist_id TEXT NOT NULL,
                  client_id TEXT NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
                  subjective TEXT,
                  objective TEXT,
                  assessment TEXT,
                  plan TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_logs (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  action TEXT NOT NULL,
                  entity_type TEXT NOT NULL,
                  entity_id TEXT,
                  success INTEGER NOT NULL,
                  justification TEXT,
                  old_values TEXT,
                  new_values TEXT,
                  error_message TEXT,
                  timestamp TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS phi_access_log (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  access_type TEXT NOT NULL,
                  entity_type TEXT NOT NULL,
                  entity_id TEXT,
                  client_id TEXT NOT NULL,
                  justification TEXT NOT NULL,
                  accessed_fields TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ai_actions (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  action_type TEXT NOT NULL,
                  entity_type TEXT NOT NULL,
                  entity_id TEXT,
                  parameter_keys TEXT NOT NULL,
                  status TEXT NOT NULL,
                  lifecycle_json TEXT NOT NULL,
                  result_json TEXT,
                  error_kind TEXT,
                  error_message TEXT,
                  created_at TEXT NOT NULL,
                  completed_at TEXT,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS notifications (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  type TEXT NOT NULL,
                  title TEXT NOT NULL,
                  message TEXT NOT NULL,
                  link TEXT,
                  read INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_clients_therapist
                  ON clients(therapist_id);
                CREATE INDEX IF NOT EXISTS idx_client_users_user
                  ON client_users(user_id, client_id);
                CREATE INDEX IF NOT EXISTS idx_appointments_therapist_date
                  ON appointments(therapist_id, appointment_date);
                CREATE INDEX IF NOT EXISTS idx_invoices_therapist
                  ON invoices(therapist_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_reminders_therapist_date
                  ON reminders(therapist_id, reminder_date);
                CREATE INDEX IF NOT EXISTS idx_audit_logs_user_time
                  ON audit_logs(user_id, timestamp DESC);
                CREATE INDEX IF NOT EXISTS idx_phi_access_client_time
                  ON phi_access_log(client_id, created_at DESC);
                CREATE INDEX IF NOT EXISTS idx_ai_actions_user_created
                  ON ai_actions(user_id, created_at DESC);
                """
            )
