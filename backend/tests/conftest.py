from __future__ import annotations

import importlib
import sys
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from assistant_core import (  # noqa: E402
    ActionDispatcher,
    ActionLifecycleService,
    ActionRegistry,
    EntityResolver,
    HookRunner,
    InAppNotifier,
    minimum_necessary_hook,
    notification_hook,
)
from practice_actions import PracticeActionset, register_actions  # noqa: E402
from records import ComplianceService, PracticeStore, SQLitePracticeDB  # noqa: E402
from records.time_utils import to_iso, utc_now  # noqa: E402


@dataclass
class Services:
    db: SQLitePracticeDB
    store: PracticeStore
    compliance: ComplianceService
    resolver: EntityResolver
    registry: ActionRegistry
    hooks: HookRunner
    lifecycle: ActionLifecycleService
    dispatcher: ActionDispatcher


def build_services(db_path: Path, *, compliance: ComplianceService | None = None, store: PracticeStore | None = None) -> Services:
    db = SQLitePracticeDB(str(db_path))
    store = store or PracticeStore(db)
    compliance = compliance or ComplianceService(store)
    resolver = EntityResolver(store)
    registry = ActionRegistry()
    register_actions(registry, PracticeActionset(store))
    hooks = HookRunner()
    hooks.add_before(minimum_necessary_hook(compliance))
    hooks.add_after(notification_hook(InAppNotifier(store)))
    lifecycle = ActionLifecycleService(db)
    dispatcher = ActionDispatcher(
        registry=registry,
        store=store,
        resolver=resolver,
        compliance=compliance,
        hooks=hooks,
        lifecycle=lifecycle,
    )
    return Services(db, store, compliance, resolver, registry, hooks, lifecycle, dispatcher)


def seed_client(db: SQLitePracticeDB, therapist_id: str, first_name: str, last_name: str) -> str:
    client_id = str(uuid.uuid4())
    now = to_iso(utc_now())
    with db.connection() as conn:
        conn.execute(
            """
            INSERT INTO clients (id, therapist_id, first_name, last_name, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (client_id, therapist_id, first_name, last_name, now, now),
        )
    return client_id


def count_rows(db: SQLitePracticeDB, table: str, where: str = "1 = 1", params: tuple = ()) -> int:
    with db.connection() as conn:
        row = conn.execute(f"SELECT COUNT(*) AS total FROM {table} WHERE {where}", params).fetchone()
    return int(row["total"])


@pytest.fixture
def services(tmp_path) -> Services:
    return build_services(tmp_path / "practice-test.sqlite")


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "practice-assistant-test.sqlite"
    monkeypatch.setenv("ASSISTANT_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    monkeypatch.setenv("ASSISTANT_PROVIDER_API_KEY", "test-key")
    monkeypatch.setenv("ASSISTANT_PROVIDER_BASE_URL", "https://provider.test/v1")
    monkeypatch.setenv("ASSISTANT_PROVIDER_RETRY_BASE_DELAY", "0")
    monkeypatch.setenv("ASSISTANT_CHAT_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("ASSISTANT_RATE_LIMIT_MAX", "20")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make
