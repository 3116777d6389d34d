from __future__ import annotations

import pytest

from records import (
    UNAUTHORIZED_ACCESS_ATTEMPT,
    AuditRecord,
    ComplianceLogError,
    ComplianceService,
    PersistenceError,
    PHIAccessRecord,
    PracticeStore,
    SQLitePracticeDB,
    is_psychotherapy_note,
)
from conftest import count_rows, seed_client


class BrokenAuditStore(PracticeStore):
    async def append_audit(self, **kwargs):
        raise PersistenceError("disk I/O error")

    async def append_phi_access(self, **kwargs):
        raise PersistenceError("disk I/O error")


@pytest.fixture
def db(tmp_path):
    return SQLitePracticeDB(str(tmp_path / "compliance.sqlite"))


@pytest.mark.asyncio
async def test_owner_and_portal_user_have_access(db):
    store = PracticeStore(db)
    compliance = ComplianceService(store)
    client_id = seed_client(db, "therapist-a", "Jane", "Doe")
    await store.link_portal_user(client_id=client_id, user_id="portal-jane")

    assert await compliance.verify_access("therapist-a", client_id) is True
    assert await compliance.verify_access("portal-jane", client_id) is True
    assert count_rows(db, "audit_logs") == 0


@pytest.mark.asyncio
async def test_denied_access_is_audited_as_an_unauthorized_attempt(db):
    compliance = ComplianceService(PracticeStore(db))
    client_id = seed_client(db, "therapist-a", "Jane", "Doe")

    assert await compliance.verify_access("therapist-b", client_id) is False

    logs = await compliance.recent_audit("therapist-b")
    assert len(logs) == 1
    assert logs[0]["action"] == UNAUTHORIZED_ACCESS_ATTEMPT
    assert logs[0]["entity_id"] == client_id
    assert logs[0]["success"] is False


@pytest.mark.asyncio
async def test_phi_access_requires_justification_and_valid_type(db):
    compliance = ComplianceService(PracticeStore(db))
    base = dict(actor_id="therapist-a", entity_type="appointment", client_id="c-1")

    with pytest.raises(ComplianceLogError):
        await compliance.log_access(PHIAccessRecord(access_type="browse", justification="visit", **base))
    with pytest.raises(ComplianceLogError):
        await compliance.log_access(PHIAccessRecord(access_type="write", justification="  ", **base))

    await compliance.log_access(
        PHIAccessRecord(access_type="write", justification="scheduling", accessed_fields=["client_id"], **base)
    )
    entries = await compliance.recent_phi_access("therapist-a")
    assert entries[0]["accessed_fields"] == ["client_id"]


@pytest.mark.asyncio
async def test_audit_failures_escalate_only_for_protected_entities(db):
    compliance = ComplianceService(BrokenAuditStore(db))
    audit = AuditRecord(actor_id="therapist-a", action="CREATE", entity_type="reminder")

    assert await compliance.record(audit, protected=False) is None
    with pytest.raises(ComplianceLogError):
        await compliance.record(audit, protected=True)
    with pytest.raises(ComplianceLogError):
        await compliance.log_access(
            PHIAccessRecord(
                actor_id="therapist-a",
                access_type="read",
                entity_type="client",
                client_id="c-1",
                justification="review",
            )
        )


def test_minimum_necessary_flags_extra_fields(db):
    compliance = ComplianceService(PracticeStore(db))

    assert compliance.validate_minimum_necessary("delete_invoice", ["invoice_id"]).valid
    result = compliance.validate_minimum_necessary("delete_invoice", ["invoice_id", "amount"])
    assert not result.valid
    assert "amount" in result.error
    assert compliance.validate_minimum_necessary("list_clients", ["limit"]).valid


def test_psychotherapy_notes_are_detected_by_field_name():
    assert is_psychotherapy_note("soap_note", ["client_id", "psychotherapy_notes"])
    assert not is_psychotherapy_note("soap_note", ["client_id", "plan"])
    assert not is_psychotherapy_note("appointment", ["psychotherapy_notes"])
