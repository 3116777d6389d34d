from .compliance import (
    MINIMUM_NECESSARY_FIELDS,
    UNAUTHORIZED_ACCESS_ATTEMPT,
    AuditRecord,
    ComplianceService,
    MinimumNecessaryResult,
    PHIAccessRecord,
    is_psychotherapy_note,
)
from .database import SQLitePracticeDB
from .errors import ComplianceLogError, PersistenceError, RecordsError
from .practice_store import PracticeStore

__all__ = [
    "MINIMUM_NECESSARY_FIELDS",
    "UNAUTHORIZED_ACCESS_ATTEMPT",
    "AuditRecord",
    "ComplianceLogError",
    "ComplianceService",
    "MinimumNecessaryResult",
    "PHIAccessRecord",
    "PersistenceError",
    "PracticeStore",
    "RecordsError",
    "SQLitePracticeDB",
    "is_psychotherapy_note",
]
