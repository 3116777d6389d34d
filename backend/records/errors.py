from __future__ import annotations


class RecordsError(Exception):
    pass


class PersistenceError(RecordsError):
    pass


class ComplianceLogError(RecordsError):
    pass
