from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from records import PersistenceError, PracticeStore

from .errors import AmbiguousMatchError, NotFoundError, PersistenceFailure
from .schemas import is_uuid

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 20


@dataclass(frozen=True)
class ClientCandidate:
    client_id: str
    first_name: str
    last_name: str

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "ClientCandidate":
        return cls(
            client_id=str(row["id"]),
            first_name=str(row.get("first_name") or "").strip(),
            last_name=str(row.get("last_name") or "").strip(),
        )


def _normalize(text: str) -> str:
    return " ".join((text or "").lower().split())


def _match_sets(query: str, candidates: list[ClientCandidate]) -> list[list[ClientCandidate]]:
    exact: list[ClientCandidate] = []
    first_only: list[ClientCandidate] = []
    partial: list[ClientCandidate] = []
    for candidate in candidates:
        first = _normalize(candidate.first_name)
        last = _normalize(candidate.last_name)
        full = _normalize(candidate.full_name)
        if query in {full, f"{last}, {first}", f"{last},{first}"}:
            exact.append(candidate)
        if first and query == first:
            first_only.append(candidate)
        if query in full or (first and first in query):
            partial.append(candidate)
    return [exact, first_only, partial]


class EntityResolver:
    def __init__(self, store: PracticeStore) -> None:
        self._store = store

    async def _candidates(self, therapist_id: str) -> list[ClientCandidate]:
        try:
            rows = await self._store.client_directory(therapist_id)
        except PersistenceError as exc:
            logger.error("client lookup failed during resolution: %s", exc)
            raise PersistenceFailure("Client lookup failed.") from exc
        return [ClientCandidate.from_row(row) for row in rows]

    async def resolve_client(self, therapist_id: str, reference: str) -> str:
        """Map a client name (or id) to one of the requester's client ids.

        Match sets are tried in order and the first non-empty one decides:
        exact full name (``first last`` or ``last, first``), exact first name, then
        substring. A decisive set with more than one member is ambiguous.
        """
        query = _normalize(reference)
        if not query:
            raise NotFoundError("A client name is required.")

        candidates = await self._candidates(therapist_id)
        if is_uuid(reference):
            wanted = reference.strip().lower()
            for candidate in candidates:
                if candidate.client_id.lower() == wanted:
                    return candidate.client_id
            raise NotFoundError("Client not found.")

        if not candidates:
            raise NotFoundError(
                f'Client "{reference.strip()}" not found. You have no clients yet.',
                suggestions=[],
            )

        for matches in _match_sets(query, candidates):
            if len(matches) == 1:
                return matches[0].client_id
            if len(matches) > 1:
                names = sorted(candidate.full_name for candidate in matches)
                logger.info("client reference matched %d candidates", len(matches))
                raise AmbiguousMatchError(reference.strip(), names)

        suggestions = [candidate.full_name for candidate in candidates[:MAX_SUGGESTIONS]]
        raise NotFoundError(
            f'Client "{reference.strip()}" not found. Available clients: {", ".join(suggestions)}',
            suggestions=suggestions,
        )
