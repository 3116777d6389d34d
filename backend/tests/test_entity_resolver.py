from __future__ import annotations

import pytest

from assistant_core import AmbiguousMatchError, NotFoundError
from conftest import seed_client


@pytest.mark.asyncio
async def test_full_name_wins_over_shared_first_name(services):
    john_doe = seed_client(services.db, "therapist-a", "John", "Doe")
    seed_client(services.db, "therapist-a", "John", "Smith")

    assert await services.resolver.resolve_client("therapist-a", "John Doe") == john_doe
    assert await services.resolver.resolve_client("therapist-a", "doe, john") == john_doe
    assert await services.resolver.resolve_client("therapist-a", "  JOHN   doe ") == john_doe

    with pytest.raises(AmbiguousMatchError) as excinfo:
        await services.resolver.resolve_client("therapist-a", "John")
    assert excinfo.value.candidates == ["John Doe", "John Smith"]
    assert "Please be more specific" in excinfo.value.user_message


@pytest.mark.asyncio
async def test_resolution_is_idempotent(services):
    jane = seed_client(services.db, "therapist-a", "Jane", "Doe")
    seed_client(services.db, "therapist-a", "Mark", "Lee")

    first = await services.resolver.resolve_client("therapist-a", "Jane")
    second = await services.resolver.resolve_client("therapist-a", "Jane")
    assert first == second == jane


@pytest.mark.asyncio
async def test_substring_match_is_the_last_resort(services):
    maria = seed_client(services.db, "therapist-a", "Maria", "Gonzalez")
    seed_client(services.db, "therapist-a", "Tom", "Baker")

    assert await services.resolver.resolve_client("therapist-a", "gonz") == maria
    assert await services.resolver.resolve_client("therapist-a", "Maria G.") == maria


@pytest.mark.asyncio
async def test_no_match_lists_the_requesters_clients_only(services):
    seed_client(services.db, "therapist-a", "Jane", "Doe")
    seed_client(services.db, "therapist-b", "Peter", "Parker")

    with pytest.raises(NotFoundError) as excinfo:
        await services.resolver.resolve_client("therapist-a", "Peter Parker")
    assert excinfo.value.suggestions == ["Jane Doe"]

    with pytest.raises(NotFoundError) as empty:
        await services.resolver.resolve_client("therapist-c", "Jane Doe")
    assert empty.value.suggestions == []
    assert "no clients yet" in empty.value.user_message


@pytest.mark.asyncio
async def test_uuid_reference_must_belong_to_the_requester(services):
    theirs = seed_client(services.db, "therapist-b", "Peter", "Parker")
    mine = seed_client(services.db, "therapist-a", "Jane", "Doe")

    assert await services.resolver.resolve_client("therapist-a", mine.upper()) == mine
    with pytest.raises(NotFoundError):
        await services.resolver.resolve_client("therapist-a", theirs)
