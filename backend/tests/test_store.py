"""Tests for the persistent store backends and the retry helper."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from toil_ledger.exceptions import StorageError
from toil_ledger.services.store import InMemoryStore, PersistentStore, SqlStore, with_retries

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


@pytest.fixture
async def sql_store(sqlite_engine: AsyncEngine) -> SqlStore:
    store = SqlStore(sqlite_engine, async_sessionmaker(sqlite_engine, expire_on_commit=False))
    await store.init()
    return store


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


async def test_memory_store_reads_empty_for_missing_key() -> None:
    store = InMemoryStore()
    assert await store.read("toil-records") == []


async def test_memory_store_round_trips_json() -> None:
    store = InMemoryStore()
    await store.write({"toil-records": [{"id": "a", "hours": 1.5}], "toil-records-deleted": ["x"]})

    assert await store.read("toil-records") == [{"id": "a", "hours": 1.5}]
    assert await store.read("toil-records-deleted") == ["x"]


async def test_memory_store_returns_copies() -> None:
    store = InMemoryStore()
    await store.write({"toil-usage": [{"id": "u"}]})

    rows = await store.read("toil-usage")
    rows[0]["id"] = "mutated"
    assert await store.read("toil-usage") == [{"id": "u"}]


async def test_stores_satisfy_protocol(sql_store: SqlStore) -> None:
    assert isinstance(InMemoryStore(), PersistentStore)
    assert isinstance(sql_store, PersistentStore)


# ---------------------------------------------------------------------------
# SQL store
# ---------------------------------------------------------------------------


async def test_sql_store_reads_empty_for_missing_key(sql_store: SqlStore) -> None:
    assert await sql_store.read("toil-records") == []


async def test_sql_store_writes_several_collections(sql_store: SqlStore) -> None:
    await sql_store.write(
        {
            "toil-records": [{"id": "a", "userId": "u1", "hours": 2.0}],
            "toil-usage": [{"id": "b", "entryId": "e1"}],
        }
    )

    assert await sql_store.read("toil-records") == [{"id": "a", "userId": "u1", "hours": 2.0}]
    assert await sql_store.read("toil-usage") == [{"id": "b", "entryId": "e1"}]


async def test_sql_store_overwrites_existing_collection(sql_store: SqlStore) -> None:
    await sql_store.write({"toil-records": [{"id": "a"}]})
    await sql_store.write({"toil-records": [{"id": "b"}, {"id": "c"}]})

    assert await sql_store.read("toil-records") == [{"id": "b"}, {"id": "c"}]


async def test_sql_store_init_is_idempotent(sql_store: SqlStore) -> None:
    await sql_store.write({"toil-records": [{"id": "a"}]})
    await sql_store.init()
    assert await sql_store.read("toil-records") == [{"id": "a"}]


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


async def test_with_retries_recovers_from_transient_failures() -> None:
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise ConnectionError("transient")
        return "ok"

    assert await with_retries(flaky, description="flaky", max_retries=3, delay=0) == "ok"
    assert calls == 3


async def test_with_retries_raises_storage_error_when_exhausted() -> None:
    calls = 0

    async def broken() -> None:
        nonlocal calls
        calls += 1
        raise ConnectionError("down")

    with pytest.raises(StorageError) as exc_info:
        await with_retries(broken, description="broken", max_retries=2, delay=0)

    assert calls == 3
    assert isinstance(exc_info.value.__cause__, ConnectionError)
    assert exc_info.value.status_code == 503
