from __future__ import annotations

import asyncio
import copy
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from sqlalchemy import select
from sqlmodel import col

from toil_ledger.db import create_tables
from toil_ledger.exceptions import StorageError
from toil_ledger.models.store import LedgerCollectionRow

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

Rows = list[Any]
T = TypeVar("T")


@runtime_checkable
class PersistentStore(Protocol):
    """Key/value store holding named collections of flat JSON rows."""

    async def init(self) -> None:
        """Prepare the backing storage. Called once before first use."""
        ...

    async def read(self, key: str) -> Rows:
        """Return the rows stored under ``key`` (empty list when absent)."""
        ...

    async def write(self, items: Mapping[str, Rows]) -> None:
        """Replace every collection in ``items`` atomically."""
        ...


class InMemoryStore:
    """In-memory store for development and tests. Rows round-trip through JSON."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def init(self) -> None:
        return None

    async def read(self, key: str) -> Rows:
        raw = self._data.get(key)
        if raw is None:
            return []
        parsed = json.loads(raw)
        return parsed if isinstance(parsed, list) else []

    async def write(self, items: Mapping[str, Rows]) -> None:
        encoded = {key: json.dumps(rows) for key, rows in items.items()}
        self._data.update(encoded)

    def dump(self) -> dict[str, Rows]:
        """Snapshot of every collection, for assertions."""
        return {key: json.loads(raw) for key, raw in self._data.items()}


class SqlStore:
    """Store backed by the ``toil_ledger_collection`` table."""

    def __init__(self, engine: AsyncEngine, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._engine = engine
        self._session_factory = session_factory

    async def init(self) -> None:
        await create_tables(self._engine)

    async def read(self, key: str) -> Rows:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LedgerCollectionRow).where(col(LedgerCollectionRow.key) == key)
            )
            row = result.scalar_one_or_none()
        if row is None:
            return []
        return copy.deepcopy(list(row.payload or []))

    async def write(self, items: Mapping[str, Rows]) -> None:
        async with self._session_factory() as session:
            for key, rows in items.items():
                existing = await session.get(LedgerCollectionRow, key)
                if existing is None:
                    session.add(LedgerCollectionRow(key=key, payload=list(rows)))
                else:
                    existing.payload = list(rows)
                    existing.updated_at = datetime.now(UTC)
            await session.commit()


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    description: str,
    max_retries: int,
    delay: float,
) -> T:
    """Run a store operation, retrying with a fixed delay before raising ``StorageError``."""
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            attempt += 1
            if attempt > max_retries:
                logger.error("Storage operation '%s' failed after %d retries: %s", description, max_retries, exc)
                raise StorageError(f"Storage operation '{description}' failed: {exc}") from exc
            logger.warning("Storage operation '%s' failed, retry %d/%d", description, attempt, max_retries)
            await asyncio.sleep(delay)
