from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from toil_ledger.config import Settings
from toil_ledger.main import create_app
from toil_ledger.models.enums import EventTopic
from toil_ledger.services.lock import WriteLock
from toil_ledger.services.repository import LedgerRepository
from toil_ledger.services.store import InMemoryStore
from toil_ledger.services.summary import SummaryCache
from toil_ledger.services.toil import TOILService

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncEngine


class EventRecorder:
    """Collects every payload published on the notifier, per topic."""

    def __init__(self) -> None:
        self.events: defaultdict[EventTopic, list[Any]] = defaultdict(list)

    def handler(self, topic: EventTopic):
        def record(payload: Any) -> None:
            self.events[topic].append(payload)

        return record

    def __getitem__(self, topic: EventTopic) -> list[Any]:
        return self.events[topic]


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast tests: in-memory store, short queue delay, no retry backoff."""
    return Settings(
        store_backend="memory",
        queue_delay_seconds=0.01,
        storage_retry_delay_seconds=0.0,
        storage_max_retries=2,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def lock(settings: Settings) -> WriteLock:
    return WriteLock(settings.lock_timeout_seconds)


@pytest.fixture
def repository(store: InMemoryStore, lock: WriteLock, settings: Settings) -> LedgerRepository:
    return LedgerRepository(store, lock, settings)


@pytest.fixture
def cache(repository: LedgerRepository) -> SummaryCache:
    return SummaryCache(repository)


@pytest.fixture
async def service(settings: Settings, store: InMemoryStore) -> AsyncIterator[TOILService]:
    """A started service over an in-memory store."""
    svc = TOILService(settings, store=store)
    await svc.start()
    yield svc
    await svc.stop()


@pytest.fixture
def recorder(service: TOILService) -> EventRecorder:
    """Record every event the service publishes."""
    rec = EventRecorder()
    for topic in EventTopic:
        service.subscribe(topic, rec.handler(topic))
    return rec


@pytest.fixture
async def sqlite_engine() -> AsyncIterator[AsyncEngine]:
    """In-memory SQLite engine shared across connections."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_client(service: TOILService) -> AsyncIterator[AsyncClient]:
    """Async HTTP client bound to an app whose lifespan state is the test service."""
    app = create_app(service.settings)
    app.state.toil = service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
