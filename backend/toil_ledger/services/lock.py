"""Cooperative write lock serializing every mutation of the persistent store.

FIFO handoff between waiters, re-entrant for the task that holds it, and a
lease: a holder that keeps the lock past ``timeout`` seconds is
force-released so a caller that never releases cannot deadlock the ledger.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from toil_ledger.exceptions import LockTimeoutError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

logger = logging.getLogger(__name__)


class WriteLock:
    """Mutex with lease expiry. ``acquire()`` returns an idempotent release callable."""

    def __init__(self, timeout: float = 5.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._timeout = timeout
        self._clock = clock
        self._token = 0
        self._owner: int | None = None
        self._owner_task: asyncio.Task[object] | None = None
        self._depth = 0
        self._since = 0.0
        self._waiters: deque[asyncio.Future[int]] = deque()
        self.force_releases = 0

    @property
    def locked(self) -> bool:
        return self._owner is not None

    @property
    def timeout(self) -> float:
        return self._timeout

    def _grant(self) -> int:
        self._token += 1
        self._owner = self._token
        self._owner_task = None
        self._depth = 1
        self._since = self._clock()
        return self._token

    def _handoff(self) -> None:
        """Pass ownership to the first live waiter, or mark the lock free."""
        self._owner = None
        self._owner_task = None
        self._depth = 0
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(self._grant())
                return

    def _release(self, token: int) -> None:
        if self._owner != token:
            logger.debug("Ignoring release of stale write lock token %d", token)
            return
        self._depth -= 1
        if self._depth <= 0:
            self._handoff()

    def _force_release(self) -> None:
        held_for = self._clock() - self._since
        self.force_releases += 1
        logger.warning("%s", LockTimeoutError(self._owner or 0, held_for))
        self._handoff()

    def _make_release(self, token: int) -> Callable[[], None]:
        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._release(token)

        return release

    async def acquire(self) -> Callable[[], None]:
        """Wait for the lock and return a callable that releases it."""
        task = asyncio.current_task()
        if self._owner is not None and task is not None and self._owner_task is task:
            self._depth += 1
            return self._make_release(self._owner)

        if self._owner is None and not self._waiters:
            token = self._grant()
            self._owner_task = task
            return self._make_release(token)

        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[int] = loop.create_future()
        self._waiters.append(waiter)
        try:
            while not waiter.done():
                if self._owner is None:
                    self._handoff()
                    continue
                remaining = self._timeout - (self._clock() - self._since)
                if remaining <= 0:
                    self._force_release()
                    continue
                try:
                    await asyncio.wait_for(asyncio.shield(waiter), remaining)
                except TimeoutError:
                    continue
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                self._release(waiter.result())
            else:
                waiter.cancel()
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
            raise

        token = waiter.result()
        self._owner_task = task
        return self._make_release(token)

    @asynccontextmanager
    async def held(self) -> AsyncIterator[None]:
        """Hold the lock for the body of an ``async with`` block."""
        release = await self.acquire()
        try:
            yield
        finally:
            release()
