from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    from pydantic import BaseModel

    from toil_ledger.models.enums import EventTopic

logger = logging.getLogger(__name__)


class EventNotifier:
    """Topic-based publish/subscribe, independent of any transport."""

    def __init__(self) -> None:
        self._handlers: defaultdict[EventTopic, list[Callable[[Any], Any]]] = defaultdict(list)

    def subscribe(self, topic: EventTopic, handler: Callable[[Any], Any]) -> Callable[[], None]:
        """Register ``handler`` for ``topic``; returns a callable that unsubscribes it."""
        self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def subscriber_count(self, topic: EventTopic) -> int:
        return len(self._handlers.get(topic, []))

    async def publish(self, topic: EventTopic, payload: BaseModel) -> None:
        """Deliver ``payload`` to every handler. Handler failures are logged, never raised."""
        for handler in list(self._handlers.get(topic, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler %r failed for topic %s", handler, topic)
