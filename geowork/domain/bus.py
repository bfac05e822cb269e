"""Synchronous in-process bus for scheduling domain events."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[Any], None]


class EventBus:
    """Publish/subscribe bus for domain events.

    Handlers run synchronously in registration order. A handler that raises
    is logged and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        """Register *handler*; the returned callable unsubscribes it."""
        self._subscribers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: Any) -> int:
        """Deliver *event*; returns the number of handlers that failed."""
        failures = 0
        for handler in list(self._subscribers.get(type(event), [])):
            try:
                handler(event)
            except Exception:
                failures += 1
                logger.exception(
                    "Handler %s failed for %s",
                    getattr(handler, "__qualname__", handler),
                    type(event).__name__,
                )
        return failures
