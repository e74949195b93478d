"""
In-process pub/sub channel for sync status, connectivity and navigation events.
"""
from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class EventTopic(str, Enum):
    SYNC_STATUS = "sync-status"
    CONNECTIVITY = "connectivity"
    NAVIGATION_BLOCKED = "navigation-blocked"
    UPDATE_AVAILABLE = "update-available"
    REAUTHENTICATION_REQUIRED = "reauthentication-required"
    JOB_UPDATED = "job-updated"


WILDCARD = "*"


@dataclass(frozen=True, slots=True)
class Event:
    topic: str
    payload: dict[str, Any]
    emitted_at: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


Handler = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """Topic-routed event bus. Handlers may be plain callables or coroutines."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, topic: EventTopic | str, handler: Handler) -> Callable[[], None]:
        """Subscribe a handler to a topic ("*" for all). Returns an unsubscribe callable."""
        key = _topic_key(topic)
        self._subscribers[key].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(key, handler)

        return _unsubscribe

    def unsubscribe(self, topic: EventTopic | str, handler: Handler) -> None:
        handlers = self._subscribers.get(_topic_key(topic))
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def publish(self, topic: EventTopic | str, payload: dict[str, Any] | None = None) -> Event:
        key = _topic_key(topic)
        event = Event(topic=key, payload=dict(payload or {}))
        handlers = [*self._subscribers.get(key, []), *self._subscribers.get(WILDCARD, [])]
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for topic '%s'", key)
        return event

    def subscriber_count(self, topic: EventTopic | str) -> int:
        return len(self._subscribers.get(_topic_key(topic), []))


def _topic_key(topic: EventTopic | str) -> str:
    return topic.value if isinstance(topic, EventTopic) else topic
