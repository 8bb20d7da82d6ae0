"""Broker event stream.

MockBroker reports every registry change and every delivery outcome here,
so metrics collectors and scenarios can observe traffic without reaching
into broker internals, and can wait for a delivery instead of sleeping:

    delivered = await broker.events.wait_for(
        MESSAGE_DELIVERED, lambda e: e["message_id"] == "m1", timeout=1
    )

Payloads:
    connection.added    {"connection_id"}
    connection.removed  {"connection_id"}
    message.delivered   {"connection_id", "message_id", "type", "latency_ms"}
    message.dropped     {"connection_id", "message_id", "type", "reason"}
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, get_args

logger = logging.getLogger("collab-sim")

Topic = Literal[
    "connection.added", "connection.removed", "message.delivered", "message.dropped"
]
TOPICS: tuple[str, ...] = get_args(Topic)

CONNECTION_ADDED: Topic = "connection.added"
CONNECTION_REMOVED: Topic = "connection.removed"
MESSAGE_DELIVERED: Topic = "message.delivered"
MESSAGE_DROPPED: Topic = "message.dropped"

EventHandler = Callable[[dict[str, Any]], Awaitable[None] | None]
EventPredicate = Callable[[dict[str, Any]], bool]


@dataclass
class _Listener:
    topic: str
    handler: EventHandler
    once: bool = False


class EventBus:
    """Listeners run in subscription order; one failing never stops the rest."""

    def __init__(self) -> None:
        self._listeners: dict[int, _Listener] = {}
        self._ids = itertools.count(1)
        self._published: Counter[str] = Counter()

    def subscribe(self, topic: Topic, handler: EventHandler, *, once: bool = False) -> int:
        """Listen on ``topic``. ``once`` listeners are dropped after one event.

        Raises:
            ValueError: If ``topic`` is not one the broker publishes.
        """
        if topic not in TOPICS:
            raise ValueError(f"Unknown topic {topic!r}. Known: {', '.join(TOPICS)}")
        listener_id = next(self._ids)
        self._listeners[listener_id] = _Listener(topic, handler, once)
        return listener_id

    def unsubscribe(self, listener_id: int) -> bool:
        return self._listeners.pop(listener_id, None) is not None

    def subscriber_count(self, topic: Topic) -> int:
        return sum(1 for lst in self._listeners.values() if lst.topic == topic)

    def published(self, topic: Topic) -> int:
        """How many events have been published on ``topic``."""
        return self._published[topic]

    async def publish(self, topic: Topic, event: dict[str, Any]) -> None:
        self._published[topic] += 1
        matching = [
            (lid, lst) for lid, lst in self._listeners.items() if lst.topic == topic
        ]
        for listener_id, listener in matching:
            if listener.once:
                self._listeners.pop(listener_id, None)
            try:
                result = listener.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener for %s failed", topic)

    async def wait_for(
        self,
        topic: Topic,
        predicate: EventPredicate | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Wait for the next event on ``topic`` matching ``predicate``.

        Raises:
            asyncio.TimeoutError: If nothing matches within ``timeout`` seconds.
        """
        found: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()

        def check(event: dict[str, Any]) -> None:
            if not found.done() and (predicate is None or predicate(event)):
                found.set_result(event)

        listener_id = self.subscribe(topic, check)
        try:
            return await asyncio.wait_for(found, timeout)
        finally:
            self.unsubscribe(listener_id)
