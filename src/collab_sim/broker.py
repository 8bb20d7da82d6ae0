"""In-process mock broker: connection registry plus fan-out.

Behaves like a minimal real-time server. Each channel registered with
``add_connection`` has its outbound traffic recorded in a bounded history and
re-broadcast to every *other* channel. Deliveries are independent per target:
each waits the configured delay, then is dropped with probability
``failure_rate`` or handed to the channel.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque

from .channel import MockChannel
from .config import BrokerOptions
from .events import (
    CONNECTION_ADDED,
    CONNECTION_REMOVED,
    MESSAGE_DELIVERED,
    MESSAGE_DROPPED,
    EventBus,
)
from .exceptions import DuplicateConnectionError, NotStartedError
from .models import RealtimeMessage
from .runtime import Page

logger = logging.getLogger("collab-sim")


class MockBroker:
    """Registry of channels with bounded history and best-effort fan-out."""

    def __init__(
        self,
        options: BrokerOptions | None = None,
        *,
        rng: random.Random | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.options = options or BrokerOptions()
        self.events = events or EventBus()
        self._rng = rng or random.Random()
        self._connections: dict[str, MockChannel] = {}
        self._history: deque[RealtimeMessage] = deque(
            maxlen=self.options.max_history_size
        )
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info("Mock broker started on %s", self.options.url)

    async def stop(self) -> None:
        if not self._started:
            return
        channels = list(self._connections.values())
        self._connections.clear()
        for channel in channels:
            try:
                await channel.close()
            except Exception:
                logger.warning("Failed to close channel %s", channel.id, exc_info=True)
        self._history.clear()
        self._started = False
        logger.info("Mock broker stopped")

    async def add_connection(self, connection_id: str, page: Page) -> MockChannel:
        """Create, wire, and register a channel for ``page``.

        Raises:
            NotStartedError: If the broker has not been started.
            DuplicateConnectionError: If the id is taken and duplicates are
                rejected by ``options.duplicate_ids``.
        """
        if not self._started:
            raise NotStartedError("Mock broker is not started")

        existing = self._connections.get(connection_id)
        if existing is not None:
            if self.options.duplicate_ids == "reject":
                raise DuplicateConnectionError(
                    f"Connection {connection_id!r} is already registered"
                )
            logger.warning("Replacing existing connection %s", connection_id)
            await self.remove_connection(connection_id)

        channel = MockChannel(connection_id, page, self.options)

        async def forward(message: RealtimeMessage) -> None:
            self._add_to_history(message)
            await self._broadcast(message, exclude=connection_id)

        channel.on_message(forward)
        channel.on_close(self._unregister)
        await channel.initialize()
        self._connections[connection_id] = channel
        await self.events.publish(CONNECTION_ADDED, {"connection_id": connection_id})
        return channel

    def _unregister(self, channel: MockChannel) -> None:
        # Only drop the entry if it still points at this channel.
        if self._connections.get(channel.id) is channel:
            del self._connections[channel.id]

    async def remove_connection(self, connection_id: str) -> None:
        channel = self._connections.pop(connection_id, None)
        if channel is None:
            return
        await channel.close()
        await self.events.publish(CONNECTION_REMOVED, {"connection_id": connection_id})

    def _add_to_history(self, message: RealtimeMessage) -> None:
        if self.options.message_history:
            self._history.append(message)

    async def _broadcast(
        self, message: RealtimeMessage, exclude: str | None = None
    ) -> int:
        targets = [
            (cid, channel)
            for cid, channel in self._connections.items()
            if cid != exclude
        ]
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self._deliver(cid, channel, message) for cid, channel in targets)
        )
        return sum(results)

    async def _deliver(
        self, connection_id: str, channel: MockChannel, message: RealtimeMessage
    ) -> bool:
        if self.options.delay_ms > 0:
            await asyncio.sleep(self.options.delay_ms / 1000)

        event = {
            "connection_id": connection_id,
            "message_id": message.id,
            "type": message.type,
        }
        if self._connections.get(connection_id) is not channel:
            await self.events.publish(MESSAGE_DROPPED, {**event, "reason": "disconnected"})
            return False
        if self.options.failure_rate > 0 and self._rng.random() < self.options.failure_rate:
            logger.info("Simulated message failure: %s -> %s", message.id, connection_id)
            await self.events.publish(MESSAGE_DROPPED, {**event, "reason": "failure_rate"})
            return False

        try:
            delivered = await channel.receive_message(message)
        except Exception:
            logger.exception("Failed to deliver %s to %s", message.id, connection_id)
            delivered = False

        if delivered:
            await self.events.publish(
                MESSAGE_DELIVERED, {**event, "latency_ms": message.age_ms()}
            )
        else:
            await self.events.publish(MESSAGE_DROPPED, {**event, "reason": "not_received"})
        return delivered

    async def send_to_all(
        self, message: RealtimeMessage, exclude: str | None = None
    ) -> int:
        """Record ``message`` and fan it out. Returns the delivery count."""
        self._add_to_history(message)
        return await self._broadcast(message, exclude)

    async def send_to_connection(self, connection_id: str, message: RealtimeMessage) -> bool:
        """Deliver directly: no delay, no failure sampling, no history."""
        channel = self._connections.get(connection_id)
        if channel is None:
            return False
        return await channel.receive_message(message)

    def get_message_history(self) -> list[RealtimeMessage]:
        return list(self._history)

    def get_connections(self) -> list[str]:
        return list(self._connections)

    def get_connection(self, connection_id: str) -> MockChannel | None:
        return self._connections.get(connection_id)

    def get_connection_count(self) -> int:
        return len(self._connections)
