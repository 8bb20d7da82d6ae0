"""Multi-user orchestrator: N isolated sessions sharing one broker.

Actions across sessions run concurrently (fan-out/join) so races between
users surface; actions against one session stay sequential because one
client runtime runs one script at a time.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from .broker import MockBroker
from .channel import MockChannel
from .config import BrokerOptions
from .exceptions import NavigationError, SessionCountError, SetupError, UserIndexError
from .models import RealtimeMessage
from .network import NetworkSimulator
from .runtime import ClientHost, Page, RuntimeContext

logger = logging.getLogger("collab-sim")

SessionAction = Callable[[Page, int], Awaitable[None]]


class MultiUserSimulator:
    """Stand up ``user_count`` sessions and drive them together.

    Usage:
        sim = MultiUserSimulator(3, BrokerOptions(delay_ms=10))
        async with sim.session(ClientHost(app=my_app)):
            await sim.navigate_all_users("/kanban/board-1")
            await sim.perform_concurrent_actions([act_a, act_b, act_c])
    """

    def __init__(
        self,
        user_count: int = 2,
        broker_options: BrokerOptions | None = None,
        *,
        storage_state: dict[str, Any] | str | Path | None = None,
        base_viewport: tuple[int, int] = (1280, 720),
        broker: MockBroker | None = None,
    ) -> None:
        self._user_count = user_count
        self._storage_state = storage_state
        self._base_viewport = base_viewport
        self._broker = broker or MockBroker(broker_options)
        self._contexts: list[RuntimeContext] = []
        self._pages: list[Page] = []
        self._connections: list[MockChannel] = []
        self._networks: dict[int, NetworkSimulator] = {}

    @property
    def user_count(self) -> int:
        return len(self._pages)

    async def initialize(self, host: ClientHost) -> None:
        """Start the broker and register one session per user.

        Raises:
            SetupError: If sessions already exist; call cleanup() first.
        """
        if self._contexts:
            raise SetupError(
                f"Simulator already has {len(self._contexts)} sessions; call cleanup() first"
            )
        await self._broker.start()
        width, height = self._base_viewport
        for i in range(self._user_count):
            # Distinct viewport per user to simulate device diversity.
            context = await host.new_context(
                viewport=(width + i * 100, height + i * 50),
                storage_state=self._storage_state,
            )
            self._contexts.append(context)
            page = await context.new_page()
            self._pages.append(page)
            connection = await self._broker.add_connection(f"user-{i}", page)
            self._connections.append(connection)
        logger.info("Initialized %d simulated users", len(self._pages))

    @asynccontextmanager
    async def session(self, host: ClientHost) -> AsyncIterator[MultiUserSimulator]:
        try:
            await self.initialize(host)
            yield self
        finally:
            await self.cleanup()

    async def navigate_all_users(self, url: str) -> None:
        """Navigate every session concurrently and wait for each to settle.

        Raises:
            NavigationError: Naming every session that failed. Sessions that
                succeeded stay navigated.
        """

        async def _navigate(page: Page) -> None:
            await page.goto(url)
            await page.wait_for_load_state()

        results = await asyncio.gather(
            *(_navigate(page) for page in self._pages), return_exceptions=True
        )
        failed = [(i, r) for i, r in enumerate(results) if isinstance(r, BaseException)]
        if failed:
            names = ", ".join(f"user-{i}" for i, _ in failed)
            raise NavigationError(
                f"Navigation to {url} failed for {names}: {failed[0][1]}"
            ) from failed[0][1]

    async def perform_concurrent_actions(self, actions: list[SessionAction]) -> None:
        if len(actions) != len(self._pages):
            raise SessionCountError(
                f"Expected {len(self._pages)} actions for {len(self._pages)} users, "
                f"got {len(actions)}"
            )
        await asyncio.gather(
            *(action(self._pages[i], i) for i, action in enumerate(actions))
        )

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._pages):
            raise UserIndexError(f"User index {index} is out of range")

    async def send_message(self, from_index: int, message: RealtimeMessage) -> None:
        self._check_index(from_index)
        await self._connections[from_index].send_message(message)

    async def broadcast_message(self, message: RealtimeMessage) -> int:
        return await self._broker.send_to_all(message)

    def get_page(self, index: int) -> Page:
        self._check_index(index)
        return self._pages[index]

    def get_all_pages(self) -> list[Page]:
        return list(self._pages)

    def get_connection(self, index: int) -> MockChannel:
        self._check_index(index)
        return self._connections[index]

    def get_broker(self) -> MockBroker:
        return self._broker

    def network(self, index: int) -> NetworkSimulator:
        """Network simulator bound to session ``index`` (cached)."""
        self._check_index(index)
        if index not in self._networks:
            self._networks[index] = NetworkSimulator(
                self._contexts[index].network, name=f"user-{index}"
            )
        return self._networks[index]

    async def wait_for_connections(self, timeout: float | None = None) -> None:
        """Wait until every session has an open socket."""
        await asyncio.gather(
            *(conn.wait_until_open(timeout) for conn in self._connections)
        )

    async def flush(self) -> None:
        """Wait for all in-flight client sends to reach the broker."""
        await asyncio.gather(*(conn.flush() for conn in self._connections))

    async def cleanup(self) -> None:
        """Best-effort teardown; one failing session never blocks the rest."""
        results = await asyncio.gather(
            *(conn.close() for conn in self._connections), return_exceptions=True
        )
        for conn, result in zip(self._connections, results):
            if isinstance(result, Exception):
                logger.warning("Failed to close connection %s: %s", conn.id, result)

        results = await asyncio.gather(
            *(ctx.close() for ctx in self._contexts), return_exceptions=True
        )
        for i, result in enumerate(results):
            if isinstance(result, Exception):
                logger.warning("Failed to close context for user-%d: %s", i, result)

        try:
            await self._broker.stop()
        except Exception as e:
            logger.warning("Failed to stop broker: %s", e)

        self._contexts = []
        self._pages = []
        self._connections = []
        self._networks = {}
