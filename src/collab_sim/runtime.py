"""Simulated client runtime: isolated contexts, pages, and network layers.

This is the stand-in for a browser. A ``ClientHost`` hands out isolated
``RuntimeContext`` objects (own storage, own viewport, own network layer),
each of which owns ``Page`` objects. Application code under test is a
callable ``app(page, url)`` that runs on ``page.goto(url)`` and obtains its
real-time connection through ``page.open_socket(url)``.

Socket construction goes through an explicit injection point,
``Page.install_socket_factory``. Without an installed factory there is no
server to talk to, so opening a socket fails.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import json
import logging
import random
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol

from .exceptions import NavigationError, TransportError

logger = logging.getLogger("collab-sim")

App = Callable[["Page", str], Awaitable[None] | None]


class Socket(Protocol):
    """What application code can rely on from a real-time socket."""

    url: str
    ready_state: int

    def send(self, data: Any) -> None: ...

    def close(self, code: int = 1000, reason: str = "") -> None: ...


SocketFactory = Callable[["Page", str, "list[str] | None"], Socket]


def _native_socket_factory(page: Page, url: str, protocols: list[str] | None = None) -> Socket:
    raise TransportError(
        f"No real-time transport installed for {url}; "
        "attach a MockChannel before opening sockets"
    )


class NetworkLayer:
    """Per-context transport conditions.

    ``transmit`` is the delivery gate every simulated message crosses. It
    returns False when the message must not arrive: the layer is offline,
    its direction has zero throughput, the packet was lost, or the layer
    went offline while the message was in flight (even if it has come back
    online since).
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()
        self._offline = False
        self._epoch = 0  # bumped every time the layer goes offline
        self.latency_ms: float = 0.0
        self.download_bytes_per_sec: float | None = None  # None = unthrottled, 0 = cut
        self.upload_bytes_per_sec: float | None = None
        self.packet_loss_percent: float = 0.0

    @property
    def offline(self) -> bool:
        return self._offline

    @offline.setter
    def offline(self, value: bool) -> None:
        if value and not self._offline:
            self._epoch += 1
        self._offline = value

    def reset(self) -> None:
        self.offline = False
        self.latency_ms = 0.0
        self.download_bytes_per_sec = None
        self.upload_bytes_per_sec = None
        self.packet_loss_percent = 0.0

    def _throughput(self, direction: str) -> float | None:
        if direction == "download":
            return self.download_bytes_per_sec
        return self.upload_bytes_per_sec

    def transfer_delay(self, size_bytes: int, direction: str = "download") -> float:
        """Seconds a message of ``size_bytes`` spends in flight."""
        delay = self.latency_ms / 1000
        throughput = self._throughput(direction)
        if throughput:
            delay += size_bytes / throughput
        return delay

    async def transmit(self, size_bytes: int, direction: str = "download") -> bool:
        if self._offline or self._throughput(direction) == 0:
            return False
        if self.packet_loss_percent and self._rng.random() * 100 < self.packet_loss_percent:
            logger.debug("Packet lost (%s, %d bytes)", direction, size_bytes)
            return False
        epoch = self._epoch
        delay = self.transfer_delay(size_bytes, direction)
        if delay > 0:
            await asyncio.sleep(delay)
        return not self._offline and epoch == self._epoch


class Page:
    """One document inside a runtime context."""

    def __init__(self, context: RuntimeContext, app: App | None = None) -> None:
        self._context = context
        self._app = app
        self._socket_factory: SocketFactory = _native_socket_factory
        self._load_settled = asyncio.Event()
        self._load_settled.set()  # about:blank is settled
        self._closed = False
        self.url = "about:blank"
        self.sockets: list[Socket] = []
        self.outbound: list[dict[str, Any]] = []  # messages the client sent
        self.inbound: list[dict[str, Any]] = []  # messages delivered to the client
        self.state: dict[str, Any] = {}  # scratch space for application code

    @property
    def context(self) -> RuntimeContext:
        return self._context

    @property
    def network(self) -> NetworkLayer:
        return self._context.network

    @property
    def storage(self) -> dict[str, Any]:
        return self._context.storage

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def active_socket(self) -> Socket | None:
        """Most recently opened socket that is not closed."""
        for sock in reversed(self.sockets):
            if sock.ready_state < 3:
                return sock
        return None

    def install_socket_factory(self, factory: SocketFactory) -> None:
        self._socket_factory = factory

    def open_socket(self, url: str, protocols: list[str] | None = None) -> Socket:
        """Called by application code to open its real-time connection."""
        if self._closed:
            raise TransportError("Page is closed")
        sock = self._socket_factory(self, url, protocols)
        self.sockets.append(sock)
        return sock

    async def goto(self, url: str) -> None:
        if self._closed:
            raise NavigationError(f"Cannot navigate a closed page to {url}")
        if self.network.offline:
            raise NavigationError(f"net::ERR_INTERNET_DISCONNECTED at {url}")
        self._load_settled.clear()
        self.url = url
        try:
            if self._app is not None:
                result = self._app(self, url)
                if inspect.isawaitable(result):
                    await result
        except NavigationError:
            raise
        except Exception as e:
            raise NavigationError(f"Navigation to {url} failed: {e}") from e
        self._load_settled.set()

    async def wait_for_load_state(self, timeout: float | None = None) -> None:
        """Block until the last navigation has settled."""
        await asyncio.wait_for(self._load_settled.wait(), timeout)

    async def wait_for_timeout(self, ms: float) -> None:
        await asyncio.sleep(ms / 1000)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for sock in self.sockets:
            sock.close(1001, "page closed")


class RuntimeContext:
    """Isolated client runtime: distinct storage, viewport, and network."""

    def __init__(
        self,
        host: ClientHost,
        *,
        viewport: tuple[int, int] = (1280, 720),
        storage_state: dict[str, Any] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._host = host
        self.viewport = viewport
        self.storage: dict[str, Any] = copy.deepcopy(storage_state or {})
        self.network = NetworkLayer(rng)
        self.pages: list[Page] = []
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def new_page(self) -> Page:
        if self._closed:
            raise TransportError("Context is closed")
        page = Page(self, self._host.app)
        self.pages.append(page)
        return page

    def set_offline(self, offline: bool) -> None:
        self.network.offline = offline

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for page in self.pages:
            await page.close()


class ClientHost:
    """Factory for isolated runtime contexts (the "browser")."""

    def __init__(self, app: App | None = None, *, seed: int | None = None) -> None:
        self.app = app
        self._rng = random.Random(seed)
        self.contexts: list[RuntimeContext] = []

    async def new_context(
        self,
        *,
        viewport: tuple[int, int] = (1280, 720),
        storage_state: dict[str, Any] | str | Path | None = None,
    ) -> RuntimeContext:
        """Create an isolated context.

        ``storage_state`` may be a dict or a path to a JSON file holding one
        (e.g. a saved authentication state).
        """
        if isinstance(storage_state, (str, Path)):
            storage_state = json.loads(Path(storage_state).read_text())
        context = RuntimeContext(
            self,
            viewport=viewport,
            storage_state=storage_state,
            rng=random.Random(self._rng.random()),
        )
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        for context in self.contexts:
            await context.close()
