"""Per-client channel: a substitute socket installed into a page.

``MockChannel.initialize()`` installs a socket factory into the page, so
application code that calls ``page.open_socket(url)`` gets a ``MockSocket``.
The socket moves CONNECTING -> OPEN shortly after construction, accepts
sends only while OPEN, and fires ``onclose`` exactly once.

Outbound traffic (client -> broker) flows through the page's network layer
as upload; inbound traffic (broker -> client) flows through it as download.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any

from .config import BrokerOptions
from .exceptions import ChannelNotInitializedError, ChannelNotOpenError
from .models import RealtimeMessage
from .runtime import Page

logger = logging.getLogger("collab-sim")

MessageHandler = Callable[[RealtimeMessage], Awaitable[None] | None]
SocketEventHandler = Callable[[dict[str, Any]], Any]


class ReadyState(IntEnum):
    CONNECTING = 0
    OPEN = 1
    CLOSING = 2
    CLOSED = 3


class MockSocket:
    """Stand-in for a client's WebSocket object."""

    def __init__(
        self,
        page: Page,
        url: str,
        protocols: list[str] | None = None,
        *,
        on_send: MessageHandler | None = None,
        connection_id: str = "",
        open_delay_ms: float = 100.0,
    ) -> None:
        self.url = url
        self.protocol = protocols[0] if protocols else ""
        self.ready_state = ReadyState.CONNECTING
        self.mock_id = uuid.uuid4().hex[:7]
        self.connection_id = connection_id or self.mock_id
        self.onopen: SocketEventHandler | None = None
        self.onmessage: SocketEventHandler | None = None
        self.onclose: SocketEventHandler | None = None
        self.onerror: SocketEventHandler | None = None
        self._page = page
        self._on_send = on_send
        self._settled = asyncio.Event()  # set on OPEN or CLOSED
        self._pending: set[asyncio.Task] = set()  # uploads
        self._handler_tasks: set[asyncio.Future] = set()
        loop = asyncio.get_running_loop()
        self._open_handle = loop.call_later(open_delay_ms / 1000, self._open)

    @property
    def is_open(self) -> bool:
        return self.ready_state == ReadyState.OPEN

    def _fire(self, handler: SocketEventHandler | None, event: dict[str, Any]) -> None:
        """Run an onopen/onmessage/onclose handler, sync or async."""
        if handler is None:
            return
        try:
            result = handler(event)
        except Exception:
            logger.exception("Socket %s %s handler failed", self.connection_id, event["type"])
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Future) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Socket %s async handler failed", self.connection_id, exc_info=exc
            )

    def _open(self) -> None:
        if self.ready_state != ReadyState.CONNECTING:
            return
        self.ready_state = ReadyState.OPEN
        self._settled.set()
        self._fire(self.onopen, {"type": "open"})

    async def wait_open(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._settled.wait(), timeout)

    def send(self, data: Any) -> None:
        """Send from the client. Malformed payloads are logged and dropped.

        Raises:
            ChannelNotOpenError: If the socket is not OPEN.
        """
        if self.ready_state != ReadyState.OPEN:
            raise ChannelNotOpenError(
                f"Socket {self.connection_id} is not open (state={self.ready_state.name})"
            )
        try:
            message = RealtimeMessage.from_wire(data)
        except (ValueError, TypeError) as e:
            logger.warning(
                "Dropped malformed outbound payload on %s: %s", self.connection_id, e
            )
            return

        record = message.to_wire()
        record["connectionId"] = self.connection_id
        record["observedAt"] = datetime.now(timezone.utc).isoformat()
        self._page.outbound.append(record)

        task = asyncio.ensure_future(self._upload(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _upload(self, message: RealtimeMessage) -> None:
        size = len(message.to_json().encode())
        if not await self._page.network.transmit(size, "upload"):
            logger.debug("Outbound %s lost in transit from %s", message.id, self.connection_id)
            return
        if self._on_send is None:
            return
        try:
            result = self._on_send(message)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Outbound handler failed for %s", message.id)

    async def drain(self) -> None:
        """Wait for outbound messages and async handlers still in flight."""
        while self._pending or self._handler_tasks:
            await asyncio.gather(
                *self._pending, *self._handler_tasks, return_exceptions=True
            )

    async def mock_receive(self, message: RealtimeMessage) -> bool:
        """Deliver an inbound message. Returns False if it never arrived."""
        if self.ready_state != ReadyState.OPEN:
            return False
        text = message.to_json()
        if not await self._page.network.transmit(len(text.encode()), "download"):
            return False
        if self.ready_state != ReadyState.OPEN:
            return False
        self._page.inbound.append(message.to_wire())
        self._fire(self.onmessage, {"type": "message", "data": text})
        return True

    def close(self, code: int = 1000, reason: str = "") -> None:
        if self.ready_state == ReadyState.CLOSED:
            return
        self._open_handle.cancel()
        self.ready_state = ReadyState.CLOSED
        self._settled.set()
        self._fire(
            self.onclose,
            {"type": "close", "code": code, "reason": reason, "wasClean": True},
        )


class MockChannel:
    """Bridges one page's real-time transport to the broker.

    Usage:
        channel = MockChannel("user-0", page)
        await channel.initialize()
        channel.on_message(handler)          # sees everything the client sends
        await channel.receive_message(msg)   # injects into the client
    """

    def __init__(
        self, channel_id: str, page: Page, options: BrokerOptions | None = None
    ) -> None:
        self.id = channel_id
        self._page = page
        self._options = options or BrokerOptions()
        self._handlers: list[MessageHandler] = []
        self._close_callbacks: list[Callable[[MockChannel], None]] = []
        self._initialized = False
        self._closed = False

    @property
    def page(self) -> Page:
        return self._page

    @property
    def is_open(self) -> bool:
        return self._initialized and not self._closed

    @property
    def socket(self) -> MockSocket | None:
        sock = self._page.active_socket
        return sock if isinstance(sock, MockSocket) else None

    async def initialize(self) -> None:
        if self._initialized:
            return
        self._page.install_socket_factory(self._create_socket)
        self._initialized = True
        logger.debug("Channel %s initialized", self.id)

    def _create_socket(
        self, page: Page, url: str, protocols: list[str] | None = None
    ) -> MockSocket:
        return MockSocket(
            page,
            url,
            protocols,
            on_send=self._emit,
            connection_id=self.id,
            open_delay_ms=self._options.open_delay_ms,
        )

    def on_message(self, handler: MessageHandler) -> None:
        """Register an observer for every message the client sends."""
        self._handlers.append(handler)

    def on_close(self, callback: Callable[[MockChannel], None]) -> None:
        self._close_callbacks.append(callback)

    async def _emit(self, message: RealtimeMessage) -> None:
        for handler in list(self._handlers):
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Error in message handler for %s", self.id)

    async def send_message(self, message: RealtimeMessage) -> None:
        """Emit ``message`` as if this client had sent it."""
        if not self.is_open:
            raise ChannelNotInitializedError(f"Channel {self.id} is not initialized")
        await self._emit(message)

    async def receive_message(self, message: RealtimeMessage) -> bool:
        """Inject ``message`` into the client. No-op once closed."""
        if not self.is_open:
            return False
        sock = self.socket
        if sock is None:
            return False
        return await sock.mock_receive(message)

    async def wait_until_open(self, timeout: float | None = None) -> MockSocket:
        """Wait for the client to open a socket and for it to reach OPEN."""

        async def _wait() -> MockSocket:
            while True:
                sock = self.socket
                if sock is not None:
                    await sock.wait_open()
                    if sock.is_open:
                        return sock
                await asyncio.sleep(0.005)

        return await asyncio.wait_for(_wait(), timeout)

    async def flush(self) -> None:
        """Wait until every outbound message has reached the broker."""
        for sock in list(self._page.sockets):
            if isinstance(sock, MockSocket):
                await sock.drain()

    def get_message_history(self) -> list[dict[str, Any]]:
        """Messages the client sent, as observed inside the runtime."""
        return [dict(record) for record in self._page.outbound]

    def get_inbound_history(self) -> list[dict[str, Any]]:
        return [dict(record) for record in self._page.inbound]

    async def close(self) -> None:
        """Server-side disconnect. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for sock in list(self._page.sockets):
            sock.close(1000, "closed by server")
        self._handlers.clear()
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Close callback failed for %s", self.id)
        logger.debug("Channel %s closed", self.id)
