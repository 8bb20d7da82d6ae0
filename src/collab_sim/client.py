"""Reference client application for driving the harness.

A tiny stand-in for the real front-end's realtime provider: on navigation
it opens one socket (reusing an open one across navigations), optionally
sends an ``auth`` handshake carrying the stored token once the socket
opens, and keeps every parsed inbound message in ``page.state["received"]``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .models import make_message
from .runtime import App, Page

logger = logging.getLogger("collab-sim")


def make_reference_app(
    ws_url: str = "ws://localhost:3001/ws",
    *,
    send_auth: bool = True,
    protocols: list[str] | None = None,
) -> App:
    def app(page: Page, url: str) -> None:
        page.state.setdefault("received", [])
        page.state.setdefault("connection_status", "disconnected")
        page.state["route"] = url
        if page.active_socket is not None:
            return

        sock = page.open_socket(ws_url, protocols)
        page.state["connection_status"] = "connecting"

        def onopen(event: dict[str, Any]) -> None:
            page.state["connection_status"] = "connected"
            if send_auth:
                token = page.storage.get("auth_token", "")
                sock.send(
                    make_message(
                        "auth", {"token": token}, user_id=page.storage.get("user_id")
                    ).to_wire()
                )

        def onmessage(event: dict[str, Any]) -> None:
            try:
                page.state["received"].append(json.loads(event["data"]))
            except (KeyError, ValueError):
                logger.warning("Reference client got unparseable frame")

        def onclose(event: dict[str, Any]) -> None:
            page.state["connection_status"] = "disconnected"
            page.state["close_code"] = event.get("code")

        sock.onopen = onopen
        sock.onmessage = onmessage
        sock.onclose = onclose

    return app
