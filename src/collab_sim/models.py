"""Pydantic models for real-time messages, network conditions, and metrics."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def new_message_id() -> str:
    """Generate a short message id."""
    return f"msg_{uuid.uuid4().hex[:10]}"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class RealtimeMessage(BaseModel):
    """Envelope exchanged between clients and the broker.

    ``payload`` is opaque to the harness; validating its shape is the
    scenario's job. ``id`` is caller-supplied and never checked for
    uniqueness here.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: str
    payload: Any = None
    timestamp: str = Field(default_factory=utc_timestamp)
    id: str = Field(default_factory=new_message_id)
    user_id: str | None = Field(default=None, alias="userId")
    board_id: str | None = Field(default=None, alias="boardId")
    page_id: str | None = Field(default=None, alias="pageId")

    def to_wire(self) -> dict[str, Any]:
        """Dump with camelCase keys, leaving out unset optional ids."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_wire())

    @classmethod
    def from_wire(cls, data: dict[str, Any] | str | bytes) -> RealtimeMessage:
        """Parse a wire dict or JSON text.

        Raises:
            ValueError: If the data is not JSON or does not match the
                message shape (pydantic's ValidationError is a ValueError).
        """
        if isinstance(data, (str, bytes)):
            data = json.loads(data)
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
        return cls.model_validate(data)

    def age_ms(self, now: datetime | None = None) -> float | None:
        """Milliseconds since ``timestamp``, or None if it does not parse."""
        try:
            sent = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        except ValueError:
            return None
        if sent.tzinfo is None:
            sent = sent.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - sent).total_seconds() * 1000)


def make_message(
    type: str,
    payload: Any = None,
    *,
    id: str | None = None,
    user_id: str | None = None,
    board_id: str | None = None,
    page_id: str | None = None,
) -> RealtimeMessage:
    """Build a message stamped with the current time and a fresh id."""
    return RealtimeMessage(
        type=type,
        payload=payload if payload is not None else {},
        id=id or new_message_id(),
        user_id=user_id,
        board_id=board_id,
        page_id=page_id,
    )


class NetworkCondition(BaseModel):
    """Latency/throughput/loss profile for one session's transport."""

    model_config = ConfigDict(frozen=True)

    latency: float = Field(0.0, ge=0)  # ms
    download_throughput: float = Field(0.0, ge=0)  # bytes/sec
    upload_throughput: float = Field(0.0, ge=0)  # bytes/sec
    packet_loss: float | None = Field(default=None, ge=0, le=100)  # percent

    @property
    def offline(self) -> bool:
        """No download means no connection; zero upload alone only cuts sends."""
        return self.download_throughput == 0


class RealtimeTestMetrics(BaseModel):
    """Snapshot returned by RealtimeMetricsCollector.calculate_metrics()."""

    connection_time: float = 0.0
    message_latency: list[float] = Field(default_factory=list)
    reconnection_time: float = 0.0
    message_success_rate: float = 0.0
    concurrent_user_count: int = 0
    memory_usage: float | None = None
    cpu_usage: float | None = None
