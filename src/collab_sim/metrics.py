"""Timing statistics for real-time scenarios."""

from __future__ import annotations

import time
from typing import Any

from pydantic import BaseModel, Field

from .config import HarnessConfig, PerformanceConfig
from .events import MESSAGE_DELIVERED, MESSAGE_DROPPED, EventBus
from .models import RealtimeTestMetrics


class RealtimeMetricsCollector:
    """Accumulate connection/latency samples and derive aggregates.

    Accumulates for the life of a run; call reset() between independent
    performance scenarios.
    """

    def __init__(self) -> None:
        self._metrics = RealtimeTestMetrics()
        self._connection_start: float = 0.0
        self._messages_sent = 0
        self._messages_received = 0
        self._subscriptions: list[tuple[EventBus, int]] = []

    @property
    def messages_sent(self) -> int:
        return self._messages_sent

    @property
    def messages_received(self) -> int:
        return self._messages_received

    def start_connection_timer(self) -> None:
        self._connection_start = time.monotonic()

    def record_connection_established(self) -> None:
        if self._connection_start > 0:
            elapsed = time.monotonic() - self._connection_start
            self._metrics.connection_time = elapsed * 1000

    def record_message_sent(self) -> None:
        self._messages_sent += 1

    def record_message_received(self, latency_ms: float) -> None:
        self._messages_received += 1
        self._metrics.message_latency.append(latency_ms)

    def record_reconnection_time(self, ms: float) -> None:
        self._metrics.reconnection_time = ms

    def set_concurrent_user_count(self, count: int) -> None:
        self._metrics.concurrent_user_count = count

    def calculate_metrics(self) -> RealtimeTestMetrics:
        self._metrics.message_success_rate = (
            self._messages_received / self._messages_sent * 100
            if self._messages_sent > 0
            else 0.0
        )
        return self._metrics.model_copy(deep=True)

    def get_average_latency(self) -> float:
        samples = self._metrics.message_latency
        return sum(samples) / len(samples) if samples else 0.0

    def get_max_latency(self) -> float:
        samples = self._metrics.message_latency
        return max(samples) if samples else 0.0

    def attach(self, events: EventBus) -> None:
        """Count broker delivery attempts and their latencies.

        Every delivery attempt counts as one message sent; delivered ones
        also record their latency, so the success rate is per delivery.
        """

        def on_delivered(event: dict[str, Any]) -> None:
            self.record_message_sent()
            self.record_message_received(event.get("latency_ms") or 0.0)

        def on_dropped(event: dict[str, Any]) -> None:
            self.record_message_sent()

        self._subscriptions.append((events, events.subscribe(MESSAGE_DELIVERED, on_delivered)))
        self._subscriptions.append((events, events.subscribe(MESSAGE_DROPPED, on_dropped)))

    def detach(self) -> None:
        for events, sub_id in self._subscriptions:
            events.unsubscribe(sub_id)
        self._subscriptions.clear()

    def summary(self) -> dict[str, Any]:
        metrics = self.calculate_metrics()
        return {
            "connection_time": round(metrics.connection_time, 2),
            "reconnection_time": metrics.reconnection_time,
            "message_success_rate": round(metrics.message_success_rate, 2),
            "concurrent_user_count": metrics.concurrent_user_count,
            "messages_sent": self._messages_sent,
            "messages_received": self._messages_received,
            "average_latency": round(self.get_average_latency(), 2),
            "max_latency": round(self.get_max_latency(), 2),
        }

    def reset(self) -> None:
        self._metrics = RealtimeTestMetrics()
        self._connection_start = 0.0
        self._messages_sent = 0
        self._messages_received = 0


class ThresholdReport(BaseModel):
    passed: bool
    failures: list[str] = Field(default_factory=list)


def validate_performance_thresholds(
    metrics: dict[str, Any], config: HarnessConfig | PerformanceConfig
) -> ThresholdReport:
    """Compare a metrics summary against performance thresholds.

    Keys missing from ``metrics`` are not checked.
    """
    perf = config.performance if isinstance(config, HarnessConfig) else config
    conn, msg, mem = perf.connection, perf.messaging, perf.memory
    failures: list[str] = []

    def over(key: str, limit: float, label: str, unit: str) -> None:
        value = metrics.get(key)
        if value is not None and value > limit:
            failures.append(f"{label} {value}{unit} exceeds threshold {limit}{unit}")

    def under(key: str, limit: float, label: str, unit: str) -> None:
        value = metrics.get(key)
        if value is not None and value < limit:
            failures.append(f"{label} {value}{unit} below threshold {limit}{unit}")

    over("connection_time", conn.max_establishment_time, "Connection time", "ms")
    over("reconnection_time", conn.max_reconnection_time, "Reconnection time", "ms")
    over("average_latency", msg.max_average_latency, "Average latency", "ms")
    over("max_latency", msg.max_latency, "Max latency", "ms")
    under("throughput", msg.min_throughput, "Throughput", " msg/s")
    under("message_success_rate", msg.min_success_rate, "Message success rate", "%")
    over("memory_increase", mem.max_increase, "Memory increase", " bytes")

    return ThresholdReport(passed=not failures, failures=failures)
