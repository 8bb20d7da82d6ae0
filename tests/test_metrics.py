"""Tests for RealtimeMetricsCollector and threshold validation."""

from __future__ import annotations

import pytest

from collab_sim.config import HarnessConfig, PerformanceConfig
from collab_sim.events import EventBus
from collab_sim.metrics import RealtimeMetricsCollector, validate_performance_thresholds


class TestCollector:
    def test_success_rate(self):
        collector = RealtimeMetricsCollector()
        for _ in range(10):
            collector.record_message_sent()
        for latency in range(7):
            collector.record_message_received(float(latency))
        assert collector.calculate_metrics().message_success_rate == pytest.approx(70)

    def test_success_rate_with_nothing_sent(self):
        assert RealtimeMetricsCollector().calculate_metrics().message_success_rate == 0

    def test_latency_aggregates(self):
        collector = RealtimeMetricsCollector()
        assert collector.get_average_latency() == 0
        assert collector.get_max_latency() == 0
        for latency in (10.0, 20.0, 60.0):
            collector.record_message_received(latency)
        assert collector.get_average_latency() == pytest.approx(30)
        assert collector.get_max_latency() == 60

    def test_connection_timer(self):
        collector = RealtimeMetricsCollector()
        collector.record_connection_established()
        assert collector.calculate_metrics().connection_time == 0
        collector.start_connection_timer()
        collector.record_connection_established()
        assert collector.calculate_metrics().connection_time >= 0

    def test_snapshot_is_independent(self):
        collector = RealtimeMetricsCollector()
        collector.record_message_received(5)
        snapshot = collector.calculate_metrics()
        collector.record_message_received(7)
        assert snapshot.message_latency == [5]

    def test_reset(self):
        collector = RealtimeMetricsCollector()
        collector.set_concurrent_user_count(4)
        collector.record_message_sent()
        collector.record_reconnection_time(1200)
        collector.reset()
        metrics = collector.calculate_metrics()
        assert metrics.concurrent_user_count == 0
        assert metrics.reconnection_time == 0
        assert collector.messages_sent == 0

    def test_summary(self):
        collector = RealtimeMetricsCollector()
        collector.set_concurrent_user_count(2)
        collector.record_message_sent()
        collector.record_message_received(12.5)
        summary = collector.summary()
        assert summary["message_success_rate"] == 100
        assert summary["average_latency"] == 12.5
        assert summary["concurrent_user_count"] == 2


class TestAttach:
    @pytest.mark.asyncio
    async def test_counts_broker_events(self):
        events = EventBus()
        collector = RealtimeMetricsCollector()
        collector.attach(events)
        await events.publish("message.delivered", {"latency_ms": 15.0})
        await events.publish("message.dropped", {"reason": "failure_rate"})
        assert collector.messages_sent == 2
        assert collector.messages_received == 1
        assert collector.get_average_latency() == 15

    @pytest.mark.asyncio
    async def test_detach(self):
        events = EventBus()
        collector = RealtimeMetricsCollector()
        collector.attach(events)
        collector.detach()
        assert events.subscriber_count("message.delivered") == 0
        await events.publish("message.delivered", {"latency_ms": 1.0})
        assert collector.messages_received == 0


class TestThresholds:
    def test_passes_within_limits(self):
        report = validate_performance_thresholds(
            {"connection_time": 100, "average_latency": 50, "message_success_rate": 99},
            HarnessConfig(),
        )
        assert report.passed
        assert report.failures == []

    def test_reports_each_failure(self):
        report = validate_performance_thresholds(
            {
                "connection_time": 9000,
                "average_latency": 5000,
                "throughput": 1,
                "message_success_rate": 50,
            },
            PerformanceConfig(),
        )
        assert not report.passed
        assert len(report.failures) == 4
        assert any("Connection time" in f for f in report.failures)

    def test_missing_keys_are_skipped(self):
        assert validate_performance_thresholds({}, HarnessConfig()).passed
