"""Tests for message, network condition, and metrics models."""

import json
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from collab_sim.models import (
    NetworkCondition,
    RealtimeMessage,
    RealtimeTestMetrics,
    make_message,
    new_message_id,
)


class TestRealtimeMessage:
    def test_wire_uses_camel_case_and_skips_unset_ids(self):
        msg = RealtimeMessage(type="card.moved", payload={"x": 1}, id="m1", user_id="u1")
        wire = msg.to_wire()
        assert wire["userId"] == "u1"
        assert "boardId" not in wire
        assert "pageId" not in wire
        assert wire["id"] == "m1"

    def test_accepts_aliases_and_field_names(self):
        a = RealtimeMessage.model_validate({"type": "t", "boardId": "b1"})
        b = RealtimeMessage(type="t", board_id="b1")
        assert a.board_id == b.board_id == "b1"

    def test_from_wire_parses_json_text(self):
        text = json.dumps({"type": "ping", "id": "x", "timestamp": "2024-01-01T00:00:00Z"})
        msg = RealtimeMessage.from_wire(text)
        assert msg.type == "ping"
        assert msg.id == "x"

    def test_from_wire_rejects_non_object(self):
        with pytest.raises(ValueError):
            RealtimeMessage.from_wire("[1, 2]")

    def test_from_wire_rejects_missing_type(self):
        with pytest.raises(ValueError):
            RealtimeMessage.from_wire({"payload": {}})

    def test_frozen(self):
        msg = make_message("t")
        with pytest.raises(ValidationError):
            msg.type = "other"

    def test_age_ms(self):
        sent = datetime(2024, 1, 1, tzinfo=timezone.utc)
        msg = RealtimeMessage(type="t", timestamp="2024-01-01T00:00:00Z")
        assert msg.age_ms(sent + timedelta(milliseconds=250)) == pytest.approx(250)

    def test_age_ms_unparseable_timestamp(self):
        assert RealtimeMessage(type="t", timestamp="yesterday").age_ms() is None


class TestMakeMessage:
    def test_defaults(self):
        msg = make_message("presence")
        assert msg.payload == {}
        assert msg.id.startswith("msg_")
        assert msg.timestamp

    def test_ids_are_unique(self):
        assert new_message_id() != new_message_id()


class TestNetworkCondition:
    def test_offline_when_no_throughput(self):
        assert NetworkCondition().offline
        assert not NetworkCondition(latency=10, download_throughput=1, upload_throughput=0).offline
        assert NetworkCondition(download_throughput=0, upload_throughput=1).offline

    def test_packet_loss_bounds(self):
        with pytest.raises(ValidationError):
            NetworkCondition(packet_loss=150)


class TestRealtimeTestMetrics:
    def test_defaults(self):
        metrics = RealtimeTestMetrics()
        assert metrics.message_latency == []
        assert metrics.memory_usage is None
