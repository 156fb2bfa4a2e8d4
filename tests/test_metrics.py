"""Tests for the metrics collector."""

from huddle import db
from huddle.metrics import Metrics, metrics


def test_counters():
    collector = Metrics()

    collector.record_request("messages", 10.0)
    collector.record_request("messages", 30.0)
    collector.record_inbound("send_message")
    collector.record_delivery("receive_message", ok=True)
    collector.record_delivery("receive_message", ok=False)
    collector.record_rejection("invalid")
    collector.connection_opened()
    collector.connection_opened()
    collector.connection_closed()

    data = collector.to_dict()

    assert data["requests"]["messages"]["count"] == 2
    assert data["inbound_events"] == {"send_message": 1}
    assert data["deliveries"] == {"receive_message": {"delivered": 1, "failed": 1}}
    assert data["rejected"] == {"invalid": 1}
    assert data["connections"] == 1


def test_connections_never_negative():
    collector = Metrics()
    collector.connection_closed()
    assert collector.to_dict()["connections"] == 0


def test_store_operations_are_timed():
    metrics.reset()

    db.insert_message("general", "alice", body="hi")
    db.list_room_messages("general")

    operations = metrics.to_dict()["store_operations"]
    assert operations["insert_message"]["count"] == 1
    assert operations["list_room_messages"]["count"] == 1


def test_reset():
    metrics.record_rejection("invalid")
    metrics.reset()
    assert metrics.to_dict()["rejected"] == {}
