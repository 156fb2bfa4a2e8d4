"""Tests for room routing and delivery isolation."""

import pytest

from huddle.metrics import metrics
from huddle.presence import PresenceRegistry
from huddle.router import RoomRouter
from huddle.testing import RecordingConnection


@pytest.fixture
def registry():
    return PresenceRegistry()


@pytest.fixture
def router(registry):
    return RoomRouter(registry, send_timeout=0.2)


def connect(registry, router, name, room, **kwargs):
    connection = RecordingConnection(**kwargs)
    router.attach(connection)
    registry.join(connection.connection_id, name, room)
    return connection


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_broadcast_reaches_only_the_room(self, registry, router):
        alice = connect(registry, router, "alice", "general")
        bob = connect(registry, router, "bob", "general")
        carol = connect(registry, router, "carol", "random")

        payload = {"message": "hi"}
        report = await router.broadcast_to_room("general", "receive_message", payload)

        assert sorted(report.delivered) == sorted([alice.connection_id, bob.connection_id])
        assert alice.frames == [("receive_message", payload)]
        assert bob.frames == [("receive_message", payload)]
        assert carol.frames == []

    @pytest.mark.asyncio
    async def test_broadcast_excludes_connection(self, registry, router):
        alice = connect(registry, router, "alice", "general")
        bob = connect(registry, router, "bob", "general")

        await router.broadcast_to_room("general", "typing", {}, exclude=alice.connection_id)

        assert alice.frames == []
        assert bob.names() == ["typing"]

    @pytest.mark.asyncio
    async def test_failed_connection_does_not_block_others(self, registry, router):
        metrics.reset()
        broken = connect(registry, router, "alice", "general", fail=True)
        slow = connect(registry, router, "bob", "general", delay=1.0)
        ok = connect(registry, router, "carol", "general")

        report = await router.broadcast_to_room("general", "receive_message", {"n": 1})

        assert report.delivered == [ok.connection_id]
        assert sorted(report.failed) == sorted([broken.connection_id, slow.connection_id])
        assert ok.frames == [("receive_message", {"n": 1})]
        assert metrics.to_dict()["deliveries"]["receive_message"]["failed"] == 2

    @pytest.mark.asyncio
    async def test_registered_but_unattached_is_skipped(self, registry, router):
        registry.join("ghost", "ghost", "general")
        alice = connect(registry, router, "alice", "general")

        report = await router.broadcast_to_room("general", "x", {})

        assert report.skipped == ["ghost"]
        assert report.delivered == [alice.connection_id]

    @pytest.mark.asyncio
    async def test_empty_room(self, router):
        report = await router.broadcast_to_room("nobody-here", "x", {})
        assert report.targets == 0


class TestDirectDelivery:
    @pytest.mark.asyncio
    async def test_deliver_to_name_reaches_every_device(self, registry, router):
        phone = connect(registry, router, "alice", "general")
        laptop = connect(registry, router, "alice", "random")
        bob = connect(registry, router, "bob", "general")

        report = await router.deliver_to_name("alice", "receive_message", {"n": 1})

        assert len(report.delivered) == 2
        assert phone.names() == laptop.names() == ["receive_message"]
        assert bob.frames == []

    @pytest.mark.asyncio
    async def test_deliver_to_names_sends_once_per_connection(self, registry, router):
        alice = connect(registry, router, "alice", "general")

        report = await router.deliver_to_names(["alice", "alice"], "receive_message", {})

        assert report.delivered == [alice.connection_id]
        assert len(alice.frames) == 1

    @pytest.mark.asyncio
    async def test_deliver_to_unknown_name_is_noop(self, router):
        report = await router.deliver_to_name("nobody", "x", {})
        assert report.targets == 0

    @pytest.mark.asyncio
    async def test_send_to_connection(self, registry, router):
        alice = connect(registry, router, "alice", "general")

        assert await router.send_to_connection(alice.connection_id, "message_ack", {"clientId": "c1"})
        assert alice.events("message_ack") == [{"clientId": "c1"}]

        router.detach(alice.connection_id)
        assert not await router.send_to_connection(alice.connection_id, "message_ack", {})
        assert router.detach(alice.connection_id) is None
