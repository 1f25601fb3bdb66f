"""Tests for the broadcast hub."""

import asyncio

import pytest

from sigchat.events import (
    DEFAULT_SEND_TIMEOUT,
    InMemoryBroadcastHub,
    get_broadcast_hub,
    reset_broadcast_hub,
    set_broadcast_hub,
)
from sigchat.testing import FakeConnection


@pytest.fixture
def hub():
    """Create a fresh InMemoryBroadcastHub for each test."""
    return InMemoryBroadcastHub()


def registered(hub, *conn_ids):
    conns = [FakeConnection(conn_id) for conn_id in conn_ids]
    for conn in conns:
        hub.register(conn)
    return conns


class TestGroups:
    def test_join_and_members(self, hub):
        a, b = registered(hub, "a", "b")
        hub.join("a", 1)
        hub.join("b", 1)
        hub.join("a", 2)

        assert hub.members(1) == {"a", "b"}
        assert hub.members(2) == {"a"}
        assert hub.rooms_for("a") == {1, 2}

    def test_join_unknown_connection_is_ignored(self, hub):
        hub.join("ghost", 1)
        assert hub.members(1) == set()

    def test_unregister_leaves_all_groups(self, hub):
        registered(hub, "a", "b")
        hub.join("a", 1)
        hub.join("a", 2)
        hub.join("b", 2)

        assert hub.unregister("a") == {1, 2}
        assert hub.members(1) == set()
        assert hub.members(2) == {"b"}
        assert len(hub) == 1

    def test_unregister_unknown(self, hub):
        assert hub.unregister("ghost") == set()


class TestPublish:
    @pytest.mark.asyncio
    async def test_publish_reaches_group_only(self, hub):
        a, b, c = registered(hub, "a", "b", "c")
        hub.join("a", 1)
        hub.join("b", 1)
        hub.join("c", 2)

        delivered = await hub.publish(1, "new_message", {"id": 1})

        assert delivered == 2
        assert a.events == [("new_message", {"id": 1})]
        assert b.events == [("new_message", {"id": 1})]
        assert c.events == []

    @pytest.mark.asyncio
    async def test_publish_excludes_sender(self, hub):
        a, b = registered(hub, "a", "b")
        hub.join("a", 1)
        hub.join("b", 1)

        await hub.publish(1, "user_typing", {"roomId": 1}, exclude="a")

        assert a.events == []
        assert b.names == ["user_typing"]

    @pytest.mark.asyncio
    async def test_publish_many_delivers_once(self, hub):
        a, b = registered(hub, "a", "b")
        hub.join("a", 1)
        hub.join("a", 2)
        hub.join("b", 2)

        delivered = await hub.publish_many([1, 2], "user_online", {"id": 7})

        assert delivered == 2
        assert a.names == ["user_online"]
        assert b.names == ["user_online"]

    @pytest.mark.asyncio
    async def test_failed_delivery_does_not_stop_others(self, hub):
        a, b = registered(hub, "a", "b")
        hub.join("a", 1)
        hub.join("b", 1)
        a.fail = True

        delivered = await hub.publish(1, "new_message", {"id": 1})

        assert delivered == 1
        assert b.names == ["new_message"]

    @pytest.mark.asyncio
    async def test_send_to_unknown_connection(self, hub):
        assert await hub.send("ghost", "error", {}) is False

    @pytest.mark.asyncio
    async def test_stalled_connection_times_out(self):
        """A reader that never drains counts as failed and does not hold up the rest."""
        hub = InMemoryBroadcastHub(send_timeout=0.05)
        a, b = registered(hub, "a", "b")
        hub.join("a", 1)
        hub.join("b", 1)
        a.stall = True

        delivered = await asyncio.wait_for(hub.publish(1, "new_message", {"id": 1}), timeout=2)

        assert delivered == 1
        assert b.events == [("new_message", {"id": 1})]
        assert a.events == []

    @pytest.mark.asyncio
    async def test_stalled_send_returns_false(self):
        hub = InMemoryBroadcastHub(send_timeout=0.05)
        (a,) = registered(hub, "a")
        a.stall = True

        assert await asyncio.wait_for(hub.send("a", "error", {}), timeout=2) is False
        # The connection stays registered until the relay drops it
        assert len(hub) == 1

    def test_default_send_timeout(self):
        assert InMemoryBroadcastHub().send_timeout == DEFAULT_SEND_TIMEOUT


class TestGlobalHub:
    def test_singleton(self):
        reset_broadcast_hub()
        assert get_broadcast_hub() is get_broadcast_hub()

    def test_set_and_reset(self):
        custom = InMemoryBroadcastHub()
        set_broadcast_hub(custom)
        assert get_broadcast_hub() is custom
        reset_broadcast_hub()
        assert get_broadcast_hub() is not custom
