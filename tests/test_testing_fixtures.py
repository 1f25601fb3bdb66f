"""Tests for the sigchat pytest plugin."""

import asyncio

import pytest

from sigchat import db
from sigchat.testing import FakeConnection


class TestFakeConnection:
    @pytest.mark.asyncio
    async def test_records_events(self):
        conn = FakeConnection("c1")
        await conn.send_event("new_message", {"id": 1})
        await conn.send_event("new_message", {"id": 2})

        assert conn.id == "c1"
        assert conn.names == ["new_message", "new_message"]
        assert conn.last("new_message") == {"id": 2}
        assert conn.last("error") is None

        conn.clear()
        assert conn.events == []

    @pytest.mark.asyncio
    async def test_fail_raises(self):
        conn = FakeConnection()
        conn.fail = True
        with pytest.raises(ConnectionError):
            await conn.send_event("error", {})

    @pytest.mark.asyncio
    async def test_stall_blocks(self):
        conn = FakeConnection()
        conn.stall = True
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(conn.send_event("error", {}), timeout=0.05)
        assert conn.events == []

    def test_generated_ids_are_unique(self):
        assert FakeConnection().id != FakeConnection().id


class TestFixtures:
    def test_make_user(self, make_user):
        user, keypair = make_user("alice")
        assert user["username"] == "alice"
        assert user["identity_key"] == keypair.identity_key
        assert db.get_user_by_identity(keypair.identity_key)["id"] == user["id"]

    def test_relay_uses_hub(self, relay, hub):
        assert relay.hub is hub

    @pytest.mark.asyncio
    async def test_connect_binds(self, relay, make_user, connect):
        alice, _ = make_user("alice")
        conn = await connect(alice)
        assert relay.registry.user_for(conn.id) == alice["id"]
        assert conn.names[0] == "auth_success"

    @pytest.mark.asyncio
    async def test_connect_without_bind(self, relay, make_user, connect):
        alice, _ = make_user("alice")
        conn = await connect(alice, bind=False)
        assert relay.registry.user_for(conn.id) is None
        assert conn.events == []
