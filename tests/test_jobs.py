"""Tests for sigchat scheduled jobs."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from sigchat import db
from sigchat import jobs
from sigchat.metrics import metrics


def post_expiring(author: dict, content: str, seconds: float) -> dict:
    """Post to the public room with an expiry ``seconds`` from now."""
    room = db.ensure_public_room()
    db.add_room_member(room["id"], author["id"])
    expires = datetime.now(timezone.utc) + timedelta(seconds=seconds)
    return db.post_message(room["id"], author["id"], content, expires_at=expires)


class TestSweepExpired:
    def test_nothing_expired(self, make_user):
        """No messages are deleted before their expiry."""
        alice, _ = make_user("alice")
        post_expiring(alice, "later", 30)

        assert jobs.sweep_expired() == []
        assert metrics.swept_messages == 0

    def test_expired_messages_deleted(self, make_user):
        """A message is gone once the sweep passes its expiry."""
        alice, _ = make_user("alice")
        message = post_expiring(alice, "bye", 30)
        keep = db.post_message(message["room_id"], alice["id"], "forever")

        now = datetime.now(timezone.utc) + timedelta(seconds=31)
        deleted = jobs.sweep_expired(now=now)

        assert deleted == [{"id": message["id"], "room_id": message["room_id"]}]
        assert db.get_message(message["id"]) is None
        assert db.get_message(keep["id"]) is not None
        assert metrics.swept_messages == 1

    def test_second_sweep_is_empty(self, make_user):
        alice, _ = make_user("alice")
        post_expiring(alice, "bye", 30)
        now = datetime.now(timezone.utc) + timedelta(seconds=31)

        assert len(jobs.sweep_expired(now=now)) == 1
        assert jobs.sweep_expired(now=now) == []


class TestSweepAndAnnounce:
    @pytest.mark.asyncio
    async def test_deletion_is_announced_to_room(self, relay, make_user, connect):
        alice, _ = make_user("alice")
        bob, _ = make_user("bob")
        alice_conn = await connect(alice)
        bob_conn = await connect(bob)
        room_id = db.ensure_public_room()["id"]
        expires = datetime.now(timezone.utc) + timedelta(seconds=30)

        await relay.dispatch(
            alice_conn.id,
            "send_message",
            {"roomId": room_id, "content": "self-destruct", "expiresAt": expires.isoformat()},
        )
        message_id = alice_conn.last("new_message")["id"]

        now = datetime.now(timezone.utc) + timedelta(seconds=31)
        deleted = await jobs.sweep_and_announce(relay, now=now)

        assert [row["id"] for row in deleted] == [message_id]
        expected = {"messageId": message_id, "roomId": room_id}
        assert alice_conn.last("message_deleted") == expected
        assert bob_conn.last("message_deleted") == expected

        # A later join no longer sees the message
        await relay.dispatch(bob_conn.id, "join_room", {"roomId": room_id})
        assert bob_conn.last("room_joined")["messages"] == []

    @pytest.mark.asyncio
    async def test_nothing_to_announce(self, relay, make_user, connect):
        alice, _ = make_user("alice")
        conn = await connect(alice)

        assert await jobs.sweep_and_announce(relay) == []
        assert conn.of("message_deleted") == []

    @pytest.mark.asyncio
    async def test_stalled_connection_does_not_hold_up_sweep(self, hub, relay, make_user, connect):
        """Deletions reach healthy connections even when one reader is stuck."""
        hub.send_timeout = 0.05
        alice, _ = make_user("alice")
        bob, _ = make_user("bob")
        alice_conn = await connect(alice)
        bob_conn = await connect(bob)
        message = post_expiring(alice, "gone soon", 30)
        bob_conn.stall = True

        now = datetime.now(timezone.utc) + timedelta(seconds=31)
        deleted = await asyncio.wait_for(jobs.sweep_and_announce(relay, now=now), timeout=2)

        assert [row["id"] for row in deleted] == [message["id"]]
        assert alice_conn.last("message_deleted")["messageId"] == message["id"]
        assert bob_conn.of("message_deleted") == []

    @pytest.mark.asyncio
    async def test_store_timeout_raises(self, relay, monkeypatch):
        async def stuck_store(fn, *args):
            await asyncio.Event().wait()

        monkeypatch.setattr(db, "run_sync", stuck_store)

        with pytest.raises(asyncio.TimeoutError):
            await jobs.sweep_and_announce(relay, timeout=0.05)


class TestRunSweeper:
    @pytest.mark.asyncio
    async def test_sweeps_until_shutdown(self, relay, monkeypatch):
        calls = []

        async def fake_sweep(r, now=None):
            calls.append(r)
            return []

        monkeypatch.setattr(jobs, "sweep_and_announce", fake_sweep)
        shutdown = asyncio.Event()
        task = asyncio.create_task(jobs.run_sweeper(relay, 0.01, shutdown))

        await asyncio.sleep(0.1)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1)

        assert len(calls) >= 2
        assert all(r is relay for r in calls)

    @pytest.mark.asyncio
    async def test_shutdown_before_first_tick(self, relay, monkeypatch):
        calls = []

        async def fake_sweep(r, now=None):
            calls.append(r)
            return []

        monkeypatch.setattr(jobs, "sweep_and_announce", fake_sweep)
        shutdown = asyncio.Event()
        shutdown.set()

        await asyncio.wait_for(jobs.run_sweeper(relay, 60, shutdown), timeout=1)
        assert calls == []

    @pytest.mark.asyncio
    async def test_failed_sweep_does_not_stop_sweeper(self, relay, monkeypatch):
        calls = []

        async def flaky_sweep(r, now=None):
            calls.append(r)
            if len(calls) == 1:
                raise RuntimeError("store went away")
            return []

        monkeypatch.setattr(jobs, "sweep_and_announce", flaky_sweep)
        shutdown = asyncio.Event()
        task = asyncio.create_task(jobs.run_sweeper(relay, 0.01, shutdown))

        await asyncio.sleep(0.1)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1)

        assert len(calls) >= 2


class TestScheduleSweeper:
    @pytest.mark.asyncio
    async def test_disabled_with_zero_interval(self, relay):
        assert jobs.schedule_sweeper(relay, 0) is None
        await jobs.stop_sweeper()

    @pytest.mark.asyncio
    async def test_schedule_and_stop(self, relay):
        task = jobs.schedule_sweeper(relay, 60)
        assert task is not None
        assert not task.done()

        await asyncio.wait_for(jobs.stop_sweeper(), timeout=1)
        assert task.done()
