"""Pytest fixtures for testing with sigchat.

Usage in conftest.py:
    pytest_plugins = ["sigchat.testing"]

Available fixtures:
    - hub: Fresh in-memory broadcast hub
    - relay: Relay bound to that hub
    - make_user: Factory creating a user with its own keypair
    - connect: Factory opening a FakeConnection for a user on the relay

All fixtures use the store configured for the test run (the in-memory
database by default).
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

import pytest
from uuid_extensions import uuid7 as make_uuid7

from . import db
from .crypto import KeyPair, generate_keypair
from .events import InMemoryBroadcastHub
from .relay import Relay


class FakeConnection:
    """In-process connection that records every event it is sent.

    Set ``fail`` to make deliveries raise, as a dropped socket would, or
    ``stall`` to make them block forever, as a reader that stopped draining
    its socket would.
    """

    def __init__(self, conn_id: str | None = None):
        self.id = conn_id or str(make_uuid7())
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.fail = False
        self.stall = False

    async def send_event(self, event: str, data: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("connection closed")
        if self.stall:
            await asyncio.Event().wait()
        self.events.append((event, data))

    @property
    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> list[dict[str, Any]]:
        """Payloads of every received event with this name."""
        return [data for name, data in self.events if name == event]

    def last(self, event: str) -> dict[str, Any] | None:
        payloads = self.of(event)
        return payloads[-1] if payloads else None

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def hub() -> InMemoryBroadcastHub:
    """Fresh in-memory broadcast hub."""
    return InMemoryBroadcastHub()


@pytest.fixture
def relay(hub: InMemoryBroadcastHub) -> Relay:
    """Relay bound to the test hub.

    Example:
        async def test_post(relay, make_user, connect):
            alice, _ = make_user("alice")
            conn = await connect(alice)
            ...
    """
    return Relay(hub=hub)


@pytest.fixture
def make_user() -> Callable[..., tuple[dict, KeyPair]]:
    """Factory creating a user with a fresh keypair.

    Returns:
        Callable ``(username=None) -> (user, keypair)``
    """

    def _make(username: str | None = None) -> tuple[dict, KeyPair]:
        keypair = generate_keypair()
        user, _ = db.get_or_create_user(keypair.identity_key, username)
        return user, keypair

    return _make


@pytest.fixture
def connect(relay: Relay) -> Callable[..., Awaitable[FakeConnection]]:
    """Factory opening a connection for a user.

    The connection carries the user's id as its session identity and, unless
    ``bind=False``, sends ``auth`` so it is bound and subscribed.
    """

    async def _connect(user: dict | None, bind: bool = True) -> FakeConnection:
        conn = FakeConnection()
        relay.connect(conn, user["id"] if user else None)
        if bind and user is not None:
            await relay.dispatch(conn.id, "auth", {})
        return conn

    return _connect
