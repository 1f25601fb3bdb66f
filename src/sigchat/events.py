"""Broadcast hub for the real-time relay.

Connections are grouped per room. Server-originated room events are
published to a room's group and delivered to every connection in it;
delivery to one connection never fails the others.

Architecture:
    - BroadcastHub ABC defines the interface (swappable for a shared
      pub/sub backend in a multi-process deployment)
    - InMemoryBroadcastHub keeps groups in process memory; each delivery
      is bounded by ``send_timeout`` and a stalled reader counts as failed
    - The hub holds only derived state; room membership itself lives in
      the store and is re-read whenever a connection binds
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Iterable, Protocol

logger = logging.getLogger(__name__)

# Seconds a single delivery may take before it counts as failed
DEFAULT_SEND_TIMEOUT = 5.0


class Connection(Protocol):
    """A live client connection the hub can deliver events to."""

    id: str

    async def send_event(self, event: str, data: dict[str, Any]) -> None: ...


class BroadcastHub(ABC):
    """Abstract room-scoped fan-out."""

    @abstractmethod
    def register(self, conn: Connection) -> None:
        """Make a connection known to the hub (it belongs to no groups yet)."""

    @abstractmethod
    def unregister(self, conn_id: str) -> set[int]:
        """Forget a connection and drop it from every group.

        Returns:
            The rooms it was subscribed to.
        """

    @abstractmethod
    def join(self, conn_id: str, room_id: int) -> None:
        """Subscribe a connection to a room's group. Idempotent."""

    @abstractmethod
    def rooms_for(self, conn_id: str) -> set[int]:
        """Rooms a connection is subscribed to."""

    @abstractmethod
    def members(self, room_id: int) -> set[str]:
        """Connection ids subscribed to a room."""

    @abstractmethod
    async def send(self, conn_id: str, event: str, data: dict[str, Any]) -> bool:
        """Deliver an event to one connection. Returns False if it failed."""

    async def publish(
        self,
        room_id: int,
        event: str,
        data: dict[str, Any],
        exclude: str | None = None,
    ) -> int:
        """Deliver an event to every connection in a room's group.

        Args:
            room_id: Target room
            event: Event name
            data: Event payload
            exclude: Optional connection id to skip (usually the sender)

        Returns:
            Number of connections the event was delivered to.
        """
        return await self.publish_many([room_id], event, data, exclude=exclude)

    async def publish_many(
        self,
        room_ids: Iterable[int],
        event: str,
        data: dict[str, Any],
        exclude: str | None = None,
    ) -> int:
        """Deliver an event to the union of several rooms' groups.

        A connection subscribed to more than one of the rooms receives the
        event once.
        """
        targets: set[str] = set()
        for room_id in room_ids:
            targets |= self.members(room_id)
        if exclude is not None:
            targets.discard(exclude)

        # Concurrent; each delivery is bounded by the hub's send timeout
        results = await asyncio.gather(
            *(self.send(conn_id, event, data) for conn_id in sorted(targets))
        )
        return sum(1 for delivered in results if delivered)


class InMemoryBroadcastHub(BroadcastHub):
    """In-process broadcast hub.

    All operations run on the event loop thread, so plain dicts and sets
    are enough.
    """

    def __init__(self, send_timeout: float = DEFAULT_SEND_TIMEOUT) -> None:
        self.send_timeout = send_timeout
        self._connections: dict[str, Connection] = {}
        self._groups: dict[int, set[str]] = defaultdict(set)
        self._subscriptions: dict[str, set[int]] = defaultdict(set)

    def register(self, conn: Connection) -> None:
        self._connections[conn.id] = conn

    def unregister(self, conn_id: str) -> set[int]:
        self._connections.pop(conn_id, None)
        rooms = self._subscriptions.pop(conn_id, set())
        for room_id in rooms:
            group = self._groups.get(room_id)
            if group is not None:
                group.discard(conn_id)
                if not group:
                    del self._groups[room_id]
        return rooms

    def join(self, conn_id: str, room_id: int) -> None:
        if conn_id not in self._connections:
            return
        self._groups[room_id].add(conn_id)
        self._subscriptions[conn_id].add(room_id)

    def rooms_for(self, conn_id: str) -> set[int]:
        return set(self._subscriptions.get(conn_id, ()))

    def members(self, room_id: int) -> set[str]:
        return set(self._groups.get(room_id, ()))

    async def send(self, conn_id: str, event: str, data: dict[str, Any]) -> bool:
        conn = self._connections.get(conn_id)
        if conn is None:
            return False
        try:
            await asyncio.wait_for(conn.send_event(event, data), timeout=self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f"Delivery of {event} to connection {conn_id} timed out after {self.send_timeout}s"
            )
            return False
        except Exception as e:
            logger.warning(f"Failed to deliver {event} to connection {conn_id}: {e}")
            return False

    def __len__(self) -> int:
        return len(self._connections)


# --- Global singleton ---

_hub: BroadcastHub | None = None


def get_broadcast_hub() -> BroadcastHub:
    """Get the global broadcast hub.

    Creates an InMemoryBroadcastHub on first call. Use set_broadcast_hub()
    to swap in a different implementation.
    """
    global _hub
    if _hub is None:
        _hub = InMemoryBroadcastHub()
    return _hub


def set_broadcast_hub(hub: BroadcastHub) -> None:
    global _hub
    _hub = hub


def reset_broadcast_hub() -> None:
    """Reset the global broadcast hub (for testing)."""
    global _hub
    _hub = None
