"""Real-time relay for sigchat.

Routes client events arriving on live connections to the store and fans
the results out through the broadcast hub.

A connection starts unbound. It carries the user id from the session
cookie presented at the handshake, but that id is only trusted once the
client sends ``auth``: the relay re-reads the user from the store, joins
them to the public room, and subscribes the connection to every room they
belong to. Every other event requires a bound connection.

Wire events are ``(name, data)`` pairs; payload keys are camelCase.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from . import db
from .crypto import canonical_identity_key
from .errors import (
    InvalidIdentity,
    InvalidRequest,
    MessageNotFound,
    NotAMember,
    NotAuthenticated,
    RoomNotFound,
    SigchatError,
    StoreUnavailable,
    UserNotFound,
)
from .events import BroadcastHub, Connection, get_broadcast_hub
from .metrics import metrics

logger = logging.getLogger(__name__)

Handler = Callable[[str, dict], Awaitable[None]]

# Answer sent to the client when a handler fails unexpectedly
FAILURE_MESSAGES = {
    "auth": "Authentication failed",
    "create_room": "Failed to create room",
    "create_private_chat": "Failed to create private chat",
    "join_room": "Failed to join room",
    "send_message": "Failed to send message",
    "typing": "Failed to send typing indicator",
    "stop_typing": "Failed to send typing indicator",
    "add_reaction": "Failed to add reaction",
    "remove_reaction": "Failed to remove reaction",
    "get_user_stats": "Failed to get user statistics",
}

ACTIVITY_DAYS = 7


# --- Payloads ---


def user_summary(user: dict, online: bool | None = None) -> dict:
    data: dict[str, Any] = {
        "id": user["id"],
        "username": user["username"],
        "identityKey": user["identity_key"],
    }
    if online is not None:
        data["online"] = online
    return data


def room_payload(room: dict, members: list[dict] | None = None) -> dict:
    data: dict[str, Any] = {
        "id": room["id"],
        "name": room["name"],
        "isGroup": room["is_group"],
        "isPublic": room["is_public"],
        "createdBy": room["created_by"],
        "createdAt": room["created_at"],
    }
    if members is not None:
        data["members"] = [{"id": m["id"], "username": m["username"]} for m in members]
    return data


def message_payload(message: dict) -> dict:
    return {
        "id": message["id"],
        "roomId": message["room_id"],
        "userId": message["user_id"],
        "username": message["username"],
        "content": message["content"],
        "timestamp": message["created_at"],
        "expiresAt": message["expires_at"],
    }


def reaction_payload(reaction: dict) -> dict:
    return {
        "id": reaction["id"],
        "messageId": reaction["message_id"],
        "userId": reaction["user_id"],
        "emoji": reaction["emoji"],
        "username": reaction["username"],
        "identityKey": reaction["identity_key"],
    }


# --- Request parsing ---


def _int_field(data: dict, key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidRequest(f"{key} must be an integer")
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise InvalidRequest(f"{key} required")


def parse_expiry(value: Any) -> datetime | None:
    """Parse an ``expiresAt`` value.

    Accepts an ISO-8601 string (a trailing ``Z`` is allowed) or a number of
    milliseconds since the epoch. Naive timestamps are taken to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidRequest("Invalid expiresAt")
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise InvalidRequest("Invalid expiresAt")
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidRequest("Invalid expiresAt")
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise InvalidRequest("Invalid expiresAt")


# --- Store units of work (run on the store executor) ---


def rooms_with_members(user_id: int) -> list[dict]:
    return [
        room_payload(room, db.list_room_members(room["id"]))
        for room in db.list_rooms_for_user(user_id)
    ]


def _bind_user(user_id: int) -> tuple[dict, list[dict]]:
    user = db.get_user(user_id)
    if user is None:
        raise UserNotFound("User not found. Please authenticate again.")
    public_room = db.ensure_public_room()
    db.add_room_member(public_room["id"], user_id)
    return user, rooms_with_members(user_id)


def _create_room(name: Any, is_group: bool, user_id: int) -> dict:
    if name is not None and not isinstance(name, str):
        raise InvalidRequest("Room name must be a string")
    room = db.create_room(name, is_group, user_id)
    logger.info(f"Room {room['id']} created by user {user_id}")
    return room_payload(room, db.list_room_members(room["id"]))


def _create_private_chat(user_id: int, recipient_key: str) -> tuple[dict | None, dict | None, bool]:
    try:
        recipient_key = canonical_identity_key(recipient_key)
    except InvalidIdentity:
        return None, None, False
    recipient = db.get_user_by_identity(recipient_key)
    if recipient is None:
        return None, None, False
    if recipient["id"] == user_id:
        raise InvalidRequest("Cannot start a private chat with yourself")

    me = db.get_user(user_id)
    if me is None:
        raise UserNotFound()

    room, created = db.get_or_create_pairwise_room(
        user_id, recipient["id"], f"{me['username']} & {recipient['username']}"
    )
    if created:
        logger.info(f"Private room {room['id']} created between {user_id} and {recipient['id']}")
    return recipient, room_payload(room, db.list_room_members(room["id"])), created


def _join_room(room_id: int, user_id: int, limit: int) -> dict:
    room = db.get_room(room_id)
    if room is None:
        raise RoomNotFound()
    if room["is_group"] or room["is_public"]:
        db.add_room_member(room_id, user_id)
    elif room["pair_key"] is not None or not db.claim_direct_room_seat(room_id, user_id):
        # Pairwise rooms are closed; other direct rooms admit one guest
        raise NotAMember("Cannot join a private conversation")

    messages = db.list_messages(room_id, limit)
    reactions = db.list_reactions([m["id"] for m in messages])
    user = db.get_user(user_id)
    if user is None:
        raise UserNotFound()

    return {
        "room": room_payload(room, db.list_room_members(room_id)),
        "messages": [message_payload(m) for m in messages],
        "reactions": [reaction_payload(r) for r in reactions],
        "user": user,
    }


def _require_membership(room_id: int, user_id: int) -> dict:
    if db.get_room(room_id) is None:
        raise RoomNotFound()
    if not db.is_room_member(room_id, user_id):
        raise NotAMember()
    user = db.get_user(user_id)
    if user is None:
        raise UserNotFound()
    return user


def _message_for_reaction(message_id: int, room_id: int | None, user_id: int) -> dict:
    message = db.get_message(message_id)
    if message is None or (room_id is not None and message["room_id"] != room_id):
        raise MessageNotFound()
    if not db.is_room_member(message["room_id"], user_id):
        raise NotAMember()
    return message


def _add_reaction(message_id: int, room_id: int | None, user_id: int, emoji: str) -> tuple[dict, bool]:
    message = _message_for_reaction(message_id, room_id, user_id)
    reaction, created = db.add_reaction(message["id"], user_id, emoji)
    return {**reaction_payload(reaction), "roomId": message["room_id"]}, created


def _remove_reaction(message_id: int, room_id: int | None, user_id: int, emoji: str) -> dict | None:
    message = _message_for_reaction(message_id, room_id, user_id)
    if not db.remove_reaction(message["id"], user_id, emoji):
        return None
    return {
        "messageId": message["id"],
        "userId": user_id,
        "emoji": emoji,
        "roomId": message["room_id"],
    }


def _user_stats(user_id: int) -> dict:
    rooms = db.list_rooms_for_user(user_id)
    return {
        "messageCount": db.count_user_messages(user_id),
        "conversationCount": len([r for r in rooms if not r["is_public"]]),
        "activityStats": db.get_user_activity(user_id, days=ACTIVITY_DAYS),
    }


# --- Connection registry ---


class ConnectionRegistry:
    """Maps live connections to the users they are bound to.

    Derived state only: it is rebuilt from the store on every bind and is
    discarded on disconnect.
    """

    def __init__(self) -> None:
        self._users: dict[str, int] = {}
        self._connections: dict[int, set[str]] = defaultdict(set)

    def bind(self, conn_id: str, user_id: int) -> None:
        previous = self._users.get(conn_id)
        if previous is not None and previous != user_id:
            self.unbind(conn_id)
        self._users[conn_id] = user_id
        self._connections[user_id].add(conn_id)

    def unbind(self, conn_id: str) -> int | None:
        user_id = self._users.pop(conn_id, None)
        if user_id is not None:
            conns = self._connections.get(user_id)
            if conns is not None:
                conns.discard(conn_id)
                if not conns:
                    del self._connections[user_id]
        return user_id

    def user_for(self, conn_id: str) -> int | None:
        return self._users.get(conn_id)

    def connections_for_user(self, user_id: int) -> set[str]:
        return set(self._connections.get(user_id, ()))

    def is_online(self, user_id: int) -> bool:
        return bool(self._connections.get(user_id))

    def __len__(self) -> int:
        return len(self._users)


# --- Relay ---


class Relay:
    """Dispatches client events for all live connections.

    Args:
        hub: Broadcast hub for room fan-out (defaults to the global hub)
        history_limit: Messages returned in ``room_joined``
    """

    def __init__(
        self,
        hub: BroadcastHub | None = None,
        history_limit: int = db.DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.hub = hub or get_broadcast_hub()
        self.history_limit = history_limit
        self.registry = ConnectionRegistry()
        # Session-derived user id per connection, captured at the handshake
        self._sessions: dict[str, int | None] = {}
        self._handlers: dict[str, Handler] = {
            "auth": self.handle_auth,
            "create_room": self.handle_create_room,
            "create_private_chat": self.handle_create_private_chat,
            "join_room": self.handle_join_room,
            "send_message": self.handle_send_message,
            "typing": self.handle_typing,
            "stop_typing": self.handle_stop_typing,
            "add_reaction": self.handle_add_reaction,
            "remove_reaction": self.handle_remove_reaction,
            "get_user_stats": self.handle_get_user_stats,
        }

    # --- Lifecycle ---

    def connect(self, conn: Connection, session_user_id: int | None) -> None:
        """Register a new connection with the identity from its session."""
        self.hub.register(conn)
        self._sessions[conn.id] = session_user_id
        metrics.connection_opened()
        logger.debug(f"Connection {conn.id} opened (session user {session_user_id})")

    async def disconnect(self, conn_id: str) -> None:
        """Drop a connection and tell its rooms if the user went offline."""
        user_id = self.registry.unbind(conn_id)
        rooms = self.hub.unregister(conn_id)
        self._sessions.pop(conn_id, None)
        metrics.connection_closed()

        if user_id is None or self.registry.is_online(user_id):
            return

        try:
            user = await db.run_sync(db.get_user, user_id)
        except sqlite3.Error as e:
            logger.warning(f"Could not load user {user_id} on disconnect: {e}")
            return

        if user is not None:
            logger.info(f"User {user_id} disconnected")
            await self.hub.publish_many(
                rooms, "user_offline", {"id": user_id, "username": user["username"]}
            )

    async def dispatch(self, conn_id: str, event: str, data: Any = None) -> None:
        """Handle one client event.

        Failures are answered with an ``error`` event to the originating
        connection only; they never propagate to the transport.
        """
        handler = self._handlers.get(event)
        if handler is None:
            metrics.record_relay_event("unknown", failed=True)
            await self.hub.send(conn_id, "error", {"message": f"Unknown event: {event}"})
            return

        if not isinstance(data, dict):
            data = {}

        try:
            await handler(conn_id, data)
        except SigchatError as e:
            metrics.record_relay_event(event, failed=True)
            await self.hub.send(conn_id, "error", {"message": e.message})
        except sqlite3.Error:
            metrics.record_relay_event(event, failed=True)
            logger.error(f"Store error handling {event} on {conn_id}", exc_info=True)
            await self.hub.send(conn_id, "error", {"message": StoreUnavailable.default_message})
        except Exception:
            metrics.record_relay_event(event, failed=True)
            logger.error(f"Error handling {event} on {conn_id}", exc_info=True)
            await self.hub.send(conn_id, "error", {"message": FAILURE_MESSAGES[event]})
        else:
            metrics.record_relay_event(event)

    def _require_user(self, conn_id: str) -> int:
        user_id = self.registry.user_for(conn_id)
        if user_id is None:
            raise NotAuthenticated()
        return user_id

    # --- Handlers ---

    async def handle_auth(self, conn_id: str, data: dict) -> None:
        session_user_id = self._sessions.get(conn_id)
        if session_user_id is None:
            raise NotAuthenticated("Not authenticated. Sign in with your identity key first.")

        user, rooms = await db.run_sync(_bind_user, session_user_id)
        first_connection = not self.registry.is_online(user["id"])
        self.registry.bind(conn_id, user["id"])
        for room in rooms:
            self.hub.join(conn_id, room["id"])

        await self.hub.send(
            conn_id, "auth_success", {"user": user_summary(user, online=True), "rooms": rooms}
        )
        if first_connection:
            await self.hub.publish_many(
                [room["id"] for room in rooms], "user_online", user_summary(user), exclude=conn_id
            )
        logger.info(f"Connection {conn_id} bound to user {user['id']}")

    async def handle_create_room(self, conn_id: str, data: dict) -> None:
        user_id = self._require_user(conn_id)
        room = await db.run_sync(_create_room, data.get("name"), bool(data.get("isGroup")), user_id)
        self.hub.join(conn_id, room["id"])
        await self.hub.send(conn_id, "room_created", room)

    async def handle_create_private_chat(self, conn_id: str, data: dict) -> None:
        user_id = self._require_user(conn_id)
        recipient_key = data.get("recipientIdentity")
        if not recipient_key or not isinstance(recipient_key, str):
            raise InvalidRequest("recipientIdentity required")

        recipient, room, created = await db.run_sync(_create_private_chat, user_id, recipient_key)
        if recipient is None or room is None:
            await self.hub.send(conn_id, "user_not_found", {"identity": recipient_key})
            return

        self.hub.join(conn_id, room["id"])
        if not created:
            await self.hub.send(conn_id, "room_created", room)
            return

        for other_conn in self.registry.connections_for_user(recipient["id"]):
            self.hub.join(other_conn, room["id"])
        await self.hub.publish(room["id"], "room_created", room)

    async def handle_join_room(self, conn_id: str, data: dict) -> None:
        user_id = self._require_user(conn_id)
        room_id = _int_field(data, "roomId")

        joined = await db.run_sync(_join_room, room_id, user_id, self.history_limit)
        user = joined.pop("user")
        self.hub.join(conn_id, room_id)

        await self.hub.send(conn_id, "room_joined", joined)
        await self.hub.publish(
            room_id,
            "user_joined_room",
            {"roomId": room_id, "user": {"id": user["id"], "username": user["username"]}},
            exclude=conn_id,
        )

    async def handle_send_message(self, conn_id: str, data: dict) -> None:
        user_id = self._require_user(conn_id)
        room_id = _int_field(data, "roomId")
        expires_at = parse_expiry(data.get("expiresAt"))

        message = await db.run_sync(db.post_message, room_id, user_id, data.get("content"), expires_at)
        self.hub.join(conn_id, room_id)
        await self.hub.publish(room_id, "new_message", message_payload(message))

    async def _typing(self, conn_id: str, data: dict, event: str) -> None:
        user_id = self._require_user(conn_id)
        room_id = _int_field(data, "roomId")
        user = await db.run_sync(_require_membership, room_id, user_id)
        await self.hub.publish(
            room_id, event, {"roomId": room_id, "username": user["username"]}, exclude=conn_id
        )

    async def handle_typing(self, conn_id: str, data: dict) -> None:
        await self._typing(conn_id, data, "user_typing")

    async def handle_stop_typing(self, conn_id: str, data: dict) -> None:
        await self._typing(conn_id, data, "user_stop_typing")

    def _reaction_args(self, conn_id: str, data: dict) -> tuple[int, int | None, int, str]:
        user_id = self._require_user(conn_id)
        message_id = _int_field(data, "messageId")
        room_id = _int_field(data, "roomId") if data.get("roomId") is not None else None
        emoji = data.get("emoji")
        if not isinstance(emoji, str) or not emoji.strip():
            raise InvalidRequest("Emoji required")
        return message_id, room_id, user_id, emoji

    async def handle_add_reaction(self, conn_id: str, data: dict) -> None:
        args = self._reaction_args(conn_id, data)
        reaction, created = await db.run_sync(_add_reaction, *args)
        if created:
            await self.hub.publish(reaction["roomId"], "reaction_added", reaction)

    async def handle_remove_reaction(self, conn_id: str, data: dict) -> None:
        args = self._reaction_args(conn_id, data)
        removed = await db.run_sync(_remove_reaction, *args)
        if removed is not None:
            await self.hub.publish(removed["roomId"], "reaction_removed", removed)

    async def handle_get_user_stats(self, conn_id: str, data: dict) -> None:
        user_id = self._require_user(conn_id)
        stats = await db.run_sync(_user_stats, user_id)
        await self.hub.send(conn_id, "user_stats", stats)

    # --- Server-originated events ---

    async def announce_deletions(self, deleted: list[dict]) -> int:
        """Tell each room which of its messages were swept."""
        for row in deleted:
            await self.hub.publish(
                row["room_id"], "message_deleted", {"messageId": row["id"], "roomId": row["room_id"]}
            )
        return len(deleted)


# --- Global singleton ---

_relay: Relay | None = None


def get_relay() -> Relay:
    """Get the global relay, bound to the global broadcast hub."""
    global _relay
    if _relay is None:
        _relay = Relay()
    return _relay


def set_relay(relay: Relay) -> None:
    global _relay
    _relay = relay


def reset_relay() -> None:
    """Reset the global relay (for testing)."""
    global _relay
    _relay = None
