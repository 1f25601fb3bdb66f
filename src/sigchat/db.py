"""Database layer for sigchat.

SQLite storage for users, rooms, room membership, messages and reactions.
The store is the single source of truth; the relay keeps only derived,
per-connection state.

Connection Management:
    # Global thread-local connection (path from SIGCHAT_DB or configure())
    init_db()
    user, created = get_or_create_user(identity_key)

    # Scoped connection
    with scoped_connection("/path/to/chat.db") as conn:
        init_db_with_conn(conn)
        room = create_room("General", True, user["id"], conn=conn)

Singleton rooms (the public room, one pairwise room per user pair) are
created with conflict-tolerant inserts against unique indexes, so concurrent
first-time callers converge on the same row.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import sqlite3
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

from .errors import InvalidRequest, MessageNotFound, NotAMember, RoomNotFound
from .metrics import timed_db_operation, timed_operation

logger = logging.getLogger(__name__)

PUBLIC_ROOM_NAME = "Public Chat"
DEFAULT_ROOM_NAME = "New Chat"
DEFAULT_HISTORY_LIMIT = 50
MAX_CONTENT_LENGTH = 4000
MAX_EMOJI_LENGTH = 32

# Thread-local storage for per-thread connections
_local = threading.local()

# Explicit path set by configure(); falls back to SIGCHAT_DB
_db_config: dict[str, Any] = {"path": None}


def configure(db_path: str | Path | None) -> None:
    """Set the database path used by thread-local connections."""
    _db_config["path"] = str(db_path) if db_path is not None else None


def _configured_path() -> str:
    return _db_config["path"] or os.environ.get("SIGCHAT_DB", ":memory:")


# --- Time helpers ---


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Render a datetime as the stored ISO-8601 UTC form.

    A fixed precision keeps stored timestamps lexicographically ordered.
    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_timestamp() -> str:
    return to_timestamp(utcnow())


# --- Connection Management ---


def _prepare(conn: sqlite3.Connection) -> sqlite3.Connection:
    # Wait for locks instead of failing immediately
    conn.execute("PRAGMA busy_timeout=5000")
    # Reactions and memberships rely on cascading deletes
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    return conn


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create database connection.

    Uses thread-local storage to give each thread its own connection,
    which is essential for safe concurrent access from the HTTP threadpool
    and the relay's store executor.

    Args:
        db_path: Optional explicit database path. If given, a new
                 (non thread-local) connection is returned.

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    if db_path is not None:
        if str(db_path) == ":memory:":
            conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            conn = sqlite3.connect(str(db_path), check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
        return _prepare(conn)

    if getattr(_local, "conn", None) is None:
        path = _configured_path()

        if path == ":memory:":
            # Shared cache so all threads see the same in-memory database.
            # The name includes the process ID so separate processes don't collide.
            conn = sqlite3.connect(
                f"file:sigchat_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
        else:
            conn = sqlite3.connect(path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")

        _local.conn = _prepare(conn)

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for a connection that is closed on exit."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db() -> None:
    """Close the current thread's connection."""
    if getattr(_local, "conn", None) is not None:
        _local.conn.close()
        _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    """Use the provided conn or fall back to the thread-local one."""
    if conn is not None:
        return conn
    return get_connection()


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list) -> list[dict]:
    return [dict(row) for row in rows]


# --- Schema and Migrations ---


def _ensure_schema_version_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            description TEXT
        )
    """)
    conn.commit()


def get_schema_version(conn: sqlite3.Connection | None = None) -> int:
    """Get the current schema version. Returns 0 if no migrations have been applied."""
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)

    cursor = conn.execute("SELECT MAX(version) FROM schema_version")
    row = cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


def record_migration(conn: sqlite3.Connection, version: int, description: str) -> None:
    conn.execute(
        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
        (version, description),
    )
    conn.commit()


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return column in [row[1] for row in cursor.fetchall()]


def _migrate_001_add_pair_key(conn: sqlite3.Connection) -> None:
    """Migration 001: Add pair_key to rooms so each user pair has one direct room."""
    if not _column_exists(conn, "rooms", "pair_key"):
        conn.execute("ALTER TABLE rooms ADD COLUMN pair_key TEXT")
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_rooms_pair_key ON rooms(pair_key) "
        "WHERE pair_key IS NOT NULL"
    )
    conn.commit()


def _migrate_002_add_message_author_index(conn: sqlite3.Connection) -> None:
    """Migration 002: Index messages by author for activity statistics."""
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_messages_user ON messages(user_id, created_at)"
    )
    conn.commit()


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Add pair_key to rooms for direct conversations", _migrate_001_add_pair_key),
    (2, "Add author index to messages", _migrate_002_add_message_author_index),
]


def run_migrations(conn: sqlite3.Connection | None = None) -> list[int]:
    """Run any pending migrations. Returns the versions that were applied."""
    conn = _get_conn(conn)
    _ensure_schema_version_table(conn)
    current_version = get_schema_version(conn)
    applied: list[int] = []

    for version, description, migrate_fn in MIGRATIONS:
        if version > current_version:
            try:
                migrate_fn(conn)
                record_migration(conn, version, description)
                applied.append(version)
            except Exception as e:
                raise RuntimeError(f"Migration {version} failed: {e}") from e

    return applied


# --- Schema Definition ---


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        identity_key TEXT NOT NULL UNIQUE,
        username TEXT,
        created_at TIMESTAMP NOT NULL
    );

    CREATE TABLE IF NOT EXISTS rooms (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        is_group INTEGER NOT NULL DEFAULT 0,
        is_public INTEGER NOT NULL DEFAULT 0,
        created_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
        created_at TIMESTAMP NOT NULL
    );

    -- At most one public room
    CREATE UNIQUE INDEX IF NOT EXISTS idx_rooms_single_public
        ON rooms(is_public) WHERE is_public = 1;

    CREATE TABLE IF NOT EXISTS room_members (
        room_id INTEGER NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        joined_at TIMESTAMP NOT NULL,
        PRIMARY KEY (room_id, user_id)
    );

    CREATE INDEX IF NOT EXISTS idx_room_members_user ON room_members(user_id);

    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        room_id INTEGER NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        content TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        expires_at TIMESTAMP,
        CHECK (expires_at IS NULL OR expires_at > created_at)
    );

    CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room_id, created_at);
    CREATE INDEX IF NOT EXISTS idx_messages_expires
        ON messages(expires_at) WHERE expires_at IS NOT NULL;

    CREATE TABLE IF NOT EXISTS reactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
        user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        emoji TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL,
        UNIQUE (message_id, user_id, emoji)
    );

    CREATE INDEX IF NOT EXISTS idx_reactions_message ON reactions(message_id);
"""

TABLES = ("reactions", "messages", "room_members", "rooms", "users", "schema_version")


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize database schema with an explicit connection."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    run_migrations(conn)


def init_db() -> None:
    """Initialize database schema using the thread-local connection."""
    init_db_with_conn(get_connection())


def reset_db(conn: sqlite3.Connection | None = None) -> None:
    """Drop and recreate all tables (for testing)."""
    conn = _get_conn(conn)
    conn.execute("PRAGMA foreign_keys=OFF")
    conn.executescript("".join(f"DROP TABLE IF EXISTS {table};" for table in TABLES))
    conn.commit()
    conn.execute("PRAGMA foreign_keys=ON")
    init_db_with_conn(conn)


# --- Row shaping ---


def _room_from_row(row: sqlite3.Row | None) -> dict | None:
    room = _row_to_dict(row)
    if room is not None:
        room["is_group"] = bool(room["is_group"])
        room["is_public"] = bool(room["is_public"])
    return room


_ROOM_COLUMNS = "r.id, r.name, r.is_group, r.is_public, r.pair_key, r.created_by, r.created_at"

_MESSAGE_SELECT = """
    SELECT m.id, m.room_id, m.user_id, u.username, m.content, m.created_at, m.expires_at
    FROM messages m
    JOIN users u ON u.id = m.user_id
"""


# --- User Operations ---


def create_user(
    identity_key: str,
    username: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a new user. Raises sqlite3.IntegrityError if the key exists."""
    conn = _get_conn(conn)
    now = now_timestamp()
    cursor = conn.execute(
        "INSERT INTO users (identity_key, username, created_at) VALUES (?, ?, ?)",
        (identity_key, username, now),
    )
    conn.commit()
    return {
        "id": cursor.lastrowid,
        "identity_key": identity_key,
        "username": username,
        "created_at": now,
    }


def get_user(user_id: int, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get user by ID."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, identity_key, username, created_at FROM users WHERE id = ?", (user_id,)
    )
    return _row_to_dict(cursor.fetchone())


def get_user_by_identity(identity_key: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get user by identity key."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, identity_key, username, created_at FROM users WHERE identity_key = ?",
        (identity_key,),
    )
    return _row_to_dict(cursor.fetchone())


@timed_operation("get_or_create_user")
def get_or_create_user(
    identity_key: str,
    username: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, bool]:
    """Look up a user by identity key, creating it on first sight.

    Returns:
        (user, created) tuple.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        "INSERT OR IGNORE INTO users (identity_key, username, created_at) VALUES (?, ?, ?)",
        (identity_key, username, now_timestamp()),
    )
    conn.commit()
    created = cursor.rowcount > 0

    user = get_user_by_identity(identity_key, conn=conn)
    assert user is not None
    return user, created


def update_username(user_id: int, username: str, conn: sqlite3.Connection | None = None) -> bool:
    """Change a user's display name. The identity key never changes."""
    conn = _get_conn(conn)
    cursor = conn.execute("UPDATE users SET username = ? WHERE id = ?", (username, user_id))
    conn.commit()
    return cursor.rowcount > 0


# --- Room Operations ---


def get_room(room_id: int, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get room by ID."""
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {_ROOM_COLUMNS} FROM rooms r WHERE r.id = ?", (room_id,))
    return _room_from_row(cursor.fetchone())


def get_public_room(conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {_ROOM_COLUMNS} FROM rooms r WHERE r.is_public = 1")
    return _room_from_row(cursor.fetchone())


@timed_operation("ensure_public_room")
def ensure_public_room(conn: sqlite3.Connection | None = None) -> dict:
    """Get the public room, creating it on first need.

    Safe under concurrent first calls: the partial unique index on
    ``is_public`` turns a losing insert into a no-op.
    """
    conn = _get_conn(conn)
    room = get_public_room(conn=conn)
    if room is not None:
        return room

    cursor = conn.execute(
        """INSERT OR IGNORE INTO rooms (name, is_group, is_public, created_by, created_at)
           VALUES (?, 1, 1, NULL, ?)""",
        (PUBLIC_ROOM_NAME, now_timestamp()),
    )
    conn.commit()
    if cursor.rowcount > 0:
        logger.info(f"Created public room {cursor.lastrowid}")

    room = get_public_room(conn=conn)
    assert room is not None
    return room


@timed_operation("create_room")
def create_room(
    name: str | None,
    is_group: bool,
    created_by: int,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a room with its creator as the first member.

    Both rows are written in one transaction, so a failed membership insert
    never leaves an orphaned room.
    """
    conn = _get_conn(conn)
    now = now_timestamp()
    name = (name or "").strip() or DEFAULT_ROOM_NAME

    with conn:
        cursor = conn.execute(
            """INSERT INTO rooms (name, is_group, is_public, created_by, created_at)
               VALUES (?, ?, 0, ?, ?)""",
            (name, int(bool(is_group)), created_by, now),
        )
        room_id = cursor.lastrowid
        conn.execute(
            "INSERT INTO room_members (room_id, user_id, joined_at) VALUES (?, ?, ?)",
            (room_id, created_by, now),
        )

    return {
        "id": room_id,
        "name": name,
        "is_group": bool(is_group),
        "is_public": False,
        "pair_key": None,
        "created_by": created_by,
        "created_at": now,
    }


def pair_key_for(user_a: int, user_b: int) -> str:
    """Order-independent key naming the direct room of two users."""
    low, high = sorted((user_a, user_b))
    return f"{low}:{high}"


def find_pairwise_room(
    user_a: int,
    user_b: int,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Find a non-group, non-public room that both users belong to."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""SELECT {_ROOM_COLUMNS}
            FROM rooms r
            JOIN room_members a ON a.room_id = r.id AND a.user_id = ?
            JOIN room_members b ON b.room_id = r.id AND b.user_id = ?
            WHERE r.is_group = 0 AND r.is_public = 0
            ORDER BY r.id
            LIMIT 1""",
        (user_a, user_b),
    )
    return _room_from_row(cursor.fetchone())


def _get_room_by_pair_key(pair_key: str, conn: sqlite3.Connection) -> dict | None:
    cursor = conn.execute(f"SELECT {_ROOM_COLUMNS} FROM rooms r WHERE r.pair_key = ?", (pair_key,))
    return _room_from_row(cursor.fetchone())


@timed_operation("get_or_create_pairwise_room")
def get_or_create_pairwise_room(
    user_a: int,
    user_b: int,
    name: str,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, bool]:
    """Return the direct room of two users, creating it if none exists.

    Returns:
        (room, created) tuple.
    """
    if user_a == user_b:
        raise InvalidRequest("Cannot start a private chat with yourself")

    conn = _get_conn(conn)
    pair_key = pair_key_for(user_a, user_b)

    room = _get_room_by_pair_key(pair_key, conn) or find_pairwise_room(user_a, user_b, conn=conn)
    if room is not None:
        return room, False

    now = now_timestamp()
    with conn:
        cursor = conn.execute(
            """INSERT OR IGNORE INTO rooms
                   (name, is_group, is_public, pair_key, created_by, created_at)
               VALUES (?, 0, 0, ?, ?, ?)""",
            (name, pair_key, user_a, now),
        )
        created = cursor.rowcount > 0
        if created:
            room_id = cursor.lastrowid
            conn.executemany(
                "INSERT OR IGNORE INTO room_members (room_id, user_id, joined_at) VALUES (?, ?, ?)",
                [(room_id, user_a, now), (room_id, user_b, now)],
            )

    room = _get_room_by_pair_key(pair_key, conn)
    assert room is not None
    return room, created


def list_rooms_for_user(user_id: int, conn: sqlite3.Connection | None = None) -> list[dict]:
    """List rooms a user is a member of, oldest first."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""SELECT {_ROOM_COLUMNS}, m.joined_at
            FROM rooms r
            JOIN room_members m ON m.room_id = r.id
            WHERE m.user_id = ?
            ORDER BY r.id""",
        (user_id,),
    )
    return [_room_from_row(row) for row in cursor.fetchall()]  # type: ignore[misc]


def is_room_member(room_id: int, user_id: int, conn: sqlite3.Connection | None = None) -> bool:
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT 1 FROM room_members WHERE room_id = ? AND user_id = ?", (room_id, user_id)
    )
    return cursor.fetchone() is not None


def add_room_member(
    room_id: int,
    user_id: int,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, bool]:
    """Add a member to a room. Idempotent.

    Returns:
        (membership, created) tuple; created is False if already a member.

    Raises:
        RoomNotFound: If the room does not exist.
    """
    conn = _get_conn(conn)

    if get_room(room_id, conn=conn) is None:
        raise RoomNotFound()

    cursor = conn.execute(
        "INSERT OR IGNORE INTO room_members (room_id, user_id, joined_at) VALUES (?, ?, ?)",
        (room_id, user_id, now_timestamp()),
    )
    conn.commit()

    cursor2 = conn.execute(
        "SELECT room_id, user_id, joined_at FROM room_members WHERE room_id = ? AND user_id = ?",
        (room_id, user_id),
    )
    membership = _row_to_dict(cursor2.fetchone())
    assert membership is not None
    return membership, cursor.rowcount > 0


DIRECT_ROOM_CAPACITY = 2


def claim_direct_room_seat(
    room_id: int,
    user_id: int,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Add a user to a direct room that still has a free seat.

    A direct room holds at most DIRECT_ROOM_CAPACITY members. The count and
    the insert run as one statement, so concurrent joiners cannot overfill it.

    Returns:
        True if the user is a member afterwards (newly or already).
    """
    conn = _get_conn(conn)
    with conn:
        conn.execute(
            """INSERT OR IGNORE INTO room_members (room_id, user_id, joined_at)
               SELECT ?, ?, ?
               WHERE (SELECT COUNT(*) FROM room_members WHERE room_id = ?) < ?""",
            (room_id, user_id, now_timestamp(), room_id, DIRECT_ROOM_CAPACITY),
        )
    return is_room_member(room_id, user_id, conn=conn)


def list_room_members(room_id: int, conn: sqlite3.Connection | None = None) -> list[dict]:
    """List members of a room with their user info."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT u.id, u.username, u.identity_key, m.joined_at
           FROM room_members m
           JOIN users u ON u.id = m.user_id
           WHERE m.room_id = ?
           ORDER BY m.joined_at, u.id""",
        (room_id,),
    )
    return _rows_to_dicts(cursor.fetchall())


# --- Message Operations ---


def _validate_content(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise InvalidRequest("Message content required")
    if len(content) > MAX_CONTENT_LENGTH:
        raise InvalidRequest(f"Message content exceeds {MAX_CONTENT_LENGTH} characters")
    return content


@timed_operation("post_message")
def post_message(
    room_id: int,
    user_id: int,
    content: str,
    expires_at: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Store a message in a room.

    Args:
        room_id: Room ID
        user_id: Author (must be a member)
        content: Message text
        expires_at: Optional time after which the message is deleted

    Returns:
        Message dict with server-assigned id and created_at.

    Raises:
        RoomNotFound: If the room does not exist
        NotAMember: If the author is not a member of the room
        InvalidRequest: If content is empty or expires_at is not in the future
    """
    conn = _get_conn(conn)
    content = _validate_content(content)

    if get_room(room_id, conn=conn) is None:
        raise RoomNotFound()
    if not is_room_member(room_id, user_id, conn=conn):
        raise NotAMember()

    created = utcnow()
    expires_ts = None
    if expires_at is not None:
        expires_ts = to_timestamp(expires_at)
        if expires_ts <= to_timestamp(created):
            raise InvalidRequest("Expiry must be in the future")

    cursor = conn.execute(
        """INSERT INTO messages (room_id, user_id, content, created_at, expires_at)
           VALUES (?, ?, ?, ?, ?)""",
        (room_id, user_id, content, to_timestamp(created), expires_ts),
    )
    conn.commit()

    message = get_message(cursor.lastrowid, conn=conn)
    assert message is not None
    return message


def get_message(message_id: int, conn: sqlite3.Connection | None = None) -> dict | None:
    conn = _get_conn(conn)
    cursor = conn.execute(f"{_MESSAGE_SELECT} WHERE m.id = ?", (message_id,))
    return _row_to_dict(cursor.fetchone())


@timed_operation("list_messages")
def list_messages(
    room_id: int,
    limit: int = DEFAULT_HISTORY_LIMIT,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Get the most recent ``limit`` messages of a room, oldest first."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""{_MESSAGE_SELECT}
            WHERE m.room_id = ?
            ORDER BY m.created_at DESC, m.id DESC
            LIMIT ?""",
        (room_id, limit),
    )
    rows = _rows_to_dicts(cursor.fetchall())
    rows.reverse()
    return rows


def delete_expired_messages(
    now: datetime | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Delete every message whose expiry has passed.

    Reactions on those messages go with them (ON DELETE CASCADE).

    Returns:
        ``[{"id", "room_id"}]`` for each deleted message, so callers can
        announce the deletions. A row is returned by exactly one call.
    """
    conn = _get_conn(conn)
    cutoff = to_timestamp(now or utcnow())

    with timed_db_operation("delete_expired_messages"):
        cursor = conn.execute(
            """DELETE FROM messages
               WHERE expires_at IS NOT NULL AND expires_at <= ?
               RETURNING id, room_id""",
            (cutoff,),
        )
        deleted = _rows_to_dicts(cursor.fetchall())
        conn.commit()

    return sorted(deleted, key=lambda row: row["id"])


# --- Reaction Operations ---


def _validate_emoji(emoji: Any) -> str:
    if not isinstance(emoji, str) or not emoji.strip():
        raise InvalidRequest("Emoji required")
    if len(emoji) > MAX_EMOJI_LENGTH:
        raise InvalidRequest("Emoji too long")
    return emoji


def add_reaction(
    message_id: int,
    user_id: int,
    emoji: str,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, bool]:
    """Add a reaction. Idempotent per (message, user, emoji).

    Returns:
        (reaction, created) tuple.

    Raises:
        MessageNotFound: If the message does not exist.
    """
    conn = _get_conn(conn)
    emoji = _validate_emoji(emoji)

    if get_message(message_id, conn=conn) is None:
        raise MessageNotFound()

    cursor = conn.execute(
        """INSERT OR IGNORE INTO reactions (message_id, user_id, emoji, created_at)
           VALUES (?, ?, ?, ?)""",
        (message_id, user_id, emoji, now_timestamp()),
    )
    conn.commit()

    cursor2 = conn.execute(
        """SELECT r.id, r.message_id, r.user_id, r.emoji, r.created_at,
                  u.username, u.identity_key
           FROM reactions r JOIN users u ON u.id = r.user_id
           WHERE r.message_id = ? AND r.user_id = ? AND r.emoji = ?""",
        (message_id, user_id, emoji),
    )
    reaction = _row_to_dict(cursor2.fetchone())
    assert reaction is not None
    return reaction, cursor.rowcount > 0


def remove_reaction(
    message_id: int,
    user_id: int,
    emoji: str,
    conn: sqlite3.Connection | None = None,
) -> bool:
    """Remove a reaction. Returns True only if a row was actually deleted."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "DELETE FROM reactions WHERE message_id = ? AND user_id = ? AND emoji = ?",
        (message_id, user_id, emoji),
    )
    conn.commit()
    return cursor.rowcount > 0


def list_reactions(message_ids: list[int], conn: sqlite3.Connection | None = None) -> list[dict]:
    """Reactions on the given messages, with the reactor's username and key."""
    if not message_ids:
        return []

    conn = _get_conn(conn)
    placeholders = ",".join("?" for _ in message_ids)
    cursor = conn.execute(
        f"""SELECT r.id, r.message_id, r.user_id, r.emoji, r.created_at,
                   u.username, u.identity_key
            FROM reactions r JOIN users u ON u.id = r.user_id
            WHERE r.message_id IN ({placeholders})
            ORDER BY r.id""",
        tuple(message_ids),
    )
    return _rows_to_dicts(cursor.fetchall())


# --- Statistics ---


def count_user_messages(user_id: int, conn: sqlite3.Connection | None = None) -> int:
    conn = _get_conn(conn)
    cursor = conn.execute("SELECT COUNT(*) FROM messages WHERE user_id = ?", (user_id,))
    return cursor.fetchone()[0]


def get_user_activity(
    user_id: int,
    days: int = 7,
    today: date | None = None,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Messages per UTC day over the last ``days`` days, oldest first, zero-filled."""
    conn = _get_conn(conn)
    today = today or utcnow().date()
    first_day = today - timedelta(days=days - 1)

    cursor = conn.execute(
        """SELECT substr(created_at, 1, 10) AS day, COUNT(*) AS count
           FROM messages
           WHERE user_id = ? AND created_at >= ?
           GROUP BY day""",
        (user_id, first_day.isoformat()),
    )
    counts = {row["day"]: row["count"] for row in cursor.fetchall()}

    activity = []
    for offset in range(days):
        day = (first_day + timedelta(days=offset)).isoformat()
        activity.append({"date": day, "count": counts.get(day, 0)})
    return activity


# --- Async helpers ---
# The relay and sweeper run on the event loop; store calls go through a
# single worker thread so they never block it and never interleave.

_db_executor: ThreadPoolExecutor | None = None


def _get_db_executor() -> ThreadPoolExecutor:
    global _db_executor
    if _db_executor is None:
        _db_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="db")
    return _db_executor


async def run_sync(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a synchronous store function off the event loop."""
    loop = asyncio.get_running_loop()
    if kwargs:
        fn = functools.partial(fn, **kwargs)
    return await loop.run_in_executor(_get_db_executor(), fn, *args)


def shutdown_executor() -> None:
    """Close the store worker's connection and stop the worker."""
    global _db_executor
    if _db_executor is not None:
        _db_executor.submit(close_db).result()
        _db_executor.shutdown(wait=True)
        _db_executor = None
