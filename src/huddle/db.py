"""Message store for huddle - SQLite with thread-local connections.

This module is the durable side of the chat server: users and their
session tokens, and messages with their reactions and read receipts.

Connection Management:
    # Global (thread-local) connection, path from HUDDLE_DB or configure()
    init_db()
    message, created = insert_message(room="general", sender="alice", body="hi")

    # Scoped connection
    with scoped_connection("/path/to/chat.db") as conn:
        init_db_with_conn(conn)
        list_room_messages("general", conn=conn)

    # In-memory for testing
    with scoped_connection(":memory:") as conn:
        init_db_with_conn(conn)
        ...

Timestamps are ISO-8601 UTC strings with microsecond precision. They are
assigned here at insert time and are strictly increasing within a process,
so a message timestamp is a valid exclusive cursor for paging backwards.
"""

from __future__ import annotations

import os
import sqlite3
import threading
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

from uuid_extensions import uuid7 as make_uuid7

from .metrics import timed_operation

# Current schema version (increment when adding migrations)
SCHEMA_VERSION = 3

# Thread-local storage for per-thread connections
# FastAPI runs sync DB ops in a thread pool, so each worker thread gets
# its own SQLite connection.
_local = threading.local()

# Global config for connection parameters (shared across threads)
_db_config: dict[str, Any] = {
    "path": None,  # None means: read HUDDLE_DB, default in-memory
}

# Serializes the clientId check-then-insert in insert_message()
_write_lock = threading.Lock()

# Last timestamp handed out by _next_timestamp()
_ts_lock = threading.Lock()
_last_ts: datetime | None = None


# --- Connection Management ---


def configure(db_path: str | Path | None) -> None:
    """Set the database path used by thread-local connections.

    Existing connections are left alone; call close_db() first when
    switching databases in a running process.
    """
    _db_config["path"] = str(db_path) if db_path is not None else None


def get_db_path() -> str:
    """Get the configured database path."""
    return _db_config["path"] or os.environ.get("HUDDLE_DB", ":memory:")


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create a database connection.

    Uses thread-local storage to give each thread its own connection.

    Args:
        db_path: Optional explicit database path. If given, a new connection
                 is created and returned (not thread-local); ":memory:"
                 gives a private in-memory database.

    Returns:
        SQLite connection with row_factory set to sqlite3.Row.
    """
    if db_path is not None:
        if str(db_path) == ":memory:":
            conn = sqlite3.connect(":memory:", check_same_thread=False)
        else:
            conn = sqlite3.connect(str(db_path), check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        return conn

    if not hasattr(_local, "conn") or _local.conn is None:
        path = get_db_path()

        if path == ":memory:":
            # Shared cache so every thread sees the same in-memory data.
            # The name includes the PID so parallel test processes don't collide.
            _local.conn = sqlite3.connect(
                f"file:huddle_memdb_{os.getpid()}?mode=memory&cache=shared",
                uri=True,
                check_same_thread=False,
            )
        else:
            _local.conn = sqlite3.connect(path, check_same_thread=False)
            _local.conn.execute("PRAGMA journal_mode=WAL")

        # Wait for locks instead of failing immediately
        _local.conn.execute("PRAGMA busy_timeout=5000")
        _local.conn.execute("PRAGMA foreign_keys=ON")
        _local.conn.row_factory = sqlite3.Row

    return _local.conn


@contextmanager
def scoped_connection(db_path: str | Path) -> Iterator[sqlite3.Connection]:
    """Context manager for a connection that is closed on exit."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def close_db():
    """Close the current thread's connection."""
    if hasattr(_local, "conn") and _local.conn is not None:
        _local.conn.close()
        _local.conn = None


def _get_conn(conn: sqlite3.Connection | None) -> sqlite3.Connection:
    """Helper to get connection - uses provided conn or falls back to thread-local."""
    if conn is not None:
        return conn
    return get_connection()


def _row_to_dict(row: sqlite3.Row | None) -> dict | None:
    if row is None:
        return None
    return dict(row)


def _rows_to_dicts(rows: list) -> list[dict]:
    return [dict(row) for row in rows]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _next_timestamp() -> str:
    """Server timestamp for a new message, strictly increasing per process."""
    global _last_ts
    with _ts_lock:
        now = datetime.now(timezone.utc)
        if _last_ts is not None and now <= _last_ts:
            now = _last_ts + timedelta(microseconds=1)
        _last_ts = now
        return now.isoformat(timespec="microseconds")


def normalize_timestamp(value: str) -> str:
    """Normalize a client-supplied timestamp to the stored format.

    Raises:
        ValueError: If the value isn't an ISO-8601 timestamp.
    """
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="microseconds")


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
    """Get the current schema version. Returns 0 if no migrations have run."""
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
    columns = [row[1] for row in cursor.fetchall()]
    return column in columns


def _migrate_001_add_edit_tracking(conn: sqlite3.Connection) -> None:
    """Migration 001: Track edits on messages."""
    if not _column_exists(conn, "messages", "edited"):
        conn.execute("ALTER TABLE messages ADD COLUMN edited INTEGER NOT NULL DEFAULT 0")
    if not _column_exists(conn, "messages", "edited_at"):
        conn.execute("ALTER TABLE messages ADD COLUMN edited_at TEXT")
    conn.commit()


def _migrate_002_add_file_metadata(conn: sqlite3.Connection) -> None:
    """Migration 002: Store MIME type and size of file attachments."""
    if not _column_exists(conn, "messages", "file_type"):
        conn.execute("ALTER TABLE messages ADD COLUMN file_type TEXT")
    if not _column_exists(conn, "messages", "file_size"):
        conn.execute("ALTER TABLE messages ADD COLUMN file_size INTEGER")
    conn.commit()


def _migrate_003_add_client_id_index(conn: sqlite3.Connection) -> None:
    """Migration 003: Index clientId lookups used for send idempotency."""
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_messages_client_id ON messages(room, client_id) "
        "WHERE client_id IS NOT NULL"
    )
    conn.commit()


# Migration registry: (version, description, migration_function)
MIGRATIONS: list[tuple[int, str, Callable[[sqlite3.Connection], None]]] = [
    (1, "Add edited/edited_at to messages", _migrate_001_add_edit_tracking),
    (2, "Add file_type/file_size to messages", _migrate_002_add_file_metadata),
    (3, "Add clientId index to messages", _migrate_003_add_client_id_index),
]


def run_migrations(conn: sqlite3.Connection | None = None) -> list[int]:
    """Run any pending migrations. Returns the versions applied."""
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


SCHEMA_SQL = """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        avatar TEXT,
        password_hash TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS sessions (
        token_hash TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        created_at TEXT NOT NULL,
        expires_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);

    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        room TEXT,
        sender TEXT NOT NULL,
        avatar TEXT,
        body TEXT NOT NULL DEFAULT '',
        image TEXT,
        voice TEXT,
        file_name TEXT,
        file_url TEXT,
        timestamp TEXT NOT NULL,
        private INTEGER NOT NULL DEFAULT 0,
        recipient TEXT,
        client_id TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_messages_room ON messages(room, private, timestamp);
    CREATE INDEX IF NOT EXISTS idx_messages_private
        ON messages(private, sender, recipient);

    CREATE TABLE IF NOT EXISTS message_reactions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
        reaction TEXT NOT NULL,
        user TEXT NOT NULL,
        timestamp TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_reactions_message ON message_reactions(message_id);

    CREATE TABLE IF NOT EXISTS message_reads (
        message_id TEXT NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
        reader TEXT NOT NULL,
        read_at TEXT NOT NULL,
        PRIMARY KEY (message_id, reader)
    );
"""


def init_db_with_conn(conn: sqlite3.Connection) -> None:
    """Initialize database schema with an explicit connection."""
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    run_migrations(conn)


def init_db():
    """Initialize database schema using the thread-local connection."""
    conn = get_connection()
    init_db_with_conn(conn)


def reset_db(conn: sqlite3.Connection | None = None):
    """Drop and recreate every table (for testing)."""
    conn = _get_conn(conn)
    conn.execute("PRAGMA foreign_keys=OFF")
    conn.executescript("""
        DROP TABLE IF EXISTS message_reads;
        DROP TABLE IF EXISTS message_reactions;
        DROP TABLE IF EXISTS messages;
        DROP TABLE IF EXISTS sessions;
        DROP TABLE IF EXISTS users;
        DROP TABLE IF EXISTS schema_version;
    """)
    conn.commit()
    conn.execute("PRAGMA foreign_keys=ON")
    init_db_with_conn(conn)


# --- User Operations ---


def _user_from_row(row: dict) -> dict:
    return {
        "id": row["id"],
        "email": row["email"],
        "name": row["name"],
        "avatar": row["avatar"],
        "created_at": row["created_at"],
    }


def create_user(
    email: str,
    password_hash: str,
    name: str | None = None,
    avatar: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Create a user. The display name defaults to the email.

    Raises:
        ValueError: If the email is already registered.
    """
    conn = _get_conn(conn)
    email = email.strip().lower()
    name = (name or email).strip()
    user_id = str(make_uuid7())
    now = _now()

    try:
        conn.execute(
            """INSERT INTO users (id, email, name, avatar, password_hash, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (user_id, email, name, avatar, password_hash, now),
        )
        conn.commit()
    except sqlite3.IntegrityError as e:
        conn.rollback()
        raise ValueError("Email already registered") from e

    return {"id": user_id, "email": email, "name": name, "avatar": avatar, "created_at": now}


def get_user(user_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get a user by ID (without the password hash)."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, email, name, avatar, created_at FROM users WHERE id = ?", (user_id,)
    )
    row = _row_to_dict(cursor.fetchone())
    return _user_from_row(row) if row else None


def get_user_credentials(email: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get a user by email, including the password hash."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT id, email, name, avatar, created_at, password_hash FROM users WHERE email = ?",
        (email.strip().lower(),),
    )
    row = _row_to_dict(cursor.fetchone())
    if not row:
        return None
    user = _user_from_row(row)
    user["password_hash"] = row["password_hash"]
    return user


def create_session(
    user_id: str,
    token_hash: str,
    ttl_hours: int,
    conn: sqlite3.Connection | None = None,
) -> dict:
    """Store a session for a hashed token."""
    conn = _get_conn(conn)
    now = datetime.now(timezone.utc)
    expires_at = (now + timedelta(hours=ttl_hours)).isoformat(timespec="microseconds")
    conn.execute(
        "INSERT INTO sessions (token_hash, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
        (token_hash, user_id, now.isoformat(timespec="microseconds"), expires_at),
    )
    conn.commit()
    return {"user_id": user_id, "expires_at": expires_at}


@timed_operation("get_session_user")
def get_session_user(token_hash: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Resolve a hashed token to its user, or None if unknown/expired."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        """SELECT u.id, u.email, u.name, u.avatar, u.created_at
           FROM sessions s JOIN users u ON s.user_id = u.id
           WHERE s.token_hash = ? AND s.expires_at > ?""",
        (token_hash, _now()),
    )
    row = _row_to_dict(cursor.fetchone())
    return _user_from_row(row) if row else None


def delete_session(token_hash: str, conn: sqlite3.Connection | None = None) -> bool:
    conn = _get_conn(conn)
    cursor = conn.execute("DELETE FROM sessions WHERE token_hash = ?", (token_hash,))
    conn.commit()
    return cursor.rowcount > 0


def delete_expired_sessions(conn: sqlite3.Connection | None = None) -> int:
    """Remove expired sessions. Returns count deleted."""
    conn = _get_conn(conn)
    cursor = conn.execute("DELETE FROM sessions WHERE expires_at <= ?", (_now(),))
    conn.commit()
    return cursor.rowcount


# --- Message Operations ---


_MESSAGE_COLUMNS = """id, room, sender, avatar, body, image, voice, file_name, file_url,
    file_type, file_size, timestamp, private, recipient, client_id, edited, edited_at"""


def _message_from_row(row: dict) -> dict:
    file = None
    if row.get("file_url"):
        file = {
            "name": row.get("file_name"),
            "url": row["file_url"],
            "type": row.get("file_type"),
            "size": row.get("file_size"),
        }
    return {
        "id": row["id"],
        "room": row["room"],
        "sender": row["sender"],
        "avatar": row["avatar"],
        "message": row["body"] or "",
        "image": row["image"],
        "voice": row["voice"],
        "file": file,
        "timestamp": row["timestamp"],
        "private": bool(row["private"]),
        "recipient": row["recipient"],
        "read_by": [],
        "reactions": [],
        "client_id": row["client_id"],
        "edited": bool(row.get("edited")),
        "edited_at": row.get("edited_at"),
    }


def _attach_children(conn: sqlite3.Connection, messages: list[dict]) -> list[dict]:
    """Fill in read_by and reactions for a batch of messages."""
    if not messages:
        return messages

    by_id = {m["id"]: m for m in messages}
    placeholders = ",".join("?" for _ in by_id)
    ids = tuple(by_id)

    cursor = conn.execute(
        f"""SELECT message_id, reader FROM message_reads
            WHERE message_id IN ({placeholders}) ORDER BY read_at, reader""",
        ids,
    )
    for row in cursor.fetchall():
        by_id[row["message_id"]]["read_by"].append(row["reader"])

    cursor = conn.execute(
        f"""SELECT message_id, reaction, user, timestamp FROM message_reactions
            WHERE message_id IN ({placeholders}) ORDER BY id""",
        ids,
    )
    for row in cursor.fetchall():
        by_id[row["message_id"]]["reactions"].append(
            {"reaction": row["reaction"], "user": row["user"], "timestamp": row["timestamp"]}
        )

    return messages


def _find_by_client_id(
    conn: sqlite3.Connection, room: str | None, client_id: str
) -> dict | None:
    cursor = conn.execute(
        f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE room IS ? AND client_id = ?",
        (room, client_id),
    )
    row = _row_to_dict(cursor.fetchone())
    if not row:
        return None
    return _attach_children(conn, [_message_from_row(row)])[0]


@timed_operation("insert_message")
def insert_message(
    room: str | None,
    sender: str,
    body: str = "",
    avatar: str | None = None,
    image: str | None = None,
    voice: str | None = None,
    file: dict | None = None,
    private: bool = False,
    recipient: str | None = None,
    client_id: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> tuple[dict, bool]:
    """Persist a message.

    If ``client_id`` is set and a message with the same client_id already
    exists in the room, nothing is written and the stored message is
    returned instead.

    Returns:
        (message dict, created) tuple.

    Raises:
        ValueError: If private is set without a recipient.
    """
    if private and not recipient:
        raise ValueError("Private messages require a recipient")

    conn = _get_conn(conn)

    with _write_lock:
        if client_id:
            existing = _find_by_client_id(conn, room, client_id)
            if existing is not None:
                return existing, False

        message_id = str(make_uuid7())
        timestamp = _next_timestamp()
        file = file or {}

        try:
            conn.execute(
                f"""INSERT INTO messages ({_MESSAGE_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, NULL)""",
                (
                    message_id,
                    room,
                    sender,
                    avatar,
                    body,
                    image,
                    voice,
                    file.get("name"),
                    file.get("url"),
                    file.get("type"),
                    file.get("size"),
                    timestamp,
                    1 if private else 0,
                    recipient if private else None,
                    client_id,
                ),
            )
            # The sender has read their own message
            conn.execute(
                "INSERT INTO message_reads (message_id, reader, read_at) VALUES (?, ?, ?)",
                (message_id, sender, timestamp),
            )
            conn.commit()
        except sqlite3.Error:
            conn.rollback()
            raise

    return get_message(message_id, conn=conn), True  # type: ignore[return-value]


def get_message(message_id: str, conn: sqlite3.Connection | None = None) -> dict | None:
    """Get a single message with its reactions and readers."""
    conn = _get_conn(conn)
    cursor = conn.execute(f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,))
    row = _row_to_dict(cursor.fetchone())
    if not row:
        return None
    return _attach_children(conn, [_message_from_row(row)])[0]


def get_message_by_client_id(
    room: str | None,
    client_id: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Look up a message by the client-generated correlation id."""
    conn = _get_conn(conn)
    return _find_by_client_id(conn, room, client_id)


@timed_operation("list_room_messages")
def list_room_messages(
    room: str,
    before: str | None = None,
    limit: int = 20,
    conn: sqlite3.Connection | None = None,
) -> tuple[list[dict], bool]:
    """Get the most recent public messages in a room.

    Args:
        room: Room name
        before: Only messages strictly older than this timestamp
        limit: Maximum number of messages to return

    Returns:
        (messages, has_more) - messages in chronological order; has_more is
        True when older messages exist beyond this page.
    """
    conn = _get_conn(conn)

    query = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE room = ? AND private = 0"
    params: list[Any] = [room]

    if before:
        query += " AND timestamp < ?"
        params.append(normalize_timestamp(before))

    query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
    params.append(limit + 1)

    cursor = conn.execute(query, tuple(params))
    rows = _rows_to_dicts(cursor.fetchall())

    has_more = len(rows) > limit
    rows = rows[:limit]
    rows.reverse()

    return _attach_children(conn, [_message_from_row(r) for r in rows]), has_more


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@timed_operation("search_messages")
def search_messages(
    room: str,
    query: str,
    limit: int = 50,
    conn: sqlite3.Connection | None = None,
) -> list[dict]:
    """Case-insensitive substring search over a room's public messages.

    Returns the most recent matches in chronological order.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        f"""SELECT {_MESSAGE_COLUMNS} FROM messages
            WHERE room = ? AND private = 0 AND body LIKE ? ESCAPE '\\'
            ORDER BY timestamp DESC, id DESC LIMIT ?""",
        (room, f"%{_escape_like(query)}%", limit),
    )
    rows = _rows_to_dicts(cursor.fetchall())
    rows.reverse()
    return _attach_children(conn, [_message_from_row(r) for r in rows])


@timed_operation("add_reaction")
def add_reaction(
    message_id: str,
    reaction: str,
    user: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Append a reaction to a message.

    Returns:
        The reaction dict, or None if the message doesn't exist.
    """
    conn = _get_conn(conn)
    timestamp = _now()

    with _write_lock:
        cursor = conn.execute("SELECT 1 FROM messages WHERE id = ?", (message_id,))
        if cursor.fetchone() is None:
            return None

        conn.execute(
            """INSERT INTO message_reactions (message_id, reaction, user, timestamp)
               VALUES (?, ?, ?, ?)""",
            (message_id, reaction, user, timestamp),
        )
        conn.commit()

    return {"reaction": reaction, "user": user, "timestamp": timestamp}


@timed_operation("edit_message")
def edit_message(
    message_id: str,
    body: str,
    conn: sqlite3.Connection | None = None,
) -> dict | None:
    """Replace a message body and flag it as edited.

    Returns:
        The updated message, or None if not found.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        "UPDATE messages SET body = ?, edited = 1, edited_at = ? WHERE id = ?",
        (body, _now(), message_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_message(message_id, conn=conn)


@timed_operation("delete_message")
def delete_message(message_id: str, conn: sqlite3.Connection | None = None) -> bool:
    """Permanently delete a message (reactions and reads cascade)."""
    conn = _get_conn(conn)
    cursor = conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
    conn.commit()
    return cursor.rowcount > 0


@timed_operation("mark_room_read")
def mark_room_read(room: str, reader: str, conn: sqlite3.Connection | None = None) -> int:
    """Add ``reader`` to readBy of every public message in the room.

    Idempotent: messages already read by ``reader`` are skipped.

    Returns:
        Number of messages newly marked as read.
    """
    conn = _get_conn(conn)
    cursor = conn.execute(
        """INSERT OR IGNORE INTO message_reads (message_id, reader, read_at)
           SELECT id, ?, ? FROM messages WHERE room = ? AND private = 0""",
        (reader, _now(), room),
    )
    conn.commit()
    return cursor.rowcount


def get_read_by(message_id: str, conn: sqlite3.Connection | None = None) -> list[str]:
    """List readers of a message in the order they read it."""
    conn = _get_conn(conn)
    cursor = conn.execute(
        "SELECT reader FROM message_reads WHERE message_id = ? ORDER BY read_at, reader",
        (message_id,),
    )
    return [row["reader"] for row in cursor.fetchall()]


def count_messages(room: str | None = None, conn: sqlite3.Connection | None = None) -> int:
    """Count stored messages, optionally for one room (public and private)."""
    conn = _get_conn(conn)
    if room is None:
        cursor = conn.execute("SELECT COUNT(*) FROM messages")
    else:
        cursor = conn.execute("SELECT COUNT(*) FROM messages WHERE room = ?", (room,))
    return cursor.fetchone()[0]
