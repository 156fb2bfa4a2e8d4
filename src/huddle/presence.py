"""Presence registry: who is connected, as whom, and in which room.

The registry is the only shared mutable state in the chat core. It holds
two tables:

    connections: connection_id -> ConnectionRecord(name, room, avatar, joined_at)
    names:       name -> [connection_id, ...]   (one entry per device/tab)

Invariants, maintained by every operation:
    - every id listed under a name is a key of ``connections``
    - no name maps to an empty list

Room membership is derived from ``connections`` on demand; it is never
stored separately.

Thread safety: none. The registry belongs to the event loop that serves
the WebSocket connections and is only mutated from it. Each operation is
synchronous, so a join or leave completes before any other event is
processed.

Unknown connection ids are tolerated everywhere: leave() on a connection
that never joined (or already left) returns None instead of raising, since
disconnects can race with joins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class ConnectionRecord:
    connection_id: str
    name: str
    room: str
    avatar: str | None = None
    joined_at: str = field(default_factory=_now)


@dataclass
class Member:
    """One distinct name present in a room."""

    name: str
    avatar: str | None
    joined_at: str

    def to_dict(self) -> dict:
        return {"name": self.name, "avatar": self.avatar, "joinedAt": self.joined_at}


@dataclass
class PresenceDelta:
    """A change in a room's presence, to be broadcast to that room."""

    type: Literal["join", "leave"]
    room: str
    user: str
    connection_id: str
    members: list[Member]
    timestamp: str = field(default_factory=_now)

    def user_event(self) -> dict:
        return {"type": self.type, "user": self.user, "timestamp": self.timestamp}

    def active_users(self) -> list[dict]:
        return [m.to_dict() for m in self.members]


class PresenceRegistry:
    """Authoritative in-memory map of live connections."""

    def __init__(self) -> None:
        self._connections: dict[str, ConnectionRecord] = {}
        self._names: dict[str, list[str]] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def get(self, connection_id: str) -> ConnectionRecord | None:
        return self._connections.get(connection_id)

    # --- Mutations ---

    def join(
        self,
        connection_id: str,
        name: str,
        room: str,
        avatar: str | None = None,
    ) -> list[PresenceDelta]:
        """Register (or re-register) a connection.

        Re-joining with the same connection id overwrites its record. If
        the room changed, a leave delta for the old room precedes the join
        delta for the new room.

        Returns:
            Presence deltas to broadcast, in order.
        """
        deltas: list[PresenceDelta] = []
        previous = self._connections.get(connection_id)

        if previous is not None:
            if previous.name != name:
                self._unindex(previous.name, connection_id)
            if previous.room != room:
                del self._connections[connection_id]
                deltas.append(self._delta("leave", previous))

        record = ConnectionRecord(
            connection_id=connection_id,
            name=name,
            room=room,
            avatar=avatar,
            joined_at=previous.joined_at if previous and previous.room == room else _now(),
        )
        self._connections[connection_id] = record

        ids = self._names.setdefault(name, [])
        if connection_id not in ids:
            ids.append(connection_id)

        deltas.append(self._delta("join", record))
        logger.debug("join %s as %s in %s", connection_id, name, room)
        return deltas

    def leave(self, connection_id: str) -> PresenceDelta | None:
        """Remove a connection. Returns None if it wasn't registered."""
        record = self._connections.pop(connection_id, None)
        if record is None:
            return None

        self._unindex(record.name, connection_id)
        logger.debug("leave %s (%s) from %s", connection_id, record.name, record.room)
        return self._delta("leave", record)

    def _unindex(self, name: str, connection_id: str) -> None:
        ids = self._names.get(name)
        if ids is None:
            return
        if connection_id in ids:
            ids.remove(connection_id)
        if not ids:
            del self._names[name]

    def _delta(self, type_: Literal["join", "leave"], record: ConnectionRecord) -> PresenceDelta:
        return PresenceDelta(
            type=type_,
            room=record.room,
            user=record.name,
            connection_id=record.connection_id,
            members=self.members_of(record.room),
        )

    # --- Reads ---

    def members_of(self, room: str) -> list[Member]:
        """Distinct names in a room, ordered by when they first joined it."""
        members: dict[str, Member] = {}
        for record in self._connections.values():
            if record.room != room:
                continue
            existing = members.get(record.name)
            if existing is None:
                members[record.name] = Member(record.name, record.avatar, record.joined_at)
                continue
            existing.joined_at = min(existing.joined_at, record.joined_at)
            if existing.avatar is None:
                existing.avatar = record.avatar
        return sorted(members.values(), key=lambda m: (m.joined_at, m.name))

    def connections_for(self, name: str) -> list[str]:
        """Live connection ids for a name (multi-device fan-out)."""
        return list(self._names.get(name, ()))

    def connections_in(self, room: str) -> list[str]:
        """Live connection ids whose room is ``room``."""
        return [cid for cid, record in self._connections.items() if record.room == room]

    def rooms(self) -> dict[str, int]:
        """Room name -> number of live connections."""
        counts: dict[str, int] = {}
        for record in self._connections.values():
            counts[record.room] = counts.get(record.room, 0) + 1
        return counts

    def snapshot(self) -> tuple[dict[str, ConnectionRecord], dict[str, list[str]]]:
        """Copies of the connection table and the name index."""
        return dict(self._connections), {k: list(v) for k, v in self._names.items()}
