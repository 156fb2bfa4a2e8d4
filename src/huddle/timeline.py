"""Client-side message timeline: optimistic sends reconciled with the server.

A chat client sees messages from three sources that race each other:

    - history pages fetched over REST
    - its own optimistic sends, shown before the server confirms them
    - pushed events (echoes of its own sends, other people's messages,
      acks, reactions, edits, deletes, read receipts)

MessageTimeline merges them into one duplicate-free list using keyed maps
instead of list scans:

    durable:  message id -> TimelineEntry       (server has persisted it)
    pending:  clientId   -> TimelineEntry       (not yet confirmed)
    index:    clientId   -> message id          (resolved clientIds)

Promotion rule: the first of {ack with messageId, echo, history row}
carrying a pending clientId moves that entry from ``pending`` to
``durable``. Anything arriving later for the same clientId updates the
durable entry in place, so each clientId yields exactly one entry no
matter which order the ack and the echo arrive in.

Unconfirmed sends are never retried automatically: after ``ack_timeout``
seconds ``expire_pending()`` marks them FAILED, and ``retry()`` re-arms
one with the same clientId (the server acks a repeated clientId instead
of storing it twice).

Nothing here does I/O; huddle.client wires it to the REST API and a
WebSocket.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable


class DeliveryState(str, Enum):
    PENDING = "pending"
    """Sent, nothing heard back yet."""

    SENT = "sent"
    """Acked without a message id; waiting for the echo."""

    FAILED = "failed"
    """No ack within ack_timeout. Can be retried or discarded."""

    DELIVERED = "delivered"
    """Persisted by the server."""


@dataclass
class TimelineEntry:
    """One message as the client displays it."""

    message: dict[str, Any]
    state: DeliveryState
    client_id: str | None = None
    event: str | None = None
    """Outbound event name for unconfirmed sends."""

    payload: dict[str, Any] | None = None
    """Outbound event data for unconfirmed sends (reused on retry)."""

    sent_at: float = 0.0

    @property
    def message_id(self) -> str | None:
        return self.message.get("id")

    @property
    def timestamp(self) -> str | None:
        return self.message.get("timestamp")

    def frame(self) -> dict[str, Any]:
        """The WebSocket frame to (re)send for this entry."""
        if self.event is None or self.payload is None:
            raise ValueError("Entry has nothing to send")
        return {"event": self.event, "data": dict(self.payload)}

    def to_dict(self) -> dict[str, Any]:
        return {**self.message, "status": self.state.value}


class MessageTimeline:
    """Deduplicated, chronologically ordered view of one room."""

    def __init__(
        self,
        page_size: int = 20,
        ack_timeout: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
        sender: str | None = None,
        avatar: str | None = None,
    ):
        self.page_size = page_size
        self.ack_timeout = ack_timeout
        self.sender = sender
        self.avatar = avatar
        self._clock = clock
        self._durable: dict[str, TimelineEntry] = {}
        self._pending: dict[str, TimelineEntry] = {}
        self._index: dict[str, str] = {}
        self._deleted: set[str] = set()
        self._has_more = True

    def __len__(self) -> int:
        return len(self._durable) + len(self._pending)

    @property
    def has_more(self) -> bool:
        """False once a history page came back short."""
        return self._has_more

    # --- Outbound ---

    def send(
        self,
        message: str = "",
        room: str | None = None,
        recipient: str | None = None,
        image: str | None = None,
        voice: str | None = None,
        file: dict | None = None,
        client_id: str | None = None,
    ) -> TimelineEntry:
        """Add an optimistic entry and return it; send ``entry.frame()``."""
        client_id = client_id or uuid.uuid4().hex
        if client_id in self._pending or client_id in self._index:
            raise ValueError(f"clientId already used: {client_id}")

        payload: dict[str, Any] = {"message": message, "clientId": client_id}
        if recipient:
            event = "private_message"
            payload["recipient"] = recipient
        else:
            event = "send_message"
            payload["room"] = room
        for key, value in (("image", image), ("voice", voice), ("file", file)):
            if value is not None:
                payload[key] = value

        entry = TimelineEntry(
            message={
                "id": None,
                "room": room,
                "sender": self.sender,
                "avatar": self.avatar,
                "message": message,
                "image": image,
                "voice": voice,
                "file": file,
                "timestamp": None,
                "private": bool(recipient),
                "recipient": recipient,
                "readBy": [self.sender] if self.sender else [],
                "reactions": [],
                "clientId": client_id,
                "edited": False,
                "editedAt": None,
            },
            state=DeliveryState.PENDING,
            client_id=client_id,
            event=event,
            payload=payload,
            sent_at=self._clock(),
        )
        self._pending[client_id] = entry
        return entry

    # --- Server events ---

    def _store(self, message: dict[str, Any]) -> TimelineEntry | None:
        """Upsert an authoritative message, resolving its clientId."""
        message_id = message.get("id")
        if not message_id or message_id in self._deleted:
            return None

        client_id = message.get("clientId")
        pending = self._pending.pop(client_id, None) if client_id else None

        entry = self._durable.get(message_id)
        if entry is None:
            entry = TimelineEntry(message=dict(message), state=DeliveryState.DELIVERED, client_id=client_id)
            if pending is not None:
                entry.sent_at = pending.sent_at
            self._durable[message_id] = entry
        else:
            entry.message = {**entry.message, **message}
            entry.state = DeliveryState.DELIVERED
            entry.client_id = entry.client_id or client_id

        if client_id:
            self._index[client_id] = message_id
        return entry

    def apply_ack(self, ack: dict[str, Any]) -> TimelineEntry | None:
        """Handle ``message_ack``. Returns the affected entry, if any."""
        client_id = ack.get("clientId")
        if not client_id:
            return None

        if client_id in self._index:
            # Echo (or an earlier ack) already resolved it
            self._pending.pop(client_id, None)
            return self._durable.get(self._index[client_id])

        pending = self._pending.get(client_id)
        if pending is None:
            return None

        message_id = ack.get("messageId")
        if not message_id:
            pending.state = DeliveryState.SENT
            return pending

        message = {**pending.message, "id": message_id, "timestamp": ack.get("timestamp")}
        return self._store(message)

    def apply_error(self, error: dict[str, Any]) -> TimelineEntry | None:
        """Handle ``message_error``: the matching pending send failed."""
        pending = self._pending.get(error.get("clientId") or "")
        if pending is not None:
            pending.state = DeliveryState.FAILED
        return pending

    def apply_message(self, message: dict[str, Any]) -> TimelineEntry | None:
        """Handle ``receive_message`` (own echo or someone else's message)."""
        return self._store(message)

    def apply_reaction(self, data: dict[str, Any]) -> bool:
        entry = self._durable.get(data.get("msgId") or "")
        if entry is None:
            return False
        reaction = {
            "reaction": data.get("reaction"),
            "user": data.get("user"),
            "timestamp": data.get("timestamp"),
        }
        entry.message["reactions"] = [*(entry.message.get("reactions") or []), reaction]
        return True

    def apply_edit(self, data: dict[str, Any]) -> bool:
        entry = self._durable.get(data.get("msgId") or "")
        if entry is None:
            return False
        entry.message["message"] = data.get("message", "")
        entry.message["edited"] = True
        entry.message["editedAt"] = data.get("editedAt")
        return True

    def apply_delete(self, data: dict[str, Any]) -> bool:
        message_id = data.get("msgId")
        if not message_id:
            return False
        self._deleted.add(message_id)
        entry = self._durable.pop(message_id, None)
        return entry is not None

    def apply_read(self, data: dict[str, Any]) -> int:
        """Handle ``messages_read``. Returns how many entries changed."""
        room, reader = data.get("room"), data.get("reader")
        if not reader:
            return 0
        changed = 0
        for entry in self._durable.values():
            message = entry.message
            if message.get("private") or message.get("room") != room:
                continue
            read_by = message.get("readBy") or []
            if reader not in read_by:
                message["readBy"] = [*read_by, reader]
                changed += 1
        return changed

    # --- History ---

    def _update_has_more(self, batch: list, has_more: bool | None) -> None:
        if has_more is not None:
            self._has_more = has_more
        elif len(batch) < self.page_size:
            self._has_more = False

    def load_initial(self, batch: Iterable[dict[str, Any]], has_more: bool | None = None) -> None:
        """Replace durable history with a fresh first page. Pending sends are kept."""
        batch = list(batch)
        self._durable.clear()
        self._index.clear()
        self._has_more = True
        for message in batch:
            self._store(message)
        self._update_has_more(batch, has_more)

    def prepend_older(self, batch: Iterable[dict[str, Any]], has_more: bool | None = None) -> int:
        """Merge an older history page. Returns the number of new entries."""
        batch = list(batch)
        before = len(self._durable)
        for message in batch:
            self._store(message)
        self._update_has_more(batch, has_more)
        return len(self._durable) - before

    def oldest_timestamp(self) -> str | None:
        """Exclusive upper bound for the next "load older" request."""
        timestamps = [e.timestamp for e in self._durable.values() if e.timestamp]
        return min(timestamps) if timestamps else None

    # --- Pending policy ---

    def expire_pending(self, now: float | None = None) -> list[TimelineEntry]:
        """Mark sends with no ack after ``ack_timeout`` as FAILED."""
        now = self._clock() if now is None else now
        expired = []
        for entry in self._pending.values():
            if entry.state is DeliveryState.PENDING and now - entry.sent_at >= self.ack_timeout:
                entry.state = DeliveryState.FAILED
                expired.append(entry)
        return expired

    def retry(self, client_id: str) -> TimelineEntry:
        """Re-arm a failed send. Send ``entry.frame()`` again.

        Raises:
            KeyError: Unknown or already confirmed clientId.
        """
        entry = self._pending[client_id]
        entry.state = DeliveryState.PENDING
        entry.sent_at = self._clock()
        return entry

    def discard(self, client_id: str) -> bool:
        """Drop an unconfirmed send from the view."""
        return self._pending.pop(client_id, None) is not None

    # --- Reads ---

    def get(self, client_id: str) -> TimelineEntry | None:
        """Look up an entry by clientId, confirmed or not."""
        if client_id in self._pending:
            return self._pending[client_id]
        message_id = self._index.get(client_id)
        return self._durable.get(message_id) if message_id else None

    def entries(self) -> list[TimelineEntry]:
        """Durable entries by (timestamp, id), then unconfirmed sends in send order."""
        durable = sorted(
            self._durable.values(), key=lambda e: (e.timestamp or "", e.message_id or "")
        )
        return durable + list(self._pending.values())

    def messages(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries()]


class UnreadTracker:
    """Unread counter for one chat surface (window, tab, view)."""

    def __init__(self, me: str | None = None, focused: bool = True):
        self.me = me
        self.focused = focused
        self.count = 0

    def on_message(self, message: dict[str, Any]) -> bool:
        """Count a pushed message. Returns True if the counter went up."""
        if self.focused or message.get("sender") == self.me:
            return False
        self.count += 1
        return True

    def blur(self) -> None:
        self.focused = False

    def focus(self) -> bool:
        """Reset the counter.

        Returns:
            True when the surface was unfocused, meaning a read receipt
            should be sent for the room.
        """
        was_unfocused = not self.focused
        self.focused = True
        self.count = 0
        return was_unfocused
