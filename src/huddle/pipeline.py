"""Message pipeline: validate, persist, broadcast, acknowledge.

Every outbound chat message walks the same states:

    RECEIVED -> VALIDATED -> PERSISTED -> BROADCAST -> ACKNOWLEDGED
        \\           \\            (store failure)
         +-----------+-----------------------------> REJECTED

A rejection is reported to the submitting connection only, as
``message_error{error, code, clientId}``; nothing is broadcast and nothing
is written. Once a message is persisted it is broadcast to its room (the
sender's own connection included) and then acknowledged to the sender with
``message_ack{clientId, messageId, timestamp}``.

Resubmitting a clientId that is already stored for the room is not an
error: the stored message is acked again with ``duplicate: true`` and no
second broadcast happens.

Store calls are the only places the pipeline yields to the event loop. They
run in the default thread pool, where each worker has its own SQLite
connection.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from . import db
from .config import ServerSettings, get_settings
from .errors import ChatError, NotFoundError, PermissionDenied, StoreUnavailable, ValidationError
from .events import (
    ACTIVE_USERS,
    MESSAGE_ACK,
    MESSAGE_DELETED,
    MESSAGE_EDITED,
    MESSAGE_ERROR,
    MESSAGE_REACTION,
    MESSAGES_READ,
    RECEIVE_MESSAGE,
    TYPING,
    USER_EVENT,
    MessageReaction,
    PrivateMessage,
    PrivateMessageData,
    ReactionData,
    SendMessage,
    SendMessageData,
    Typing,
    TypingData,
    UserJoin,
    UserJoinData,
    message_payload,
)
from .metrics import metrics
from .presence import PresenceDelta, PresenceRegistry
from .router import DeliveryReport, RoomRouter

logger = logging.getLogger(__name__)

ANONYMOUS = "Anonymous"

# Control characters other than tab (\x09) and newline (\x0a)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class PipelineState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    PERSISTED = "persisted"
    BROADCAST = "broadcast"
    ACKNOWLEDGED = "acknowledged"
    REJECTED = "rejected"


@dataclass
class Submission:
    """Where one inbound submission ended up."""

    state: PipelineState = PipelineState.RECEIVED
    client_id: str | None = None
    message: dict | None = None
    error: ChatError | None = None
    duplicate: bool = False
    report: DeliveryReport | None = None

    @property
    def ok(self) -> bool:
        return self.state is not PipelineState.REJECTED


def sanitize_text(text: str | None, max_length: int) -> str:
    """Trim, drop control characters, and enforce the length limit.

    Raises:
        ValidationError: If the cleaned text is longer than ``max_length``.
    """
    cleaned = _CONTROL_CHARS.sub("", text or "").strip()
    if len(cleaned) > max_length:
        raise ValidationError(f"Message exceeds {max_length} characters")
    return cleaned


async def run_sync(fn, *args, **kwargs):
    """Run a synchronous store call off the event loop."""
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


class MessagePipeline:
    """Turns inbound events into store writes and room deliveries."""

    def __init__(
        self,
        registry: PresenceRegistry,
        router: RoomRouter,
        settings: ServerSettings | None = None,
    ):
        self.registry = registry
        self.router = router
        self.settings = settings or get_settings()

    # --- Helpers ---

    async def _store(self, fn, *args, **kwargs):
        try:
            return await run_sync(fn, *args, **kwargs)
        except sqlite3.Error as e:
            logger.error("Store call %s failed: %s", fn.__name__, e)
            raise StoreUnavailable() from e

    async def _reject(self, connection_id: str, submission: Submission, error: ChatError) -> Submission:
        submission.state = PipelineState.REJECTED
        submission.error = error
        metrics.record_rejection(error.code)
        logger.info("Rejected submission from %s: %s (%s)", connection_id, error.message, error.code)

        payload: dict[str, Any] = error.to_dict()
        if submission.client_id is not None:
            payload["clientId"] = submission.client_id
        await self.router.send_to_connection(connection_id, MESSAGE_ERROR, payload)
        return submission

    async def _acknowledge(self, connection_id: str, submission: Submission) -> Submission:
        message = submission.message or {}
        await self.router.send_to_connection(
            connection_id,
            MESSAGE_ACK,
            {
                "clientId": submission.client_id,
                "messageId": message.get("id"),
                "timestamp": message.get("timestamp"),
                "duplicate": submission.duplicate,
            },
        )
        submission.state = PipelineState.ACKNOWLEDGED
        return submission

    def _sender(self, connection_id: str) -> tuple[str, str | None]:
        record = self.registry.get(connection_id)
        if record is None:
            return ANONYMOUS, None
        return record.name, record.avatar

    def _clean_body(self, text: str | None, image, voice, file) -> str:
        body = sanitize_text(text, self.settings.max_message_length)
        if not body and not (image or voice or file):
            raise ValidationError("Message must have text or an attachment")
        return body

    async def _route(self, message: dict, event: str, payload: Any) -> DeliveryReport:
        """Deliver an update about ``message`` to whoever can see it."""
        if message["private"]:
            return await self.router.deliver_to_names(
                [message["sender"], message["recipient"]], event, payload
            )
        return await self.router.broadcast_to_room(message["room"], event, payload)

    async def _broadcast_presence(self, delta: PresenceDelta) -> None:
        await self.router.broadcast_to_room(delta.room, USER_EVENT, delta.user_event())
        await self.router.broadcast_to_room(delta.room, ACTIVE_USERS, delta.active_users())

    # --- Presence ---

    async def join(
        self,
        connection_id: str,
        data: UserJoinData,
        identity: str | None = None,
    ) -> list[PresenceDelta]:
        """Register the connection in a room and announce it.

        ``identity`` is the authenticated display name, which takes
        precedence over the name claimed in the event.
        """
        name = (identity or data.name).strip()
        room = data.room.strip()
        if not name or not room:
            await self._reject(connection_id, Submission(), ValidationError("Name and room are required"))
            return []

        deltas = self.registry.join(connection_id, name, room, data.avatar)
        for delta in deltas:
            await self._broadcast_presence(delta)
        logger.info("%s joined %s (%s)", name, room, connection_id)
        return deltas

    async def leave(self, connection_id: str) -> PresenceDelta | None:
        delta = self.registry.leave(connection_id)
        if delta is not None:
            await self._broadcast_presence(delta)
            logger.info("%s left %s (%s)", delta.user, delta.room, connection_id)
        return delta

    # --- Messages ---

    async def submit_public_message(self, connection_id: str, data: SendMessageData) -> Submission:
        submission = Submission(client_id=data.clientId)
        try:
            record = self.registry.get(connection_id)
            room = record.room if record else (data.room or "").strip()
            if not room:
                raise ValidationError("Join a room before sending messages")
            sender, avatar = self._sender(connection_id)
            file = data.file.model_dump() if data.file else None
            body = self._clean_body(data.message, data.image, data.voice, file)
            submission.state = PipelineState.VALIDATED

            message, created = await self._store(
                db.insert_message,
                room,
                sender,
                body=body,
                avatar=avatar,
                image=data.image,
                voice=data.voice,
                file=file,
                client_id=data.clientId,
            )
        except ChatError as e:
            return await self._reject(connection_id, submission, e)

        submission.message = message
        submission.state = PipelineState.PERSISTED
        if not created:
            submission.duplicate = True
            logger.debug("Duplicate clientId %s in %s, re-acking", data.clientId, room)
            return await self._acknowledge(connection_id, submission)

        submission.report = await self.router.broadcast_to_room(
            room, RECEIVE_MESSAGE, message_payload(message)
        )
        submission.state = PipelineState.BROADCAST
        return await self._acknowledge(connection_id, submission)

    async def submit_private_message(self, connection_id: str, data: PrivateMessageData) -> Submission:
        submission = Submission(client_id=data.clientId)
        try:
            record = self.registry.get(connection_id)
            if record is None:
                raise ValidationError("Join before sending private messages")
            recipient = data.recipient.strip()
            if not recipient:
                raise ValidationError("Recipient is required")
            file = data.file.model_dump() if data.file else None
            body = self._clean_body(data.message, data.image, data.voice, file)
            submission.state = PipelineState.VALIDATED

            message, created = await self._store(
                db.insert_message,
                record.room,
                record.name,
                body=body,
                avatar=record.avatar,
                image=data.image,
                voice=data.voice,
                file=file,
                private=True,
                recipient=recipient,
                client_id=data.clientId,
            )
        except ChatError as e:
            return await self._reject(connection_id, submission, e)

        submission.message = message
        submission.state = PipelineState.PERSISTED
        if not created:
            submission.duplicate = True
            return await self._acknowledge(connection_id, submission)

        submission.report = await self.router.deliver_to_names(
            [record.name, recipient], RECEIVE_MESSAGE, message_payload(message)
        )
        submission.state = PipelineState.BROADCAST
        return await self._acknowledge(connection_id, submission)

    async def react(self, connection_id: str, data: ReactionData) -> Submission:
        """Append a reaction and send the delta to the message's audience."""
        submission = Submission()
        record = self.registry.get(connection_id)
        user = record.name if record else (data.user or ANONYMOUS)
        try:
            reaction = data.reaction.strip()
            if not reaction:
                raise ValidationError("Reaction is required")
            submission.state = PipelineState.VALIDATED

            message = await self._store(db.get_message, data.msgId)
            stored = None
            if message is not None:
                stored = await self._store(db.add_reaction, data.msgId, reaction, user)
            if stored is None:
                raise NotFoundError("Message not found")
        except ChatError as e:
            return await self._reject(connection_id, submission, e)

        submission.message = message
        submission.state = PipelineState.PERSISTED
        submission.report = await self._route(
            message, MESSAGE_REACTION, {"msgId": data.msgId, **stored}
        )
        submission.state = PipelineState.BROADCAST
        return submission

    async def _authored(self, message_id: str, actor: str) -> dict:
        message = await self._store(db.get_message, message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message["sender"] != actor:
            raise PermissionDenied("Only the author can change this message")
        return message

    async def edit_message(self, message_id: str, new_body: str, actor: str) -> dict:
        """Replace a message's text. Author only.

        Raises:
            ValidationError, NotFoundError, PermissionDenied, StoreUnavailable
        """
        body = sanitize_text(new_body, self.settings.max_message_length)
        existing = await self._authored(message_id, actor)
        if not body and not (existing["image"] or existing["voice"] or existing["file"]):
            raise ValidationError("Message cannot be empty")

        updated = await self._store(db.edit_message, message_id, body)
        if updated is None:
            raise NotFoundError("Message not found")

        await self._route(
            updated,
            MESSAGE_EDITED,
            {"msgId": message_id, "message": updated["message"], "editedAt": updated["edited_at"]},
        )
        return updated

    async def delete_message(self, message_id: str, actor: str) -> dict:
        """Hard-delete a message. Author only. Returns the deleted message."""
        existing = await self._authored(message_id, actor)
        if not await self._store(db.delete_message, message_id):
            raise NotFoundError("Message not found")

        await self._route(existing, MESSAGE_DELETED, {"msgId": message_id})
        return existing

    async def mark_read(self, room: str, reader: str) -> int:
        """Add ``reader`` to readBy of every public message in ``room``."""
        if not room or not reader:
            raise ValidationError("Room and reader are required")
        updated = await self._store(db.mark_room_read, room, reader)
        if updated:
            await self.router.broadcast_to_room(
                room, MESSAGES_READ, {"room": room, "reader": reader, "count": updated}
            )
        return updated

    async def set_typing(self, connection_id: str, data: TypingData) -> DeliveryReport | None:
        """Relay a typing indicator to the rest of the room. Never persisted."""
        record = self.registry.get(connection_id)
        room = record.room if record else data.room
        if not room:
            return None
        username = record.name if record else (data.username or ANONYMOUS)
        return await self.router.broadcast_to_room(
            room,
            TYPING,
            {"username": username, "isTyping": data.isTyping, "timestamp": _now()},
            exclude=connection_id,
        )

    # --- Dispatch ---

    async def dispatch(self, connection_id: str, event, identity: str | None = None):
        """Route one parsed inbound event to its handler."""
        metrics.record_inbound(event.event)

        if isinstance(event, UserJoin):
            return await self.join(connection_id, event.data, identity=identity)
        elif isinstance(event, SendMessage):
            return await self.submit_public_message(connection_id, event.data)
        elif isinstance(event, PrivateMessage):
            return await self.submit_private_message(connection_id, event.data)
        elif isinstance(event, Typing):
            return await self.set_typing(connection_id, event.data)
        elif isinstance(event, MessageReaction):
            return await self.react(connection_id, event.data)
        raise TypeError(f"Unhandled event type: {type(event).__name__}")
