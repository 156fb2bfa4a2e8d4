"""Wire protocol for the /chat WebSocket.

Every frame in either direction is a JSON object:

    {"event": "<name>", "data": {...}}

Inbound frames are parsed into a closed union of typed events
(``InboundEvent``), discriminated on the ``event`` field. Anything that
doesn't match one of the variants is rejected with a ValidationError
before it reaches the pipeline.

Outbound payloads are built here too, so the field names the clients see
(camelCase, e.g. ``clientId``, ``readBy``) live in one place.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

# --- Outbound event names ---

ACTIVE_USERS = "active_users"
USER_EVENT = "user_event"
RECEIVE_MESSAGE = "receive_message"
MESSAGE_ACK = "message_ack"
MESSAGE_ERROR = "message_error"
TYPING = "typing"
MESSAGE_REACTION = "message_reaction"
MESSAGE_EDITED = "message_edited"
MESSAGE_DELETED = "message_deleted"
MESSAGES_READ = "messages_read"


# --- Shared payload models ---


class FileInfo(BaseModel):
    name: str | None = None
    url: str
    type: str | None = None
    size: int | None = None


class ReactionInfo(BaseModel):
    reaction: str
    user: str
    timestamp: str | None = None


class MessageInfo(BaseModel):
    """A persisted message as clients see it."""

    id: str
    room: str | None
    sender: str
    avatar: str | None = None
    message: str = ""
    image: str | None = None
    voice: str | None = None
    file: FileInfo | None = None
    timestamp: str
    private: bool = False
    recipient: str | None = None
    readBy: list[str] = Field(default_factory=list)
    reactions: list[ReactionInfo] = Field(default_factory=list)
    clientId: str | None = None
    edited: bool = False
    editedAt: str | None = None

    @classmethod
    def from_db(cls, data: dict) -> "MessageInfo":
        """Create from a message store dict (snake_case keys)."""
        return cls(
            id=data["id"],
            room=data["room"],
            sender=data["sender"],
            avatar=data.get("avatar"),
            message=data.get("message") or "",
            image=data.get("image"),
            voice=data.get("voice"),
            file=FileInfo(**data["file"]) if data.get("file") else None,
            timestamp=data["timestamp"],
            private=data.get("private", False),
            recipient=data.get("recipient"),
            readBy=list(data.get("read_by") or []),
            reactions=[ReactionInfo(**r) for r in data.get("reactions") or []],
            clientId=data.get("client_id"),
            edited=data.get("edited", False),
            editedAt=data.get("edited_at"),
        )


def message_payload(message: dict) -> dict[str, Any]:
    """Serialize a message store dict for the wire."""
    return MessageInfo.from_db(message).model_dump()


# --- Inbound payloads ---


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=False)


class UserJoinData(_Payload):
    name: str = Field(min_length=1, max_length=64)
    room: str = Field(min_length=1, max_length=128)
    avatar: str | None = None


class SendMessageData(_Payload):
    room: str | None = None
    message: str | None = ""
    image: str | None = None
    voice: str | None = None
    file: FileInfo | None = None
    clientId: str | None = Field(default=None, max_length=128)


class PrivateMessageData(_Payload):
    recipient: str = Field(min_length=1)
    message: str | None = ""
    image: str | None = None
    voice: str | None = None
    file: FileInfo | None = None
    clientId: str | None = Field(default=None, max_length=128)


class TypingData(_Payload):
    username: str | None = None
    room: str | None = None
    isTyping: bool = False


class ReactionData(_Payload):
    msgId: str = Field(min_length=1)
    reaction: str = Field(min_length=1, max_length=32)
    user: str | None = None
    room: str | None = None


# --- Inbound events (closed union) ---


class UserJoin(BaseModel):
    event: Literal["user_join"]
    data: UserJoinData


class SendMessage(BaseModel):
    event: Literal["send_message"]
    data: SendMessageData


class PrivateMessage(BaseModel):
    event: Literal["private_message"]
    data: PrivateMessageData


class Typing(BaseModel):
    event: Literal["typing"]
    data: TypingData


class MessageReaction(BaseModel):
    event: Literal["message_reaction"]
    data: ReactionData


InboundEvent = Annotated[
    Union[UserJoin, SendMessage, PrivateMessage, Typing, MessageReaction],
    Field(discriminator="event"),
]

INBOUND_EVENT_NAMES = ("user_join", "send_message", "private_message", "typing", "message_reaction")

_inbound_adapter: TypeAdapter = TypeAdapter(InboundEvent)


def _describe(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def parse_inbound(frame: Any) -> UserJoin | SendMessage | PrivateMessage | Typing | MessageReaction:
    """Parse a raw inbound frame into a typed event.

    Raises:
        ValidationError: Not an object, unknown event name, or bad payload.
    """
    if not isinstance(frame, dict):
        raise ValidationError("Frame must be a JSON object")

    name = frame.get("event")
    if name not in INBOUND_EVENT_NAMES:
        raise ValidationError(f"Unknown event: {name!r}")

    if frame.get("data") is None:
        frame = {**frame, "data": {}}

    try:
        return _inbound_adapter.validate_python(frame)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {name} payload: {_describe(e)}") from e


def frame(event: str, data: Any) -> dict[str, Any]:
    """Build an outbound frame."""
    return {"event": event, "data": data}
