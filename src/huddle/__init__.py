"""huddle - Room-based real-time chat.

Usage:
    # Run the server
    $ huddle serve --port 8000

    # Talk to it over REST
    from huddle import ChatClient

    client = ChatClient("http://localhost:8000")
    client.register("alice@example.com", "S3cret!pass", name="alice")
    page = client.fetch_messages("general")

    # Embed the chat core without a transport
    from huddle import MessagePipeline, PresenceRegistry, RoomRouter

    registry = PresenceRegistry()
    router = RoomRouter(registry)
    pipeline = MessagePipeline(registry, router)
"""

from huddle._version import __version__
from huddle.client import ChatClient, ChatSession
from huddle.config import ConfigError, ServerSettings
from huddle.errors import (
    AuthError,
    ChatError,
    NotFoundError,
    PermissionDenied,
    StoreUnavailable,
    TransportError,
    ValidationError,
)
from huddle.pipeline import MessagePipeline
from huddle.presence import PresenceRegistry
from huddle.router import RoomRouter
from huddle.timeline import MessageTimeline, UnreadTracker

__all__ = [
    "__version__",
    "ChatClient",
    "ChatSession",
    "ConfigError",
    "ServerSettings",
    "ChatError",
    "ValidationError",
    "NotFoundError",
    "StoreUnavailable",
    "TransportError",
    "AuthError",
    "PermissionDenied",
    "MessagePipeline",
    "PresenceRegistry",
    "RoomRouter",
    "MessageTimeline",
    "UnreadTracker",
]
