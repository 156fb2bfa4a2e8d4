"""Pytest fixtures for testing code built on huddle.

Usage in conftest.py:
    pytest_plugins = ["huddle.testing"]

Available fixtures:
    - chat_settings: ServerSettings with auth disabled and a short send timeout
    - chat_hub: registry + router + pipeline wired together, no transport
    - chat_app: FastAPI TestClient for the full app (REST and /chat)

The database itself is not reset here; do that in your own conftest
(see db.reset_db).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Generator

import pytest
from fastapi.testclient import TestClient
from uuid_extensions import uuid7 as make_uuid7

from .config import ServerSettings, reset_settings, set_settings
from .errors import TransportError
from .pipeline import MessagePipeline
from .presence import PresenceRegistry
from .router import RoomRouter

if TYPE_CHECKING:
    from pathlib import Path


class RecordingConnection:
    """In-memory Connection that records every event it is sent.

    Set ``fail`` to make every send raise TransportError, or ``delay`` to
    make sends slow (for timeout tests).
    """

    def __init__(self, connection_id: str | None = None, fail: bool = False, delay: float = 0.0):
        self.connection_id = connection_id or str(make_uuid7())
        self.fail = fail
        self.delay = delay
        self.frames: list[tuple[str, Any]] = []

    async def send(self, event: str, data: Any) -> None:
        if self.fail:
            raise TransportError(f"{self.connection_id} is broken")
        if self.delay:
            await asyncio.sleep(self.delay)
        self.frames.append((event, data))

    def events(self, name: str) -> list[Any]:
        """Payloads of every recorded event called ``name``."""
        return [data for event, data in self.frames if event == name]

    def names(self) -> list[str]:
        return [event for event, _ in self.frames]

    def clear(self) -> None:
        self.frames.clear()

    def __repr__(self) -> str:
        return f"RecordingConnection({self.connection_id!r}, {len(self.frames)} frames)"


@dataclass
class ChatHub:
    """The chat core without a transport."""

    registry: PresenceRegistry
    router: RoomRouter
    pipeline: MessagePipeline

    def connect(self, connection_id: str | None = None, **kwargs: Any) -> RecordingConnection:
        """Attach a new RecordingConnection to the router."""
        connection = RecordingConnection(connection_id, **kwargs)
        self.router.attach(connection)
        return connection


@pytest.fixture
def chat_settings() -> ServerSettings:
    """Settings for tests: no auth, one-second send timeout."""
    return ServerSettings(no_auth=True, send_timeout=1.0)


@pytest.fixture
def chat_hub(chat_settings: ServerSettings) -> ChatHub:
    """Registry, router and pipeline wired together.

    Example:
        @pytest.mark.asyncio
        async def test_send(chat_hub):
            alice = chat_hub.connect()
            await chat_hub.pipeline.join(alice.connection_id, UserJoinData(name="alice", room="general"))
            ...
    """
    registry = PresenceRegistry()
    router = RoomRouter(registry, send_timeout=chat_settings.send_timeout)
    return ChatHub(registry, router, MessagePipeline(registry, router, chat_settings))


@pytest.fixture
def chat_app(chat_settings: ServerSettings, tmp_path: "Path") -> Generator[TestClient, None, None]:
    """TestClient for the full app, with uploads under tmp_path.

    All WebSocket sessions opened from one TestClient share its event
    loop, so open them from this client:

        with chat_app.websocket_connect("/chat") as ws:
            ws.send_json({"event": "user_join", "data": {"name": "alice", "room": "general"}})
    """
    from .api import app

    set_settings(replace(chat_settings, upload_dir=str(tmp_path / "uploads")))
    try:
        with TestClient(app) as client:
            yield client
    finally:
        reset_settings()
