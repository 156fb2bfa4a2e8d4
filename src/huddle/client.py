"""HTTP client for a huddle server, plus a chat session that drives a timeline.

Usage:
    client = ChatClient("http://localhost:8000")
    client.login("alice@example.com", "S3cret!pass")

    page = client.fetch_messages("general")
    hits = client.search("general", "lunch")

    # Wire a session to any WebSocket library: feed it incoming frames,
    # give it a callable that sends outgoing ones.
    session = ChatSession(client, room="general", name="alice", emit=ws.send_json)
    session.start()
    ws.send_json(session.join_frame())
    session.send("hi")
    for frame in ws:
        session.handle_event(frame["event"], frame["data"])
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from .errors import (
    AuthError,
    ChatError,
    NotFoundError,
    PermissionDenied,
    StoreUnavailable,
    TransportError,
    ValidationError,
)
from .timeline import MessageTimeline, TimelineEntry, UnreadTracker

logger = logging.getLogger(__name__)

_ERRORS_BY_CODE: dict[str, type[ChatError]] = {
    cls.code: cls
    for cls in (ValidationError, NotFoundError, StoreUnavailable, TransportError, AuthError, PermissionDenied)
}


def error_from_response(response: httpx.Response) -> ChatError:
    """Rebuild the server's ChatError from an error response."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    message = body.get("error") if isinstance(body, dict) else None
    code = body.get("code") if isinstance(body, dict) else None

    error_cls = _ERRORS_BY_CODE.get(code or "")
    if error_cls is None:
        error = ChatError(message or f"API error {response.status_code}: {response.text}")
        error.status_code = response.status_code
        return error
    return error_cls(message or response.reason_phrase)


class ChatClient:
    """Thin wrapper over the REST API.

    Pass ``client`` to reuse an existing httpx.Client (for example a
    FastAPI TestClient); paths are then resolved against its base URL.
    """

    def __init__(
        self,
        url: str = "",
        token: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ):
        self._url = url.rstrip("/")
        self.token = token
        self.user: dict[str, Any] | None = None
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "ChatClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        request_headers = {**self._headers(), **(headers or {})}
        params = {k: v for k, v in (params or {}).items() if v is not None}

        try:
            response = self._client.request(
                method,
                f"{self._url}{path}",
                json=json,
                params=params or None,
                content=content,
                headers=request_headers,
            )
        except httpx.TransportError as e:
            raise TransportError(f"Request to {path} failed: {e}") from e

        if response.status_code >= 400:
            raise error_from_response(response)
        if not response.content:
            return None
        return response.json()

    # --- Accounts ---

    def _authenticate(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        data = self._request("POST", path, json=body)
        self.token = data["token"]
        self.user = data["user"]
        return data["user"]

    def register(
        self,
        email: str,
        password: str,
        avatar: str | None = None,
        name: str | None = None,
    ) -> dict[str, Any]:
        """Create an account; the client keeps the returned token."""
        return self._authenticate(
            "/api/register", {"email": email, "password": password, "avatar": avatar, "name": name}
        )

    def login(self, email: str, password: str) -> dict[str, Any]:
        """Log in; the client keeps the returned token."""
        return self._authenticate("/api/login", {"email": email, "password": password})

    # --- Messages ---

    def fetch_messages(
        self,
        room: str,
        before: str | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """Get a history page: {messages, count, hasMore}."""
        return self._request(
            "GET", "/api/messages", params={"room": room, "before": before, "limit": limit}
        )

    def search(self, room: str, query: str, limit: int | None = None) -> dict[str, Any]:
        return self._request("GET", "/api/search", params={"room": room, "q": query, "limit": limit})

    def mark_read(self, room: str, reader: str | None = None) -> int:
        """Mark a room as read. Returns how many messages changed."""
        data = self._request("POST", "/api/messages/read", json={"room": room, "reader": reader})
        return data["updated"]

    def edit_message(self, message_id: str, message: str, username: str | None = None) -> dict[str, Any]:
        data = self._request(
            "PUT", f"/api/messages/{message_id}", json={"message": message, "username": username}
        )
        return data["message"]

    def delete_message(self, message_id: str, username: str | None = None) -> bool:
        data = self._request("DELETE", f"/api/messages/{message_id}", params={"username": username})
        return data["success"]

    def upload(self, filename: str, content: bytes, content_type: str | None = None) -> dict[str, Any]:
        """Upload an attachment. Returns {url, name, type, size}."""
        headers = {"X-Filename": filename}
        if content_type:
            headers["Content-Type"] = content_type
        return self._request("POST", "/api/upload", content=content, headers=headers)

    def room_users(self, room: str) -> list[dict[str, Any]]:
        return self._request("GET", f"/api/rooms/{room}/users")["users"]


class ChatSession:
    """One room as seen by one client: timeline, unread counter, presence.

    Transport-agnostic: outgoing frames go through ``emit``; incoming
    frames are passed to ``handle_event``.
    """

    def __init__(
        self,
        client: ChatClient,
        room: str,
        name: str,
        emit: Callable[[dict[str, Any]], Any],
        avatar: str | None = None,
        page_size: int = 20,
        ack_timeout: float = 15.0,
        clock: Callable[[], float] | None = None,
    ):
        self.client = client
        self.room = room
        self.name = name
        self.avatar = avatar
        self._emit = emit
        timeline_kwargs: dict[str, Any] = {"clock": clock} if clock else {}
        self.timeline = MessageTimeline(
            page_size=page_size, ack_timeout=ack_timeout, sender=name, avatar=avatar, **timeline_kwargs
        )
        self.unread = UnreadTracker(me=name)
        self.members: list[dict[str, Any]] = []
        self.typing: set[str] = set()
        self.errors: list[dict[str, Any]] = []

    def join_frame(self) -> dict[str, Any]:
        return {"event": "user_join", "data": {"name": self.name, "room": self.room, "avatar": self.avatar}}

    def start(self) -> None:
        """Load the most recent history page."""
        page = self.client.fetch_messages(self.room, limit=self.timeline.page_size)
        self.timeline.load_initial(page["messages"], has_more=page.get("hasMore"))

    def send(self, message: str = "", **kwargs: Any) -> TimelineEntry:
        """Show a message optimistically and emit it."""
        if kwargs.get("recipient") is None:
            kwargs.setdefault("room", self.room)
        entry = self.timeline.send(message, **kwargs)
        self._emit(entry.frame())
        return entry

    def retry(self, client_id: str) -> TimelineEntry:
        entry = self.timeline.retry(client_id)
        self._emit(entry.frame())
        return entry

    def set_typing(self, is_typing: bool) -> None:
        self._emit(
            {"event": "typing", "data": {"username": self.name, "room": self.room, "isTyping": is_typing}}
        )

    def react(self, message_id: str, reaction: str) -> None:
        self._emit(
            {
                "event": "message_reaction",
                "data": {"msgId": message_id, "reaction": reaction, "user": self.name, "room": self.room},
            }
        )

    def load_older(self) -> list[dict[str, Any]]:
        """Prepend the next older page. Returns [] once history is exhausted."""
        if not self.timeline.has_more:
            return []
        before = self.timeline.oldest_timestamp()
        if before is None:
            return []
        page = self.client.fetch_messages(self.room, before=before, limit=self.timeline.page_size)
        self.timeline.prepend_older(page["messages"], has_more=page.get("hasMore"))
        return page["messages"]

    def focus(self) -> bool:
        """Surface regained focus: reset unread and send a read receipt."""
        if not self.unread.focus():
            return False
        self.client.mark_read(self.room, reader=self.name)
        return True

    def blur(self) -> None:
        self.unread.blur()

    def handle_event(self, event: str, data: Any) -> None:
        """Apply one server frame."""
        if event == "receive_message":
            if self.timeline.apply_message(data) is not None:
                self.unread.on_message(data)
        elif event == "message_ack":
            self.timeline.apply_ack(data)
        elif event == "message_error":
            self.errors.append(data)
            self.timeline.apply_error(data)
        elif event == "message_reaction":
            self.timeline.apply_reaction(data)
        elif event == "message_edited":
            self.timeline.apply_edit(data)
        elif event == "message_deleted":
            self.timeline.apply_delete(data)
        elif event == "messages_read":
            self.timeline.apply_read(data)
        elif event == "active_users":
            self.members = list(data or [])
        elif event == "typing":
            username = (data or {}).get("username")
            if username and username != self.name:
                if data.get("isTyping"):
                    self.typing.add(username)
                else:
                    self.typing.discard(username)
        elif event == "user_event":
            logger.debug("%s %s %s", data.get("user"), data.get("type"), self.room)
        else:
            logger.debug("Ignoring unknown event %r", event)
