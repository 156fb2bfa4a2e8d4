"""Tests for the HTTP client and the chat session."""

import httpx
import pytest

from huddle import db
from huddle.client import ChatClient, ChatSession, error_from_response
from huddle.errors import AuthError, ChatError, NotFoundError, PermissionDenied, TransportError, ValidationError
from huddle.timeline import DeliveryState

STRONG = "Passw0rd!"


@pytest.fixture
def client(chat_app):
    return ChatClient(client=chat_app)


def seed(count, room="general", sender="bob"):
    return [db.insert_message(room, sender, body=f"message {i}")[0] for i in range(count)]


class TestChatClient:
    def test_register_keeps_token(self, client):
        user = client.register("alice@example.com", STRONG, name="alice")

        assert user["name"] == "alice"
        assert client.token is not None
        assert client.user == user

    def test_login(self, client):
        client.register("alice@example.com", STRONG)
        client.token = None

        client.login("alice@example.com", STRONG)

        assert client.token is not None

    def test_errors_map_to_chat_errors(self, client):
        with pytest.raises(AuthError):
            client.login("nobody@example.com", STRONG)
        with pytest.raises(ValidationError):
            client.register("alice@example.com", "weak")
        with pytest.raises(NotFoundError):
            client.delete_message("missing", username="alice")

    def test_history_and_search(self, client):
        seed(3)

        page = client.fetch_messages("general", limit=2)
        assert page["count"] == 2
        assert page["hasMore"] is True

        older = client.fetch_messages("general", before=page["messages"][0]["timestamp"])
        assert [m["message"] for m in older["messages"]] == ["message 0"]

        assert client.search("general", "MESSAGE 2")["count"] == 1

    def test_edit_delete_and_read(self, client):
        (message,) = seed(1)

        with pytest.raises(PermissionDenied):
            client.edit_message(message["id"], "nope", username="alice")

        edited = client.edit_message(message["id"], "better", username="bob")
        assert edited["message"] == "better"

        assert client.mark_read("general", reader="alice") == 1
        assert client.delete_message(message["id"], username="bob") is True

    def test_upload(self, client):
        info = client.upload("photo.png", b"\x89PNG....", content_type="image/png")

        assert info["type"] == "image/png"
        assert info["url"].endswith(".png")

    def test_room_users_empty(self, client):
        assert client.room_users("general") == []

    def test_transport_failure(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = ChatClient("http://chat.invalid", client=httpx.Client(transport=httpx.MockTransport(refuse)))

        with pytest.raises(TransportError):
            client.fetch_messages("general")

    def test_unknown_error_body(self):
        response = httpx.Response(418, json={"detail": "teapot"})

        error = error_from_response(response)

        assert type(error) is ChatError
        assert error.status_code == 418


class TestChatSession:
    def test_history_paging(self, client):
        seed(25)
        session = ChatSession(client, room="general", name="alice", emit=lambda frame: None)

        session.start()
        assert len(session.timeline) == 20
        assert session.timeline.has_more is True

        older = session.load_older()
        assert len(older) == 5
        assert session.timeline.has_more is False
        assert [m["message"] for m in session.timeline.messages()] == [f"message {i}" for i in range(25)]

        assert session.load_older() == []

    def test_send_emits_frame_and_reconciles(self, client):
        sent = []
        session = ChatSession(client, room="general", name="alice", emit=sent.append)

        entry = session.send("hi", client_id="c1")

        assert sent == [{"event": "send_message", "data": {"message": "hi", "clientId": "c1", "room": "general"}}]
        assert entry.state is DeliveryState.PENDING

        echo = {
            "id": "m1",
            "room": "general",
            "sender": "alice",
            "message": "hi",
            "timestamp": "2024-01-01T00:00:00+00:00",
            "clientId": "c1",
            "readBy": ["alice"],
            "reactions": [],
        }
        session.handle_event("receive_message", echo)
        session.handle_event("message_ack", {"clientId": "c1", "messageId": "m1", "timestamp": echo["timestamp"]})

        (shown,) = session.timeline.messages()
        assert shown["status"] == "delivered"

    def test_error_then_retry(self, client):
        sent = []
        session = ChatSession(client, room="general", name="alice", emit=sent.append)
        session.send("hi", client_id="c1")

        session.handle_event("message_error", {"error": "Message store unavailable", "code": "store_unavailable", "clientId": "c1"})
        assert session.errors[0]["code"] == "store_unavailable"
        assert session.timeline.get("c1").state is DeliveryState.FAILED

        session.retry("c1")
        assert sent[-1] == sent[0]

    def test_presence_and_typing(self, client):
        session = ChatSession(client, room="general", name="alice", emit=lambda frame: None)

        session.handle_event("active_users", [{"name": "alice"}, {"name": "bob"}])
        session.handle_event("typing", {"username": "bob", "isTyping": True})
        session.handle_event("typing", {"username": "alice", "isTyping": True})
        assert [m["name"] for m in session.members] == ["alice", "bob"]
        assert session.typing == {"bob"}

        session.handle_event("typing", {"username": "bob", "isTyping": False})
        session.handle_event("something_new", {})
        assert session.typing == set()

    def test_focus_sends_read_receipt(self, client):
        (message,) = seed(1)
        session = ChatSession(client, room="general", name="alice", emit=lambda frame: None)
        session.start()

        assert session.focus() is False

        session.blur()
        session.handle_event("receive_message", {**session.timeline.messages()[0], "id": "m2", "timestamp": "9999"})
        assert session.unread.count == 1

        assert session.focus() is True
        assert session.unread.count == 0
        assert db.get_read_by(message["id"]) == ["bob", "alice"]

    def test_over_websocket(self, client, chat_app):
        with chat_app.websocket_connect("/chat") as ws:
            session = ChatSession(client, room="general", name="alice", emit=ws.send_json)
            session.start()
            ws.send_json(session.join_frame())
            for _ in range(2):
                frame = ws.receive_json()
                session.handle_event(frame["event"], frame["data"])

            session.send("hello")
            for _ in range(2):
                frame = ws.receive_json()
                session.handle_event(frame["event"], frame["data"])

        assert [m["name"] for m in session.members] == ["alice"]
        (shown,) = session.timeline.messages()
        assert shown["message"] == "hello"
        assert shown["status"] == "delivered"
