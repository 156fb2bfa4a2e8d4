"""End-to-end tests for the /chat WebSocket."""

import pytest
from starlette.websockets import WebSocketDisconnect

from huddle import db
from huddle.api import WS_UNAUTHORIZED
from huddle.config import ServerSettings


def receive(ws, count=1):
    return [ws.receive_json() for _ in range(count)]


def join(ws, name, room="general"):
    ws.send_json({"event": "user_join", "data": {"name": name, "room": room}})


def send(ws, text, client_id=None, **extra):
    ws.send_json({"event": "send_message", "data": {"message": text, "clientId": client_id, **extra}})


class TestPublicMessages:
    def test_message_reaches_room_then_ack(self, chat_app):
        with chat_app.websocket_connect("/chat") as alice, chat_app.websocket_connect("/chat") as bob:
            join(alice, "alice")
            assert [f["event"] for f in receive(alice, 2)] == ["user_event", "active_users"]

            join(bob, "bob")
            user_event, active = receive(alice, 2)
            assert user_event["data"]["type"] == "join"
            assert user_event["data"]["user"] == "bob"
            assert [m["name"] for m in active["data"]] == ["alice", "bob"]
            receive(bob, 2)

            send(alice, "hello", client_id="c1")

            echo, ack = receive(alice, 2)
            assert echo["event"] == "receive_message"
            assert echo["data"]["message"] == "hello"
            assert echo["data"]["clientId"] == "c1"
            assert echo["data"]["readBy"] == ["alice"]
            assert ack == {
                "event": "message_ack",
                "data": {
                    "clientId": "c1",
                    "messageId": echo["data"]["id"],
                    "timestamp": echo["data"]["timestamp"],
                    "duplicate": False,
                },
            }

            (received,) = receive(bob)
            assert received == echo

        assert db.count_messages("general") == 1

    def test_resend_with_same_client_id(self, chat_app):
        with chat_app.websocket_connect("/chat") as alice:
            join(alice, "alice")
            receive(alice, 2)

            send(alice, "hello", client_id="c1")
            echo, first_ack = receive(alice, 2)

            send(alice, "hello", client_id="c1")
            (second_ack,) = receive(alice)

        assert second_ack["event"] == "message_ack"
        assert second_ack["data"]["messageId"] == first_ack["data"]["messageId"]
        assert second_ack["data"]["duplicate"] is True
        assert db.count_messages("general") == 1

    def test_other_rooms_do_not_see_messages(self, chat_app):
        with chat_app.websocket_connect("/chat") as alice, chat_app.websocket_connect("/chat") as carol:
            join(alice, "alice", "general")
            receive(alice, 2)
            join(carol, "carol", "random")
            receive(carol, 2)

            send(alice, "general only")
            receive(alice, 2)
            send(carol, "random only")

            received, _ack = receive(carol, 2)

        assert received["data"]["message"] == "random only"
        assert received["data"]["room"] == "random"

    def test_empty_message_is_rejected_to_sender_only(self, chat_app):
        with chat_app.websocket_connect("/chat") as alice:
            join(alice, "alice")
            receive(alice, 2)

            send(alice, "   ", client_id="c1")
            (error,) = receive(alice)

        assert error["event"] == "message_error"
        assert error["data"]["code"] == "invalid"
        assert error["data"]["clientId"] == "c1"
        assert db.count_messages() == 0


class TestPrivateMessages:
    def test_private_message_reaches_only_the_pair(self, chat_app):
        with (
            chat_app.websocket_connect("/chat") as alice,
            chat_app.websocket_connect("/chat") as bob,
            chat_app.websocket_connect("/chat") as carol,
        ):
            join(alice, "alice")
            receive(alice, 2)
            join(bob, "bob")
            receive(alice, 2)
            receive(bob, 2)
            join(carol, "carol")
            receive(alice, 2)
            receive(bob, 2)
            receive(carol, 2)

            alice.send_json(
                {"event": "private_message", "data": {"recipient": "carol", "message": "psst", "clientId": "p1"}}
            )
            echo, ack = receive(alice, 2)
            (delivered,) = receive(carol)

            assert echo["data"]["private"] is True
            assert echo["data"]["recipient"] == "carol"
            assert delivered == echo
            assert ack["data"]["clientId"] == "p1"

            # bob's next frame is the public message, not the private one
            send(alice, "public")
            (next_for_bob,) = receive(bob)
            assert next_for_bob["data"]["message"] == "public"

        history = chat_app.get("/api/messages", params={"room": "general"}).json()
        assert [m["message"] for m in history["messages"]] == ["public"]


class TestReactionsAndTyping:
    def test_reaction_broadcast(self, chat_app):
        with chat_app.websocket_connect("/chat") as alice, chat_app.websocket_connect("/chat") as bob:
            join(alice, "alice")
            receive(alice, 2)
            join(bob, "bob")
            receive(alice, 2)
            receive(bob, 2)

            send(alice, "nice")
            echo, _ = receive(alice, 2)
            receive(bob)

            bob.send_json(
                {"event": "message_reaction", "data": {"msgId": echo["data"]["id"], "reaction": "👍"}}
            )
            (for_alice,) = receive(alice)
            (for_bob,) = receive(bob)

        assert for_alice == for_bob
        assert for_alice["event"] == "message_reaction"
        assert for_alice["data"]["msgId"] == echo["data"]["id"]
        assert for_alice["data"]["user"] == "bob"
        assert for_alice["data"]["reaction"] == "👍"

    def test_reaction_on_deleted_message(self, chat_app):
        with chat_app.websocket_connect("/chat") as alice, chat_app.websocket_connect("/chat") as bob:
            join(alice, "alice")
            receive(alice, 2)
            join(bob, "bob")
            receive(alice, 2)
            receive(bob, 2)

            send(alice, "oops")
            echo, _ = receive(alice, 2)
            receive(bob)
            message_id = echo["data"]["id"]

            response = chat_app.delete(f"/api/messages/{message_id}", params={"username": "alice"})
            assert response.status_code == 200
            assert receive(alice) == [{"event": "message_deleted", "data": {"msgId": message_id}}]
            assert receive(bob) == [{"event": "message_deleted", "data": {"msgId": message_id}}]

            bob.send_json({"event": "message_reaction", "data": {"msgId": message_id, "reaction": "👍"}})
            (error,) = receive(bob)

        assert error["event"] == "message_error"
        assert error["data"]["code"] == "not_found"

    def test_typing_skips_sender(self, chat_app):
        with chat_app.websocket_connect("/chat") as alice, chat_app.websocket_connect("/chat") as bob:
            join(alice, "alice")
            receive(alice, 2)
            join(bob, "bob")
            receive(alice, 2)
            receive(bob, 2)

            bob.send_json({"event": "typing", "data": {"isTyping": True}})
            (typing,) = receive(alice)

            # bob's next frame is alice's message, not his own typing event
            send(alice, "hi")
            (next_for_bob,) = receive(bob)

        assert typing["event"] == "typing"
        assert typing["data"]["username"] == "bob"
        assert typing["data"]["isTyping"] is True
        assert next_for_bob["event"] == "receive_message"


class TestConnectionLifecycle:
    def test_disconnect_announces_leave(self, chat_app):
        with chat_app.websocket_connect("/chat") as alice:
            join(alice, "alice")
            receive(alice, 2)

            with chat_app.websocket_connect("/chat") as bob:
                join(bob, "bob")
                receive(alice, 2)
                receive(bob, 2)

            user_event, active = receive(alice, 2)

        assert user_event["data"]["type"] == "leave"
        assert user_event["data"]["user"] == "bob"
        assert [m["name"] for m in active["data"]] == ["alice"]

    def test_bad_frames_keep_the_connection_open(self, chat_app):
        with chat_app.websocket_connect("/chat") as alice:
            alice.send_text("not json")
            (bad_json,) = receive(alice)

            alice.send_json({"event": "launch_rockets", "data": {}})
            (unknown,) = receive(alice)

            join(alice, "alice")
            (user_event, _) = receive(alice, 2)

        assert bad_json["event"] == "message_error"
        assert bad_json["data"]["code"] == "invalid"
        assert "launch_rockets" in unknown["data"]["error"]
        assert user_event["data"]["user"] == "alice"


class TestAuthenticatedSocket:
    @pytest.fixture
    def chat_settings(self):
        return ServerSettings(no_auth=False, send_timeout=1.0)

    def test_invalid_token_is_refused(self, chat_app):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with chat_app.websocket_connect("/chat?token=bogus") as ws:
                ws.receive_json()

        assert exc_info.value.code == WS_UNAUTHORIZED

    def test_token_identity_overrides_claimed_name(self, chat_app):
        token = chat_app.post(
            "/api/register",
            json={"email": "alice@example.com", "password": "Passw0rd!", "name": "alice"},
        ).json()["token"]

        with chat_app.websocket_connect(f"/chat?token={token}") as ws:
            join(ws, "mallory")
            user_event, active = receive(ws, 2)

        assert user_event["data"]["user"] == "alice"
        assert [m["name"] for m in active["data"]] == ["alice"]
