"""Tests for the support chat WebSocket channel.

Protocol recap:
1. Connect with ?token=<jwt>; the server authenticates before accepting and
   then sends {type: "connected", userId, role}
2. {type: "join-chat"} -> chat-history (unicast) then ack {success, roomId}
3. {type: "send-message"} -> new-message (room broadcast) then ack
"""
from datetime import timedelta

import pytest
from fastapi import WebSocketDisconnect

from chatdesk.chat.schemas import Message, UserRole

from conftest import run


def connect(client, token):
    return client.websocket_connect(f"/ws/chat?token={token}")


def receive_connected(ws):
    """Helper to receive and validate the post-handshake greeting."""
    connected = ws.receive_json()
    assert connected["type"] == "connected"
    return connected


def request(ws, payload):
    """Send one event and read frames up to its ack.

    Returns:
        Tuple of (ack, pushes) where pushes are the non-ack frames that
        arrived first (chat-history, new-message).
    """
    ws.send_json(payload)
    pushes = []
    while True:
        frame = ws.receive_json()
        if frame["type"] == "ack":
            return frame, pushes
        pushes.append(frame)


def join(ws, room_id=None):
    payload = {"type": "join-chat"}
    if room_id is not None:
        payload["roomId"] = room_id
    ack, pushes = request(ws, payload)
    history = next((p for p in pushes if p["type"] == "chat-history"), None)
    return ack, history


def send(ws, room_id, content, **extra):
    return request(ws, {"type": "send-message", "roomId": room_id, "content": content, **extra})


class TestSocketAuthentication:
    """The handshake is a gate: refused sockets never see chat events."""

    def test_connects_with_valid_token(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            connected = receive_connected(ws)
            assert connected["userId"] == "customer-1"
            assert connected["role"] == "customer"

    def test_bearer_header_is_accepted(self, client, token_for):
        headers = {"Authorization": f"Bearer {token_for('agent-1')}"}
        with client.websocket_connect("/ws/chat", headers=headers) as ws:
            assert receive_connected(ws)["role"] == "agent"

    def test_admin_role_connects_as_agent(self, client, token_for):
        with connect(client, token_for("agent-2")) as ws:
            assert receive_connected(ws)["role"] == "agent"

    def test_rejects_connection_without_token(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/chat"):
                pass
        assert exc_info.value.code == 1008
        assert "Authentication" in exc_info.value.reason

    def test_rejects_invalid_token(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with connect(client, "invalid-token"):
                pass
        assert "Invalid" in exc_info.value.reason

    def test_rejects_expired_token(self, client, tokens):
        expired = tokens.issue("customer-1", "customer", expires_in=timedelta(minutes=-5))
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with connect(client, expired):
                pass
        assert "expired" in exc_info.value.reason

    def test_rejects_inactive_user(self, client, token_for, gateway):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with connect(client, token_for("inactive-1")):
                pass
        assert "inactive" in exc_info.value.reason
        assert not gateway.registry.is_online("inactive-1")

    def test_rejects_unknown_user(self, client, tokens):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with connect(client, tokens.issue("ghost", "customer")):
                pass
        assert "not found" in exc_info.value.reason

    def test_rejects_role_without_chat_access(self, client, token_for):
        with pytest.raises(WebSocketDisconnect):
            with connect(client, token_for("vendor-1")):
                pass


class TestJoinChat:

    def test_customer_creates_and_joins_room(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            ack, history = join(ws)

            assert ack["success"] is True
            assert ack["event"] == "join-chat"
            assert history == {"type": "chat-history", "roomId": ack["roomId"], "messages": []}

    def test_customer_rejoins_existing_room(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            first, _ = join(ws)

        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            second, _ = join(ws)

        assert second["roomId"] == first["roomId"]

    def test_customer_room_id_is_ignored(self, client, token_for):
        with connect(client, token_for("customer-2")) as ws:
            receive_connected(ws)
            other, _ = join(ws)

        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            ack, _ = join(ws, other["roomId"])
            assert ack["success"] is True
            assert ack["roomId"] != other["roomId"]

    def test_agent_joins_customer_room_by_id(self, client, token_for, store):
        with connect(client, token_for("customer-1")) as customer:
            receive_connected(customer)
            room_id = join(customer)[0]["roomId"]

            with connect(client, token_for("agent-1")) as agent:
                receive_connected(agent)
                ack, history = join(agent, room_id)

                assert ack["success"] is True
                assert ack["roomId"] == room_id
                assert history["roomId"] == room_id

        assert run(store.get_room(room_id)).agentId == "agent-1"

    def test_agent_join_without_room_id_fails(self, client, token_for, gateway):
        with connect(client, token_for("agent-1")) as ws:
            receive_connected(ws)
            ack, history = join(ws)

            assert ack["success"] is False
            assert ack["error"]
            assert history is None

    def test_agent_join_unknown_room_fails(self, client, token_for, gateway):
        with connect(client, token_for("agent-1")) as ws:
            receive_connected(ws)
            ack, history = join(ws, "no-such-room")

            assert ack["success"] is False
            assert history is None
            assert gateway.group_size("no-such-room") == 0

    def test_request_id_is_echoed(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            ack, _ = request(ws, {"type": "join-chat", "requestId": "req-7"})
            assert ack["requestId"] == "req-7"


class TestSendMessage:

    def test_send_and_receive_text_message(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            room_id = join(ws)[0]["roomId"]

            ack, pushes = send(ws, room_id, "  Hello from customer  ")

            assert ack["success"] is True
            assert ack["message"]["content"] == "Hello from customer"
            assert ack["message"]["senderRole"] == "customer"
            assert ack["message"]["status"] == "sent"
            # Sender renders its own message from the broadcast
            assert pushes == [{"type": "new-message", "message": ack["message"]}]

    def test_message_reaches_every_room_participant(self, client, token_for):
        with connect(client, token_for("customer-1")) as customer, \
             connect(client, token_for("agent-1")) as agent:
            receive_connected(customer)
            receive_connected(agent)
            room_id = join(customer)[0]["roomId"]
            join(agent, room_id)

            ack, _ = send(agent, room_id, "How can I help?")
            broadcast = customer.receive_json()

            assert broadcast["type"] == "new-message"
            assert broadcast["message"] == ack["message"]
            assert broadcast["message"]["senderRole"] == "agent"

    def test_no_cross_room_leakage(self, client, token_for):
        with connect(client, token_for("customer-1")) as first, \
             connect(client, token_for("customer-2")) as second:
            receive_connected(first)
            receive_connected(second)
            room_1 = join(first)[0]["roomId"]
            room_2 = join(second)[0]["roomId"]

            send(first, room_1, "for room one")
            ack, pushes = send(second, room_2, "for room two")

            # The only frames room two ever saw are its own
            assert [p["message"]["content"] for p in pushes] == ["for room two"]

    def test_saves_and_returns_attachments(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            room_id = join(ws)[0]["roomId"]

            ack, pushes = send(
                ws, room_id, "Image message",
                attachments=[{"type": "image", "url": "https://example.com/image.jpg"}],
            )

            assert ack["success"] is True
            assert ack["message"]["attachments"] == [
                {"type": "image", "url": "https://example.com/image.jpg"}
            ]
            assert pushes[0]["message"]["attachments"] == ack["message"]["attachments"]

    def test_insecure_attachment_is_dropped_not_rejected(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            room_id = join(ws)[0]["roomId"]

            ack, pushes = send(
                ws, room_id, "Invalid attachment",
                attachments=[{"type": "image", "url": "http://insecure.com/image.jpg"}],
            )

            assert ack["success"] is True
            assert ack["message"]["attachments"] == []
            assert pushes[0]["message"]["attachments"] == []

    def test_rejects_empty_message(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            room_id = join(ws)[0]["roomId"]

            ack, pushes = send(ws, room_id, "   ")

            assert ack["success"] is False
            assert "required" in ack["error"]
            assert pushes == []

    def test_rejects_too_long_message(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            room_id = join(ws)[0]["roomId"]

            ack, _ = send(ws, room_id, "x" * 2001)

            assert ack["success"] is False
            assert "too long" in ack["error"]

    def test_rejects_unknown_room(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            ack, _ = send(ws, "no-such-room", "Hello")

            assert ack == {
                "type": "ack",
                "event": "send-message",
                "requestId": None,
                "success": False,
                "error": "Room not found",
            }

    def test_customer_cannot_send_to_foreign_room(self, client, token_for, store):
        with connect(client, token_for("customer-1")) as owner, \
             connect(client, token_for("customer-2")) as intruder:
            receive_connected(owner)
            receive_connected(intruder)
            room_id = join(owner)[0]["roomId"]

            ack, _ = send(intruder, room_id, "Let me in")

            assert ack["success"] is False
            assert "Access denied" in ack["error"]
        assert run(store.recent_messages(room_id)) == []

    def test_connection_survives_failed_requests(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            room_id = join(ws)[0]["roomId"]

            send(ws, room_id, "")
            ws.send_text("not json")
            assert ws.receive_json()["type"] == "error"
            ws.send_json({"type": "bogus"})
            assert "Unknown event" in ws.receive_json()["error"]

            ack, _ = send(ws, room_id, "Still here")
            assert ack["success"] is True


class TestFirstResponderAssignment:

    def test_second_agent_join_keeps_first_assignee(self, client, token_for, store):
        with connect(client, token_for("customer-1")) as customer:
            receive_connected(customer)
            room_id = join(customer)[0]["roomId"]

        for agent_id in ("agent-1", "agent-2"):
            with connect(client, token_for(agent_id)) as agent:
                receive_connected(agent)
                assert join(agent, room_id)[0]["success"] is True

        assert run(store.get_room(room_id)).agentId == "agent-1"

    def test_first_agent_to_send_becomes_assignee(self, client, token_for, store):
        with connect(client, token_for("customer-1")) as customer:
            receive_connected(customer)
            room_id = join(customer)[0]["roomId"]

        with connect(client, token_for("agent-2")) as first, \
             connect(client, token_for("agent-1")) as second:
            receive_connected(first)
            receive_connected(second)

            ack, _ = send(first, room_id, "I've got this one")
            assert ack["success"] is True

            ack, _ = send(second, room_id, "Me too")
            assert ack["success"] is False
            assert "Access denied" in ack["error"]

        assert run(store.get_room(room_id)).agentId == "agent-2"
        assert [m.content for m in run(store.recent_messages(room_id))] == ["I've got this one"]


class TestChatHistory:

    def test_history_is_replayed_in_creation_order(self, client, token_for, store):
        room = run(store.create_room("customer-1"))
        for text in ("Message 1", "Message 2", "Message 3"):
            run(store.insert_message(Message(
                roomId=room.id, senderId="customer-1",
                senderRole=UserRole.CUSTOMER, content=text,
            )))

        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            ack, history = join(ws)

        assert ack["roomId"] == room.id
        contents = [m["content"] for m in history["messages"]]
        assert contents == ["Message 1", "Message 2", "Message 3"]

    def test_history_is_limited_to_recent_messages(self, client, token_for, store):
        room = run(store.create_room("customer-1"))
        for i in range(55):
            run(store.insert_message(Message(
                roomId=room.id, senderId="customer-1",
                senderRole=UserRole.CUSTOMER, content=f"Message {i}",
            )))

        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            _, history = join(ws)

        messages = history["messages"]
        assert len(messages) == 50
        assert messages[0]["content"] == "Message 5"
        assert messages[-1]["content"] == "Message 54"


class TestMessageRead:

    def test_marks_only_messages_from_others(self, client, token_for, store):
        with connect(client, token_for("customer-1")) as customer, \
             connect(client, token_for("agent-1")) as agent:
            receive_connected(customer)
            receive_connected(agent)
            room_id = join(customer)[0]["roomId"]
            join(agent, room_id)

            from_customer = send(customer, room_id, "Where is my order?")[0]["message"]
            agent.receive_json()  # broadcast of the customer's message
            from_agent = send(agent, room_id, "Checking now")[0]["message"]

            agent.send_json({
                "type": "message-read",
                "roomId": room_id,
                "messageIds": [from_customer["id"], from_agent["id"]],
            })
            # Frames on one socket are handled in order, so this ack means the
            # receipt above has been processed.
            request(agent, {"type": "get-rooms"})

        read = run(store.get_message(from_customer["id"]))
        own = run(store.get_message(from_agent["id"]))
        assert read.status.value == "read"
        assert read.readAt is not None
        assert own.status.value == "sent"
        assert own.readAt is None


class TestGetRooms:

    def test_agent_lists_open_rooms_with_people(self, client, token_for):
        with connect(client, token_for("customer-1")) as customer:
            receive_connected(customer)
            room_id = join(customer)[0]["roomId"]
            send(customer, room_id, "Hello?")

        with connect(client, token_for("customer-2")) as other:
            receive_connected(other)
            quiet_room = join(other)[0]["roomId"]

        with connect(client, token_for("agent-1")) as agent:
            receive_connected(agent)
            join(agent, room_id)
            ack, _ = request(agent, {"type": "get-rooms"})

        assert ack["success"] is True
        rooms = ack["rooms"]
        assert [r["id"] for r in rooms] == [room_id, quiet_room]
        assert rooms[0]["customer"]["name"] == "Test Customer"
        assert rooms[0]["agent"]["name"] == "Test Agent"
        assert rooms[1]["agent"] is None

    def test_customer_cannot_list_rooms(self, client, token_for):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            ack, _ = request(ws, {"type": "get-rooms"})

        assert ack["success"] is False
        assert "Access denied" in ack["error"]


class TestEndToEnd:

    def test_customer_conversation_and_presence(self, client, token_for, gateway):
        with connect(client, token_for("customer-1")) as ws:
            receive_connected(ws)
            assert gateway.registry.is_online("customer-1")

            ack, history = join(ws)
            assert ack["success"] is True
            assert history["messages"] == []

            sent, pushes = send(ws, ack["roomId"], "Hello")
            assert sent["success"] is True
            assert sent["message"]["content"] == "Hello"
            assert sent["message"]["senderRole"] == "customer"
            assert pushes[0]["message"]["content"] == "Hello"

        assert not gateway.registry.is_online("customer-1")
        assert gateway.group_size(ack["roomId"]) == 0

    def test_multiple_devices_share_presence(self, client, token_for, gateway):
        with connect(client, token_for("customer-1")) as phone:
            receive_connected(phone)
            with connect(client, token_for("customer-1")) as laptop:
                receive_connected(laptop)
                assert len(gateway.registry.list_connections("customer-1")) == 2
            assert gateway.registry.is_online("customer-1")
        assert not gateway.registry.is_online("customer-1")
