"""Integration tests for the push transport's WebSocket endpoint.

Clients may speak JSON text frames or MessagePack binary frames; the server
replies in whichever format the client used last.
"""

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from sync.rooms.registry import RoomRegistry
from sync.server.app import create_app
from sync.server.settings import SyncServerSettings
from sync.tests.helpers import recv_until, recv_ws, send_ws


@pytest.fixture
def registry():
    return RoomRegistry(sweep_probability=0.0)


@pytest.fixture
def client(registry):
    app = create_app(settings=SyncServerSettings(strategy="push", sweep_probability=0.0), registry=registry)
    with TestClient(app) as client:
        yield client


def _create_room(ws) -> dict:
    ws.send_json({"type": "create-room", "requestId": "create"})
    reply = recv_until(ws, "ack")
    assert reply["success"] is True
    return reply


class TestPushMode:
    def test_health_reports_push(self, client):
        assert client.get("/health").json()["strategy"] == "push"

    def test_http_actions_are_not_served(self, client):
        assert client.post("/create-room").status_code == 404
        assert client.post("/poll", json={}).status_code == 404


class TestJsonFrames:
    def test_create_room(self, client, registry):
        with client.websocket_connect("/ws") as ws:
            reply = _create_room(ws)

            assert reply["requestId"] == "create"
            assert reply["participantCount"] == 1
            assert registry.get_room(reply["roomId"]) is not None

    def test_ping(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "ping", "requestId": "hb"})

            reply = ws.receive_json()

        assert reply["type"] == "pong"
        assert reply["requestId"] == "hb"

    def test_dice_roll_is_broadcast_to_peer(self, client):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            room = _create_room(alice)
            bob.send_json({"type": "join-room", "roomId": room["roomId"], "requestId": "j"})
            joined = recv_until(bob, "ack")
            assert joined["participantCount"] == 2
            assert recv_until(alice, "participant-joined")["participantCount"] == 2

            alice.send_json({"type": "sync-dice-roll", "diceValues": [3, 5], "requestId": "d"})
            assert recv_until(alice, "ack")["requestId"] == "d"

            message = recv_until(bob, "dice-roll-received")
            assert message["values"] == [3, 5]
            assert message["fromParticipant"] == room["sessionId"]

    def test_leave_is_announced(self, client):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            room = _create_room(alice)
            bob.send_json({"type": "join-room", "roomId": room["roomId"], "requestId": "j"})
            recv_until(bob, "ack")

            bob.send_json({"type": "leave-room", "requestId": "l"})
            recv_until(bob, "ack")

            assert recv_until(alice, "participant-left")["participantCount"] == 1

    def test_invalid_message_gets_error(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "sync-dice-roll", "requestId": "x"})

            reply = ws.receive_json()

        assert reply["type"] == "error"
        assert reply["code"] == "invalid_request"
        assert reply["requestId"] == "x"

    def test_sync_before_joining_is_rejected(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "sync-dice-roll", "diceValues": [1], "requestId": "x"})

            reply = ws.receive_json()

        assert reply["type"] == "ack"
        assert reply["success"] is False
        assert reply["error"] == "Not in a room"


class TestMessagePackFrames:
    def test_create_room_over_msgpack(self, client):
        with client.websocket_connect("/ws") as ws:
            send_ws(ws, {"type": "create-room", "requestId": "1"})

            reply = recv_ws(ws)

        assert reply["type"] == "ack"
        assert reply["success"] is True
        assert len(reply["roomId"]) == 6

    def test_peers_may_use_different_formats(self, client):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            room = _create_room(alice)
            send_ws(bob, {"type": "join-room", "roomId": room["roomId"], "requestId": "j"})
            recv_until(bob, "ack", binary=True)

            alice.send_json({"type": "sync-players", "players": [{"name": "Ann", "isActive": True}]})

            message = recv_until(bob, "players-update", binary=True)
            assert message["players"][0]["name"] == "Ann"
            assert message["activePlayerCount"] == 1


class TestDecodeErrors:
    def test_invalid_frame_returns_error_and_keeps_connection(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_bytes(b"\xff\xff\xff")
            error = recv_ws(ws)
            assert error["type"] == "error"
            assert error["code"] == "invalid_request"

            send_ws(ws, {"type": "ping", "requestId": "p"})
            assert recv_ws(ws)["type"] == "pong"

    def test_repeated_decode_errors_disconnect(self, client):
        with client.websocket_connect("/ws") as ws:
            for _ in range(5):
                ws.send_text("{not json")
                assert ws.receive_json()["type"] == "error"

            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == 4004

    def test_decode_error_counter_resets_on_valid_message(self, client):
        with client.websocket_connect("/ws") as ws:
            for _ in range(4):
                ws.send_text("[1, 2]")
                ws.receive_json()
            ws.send_json({"type": "ping", "requestId": "p"})
            assert ws.receive_json()["type"] == "pong"

            for _ in range(4):
                ws.send_text("[1, 2]")
                assert ws.receive_json()["type"] == "error"

            ws.send_json({"type": "ping", "requestId": "q"})
            assert ws.receive_json()["requestId"] == "q"


class TestDisconnect:
    def test_last_disconnect_deletes_room(self, client, registry):
        with client.websocket_connect("/ws") as ws:
            room_id = _create_room(ws)["roomId"]
            assert registry.get_room(room_id) is not None

        assert registry.get_room(room_id) is None

    def test_room_survives_while_peer_connected(self, client, registry):
        with client.websocket_connect("/ws") as alice:
            room = _create_room(alice)
            with client.websocket_connect("/ws") as bob:
                bob.send_json({"type": "join-room", "roomId": room["roomId"], "requestId": "j"})
                recv_until(bob, "ack")

            assert recv_until(alice, "participant-left")["participantCount"] == 1
            assert registry.get_room(room["roomId"]) is not None
