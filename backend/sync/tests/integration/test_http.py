"""Integration tests for the pull transport's HTTP endpoints."""

import pytest
from starlette.testclient import TestClient

from sync.rooms.registry import RoomRegistry
from sync.server.app import create_app
from sync.server.settings import SyncServerSettings


@pytest.fixture
def registry():
    return RoomRegistry(sweep_probability=0.0)


@pytest.fixture
def client(registry):
    app = create_app(settings=SyncServerSettings(strategy="pull", sweep_probability=0.0), registry=registry)
    with TestClient(app) as client:
        yield client


def _create(client) -> dict:
    response = client.post("/create-room")
    assert response.status_code == 200
    return response.json()


def _join(client, room_id: str) -> dict:
    response = client.post("/join-room", json={"roomId": room_id})
    assert response.status_code == 200
    return response.json()


class TestHealth:
    def test_health(self, client):
        _create(client)

        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["rooms"] == 1
        assert body["strategy"] == "pull"
        assert "version" in body
        assert "timestamp" in body

    def test_pull_mode_serves_http_actions_only(self, client):
        assert client.post("/poll", json={}).status_code == 400
        assert client.get("/ws").status_code == 404


class TestRoomLifecycle:
    def test_create_room(self, client):
        body = _create(client)

        assert body["success"] is True
        assert len(body["roomId"]) == 6
        assert body["sessionId"].startswith("session_")
        assert body["participantCount"] == 1
        assert body["activePlayerCount"] == 0

    def test_join_room_returns_state(self, client):
        room = _create(client)
        client.post(
            "/sync-dice",
            json={"roomId": room["roomId"], "sessionId": room["sessionId"], "diceValues": [3, 5]},
        )

        body = _join(client, room["roomId"].lower())

        assert body["roomId"] == room["roomId"]
        assert body["participantCount"] == 2
        assert body["currentDiceValues"] == [3, 5]
        assert body["timerState"]["duration"] == 60
        assert body["players"] == []

    def test_join_unknown_room_is_404(self, client):
        response = client.post("/join-room", json={"roomId": "NOPE00"})

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Room not found", "code": "room_not_found"}

    def test_leave_room_deletes_empty_room(self, client, registry):
        room = _create(client)

        response = client.post("/leave-room", json={"roomId": room["roomId"], "sessionId": room["sessionId"]})

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert registry.get_room(room["roomId"]) is None

    def test_leave_unknown_room_succeeds(self, client):
        response = client.post("/leave-room", json={"roomId": "NOPE00", "sessionId": "session_x"})

        assert response.status_code == 200

    def test_room_info(self, client):
        room = _create(client)

        response = client.get(f"/room/{room['roomId']}")

        assert response.status_code == 200
        body = response.json()
        assert body["id"] == room["roomId"]
        assert body["participantCount"] == 1
        assert "createdAt" in body
        assert "lastActivity" in body

    def test_room_info_unknown_room(self, client):
        assert client.get("/room/NOPE00").status_code == 404

    def test_room_limit_is_503(self):
        settings = SyncServerSettings(strategy="pull", max_rooms=1, sweep_probability=0.0)
        with TestClient(create_app(settings=settings)) as client:
            _create(client)
            response = client.post("/create-room")

        assert response.status_code == 503
        assert response.json()["code"] == "server_at_capacity"


class TestSync:
    def test_sync_players_enforces_cap(self, client):
        room = _create(client)
        sessions = [room["sessionId"]] + [_join(client, room["roomId"])["sessionId"] for _ in range(4)]

        for i, session_id in enumerate(sessions):
            response = client.post(
                "/sync-players",
                json={
                    "roomId": room["roomId"],
                    "sessionId": session_id,
                    "players": [{"id": f"p{i}", "name": f"Player {i}", "isActive": True}],
                },
            )

        body = response.json()
        assert body["activePlayerCount"] == 4
        assert len(body["players"]) == 5

    def test_sync_timer(self, client):
        room = _create(client)

        response = client.post(
            "/sync-timer",
            json={
                "roomId": room["roomId"],
                "sessionId": room["sessionId"],
                "timerState": {"isRunning": True, "remainingTime": 45, "duration": 60, "startTime": 1700000000000},
            },
        )

        assert response.status_code == 200
        info = client.get(f"/room/{room['roomId']}").json()
        assert info["timerState"]["isRunning"] is True
        assert info["timerState"]["lastUpdatedBy"] == room["sessionId"]

    def test_sync_from_unknown_session_is_404(self, client):
        room = _create(client)

        response = client.post(
            "/sync-dice",
            json={"roomId": room["roomId"], "sessionId": "session_x", "diceValues": [1]},
        )

        assert response.status_code == 404
        assert response.json()["code"] == "session_not_found"

    @pytest.mark.parametrize(
        ("path", "body"),
        [
            ("/join-room", {}),
            ("/join-room", {"roomId": "has space"}),
            ("/sync-dice", {"roomId": "ABC123", "sessionId": "s", "diceValues": "nope"}),
            ("/sync-timer", {"roomId": "ABC123", "sessionId": "s", "timerState": {"isRunning": "maybe"}}),
            ("/poll", {"roomId": "ABC123"}),
        ],
    )
    def test_invalid_bodies_are_400(self, client, path, body):
        response = client.post(path, json=body)

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_request"

    def test_malformed_json_is_400(self, client):
        response = client.post("/join-room", content=b"{not json", headers={"content-type": "application/json"})

        assert response.status_code == 400

    def test_oversized_body_is_413(self, client):
        response = client.post("/join-room", content=b"x" * (64 * 1024 + 1))

        assert response.status_code == 413


class TestPoll:
    def test_poll_scenario(self, client):
        room = _create(client)
        room_id, s1 = room["roomId"], room["sessionId"]
        client.post("/sync-dice", json={"roomId": room_id, "sessionId": s1, "diceValues": [3, 5]})
        s2 = _join(client, room_id)["sessionId"]

        peer = client.post("/poll", json={"roomId": room_id, "sessionId": s2, "since": None}).json()
        roller = client.post("/poll", json={"roomId": room_id, "sessionId": s1, "since": None}).json()

        dice = [m for m in peer["messages"] if m["type"] == "dice-roll"]
        assert dice[0]["values"] == [3, 5]
        assert dice[0]["fromSession"] == s1
        assert not [m for m in roller["messages"] if m["type"] == "dice-roll"]

    def test_poll_watermark_round_trip(self, client):
        room = _create(client)
        room_id, s1 = room["roomId"], room["sessionId"]
        s2 = _join(client, room_id)["sessionId"]
        first = client.post("/poll", json={"roomId": room_id, "sessionId": s2}).json()

        client.post("/sync-dice", json={"roomId": room_id, "sessionId": s1, "diceValues": [1]})
        second = client.post("/poll", json={"roomId": room_id, "sessionId": s2, "since": first["timestamp"]}).json()

        assert [m["values"] for m in second["messages"]] == [[1]]

    def test_poll_unknown_session_is_404(self, client):
        room = _create(client)

        response = client.post("/poll", json={"roomId": room["roomId"], "sessionId": "session_x"})

        assert response.status_code == 404
        assert response.json()["code"] == "session_not_found"


class TestCors:
    def test_preflight_allows_configured_origin(self):
        settings = SyncServerSettings(strategy="pull", cors_origins=["http://dice.example"], sweep_probability=0.0)
        with TestClient(create_app(settings=settings)) as client:
            response = client.options(
                "/create-room",
                headers={"Origin": "http://dice.example", "Access-Control-Request-Method": "POST"},
            )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://dice.example"
