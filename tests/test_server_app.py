"""FastAPI app: HTTP endpoints and the WebSocket transport end to end."""

import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from remote_common import ServerSettings, load_settings, save_settings
from server_async import create_app, is_lan_address, pairing_payload

PIN = "246810"


@pytest.fixture
def settings(tmp_path):
    return ServerSettings(pin=PIN, computer_name="Desk", config_dir=str(tmp_path), heartbeat_interval=60)


@pytest.fixture
def workers(recording_worker):
    return {name: recording_worker(name) for name in ("keyboard", "mouse", "mute")}


@pytest.fixture
def client(settings, workers):
    app = create_app(settings, workers=workers)
    with TestClient(app) as c:
        yield c


class TestHttp:
    def test_discover(self, client):
        body = client.get("/api/discover").json()
        assert body["service"] == "keymote"
        assert body["name"] == "Desk"
        assert body["authRequired"] is True
        assert len(body["server_id"]) == 16
        assert client.get("/api/discover").json()["server_id"] == body["server_id"]

    def test_status(self, client):
        body = client.get("/api/status").json()
        assert body["connected"] is False
        assert body["streaming"] is False
        assert set(body["workers"]) == {"keyboard", "mouse", "mute"}

    def test_security_headers(self, client):
        response = client.get("/api/discover")
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_peer_offer_validation(self, client):
        bad_json = client.post("/api/peer/offer", content=b"{nope",
                               headers={"content-type": "application/json"})
        assert bad_json.status_code == 400
        assert client.post("/api/peer/offer", json={"type": "offer"}).status_code == 400

    def test_lan_only_rejects_non_lan_clients(self, tmp_path, workers):
        settings = ServerSettings(pin=None, computer_name="Desk", config_dir=str(tmp_path), lan_only=True)
        with TestClient(create_app(settings, workers=workers)) as c:
            # TestClient reports its peer as "testclient", which is not a LAN address
            assert c.get("/api/discover").status_code == 403
            with pytest.raises(WebSocketDisconnect):
                with c.websocket_connect("/ws") as ws:
                    ws.receive_json()


class TestWebSocket:
    def test_auth_flow_and_input(self, client, workers):
        with client.websocket_connect("/ws") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connected"
            assert hello["authRequired"] is True

            ws.send_json({"type": "key", "key": "Enter", "id": 1})
            assert ws.receive_json() == {"type": "error", "error": "Not authenticated"}

            ws.send_json({"type": "auth", "pin": PIN, "deviceId": "phone", "rememberMe": True})
            result = ws.receive_json()
            assert result["success"] is True
            token = result["token"]

            ws.send_json({"type": "key", "key": "Enter", "id": 2})
            assert ws.receive_json() == {"type": "ack", "id": 2, "success": True}

            ws.send_json({"type": "ping", "time": 99})
            assert ws.receive_json() == {"type": "pong", "time": 99}

        assert workers["keyboard"].payloads == ["key,13,"]

        # Reconnect with the remembered token instead of the PIN
        with client.websocket_connect("/") as ws:
            ws.receive_json()
            ws.send_json({"type": "auth", "token": token, "deviceId": "phone"})
            assert ws.receive_json()["success"] is True

    def test_bad_token_asks_for_pin(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "auth", "token": "0" * 64, "deviceId": "phone"})
            result = ws.receive_json()
            assert result["success"] is False
            assert result["requirePin"] is True

    def test_status_counts_sessions(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "auth", "pin": PIN})
            ws.receive_json()
            assert client.get("/api/status").json()["clientCount"] == 1

    def test_shutdown_stops_workers(self, settings, workers):
        with TestClient(create_app(settings, workers=workers)):
            pass
        assert all(w.stopped for w in workers.values())


class TestHelpers:
    @pytest.mark.parametrize("addr, expected", [
        ("192.168.1.4", True), ("10.1.2.3", True), ("172.20.0.1", True), ("127.0.0.1", True),
        ("::ffff:192.168.0.9", True), ("8.8.8.8", False), ("testclient", False),
    ])
    def test_is_lan_address(self, addr, expected):
        assert is_lan_address(addr) is expected

    def test_pairing_payload(self, settings):
        payload = json.loads(pairing_payload(settings, "192.168.1.9"))
        assert payload == {"name": "Desk", "url": "ws://192.168.1.9:8765", "pin": PIN}

    def test_settings_round_trip(self, tmp_path):
        settings = load_settings(str(tmp_path), fps=12, port=None, pin="1")
        assert settings.fps == 12
        assert settings.port == 8765
        save_settings(settings)

        reloaded = load_settings(str(tmp_path))
        assert reloaded.fps == 12
        assert reloaded.pin is None
        assert load_settings(str(tmp_path), fps=20).fps == 20
