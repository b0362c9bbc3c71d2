import time
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi.testclient import TestClient

import main
from app.services.auth_service import create_access_token
from app.services.gameserver.workshop import WorkshopClient
from database.connection import get_db
from database.models import Bitacora
from database.schemas import OnlinePlayer
from routes import connections, mods, servers

from tests.conftest import INSTALL_PATH
from tests.test_workshop import workshop_page


def auth(is_admin=True, role=None):
    claims = {"sub": "alice", "is_admin": is_admin}
    if role:
        claims["role"] = role
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


ADMIN = auth()


@pytest.fixture
def client(service, session_factory, monkeypatch):
    """API wired to the fake-backed service and the in-memory database."""
    monkeypatch.setattr(main, "game_server_service", service)
    monkeypatch.setattr(servers.server_controller, "service", service)
    monkeypatch.setattr(mods.mod_controller, "service", service)
    monkeypatch.setattr(connections.connection_controller, "service", service)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_db] = override_get_db
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


@pytest.fixture
def default_connection(client):
    response = client.post("/api/server/connections/", json={
        "name": "main",
        "type": "local",
        "install_path": INSTALL_PATH,
    }, headers=ADMIN)
    assert response.status_code == 201
    return response.json()


# ==============================================================================
# Auth
# ==============================================================================

def test_missing_token_is_rejected(client):
    assert client.get("/api/server/status").status_code in (401, 403)


def test_invalid_token_is_rejected(client):
    response = client.get("/api/server/status", headers={"Authorization": "Bearer nonsense"})
    assert response.status_code == 401


def test_non_admin_is_forbidden(client):
    response = client.get("/api/server/status", headers=auth(is_admin=False))
    assert response.status_code == 403


def test_moderator_counts_as_admin(client):
    response = client.get("/auth/me", headers=auth(is_admin=False, role="moderator"))
    assert response.json() == {"username": "alice", "is_admin": True, "role": "moderator"}


# ==============================================================================
# Connections
# ==============================================================================

def test_add_and_list_connections(client, default_connection):
    assert default_connection["is_default"] is True
    assert "password" not in default_connection

    listed = client.get("/api/server/connections/", headers=ADMIN).json()
    assert [c["name"] for c in listed] == ["main"]


def test_invalid_connection_lists_fields(client):
    response = client.post("/api/server/connections/", json={
        "name": "remote",
        "type": "remote",
        "install_path": "/srv",
    }, headers=ADMIN)

    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "ValidationError"
    assert set(body["details"]["fields"]) == {"host", "username", "password"}


def test_unknown_connection_is_404(client):
    response = client.get("/api/server/connections/missing", headers=ADMIN)

    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"


def test_no_default_connection_is_404(client):
    response = client.get("/api/server/status", headers=ADMIN)

    assert response.status_code == 404


# ==============================================================================
# Server control
# ==============================================================================

def test_status_of_fresh_connection(client, default_connection):
    response = client.get("/api/server/status", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["state"] == "NOT_INSTALLED"


def test_start_without_install_is_invalid_state(client, default_connection):
    response = client.post("/api/server/start", headers=ADMIN)

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "InvalidStateError"
    assert body["details"]["state"] == "NOT_INSTALLED"


def test_command_with_rcon_disabled(client, default_connection):
    response = client.post("/api/server/command", json={"command": "#players"}, headers=ADMIN)

    assert response.status_code == 422
    assert response.json()["error"] == "DisabledError"


def test_console_is_empty_before_start(client, default_connection):
    response = client.get("/api/server/console", params={"lines": 10}, headers=ADMIN)

    assert response.status_code == 200
    assert response.json() == []


def test_log_traversal_is_rejected(client, default_connection):
    response = client.get("/api/server/logs/..%2E/console.log", headers=ADMIN)

    assert response.status_code in (400, 404)


# ==============================================================================
# Players
# ==============================================================================

def test_no_players_before_start(client, default_connection):
    response = client.get("/api/server/players", headers=ADMIN)

    assert response.status_code == 200
    assert response.json() == []


def test_kick_requires_running_server(client, default_connection):
    response = client.post("/api/server/players/4/kick", headers=ADMIN)

    assert response.status_code == 503
    assert response.json()["error"] == "NotRunningError"


def test_kick_is_sent_and_audited(client, default_connection, service, executor, rcon_factory, ready_lines, session_factory):
    client.patch("/api/server/config", json={"rcon_enabled": True, "rcon_password": "secret"}, headers=ADMIN)
    executor.install_server()
    executor.process_options = {"lines": ready_lines}
    assert client.post("/api/server/start", headers=ADMIN).json()["state"] == "RUNNING"
    supervisor = service.supervisors[default_connection["id"]]
    supervisor.logs.online_players_from_log = AsyncMock(return_value=[OnlinePlayer(id="abc-1", name="Jane", player_id=4)])

    assert [p["name"] for p in client.get("/api/server/players", headers=ADMIN).json()] == ["Jane"]
    response = client.post("/api/server/players/abc-1/kick", json={"reason": "spam"}, headers=ADMIN)

    assert response.status_code == 200
    assert rcon_factory.clients[0].commands == ["#kick 4"]
    db = session_factory()
    try:
        entry = db.query(Bitacora).filter(Bitacora.action == "KICK_PLAYER").one()
    finally:
        db.close()
    assert "spam" in entry.details

# ==============================================================================
# Configuration
# ==============================================================================

def test_config_round_trip(client, default_connection):
    initial = client.get("/api/server/config", headers=ADMIN).json()
    assert initial["version"] == 0

    saved = client.put("/api/server/config", json={"name": "Everon PvE", "max_players": 48}, headers=ADMIN)
    assert saved.status_code == 200
    assert saved.json()["version"] == 1

    patched = client.patch("/api/server/config", json={"max_players": 24}, headers=ADMIN).json()
    assert patched["version"] == 2
    assert patched["config"]["name"] == "Everon PvE"
    assert patched["config"]["max_players"] == 24


def test_invalid_config_reports_every_field(client, default_connection):
    response = client.put("/api/server/config", json={"max_players": 0, "bind_port": 70000}, headers=ADMIN)

    assert response.status_code == 400
    assert set(response.json()["details"]["fields"]) == {"max_players", "bind_port"}
    assert client.get("/api/server/config", headers=ADMIN).json()["version"] == 0


# ==============================================================================
# Mods
# ==============================================================================

def test_mod_lifecycle(client, default_connection):
    first = client.post("/api/server/mods/", json={"name": "A", "source": "AAA"}, headers=ADMIN).json()
    second = client.post("/api/server/mods/", json={"name": "B", "source": "BBB"}, headers=ADMIN).json()

    reordered = client.put("/api/server/mods/reorder", json={"mod_ids": [second["id"], first["id"]]}, headers=ADMIN)
    assert [m["source"] for m in reordered.json()] == ["BBB", "AAA"]

    toggled = client.post(f"/api/server/mods/{first['id']}/toggle", headers=ADMIN).json()
    assert toggled["enabled"] is False

    removed = client.delete(f"/api/server/mods/{second['id']}", headers=ADMIN)
    assert removed.status_code == 200
    listed = client.get("/api/server/mods/", headers=ADMIN).json()
    assert [(m["source"], m["load_order"]) for m in listed] == [("AAA", 0)]


def test_partial_reorder_is_rejected(client, default_connection):
    first = client.post("/api/server/mods/", json={"name": "A", "source": "AAA"}, headers=ADMIN).json()
    client.post("/api/server/mods/", json={"name": "B", "source": "BBB"}, headers=ADMIN)

    response = client.put("/api/server/mods/reorder", json={"mod_ids": [first["id"]]}, headers=ADMIN)

    assert response.status_code == 400


def test_workshop_sync(client, default_connection, service, monkeypatch):
    def site(request):
        if request.url.path.endswith("/AAA"):
            return httpx.Response(200, text=workshop_page({"name": "Alpha", "currentVersionNumber": "2.0.0"}))
        return httpx.Response(404)

    monkeypatch.setattr(service.mods, "workshop", WorkshopClient(transport=httpx.MockTransport(site)))
    mod = client.post("/api/server/mods/", json={"name": "A", "source": "AAA"}, headers=ADMIN).json()
    client.post("/api/server/mods/", json={"name": "B", "source": "BBB"}, headers=ADMIN)

    synced = client.post(f"/api/server/mods/{mod['id']}/sync", headers=ADMIN).json()
    assert (synced["name"], synced["version"]) == ("Alpha", "2.0.0")

    report = client.post("/api/server/mods/sync-all", headers=ADMIN)
    assert report.status_code == 200
    assert (report.json()["synced"], report.json()["failed"]) == (1, 1)


# ==============================================================================
# Audit
# ==============================================================================

def test_mutations_are_audited(client, default_connection, session_factory):
    client.put("/api/server/config", json={"name": "Audited"}, headers=ADMIN)

    db = session_factory()
    try:
        actions = [entry.action for entry in db.query(Bitacora).order_by(Bitacora.id).all()]
    finally:
        db.close()
    assert actions == ["ADD_CONNECTION", "UPDATE_CONFIG"]

    logs = client.get("/api/audit/logs", params={"connection_id": default_connection["id"]}, headers=ADMIN).json()
    assert logs["total"] == 1
    assert logs["items"][0]["action"] == "ADD_CONNECTION"


# ==============================================================================
# Live events
# ==============================================================================

def test_websocket_sends_status_and_unsubscribes_on_disconnect(client, default_connection, service):
    token = create_access_token({"sub": "alice", "is_admin": True})

    with client.websocket_connect(f"/api/server/ws?token={token}") as websocket:
        first = websocket.receive_json()
        assert first["type"] == "status-update"
        assert first["data"]["state"] == "NOT_INSTALLED"
        assert service.bus.subscriber_count(default_connection["id"]) == 1

    deadline = time.monotonic() + 2
    while service.bus.subscriber_count(default_connection["id"]) and time.monotonic() < deadline:
        time.sleep(0.01)
    assert service.bus.subscriber_count(default_connection["id"]) == 0
