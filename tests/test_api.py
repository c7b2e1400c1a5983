"""Integration tests for the FastAPI chat endpoints.

These tests verify:
- Session creation, history, clear, delete and listing
- Message exchange through the gateway
- Error mapping (400/404/409/502/504/500)
- Cleanup and info endpoints
- Rate limiting of /api/ routes
"""

import threading

import pytest
from fastapi.testclient import TestClient

from agent.core.exceptions import ConfigurationError, GatewayError
from app.main import create_app
from app.models import MAX_AGE_MS_LIMIT
from config.settings import Settings


def _create(client, session_id=None):
    body = {"sessionId": session_id} if session_id else {}
    response = client.post("/api/chat/session", json=body)
    assert response.status_code == 201
    return response.json()["sessionId"]


def test_health_check(client):
    _create(client, "s1")

    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["sessions"] == 1
    assert "timestamp" in data


def test_create_session_with_generated_id(client, registry):
    response = client.post("/api/chat/session")

    assert response.status_code == 201
    data = response.json()
    assert data["success"] is True
    assert data["sessionId"] in registry
    assert data["createdAt"]


def test_create_duplicate_session_conflicts(client, registry):
    _create(client, "dup")

    response = client.post("/api/chat/session", json={"sessionId": "dup"})

    assert response.status_code == 409
    data = response.json()
    assert data["success"] is False
    assert data["sessionId"] == "dup"
    assert len(registry) == 1


def test_create_session_rejects_empty_id(client, registry):
    response = client.post("/api/chat/session", json={"sessionId": ""})

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert len(registry) == 0


def test_full_session_scenario(client):
    _create(client, "s1")

    response = client.post("/api/chat/message", json={"sessionId": "s1", "message": "hi"})
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["response"] == "hello"
    assert data["sessionId"] == "s1"
    exchange_id = data["exchangeId"]

    history = client.get("/api/chat/session/s1/history").json()
    assert history["messageCount"] == 1
    assert history["history"][0]["id"] == exchange_id
    assert history["history"][0]["user"] == "hi"
    assert history["history"][0]["assistant"] == "hello"
    created_at = history["createdAt"]

    cleared = client.put("/api/chat/session/s1/clear")
    assert cleared.status_code == 200
    assert cleared.json()["clearedAt"]
    history = client.get("/api/chat/session/s1/history").json()
    assert history["messageCount"] == 0
    assert history["createdAt"] == created_at

    deleted = client.delete("/api/chat/session/s1")
    assert deleted.status_code == 200
    assert deleted.json()["sessionId"] == "s1"
    assert deleted.json()["deletedAt"]

    missing = client.get("/api/chat/session/s1/history")
    assert missing.status_code == 404
    assert missing.json()["error"] == "Session not found"


@pytest.mark.parametrize(
    "body",
    [
        {"sessionId": "s1"},
        {"message": "hi"},
        {"sessionId": "s1", "message": "   "},
        {"sessionId": "", "message": "hi"},
    ],
)
def test_send_message_validation(client, gateway, body):
    _create(client, "s1")

    response = client.post("/api/chat/message", json=body)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert gateway.calls == []


def test_send_to_unknown_session_does_not_create_it(client, registry):
    response = client.post("/api/chat/message", json={"sessionId": "ghost", "message": "hi"})

    assert response.status_code == 404
    assert "ghost" not in registry


def test_gateway_failure_returns_502_without_partial_write(client, gateway, registry):
    _create(client, "s1")
    gateway.fail_with = GatewayError("provider down")

    response = client.post("/api/chat/message", json={"sessionId": "s1", "message": "hi"})

    assert response.status_code == 502
    assert "provider down" not in response.json()["error"]
    assert registry.get("s1").message_count == 0


def test_gateway_timeout_returns_504(settings, registry, gateway):
    settings.gateway_timeout_seconds = 0.1
    gateway.block = threading.Event()
    app = create_app(settings, registry=registry, gateway=gateway)
    try:
        with TestClient(app) as client:
            _create(client, "s1")
            response = client.post("/api/chat/message", json={"sessionId": "s1", "message": "hi"})
    finally:
        gateway.block.set()

    assert response.status_code == 504
    assert registry.get("s1").message_count == 0


def test_clear_and_delete_unknown_session(client):
    assert client.put("/api/chat/session/nope/clear").status_code == 404
    assert client.delete("/api/chat/session/nope").status_code == 404


def test_list_sessions(client):
    _create(client, "a")
    _create(client, "b")
    client.post("/api/chat/message", json={"sessionId": "b", "message": "hi"})

    data = client.get("/api/chat/sessions").json()

    assert data["count"] == 2
    counts = {s["id"]: s["messageCount"] for s in data["sessions"]}
    assert counts == {"a": 0, "b": 1}


def test_cleanup_with_max_age(client, clock):
    _create(client, "old")
    clock.advance(hours=2)
    _create(client, "new")

    response = client.post("/api/chat/cleanup", json={"maxAge": 60 * 60 * 1000})

    assert response.status_code == 200
    data = response.json()
    assert data["cleaned"] == 1
    assert data["remaining"] == 1


def test_cleanup_defaults_to_24_hours(client, clock):
    _create(client, "s1")
    clock.advance(hours=23)

    assert client.post("/api/chat/cleanup").json()["cleaned"] == 0

    clock.advance(hours=2)
    assert client.post("/api/chat/cleanup", json={}).json()["cleaned"] == 1


def test_cleanup_rejects_negative_max_age(client):
    response = client.post("/api/chat/cleanup", json={"maxAge": -1})

    assert response.status_code == 400


def test_cleanup_huge_max_age_is_rejected_not_crashed(client):
    _create(client)

    response = client.post("/api/chat/cleanup", json={"maxAge": 10**17})

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert client.get("/api/chat/sessions").json()["count"] == 1


def test_cleanup_accepts_largest_max_age(client):
    _create(client)

    response = client.post("/api/chat/cleanup", json={"maxAge": MAX_AGE_MS_LIMIT})

    assert response.status_code == 200
    assert response.json()["cleaned"] == 0


def test_info(client, settings):
    _create(client)

    data = client.get("/api/info").json()

    assert data["model"] == settings.gemini_model
    assert data["systemInstruction"] == settings.system_instruction
    assert data["generationConfig"]["maxOutputTokens"] == settings.max_output_tokens
    assert data["activeSessions"] == 1


def test_unknown_endpoint(client):
    response = client.get("/api/nowhere")

    assert response.status_code == 404
    data = response.json()
    assert data["error"] == "Endpoint not found"
    assert data["path"] == "/api/nowhere"
    assert data["method"] == "GET"


def test_unexpected_error_is_generic_500(settings, registry, gateway, monkeypatch):
    app = create_app(settings, registry=registry, gateway=gateway)

    def broken():
        raise RuntimeError("secret internals")

    monkeypatch.setattr(registry, "list", broken)
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/api/chat/sessions")

    assert response.status_code == 500
    assert response.json()["error"] == "Internal server error"
    assert "secret" not in response.text


def test_rate_limit_applies_to_api_routes(registry, gateway):
    settings = Settings(
        app_env="test",
        gemini_api_key="test-key",
        sweep_enabled=False,
        rate_limit_enabled=True,
        rate_limit="2 per minute",
    )
    app = create_app(settings, registry=registry, gateway=gateway)

    with TestClient(app) as client:
        assert client.get("/api/chat/sessions").status_code == 200
        assert client.get("/api/chat/sessions").status_code == 200
        limited = client.get("/api/chat/sessions")
        assert limited.status_code == 429
        assert limited.json()["error"] == "Too many requests from this IP"
        for _ in range(3):
            assert client.get("/health").status_code == 200


def test_missing_api_key_fails_at_startup(registry):
    with pytest.raises(ConfigurationError):
        create_app(Settings(gemini_api_key=None, sweep_enabled=False), registry=registry)


def test_sweeper_lifecycle_follows_app(settings, registry, gateway):
    settings.sweep_enabled = True
    app = create_app(settings, registry=registry, gateway=gateway)

    with TestClient(app):
        assert app.state.sweeper.running

    assert not app.state.sweeper.running


def test_rate_limit_ignores_routes_outside_api(registry, gateway):
    settings = Settings(
        app_env="test",
        gemini_api_key="test-key",
        sweep_enabled=False,
        rate_limit_enabled=True,
        rate_limit="2 per minute",
    )
    app = create_app(settings, registry=registry, gateway=gateway)

    with TestClient(app) as client:
        for _ in range(3):
            assert client.get("/nowhere").status_code == 404
            assert client.get("/openapi.json").status_code == 200
        assert client.get("/api/chat/sessions").status_code == 200
        assert client.get("/api/chat/sessions").status_code == 200
        assert client.get("/api/chat/sessions").status_code == 429
