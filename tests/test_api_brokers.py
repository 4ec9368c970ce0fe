"""Tests for the broker API routes."""

import pytest
from fastapi.testclient import TestClient

from trader_insights.api import deps
from trader_insights.api.app import app
from trader_insights.api.routes import brokers
from trader_insights.config import Settings
from trader_insights.core.brokers.models import Connection, ConnectionLink, SnapTradeUser
from trader_insights.core.brokers.sessions import SessionRepository


@pytest.fixture
def api(db, mock_client, monkeypatch):
    """TestClient wired to the in-memory database and a mocked aggregator."""
    settings = Settings(
        snaptrade_client_id="client-id",
        snaptrade_consumer_key="consumer-key",
        snaptrade_redirect_uri="https://app/callback",
    )
    monkeypatch.setattr(brokers, "get_settings", lambda: settings)
    mock_client.register_user.return_value = SnapTradeUser(user_id="u1", user_secret="s1")
    mock_client.create_connection_link.return_value = ConnectionLink(
        redirect_uri="https://portal/x", session_id="sess-1"
    )

    def override_db():
        yield db

    app.dependency_overrides[deps.get_db] = override_db
    app.dependency_overrides[deps.get_snaptrade_client] = lambda: mock_client
    deps.store_registry.clear()
    brokers.limiter.reset()
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        deps.store_registry.clear()


class TestBrokerRoutes:
    """Tests for /api/brokers."""

    def test_health(self, api):
        response = api.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_register_is_idempotent(self, api, mock_client):
        first = api.post("/api/brokers/register")
        second = api.post("/api/brokers/register")

        assert first.status_code == 200
        assert first.json()["registered"] is True
        assert first.json()["external_user_id"] == "u1"
        assert "user_secret" not in first.json()
        assert second.json()["registered"] is False
        assert mock_client.register_user.call_count == 1

    def test_connect_returns_portal_url(self, api, mock_client):
        response = api.post("/api/brokers/connect", json={"broker_id": "ALPACA"})

        assert response.status_code == 200
        assert response.json() == {"session_id": "sess-1", "redirect_uri": "https://portal/x"}
        assert mock_client.create_connection_link.call_args[1]["broker_id"] == "ALPACA"

    def test_callback_redirects_to_dashboard(self, api, mock_client):
        api.post("/api/brokers/connect")
        mock_client.list_connections.return_value = [
            Connection(id="auth-1", brokerage_authorization_id="auth-1", status="ACTIVE")
        ]

        response = api.get(
            "/api/brokers/callback",
            params={"sessionId": "sess-1", "authorizationId": "auth-1"},
            follow_redirects=False,
        )

        assert response.status_code == 303
        assert response.headers["location"] == "/app/dashboard"
        mock_client.get_accounts.assert_called_once_with("u1", "s1")

    def test_callback_unknown_session(self, api, mock_client):
        response = api.get("/api/brokers/callback", params={"sessionId": "nope"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid or expired session"
        mock_client.list_connections.assert_not_called()

    def test_callback_without_matching_connection(self, api):
        api.post("/api/brokers/connect")

        response = api.get("/api/brokers/callback", params={"sessionId": "sess-1"})

        assert response.status_code == 404
        assert response.json()["detail"] == "Connection not found"

    def test_portal_event_completes_session(self, api):
        api.post("/api/brokers/connect")

        response = api.post(
            "/api/brokers/sessions/sess-1/events",
            json={"type": "SUCCESS", "authorizationId": "auth-2"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["authorization_id"] == "auth-2"

    def test_second_portal_success_rejected(self, api, mock_client):
        api.post("/api/brokers/connect")
        url = "/api/brokers/sessions/sess-1/events"
        api.post(url, json={"type": "SUCCESS", "authorizationId": "auth-2"})

        response = api.post(url, json={"type": "SUCCESS", "authorizationId": "auth-3"})

        assert response.status_code == 400
        assert response.json()["detail"] == "Session already processed"
        assert mock_client.get_accounts.call_count == 1

    def test_portal_error_after_completion_rejected(self, api, db):
        api.post("/api/brokers/connect")
        url = "/api/brokers/sessions/sess-1/events"
        api.post(url, json={"type": "SUCCESS", "authorizationId": "auth-2"})

        response = api.post(
            url,
            json={"type": "ERROR", "code": "AUTH", "status": 401, "message": "Bad login"},
        )

        assert response.status_code == 400
        assert response.json()["detail"] == "Session already processed"
        session = SessionRepository(db).get("sess-1")
        assert session.status == "completed"
        assert session.authorization_id == "auth-2"

    def test_unrecognized_portal_event(self, api):
        api.post("/api/brokers/connect")
        response = api.post("/api/brokers/sessions/sess-1/events", json={"type": "RESIZE"})
        assert response.status_code == 400

    def test_sync_requires_registration(self, api):
        response = api.post("/api/brokers/sync")
        assert response.status_code == 404

    def test_sync_then_list_accounts(self, api, mock_client, make_account):
        api.post("/api/brokers/register")
        mock_client.get_accounts.return_value = [make_account("A")]

        sync = api.post("/api/brokers/sync")
        accounts = api.get("/api/brokers/accounts")

        assert sync.status_code == 200
        assert sync.json()["accounts_synced"] == 1
        assert [a["id"] for a in accounts.json()] == ["A"]
        assert api.get("/api/brokers/accounts/B/positions").status_code == 404

    def test_disconnect(self, api, mock_client):
        api.post("/api/brokers/register")

        response = api.delete("/api/brokers/connection")

        assert response.status_code == 204
        mock_client.delete_user.assert_called_once_with("u1")
        assert api.post("/api/brokers/sync").status_code == 404

    def test_remove_one_connection(self, api, mock_client):
        api.post("/api/brokers/register")

        response = api.delete("/api/brokers/connections/auth-1")

        assert response.status_code == 204
        mock_client.delete_connection.assert_called_once_with("u1", "s1", "auth-1")
        mock_client.list_connections.assert_called_once_with("u1", "s1")
