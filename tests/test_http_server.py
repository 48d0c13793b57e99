"""Tests for the control endpoint in server/http_server.py."""

import re
from unittest.mock import patch

import pytest
from conftest import FakeChannel, FakeSSHClient
from starlette.testclient import TestClient

from server.config import ServerConfig
from server.http_server import ERROR_STATUS, create_http_app
from shared.protocol import (
    AuthenticationFailedError,
    ConnectionFailedError,
    InvalidRequestError,
)
from shared.version import __version__

CONNECT_BODY = {"hostname": "db01", "port": 22, "username": "alice", "password": "pw"}


@pytest.fixture
def app():
    return create_http_app(ServerConfig(idle_timeout=0))


class TestAppFactory:
    """Tests for create_http_app()."""

    def test_state_exposes_collaborators(self, app):
        """The app state should expose the registry, bridge and gateway."""
        assert app.state.registry is app.state.bridge.registry
        assert app.state.gateway.registry is app.state.registry
        assert app.state.config.idle_timeout == 0

    def test_each_app_gets_its_own_registry(self):
        """Each app should get its own registry."""
        first = create_http_app(ServerConfig(idle_timeout=0))
        second = create_http_app(ServerConfig(idle_timeout=0))
        assert first.state.registry is not second.state.registry

    def test_error_status_mapping(self):
        """Should map client errors to 400 and 401."""
        assert ERROR_STATUS[InvalidRequestError] == 400
        assert ERROR_STATUS[AuthenticationFailedError] == 401
        assert ERROR_STATUS[ConnectionFailedError] == 500


class TestHealthEndpoint:
    def test_health(self, app):
        """Health should report status, version and session count."""
        with TestClient(app) as client:
            response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == __version__
        assert data["sessions"] == 0


class TestSessionsEndpoint:
    """Tests for GET /sessions."""

    def test_lists_live_sessions_with_short_ids(self, app):
        """Test that live sessions are listed without their attachable full IDs."""
        with TestClient(app) as client:
            with patch.object(
                app.state.bridge, "connect", return_value=(FakeSSHClient(), FakeChannel())
            ):
                session_id = client.post("/ssh/connect", json=CONNECT_BODY).json()["sessionId"]

            response = client.get("/sessions")

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        listed = data["sessions"][0]
        assert listed["session_id"] == session_id[:8]
        assert listed["hostname"] == "db01"
        assert listed["username"] == "alice"
        assert listed["bound"] is False

    def test_empty(self, app):
        """Test the listing with no sessions open."""
        with TestClient(app) as client:
            assert client.get("/sessions").json() == {"sessions": [], "count": 0}


class TestConnectEndpoint:
    """Tests for POST /ssh/connect."""

    def test_success_registers_session(self, app):
        """Test that a successful connect registers a session."""
        channel = FakeChannel()
        with TestClient(app) as client:
            with patch.object(
                app.state.bridge, "connect", return_value=(FakeSSHClient(), channel)
            ) as mock_connect:
                response = client.post("/ssh/connect", json=CONNECT_BODY)

            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "connected"
            assert re.fullmatch(r"[0-9a-f]{32}", data["sessionId"])
            mock_connect.assert_called_once_with("db01", 22, "alice", "pw")

            session = client.portal.call(app.state.registry.get, data["sessionId"])
            assert session.channel is channel
            assert session.hostname == "db01"
            assert session.username == "alice"

    def test_port_defaults_to_22(self, app):
        """Port should default to 22."""
        body = {k: v for k, v in CONNECT_BODY.items() if k != "port"}
        with TestClient(app) as client:
            with patch.object(
                app.state.bridge, "connect", return_value=(FakeSSHClient(), FakeChannel())
            ):
                session_id = client.post("/ssh/connect", json=body).json()["sessionId"]
            session = client.portal.call(app.state.registry.get, session_id)

        assert session.port == 22

    @pytest.mark.parametrize("content", [b"not json", b"[1, 2]", b""])
    def test_invalid_body(self, app, content):
        """Non-object bodies should be rejected with 400."""
        with TestClient(app) as client:
            response = client.post(
                "/ssh/connect", content=content, headers={"Content-Type": "application/json"}
            )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request body"

    def test_missing_fields(self, app):
        """Missing connect fields should be rejected with 400."""
        with TestClient(app) as client:
            response = client.post("/ssh/connect", json={"hostname": "db01"})

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "INVALID_REQUEST"
        assert data["details"]["fields"] == ["username", "password"]
        assert app.state.registry.count == 0

    @pytest.mark.parametrize(
        "error,status,code",
        [
            (AuthenticationFailedError("db01", "bad password"), 401, "AUTHENTICATION_FAILED"),
            (ConnectionFailedError("db01", "Connection refused"), 500, "CONNECTION_FAILED"),
        ],
    )
    def test_dial_errors(self, app, error, status, code):
        """Test that dial failures map to their HTTP status."""
        with TestClient(app) as client:
            with patch.object(app.state.bridge, "connect", side_effect=error):
                response = client.post("/ssh/connect", json=CONNECT_BODY)

        assert response.status_code == status
        assert response.json()["code"] == code
        assert app.state.registry.count == 0

    def test_shutdown_closes_sessions(self, app):
        """Stopping the app should close open sessions."""
        channel = FakeChannel()
        with TestClient(app) as client:
            with patch.object(
                app.state.bridge, "connect", return_value=(FakeSSHClient(), channel)
            ):
                client.post("/ssh/connect", json=CONNECT_BODY)
            assert app.state.registry.count == 1

        assert app.state.registry.count == 0
        assert channel.closed


class TestAuthMiddleware:
    """Tests for bearer token authentication."""

    @pytest.fixture
    def secured_app(self):
        return create_http_app(ServerConfig(api_key="relay-key", idle_timeout=0))

    def test_rejects_missing_token(self, secured_app):
        """Requests without a token should be rejected."""
        with TestClient(secured_app) as client:
            response = client.post("/ssh/connect", json=CONNECT_BODY)
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_rejects_wrong_token(self, secured_app):
        """Requests with the wrong token should be rejected."""
        with TestClient(secured_app) as client:
            response = client.post(
                "/ssh/connect", json=CONNECT_BODY, headers={"Authorization": "Bearer nope"}
            )
        assert response.status_code == 401

    def test_accepts_valid_token(self, secured_app):
        """A valid token should pass authentication."""
        with TestClient(secured_app) as client:
            response = client.post(
                "/ssh/connect",
                json={"hostname": "db01"},
                headers={"Authorization": "Bearer relay-key"},
            )
        # Past authentication, rejected by validation
        assert response.status_code == 400

    def test_health_is_open(self, secured_app):
        """Health should not require a token."""
        with TestClient(secured_app) as client:
            assert client.get("/health").status_code == 200

    def test_sessions_listing_requires_token(self, secured_app):
        """Test that the session listing sits behind the bearer token."""
        with TestClient(secured_app) as client:
            assert client.get("/sessions").status_code == 401
            response = client.get("/sessions", headers={"Authorization": "Bearer relay-key"})
        assert response.status_code == 200
