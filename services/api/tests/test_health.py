"""Smoke tests for health endpoints and app-wide error handling."""

from fastapi import status

from chat_fakes import ALICE_KEY


class TestHealthSmoke:
    """Smoke tests for health check endpoints."""

    def test_health_endpoint_returns_200(self, client):
        """Test that /health endpoint returns 200 OK."""
        response = client.get("/health")
        assert response.status_code == status.HTTP_200_OK

    def test_health_reports_storage_and_sessions(self, client, start_chat):
        """Storage is up and the live session count is reported."""
        start_chat(ALICE_KEY)

        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["checks"] == {"api": True, "storage": True}
        assert data["active_sessions"] == 1
        assert "timestamp" in data
        assert "version" in data


class TestReadinessSmoke:
    """Smoke tests for readiness endpoint."""

    def test_ready_when_collaborators_are_wired(self, client):
        data = client.get("/health/ready").json()

        assert data["ready"] is True
        assert data["checks"]["registry"] is True


class TestErrorHandling:
    """Tests for the shared error envelope."""

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "req-123"})

        assert response.headers["X-Correlation-ID"] == "req-123"

    def test_app_errors_carry_correlation_id(self, client):
        response = client.get("/user/chats", headers={"X-Correlation-ID": "req-456"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json() == {"error": "API key required", "correlation_id": "req-456"}

    def test_unknown_route(self, client):
        response = client.get("/nope")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "Not Found"

    def test_malformed_body_is_bad_request(self, client):
        response = client.post(
            "/api/startchat",
            content="not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["error"] == "Invalid request"
