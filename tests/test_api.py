"""Tests for all HTTP API endpoints.

Covers the health check, quota endpoints for anonymous and authenticated
callers, the admin tier endpoint, and the telemetry endpoints, with error
cases and edge cases.
"""

from unittest.mock import patch

from metering.config import settings
from metering.services.errors import StorageUnavailableError
from tests.conftest import TEST_ADMIN_TOKEN


class TestHealthCheck:
    """Tests for the GET / health check endpoint."""

    def test_returns_healthy_status(self, client):
        """Health check should return status 'healthy'."""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == settings.APP_NAME


class TestAnonymousQuota:
    """Tests for quota endpoints without an auth token."""

    def test_first_request_sets_session_cookie(self, client):
        response = client.get("/api/v1/quota/status")
        assert response.status_code == 200
        assert response.cookies.get(settings.SESSION_COOKIE_NAME, "").startswith("anon_")
        data = response.json()
        assert data["identity_kind"] == "anonymous"
        assert data["remaining"] == 3

    def test_existing_cookie_is_kept(self, client):
        client.cookies.set(settings.SESSION_COOKIE_NAME, "anon_existing")
        response = client.post("/api/v1/quota/consume")
        assert response.status_code == 200
        assert settings.SESSION_COOKIE_NAME not in response.cookies

    def test_lifetime_cap_returns_429(self, client):
        client.cookies.set(settings.SESSION_COOKIE_NAME, "anon_capped")
        for expected in (1, 2, 3):
            response = client.post("/api/v1/quota/consume")
            assert response.status_code == 200
            assert response.json()["used"] == expected

        response = client.post("/api/v1/quota/consume")
        assert response.status_code == 429
        body = response.json()
        assert (body["limit"], body["used"], body["tier"]) == (3, 3, "anonymous")
        assert body["reset_at"] is None
        assert "Generation limit reached" in body["detail"]

    def test_invalid_token_falls_back_to_anonymous(self, client):
        client.cookies.set(settings.SESSION_COOKIE_NAME, "anon_fallback")
        response = client.post(
            "/api/v1/quota/consume", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 200
        assert response.json()["identity_kind"] == "anonymous"


class TestAuthenticatedQuota:
    """Tests for quota endpoints with a bearer token."""

    def test_consume_and_status(self, client, auth_headers):
        headers = auth_headers("user-1")
        response = client.post("/api/v1/quota/consume", json={"cost": 2}, headers=headers)
        assert response.status_code == 200
        data = response.json()
        assert data["identity_kind"] == "authenticated"
        assert (data["tier"], data["limit"], data["used"], data["cost"]) == ("free", 3, 2, 2)
        assert data["reset_at"] == "2024-04-01T00:00:00"

        status = client.get("/api/v1/quota/status", headers=headers).json()
        assert status["remaining"] == 1

    def test_exceeded_returns_reset_time(self, client, auth_headers):
        headers = auth_headers("user-1")
        client.post("/api/v1/quota/consume", json={"cost": 3}, headers=headers)
        response = client.post("/api/v1/quota/consume", headers=headers)
        assert response.status_code == 429
        assert response.json()["reset_at"] == "2024-04-01T00:00:00"
        assert response.json()["tier"] == "free"

    def test_refund(self, client, auth_headers):
        headers = auth_headers("user-1")
        client.post("/api/v1/quota/consume", json={"cost": 3}, headers=headers)
        response = client.post("/api/v1/quota/refund", json={"cost": 1}, headers=headers)
        assert response.status_code == 200
        assert response.json()["used"] == 2

    def test_invalid_cost_returns_422(self, client, auth_headers):
        response = client.post(
            "/api/v1/quota/consume", json={"cost": 0}, headers=auth_headers("user-1")
        )
        assert response.status_code == 422

    def test_storage_failure_returns_503(self, client, ledger, auth_headers):
        with patch.object(
            ledger, "check_and_consume", side_effect=StorageUnavailableError("db down")
        ):
            response = client.post("/api/v1/quota/consume", headers=auth_headers("user-1"))
        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"


class TestTierEndpoint:
    """Tests for PUT /api/v1/quota/users/{user_id}/tier."""

    def test_upgrade_with_admin_token(self, client, auth_headers):
        response = client.put(
            "/api/v1/quota/users/user-1/tier",
            json={"tier": "paid"},
            headers={"X-Admin-Token": TEST_ADMIN_TOKEN},
        )
        assert response.status_code == 200
        assert (response.json()["tier"], response.json()["limit"]) == ("paid", 25)

        status = client.get("/api/v1/quota/status", headers=auth_headers("user-1")).json()
        assert status["limit"] == 25

    def test_custom_limit(self, client):
        response = client.put(
            "/api/v1/quota/users/user-1/tier",
            json={"tier": "paid", "monthly_limit": 100},
            headers={"X-Admin-Token": TEST_ADMIN_TOKEN},
        )
        assert response.json()["limit"] == 100

    def test_missing_or_wrong_token_returns_403(self, client):
        url = "/api/v1/quota/users/user-1/tier"
        assert client.put(url, json={"tier": "paid"}).status_code == 403
        response = client.put(url, json={"tier": "paid"}, headers={"X-Admin-Token": "nope"})
        assert response.status_code == 403

    def test_disabled_without_configured_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_TOKEN", None)
        response = client.put(
            "/api/v1/quota/users/user-1/tier",
            json={"tier": "paid"},
            headers={"X-Admin-Token": TEST_ADMIN_TOKEN},
        )
        assert response.status_code == 403
        assert "disabled" in response.json()["detail"]

    def test_unknown_tier_returns_422(self, client):
        response = client.put(
            "/api/v1/quota/users/user-1/tier",
            json={"tier": "gold"},
            headers={"X-Admin-Token": TEST_ADMIN_TOKEN},
        )
        assert response.status_code == 422

    def test_overlong_user_id_returns_400(self, client):
        response = client.put(
            f"/api/v1/quota/users/{'x' * 300}/tier",
            json={"tier": "paid"},
            headers={"X-Admin-Token": TEST_ADMIN_TOKEN},
        )
        assert response.status_code == 400


class TestTelemetryEndpoints:
    """Tests for the /api/v1/telemetry endpoints."""

    def test_start_session_anonymous(self, client):
        client.cookies.set(settings.SESSION_COOKIE_NAME, "anon_reader")
        response = client.post(
            "/api/v1/telemetry/sessions",
            json={"session_id": "s1"},
            headers={"User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64)"},
        )
        assert response.status_code == 200
        data = response.json()
        assert data["id"] == "s1"
        assert data["visitor_id"] == "anon_reader"
        assert data["user_id"] is None
        assert data["device_type"] == "DESKTOP"

    def test_start_session_authenticated(self, client, auth_headers):
        response = client.post("/api/v1/telemetry/sessions", headers=auth_headers("user-1"))
        assert response.status_code == 200
        assert response.json()["user_id"] == "user-1"

    def test_record_batch(self, client):
        client.post("/api/v1/telemetry/sessions", json={"session_id": "s1"})
        response = client.post(
            "/api/v1/telemetry/events",
            json={
                "events": [
                    {"session_id": "s1", "kind": "page_view", "payload": {"page_path": "/a"}},
                    {
                        "session_id": "s1",
                        "kind": "event",
                        "payload": {"event_type": "click", "event_action": "share"},
                    },
                    {"session_id": "s1", "kind": "page_view", "payload": {}},
                    {
                        "session_id": "s1",
                        "kind": "chat_turn",
                        "payload": {"conversation_id": "c1", "tokens_used": 12},
                    },
                ]
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 3
        assert data["session_ids"] == ["s1", "s1", "s1"]
        assert len(data["errors"]) == 1
        assert data["errors"][0].startswith("events[2]")

        summary = client.get("/api/v1/telemetry/sessions/s1").json()
        assert (summary["page_views"], summary["events_count"]) == (1, 1)
        assert summary["bounce"] is False
        assert summary["exit_page"] == "/a"
        assert summary["conversations"][0]["tokens_used"] == 12

    def test_authenticated_records_carry_user_id(self, client, auth_headers, test_session):
        from metering.models import PageView

        event = {"session_id": "s9", "kind": "page_view", "payload": {"page_path": "/"}}
        client.post(
            "/api/v1/telemetry/events",
            json={"events": [event]},
            headers=auth_headers("user-1"),
        )
        assert test_session.query(PageView).one().user_id == "user-1"

    def test_anonymous_caller_cannot_claim_user_id(self, client, test_session):
        from metering.models import AnalyticsSession, PageView

        client.cookies.set(settings.SESSION_COOKIE_NAME, "anon_intruder")
        event = {
            "session_id": "s9",
            "kind": "page_view",
            "payload": {"page_path": "/", "user_id": "victim"},
        }
        response = client.post("/api/v1/telemetry/events", json={"events": [event]})
        assert response.status_code == 200
        assert response.json()["processed"] == 1

        assert test_session.query(PageView).one().user_id is None
        stored = test_session.get(AnalyticsSession, "s9")
        assert stored.user_id is None
        assert stored.visitor_id == "anon_intruder"

    def test_authenticated_payload_user_id_is_overridden(
        self, client, auth_headers, test_session
    ):
        from metering.models import PageView

        event = {
            "session_id": "s9",
            "kind": "page_view",
            "payload": {"page_path": "/", "user_id": "victim"},
        }
        client.post(
            "/api/v1/telemetry/events",
            json={"events": [event]},
            headers=auth_headers("user-1"),
        )
        assert test_session.query(PageView).one().user_id == "user-1"

    def test_beacon_opened_session_keeps_request_context(self, client, test_session):
        from metering.models import AnalyticsSession

        client.cookies.set(settings.SESSION_COOKIE_NAME, "anon_reader")
        event = {"session_id": "s5", "kind": "page_view", "payload": {"page_path": "/"}}
        client.post(
            "/api/v1/telemetry/events",
            json={"events": [event]},
            headers={
                "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64)",
                "X-Forwarded-For": "198.51.100.4",
            },
        )
        summary = client.get("/api/v1/telemetry/sessions/s5").json()
        assert summary["visitor_id"] == "anon_reader"
        assert summary["device_type"] == "DESKTOP"
        assert test_session.get(AnalyticsSession, "s5").ip_address == "198.51.100.4"

    def test_batch_too_large_returns_400(self, client):
        events = [
            {"session_id": "s1", "kind": "page_view", "payload": {"page_path": "/"}}
        ] * (settings.MAX_EVENTS_PER_BATCH + 1)
        response = client.post("/api/v1/telemetry/events", json={"events": events})
        assert response.status_code == 400

    def test_unknown_kind_returns_422(self, client):
        response = client.post(
            "/api/v1/telemetry/events",
            json={"events": [{"session_id": "s1", "kind": "heartbeat", "payload": {}}]},
        )
        assert response.status_code == 422

    def test_end_session(self, client):
        client.post("/api/v1/telemetry/sessions", json={"session_id": "s1"})
        response = client.post("/api/v1/telemetry/sessions/s1/end")
        assert response.status_code == 200
        assert response.json()["ended_at"] is not None
        assert response.json()["is_active"] is False

    def test_unknown_session_returns_404(self, client):
        assert client.get("/api/v1/telemetry/sessions/missing").status_code == 404
        assert client.post("/api/v1/telemetry/sessions/missing/end").status_code == 404
