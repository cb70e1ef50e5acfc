"""
Tests for the entitlement HTTP API.

Tests cover:
- /api/entitlements: me, trial status, trial activation, sync
- /api/session/logout
- /api/navigation/decision
- /api/admin/entitlements: list, grant, revoke, force sync, role checks
- 401 / 403 / 409 / 503 mapping
"""

import time

import pytest
from fastapi.testclient import TestClient

from ferrodesk.entitlements.cache import CacheSlot


class TestAuthentication:
    """Bearer token handling."""

    def test_missing_token_returns_401(self, client):
        response = client.get("/api/entitlements/me")

        assert response.status_code == 401
        assert response.json()["detail"]["error_code"] == "AUTHENTICATION_FAILED"

    def test_invalid_token_returns_401(self, client):
        response = client.get("/api/entitlements/me", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401

    def test_expired_token_returns_401_with_flag(self, client, auth_headers, user):
        response = client.get("/api/entitlements/me", headers=auth_headers(user, expires_in=-60))

        assert response.status_code == 401
        assert response.json()["detail"]["expired"] is True

    def test_store_not_configured_returns_503(self, monkeypatch):
        from main import create_app

        monkeypatch.delenv("DATABASE_URL", raising=False)
        with TestClient(create_app()) as unconfigured:
            response = unconfigured.get("/api/entitlements/me")
            health = unconfigured.get("/health")

        assert response.status_code == 503
        assert health.json()["database_configured"] is False


class TestUserEntitlements:
    """Routes for the signed-in user."""

    def test_me_without_records_is_denied(self, client, auth_headers, user):
        response = client.get("/api/entitlements/me", headers=auth_headers(user))

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == "user-1"
        assert body["has_access"] is False
        assert body["source"] == "none"

    def test_me_for_admin_is_bypass(self, client, auth_headers, admin):
        body = client.get("/api/entitlements/me", headers=auth_headers(admin)).json()

        assert body["has_access"] is True
        assert body["source"] == "admin_role"

    def test_trial_activation_then_refusal(self, client, auth_headers, user):
        headers = auth_headers(user)

        first = client.post("/api/entitlements/trial", headers=headers)
        second = client.post("/api/entitlements/trial", headers=headers)
        status_response = client.get("/api/entitlements/trial", headers=headers)
        me = client.get("/api/entitlements/me", headers=headers).json()

        assert first.status_code == 201
        assert first.json()["subscription"]["plan_type"] == "trial"
        assert first.json()["subscription"]["period_days"] == 7
        assert second.status_code == 409
        assert second.json()["detail"]["error_code"] == "TRIAL_ALREADY_USED"
        assert status_response.json() == {"trial_used": True}
        assert me["has_access"] is True

    def test_trial_refused_for_entitled_user(self, client, auth_headers, user, seed_subscription):
        seed_subscription(user.user_id, "quarterly")

        response = client.post("/api/entitlements/trial", headers=auth_headers(user))

        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "ALREADY_ENTITLED"

    def test_sync_returns_fresh_state(self, client, auth_headers, user, seed_subscription):
        seed_subscription(user.user_id, "monthly")

        response = client.post("/api/entitlements/sync", headers=auth_headers(user))

        assert response.status_code == 200
        assert response.json()["source"] == "remote"

    def test_sync_resolves_signed_in_user_once(self, client, engine, auth_headers, user, seed_subscription, monkeypatch):
        seed_subscription(user.user_id, "monthly")
        headers = auth_headers(user)
        client.get("/api/entitlements/me", headers=headers)
        assert engine.invalidation_bus.is_watching(user.user_id)

        calls = []
        resolve = engine.resolver.resolve

        async def counting_resolve(user_id, identity=None):
            calls.append(user_id)
            return await resolve(user_id, identity)

        monkeypatch.setattr(engine.resolver, "resolve", counting_resolve)

        response = client.post("/api/entitlements/sync", headers=headers)
        time.sleep(0.2)
        client.get("/health")

        assert response.status_code == 200
        assert response.json()["has_access"] is True
        assert calls == [user.user_id]

    def test_logout_evicts_cache_but_keeps_trial_marker(self, client, engine, auth_headers, user):
        headers = auth_headers(user)
        client.post("/api/entitlements/trial", headers=headers)
        assert engine.cache.read(CacheSlot.USER_GRANTED, user.user_id) is not None

        response = client.post("/api/session/logout", headers=headers)

        assert response.status_code == 200
        assert engine.cache.read(CacheSlot.USER_GRANTED, user.user_id) is None
        assert engine.cache.has_trial_marker(user.user_id) is True


class TestNavigationDecision:
    """Guard decisions for a client-side router."""

    def test_anonymous_decision(self, client):
        body = client.get("/api/navigation/decision", params={"path": "/dashboard"}).json()

        assert body["action"] == "redirect_landing"
        assert body["location"] == "/landing"

    def test_offer_decision_for_user_without_plan(self, client, auth_headers, user):
        body = client.get(
            "/api/navigation/decision", params={"path": "/transactions"}, headers=auth_headers(user)
        ).json()

        assert body["action"] == "show_offer"
        assert body["route_class"] == "subscription"


class TestAdminEntitlements:
    """Admin-only routes."""

    @pytest.mark.security
    def test_non_admin_rejected(self, client, auth_headers, user):
        response = client.post(
            "/api/admin/entitlements/user-2", json={"plan_type": "annual"}, headers=auth_headers(user)
        )

        assert response.status_code == 403

    def test_grant_then_user_is_entitled(self, client, auth_headers, admin, user):
        response = client.post(
            f"/api/admin/entitlements/{user.user_id}",
            json={"plan_type": "Annual"},
            headers=auth_headers(admin),
        )
        me = client.get("/api/entitlements/me", headers=auth_headers(user)).json()

        assert response.status_code == 201
        assert response.json()["plan_type"] == "annual"
        assert response.json()["period_days"] == 365
        assert me["has_access"] is True
        assert me["plan_type"] == "annual"

    def test_grant_with_period_override(self, client, auth_headers, admin):
        response = client.post(
            "/api/admin/entitlements/user-5",
            json={"plan_type": "monthly", "period_days": 45},
            headers=auth_headers(admin),
        )

        assert response.status_code == 201
        assert response.json()["period_days"] == 45

    def test_unknown_plan_rejected(self, client, auth_headers, admin):
        response = client.post(
            "/api/admin/entitlements/user-5", json={"plan_type": "lifetime"}, headers=auth_headers(admin)
        )

        assert response.status_code == 422

    def test_revoke_deactivates_and_denies(self, client, auth_headers, admin, user, seed_subscription):
        seed_subscription(user.user_id, "monthly")

        response = client.delete(f"/api/admin/entitlements/{user.user_id}", headers=auth_headers(admin))
        me = client.get("/api/entitlements/me", headers=auth_headers(user)).json()

        assert response.status_code == 200
        assert response.json() == {"user_id": user.user_id, "deactivated": 1}
        assert me["has_access"] is False

    def test_revoke_without_active_rows_returns_zero(self, client, auth_headers, admin):
        response = client.delete("/api/admin/entitlements/user-9", headers=auth_headers(admin))

        assert response.json()["deactivated"] == 0

    def test_list_all(self, client, auth_headers, admin, seed_subscription):
        seed_subscription("user-1", "monthly")
        seed_subscription("user-2", "trial", activation_method="trial")

        response = client.get("/api/admin/entitlements", params={"limit": 10}, headers=auth_headers(admin))

        assert response.status_code == 200
        assert {e["user_id"] for e in response.json()["entitlements"]} == {"user-1", "user-2"}

    def test_force_sync_for_signed_in_user(self, client, auth_headers, admin, user):
        client.get("/api/entitlements/me", headers=auth_headers(user))

        response = client.post(f"/api/admin/entitlements/{user.user_id}/sync", headers=auth_headers(admin))

        assert response.status_code == 200
        assert response.json() == {"user_id": user.user_id, "queued": True}
