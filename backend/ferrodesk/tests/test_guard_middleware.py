"""
Tests for AccessGuardMiddleware.

Tests cover:
- Redirects for anonymous and authenticated callers
- 402 blocking offer on subscription pages
- Admin bypass on every guarded page
- Excluded paths and fail-closed behavior
"""

from unittest.mock import AsyncMock, patch

import pytest

from ferrodesk.entitlements.guard import GuardAction, GuardDecision, GuardState, RouteClass
from ferrodesk.entitlements.middleware import AccessGuardMiddleware, OfferRequiredError, build_offer


class TestRedirects:
    """Navigation outcomes that send the caller elsewhere."""

    def test_anonymous_caller_redirected_to_landing(self, client):
        response = client.get("/app/dashboard", follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == "/app/landing"

    def test_anonymous_caller_may_open_public_pages(self, client):
        response = client.get("/app/planos")

        assert response.status_code == 200
        assert response.json()["guard"]["action"] == "allow"

    def test_signed_in_user_sent_home_from_login(self, client, auth_headers, user):
        response = client.get("/app/login", headers=auth_headers(user), follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == "/app/"

    @pytest.mark.security
    def test_non_admin_sent_home_from_admin_page(self, client, auth_headers, user, seed_subscription):
        seed_subscription(user.user_id, "annual")

        response = client.get("/app/covildomal", headers=auth_headers(user), follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == "/app/"

    def test_expired_token_treated_as_signed_out(self, client, auth_headers, user):
        response = client.get(
            "/app/dashboard", headers=auth_headers(user, expires_in=-60), follow_redirects=False
        )

        assert response.status_code == 307
        assert response.headers["location"] == "/app/landing"


class TestOffer:
    """Subscription pages without an entitlement."""

    def test_offer_returned_with_payment_required(self, client, auth_headers, user):
        response = client.get("/app/dashboard", headers=auth_headers(user))

        assert response.status_code == 402
        body = response.json()
        assert body["error_code"] == "SUBSCRIPTION_REQUIRED"
        assert body["path"] == "/dashboard"
        assert body["offer"]["trial_available"] is True
        assert body["offer"]["actions"] == {
            "activate_trial": "/api/entitlements/trial",
            "view_plans": "/planos",
            "guide": "/guia-completo",
        }

    def test_offer_hides_trial_after_it_was_used(self, client, auth_headers, user, seed_subscription):
        seed_subscription(user.user_id, "trial", expires_in_days=-1, is_active=False, activation_method="trial")

        response = client.get("/app/materiais", headers=auth_headers(user))

        assert response.status_code == 402
        offer = response.json()["offer"]
        assert offer["trial_available"] is False
        assert offer["actions"]["activate_trial"] is None

    def test_entitled_user_reaches_page(self, client, auth_headers, user, seed_subscription):
        seed_subscription(user.user_id, "monthly")

        response = client.get("/app/expenses", headers=auth_headers(user))

        assert response.status_code == 200
        assert response.json()["guard"]["state"] == "authenticated_entitled"

    def test_guide_open_without_entitlement(self, client, auth_headers, user):
        response = client.get("/app/guia-completo", headers=auth_headers(user))

        assert response.status_code == 200

    def test_offer_error_shape(self):
        error = OfferRequiredError("plan required", path="/dashboard", offer={"trial_available": True})

        assert error.status_code == 402
        assert error.detail["error"] == "entitlement_required"
        assert error.detail["offer"] == {"trial_available": True}


class TestAdminBypass:
    """Admins reach every guarded page."""

    @pytest.mark.parametrize("page", ["/", "/dashboard", "/covildomal", "/guia-completo", "/login"])
    def test_admin_allowed(self, client, auth_headers, admin, page):
        response = client.get(f"/app{page}", headers=auth_headers(admin), follow_redirects=False)

        assert response.status_code == 200
        assert response.json()["guard"]["state"] == "admin_bypass"


class TestMiddlewarePlumbing:
    """Excluded paths, loading and failure handling."""

    def test_health_is_not_guarded(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["cache_backend"] == "memory"

    def test_default_exclusions(self):
        assert "/api" in AccessGuardMiddleware.default_excluded()
        assert "/health" in AccessGuardMiddleware.default_excluded()

    def test_evaluation_failure_fails_closed(self, client, engine, auth_headers, user):
        with patch.object(engine.guard, "evaluate", AsyncMock(side_effect=RuntimeError("resolver exploded"))):
            response = client.get("/app/dashboard", headers=auth_headers(user))

        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"
        assert response.json()["error_code"] == "SERVICE_UNAVAILABLE"

    def test_loading_state_asks_client_to_retry(self, client, engine):
        loading = GuardDecision(
            action=GuardAction.WAIT,
            state=GuardState.LOADING,
            route_class=RouteClass.SUBSCRIPTION,
            path="/dashboard",
        )
        with patch.object(engine.guard, "evaluate", AsyncMock(return_value=loading)):
            response = client.get("/app/dashboard")

        assert response.status_code == 503
        assert response.json()["error_code"] == "LOADING"
        assert "retry-after" in response.headers

    def test_build_offer_without_trial(self, settings):
        offer = build_offer(settings.offer, trial_available=False)

        assert offer["actions"]["activate_trial"] is None
        assert offer["actions"]["view_plans"] == "/planos"
