"""
Access Guard Middleware - enforces the guard on page navigations.

Requests under the guarded prefix (default /app) are page navigations:
/app/dashboard is evaluated as route /dashboard. The guard's action maps to:

- allow            -> request proceeds
- wait             -> 503 with Retry-After (state still loading)
- redirect_*       -> 307 to the landing or home page
- show_offer       -> 402 with the blocking offer payload

API, health and docs paths are never guarded here; API endpoints
authenticate through their own dependencies.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ferrodesk.auth.identity import AuthenticationError, Identity, bearer_token_from_header
from ferrodesk.config.settings import OfferLinks
from ferrodesk.entitlements.guard import GuardAction, GuardDecision

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 1


def build_offer(offer: OfferLinks, trial_available: bool) -> Dict[str, Any]:
    """Payload of the blocking offer shown on subscription routes."""
    return {
        "trial_available": trial_available,
        "actions": {
            "activate_trial": offer.trial_endpoint if trial_available else None,
            "view_plans": offer.plans_path,
            "guide": offer.guide_path,
        },
    }


class OfferRequiredError(HTTPException):
    """HTTP 402 raised when a subscription route needs an active plan."""

    def __init__(
        self,
        detail: str,
        path: str,
        offer: Optional[Dict[str, Any]] = None,
    ):
        error_response = {
            "error": "entitlement_required",
            "error_code": "SUBSCRIPTION_REQUIRED",
            "message": detail,
            "path": path,
            "offer": offer,
        }
        super().__init__(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=error_response,
        )


class AccessGuardMiddleware(BaseHTTPMiddleware):
    """
    Middleware for page-level entitlement enforcement.

    Expects the EntitlementEngine on request.app.state.engine.

    Usage:
        app.add_middleware(AccessGuardMiddleware)
    """

    def __init__(
        self,
        app: ASGIApp,
        exclude_paths: Optional[List[str]] = None,
    ):
        super().__init__(app)
        self.exclude_paths = exclude_paths or self.default_excluded()

    @staticmethod
    def default_excluded() -> List[str]:
        return [
            "/health",
            "/docs",
            "/openapi.json",
            "/redoc",
            "/api",
        ]

    def _should_skip(self, path: str, guarded_prefix: str) -> bool:
        for excluded in self.exclude_paths:
            if path == excluded or path.startswith(excluded + "/"):
                return True
        prefix = guarded_prefix.rstrip("/")
        return not (path == prefix or path.startswith(prefix + "/"))

    @staticmethod
    def _route_path(path: str, guarded_prefix: str) -> str:
        route = path[len(guarded_prefix.rstrip("/")):]
        return route or "/"

    @staticmethod
    def _identity(engine, request: Request) -> Optional[Identity]:
        token = bearer_token_from_header(request.headers.get("Authorization"))
        if token is None:
            return None
        try:
            identity = engine.identity_provider.authenticate(token)
        except AuthenticationError as e:
            logger.debug("Navigation treated as signed out", extra={"error": e.message})
            return None
        engine.identity_provider.observe(identity)
        return identity

    async def dispatch(self, request: Request, call_next):
        engine = getattr(request.app.state, "engine", None)
        if engine is None:
            return await call_next(request)

        path = request.url.path
        guarded_prefix = engine.settings.guarded_prefix
        if self._should_skip(path, guarded_prefix):
            return await call_next(request)

        route = self._route_path(path, guarded_prefix)
        identity = self._identity(engine, request)

        try:
            decision = await engine.guard.evaluate(route, identity, method=request.method)
        except Exception as e:
            # Fail closed
            logger.critical(
                "Access guard evaluation failed",
                extra={"path": path, "error": str(e)},
                exc_info=True,
            )
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "error": "entitlement_check_failed",
                    "error_code": "SERVICE_UNAVAILABLE",
                    "message": "Unable to verify access. Please try again.",
                },
                headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
            )

        request.state.guard_decision = decision
        request.state.identity = identity

        if decision.allowed:
            return await call_next(request)
        return await self._deny(engine, decision, identity, guarded_prefix)

    async def _deny(self, engine, decision: GuardDecision, identity: Optional[Identity], guarded_prefix: str):
        if decision.action is GuardAction.WAIT:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "error": "entitlement_loading",
                    "error_code": "LOADING",
                    "message": "Access is still being verified.",
                    "guard": decision.to_dict(),
                },
                headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
            )

        if decision.action in (GuardAction.REDIRECT_LANDING, GuardAction.REDIRECT_HOME):
            location = guarded_prefix.rstrip("/") + (decision.location or "/")
            return RedirectResponse(url=location, status_code=status.HTTP_307_TEMPORARY_REDIRECT)

        trial_available = not await engine.trial_workflow.has_used_trial_ever(identity.user_id)
        error = OfferRequiredError(
            "An active plan is required to access this page.",
            path=decision.path,
            offer=build_offer(engine.settings.offer, trial_available),
        )
        content = dict(error.detail)
        content["guard"] = decision.to_dict()
        return JSONResponse(status_code=error.status_code, content=content)
