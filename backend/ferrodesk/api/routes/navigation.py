"""
Navigation decision route.

Lets a client-side router ask the access guard what to do with a path
before rendering it. Anonymous callers are allowed; a missing or invalid
token is evaluated as signed out.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request

from ferrodesk.api.dependencies.identity import get_engine
from ferrodesk.api.schemas.entitlements import NavigationDecisionResponse
from ferrodesk.auth.identity import AuthenticationError, bearer_token_from_header
from ferrodesk.entitlements.engine import EntitlementEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/navigation", tags=["navigation"])


@router.get("/decision", response_model=NavigationDecisionResponse)
async def get_navigation_decision(
    request: Request,
    path: str = Query(..., description="Page path, e.g. /dashboard", min_length=1, max_length=512),
    engine: EntitlementEngine = Depends(get_engine),
):
    identity = None
    token = bearer_token_from_header(request.headers.get("Authorization"))
    if token:
        try:
            identity = engine.identity_provider.authenticate(token)
            engine.identity_provider.observe(identity)
        except AuthenticationError as e:
            logger.debug("Navigation decision for signed-out caller", extra={"error": e.message})

    decision = await engine.guard.evaluate(path, identity, method="GET")
    return NavigationDecisionResponse(**decision.to_dict())


pages_router = APIRouter(tags=["pages"])


@pages_router.get("/app/{page_path:path}", include_in_schema=False)
async def page_shell(request: Request, page_path: str):
    """
    App shell for a guarded page.

    Only reached when AccessGuardMiddleware allowed the navigation; the
    front end renders the page itself.
    """
    decision = getattr(request.state, "guard_decision", None)
    return {
        "path": "/" + page_path.strip("/"),
        "guard": decision.to_dict() if decision else None,
    }
