"""
Identity and engine dependencies.

Provides reusable FastAPI dependencies for resolving the entitlement engine
and the authenticated caller from the request.
"""

import logging

from fastapi import Depends, HTTPException, Request, status

from ferrodesk.auth.identity import AuthenticationError, Identity, bearer_token_from_header
from ferrodesk.entitlements.engine import EntitlementEngine

logger = logging.getLogger(__name__)


def get_engine(request: Request) -> EntitlementEngine:
    """
    Return the app's EntitlementEngine.

    Raises 503 when the engine was not built (DATABASE_URL unset at startup).
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Entitlement store is not configured",
        )
    return engine


def get_current_identity(
    request: Request,
    engine: EntitlementEngine = Depends(get_engine),
) -> Identity:
    """
    Authenticate the bearer token and record the session.

    Raises 401 on a missing, invalid or expired token.
    """
    token = bearer_token_from_header(request.headers.get("Authorization"))
    try:
        identity = engine.identity_provider.authenticate(token)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )
    engine.identity_provider.observe(identity)
    return identity


def verify_admin_role(identity: Identity = Depends(get_current_identity)) -> Identity:
    """
    Verify that the caller has the admin role.

    SECURITY: Admin endpoints require explicit admin role.
    """
    if not identity.is_admin:
        logger.warning("Unauthorized admin access attempt", extra={
            "user_id": identity.user_id,
            "role": identity.role,
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return identity
