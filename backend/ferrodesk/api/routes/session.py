"""Session routes."""

import logging

from fastapi import APIRouter, Depends

from ferrodesk.api.dependencies.identity import get_current_identity, get_engine
from ferrodesk.auth.identity import Identity
from ferrodesk.entitlements.engine import EntitlementEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/session", tags=["session"])


@router.post("/logout")
async def logout(
    identity: Identity = Depends(get_current_identity),
    engine: EntitlementEngine = Depends(get_engine),
):
    """End the caller's session. Their cache slots are evicted by the engine."""
    engine.identity_provider.sign_out(identity.user_id)
    return {"user_id": identity.user_id, "signed_out": True}
