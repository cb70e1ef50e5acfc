"""
Entitlement API routes for the signed-in user.

All routes require a valid bearer token.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from ferrodesk.api.dependencies.identity import get_current_identity, get_engine
from ferrodesk.api.schemas.entitlements import (
    EntitlementRecordResponse,
    EntitlementStateResponse,
    TrialActivationResponse,
    TrialStatusResponse,
)
from ferrodesk.auth.identity import Identity
from ferrodesk.entitlements.engine import EntitlementEngine
from ferrodesk.entitlements.errors import (
    ActivationUnavailableError,
    AlreadyEntitledError,
    TrialAlreadyUsedError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.get("/me", response_model=EntitlementStateResponse)
async def get_my_entitlement(
    identity: Identity = Depends(get_current_identity),
    engine: EntitlementEngine = Depends(get_engine),
):
    """Resolve the caller's entitlement now."""
    state = await engine.resolver.resolve(identity.user_id, identity)
    return EntitlementStateResponse.from_state(state)


@router.get("/trial", response_model=TrialStatusResponse)
async def get_trial_status(
    identity: Identity = Depends(get_current_identity),
    engine: EntitlementEngine = Depends(get_engine),
):
    used = await engine.trial_workflow.has_used_trial_ever(identity.user_id)
    return TrialStatusResponse(trial_used=used)


@router.post("/trial", response_model=TrialActivationResponse, status_code=status.HTTP_201_CREATED)
async def activate_trial(
    identity: Identity = Depends(get_current_identity),
    engine: EntitlementEngine = Depends(get_engine),
):
    """
    Activate the caller's one free trial.

    Returns 409 if the trial was already used or a plan is active, and
    503 if the store could not confirm the current state.
    """
    result = await engine.trial_workflow.activate_trial(identity.user_id, caller=identity)
    if result.ok:
        return TrialActivationResponse(
            success=True,
            subscription=EntitlementRecordResponse.from_record(result.record),
        )

    error = result.error
    if isinstance(error, (TrialAlreadyUsedError, AlreadyEntitledError)):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(error, ActivationUnavailableError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_400_BAD_REQUEST

    logger.info(
        "Trial activation rejected",
        extra={"user_id": identity.user_id, "error_code": error.error_code},
    )
    raise HTTPException(status_code=status_code, detail=error.to_dict())


@router.post("/sync", response_model=EntitlementStateResponse)
async def sync_entitlement(
    identity: Identity = Depends(get_current_identity),
    engine: EntitlementEngine = Depends(get_engine),
):
    """
    Visibility hook: the client regained focus.

    Resolves once through the invalidation bus so other listeners for
    this user see the fresh state without a second resolution.
    """
    state = await engine.invalidation_bus.refresh(identity.user_id, identity, detail="sync")
    return EntitlementStateResponse.from_state(state)
