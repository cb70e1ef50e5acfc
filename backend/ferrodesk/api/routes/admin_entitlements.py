"""
Admin entitlement API routes.

SECURITY: All routes require admin role verification.
These endpoints let the back-office owner grant, revoke, list and
force-sync user entitlements.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from ferrodesk.api.dependencies.identity import get_engine, verify_admin_role
from ferrodesk.api.schemas.entitlements import (
    EntitlementRecordResponse,
    EntitlementsListResponse,
    ForceSyncResponse,
    GrantEntitlementRequest,
    RevokeResponse,
)
from ferrodesk.auth.identity import Identity
from ferrodesk.entitlements.engine import EntitlementEngine
from ferrodesk.entitlements.errors import (
    EntitlementConflictError,
    EntitlementPermissionError,
    EntitlementValidationError,
    RemoteUnavailableError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/entitlements", tags=["admin-entitlements"])


@router.get("", response_model=EntitlementsListResponse)
async def list_entitlements(
    limit: Optional[int] = Query(100, ge=1, le=1000, description="Maximum rows to return"),
    offset: int = Query(0, ge=0, description="Number of rows to skip"),
    admin: Identity = Depends(verify_admin_role),
    engine: EntitlementEngine = Depends(get_engine),
):
    """
    List every entitlement row, newest first.

    Requires admin role.
    """
    logger.info("Admin listing entitlements", extra={"user_id": admin.user_id, "limit": limit, "offset": offset})
    try:
        records = await engine.admin.list_all(admin, limit=limit, offset=offset)
    except RemoteUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())

    return EntitlementsListResponse(
        entitlements=[EntitlementRecordResponse.from_record(r) for r in records],
        limit=limit,
        offset=offset,
    )


@router.post("/{user_id}", response_model=EntitlementRecordResponse, status_code=status.HTTP_201_CREATED)
async def grant_entitlement(
    body: GrantEntitlementRequest,
    user_id: str = Path(..., min_length=1, max_length=255),
    admin: Identity = Depends(verify_admin_role),
    engine: EntitlementEngine = Depends(get_engine),
):
    """
    Grant a plan to a user, replacing any active grant.

    Requires admin role.
    """
    try:
        record = await engine.admin.grant(user_id, body.plan_type, admin, period_days=body.period_days)
    except EntitlementValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())
    except EntitlementPermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.to_dict())
    except EntitlementConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.to_dict())
    except RemoteUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())

    return EntitlementRecordResponse.from_record(record)


@router.delete("/{user_id}", response_model=RevokeResponse)
async def revoke_entitlement(
    user_id: str = Path(..., min_length=1, max_length=255),
    admin: Identity = Depends(verify_admin_role),
    engine: EntitlementEngine = Depends(get_engine),
):
    """Deactivate every active grant of a user. Requires admin role."""
    try:
        count = await engine.admin.revoke(user_id, admin)
    except EntitlementPermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.to_dict())
    except RemoteUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.to_dict())

    return RevokeResponse(user_id=user_id, deactivated=count)


@router.post("/{user_id}/sync", response_model=ForceSyncResponse)
async def force_sync(
    user_id: str = Path(..., min_length=1, max_length=255),
    admin: Identity = Depends(verify_admin_role),
    engine: EntitlementEngine = Depends(get_engine),
):
    engine.admin.force_sync(user_id, admin)
    return ForceSyncResponse(user_id=user_id, queued=engine.invalidation_bus.is_watching(user_id))
