"""
API schemas package.

Contains Pydantic models for request/response validation.
"""

from ferrodesk.api.schemas.entitlements import (
    EntitlementRecordResponse,
    EntitlementsListResponse,
    EntitlementStateResponse,
    ForceSyncResponse,
    GrantEntitlementRequest,
    NavigationDecisionResponse,
    RevokeResponse,
    TrialActivationResponse,
    TrialStatusResponse,
)

__all__ = [
    "EntitlementRecordResponse",
    "EntitlementsListResponse",
    "EntitlementStateResponse",
    "ForceSyncResponse",
    "GrantEntitlementRequest",
    "NavigationDecisionResponse",
    "RevokeResponse",
    "TrialActivationResponse",
    "TrialStatusResponse",
]
