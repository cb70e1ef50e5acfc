"""
Pydantic schemas for the entitlement API.

Request and response models for user, navigation and admin endpoints.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from ferrodesk.entitlements.models import (
    EntitlementRecord,
    PlanType,
    ResolvedEntitlementState,
)


# =============================================================================
# Request Models
# =============================================================================


class GrantEntitlementRequest(BaseModel):
    """Admin request to grant a plan."""

    plan_type: str = Field(..., description="trial, monthly, quarterly or annual")
    period_days: Optional[int] = Field(None, description="Override of the plan's default period", ge=1, le=3650)

    @field_validator("plan_type")
    @classmethod
    def validate_plan_type(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in {p.value for p in PlanType}:
            raise ValueError(f"plan_type must be one of {[p.value for p in PlanType]}")
        return v


# =============================================================================
# Response Models
# =============================================================================


class EntitlementRecordResponse(BaseModel):
    """One remote entitlement row."""

    id: str
    user_id: str
    is_active: bool
    plan_type: str
    expires_at: str
    activated_at: str
    activation_method: str
    created_at: Optional[str] = None
    period_days: int

    @classmethod
    def from_record(cls, record: EntitlementRecord) -> "EntitlementRecordResponse":
        return cls(**record.to_dict())


class EntitlementStateResponse(BaseModel):
    """Outcome of one resolution."""

    user_id: str
    has_access: bool
    source: str
    expires_at: Optional[str] = None
    plan_type: Optional[str] = None
    resolved_at: Optional[str] = None

    @classmethod
    def from_state(cls, state: ResolvedEntitlementState) -> "EntitlementStateResponse":
        return cls(**state.to_dict())


class TrialStatusResponse(BaseModel):
    trial_used: bool


class TrialActivationResponse(BaseModel):
    success: bool
    subscription: EntitlementRecordResponse


class NavigationDecisionResponse(BaseModel):
    """Access guard decision for a page path."""

    action: str
    state: str
    route_class: str
    path: str
    location: Optional[str] = None


class EntitlementsListResponse(BaseModel):
    entitlements: List[EntitlementRecordResponse]
    limit: Optional[int]
    offset: int


class RevokeResponse(BaseModel):
    user_id: str
    deactivated: int


class ForceSyncResponse(BaseModel):
    user_id: str
    queued: bool
