"""
Canonical entitlement domain types.

All modules (store client, cache layer, resolver, trial workflow, guard)
import from here so the enum values and snapshot shapes stay identical.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ferrodesk.entitlements.errors import EntitlementValidationError
from ferrodesk.models.base import as_utc


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PlanType(str, Enum):
    """Entitlement plans. TRIAL is granted at most once per user lifetime."""

    TRIAL = "trial"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"

    @classmethod
    def parse(cls, value: Any) -> "PlanType":
        """Parse a raw plan value, raising EntitlementValidationError if unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise EntitlementValidationError(
                f"Unknown plan type: {value!r}", field="plan_type"
            ) from None


class ActivationMethod(str, Enum):
    """Provenance tag of a grant. Informational only."""

    ADMIN = "admin"
    TRIAL = "trial"
    PAYMENT = "payment"

    @classmethod
    def parse(cls, value: Any) -> "ActivationMethod":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise EntitlementValidationError(
                f"Unknown activation method: {value!r}", field="activation_method"
            ) from None


class EntitlementSource(str, Enum):
    """Where a resolved entitlement decision came from."""

    ADMIN_ROLE = "admin_role"
    REMOTE = "remote"
    CACHE_ADMIN_GRANTED = "cache_admin_granted"
    CACHE_USER_GRANTED = "cache_user_granted"
    CACHE_STATUS_SUMMARY = "cache_status_summary"
    NONE = "none"


DEFAULT_PLAN_PERIOD_DAYS: Dict[str, int] = {
    PlanType.TRIAL.value: 7,
    PlanType.MONTHLY.value: 30,
    PlanType.QUARTERLY.value: 90,
    PlanType.ANNUAL.value: 365,
}


def period_days_for(plan_type: Any, overrides: Optional[Mapping[str, int]] = None) -> int:
    """Number of days a grant of the given plan lasts."""
    plan = PlanType.parse(plan_type)
    table = dict(DEFAULT_PLAN_PERIOD_DAYS)
    if overrides:
        table.update(overrides)
    return table[plan.value]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntitlementRecord:
    """
    Immutable copy of one remote entitlement row.

    is_valid() is the only correct "does this grant access" check: an
    active row whose expires_at has passed is soft-expired.
    """

    id: str
    user_id: str
    is_active: bool
    plan_type: PlanType
    expires_at: datetime
    activated_at: datetime
    activation_method: ActivationMethod
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Any) -> "EntitlementRecord":
        """Build from a UserSubscription ORM row."""
        return cls(
            id=row.id,
            user_id=row.user_id,
            is_active=bool(row.is_active),
            plan_type=PlanType(row.plan_type),
            expires_at=as_utc(row.expires_at),
            activated_at=as_utc(row.activated_at),
            activation_method=ActivationMethod(row.activation_method),
            created_at=as_utc(row.created_at),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)

    @property
    def period_days(self) -> int:
        return max(0, round((self.expires_at - self.activated_at).total_seconds() / 86400))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "is_active": self.is_active,
            "plan_type": self.plan_type.value,
            "expires_at": self.expires_at.isoformat(),
            "activated_at": self.activated_at.isoformat(),
            "activation_method": self.activation_method.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "period_days": self.period_days,
        }


@dataclass(frozen=True)
class ResolvedEntitlementState:
    """Output of one resolution cycle. Never persisted."""

    user_id: str
    has_access: bool
    source: EntitlementSource
    expires_at: Optional[datetime] = None
    plan_type: Optional[PlanType] = None
    resolved_at: Optional[datetime] = None

    @classmethod
    def denied(cls, user_id: str) -> "ResolvedEntitlementState":
        return cls(user_id=user_id, has_access=False, source=EntitlementSource.NONE, resolved_at=utcnow())

    @classmethod
    def admin_bypass(cls, user_id: str) -> "ResolvedEntitlementState":
        return cls(user_id=user_id, has_access=True, source=EntitlementSource.ADMIN_ROLE, resolved_at=utcnow())

    @property
    def from_cache(self) -> bool:
        return self.source.value.startswith("cache_")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "has_access": self.has_access,
            "source": self.source.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "plan_type": self.plan_type.value if self.plan_type else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }


def expiry_from_now(plan_type: Any, period_days: Optional[int] = None, now: Optional[datetime] = None) -> datetime:
    """Compute expires_at for a new grant starting now."""
    days = period_days if period_days is not None else period_days_for(plan_type)
    if days <= 0:
        raise EntitlementValidationError("period_days must be positive", field="period_days")
    return (now or utcnow()) + timedelta(days=days)
