"""
Administrator entitlement operations.

SECURITY: Every operation requires an admin caller; the store client
re-checks the role before any write.
"""

import logging
from typing import List, Optional

from ferrodesk.auth.identity import Identity
from ferrodesk.config.settings import EntitlementSettings, get_settings
from ferrodesk.entitlements.cache import EntitlementCacheLayer
from ferrodesk.entitlements.errors import EntitlementPermissionError
from ferrodesk.entitlements.events import EntitlementEvent, EventBus
from ferrodesk.entitlements.models import (
    ActivationMethod,
    EntitlementRecord,
    PlanType,
    expiry_from_now,
    period_days_for,
)
from ferrodesk.entitlements.store_client import EntitlementStoreClient

logger = logging.getLogger(__name__)


class EntitlementAdminService:
    """Grant, revoke, list and force-sync entitlements on behalf of an admin."""

    def __init__(
        self,
        store_client: EntitlementStoreClient,
        cache: EntitlementCacheLayer,
        event_bus: EventBus,
        settings: Optional[EntitlementSettings] = None,
    ):
        self._store = store_client
        self._cache = cache
        self._events = event_bus
        self._settings = settings or get_settings()

    @staticmethod
    def _require_admin(caller: Optional[Identity], operation: str, user_id: Optional[str]) -> None:
        if caller is None or not caller.is_admin:
            raise EntitlementPermissionError(operation, caller.user_id if caller else None, user_id)

    async def grant(
        self,
        user_id: str,
        plan_type,
        caller: Identity,
        period_days: Optional[int] = None,
    ) -> EntitlementRecord:
        """
        Grant a plan to a user, replacing any active grant.

        Args:
            user_id: User receiving the grant
            plan_type: PlanType or its string value
            caller: Admin identity
            period_days: Override of the plan's default period

        Returns:
            The created EntitlementRecord
        """
        self._require_admin(caller, "grant entitlement", user_id)
        plan = PlanType.parse(plan_type)
        days = period_days if period_days is not None else period_days_for(plan, self._settings.plan_period_days)

        record = await self._store.create(
            user_id,
            plan,
            expiry_from_now(plan, days),
            ActivationMethod.ADMIN,
            caller=caller,
        )
        self._cache.write_through(user_id, record)
        if plan is PlanType.TRIAL:
            self._cache.mark_trial_used(user_id)
        self._events.emit(
            EntitlementEvent.ADMIN_SUBSCRIPTION_CREATED,
            user_id,
            plan_type=plan.value,
            expires_at=record.expires_at.isoformat(),
        )
        logger.info(
            "Admin granted entitlement",
            extra={"user_id": user_id, "plan_type": plan.value, "period_days": days, "caller_id": caller.user_id},
        )
        return record

    async def revoke(self, user_id: str, caller: Identity) -> int:
        """Deactivate every active grant of a user. Returns rows deactivated."""
        self._require_admin(caller, "revoke entitlement", user_id)
        count = await self._store.deactivate(user_id, caller=caller)
        self._cache.evict_all(user_id)
        self._events.emit(EntitlementEvent.ADMIN_SUBSCRIPTION_DEACTIVATED, user_id, count=count)
        logger.info(
            "Admin revoked entitlement",
            extra={"user_id": user_id, "count": count, "caller_id": caller.user_id},
        )
        return count

    async def list_all(self, caller: Identity, limit: Optional[int] = None, offset: int = 0) -> List[EntitlementRecord]:
        return await self._store.list_all(caller=caller, limit=limit, offset=offset)

    def force_sync(self, user_id: str, caller: Identity) -> None:
        """Ask every session of a user to re-resolve now."""
        self._require_admin(caller, "force entitlement sync", user_id)
        self._events.emit(EntitlementEvent.FORCE_USER_SYNC, user_id)
        logger.info("Admin forced entitlement sync", extra={"user_id": user_id, "caller_id": caller.user_id})
