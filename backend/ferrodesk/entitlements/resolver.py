"""
Reconciliation Resolver - the single answer to "may this user in?".

Resolution order:
1. Admin role: granted, no remote or cache lookup
2. Remote store: a valid active record grants and is written through to
   all three cache slots
3. Cache fallback (remote unavailable or no usable record): slots merged
   in priority order, bounded by the cache trust window
4. Otherwise denied; stale slots are evicted

Store failures never escape resolve(); they downgrade to the cache path.
"""

import asyncio
import logging
from typing import Optional

from ferrodesk.auth.identity import Identity
from ferrodesk.config.settings import EntitlementSettings, get_settings
from ferrodesk.entitlements.cache import (
    SLOT_SOURCES,
    EntitlementCacheLayer,
    merge_slots,
)
from ferrodesk.entitlements.errors import RemoteUnavailableError
from ferrodesk.entitlements.models import (
    EntitlementRecord,
    EntitlementSource,
    PlanType,
    ResolvedEntitlementState,
    utcnow,
)
from ferrodesk.entitlements.store_client import EntitlementStoreClient

logger = logging.getLogger(__name__)


class EntitlementResolver:
    """
    Computes ResolvedEntitlementState from the remote store and the cache.

    Concurrent resolve() calls for the same user are not serialized; the
    last cache write wins.
    """

    def __init__(
        self,
        store_client: EntitlementStoreClient,
        cache: EntitlementCacheLayer,
        settings: Optional[EntitlementSettings] = None,
    ):
        self._store = store_client
        self._cache = cache
        self._settings = settings or get_settings()

    async def _fetch_active_with_retry(self, user_id: str) -> Optional[EntitlementRecord]:
        """fetch_active with exponential backoff; re-raises the last failure."""
        attempts = max(0, self._settings.remote_max_retries) + 1
        for attempt in range(attempts):
            try:
                return await self._store.fetch_active(user_id)
            except RemoteUnavailableError:
                if attempt + 1 >= attempts:
                    raise
                delay = self._settings.retry_base_delay_seconds * (2 ** attempt)
                logger.debug(
                    "Retrying entitlement fetch",
                    extra={"user_id": user_id, "attempt": attempt + 1, "delay_seconds": delay},
                )
                if delay > 0:
                    await asyncio.sleep(delay)
        return None

    async def resolve(self, user_id: str, identity: Optional[Identity] = None) -> ResolvedEntitlementState:
        """
        Resolve the current entitlement of a user.

        Args:
            user_id: User to resolve
            identity: Caller identity; an admin role short-circuits to granted

        Returns:
            ResolvedEntitlementState (never raises for store failures)
        """
        if identity is not None and identity.user_id == user_id and identity.is_admin:
            return ResolvedEntitlementState.admin_bypass(user_id)

        remote_answered = False
        try:
            record = await self._fetch_active_with_retry(user_id)
            remote_answered = True
        except RemoteUnavailableError as e:
            record = None
            logger.warning(
                "Entitlement store unavailable, falling back to cache",
                extra={"user_id": user_id, "error": e.message},
            )

        now = utcnow()
        if record is not None and record.is_valid(now):
            self._cache.write_through(user_id, record)
            return ResolvedEntitlementState(
                user_id=user_id,
                has_access=True,
                source=EntitlementSource.REMOTE,
                expires_at=record.expires_at,
                plan_type=record.plan_type,
                resolved_at=now,
            )

        if record is not None:
            logger.info(
                "Active entitlement is soft-expired",
                extra={"user_id": user_id, "plan_type": record.plan_type.value,
                       "expires_at": record.expires_at.isoformat()},
            )

        return self._resolve_from_cache(user_id, remote_answered)

    def _resolve_from_cache(self, user_id: str, remote_answered: bool) -> ResolvedEntitlementState:
        now = utcnow()
        slots = self._cache.read_all(user_id, now)
        merged = merge_slots(slots, now, self._settings.cache_trust_seconds)

        for slot in merged.untrusted:
            logger.info(
                "Evicting cache slot outside trust window",
                extra={"user_id": user_id, "slot": slot.value},
            )
            self._cache.evict(slot, user_id)
        for slot in merged.denying:
            logger.debug("Evicting inactive cache slot", extra={"user_id": user_id, "slot": slot.value})
            self._cache.evict(slot, user_id)

        if merged.grants:
            winner = merged.winner
            logger.info(
                "Entitlement resolved from cache",
                extra={"user_id": user_id, "slot": winner.slot.value, "remote_answered": remote_answered},
            )
            return ResolvedEntitlementState(
                user_id=user_id,
                has_access=True,
                source=SLOT_SOURCES[winner.slot],
                expires_at=winner.expires_at,
                plan_type=self._plan(winner.plan_type),
                resolved_at=now,
            )

        if remote_answered:
            # Remote answered without a grant: every mirror is stale
            evicted = self._cache.evict_all(user_id)
            if evicted:
                logger.debug("Evicted stale cache slots", extra={"user_id": user_id, "count": evicted})

        return ResolvedEntitlementState.denied(user_id)

    @staticmethod
    def _plan(value: Optional[str]) -> Optional[PlanType]:
        if value is None:
            return None
        try:
            return PlanType(value)
        except ValueError:
            return None

    async def has_access_now(self, user_id: str, identity: Optional[Identity] = None) -> bool:
        state = await self.resolve(user_id, identity)
        return state.has_access
