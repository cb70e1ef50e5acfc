"""
Trial-Once Workflow - grants the free trial at most once per user lifetime.

Sequence (first failing precondition wins):
1. has_used_trial_ever  -> TrialAlreadyUsedError
2. valid active entitlement -> AlreadyEntitledError
3. deactivate stale actives (best effort)
4. create trial row (now + 7 days)
5. set local lifetime marker, write through cache slots, emit trialActivated

The one-trial unique index turns a concurrent second activation into a
store conflict, which is reported as TrialAlreadyUsedError.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ferrodesk.auth.identity import Identity
from ferrodesk.config.settings import EntitlementSettings, get_settings
from ferrodesk.entitlements.cache import EntitlementCacheLayer
from ferrodesk.entitlements.errors import (
    ActivationError,
    ActivationUnavailableError,
    AlreadyEntitledError,
    EntitlementConflictError,
    RemoteUnavailableError,
    TrialAlreadyUsedError,
)
from ferrodesk.entitlements.events import EntitlementEvent, EventBus
from ferrodesk.entitlements.models import (
    ActivationMethod,
    EntitlementRecord,
    PlanType,
    expiry_from_now,
    period_days_for,
)
from ferrodesk.entitlements.store_client import EntitlementStoreClient
from ferrodesk.models.user_subscription import TRIAL_ROW_INDEX

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrialActivationResult:
    """Typed outcome of activate_trial()."""

    record: Optional[EntitlementRecord] = None
    error: Optional[ActivationError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.record is not None

    @classmethod
    def success(cls, record: EntitlementRecord) -> "TrialActivationResult":
        return cls(record=record)

    @classmethod
    def failure(cls, error: ActivationError) -> "TrialActivationResult":
        return cls(error=error)

    def to_dict(self) -> dict:
        if self.ok:
            return {"success": True, "subscription": self.record.to_dict()}
        return {"success": False, **self.error.to_dict()}


class TrialWorkflow:
    """
    Orchestrates trial activation across the store, the cache and the bus.

    Usage:
        workflow = TrialWorkflow(store_client, cache, event_bus)
        result = await workflow.activate_trial(user_id)
        if not result.ok:
            show(result.error.message)
    """

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

    async def has_used_trial_ever(self, user_id: str) -> bool:
        """
        Whether the user ever held a trial.

        Remote trial rows are authoritative and also set the local marker.
        If the store is unreachable the local marker answers alone.
        """
        try:
            if await self._store.has_trial_record(user_id):
                self._cache.mark_trial_used(user_id)
                return True
        except RemoteUnavailableError as e:
            logger.warning(
                "Trial usage check fell back to local marker",
                extra={"user_id": user_id, "error": e.message},
            )
        return self._cache.has_trial_marker(user_id)

    async def activate_trial(self, user_id: str, caller: Optional[Identity] = None) -> TrialActivationResult:
        """
        Activate the free trial for a user.

        Args:
            user_id: User receiving the trial
            caller: Identity performing the activation (defaults to the user)

        Returns:
            TrialActivationResult with the created record or a typed error
        """
        caller = caller or Identity(user_id=user_id)

        if await self.has_used_trial_ever(user_id):
            logger.info("Trial activation refused: already used", extra={"user_id": user_id})
            return TrialActivationResult.failure(TrialAlreadyUsedError(user_id))

        try:
            current = await self._store.fetch_active(user_id)
        except RemoteUnavailableError as e:
            return TrialActivationResult.failure(ActivationUnavailableError(user_id, e))

        if current is not None and current.is_valid():
            logger.info(
                "Trial activation refused: already entitled",
                extra={"user_id": user_id, "plan_type": current.plan_type.value},
            )
            return TrialActivationResult.failure(AlreadyEntitledError(user_id, current.plan_type.value))

        try:
            await self._store.deactivate(user_id, caller=caller)
        except RemoteUnavailableError as e:
            logger.warning(
                "Could not deactivate stale entitlements before trial",
                extra={"user_id": user_id, "error": e.message},
            )

        period_days = period_days_for(PlanType.TRIAL, self._settings.plan_period_days)
        try:
            record = await self._store.create(
                user_id,
                PlanType.TRIAL,
                expiry_from_now(PlanType.TRIAL, period_days),
                ActivationMethod.TRIAL,
                caller=caller,
            )
        except EntitlementConflictError as e:
            if e.constraint == TRIAL_ROW_INDEX:
                self._cache.mark_trial_used(user_id)
                logger.warning("Concurrent trial activation lost", extra={"user_id": user_id})
                return TrialActivationResult.failure(TrialAlreadyUsedError(user_id))
            logger.warning("Trial activation raced another grant", extra={"user_id": user_id})
            return TrialActivationResult.failure(AlreadyEntitledError(user_id))
        except RemoteUnavailableError as e:
            return TrialActivationResult.failure(ActivationUnavailableError(user_id, e))

        self._cache.mark_trial_used(user_id)
        self._cache.write_through(user_id, record)
        self._events.emit(
            EntitlementEvent.TRIAL_ACTIVATED,
            user_id,
            plan_type=record.plan_type.value,
            expires_at=record.expires_at.isoformat(),
        )
        logger.info(
            "Free trial activated",
            extra={"user_id": user_id, "expires_at": record.expires_at.isoformat(), "period_days": period_days},
        )

        # Let read replicas catch up before the caller re-resolves
        if self._settings.trial_propagation_delay_seconds > 0:
            await asyncio.sleep(self._settings.trial_propagation_delay_seconds)

        return TrialActivationResult.success(record)
