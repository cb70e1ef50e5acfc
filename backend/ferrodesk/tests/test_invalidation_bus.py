"""
Tests for the realtime invalidation bus and the process event bus.

Tests cover:
- EventBus: subscribe/unsubscribe, failing handlers isolated
- InvalidationBus: watched users only, visibility forced, coalescing,
  listener delivery, change feed consumption, worker survives failures
- EntitlementEngine auth-state wiring: sign-in watches, sign-out evicts
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from ferrodesk.auth.identity import Identity
from ferrodesk.entitlements.cache import CacheSlot
from ferrodesk.entitlements.change_feed import InProcessChangeFeed, RecordChange
from ferrodesk.entitlements.events import EntitlementEvent, EventBus
from ferrodesk.entitlements.invalidation import InvalidationBus, TriggerSource
from ferrodesk.entitlements.models import (
    ActivationMethod,
    EntitlementRecord,
    EntitlementSource,
    PlanType,
    ResolvedEntitlementState,
)


def _granted(user_id: str = "user-1") -> ResolvedEntitlementState:
    return ResolvedEntitlementState(user_id=user_id, has_access=True, source=EntitlementSource.REMOTE)


@pytest.fixture
def counting_resolver():
    resolver = AsyncMock()
    resolver.resolve.side_effect = lambda user_id, identity=None: _granted(user_id)
    return resolver


# =============================================================================
# EventBus
# =============================================================================

class TestEventBus:
    """In-process fire-and-forget events."""

    def test_emit_reaches_subscribers_of_that_event_only(self):
        bus = EventBus()
        trial, synced = [], []
        bus.subscribe(EntitlementEvent.TRIAL_ACTIVATED, trial.append)
        bus.subscribe(EntitlementEvent.SUBSCRIPTION_SYNCED, synced.append)

        delivered = bus.emit(EntitlementEvent.TRIAL_ACTIVATED, "user-1", plan_type="trial")

        assert delivered == 1
        assert [m.user_id for m in trial] == ["user-1"]
        assert synced == []

    def test_unsubscribe_stops_delivery(self):
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe("forceUserSync", received.append)

        unsubscribe()
        bus.emit(EntitlementEvent.FORCE_USER_SYNC, "user-1")

        assert received == []

    def test_failing_handler_does_not_reach_emitter(self):
        bus = EventBus()
        received = []

        def broken(message):
            raise RuntimeError("listener bug")

        bus.subscribe(EntitlementEvent.ADMIN_SUBSCRIPTION_CREATED, broken)
        bus.subscribe(EntitlementEvent.ADMIN_SUBSCRIPTION_CREATED, received.append)

        assert bus.emit(EntitlementEvent.ADMIN_SUBSCRIPTION_CREATED, "user-1") == 1
        assert len(received) == 1


# =============================================================================
# InvalidationBus
# =============================================================================

class TestInvalidationBus:
    """Sequential re-resolution queue."""

    @pytest.mark.asyncio
    async def test_app_event_re_resolves_watched_user(self, counting_resolver, event_bus, settings):
        bus = InvalidationBus(counting_resolver, event_bus, settings=settings)
        seen = []
        bus.add_listener(lambda state, trigger: seen.append((state.user_id, trigger.source, trigger.detail)))
        await bus.start()
        try:
            bus.watch("user-1")
            event_bus.emit(EntitlementEvent.TRIAL_ACTIVATED, "user-1")
            await bus.drain()
        finally:
            await bus.stop()

        assert seen == [("user-1", TriggerSource.APP_EVENT, "trialActivated")]
        assert bus.resolution_count == 1

    @pytest.mark.asyncio
    async def test_unwatched_user_ignored(self, counting_resolver, event_bus, settings):
        bus = InvalidationBus(counting_resolver, event_bus, settings=settings)
        await bus.start()
        try:
            event_bus.emit(EntitlementEvent.ADMIN_SUBSCRIPTION_CREATED, "user-1")
            assert bus.notify_remote_change("user-1") is False
            await bus.drain()
        finally:
            await bus.stop()

        counting_resolver.resolve.assert_not_called()

    @pytest.mark.asyncio
    async def test_visibility_resolves_even_if_unwatched(self, counting_resolver, event_bus, settings):
        bus = InvalidationBus(counting_resolver, event_bus, settings=settings)
        seen = []
        bus.add_listener(lambda state, trigger: seen.append((state.user_id, trigger.source)))
        await bus.start()
        try:
            assert bus.notify_visibility("user-1") is True
            await bus.drain()
        finally:
            await bus.stop()

        assert seen == [("user-1", TriggerSource.VISIBILITY)]

    @pytest.mark.asyncio
    async def test_latest_state_kept_for_watched_users_only(self, counting_resolver, event_bus, settings):
        bus = InvalidationBus(counting_resolver, event_bus, settings=settings)
        await bus.start()
        try:
            bus.watch("user-1")
            for user_id in ("user-1", "visitor-1", "visitor-2"):
                bus.notify_visibility(user_id)
            await bus.drain()
        finally:
            await bus.stop()

        assert bus.latest("user-1").has_access is True
        assert bus.latest("visitor-1") is None
        assert bus.latest("visitor-2") is None

    @pytest.mark.asyncio
    async def test_refresh_resolves_once_and_publishes(self, counting_resolver, event_bus, settings, user):
        bus = InvalidationBus(counting_resolver, event_bus, settings=settings)
        seen = []
        bus.add_listener(lambda state, trigger: seen.append(trigger.detail))
        await bus.start()
        try:
            bus.watch("user-1", user)
            state = await bus.refresh("user-1", detail="sync")
            await bus.drain()
        finally:
            await bus.stop()

        assert state.has_access is True
        assert counting_resolver.resolve.await_count == 1
        counting_resolver.resolve.assert_awaited_with("user-1", user)
        assert seen == ["sync"]
        assert bus.latest("user-1") is state

    @pytest.mark.asyncio
    async def test_triggers_for_one_user_coalesce(self, counting_resolver, event_bus, settings):
        bus = InvalidationBus(counting_resolver, event_bus, settings=settings)
        await bus.start()
        try:
            bus.watch("user-1")
            bus.notify_remote_change("user-1")
            for _ in range(4):
                event_bus.emit(EntitlementEvent.SUBSCRIPTION_SYNCED, "user-1")
            await bus.drain()
        finally:
            await bus.stop()

        assert counting_resolver.resolve.await_count == 1
        assert bus.coalesced_count == 4

    @pytest.mark.asyncio
    async def test_triggers_for_different_users_are_not_merged(self, counting_resolver, event_bus, settings):
        bus = InvalidationBus(counting_resolver, event_bus, settings=settings)
        await bus.start()
        try:
            bus.watch("user-1")
            bus.watch("user-2")
            bus.notify_remote_change("user-1")
            bus.notify_remote_change("user-2")
            await bus.drain()
        finally:
            await bus.stop()

        resolved = [c.args[0] for c in counting_resolver.resolve.await_args_list]
        assert resolved == ["user-1", "user-2"]

    @pytest.mark.asyncio
    async def test_trigger_after_resolution_schedules_another(self, counting_resolver, event_bus, settings):
        bus = InvalidationBus(counting_resolver, event_bus, settings=settings)
        await bus.start()
        try:
            bus.watch("user-1")
            bus.notify_remote_change("user-1")
            await bus.drain()
            bus.notify_remote_change("user-1")
            await bus.drain()
        finally:
            await bus.stop()

        assert counting_resolver.resolve.await_count == 2

    @pytest.mark.asyncio
    async def test_worker_survives_resolver_failure(self, event_bus, settings):
        resolver = AsyncMock()
        resolver.resolve.side_effect = [RuntimeError("boom"), _granted()]
        bus = InvalidationBus(resolver, event_bus, settings=settings)
        await bus.start()
        try:
            bus.watch("user-1")
            bus.notify_remote_change("user-1")
            await bus.drain()
            bus.notify_remote_change("user-1")
            await bus.drain()
            assert bus.running
        finally:
            await bus.stop()

        assert bus.latest("user-1") is not None

    @pytest.mark.asyncio
    async def test_failing_listener_isolated(self, counting_resolver, event_bus, settings):
        bus = InvalidationBus(counting_resolver, event_bus, settings=settings)
        seen = []

        def broken(state, trigger):
            raise RuntimeError("listener bug")

        bus.add_listener(broken)
        bus.add_listener(lambda state, trigger: seen.append(state.user_id))
        await bus.start()
        try:
            bus.notify_visibility("user-1")
            await bus.drain()
        finally:
            await bus.stop()

        assert seen == ["user-1"]

    @pytest.mark.asyncio
    async def test_remote_change_feed_triggers_resolution(self, counting_resolver, event_bus, settings):
        feed = InProcessChangeFeed()
        bus = InvalidationBus(counting_resolver, event_bus, feed, settings)
        await bus.start()
        try:
            bus.watch("user-1")
            await asyncio.sleep(0.01)
            assert feed.subscriber_count == 1

            await feed.publish(RecordChange(user_id="user-1", change="update"))
            await asyncio.sleep(0.01)
            await bus.drain()
        finally:
            await bus.stop()

        counting_resolver.resolve.assert_awaited()
        assert feed.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_triggers_dropped_before_start(self, counting_resolver, event_bus, settings):
        bus = InvalidationBus(counting_resolver, event_bus, settings=settings)
        bus.watch("user-1")

        assert bus.notify_remote_change("user-1") is False


# =============================================================================
# Engine auth-state wiring
# =============================================================================

class TestEngineAuthState:
    """Sign-in and sign-out drive the bus and the cache."""

    def _record(self) -> EntitlementRecord:
        now = datetime.now(timezone.utc)
        return EntitlementRecord(
            id="sub-1",
            user_id="user-1",
            is_active=True,
            plan_type=PlanType.MONTHLY,
            expires_at=now + timedelta(days=30),
            activated_at=now,
            activation_method=ActivationMethod.ADMIN,
        )

    def test_sign_in_watches_user(self, engine, user):
        engine.identity_provider.observe(user)

        assert engine.invalidation_bus.is_watching("user-1")

    def test_sign_out_evicts_slots_and_keeps_trial_marker(self, engine, user):
        engine.identity_provider.observe(user)
        engine.cache.write_through("user-1", self._record())
        engine.cache.mark_trial_used("user-1")

        engine.identity_provider.sign_out("user-1")

        assert engine.cache.read(CacheSlot.ADMIN_GRANTED, "user-1") is None
        assert engine.cache.read(CacheSlot.USER_GRANTED, "user-1") is None
        assert engine.cache.read(CacheSlot.STATUS_SUMMARY, "user-1") is None
        assert engine.cache.has_trial_marker("user-1") is True
        assert not engine.invalidation_bus.is_watching("user-1")

    def test_sign_out_of_one_user_keeps_other_users_slots(self, engine):
        engine.cache.write_through("user-1", self._record())
        other = Identity(user_id="user-2")
        engine.identity_provider.observe(other)

        engine.identity_provider.sign_out("user-2")

        assert engine.cache.read(CacheSlot.ADMIN_GRANTED, "user-1") is not None

    @pytest.mark.asyncio
    async def test_engine_start_and_stop(self, engine):
        await engine.start()
        assert engine.invalidation_bus.running

        await engine.stop()
        assert not engine.invalidation_bus.running
