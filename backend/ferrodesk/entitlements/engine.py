"""
Entitlement engine container.

Wires one instance of each component for the lifetime of the app:

    identity provider -> auth-state listener -> invalidation bus
    store client + cache -> resolver -> access guard
    store client + cache + event bus -> trial workflow, admin service

Usage:
    engine = EntitlementEngine.from_env(get_session_factory())
    await engine.start()
    decision = await engine.guard.evaluate("/dashboard", identity)
    await engine.stop()
"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ferrodesk.auth.identity import AuthStateChange, AuthStateKind, IdentityProvider
from ferrodesk.config.settings import EntitlementSettings, get_settings
from ferrodesk.entitlements.admin import EntitlementAdminService
from ferrodesk.entitlements.cache import EntitlementCacheLayer
from ferrodesk.entitlements.change_feed import ChangeFeed, InProcessChangeFeed, create_change_feed
from ferrodesk.entitlements.events import EventBus
from ferrodesk.entitlements.guard import AccessGuard
from ferrodesk.entitlements.invalidation import InvalidationBus
from ferrodesk.entitlements.kv_store import InMemoryKeyValueStore, KeyValueStore, create_key_value_store
from ferrodesk.entitlements.resolver import EntitlementResolver
from ferrodesk.entitlements.store_client import EntitlementStoreClient
from ferrodesk.entitlements.trial import TrialWorkflow

logger = logging.getLogger(__name__)


class EntitlementEngine:
    """Owns every entitlement component and their lifecycle."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        identity_provider: IdentityProvider,
        settings: Optional[EntitlementSettings] = None,
        kv_store: Optional[KeyValueStore] = None,
        change_feed: Optional[ChangeFeed] = None,
    ):
        self.settings = settings or get_settings()
        self.identity_provider = identity_provider
        self.change_feed = change_feed or InProcessChangeFeed()
        self.event_bus = EventBus()

        self.cache = EntitlementCacheLayer(kv_store or InMemoryKeyValueStore())
        self.store_client = EntitlementStoreClient(session_factory, self.settings, self.change_feed)
        self.resolver = EntitlementResolver(self.store_client, self.cache, self.settings)
        self.invalidation_bus = InvalidationBus(self.resolver, self.event_bus, self.change_feed, self.settings)
        self.guard = AccessGuard(self.resolver, self.settings.routes, self.invalidation_bus)
        self.trial_workflow = TrialWorkflow(self.store_client, self.cache, self.event_bus, self.settings)
        self.admin = EntitlementAdminService(self.store_client, self.cache, self.event_bus, self.settings)

        self.identity_provider.subscribe(self._on_auth_change)

    @classmethod
    def from_env(cls, session_factory: Callable[[], Session]) -> "EntitlementEngine":
        """Build an engine from REDIS_URL and AUTH_JWT_* environment variables."""
        return cls(
            session_factory=session_factory,
            identity_provider=IdentityProvider.from_env(),
            kv_store=create_key_value_store(),
            change_feed=create_change_feed(),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.invalidation_bus.start()
        logger.info(
            "Entitlement engine started",
            extra={"cache_backend": self.cache.backend, "change_feed": self.change_feed.backend},
        )

    async def stop(self) -> None:
        await self.invalidation_bus.stop()
        await self.change_feed.close()
        logger.info("Entitlement engine stopped")

    # ------------------------------------------------------------------
    # Auth state
    # ------------------------------------------------------------------

    def _on_auth_change(self, change: AuthStateChange) -> None:
        if change.kind is AuthStateKind.SIGNED_IN:
            self.invalidation_bus.watch(change.user_id, change.identity)
            return

        # signed_out / session_expired: nothing cached may outlive the session
        evicted = self.cache.evict_all(change.user_id)
        self.invalidation_bus.unwatch(change.user_id)
        self.guard.forget(change.user_id)
        logger.info(
            "Entitlement cache cleared for ended session",
            extra={"user_id": change.user_id, "kind": change.kind.value, "evicted": evicted},
        )
