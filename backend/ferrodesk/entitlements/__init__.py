"""
Entitlement reconciliation engine for the scrap-metal back office.

This module provides:
- EntitlementStoreClient: async CRUD against the authoritative user_subscriptions table
- EntitlementCacheLayer: three keyed cache slots plus the lifetime trial marker
- EntitlementResolver: remote-first resolution with cache fallback
- InvalidationBus: sequential re-resolution on app events, remote changes and focus
- TrialWorkflow: one free trial per user lifetime
- EntitlementAdminService: admin grant, revoke, list and force-sync
- AccessGuard / AccessGuardMiddleware: routing-time enforcement
- EntitlementEngine: wires all of the above

Resolution order: admin role -> valid remote record -> trusted cache slot -> deny
"""

from ferrodesk.entitlements.errors import (
    ActivationError,
    ActivationUnavailableError,
    AlreadyEntitledError,
    CacheCorruptError,
    EntitlementConflictError,
    EntitlementError,
    EntitlementPermissionError,
    EntitlementValidationError,
    RemoteUnavailableError,
    TrialAlreadyUsedError,
)
from ferrodesk.entitlements.models import (
    ActivationMethod,
    EntitlementRecord,
    EntitlementSource,
    PlanType,
    ResolvedEntitlementState,
)
from ferrodesk.entitlements.cache import CacheSlot, EntitlementCacheLayer, SlotRecord, merge_slots
from ferrodesk.entitlements.events import EntitlementEvent, EventBus
from ferrodesk.entitlements.store_client import EntitlementStoreClient
from ferrodesk.entitlements.resolver import EntitlementResolver
from ferrodesk.entitlements.invalidation import InvalidationBus, TriggerSource
from ferrodesk.entitlements.trial import TrialActivationResult, TrialWorkflow
from ferrodesk.entitlements.admin import EntitlementAdminService
from ferrodesk.entitlements.guard import (
    AccessGuard,
    GuardAction,
    GuardDecision,
    GuardState,
    RouteClass,
    classify_route,
    decide,
    derive_state,
)
from ferrodesk.entitlements.middleware import AccessGuardMiddleware, OfferRequiredError
from ferrodesk.entitlements.engine import EntitlementEngine

__all__ = [
    # Errors
    "ActivationError",
    "ActivationUnavailableError",
    "AlreadyEntitledError",
    "CacheCorruptError",
    "EntitlementConflictError",
    "EntitlementError",
    "EntitlementPermissionError",
    "EntitlementValidationError",
    "RemoteUnavailableError",
    "TrialAlreadyUsedError",
    # Models
    "ActivationMethod",
    "EntitlementRecord",
    "EntitlementSource",
    "PlanType",
    "ResolvedEntitlementState",
    # Cache
    "CacheSlot",
    "EntitlementCacheLayer",
    "SlotRecord",
    "merge_slots",
    # Events
    "EntitlementEvent",
    "EventBus",
    # Services
    "EntitlementStoreClient",
    "EntitlementResolver",
    "InvalidationBus",
    "TriggerSource",
    "TrialActivationResult",
    "TrialWorkflow",
    "EntitlementAdminService",
    # Guard
    "AccessGuard",
    "AccessGuardMiddleware",
    "GuardAction",
    "GuardDecision",
    "GuardState",
    "OfferRequiredError",
    "RouteClass",
    "classify_route",
    "decide",
    "derive_state",
    # Engine
    "EntitlementEngine",
]
