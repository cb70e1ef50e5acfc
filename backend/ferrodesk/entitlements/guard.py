"""
Access Guard - routing-time decision over identity, role and entitlement.

States:
- loading: identity or resolution pending; no conclusive decision
- unauthenticated: only public routes
- authenticated_no_entitlement: subscription routes show the blocking offer
- authenticated_entitled / admin_bypass: navigation allowed

The admin-only route is additionally gated by role, whatever the
entitlement.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ferrodesk.auth.identity import Identity
from ferrodesk.config.settings import RouteTable
from ferrodesk.entitlements.audit import AccessDenialEvent, log_access_denial
from ferrodesk.entitlements.invalidation import InvalidationBus, InvalidationTrigger
from ferrodesk.entitlements.models import EntitlementSource, ResolvedEntitlementState
from ferrodesk.entitlements.resolver import EntitlementResolver

logger = logging.getLogger(__name__)


class GuardState(str, Enum):
    LOADING = "loading"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED_NO_ENTITLEMENT = "authenticated_no_entitlement"
    AUTHENTICATED_ENTITLED = "authenticated_entitled"
    ADMIN_BYPASS = "admin_bypass"


class RouteClass(str, Enum):
    PUBLIC = "public"
    AUTH_ONLY = "auth_only"
    SUBSCRIPTION = "subscription"
    ADMIN_ONLY = "admin_only"


class GuardAction(str, Enum):
    ALLOW = "allow"
    WAIT = "wait"
    REDIRECT_LANDING = "redirect_landing"
    REDIRECT_HOME = "redirect_home"
    SHOW_OFFER = "show_offer"


@dataclass(frozen=True)
class GuardDecision:
    action: GuardAction
    state: GuardState
    route_class: RouteClass
    path: str
    location: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.action is GuardAction.ALLOW

    @property
    def is_denial(self) -> bool:
        return self.action in (
            GuardAction.REDIRECT_LANDING,
            GuardAction.REDIRECT_HOME,
            GuardAction.SHOW_OFFER,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "state": self.state.value,
            "route_class": self.route_class.value,
            "path": self.path,
            "location": self.location,
        }


def normalize_path(path: Optional[str]) -> str:
    if not path:
        return "/"
    path = "/" + path.split("?", 1)[0].strip("/")
    return path


def classify_route(path: str, routes: RouteTable) -> RouteClass:
    """Classify a page path. Unknown paths require identity only."""
    path = normalize_path(path)
    if path in routes.admin_only:
        return RouteClass.ADMIN_ONLY
    if path in routes.public:
        return RouteClass.PUBLIC
    if path in routes.subscription:
        return RouteClass.SUBSCRIPTION
    return RouteClass.AUTH_ONLY


def derive_state(
    identity: Optional[Identity],
    resolved: Optional[ResolvedEntitlementState],
    identity_pending: bool = False,
) -> GuardState:
    if identity_pending:
        return GuardState.LOADING
    if identity is None:
        return GuardState.UNAUTHENTICATED
    if identity.is_admin:
        return GuardState.ADMIN_BYPASS
    if resolved is None:
        return GuardState.LOADING
    if resolved.has_access:
        return GuardState.AUTHENTICATED_ENTITLED
    return GuardState.AUTHENTICATED_NO_ENTITLEMENT


def decide(route_class: RouteClass, state: GuardState, path: str, routes: RouteTable) -> GuardDecision:
    """
    Pure transition table of the guard.

    Args:
        route_class: Class of the requested path
        state: Current guard state
        path: Requested path (used for the authenticated public-page rule)
        routes: Route table with landing/home targets

    Returns:
        GuardDecision
    """
    path = normalize_path(path)

    def result(action: GuardAction, location: Optional[str] = None) -> GuardDecision:
        return GuardDecision(action=action, state=state, route_class=route_class, path=path, location=location)

    if state is GuardState.LOADING:
        return result(GuardAction.WAIT)

    if state is GuardState.UNAUTHENTICATED:
        if route_class is RouteClass.PUBLIC:
            return result(GuardAction.ALLOW)
        return result(GuardAction.REDIRECT_LANDING, routes.landing)

    if state is GuardState.ADMIN_BYPASS:
        return result(GuardAction.ALLOW)

    if route_class is RouteClass.PUBLIC:
        if path in routes.redirect_when_authenticated:
            return result(GuardAction.REDIRECT_HOME, routes.home)
        return result(GuardAction.ALLOW)

    if route_class is RouteClass.ADMIN_ONLY:
        return result(GuardAction.REDIRECT_HOME, routes.home)

    if route_class is RouteClass.SUBSCRIPTION and state is GuardState.AUTHENTICATED_NO_ENTITLEMENT:
        return result(GuardAction.SHOW_OFFER)

    return result(GuardAction.ALLOW)


class AccessGuard:
    """
    Evaluates navigation for a caller, re-resolving on every route change.

    Registered as an invalidation listener so bus events keep the per-user
    guard state current between navigations.
    """

    def __init__(
        self,
        resolver: EntitlementResolver,
        routes: RouteTable,
        invalidation_bus: Optional[InvalidationBus] = None,
    ):
        self._resolver = resolver
        self._routes = routes
        self._states: Dict[str, GuardState] = {}
        if invalidation_bus is not None:
            invalidation_bus.add_listener(self._on_state_change)

    @property
    def routes(self) -> RouteTable:
        return self._routes

    def current_state(self, user_id: str) -> Optional[GuardState]:
        return self._states.get(user_id)

    def forget(self, user_id: str) -> None:
        self._states.pop(user_id, None)

    def _on_state_change(self, resolved: ResolvedEntitlementState, trigger: InvalidationTrigger) -> None:
        # Users never evaluated here (or forgotten at sign-out) are not tracked
        if resolved.user_id not in self._states:
            return
        if resolved.source is EntitlementSource.ADMIN_ROLE:
            new_state = GuardState.ADMIN_BYPASS
        elif resolved.has_access:
            new_state = GuardState.AUTHENTICATED_ENTITLED
        else:
            new_state = GuardState.AUTHENTICATED_NO_ENTITLEMENT

        old_state = self._states[resolved.user_id]
        self._states[resolved.user_id] = new_state
        if old_state is not new_state:
            logger.info(
                "Guard state changed",
                extra={"user_id": resolved.user_id, "old_state": old_state.value,
                       "new_state": new_state.value, "trigger": trigger.source.value},
            )

    async def evaluate(
        self,
        path: str,
        identity: Optional[Identity],
        method: Optional[str] = None,
    ) -> GuardDecision:
        """
        Decide what happens when the caller navigates to path.

        Authenticated non-admin callers are resolved fresh on every call.
        """
        route_class = classify_route(path, self._routes)
        resolved = None
        if identity is not None:
            resolved = await self._resolver.resolve(identity.user_id, identity)

        state = derive_state(identity, resolved)
        if identity is not None:
            self._states[identity.user_id] = state

        decision = decide(route_class, state, path, self._routes)
        if decision.is_denial:
            log_access_denial(AccessDenialEvent(
                path=decision.path,
                route_class=route_class.value,
                guard_state=state.value,
                action=decision.action.value,
                user_id=identity.user_id if identity else None,
                entitlement_source=resolved.source.value if resolved else None,
                plan_type=resolved.plan_type.value if resolved and resolved.plan_type else None,
                method=method,
            ))
        return decision
