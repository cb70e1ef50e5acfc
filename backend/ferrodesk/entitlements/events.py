"""
Process-wide event bus for entitlement signals.

Fire-and-forget named events carrying the affected user id. Any component
may emit or listen; a failing handler is logged and never reaches the
emitter.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List

from ferrodesk.entitlements.models import utcnow

logger = logging.getLogger(__name__)


class EntitlementEvent(str, Enum):
    """Named events exchanged between entitlement components."""

    SUBSCRIPTION_SYNCED = "subscriptionSynced"
    TRIAL_ACTIVATED = "trialActivated"
    ADMIN_SUBSCRIPTION_CREATED = "adminSubscriptionCreated"
    ADMIN_SUBSCRIPTION_DEACTIVATED = "adminSubscriptionDeactivated"
    FORCE_USER_SYNC = "forceUserSync"


@dataclass(frozen=True)
class EventMessage:
    name: str
    user_id: str
    detail: Dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=utcnow)


EventHandler = Callable[[EventMessage], Any]


class EventBus:
    """
    In-process publish/subscribe.

    Usage:
        bus = EventBus()
        unsubscribe = bus.subscribe(EntitlementEvent.TRIAL_ACTIVATED, handler)
        bus.emit(EntitlementEvent.TRIAL_ACTIVATED, user_id, plan_type="trial")
        unsubscribe()
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._lock = Lock()

    @staticmethod
    def _name(name) -> str:
        return name.value if isinstance(name, Enum) else str(name)

    def subscribe(self, name, handler: EventHandler) -> Callable[[], None]:
        """Register a handler and return a callable that removes it."""
        key = self._name(name)
        with self._lock:
            self._handlers.setdefault(key, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(key, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        """Register a handler for every EntitlementEvent."""
        unsubscribers = [self.subscribe(event, handler) for event in EntitlementEvent]

        def unsubscribe() -> None:
            for remove in unsubscribers:
                remove()

        return unsubscribe

    def emit(self, name, user_id: str, **detail: Any) -> int:
        """
        Deliver an event to its current handlers.

        Returns:
            Number of handlers that ran without raising
        """
        message = EventMessage(name=self._name(name), user_id=user_id, detail=detail)
        with self._lock:
            handlers = list(self._handlers.get(message.name, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(message)
                delivered += 1
            except Exception as e:
                logger.error(
                    "Entitlement event handler failed",
                    extra={"event": message.name, "user_id": user_id, "error": str(e)},
                )
        logger.debug(
            "Entitlement event emitted",
            extra={"event": message.name, "user_id": user_id, "handlers": len(handlers)},
        )
        return delivered
