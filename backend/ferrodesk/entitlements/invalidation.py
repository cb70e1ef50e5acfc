"""
Realtime Invalidation Bus - re-resolves users when something changes.

Input channels:
- Remote change feed: "a record for user X changed"
- Process event bus: every EntitlementEvent naming a user
- Visibility hook: the client regained focus

All channels feed one asyncio.Queue drained by a single worker, so
triggers never race each other. A user with a trigger already queued is
not queued again; a trigger arriving while that user is being resolved
schedules exactly one more resolution.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ferrodesk.auth.identity import Identity
from ferrodesk.config.settings import EntitlementSettings, get_settings
from ferrodesk.entitlements.change_feed import ChangeFeed
from ferrodesk.entitlements.events import EventBus, EventMessage
from ferrodesk.entitlements.models import ResolvedEntitlementState
from ferrodesk.entitlements.resolver import EntitlementResolver

logger = logging.getLogger(__name__)


class TriggerSource(str, Enum):
    REMOTE_CHANGE = "remote_change"
    APP_EVENT = "app_event"
    VISIBILITY = "visibility"


@dataclass(frozen=True)
class InvalidationTrigger:
    user_id: str
    source: TriggerSource
    detail: Optional[str] = None
    enqueued_at: float = field(default_factory=time.monotonic)


StateListener = Callable[[ResolvedEntitlementState, InvalidationTrigger], Any]


class InvalidationBus:
    """
    Sequential re-resolution queue.

    Usage:
        bus = InvalidationBus(resolver, event_bus, change_feed)
        await bus.start()
        bus.watch(user_id)
        bus.add_listener(on_state)
        ...
        await bus.stop()
    """

    def __init__(
        self,
        resolver: EntitlementResolver,
        event_bus: EventBus,
        change_feed: Optional[ChangeFeed] = None,
        settings: Optional[EntitlementSettings] = None,
    ):
        self._resolver = resolver
        self._event_bus = event_bus
        self._change_feed = change_feed
        self._settings = settings or get_settings()

        self._queue: Optional[asyncio.Queue] = None
        self._pending: Set[str] = set()
        self._watched: Dict[str, Optional[Identity]] = {}
        self._latest: Dict[str, ResolvedEntitlementState] = {}
        self._listeners: List[StateListener] = []
        self._worker: Optional[asyncio.Task] = None
        self._feed_task: Optional[asyncio.Task] = None
        self._unsubscribe_events: Optional[Callable[[], None]] = None

        self.resolution_count = 0
        self.coalesced_count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._unsubscribe_events = self._event_bus.subscribe_all(self._on_event)
        self._worker = asyncio.create_task(self._run(), name="entitlement-invalidation")
        if self._change_feed is not None:
            self._feed_task = asyncio.create_task(self._consume_feed(), name="entitlement-change-feed")
        logger.info(
            "Invalidation bus started",
            extra={"change_feed": self._change_feed.backend if self._change_feed else None},
        )

    async def stop(self) -> None:
        if self._unsubscribe_events is not None:
            self._unsubscribe_events()
            self._unsubscribe_events = None
        for task in (self._feed_task, self._worker):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._feed_task = None
        self._worker = None
        self._pending.clear()
        logger.info("Invalidation bus stopped")

    async def drain(self) -> None:
        """Wait until every queued trigger has been processed."""
        if self._queue is not None:
            await self._queue.join()

    # ------------------------------------------------------------------
    # Session scope
    # ------------------------------------------------------------------

    def watch(self, user_id: str, identity: Optional[Identity] = None) -> None:
        """Start re-resolving a user on app events and remote changes."""
        self._watched[user_id] = identity

    def unwatch(self, user_id: str) -> None:
        self._watched.pop(user_id, None)
        self._latest.pop(user_id, None)

    def is_watching(self, user_id: str) -> bool:
        return user_id in self._watched

    def latest(self, user_id: str) -> Optional[ResolvedEntitlementState]:
        return self._latest.get(user_id)

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Input channels
    # ------------------------------------------------------------------

    def _on_event(self, message: EventMessage) -> None:
        self._enqueue(message.user_id, TriggerSource.APP_EVENT, message.name)

    def notify_remote_change(self, user_id: str) -> bool:
        return self._enqueue(user_id, TriggerSource.REMOTE_CHANGE)

    def notify_visibility(self, user_id: str) -> bool:
        """Client regained focus: re-resolve once, watched or not."""
        return self._enqueue(user_id, TriggerSource.VISIBILITY, force=True)

    async def _consume_feed(self) -> None:
        try:
            async for change in self._change_feed.listen():
                self.notify_remote_change(change.user_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Change feed listener stopped", extra={"error": str(e)})

    def _enqueue(self, user_id: str, source: TriggerSource, detail: Optional[str] = None, force: bool = False) -> bool:
        if self._queue is None:
            logger.debug("Invalidation bus not started; trigger dropped", extra={"user_id": user_id})
            return False
        if not force and user_id not in self._watched:
            return False
        if user_id in self._pending:
            self.coalesced_count += 1
            return False
        self._pending.add(user_id)
        self._queue.put_nowait(InvalidationTrigger(user_id=user_id, source=source, detail=detail))
        return True

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            trigger = await self._queue.get()
            try:
                wait = trigger.enqueued_at + self._settings.invalidation_debounce_seconds - time.monotonic()
                if wait > 0:
                    await asyncio.sleep(wait)
                self._pending.discard(trigger.user_id)
                await self._resolve_and_publish(trigger, self._watched.get(trigger.user_id))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._pending.discard(trigger.user_id)
                logger.error(
                    "Re-resolution failed",
                    extra={"user_id": trigger.user_id, "source": trigger.source.value, "error": str(e)},
                )
            finally:
                self._queue.task_done()

    async def refresh(
        self,
        user_id: str,
        identity: Optional[Identity] = None,
        source: TriggerSource = TriggerSource.VISIBILITY,
        detail: Optional[str] = None,
    ) -> ResolvedEntitlementState:
        """
        Resolve a user now, outside the queue, and publish the result.

        Used when the caller needs the state in hand (the sync endpoint);
        nothing is enqueued, so the user is resolved exactly once.
        """
        trigger = InvalidationTrigger(user_id=user_id, source=source, detail=detail)
        return await self._resolve_and_publish(trigger, identity or self._watched.get(user_id))

    async def _resolve_and_publish(
        self,
        trigger: InvalidationTrigger,
        identity: Optional[Identity],
    ) -> ResolvedEntitlementState:
        state = await self._resolver.resolve(trigger.user_id, identity)
        self.resolution_count += 1
        # Only sessions in scope are remembered
        if trigger.user_id in self._watched:
            self._latest[trigger.user_id] = state
        self._publish(state, trigger)
        return state

    def _publish(self, state: ResolvedEntitlementState, trigger: InvalidationTrigger) -> None:
        logger.debug(
            "Entitlement re-resolved",
            extra={"user_id": state.user_id, "source": trigger.source.value,
                   "has_access": state.has_access, "trigger": trigger.detail},
        )
        for listener in list(self._listeners):
            try:
                listener(state, trigger)
            except Exception as e:
                logger.error(
                    "Entitlement state listener failed",
                    extra={"user_id": state.user_id, "error": str(e)},
                )
