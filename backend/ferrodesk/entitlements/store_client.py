"""
Entitlement Store Client - async access to the authoritative record store.

Encapsulates all database operations for user entitlements with:
- Bounded timeouts (a stall becomes RemoteUnavailableError, never a denial)
- Caller permission checks before any write
- Store-level constraint conflicts surfaced as EntitlementConflictError
- A change notification published after every committed write

The client never touches the local cache; callers own cache invalidation.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ferrodesk.auth.identity import Identity
from ferrodesk.config.settings import EntitlementSettings, get_settings
from ferrodesk.entitlements.change_feed import ChangeFeed, RecordChange
from ferrodesk.entitlements.errors import (
    EntitlementConflictError,
    EntitlementPermissionError,
    EntitlementValidationError,
    RemoteUnavailableError,
)
from ferrodesk.entitlements.models import (
    ActivationMethod,
    EntitlementRecord,
    PlanType,
    utcnow,
)
from ferrodesk.models.base import generate_uuid
from ferrodesk.models.user_subscription import (
    ACTIVE_ROW_INDEX,
    TRIAL_ROW_INDEX,
    UserSubscription,
)

logger = logging.getLogger(__name__)


class EntitlementStoreClient:
    """
    CRUD against the user_subscriptions table.

    Every call opens a short-lived session from session_factory and runs
    the blocking SQLAlchemy work in a worker thread.

    Usage:
        client = EntitlementStoreClient(get_session_factory())
        record = await client.fetch_active(user_id)
        if record and record.is_valid():
            ...
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        settings: Optional[EntitlementSettings] = None,
        change_feed: Optional[ChangeFeed] = None,
    ):
        """
        Initialize the client.

        Args:
            session_factory: Callable returning a new SQLAlchemy Session
            settings: Engine settings (timeout); defaults to get_settings()
            change_feed: Optional feed notified after each committed write
        """
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._change_feed = change_feed

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _run(self, operation: str, user_id: Optional[str], fn: Callable[..., Any], *args: Any) -> Any:
        """Run blocking store work with a bounded timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args),
                timeout=self._settings.remote_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.warning(
                "Entitlement store call timed out",
                extra={"operation": operation, "user_id": user_id,
                       "timeout_seconds": self._settings.remote_timeout_seconds},
            )
            raise RemoteUnavailableError(operation, user_id, e) from e
        except (SQLAlchemyError, OSError) as e:
            logger.warning(
                "Entitlement store call failed",
                extra={"operation": operation, "user_id": user_id, "error": str(e)},
            )
            raise RemoteUnavailableError(operation, user_id, e) from e

    async def _publish(self, user_id: str, change: str) -> None:
        if self._change_feed is None:
            return
        await self._change_feed.publish(RecordChange(user_id=user_id, change=change))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _fetch_active_sync(self, user_id: str) -> Optional[EntitlementRecord]:
        with self._session_factory() as session:
            row = session.query(UserSubscription).filter(
                UserSubscription.user_id == user_id,
                UserSubscription.is_active.is_(True),
            ).order_by(UserSubscription.created_at.desc()).first()
            return EntitlementRecord.from_row(row) if row else None

    async def fetch_active(self, user_id: str) -> Optional[EntitlementRecord]:
        """
        Get the most recently created active record for a user.

        The caller must still check expires_at (see EntitlementRecord.is_valid).

        Raises:
            RemoteUnavailableError: store unreachable or timed out
        """
        return await self._run("fetch_active", user_id, self._fetch_active_sync, user_id)

    def _fetch_all_sync(self, user_id: str) -> List[EntitlementRecord]:
        with self._session_factory() as session:
            rows = session.query(UserSubscription).filter(
                UserSubscription.user_id == user_id,
            ).order_by(UserSubscription.created_at.desc()).all()
            return [EntitlementRecord.from_row(row) for row in rows]

    async def fetch_all(self, user_id: str) -> List[EntitlementRecord]:
        """Get every record of a user, active or not, newest first."""
        return await self._run("fetch_all", user_id, self._fetch_all_sync, user_id)

    async def has_trial_record(self, user_id: str) -> bool:
        """Whether any trial row (active or not) exists for the user."""
        records = await self.fetch_all(user_id)
        return any(record.plan_type is PlanType.TRIAL for record in records)

    def _list_all_sync(self, limit: Optional[int], offset: int) -> List[EntitlementRecord]:
        with self._session_factory() as session:
            query = session.query(UserSubscription).order_by(UserSubscription.created_at.desc())
            if offset:
                query = query.offset(offset)
            if limit is not None:
                query = query.limit(limit)
            return [EntitlementRecord.from_row(row) for row in query.all()]

    async def list_all(
        self,
        *,
        caller: Optional[Identity],
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[EntitlementRecord]:
        """
        List every record system-wide (admin view).

        Raises:
            EntitlementPermissionError: caller is not an admin
        """
        if caller is None or not caller.is_admin:
            self._deny("list all entitlements", caller, None)
        return await self._run("list_all", None, self._list_all_sync, limit, offset)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _deny(self, operation: str, caller: Optional[Identity], user_id: Optional[str]) -> None:
        caller_id = caller.user_id if caller else None
        logger.warning(
            "Entitlement operation denied",
            extra={"operation": operation, "caller_id": caller_id, "user_id": user_id},
        )
        raise EntitlementPermissionError(operation, caller_id, user_id)

    @staticmethod
    def _validate_expiry(expires_at: Any, user_id: str) -> datetime:
        if not isinstance(expires_at, datetime):
            raise EntitlementValidationError("expires_at must be a datetime", field="expires_at", user_id=user_id)
        if expires_at.tzinfo is None:
            raise EntitlementValidationError("expires_at must be timezone-aware", field="expires_at", user_id=user_id)
        if expires_at <= utcnow():
            raise EntitlementValidationError("expires_at must be in the future", field="expires_at", user_id=user_id)
        return expires_at

    def _conflict_constraint(self, session: Session, user_id: str, plan: PlanType, error: IntegrityError) -> str:
        """Name the unique index a failed insert ran into."""
        message = str(error.orig)
        for name in (TRIAL_ROW_INDEX, ACTIVE_ROW_INDEX):
            if name in message:
                return name
        # SQLite reports only the column, so look at what is already stored
        if plan is PlanType.TRIAL:
            trial_exists = session.query(UserSubscription.id).filter(
                UserSubscription.user_id == user_id,
                UserSubscription.plan_type == PlanType.TRIAL.value,
            ).first()
            if trial_exists:
                return TRIAL_ROW_INDEX
        return ACTIVE_ROW_INDEX

    def _create_sync(
        self,
        user_id: str,
        plan: PlanType,
        expires_at: datetime,
        method: ActivationMethod,
        replace_active: bool,
    ) -> Tuple[EntitlementRecord, int]:
        now = utcnow()
        with self._session_factory() as session:
            try:
                replaced = 0
                if replace_active:
                    replaced = session.query(UserSubscription).filter(
                        UserSubscription.user_id == user_id,
                        UserSubscription.is_active.is_(True),
                    ).update({UserSubscription.is_active: False}, synchronize_session=False)
                row = UserSubscription(
                    id=generate_uuid(),
                    user_id=user_id,
                    is_active=True,
                    plan_type=plan.value,
                    expires_at=expires_at,
                    activated_at=now,
                    activation_method=method.value,
                    created_at=now,
                )
                session.add(row)
                session.commit()
                return EntitlementRecord.from_row(row), replaced
            except IntegrityError as e:
                session.rollback()
                raise EntitlementConflictError(
                    self._conflict_constraint(session, user_id, plan, e), user_id
                ) from e

    async def create(
        self,
        user_id: str,
        plan_type: Any,
        expires_at: datetime,
        activation_method: Any,
        *,
        caller: Optional[Identity],
        replace_active: bool = True,
    ) -> EntitlementRecord:
        """
        Insert a new active entitlement.

        Any active rows of the user are deactivated in the same transaction
        (replace_active), so the one-active-row index is never violated by
        this call itself.

        Args:
            user_id: Owning user
            plan_type: PlanType or its string value
            expires_at: Timezone-aware expiry in the future
            activation_method: ActivationMethod or its string value
            caller: Identity performing the write
            replace_active: Deactivate current active rows first

        Returns:
            The created EntitlementRecord

        Raises:
            EntitlementValidationError: unknown plan/method or bad expiry
            EntitlementPermissionError: non-admin creating a paid plan or a
                trial for someone else
            EntitlementConflictError: a uniqueness constraint rejected the row
            RemoteUnavailableError: store unreachable or timed out
        """
        plan = PlanType.parse(plan_type)
        method = ActivationMethod.parse(activation_method)
        self._validate_expiry(expires_at, user_id)

        if caller is None:
            self._deny("create entitlement", None, user_id)
        if not caller.is_admin and not (plan is PlanType.TRIAL and caller.user_id == user_id):
            self._deny(f"create {plan.value} entitlement", caller, user_id)

        record, replaced = await self._run(
            "create", user_id, self._create_sync, user_id, plan, expires_at, method, replace_active
        )
        logger.info(
            "Entitlement created",
            extra={
                "user_id": user_id,
                "plan_type": plan.value,
                "activation_method": method.value,
                "expires_at": record.expires_at.isoformat(),
                "replaced_active": replaced,
                "caller_id": caller.user_id,
            },
        )
        await self._publish(user_id, "insert")
        return record

    def _deactivate_sync(self, user_id: str) -> int:
        with self._session_factory() as session:
            count = session.query(UserSubscription).filter(
                UserSubscription.user_id == user_id,
                UserSubscription.is_active.is_(True),
            ).update({UserSubscription.is_active: False}, synchronize_session=False)
            session.commit()
            return count

    async def deactivate(self, user_id: str, *, caller: Optional[Identity]) -> int:
        """
        Deactivate all active records of a user.

        Idempotent: returns 0 when nothing was active.

        Raises:
            EntitlementPermissionError: caller is neither admin nor the user
            RemoteUnavailableError: store unreachable or timed out
        """
        if caller is None or not (caller.is_admin or caller.user_id == user_id):
            self._deny("deactivate entitlement", caller, user_id)

        count = await self._run("deactivate", user_id, self._deactivate_sync, user_id)
        if count:
            logger.info(
                "Entitlements deactivated",
                extra={"user_id": user_id, "count": count, "caller_id": caller.user_id},
            )
            await self._publish(user_id, "update")
        return count
