"""
UserSubscription model: the authoritative entitlement rows.

CRITICAL: At most one active row per user, and at most one trial row per
user lifetime. Both rules are enforced by partial unique indexes so that
concurrent writers lose with an IntegrityError instead of racing.
"""

from sqlalchemy import Column, String, Boolean, DateTime, Enum, Index, text

from ferrodesk.db_base import Base
from ferrodesk.models.base import TimestampMixin, generate_uuid

PLAN_TYPES = ("trial", "monthly", "quarterly", "annual")
ACTIVATION_METHODS = ("admin", "trial", "payment")

ACTIVE_ROW_INDEX = "uq_user_subscriptions_one_active"
TRIAL_ROW_INDEX = "uq_user_subscriptions_one_trial"


class UserSubscription(Base, TimestampMixin):
    """
    One entitlement grant for a user.

    Rows are never hard-deleted; revocation flips is_active to False.
    """

    __tablename__ = "user_subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Owning user (identity provider subject)"
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Active flag; an active row past expires_at is soft-expired"
    )

    plan_type = Column(
        Enum(*PLAN_TYPES, name="subscription_plan_type"),
        nullable=False,
        comment="trial is usable once per user lifetime"
    )

    expires_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="Absolute expiry of the grant"
    )

    activated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the grant began"
    )

    activation_method = Column(
        Enum(*ACTIVATION_METHODS, name="subscription_activation_method"),
        nullable=False,
        default="admin",
        comment="Provenance of the grant (informational)"
    )

    __table_args__ = (
        Index(
            ACTIVE_ROW_INDEX,
            "user_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index(
            TRIAL_ROW_INDEX,
            "user_id",
            unique=True,
            postgresql_where=text("plan_type = 'trial'"),
            sqlite_where=text("plan_type = 'trial'"),
        ),
        Index("ix_user_subscriptions_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<UserSubscription(id={self.id}, user_id={self.user_id}, "
            f"plan_type={self.plan_type}, is_active={self.is_active})>"
        )
