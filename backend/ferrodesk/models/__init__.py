"""
Database models for user entitlements.
"""

from ferrodesk.models.base import TimestampMixin, generate_uuid
from ferrodesk.models.user_subscription import UserSubscription

__all__ = [
    "TimestampMixin",
    "generate_uuid",
    "UserSubscription",
]
