"""
Structured error classes for entitlement resolution and mutation.

Every error carries a machine-readable error_code and serializes with
to_dict() for JSON responses.
"""

from typing import Optional


class EntitlementError(Exception):
    """Base exception for entitlement errors."""

    error_code = "ENTITLEMENT_ERROR"

    def __init__(self, message: str, user_id: Optional[str] = None):
        self.message = message
        self.user_id = user_id
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.error_code.lower(),
            "error_code": self.error_code,
            "message": self.message,
            "user_id": self.user_id,
        }


class RemoteUnavailableError(EntitlementError):
    """
    The remote record store could not be reached or answered with an error.

    Callers treat this as "unknown", never as "inactive".
    """

    error_code = "REMOTE_UNAVAILABLE"

    def __init__(
        self,
        operation: str,
        user_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.operation = operation
        self.cause = cause
        detail = f"{type(cause).__name__}: {cause}" if cause else "no detail"
        super().__init__(f"Entitlement store unavailable during {operation} ({detail})", user_id)


class EntitlementValidationError(EntitlementError, ValueError):
    """Malformed plan type or payload; rejected before any write."""

    error_code = "VALIDATION_FAILED"

    def __init__(self, message: str, field: Optional[str] = None, user_id: Optional[str] = None):
        self.field = field
        super().__init__(message, user_id)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["field"] = self.field
        return data


class EntitlementPermissionError(EntitlementError):
    """Caller lacks the rights for a mutation or an admin view."""

    error_code = "PERMISSION_DENIED"

    def __init__(self, operation: str, caller_id: Optional[str], user_id: Optional[str] = None):
        self.operation = operation
        self.caller_id = caller_id
        super().__init__(f"Caller {caller_id!r} may not {operation}", user_id)


class EntitlementConflictError(EntitlementError):
    """A write lost against a store-level uniqueness constraint."""

    error_code = "STORE_CONFLICT"

    def __init__(self, constraint: Optional[str], user_id: str):
        self.constraint = constraint
        super().__init__(f"Entitlement write conflicted on {constraint or 'unknown constraint'}", user_id)


class ActivationError(EntitlementError):
    """Base class for trial activation failures surfaced to the user."""

    error_code = "ACTIVATION_FAILED"


class TrialAlreadyUsedError(ActivationError):
    """The user already consumed their one lifetime trial."""

    error_code = "TRIAL_ALREADY_USED"

    def __init__(self, user_id: str):
        super().__init__("Free trial has already been used for this account", user_id)


class AlreadyEntitledError(ActivationError):
    """The user already holds a valid entitlement."""

    error_code = "ALREADY_ENTITLED"

    def __init__(self, user_id: str, plan_type: Optional[str] = None):
        self.plan_type = plan_type
        super().__init__("An active subscription already exists for this account", user_id)


class ActivationUnavailableError(ActivationError):
    """Activation aborted because the remote store state is unknown."""

    error_code = "ACTIVATION_UNAVAILABLE"

    def __init__(self, user_id: str, cause: Optional[RemoteUnavailableError] = None):
        self.cause = cause
        super().__init__("Trial activation is temporarily unavailable, try again shortly", user_id)


class CacheCorruptError(EntitlementError):
    """A cache slot payload failed to decode. Handled by evicting the slot."""

    error_code = "CACHE_CORRUPT"

    def __init__(self, slot: str, reason: str, user_id: Optional[str] = None):
        self.slot = slot
        self.reason = reason
        super().__init__(f"Cache slot {slot} is corrupt: {reason}", user_id)

