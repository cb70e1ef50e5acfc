"""
Entitlement audit logging for access guard denials.

Every blocked navigation (offer screen, redirect away from a protected or
admin route) is written as one structured record to the
"entitlements.audit" logger.
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")


@dataclass
class AccessDenialEvent:
    """Structured event for an access guard denial."""

    path: str
    route_class: str
    guard_state: str
    action: str
    user_id: Optional[str] = None
    entitlement_source: Optional[str] = None
    plan_type: Optional[str] = None
    method: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def log_access_denial(event: AccessDenialEvent) -> None:
    """Write a denial to the audit log."""
    audit_logger.info(
        "ACCESS_DENIED",
        extra={"audit_event": event.to_dict()},
    )
    logger.debug(
        "Access denied",
        extra={"user_id": event.user_id, "path": event.path, "action": event.action},
    )
