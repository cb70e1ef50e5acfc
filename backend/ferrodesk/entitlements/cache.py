"""
Entitlement Cache Layer - three local mirrors of a user's entitlement.

Provides:
- CacheSlot: the admin-granted, user-granted and status-summary mirrors
- SlotCodec: per-slot wire shape, decoded into one SlotRecord
- merge_slots: explicit priority merge used on the resolver fallback path
- EntitlementCacheLayer: read/write/evict over a KeyValueStore

Caches are advisory. A slot past its expires_at is treated as absent and
evicted on the read that discovers it; a slot that fails to decode is
evicted silently.
"""

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from ferrodesk.entitlements.errors import CacheCorruptError
from ferrodesk.entitlements.kv_store import KeyValueStore
from ferrodesk.entitlements.models import (
    EntitlementRecord,
    EntitlementSource,
    utcnow,
)

logger = logging.getLogger(__name__)

KEY_NAMESPACE = "entitlements"
TRIAL_MARKER_KEY = "trial_used"
TRIAL_MARKER_VALUE = "true"
SYNC_TIMESTAMP_FIELD = "sync_timestamp"


class CacheSlot(str, Enum):
    """Local mirrors, declared from highest to lowest priority."""

    ADMIN_GRANTED = "admin_granted"
    USER_GRANTED = "user_granted"
    STATUS_SUMMARY = "status_summary"


SLOT_PRIORITY: Tuple[CacheSlot, ...] = (
    CacheSlot.ADMIN_GRANTED,
    CacheSlot.USER_GRANTED,
    CacheSlot.STATUS_SUMMARY,
)

SLOT_SOURCES: Dict[CacheSlot, EntitlementSource] = {
    CacheSlot.ADMIN_GRANTED: EntitlementSource.CACHE_ADMIN_GRANTED,
    CacheSlot.USER_GRANTED: EntitlementSource.CACHE_USER_GRANTED,
    CacheSlot.STATUS_SUMMARY: EntitlementSource.CACHE_STATUS_SUMMARY,
}


def _parse_instant(value: Any) -> datetime:
    if not isinstance(value, str) or not value:
        raise ValueError(f"expected ISO timestamp, got {value!r}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp without timezone: {value!r}")
    return parsed


def slot_key(name: str, user_id: str) -> str:
    """Store key of one per-user entry, e.g. entitlements:admin_granted:<user_id>."""
    return f"{KEY_NAMESPACE}:{name}:{user_id}"


@dataclass(frozen=True)
class SlotRecord:
    """Normalized content of any cache slot."""

    slot: CacheSlot
    is_active: bool
    expires_at: datetime
    plan_type: Optional[str] = None
    synced_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def grants(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)

    def is_trusted(self, now: datetime, trust_seconds: int) -> bool:
        """Whether the slot is recent enough to be believed (0 disables the window)."""
        if trust_seconds <= 0:
            return True
        if self.synced_at is None:
            return False
        return (now - self.synced_at).total_seconds() <= trust_seconds

    @classmethod
    def from_entitlement(
        cls,
        slot: CacheSlot,
        record: EntitlementRecord,
        synced_at: Optional[datetime] = None,
    ) -> "SlotRecord":
        return cls(
            slot=slot,
            is_active=record.is_active,
            expires_at=record.expires_at,
            plan_type=record.plan_type.value,
            synced_at=synced_at or utcnow(),
        )


class SlotCodec:
    """
    Wire format of one slot.

    Each mirror was historically written by a different workflow and uses
    its own field names; the codec maps them onto SlotRecord.
    """

    def __init__(
        self,
        slot: CacheSlot,
        active_field: str,
        expires_field: str,
        plan_field: str,
    ):
        self.slot = slot
        self.active_field = active_field
        self.expires_field = expires_field
        self.plan_field = plan_field

    def key(self, user_id: str) -> str:
        return slot_key(self.slot.value, user_id)

    def encode(self, record: SlotRecord, source: Optional[EntitlementRecord] = None) -> str:
        payload: Dict[str, Any] = {
            self.active_field: record.is_active,
            self.expires_field: record.expires_at.isoformat(),
            self.plan_field: record.plan_type,
            SYNC_TIMESTAMP_FIELD: (record.synced_at or utcnow()).isoformat(),
        }
        if source is not None:
            payload.update(self._provenance(source))
        return json.dumps(payload)

    def _provenance(self, source: EntitlementRecord) -> Dict[str, Any]:
        if self.slot is CacheSlot.ADMIN_GRANTED:
            return {
                "user_id": source.user_id,
                "activated_at": source.activated_at.isoformat(),
                "activation_method": source.activation_method.value,
                "period_days": source.period_days,
            }
        if self.slot is CacheSlot.USER_GRANTED:
            return {
                "isTrialUsed": source.plan_type.value == "trial",
                "activatedBy": source.activation_method.value,
                "activatedAt": source.activated_at.isoformat(),
                "periodDays": source.period_days,
            }
        return {"periodDays": source.period_days}

    def decode(self, raw: str, user_id: Optional[str] = None) -> SlotRecord:
        """
        Parse a stored payload.

        Raises:
            CacheCorruptError: payload is not JSON, not an object, or lacks
                a boolean active flag or a timezone-aware expiry.
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CacheCorruptError(self.slot.value, f"invalid JSON: {e}", user_id)
        if not isinstance(data, dict):
            raise CacheCorruptError(self.slot.value, "payload is not an object", user_id)

        is_active = data.get(self.active_field)
        if not isinstance(is_active, bool):
            raise CacheCorruptError(self.slot.value, f"{self.active_field} is not a boolean", user_id)

        try:
            expires_at = _parse_instant(data.get(self.expires_field))
        except ValueError as e:
            raise CacheCorruptError(self.slot.value, f"{self.expires_field}: {e}", user_id)

        synced_at = None
        if data.get(SYNC_TIMESTAMP_FIELD) is not None:
            try:
                synced_at = _parse_instant(data[SYNC_TIMESTAMP_FIELD])
            except ValueError as e:
                raise CacheCorruptError(self.slot.value, f"{SYNC_TIMESTAMP_FIELD}: {e}", user_id)

        plan_type = data.get(self.plan_field)
        return SlotRecord(
            slot=self.slot,
            is_active=is_active,
            expires_at=expires_at,
            plan_type=plan_type if isinstance(plan_type, str) else None,
            synced_at=synced_at,
        )


SLOT_CODECS: Dict[CacheSlot, SlotCodec] = {
    CacheSlot.ADMIN_GRANTED: SlotCodec(
        CacheSlot.ADMIN_GRANTED, "is_active", "expires_at", "plan_type"
    ),
    CacheSlot.USER_GRANTED: SlotCodec(
        CacheSlot.USER_GRANTED, "hasActiveSubscription", "expiresAt", "subscriptionType"
    ),
    CacheSlot.STATUS_SUMMARY: SlotCodec(
        CacheSlot.STATUS_SUMMARY, "isActive", "expiresAt", "type"
    ),
}


@dataclass(frozen=True)
class SlotMerge:
    """Result of merging the slots of one user."""

    winner: Optional[SlotRecord]
    untrusted: Tuple[CacheSlot, ...] = ()
    denying: Tuple[CacheSlot, ...] = ()

    @property
    def grants(self) -> bool:
        return self.winner is not None


def merge_slots(
    records: Mapping[CacheSlot, Optional[SlotRecord]],
    now: Optional[datetime] = None,
    trust_seconds: int = 0,
) -> SlotMerge:
    """
    Pick the first granting slot in priority order.

    Expired slots count as absent. A slot outside the trust window, or
    one whose is_active flag is false, is skipped and reported so the
    caller can evict it; a lower-priority slot may still grant.
    """
    now = now or utcnow()
    untrusted = []
    denying = []
    for slot in SLOT_PRIORITY:
        record = records.get(slot)
        if record is None or record.is_expired(now):
            continue
        if not record.is_trusted(now, trust_seconds):
            untrusted.append(slot)
            continue
        if not record.is_active:
            denying.append(slot)
            continue
        return SlotMerge(winner=record, untrusted=tuple(untrusted), denying=tuple(denying))
    return SlotMerge(winner=None, untrusted=tuple(untrusted), denying=tuple(denying))


class EntitlementCacheLayer:
    """
    Typed access to the three cache slots and the lifetime trial marker.

    Usage:
        cache = EntitlementCacheLayer(create_key_value_store())

        record = cache.read(CacheSlot.ADMIN_GRANTED, user_id)
        cache.write_through(user_id, entitlement_record)
        cache.evict_all(user_id)
    """

    def __init__(self, store: KeyValueStore):
        self._store = store

    @property
    def backend(self) -> str:
        return self._store.backend

    def read(self, slot: CacheSlot, user_id: str, now: Optional[datetime] = None) -> Optional[SlotRecord]:
        """
        Read one slot.

        Returns:
            SlotRecord, or None if absent, corrupt or expired (the latter
            two are evicted as a side effect)
        """
        codec = SLOT_CODECS[slot]
        raw = self._store.get(codec.key(user_id))
        if raw is None:
            logger.debug("Cache miss", extra={"user_id": user_id, "slot": slot.value})
            return None

        try:
            record = codec.decode(raw, user_id)
        except CacheCorruptError as e:
            logger.warning(
                "Evicting corrupt entitlement cache slot",
                extra={"user_id": user_id, "slot": slot.value, "error": e.reason},
            )
            self.evict(slot, user_id)
            return None

        if record.is_expired(now):
            logger.debug(
                "Evicting expired entitlement cache slot",
                extra={"user_id": user_id, "slot": slot.value},
            )
            self.evict(slot, user_id)
            return None

        return record

    def read_all(self, user_id: str, now: Optional[datetime] = None) -> Dict[CacheSlot, Optional[SlotRecord]]:
        return {slot: self.read(slot, user_id, now) for slot in SLOT_PRIORITY}

    def write(
        self,
        slot: CacheSlot,
        user_id: str,
        record: SlotRecord,
        source: Optional[EntitlementRecord] = None,
    ) -> bool:
        """
        Write one slot. The key lives until the record's expiry.

        Returns:
            False if the record is already expired (nothing written)
        """
        codec = SLOT_CODECS[slot]
        ttl = math.ceil((record.expires_at - utcnow()).total_seconds())
        if ttl <= 0:
            return False
        return self._store.set(codec.key(user_id), codec.encode(record, source), ttl)

    def write_through(self, user_id: str, entitlement: EntitlementRecord) -> int:
        """Mirror one remote record into all three slots. Returns slots written."""
        synced_at = utcnow()
        written = 0
        for slot in SLOT_PRIORITY:
            record = SlotRecord.from_entitlement(slot, entitlement, synced_at)
            if self.write(slot, user_id, record, entitlement):
                written += 1
        logger.debug(
            "Entitlement written through to cache",
            extra={"user_id": user_id, "plan_type": entitlement.plan_type.value, "slots": written},
        )
        return written

    def evict(self, slot: CacheSlot, user_id: str) -> bool:
        return self._store.delete(SLOT_CODECS[slot].key(user_id)) > 0

    def evict_all(self, user_id: str) -> int:
        """Evict every slot of a user. The trial marker is kept."""
        keys = [SLOT_CODECS[slot].key(user_id) for slot in SLOT_PRIORITY]
        return self._store.delete(*keys)

    def mark_trial_used(self, user_id: str) -> None:
        self._store.set(slot_key(TRIAL_MARKER_KEY, user_id), TRIAL_MARKER_VALUE)

    def has_trial_marker(self, user_id: str) -> bool:
        return self._store.get(slot_key(TRIAL_MARKER_KEY, user_id)) == TRIAL_MARKER_VALUE
