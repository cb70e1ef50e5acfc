"""
Local key-value stores backing the entitlement cache slots.

Provides:
- RedisKeyValueStore: redis-py wrapper with graceful degradation
- InMemoryKeyValueStore: thread-safe fallback with per-key TTL
- create_key_value_store(): Redis when REDIS_URL is configured and reachable

Both stores are string-keyed, string-valued and synchronous. A failing
backend reports keys as absent rather than raising.
"""

import logging
import os
import time
from threading import Lock
from typing import Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Interface shared by the cache backends."""

    backend = "abstract"

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        raise NotImplementedError

    def delete(self, *keys: str) -> int:
        raise NotImplementedError


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store.

    Every command failure is logged and degraded: get() returns None,
    set() returns False, delete() returns 0.
    """

    backend = "redis"

    def __init__(self, client: "redis.Redis"):
        self._redis = client

    @classmethod
    def from_url(cls, url: str) -> "RedisKeyValueStore":
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        return cls(client)

    @property
    def client(self) -> "redis.Redis":
        return self._redis

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis PING failed: {e}")
            return False

    def get(self, key: str) -> Optional[str]:
        try:
            return self._redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET failed: {e}", extra={"key": key})
            return None

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        try:
            if ttl_seconds:
                self._redis.setex(key, ttl_seconds, value)
            else:
                self._redis.set(key, value)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis SET failed: {e}", extra={"key": key})
            return False

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self._redis.delete(*keys))
        except redis.RedisError as e:
            logger.warning(f"Redis DELETE failed: {e}", extra={"keys": list(keys)})
            return 0


class InMemoryKeyValueStore(KeyValueStore):
    """
    In-memory store used when Redis is not configured.

    Thread-safe with optional TTL per key and oldest-first eviction at capacity.
    """

    backend = "memory"

    def __init__(self, max_size: int = 10000):
        # key -> (value, monotonic deadline or None, inserted at)
        self._data: Dict[str, Tuple[str, Optional[float], float]] = {}
        self._lock = Lock()
        self._max_size = max_size

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, deadline, _ = entry
            if deadline is not None and time.monotonic() >= deadline:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        now = time.monotonic()
        deadline = now + ttl_seconds if ttl_seconds else None
        with self._lock:
            if key not in self._data and len(self._data) >= self._max_size:
                oldest_key = min(self._data.keys(), key=lambda k: self._data[k][2])
                del self._data[oldest_key]
            self._data[key] = (value, deadline, now)
        return True

    def delete(self, *keys: str) -> int:
        deleted = 0
        with self._lock:
            for key in keys:
                if self._data.pop(key, None) is not None:
                    deleted += 1
        return deleted

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


def create_key_value_store(redis_url: Optional[str] = None) -> KeyValueStore:
    """
    Pick the cache backend.

    Uses Redis if a URL is given (or REDIS_URL is set) and it answers PING,
    otherwise an in-memory store.
    """
    url = redis_url or os.getenv("REDIS_URL")
    if not url:
        logger.info("REDIS_URL not configured - using in-memory entitlement cache")
        return InMemoryKeyValueStore()

    store = RedisKeyValueStore.from_url(url)
    if store.ping():
        logger.info("Redis connection established for entitlement cache")
        return store

    logger.warning("Redis unreachable - falling back to in-memory entitlement cache")
    return InMemoryKeyValueStore()
