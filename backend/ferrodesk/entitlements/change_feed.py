"""
Remote change feed: "a record for user X changed" notifications.

Provides:
- RecordChange: one change notification
- InProcessChangeFeed: asyncio fan-out for single-process deployments
- RedisChangeFeed: Redis pub/sub on CHANGE_CHANNEL across processes
- create_change_feed(): Redis when REDIS_URL is configured

The store client publishes after every committed write; the invalidation
bus listens and re-resolves the affected user.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Optional, Set

import redis
import redis.asyncio

from ferrodesk.entitlements.models import utcnow

logger = logging.getLogger(__name__)

CHANGE_CHANNEL = "entitlements:changes"


@dataclass(frozen=True)
class RecordChange:
    user_id: str
    change: str
    occurred_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        return json.dumps({
            "user_id": self.user_id,
            "change": self.change,
            "occurred_at": self.occurred_at.isoformat(),
        })

    @classmethod
    def from_json(cls, data: str) -> "RecordChange":
        payload = json.loads(data)
        return cls(
            user_id=str(payload["user_id"]),
            change=str(payload.get("change", "update")),
            occurred_at=datetime.fromisoformat(payload["occurred_at"]),
        )


class ChangeFeed:
    """Interface shared by the change feed backends."""

    backend = "abstract"

    async def publish(self, change: RecordChange) -> None:
        raise NotImplementedError

    def listen(self) -> AsyncIterator[RecordChange]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class InProcessChangeFeed(ChangeFeed):
    """Fan-out to every active listener of this process."""

    backend = "memory"

    def __init__(self):
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, change: RecordChange) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(change)

    async def listen(self) -> AsyncIterator[RecordChange]:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)


class RedisChangeFeed(ChangeFeed):
    """Redis pub/sub feed. Publish failures are logged, not raised."""

    backend = "redis"

    def __init__(self, url: str):
        self._redis = redis.asyncio.from_url(url, decode_responses=True)

    async def publish(self, change: RecordChange) -> None:
        try:
            await self._redis.publish(CHANGE_CHANNEL, change.to_json())
        except redis.RedisError as e:
            logger.warning(f"Redis PUBLISH failed: {e}", extra={"user_id": change.user_id})

    async def listen(self) -> AsyncIterator[RecordChange]:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(CHANGE_CHANNEL)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield RecordChange.from_json(message["data"])
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Ignoring malformed change notification", extra={"error": str(e)})
        finally:
            await pubsub.unsubscribe(CHANGE_CHANNEL)
            await pubsub.aclose()

    async def close(self) -> None:
        await self._redis.aclose()


def create_change_feed(redis_url: Optional[str] = None) -> ChangeFeed:
    url = redis_url or os.getenv("REDIS_URL")
    if url:
        logger.info("Using Redis change feed", extra={"channel": CHANGE_CHANNEL})
        return RedisChangeFeed(url)
    return InProcessChangeFeed()
