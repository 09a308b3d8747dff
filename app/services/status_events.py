"""Source status notifications over Redis pub/sub.

Polling ``GET /sources/{id}`` stays the contract; these events let the
dashboard avoid polling. Publishing is best effort.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import RedisError

from app.models.source import Source

logger = logging.getLogger(__name__)


def channel_for(source_id: uuid.UUID | str) -> str:
    return f"source-status:{source_id}"


def status_payload(source: Source) -> dict:
    return {
        "source_id": str(source.id),
        "status": str(source.status),
        "processing_progress": source.processing_progress,
        "chunk_count": source.chunk_count,
        "error_message": source.error_message,
    }


class StatusSubscription:
    """Status payloads of one subscribed source."""

    def __init__(self, pubsub: PubSub) -> None:
        self.pubsub = pubsub

    async def next(self, timeout: float) -> dict | None:
        """Next payload, or None after *timeout* seconds without one."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while (remaining := deadline - loop.time()) > 0:
            message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=remaining)
            if message is not None and message.get("type") == "message":
                return json.loads(message["data"])
        return None


class SourceStatusBroker:
    def __init__(self, redis: Redis, confirm_timeout: float = 1.0) -> None:
        self.redis = redis
        self.confirm_timeout = confirm_timeout

    @classmethod
    def from_url(cls, url: str) -> SourceStatusBroker:
        return cls(Redis.from_url(url, decode_responses=True))

    async def publish(self, source: Source) -> None:
        try:
            await self.redis.publish(channel_for(source.id), json.dumps(status_payload(source)))
        except RedisError as exc:
            logger.warning("Status publish for source %s failed: %s", source.id, exc)

    @asynccontextmanager
    async def subscribe(self, source_id: uuid.UUID | str) -> AsyncIterator[StatusSubscription]:
        """Subscribe to one source's channel.

        Pub/sub has no replay, so callers read the current status only after
        entering this context; anything published from then on is delivered.
        """
        channel = channel_for(source_id)
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(channel)
        try:
            # Wait for the server's confirmation before handing out the subscription
            await pubsub.get_message(timeout=self.confirm_timeout)
            yield StatusSubscription(pubsub)
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def aclose(self) -> None:
        await self.redis.aclose()
