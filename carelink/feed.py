"""Connection change feed — row-level insert/update/delete notifications.

Writers publish a ChangeEvent after every committed change to the
connections table; guardian views subscribe to the events addressed to one
guardian. Delivery is at-least-once and unordered relative to reads, so
consumers must treat events idempotently and keep polling as a backstop.

Usage:
    feed = RedisChangeFeed(redis_client)

    async with feed.subscribe("Guardian001") as events:
        async for event in events:
            ...
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Protocol

import pydantic
from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from carelink.config import settings
from carelink.errors import TransientGatewayError
from carelink.schemas.connections import ChangeEvent

logger = logging.getLogger(__name__)

_TRANSIENT_REDIS_ERRORS = (RedisConnectionError, RedisTimeoutError)


class ChangeFeed(Protocol):
    """Publish/subscribe contract for connection change events."""

    async def publish(self, event: ChangeEvent) -> None:
        """Deliver an event to subscribers of ``event.guardian_id``."""
        ...

    def subscribe(self, guardian_id: str) -> contextlib.AbstractAsyncContextManager[AsyncIterator[ChangeEvent]]:
        """Open a subscription; leaving the context closes it."""
        ...


class RedisChangeFeed:
    """Change feed over Redis pub/sub, one channel per guardian."""

    def __init__(self, redis: Redis, channel_prefix: str | None = None) -> None:
        self._redis = redis
        self._prefix = channel_prefix if channel_prefix is not None else settings.sync.feed_channel_prefix

    def channel_for(self, guardian_id: str) -> str:
        return f"{self._prefix}{guardian_id}"

    async def publish(self, event: ChangeEvent) -> None:
        channel = self.channel_for(event.guardian_id)
        try:
            receivers = await self._redis.publish(channel, event.model_dump_json())
        except _TRANSIENT_REDIS_ERRORS as exc:
            raise TransientGatewayError("Change feed unavailable", channel=channel, error=str(exc)) from exc
        logger.debug(
            "Published %s for %s on %s (%d receivers)",
            event.change_type.value,
            event.record.get("id"),
            channel,
            receivers,
        )

    @contextlib.asynccontextmanager
    async def subscribe(self, guardian_id: str) -> AsyncGenerator[AsyncIterator[ChangeEvent], None]:
        channel = self.channel_for(guardian_id)
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except _TRANSIENT_REDIS_ERRORS as exc:
            await pubsub.aclose()
            raise TransientGatewayError("Change feed unavailable", channel=channel, error=str(exc)) from exc

        logger.info("Subscribed to change feed %s", channel)
        try:
            yield self._iterate(pubsub, channel)
        finally:
            with contextlib.suppress(RedisError):
                await pubsub.unsubscribe(channel)
            await pubsub.aclose()
            logger.info("Unsubscribed from change feed %s", channel)

    async def _iterate(self, pubsub: PubSub, channel: str) -> AsyncIterator[ChangeEvent]:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    yield ChangeEvent.model_validate_json(message["data"])
                except pydantic.ValidationError:
                    logger.warning("Dropping malformed change event on %s", channel)
        except _TRANSIENT_REDIS_ERRORS as exc:
            raise TransientGatewayError("Change feed connection lost", channel=channel, error=str(exc)) from exc
