"""
Realtime change notifications for the todos table.

Every committed insert/update/delete is published on a per-owner channel
(``<prefix><user_id>``). Consumers hold a ``Subscription``: an async iterator
of ``ChangeEvent`` objects with an idempotent ``close()``.

Two transports:
- ``InMemoryChangeFeed``: asyncio queues, one process only (dev and tests)
- ``RedisChangeFeed``: Redis pub/sub, shared between workers
"""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol

from redis.asyncio import Redis, RedisError

from app.core.config import Settings
from app.models import get_utc_now

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class FeedError(Exception):
    """Change feed transport failure."""


class FeedDisconnected(FeedError):
    """The subscription channel dropped; the consumer should resubscribe."""


@dataclass(frozen=True)
class ChangeEvent:
    type: ChangeType
    user_id: str
    task_id: int | None = None
    table: str = "todos"
    committed_at: datetime = field(default_factory=get_utc_now)

    def to_json(self) -> str:
        return json.dumps(
            {
                "type": self.type.value,
                "user_id": self.user_id,
                "task_id": self.task_id,
                "table": self.table,
                "committed_at": self.committed_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ChangeEvent":
        data = json.loads(raw)
        return cls(
            type=ChangeType(data["type"]),
            user_id=data["user_id"],
            task_id=data.get("task_id"),
            table=data.get("table", "todos"),
            committed_at=datetime.fromisoformat(data["committed_at"]),
        )


def parse_event_mask(events: str) -> frozenset[ChangeType] | None:
    """``"*"`` means every type (None); otherwise a comma separated list."""
    if events.strip() == ALL_EVENTS:
        return None
    return frozenset(ChangeType(part.strip().upper()) for part in events.split(",") if part.strip())


class Subscription:
    """
    Cancellable stream of change events for one owner.

    Iteration ends (StopAsyncIteration) once the subscription is closed.
    A dropped transport surfaces as FeedDisconnected from ``__anext__``.
    """

    def __init__(self, user_id: str, events: str = ALL_EVENTS):
        self.user_id = user_id
        self._mask = parse_event_mask(events)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        while True:
            if self._closed:
                raise StopAsyncIteration
            event = await self._next()
            if self._closed:
                raise StopAsyncIteration
            if self._mask is None or event.type in self._mask:
                return event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._release()
        logger.debug("Subscription closed user=%s", self.user_id)

    async def _next(self) -> ChangeEvent:
        raise NotImplementedError

    async def _release(self) -> None:
        raise NotImplementedError


class ChangeFeed(Protocol):
    async def publish(self, event: ChangeEvent) -> None: ...
    async def subscribe(self, user_id: str, events: str = ALL_EVENTS) -> Subscription: ...
    async def close(self) -> None: ...


# In-process transport

_CLOSED = object()


class _QueueSubscription(Subscription):
    def __init__(self, feed: "InMemoryChangeFeed", user_id: str, events: str):
        super().__init__(user_id, events)
        self._feed = feed
        self.queue: asyncio.Queue = asyncio.Queue()

    async def _next(self) -> ChangeEvent:
        item = await self.queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def _release(self) -> None:
        self._feed._detach(self)
        self.queue.put_nowait(_CLOSED)


class InMemoryChangeFeed:
    def __init__(self, channel_prefix: str = "todos:"):
        self.channel_prefix = channel_prefix
        self._subscribers: dict[str, set[_QueueSubscription]] = defaultdict(set)

    def channel_for(self, user_id: str) -> str:
        return f"{self.channel_prefix}{user_id}"

    async def publish(self, event: ChangeEvent) -> None:
        for sub in list(self._subscribers.get(self.channel_for(event.user_id), ())):
            sub.queue.put_nowait(event)

    async def subscribe(self, user_id: str, events: str = ALL_EVENTS) -> Subscription:
        sub = _QueueSubscription(self, user_id, events)
        self._subscribers[self.channel_for(user_id)].add(sub)
        logger.debug("Subscribed user=%s events=%s", user_id, events)
        return sub

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(self.channel_for(user_id), ()))

    def drop(self, user_id: str) -> None:
        """Sever every live subscription for ``user_id`` as a broken channel would."""
        channel = self.channel_for(user_id)
        for sub in list(self._subscribers.pop(channel, ())):
            sub.queue.put_nowait(FeedDisconnected(f"channel {channel} dropped"))

    def _detach(self, sub: _QueueSubscription) -> None:
        channel = self.channel_for(sub.user_id)
        subs = self._subscribers.get(channel)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[channel]

    async def close(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                await sub.close()


# Redis transport


class _RedisSubscription(Subscription):
    def __init__(self, pubsub, channel: str, user_id: str, events: str, poll_timeout: float):
        super().__init__(user_id, events)
        self._pubsub = pubsub
        self._channel = channel
        self._poll_timeout = poll_timeout

    async def _next(self) -> ChangeEvent:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout
                )
            except RedisError as e:
                raise FeedDisconnected(f"channel {self._channel} dropped: {e}") from e
            if self._closed:
                raise StopAsyncIteration
            if message is None:
                continue
            try:
                return ChangeEvent.from_json(message["data"])
            except (ValueError, KeyError, TypeError):
                logger.warning("Dropping malformed change event on %s", self._channel)

    async def _release(self) -> None:
        try:
            await self._pubsub.unsubscribe(self._channel)
        except RedisError as e:
            logger.warning("Redis UNSUBSCRIBE failed channel=%s: %s", self._channel, e)
        finally:
            await self._pubsub.aclose()


class RedisChangeFeed:
    def __init__(self, redis: Redis, channel_prefix: str = "todos:", poll_timeout: float = 1.0):
        self._redis = redis
        self.channel_prefix = channel_prefix
        self._poll_timeout = poll_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisChangeFeed":
        redis = Redis.from_url(
            settings.redis_dsn,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis_pool_size,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )
        return cls(redis, channel_prefix=settings.realtime_channel_prefix)

    def channel_for(self, user_id: str) -> str:
        return f"{self.channel_prefix}{user_id}"

    async def connect(self) -> None:
        try:
            await self._redis.ping()
        except RedisError as e:
            raise FeedError(f"Redis unavailable: {e}") from e
        logger.info("Redis change feed connected")

    async def publish(self, event: ChangeEvent) -> None:
        try:
            await self._redis.publish(self.channel_for(event.user_id), event.to_json())
        except RedisError as e:
            raise FeedError(f"Redis PUBLISH failed: {e}") from e

    async def subscribe(self, user_id: str, events: str = ALL_EVENTS) -> Subscription:
        channel = self.channel_for(user_id)
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as e:
            await pubsub.aclose()
            raise FeedDisconnected(f"Redis SUBSCRIBE failed channel={channel}: {e}") from e
        logger.debug("Subscribed channel=%s events=%s", channel, events)
        return _RedisSubscription(pubsub, channel, user_id, events, self._poll_timeout)

    async def close(self) -> None:
        try:
            await self._redis.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error("Error closing Redis: %s", e)


def create_feed(settings: Settings) -> ChangeFeed:
    backend = settings.realtime_backend.strip().lower()
    if backend == "redis":
        return RedisChangeFeed.from_settings(settings)
    if backend == "memory":
        return InMemoryChangeFeed(channel_prefix=settings.realtime_channel_prefix)
    raise ValueError(f"Unknown realtime backend: {settings.realtime_backend!r}")
