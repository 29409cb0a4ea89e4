"""Per-user fan-out of video state/progress events.

Delivery is best-effort: each subscription has a bounded queue and an event
that does not fit is dropped for that subscriber only. Clients recover the
true state from the query API. Publishers emit while holding the per-video
lock, so events for one video reach every subscriber in emission order.
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from functools import lru_cache

from pydantic import ValidationError as PydanticValidationError
import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.config import get_settings
from app.schemas.events import RelayEnvelope, VideoEvent

settings = get_settings()
logger = logging.getLogger(__name__)


class Subscription:
    def __init__(self, owner_id: int, maxsize: int):
        self.owner_id = owner_id
        self.queue: asyncio.Queue[VideoEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def get(self) -> VideoEvent:
        return await self.queue.get()

    def offer(self, event: VideoEvent) -> bool:
        try:
            self.queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False


class NotificationHub:
    def __init__(self, queue_size: int = 100, relay: "RedisRelay | None" = None):
        self.queue_size = queue_size
        self.relay = relay
        self._subscribers: dict[int, set[Subscription]] = defaultdict(set)

    @asynccontextmanager
    async def subscribe(self, owner_id: int):
        sub = Subscription(owner_id, self.queue_size)
        self._subscribers[owner_id].add(sub)
        logger.debug(f"Subscriber added for user {owner_id}")
        try:
            yield sub
        finally:
            subs = self._subscribers.get(owner_id)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._subscribers[owner_id]

    def subscriber_count(self, owner_id: int) -> int:
        return len(self._subscribers.get(owner_id, ()))

    async def publish(self, event: VideoEvent) -> None:
        if self.relay is not None:
            await self.relay.send(event)
        else:
            self.deliver(event)

    def deliver(self, event: VideoEvent) -> int:
        """Hand ``event`` to local subscribers of its owner; returns how many accepted it."""
        delivered = 0
        for sub in list(self._subscribers.get(event.owner_id, ())):
            if sub.offer(event):
                delivered += 1
            else:
                logger.debug(f"Dropped event for video {event.video_id}: subscriber queue full")
        return delivered


class RedisRelay:
    """Carries events between processes (Celery workers → API) over Redis pub/sub."""

    def __init__(
        self,
        redis_url: str,
        channel: str,
        client=None,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
    ):
        self.channel = channel
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.received = 0
        self._redis = client or aioredis.from_url(redis_url)

    async def send(self, event: VideoEvent) -> None:
        try:
            await self._redis.publish(self.channel, RelayEnvelope.wrap(event).model_dump_json())
        except RedisError as e:
            # Notifications are at-most-once; the query API stays authoritative
            logger.warning(f"Failed to relay event for video {event.video_id}: {e}")

    async def listen(self, hub: NotificationHub) -> None:
        """Fan relayed events out to ``hub`` until cancelled, resubscribing after Redis errors."""
        failures = 0
        while True:
            self.received = 0
            try:
                await self._consume(hub)
            except RedisError as e:
                logger.warning(f"Relay connection lost: {e}")
            if self.received:
                failures = 0
            delay = min(self.reconnect_delay * 2 ** failures, self.max_reconnect_delay)
            failures += 1
            logger.info(f"Resubscribing to {self.channel} in {delay:.1f}s")
            await asyncio.sleep(delay)

    async def _consume(self, hub: NotificationHub) -> None:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            logger.info(f"Listening for relayed events on {self.channel}")
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                self.received += 1
                try:
                    event = RelayEnvelope.model_validate_json(message["data"]).unwrap()
                except PydanticValidationError as e:
                    logger.warning(f"Ignoring malformed relay message ({e.error_count()} error(s))")
                    continue
                hub.deliver(event)
        finally:
            try:
                await pubsub.unsubscribe(self.channel)
                await pubsub.aclose()
            except RedisError as e:
                logger.debug(f"Relay pubsub cleanup failed: {e}")

    async def close(self) -> None:
        await self._redis.aclose()


@lru_cache
def get_notification_hub() -> NotificationHub:
    relay = None
    if settings.use_celery:
        relay = RedisRelay(settings.redis_url, settings.notification_channel)
    return NotificationHub(queue_size=settings.notification_queue_size, relay=relay)
