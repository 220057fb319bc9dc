"""
Redis pub/sub relay between API processes

With several API workers a socket lives in exactly one of them, while the
message that must reach it may be committed by another. Every broadcast is
published on ``FANOUT_REDIS_CHANNEL``; each process delivers what it receives
to its own connections and ignores what it published itself.
"""
import asyncio
import json
import os
import socket
from contextlib import suppress
from urllib.parse import urlparse

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def mask_redis_url(url: str) -> str:
    """redis://:secret@host:6379 -> redis://:****@host:6379"""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


class RedisFanoutRelay:
    def __init__(self, fanout, redis: aioredis.Redis, channel: str | None = None, origin: str | None = None):
        self.fanout = fanout
        self.redis = redis
        self.channel = channel or settings.FANOUT_REDIS_CHANNEL
        self.origin = origin or fanout_origin()
        self._pending: set[asyncio.Task] = set()
        self._listener: asyncio.Task | None = None
        self._pubsub = None

    def publish(self, event: dict, session_id: int | None = None) -> None:
        """Schedule a publish; never waits for Redis"""
        payload = json.dumps({"origin": self.origin, "session_id": session_id, "event": event})
        task = asyncio.create_task(self._publish(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, payload: str) -> None:
        try:
            await self.redis.publish(self.channel, payload)
        except RedisError as exc:
            logger.warning("Fan-out relay publish failed", extra_data={"error": str(exc)})

    def handle(self, raw: str | bytes) -> int:
        """Deliver one relayed frame to local connections; returns the delivery count"""
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Fan-out relay got a malformed frame")
            return 0

        if frame.get("origin") == self.origin:
            return 0

        event = frame.get("event")
        if not isinstance(event, dict):
            return 0

        session_id = frame.get("session_id")
        if session_id is None:
            return self.fanout.deliver_to_all(event)
        return self.fanout.deliver_to_session(int(session_id), event)

    async def start(self) -> None:
        self._pubsub = self.redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._listener = asyncio.create_task(self._listen(), name="fanout-relay-listener")
        self.fanout.relay = self
        logger.info("Fan-out relay started", extra_data={"channel": self.channel, "origin": self.origin})

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") == "message":
                    self.handle(message["data"])
        except RedisError as exc:
            logger.error("Fan-out relay listener stopped", extra_data={"error": str(exc)})

    async def stop(self) -> None:
        self.fanout.relay = None
        if self._listener is not None:
            self._listener.cancel()
            with suppress(asyncio.CancelledError):
                await self._listener
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        for task in list(self._pending):
            task.cancel()
        await self.redis.aclose()
        logger.info("Fan-out relay stopped")


def fanout_origin() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def create_relay(fanout) -> RedisFanoutRelay:
    client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
    await client.ping()
    logger.info("Redis client initialized", extra_data={"url": mask_redis_url(settings.REDIS_URL)})
    relay = RedisFanoutRelay(fanout, client)
    await relay.start()
    return relay
