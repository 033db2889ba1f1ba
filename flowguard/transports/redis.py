"""Redis pub/sub transport for cross-process broadcast."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import PUBLISHER_ID, EventEnvelope
from .base import BaseTransport, _expired

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Broadcast envelopes to every process subscribed to a channel.

    Pub/sub delivery is fire-and-forget, so ``ack`` is a no-op. Envelopes this
    process published itself are dropped on receipt when ``skip_own`` is set.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        url: Optional[str] = None,
        instance_id: str = PUBLISHER_ID,
        skip_own: bool = True,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.url = url
        self.instance_id = instance_id
        self.skip_own = skip_own
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self.url:
            self._redis = redis.from_url(self.url, decode_responses=True)
        else:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: EventEnvelope) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.publish(topic, message.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, EventEnvelope]]:
        if not self._redis:
            await self.connect()

        pubsub = self._redis.pubsub()
        await pubsub.subscribe(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None
        try:
            while not _expired(start_time, lifespan, loop.time()):
                msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if not msg:
                    continue
                data = msg.get("data")
                try:
                    envelope = EventEnvelope.from_json(data)
                except (ValidationError, ValueError) as e:
                    logger.warning(f"Failed to parse broadcast message on {topic}: {e}")
                    continue
                if self.skip_own and envelope.publisher_instance_id == self.instance_id:
                    continue
                yield data, envelope
        finally:
            await pubsub.unsubscribe(topic)
            await pubsub.aclose()

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment for pub/sub delivery."""
        pass
