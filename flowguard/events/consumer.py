"""Transport consumer with duplicate suppression."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from ..contracts import EventEnvelope
from ..idempotency import IdempotencyStore
from ..transports.base import BaseTransport

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[EventEnvelope], Awaitable[None]]


class DedupingConsumer:
    """Consume a topic and skip entries already handled by this group.

    A "seen" marker per entry id lives in the idempotency store under scope
    ``inbox:<group>``. Duplicates are acked and skipped; a handler failure
    nacks the entry and leaves it unmarked so redelivery processes it.
    """

    def __init__(
        self,
        transport: BaseTransport,
        topic: str,
        group: str,
        handler: EnvelopeHandler,
        store: IdempotencyStore,
        source: str,
        seen_ttl_seconds: int = 86400,
    ) -> None:
        self.transport = transport
        self.topic = topic
        self.group = group
        self.handler = handler
        self.store = store
        self.source = source
        self.seen_ttl_seconds = seen_ttl_seconds
        self.processed = 0
        self.duplicates = 0

    @property
    def scope(self) -> str:
        return f"inbox:{self.group}"

    async def handle(self, raw, envelope: EventEnvelope) -> bool:
        """Process one delivery; return ``False`` for a suppressed duplicate."""
        if await self.store.get_result(self.scope, envelope.event_id) is not None:
            self.duplicates += 1
            await self.transport.ack(raw)
            return False
        if not await self.store.reserve(self.scope, envelope.event_id, self.seen_ttl_seconds):
            self.duplicates += 1
            await self.transport.ack(raw)
            return False
        ingested = envelope.model_copy(update={"ingested_from": self.source})
        try:
            await self.handler(ingested)
        except Exception as e:
            await self.store.release(self.scope, envelope.event_id)
            logger.warning(
                f"Consumer {self.group} failed on {envelope.event_type} ({envelope.event_id}): {e}"
            )
            await self.transport.nack(raw)
            return False
        await self.store.store_result(self.scope, envelope.event_id, True, self.seen_ttl_seconds)
        await self.transport.ack(raw)
        self.processed += 1
        return True

    async def run(self, lifespan: Optional[float] = None) -> None:
        async for raw, envelope in self.transport.subscribe(self.topic, lifespan):
            await self.handle(raw, envelope)
