"""Outbox table as a transport, plus the relay that drains it."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Tuple

from ..contracts import EventEnvelope
from ..persistence.models import OutboxRecord
from ..persistence.repository import WorkflowRepository
from ..transports.base import BaseTransport

logger = logging.getLogger(__name__)

OutboxHandler = Callable[[EventEnvelope], Awaitable[None]]


def envelope_from_record(record: OutboxRecord) -> EventEnvelope:
    return EventEnvelope(
        event_id=record.event_id,
        event_type=record.event_type,
        payload=record.payload,
        published_at=record.created_at,
        outbox_id=record.id,
    )


class OutboxTransport(BaseTransport[OutboxRecord]):
    """Write envelopes to the repository's outbox table."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self.repository = repository

    async def publish(self, topic: str, message: EventEnvelope) -> None:
        await self.repository.add_outbox(message)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[OutboxRecord, EventEnvelope]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        while not lifespan or loop.time() - start_time < lifespan:
            records = await self.repository.list_pending_outbox()
            for record in records:
                yield record, envelope_from_record(record)
            if not records:
                await asyncio.sleep(0.5)

    async def ack(self, raw_message: OutboxRecord) -> None:
        await self.repository.mark_outbox_published([raw_message.id])


class OutboxRelay:
    """Hand unpublished outbox rows to downstream handlers."""

    def __init__(
        self, repository: WorkflowRepository, handlers: Optional[List[OutboxHandler]] = None
    ) -> None:
        self.repository = repository
        self.handlers: List[OutboxHandler] = list(handlers or [])

    def add_handler(self, handler: OutboxHandler) -> None:
        self.handlers.append(handler)

    async def drain(self, limit: int = 100) -> int:
        """Relay one batch; rows whose handlers fail stay pending for the next drain."""
        published: List[int] = []
        for record in await self.repository.list_pending_outbox(limit):
            envelope = envelope_from_record(record)
            try:
                for handler in self.handlers:
                    await handler(envelope)
            except Exception as e:
                logger.warning(f"Outbox relay failed for row {record.id} ({record.event_type}): {e}")
                continue
            published.append(record.id)
        if published:
            await self.repository.mark_outbox_published(published)
        return len(published)
