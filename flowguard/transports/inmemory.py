"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import EventEnvelope
from .base import BaseTransport, _expired


class InMemoryTransport(BaseTransport[Tuple[str, EventEnvelope]]):
    """Simple in-process queue for unit tests.

    ``published`` keeps every envelope in publish order so tests can assert on
    what went out without consuming the queues.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[Tuple[str, EventEnvelope]]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.published: List[Tuple[str, EventEnvelope]] = []

    async def publish(self, topic: str, message: EventEnvelope) -> None:
        """Publish message to in-memory queue."""
        raw = (message.to_json(), message)
        async with self._lock:
            self._queues[topic].append(raw)
            self.published.append((topic, message))

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, EventEnvelope], EventEnvelope]]:
        """Subscribe to messages from topic.

        Args:
            topic: The topic to subscribe to
            lifespan: Maximum time in seconds to keep connection open. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while not _expired(start_time, lifespan, loop.time()):
            async with self._lock:
                raw_message = self._queues[topic].popleft() if self._queues[topic] else None
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue
            await asyncio.sleep(0.05)

    async def ack(self, raw_message: Tuple[str, EventEnvelope]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass
