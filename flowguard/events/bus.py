"""In-process event bus with an explicit outbound queue."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..contracts import EventEnvelope

logger = logging.getLogger(__name__)

Handler = Callable[[EventEnvelope], Awaitable[None]]

WILDCARD = "*"


class EventBus:
    """Queue announced facts and deliver them from a dispatcher task.

    ``announce`` never blocks and never runs handlers inline, so callers can
    announce from inside a unit of work's aftermath without waiting on
    transports. Handler failures are logged and do not stop delivery to the
    remaining handlers.
    """

    def __init__(self, fanout: Optional[Any] = None) -> None:
        self.fanout = fanout
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._queue: asyncio.Queue[EventEnvelope] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, event_type: str, handler: Handler) -> None:
        """Register ``handler`` for ``event_type`` (``"*"`` for every type)."""
        self._handlers[event_type].append(handler)

    def announce(
        self, event_type: str, payload: Optional[Dict[str, Any]] = None, **kwargs: Any
    ) -> EventEnvelope:
        envelope = EventEnvelope.build(event_type, payload, **kwargs)
        self.announce_envelope(envelope)
        return envelope

    def announce_envelope(self, envelope: EventEnvelope) -> None:
        self._queue.put_nowait(envelope)

    def retry_listener(self, event_type: str, payload: Dict[str, Any]) -> None:
        """Adapter so a ``Retrier`` can report attempts as bus facts."""
        self.announce(event_type, payload)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def dispatch(self, envelope: EventEnvelope) -> None:
        if self.fanout is not None:
            await self.fanout.publish(envelope)
        handlers = self._handlers.get(envelope.event_type, []) + self._handlers.get(WILDCARD, [])
        for handler in handlers:
            try:
                await handler(envelope)
            except Exception:
                logger.exception(
                    f"Handler {getattr(handler, '__name__', handler)!r} failed for "
                    f"{envelope.event_type} ({envelope.event_id})"
                )

    async def drain(self) -> int:
        """Dispatch queued envelopes, including ones announced while draining."""
        count = 0
        while not self._queue.empty():
            envelope = self._queue.get_nowait()
            try:
                await self.dispatch(envelope)
            finally:
                self._queue.task_done()
            count += 1
        return count

    async def run(self) -> None:
        while True:
            envelope = await self._queue.get()
            try:
                await self.dispatch(envelope)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="flowguard-event-bus")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
