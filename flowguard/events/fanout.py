"""Publish routed facts to the log, broadcast and outbox transports."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from ..constants import EVENT_TOPICS
from ..contracts import EventEnvelope
from ..transports.base import BaseTransport

logger = logging.getLogger(__name__)


class FanOut:
    """Attempt every enabled transport independently for routed event types.

    A failure on one transport is logged and never prevents the others.
    Envelopes that arrived from another process are not published again,
    and envelopes whose outbox row was written with the state change skip
    the outbox.
    """

    def __init__(
        self,
        log: Optional[BaseTransport] = None,
        broadcast: Optional[BaseTransport] = None,
        outbox: Optional[BaseTransport] = None,
        topic_prefix: str = "workflow",
        channel: str = "flowguard.events",
        topics: Optional[Dict[str, str]] = None,
    ) -> None:
        self.log = log
        self.broadcast = broadcast
        self.outbox = outbox
        self.topic_prefix = topic_prefix
        self.channel = channel
        self.topics = dict(EVENT_TOPICS if topics is None else topics)

    def topic_for(self, event_type: str) -> Optional[str]:
        suffix = self.topics.get(event_type)
        return f"{self.topic_prefix}.{suffix}" if suffix else None

    def _targets(self, envelope: EventEnvelope) -> List[Tuple[str, BaseTransport, str]]:
        topic = self.topic_for(envelope.event_type)
        if topic is None or envelope.ingested_from:
            return []
        targets = []
        if self.log is not None:
            targets.append(("log", self.log, topic))
        if self.broadcast is not None:
            targets.append(("broadcast", self.broadcast, self.channel))
        if self.outbox is not None and envelope.outbox_id is None:
            targets.append(("outbox", self.outbox, topic))
        return targets

    async def publish(self, envelope: EventEnvelope) -> List[str]:
        """Publish ``envelope``; return the names of transports that failed."""
        targets = self._targets(envelope)
        if not targets:
            return []
        results = await asyncio.gather(
            *(transport.publish(topic, envelope) for _, transport, topic in targets),
            return_exceptions=True,
        )
        failed = []
        for (name, _, topic), result in zip(targets, results):
            if isinstance(result, Exception):
                failed.append(name)
                logger.warning(
                    f"Failed to publish {envelope.event_type} ({envelope.event_id}) "
                    f"to {name} transport on {topic}: {result}"
                )
        return failed
