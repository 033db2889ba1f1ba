"""Event bus, transport fan-out, outbox relay and deduplicating consumers."""

from .bus import EventBus
from .consumer import DedupingConsumer
from .fanout import FanOut
from .outbox import OutboxRelay, OutboxTransport, envelope_from_record

__all__ = [
    "DedupingConsumer",
    "EventBus",
    "FanOut",
    "OutboxRelay",
    "OutboxTransport",
    "envelope_from_record",
]
