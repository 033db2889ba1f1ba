"""Transport interface shared by the log, broadcast and test backends."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import EventEnvelope

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """A broker that carries ``EventEnvelope`` JSON between processes.

    ``RawMessageT`` is whatever the broker hands back on receipt (a Kafka
    record, an AMQP message, a pub/sub channel name) and is passed back
    unchanged to ``ack``/``nack``.
    """

    async def connect(self) -> None:
        """Open broker connections. Backends without a connection skip this."""

    async def disconnect(self) -> None:
        """Release broker connections."""

    @abc.abstractmethod
    async def publish(self, topic: str, message: EventEnvelope) -> None:
        """Publish one envelope under ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, EventEnvelope]]:
        """Iterate ``(raw, envelope)`` pairs received on ``topic``.

        Args:
            topic: Topic, queue or channel to read
            lifespan: Seconds to keep reading before returning; ``None`` reads until cancelled.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Mark a received message as handled."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a received message. Brokers without rejection treat it as handled."""
        await self.ack(raw_message)


def _expired(start_time: Optional[float], lifespan: Optional[float], now: float) -> bool:
    return bool(lifespan) and start_time is not None and now - start_time >= lifespan
