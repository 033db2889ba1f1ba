"""Kafka transport implementation using aiokafka."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Iterable, Optional, Tuple

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.structs import TopicPartition
from pydantic import ValidationError

from ..contracts import EventEnvelope
from .base import BaseTransport, _expired

logger = logging.getLogger(__name__)


class KafkaTransport(BaseTransport[Any]):
    """Durable event log on Kafka topics, keyed by instance id."""

    def __init__(
        self,
        brokers: Iterable[str] | str = "localhost:9092",
        client_id: str = "flowguard",
        group_id: str = "flowguard",
        dlq_topic: str = "workflow.deadletter",
    ) -> None:
        self.brokers = [brokers] if isinstance(brokers, str) else list(brokers)
        self.client_id = client_id
        self.group_id = group_id
        self.dlq_topic = dlq_topic
        self._producer: Optional[AIOKafkaProducer] = None
        self._consumer: Optional[AIOKafkaConsumer] = None

    async def connect(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self.brokers, client_id=self.client_id
        )
        self._consumer = AIOKafkaConsumer(
            bootstrap_servers=self.brokers,
            client_id=self.client_id,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
        )
        await self._producer.start()
        await self._consumer.start()

    async def disconnect(self) -> None:
        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
        if self._producer:
            await self._producer.stop()
            self._producer = None

    async def publish(self, topic: str, message: EventEnvelope) -> None:
        if not self._producer:
            raise RuntimeError("KafkaTransport not connected")
        key = message.payload.get("instanceId")
        await self._producer.send_and_wait(
            topic,
            value=message.to_json().encode(),
            key=str(key).encode() if key is not None else None,
        )

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Any, EventEnvelope]]:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        self._consumer.subscribe([topic])
        loop = asyncio.get_running_loop()
        start_time = loop.time() if lifespan else None

        while not _expired(start_time, lifespan, loop.time()):
            try:
                msg = await asyncio.wait_for(self._consumer.getone(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            try:
                envelope = EventEnvelope.from_json(msg.value.decode())
            except (ValidationError, ValueError):
                logger.warning(f"Malformed envelope on {msg.topic}@{msg.offset}, dead-lettering")
                await self.nack(msg, requeue=False)
                continue
            yield msg, envelope

    async def ack(self, raw_message: Any) -> None:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        tp = TopicPartition(raw_message.topic, raw_message.partition)
        await self._consumer.commit({tp: raw_message.offset + 1})

    async def nack(self, raw_message: Any, requeue: bool = True) -> None:
        if not self._consumer:
            raise RuntimeError("KafkaTransport not connected")
        if requeue:
            tp = TopicPartition(raw_message.topic, raw_message.partition)
            self._consumer.seek(tp, raw_message.offset)
        else:
            if self._producer:
                await self._producer.send_and_wait(self.dlq_topic, value=raw_message.value)
            await self.ack(raw_message)
