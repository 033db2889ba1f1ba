"""Transport factory and initialization."""

from __future__ import annotations

from typing import Optional

from ..config import FlowguardConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None, config: Optional[FlowguardConfig] = None
) -> Optional[BaseTransport]:
    """Factory function to get a configured transport.

    ``backend`` names a log backend (``kafka``, ``rabbitmq``) or a broadcast
    backend (``redis``); ``none`` yields ``None`` so the caller skips it.
    """

    config = config or load_config()
    backend = (backend or config.bus.log).lower()

    if backend == "none":
        return None
    if backend == "inmemory":
        return InMemoryTransport()
    elif backend == "redis":
        from .redis import RedisTransport

        redis_conf = config.redis
        return RedisTransport(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            url=redis_conf.url,
        )
    elif backend == "kafka":
        from .kafka import KafkaTransport

        kafka_conf = config.bus.kafka
        return KafkaTransport(
            brokers=kafka_conf.brokers,
            client_id=kafka_conf.client_id,
            group_id=kafka_conf.group_id,
            dlq_topic=f"{config.bus.topic_prefix}.deadletter",
        )
    elif backend == "rabbitmq":
        from .rabbitmq import RabbitMQTransport

        return RabbitMQTransport(url=config.bus.rabbitmq.url)
    else:
        raise ValueError(f"Unsupported transport backend: {backend}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
