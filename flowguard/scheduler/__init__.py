"""Delayed and recurring jobs with a dead-letter queue."""

from __future__ import annotations

from typing import Optional

from ..config import FlowguardConfig, load_config
from .base import DeadLetter, Job, JobBackoff, JobQueue, QueueStats
from .inmemory import InMemoryJobQueue
from .worker import JobHandler, JobWorker


def get_job_queue(
    backend: Optional[str] = None, config: Optional[FlowguardConfig] = None
) -> JobQueue:
    """Factory function to get the configured job queue."""

    config = config or load_config()
    backend = (backend or config.scheduler.backend).lower()
    name = config.scheduler.queue_name

    if backend == "inmemory":
        return InMemoryJobQueue(name)
    elif backend == "redis":
        from .redis import RedisJobQueue

        # The lease outlives the worker's per-attempt timeout.
        lease_ms = max(60_000, int(config.scheduler.job_timeout_seconds * 2000))
        return RedisJobQueue(name, url=config.redis.dsn(), lease_ms=lease_ms)
    else:
        raise ValueError(f"Unsupported job queue backend: {backend}")


__all__ = [
    "DeadLetter",
    "InMemoryJobQueue",
    "Job",
    "JobBackoff",
    "JobHandler",
    "JobQueue",
    "JobWorker",
    "QueueStats",
    "get_job_queue",
]
