"""Job, dead-letter and queue interface shared by the scheduler backends."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Protocol

from pydantic import BaseModel, Field

from ..utils.clock import utcnow


class JobBackoff(BaseModel):
    type: Literal["exponential", "fixed"] = "exponential"
    delay_ms: int = 1000

    def delay_for(self, attempts_made: int) -> int:
        if self.type == "exponential":
            return self.delay_ms * (2 ** max(0, attempts_made - 1))
        return self.delay_ms


class Job(BaseModel):
    id: str
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    attempts: int = 3
    attempts_made: int = 0
    backoff: JobBackoff = JobBackoff()
    run_at: datetime = Field(default_factory=utcnow)
    repeat_every_ms: Optional[int] = None
    failed_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class DeadLetter(BaseModel):
    id: str
    original_job_id: str
    name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    failed_reason: Optional[str] = None
    attempts_made: int = 0
    failed_at: datetime = Field(default_factory=utcnow)


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
    dead: int = 0


# Attempt budget for jobs moved back from the dead-letter queue.
REQUEUE_ATTEMPTS = 3
REQUEUE_BACKOFF = JobBackoff(type="exponential", delay_ms=2000)


class JobQueue(Protocol):
    """Durable delayed-job queue with a dead-letter queue.

    Adding a job whose ``job_id`` is already queued returns the queued job
    unchanged, which makes stable ids a deduplication key.
    """

    name: str

    async def add(
        self,
        name: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        job_id: Optional[str] = None,
        delay_ms: int = 0,
        attempts: int = 3,
        backoff: Optional[JobBackoff] = None,
        repeat_every_ms: Optional[int] = None,
    ) -> Job:
        ...

    async def get(self, job_id: str) -> Optional[Job]:
        ...

    async def reserve(self) -> Optional[Job]:
        """Claim the next due job, counting the attempt."""

    async def complete(self, job: Job) -> None:
        """Finish a job; recurring jobs are rescheduled."""

    async def fail(self, job: Job, reason: str, retryable: bool = True) -> Optional[DeadLetter]:
        """Retry with backoff while attempts remain, else move to the DLQ."""

    async def counts(self) -> QueueStats:
        ...

    async def list_dead(self, limit: int = 20) -> List[DeadLetter]:
        ...

    async def requeue_dead(self, dead_letter_id: str) -> Job:
        ...

    async def close(self) -> None:
        ...
