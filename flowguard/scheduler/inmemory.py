"""Process-local job queue."""

from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from ..errors import DeadLetterNotFound
from ..utils.clock import Clock, utcnow
from .base import REQUEUE_ATTEMPTS, REQUEUE_BACKOFF, DeadLetter, Job, JobBackoff, QueueStats

logger = logging.getLogger(__name__)


class InMemoryJobQueue:
    """Job queue kept in memory; for tests and single-process deployments."""

    def __init__(self, name: str = "workflow", clock: Clock = utcnow) -> None:
        self.name = name
        self._clock = clock
        self._jobs: Dict[str, Job] = {}
        self._active: Set[str] = set()
        self._dead: Dict[str, DeadLetter] = {}
        self._completed = 0
        self._failed = 0
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

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
        async with self._lock:
            if job_id and job_id in self._jobs:
                return self._jobs[job_id].model_copy()
            job = Job(
                id=job_id or str(next(self._ids)),
                name=name,
                payload=dict(payload or {}),
                attempts=attempts,
                backoff=backoff or JobBackoff(),
                run_at=self._clock() + timedelta(milliseconds=max(0, delay_ms)),
                repeat_every_ms=repeat_every_ms,
            )
            self._jobs[job.id] = job
            return job.model_copy()

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy() if job else None

    async def reserve(self) -> Optional[Job]:
        async with self._lock:
            now = self._clock()
            due = [
                j for j in self._jobs.values() if j.id not in self._active and j.run_at <= now
            ]
            if not due:
                return None
            job = min(due, key=lambda j: j.run_at)
            job.attempts_made += 1
            self._active.add(job.id)
            return job.model_copy()

    async def complete(self, job: Job) -> None:
        async with self._lock:
            self._active.discard(job.id)
            self._completed += 1
            stored = self._jobs.get(job.id)
            if stored is None:
                return
            if stored.repeat_every_ms:
                self._reschedule(stored)
            else:
                del self._jobs[job.id]

    def _reschedule(self, job: Job) -> None:
        job.attempts_made = 0
        job.failed_reason = None
        job.run_at = self._clock() + timedelta(milliseconds=job.repeat_every_ms)

    async def fail(self, job: Job, reason: str, retryable: bool = True) -> Optional[DeadLetter]:
        async with self._lock:
            self._active.discard(job.id)
            stored = self._jobs.get(job.id)
            if stored is None:
                return None
            stored.failed_reason = reason
            if retryable and stored.attempts_made < stored.attempts:
                delay = stored.backoff.delay_for(stored.attempts_made)
                stored.run_at = self._clock() + timedelta(milliseconds=delay)
                return None

            self._failed += 1
            dead = DeadLetter(
                id=uuid.uuid4().hex,
                original_job_id=stored.id,
                name=stored.name,
                payload=stored.payload,
                failed_reason=reason,
                attempts_made=stored.attempts_made,
                failed_at=self._clock(),
            )
            self._dead[dead.id] = dead
            if stored.repeat_every_ms:
                self._reschedule(stored)
            else:
                del self._jobs[stored.id]
            logger.warning(f"Job {stored.name} ({stored.id}) moved to DLQ: {reason}")
            return dead

    async def counts(self) -> QueueStats:
        now = self._clock()
        idle = [j for j in self._jobs.values() if j.id not in self._active]
        return QueueStats(
            waiting=sum(1 for j in idle if j.run_at <= now),
            delayed=sum(1 for j in idle if j.run_at > now),
            active=len(self._active),
            completed=self._completed,
            failed=self._failed,
            dead=len(self._dead),
        )

    async def list_dead(self, limit: int = 20) -> List[DeadLetter]:
        dead = sorted(self._dead.values(), key=lambda d: d.failed_at, reverse=True)
        return [d.model_copy() for d in dead[: max(0, limit)]]

    async def requeue_dead(self, dead_letter_id: str) -> Job:
        dead = self._dead.pop(dead_letter_id, None)
        if dead is None:
            raise DeadLetterNotFound(dead_letter_id)
        return await self.add(
            dead.name, dead.payload, attempts=REQUEUE_ATTEMPTS, backoff=REQUEUE_BACKOFF
        )

    async def close(self) -> None:
        pass
