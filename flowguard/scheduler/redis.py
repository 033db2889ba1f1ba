"""Redis-backed job queue: a sorted set of due times plus job hashes."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, List, Optional

import redis.asyncio as redis

from ..errors import DeadLetterNotFound
from ..utils.clock import Clock, utcnow
from .base import REQUEUE_ATTEMPTS, REQUEUE_BACKOFF, DeadLetter, Job, JobBackoff, QueueStats

logger = logging.getLogger(__name__)

DEFAULT_LEASE_MS = 300_000


class RedisJobQueue:
    """Job queue shared between worker processes.

    Keys under ``<prefix>:<name>``: ``jobs`` (hash of job JSON), ``schedule``
    (sorted set scored by due time), ``active`` (sorted set scored by lease
    deadline), ``dead`` (hash of dead-letter JSON), ``dead:index`` (sorted
    set scored by failure time) and ``stats`` (completed/failed counters).

    A reserved job holds a lease of ``lease_ms``. If its worker dies before
    completing or failing it, the next ``reserve`` after the deadline treats
    the lost attempt as a failure: the job is retried with backoff or
    dead-lettered, and recurring jobs keep their schedule.
    """

    def __init__(
        self,
        name: str = "workflow",
        client: Optional[Any] = None,
        url: Optional[str] = None,
        prefix: str = "flowguard",
        clock: Clock = utcnow,
        lease_ms: int = DEFAULT_LEASE_MS,
    ) -> None:
        self.name = name
        self._redis = client or redis.from_url(
            url or "redis://localhost:6379/0", decode_responses=True
        )
        self._base = f"{prefix}:{name}"
        self._clock = clock
        self.lease_ms = lease_ms

    def _key(self, suffix: str) -> str:
        return f"{self._base}:{suffix}"

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
        if not job_id:
            job_id = str(await self._redis.incr(self._key("seq")))
        job = Job(
            id=job_id,
            name=name,
            payload=dict(payload or {}),
            attempts=attempts,
            backoff=backoff or JobBackoff(),
            run_at=self._clock() + timedelta(milliseconds=max(0, delay_ms)),
            repeat_every_ms=repeat_every_ms,
        )
        created = await self._redis.hsetnx(self._key("jobs"), job.id, job.model_dump_json())
        if not created:
            existing = await self.get(job.id)
            if existing is not None:
                await self._restore_orphan(existing)
                return existing
        await self._redis.zadd(self._key("schedule"), {job.id: job.run_at.timestamp()})
        return job

    async def _restore_orphan(self, job: Job) -> None:
        # A job stored but neither scheduled nor leased was dropped mid-claim.
        pipe = self._redis.pipeline()
        pipe.zscore(self._key("schedule"), job.id)
        pipe.zscore(self._key("active"), job.id)
        scheduled, leased = await pipe.execute()
        if scheduled is None and leased is None:
            logger.warning(f"Rescheduling orphaned job {job.name} ({job.id})")
            await self._redis.zadd(self._key("schedule"), {job.id: job.run_at.timestamp()})

    async def get(self, job_id: str) -> Optional[Job]:
        raw = await self._redis.hget(self._key("jobs"), job_id)
        return Job.model_validate_json(raw) if raw else None

    async def _reclaim_expired(self, now: float) -> None:
        for job_id in await self._redis.zrangebyscore(self._key("active"), "-inf", now):
            # ZREM is the claim here too: only one worker reclaims a lease.
            if not await self._redis.zrem(self._key("active"), job_id):
                continue
            job = await self.get(job_id)
            if job is None:
                continue
            logger.warning(f"Lease expired for job {job.name} ({job.id}); worker presumed lost")
            await self.fail(job, "worker lease expired")

    async def reserve(self) -> Optional[Job]:
        now = self._clock().timestamp()
        await self._reclaim_expired(now)
        for job_id in await self._redis.zrangebyscore(self._key("schedule"), "-inf", now, start=0, num=5):
            # ZREM is the claim: only one worker removes a given member.
            if not await self._redis.zrem(self._key("schedule"), job_id):
                continue
            job = await self.get(job_id)
            if job is None:
                continue
            job.attempts_made += 1
            pipe = self._redis.pipeline()
            pipe.hset(self._key("jobs"), job.id, job.model_dump_json())
            pipe.zadd(self._key("active"), {job.id: now + self.lease_ms / 1000})
            await pipe.execute()
            return job
        return None

    async def _reschedule(self, job: Job, delay_ms: int) -> None:
        job.run_at = self._clock() + timedelta(milliseconds=delay_ms)
        pipe = self._redis.pipeline()
        pipe.hset(self._key("jobs"), job.id, job.model_dump_json())
        pipe.zadd(self._key("schedule"), {job.id: job.run_at.timestamp()})
        await pipe.execute()

    async def complete(self, job: Job) -> None:
        await self._redis.zrem(self._key("active"), job.id)
        await self._redis.hincrby(self._key("stats"), "completed", 1)
        if job.repeat_every_ms:
            job.attempts_made = 0
            job.failed_reason = None
            await self._reschedule(job, job.repeat_every_ms)
        else:
            await self._redis.hdel(self._key("jobs"), job.id)

    async def fail(self, job: Job, reason: str, retryable: bool = True) -> Optional[DeadLetter]:
        await self._redis.zrem(self._key("active"), job.id)
        job.failed_reason = reason
        if retryable and job.attempts_made < job.attempts:
            await self._reschedule(job, job.backoff.delay_for(job.attempts_made))
            return None

        dead = DeadLetter(
            id=uuid.uuid4().hex,
            original_job_id=job.id,
            name=job.name,
            payload=job.payload,
            failed_reason=reason,
            attempts_made=job.attempts_made,
            failed_at=self._clock(),
        )
        pipe = self._redis.pipeline()
        pipe.hset(self._key("dead"), dead.id, dead.model_dump_json())
        pipe.zadd(self._key("dead:index"), {dead.id: dead.failed_at.timestamp()})
        pipe.hincrby(self._key("stats"), "failed", 1)
        await pipe.execute()
        if job.repeat_every_ms:
            job.attempts_made = 0
            await self._reschedule(job, job.repeat_every_ms)
        else:
            await self._redis.hdel(self._key("jobs"), job.id)
        logger.warning(f"Job {job.name} ({job.id}) moved to DLQ: {reason}")
        return dead

    async def counts(self) -> QueueStats:
        now = self._clock().timestamp()
        pipe = self._redis.pipeline()
        pipe.zcount(self._key("schedule"), "-inf", now)
        pipe.zcount(self._key("schedule"), f"({now}", "+inf")
        pipe.zcard(self._key("active"))
        pipe.hgetall(self._key("stats"))
        pipe.hlen(self._key("dead"))
        waiting, delayed, active, stats, dead = await pipe.execute()
        return QueueStats(
            waiting=waiting,
            delayed=delayed,
            active=active,
            completed=int(stats.get("completed", 0)),
            failed=int(stats.get("failed", 0)),
            dead=dead,
        )

    async def list_dead(self, limit: int = 20) -> List[DeadLetter]:
        if limit <= 0:
            return []
        ids = await self._redis.zrevrange(self._key("dead:index"), 0, limit - 1)
        if not ids:
            return []
        raws = await self._redis.hmget(self._key("dead"), ids)
        return [DeadLetter.model_validate_json(raw) for raw in raws if raw]

    async def requeue_dead(self, dead_letter_id: str) -> Job:
        raw = await self._redis.hget(self._key("dead"), dead_letter_id)
        if not raw:
            raise DeadLetterNotFound(dead_letter_id)
        dead = DeadLetter.model_validate_json(raw)
        job = await self.add(
            dead.name, dead.payload, attempts=REQUEUE_ATTEMPTS, backoff=REQUEUE_BACKOFF
        )
        pipe = self._redis.pipeline()
        pipe.hdel(self._key("dead"), dead_letter_id)
        pipe.zrem(self._key("dead:index"), dead_letter_id)
        await pipe.execute()
        return job

    async def close(self) -> None:
        await self._redis.aclose()
