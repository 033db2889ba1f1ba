import asyncio
from datetime import timedelta

import pytest

from flowguard.errors import ConfigurationError, DeadLetterNotFound
from flowguard.scheduler import InMemoryJobQueue, JobBackoff, JobWorker, get_job_queue


@pytest.mark.asyncio
async def test_stable_job_id_deduplicates(clock):
    queue = InMemoryJobQueue(clock=clock)

    first = await queue.add("notify", {"n": 1}, job_id="stable", delay_ms=1000)
    second = await queue.add("notify", {"n": 2}, job_id="stable")

    assert second.id == first.id
    assert second.payload == {"n": 1}
    stats = await queue.counts()
    assert stats.delayed == 1
    assert stats.waiting == 0


@pytest.mark.asyncio
async def test_failed_job_retries_with_backoff_then_dead_letters(clock):
    queue = InMemoryJobQueue(clock=clock)
    await queue.add("flaky", {}, attempts=3, backoff=JobBackoff(delay_ms=1000))

    job = await queue.reserve()
    assert job.attempts_made == 1
    assert await queue.fail(job, "boom") is None
    assert await queue.reserve() is None

    clock.advance(1)
    job = await queue.reserve()
    assert job.attempts_made == 2
    assert await queue.fail(job, "boom") is None

    clock.advance(1)
    assert await queue.reserve() is None
    clock.advance(1)
    job = await queue.reserve()
    dead = await queue.fail(job, "still boom")

    assert dead is not None
    assert dead.attempts_made == 3
    assert dead.failed_reason == "still boom"
    stats = await queue.counts()
    assert stats.dead == 1
    assert stats.failed == 1
    assert stats.waiting == stats.delayed == 0


@pytest.mark.asyncio
async def test_non_retryable_failure_dead_letters_immediately(clock):
    queue = InMemoryJobQueue(clock=clock)
    await queue.add("bad", {"x": 1}, attempts=5)

    job = await queue.reserve()
    dead = await queue.fail(job, "invalid payload", retryable=False)

    assert dead.attempts_made == 1
    assert [d.id for d in await queue.list_dead()] == [dead.id]


@pytest.mark.asyncio
async def test_requeue_dead_letter(clock):
    queue = InMemoryJobQueue(clock=clock)
    await queue.add("bad", {"x": 1}, attempts=1)
    dead = await queue.fail(await queue.reserve(), "nope")

    job = await queue.requeue_dead(dead.id)

    assert job.name == "bad"
    assert job.payload == {"x": 1}
    assert job.attempts == 3
    assert job.attempts_made == 0
    assert await queue.list_dead() == []
    with pytest.raises(DeadLetterNotFound):
        await queue.requeue_dead(dead.id)


@pytest.mark.asyncio
async def test_recurring_job_is_rescheduled_after_completion(clock):
    queue = InMemoryJobQueue(clock=clock)
    await queue.add("scan", {}, job_id="workflow:scan", delay_ms=60000, repeat_every_ms=60000)

    clock.advance(60)
    job = await queue.reserve()
    await queue.complete(job)

    stored = await queue.get("workflow:scan")
    assert stored is not None
    assert stored.attempts_made == 0
    assert stored.run_at == clock.now + timedelta(milliseconds=60000)
    stats = await queue.counts()
    assert stats.completed == 1
    assert stats.delayed == 1


@pytest.mark.asyncio
async def test_worker_runs_registered_handlers(clock):
    queue = InMemoryJobQueue(clock=clock)
    seen = []

    async def handler(job):
        seen.append(job.payload["n"])

    worker = JobWorker(queue, {"count": handler}, concurrency=2)
    for n in range(5):
        await queue.add("count", {"n": n})

    assert await worker.run_once() == 5
    assert sorted(seen) == [0, 1, 2, 3, 4]
    assert (await queue.counts()).completed == 5


@pytest.mark.asyncio
async def test_worker_dead_letters_unknown_jobs(clock):
    queue = InMemoryJobQueue(clock=clock)
    worker = JobWorker(queue, {})
    await queue.add("mystery", {}, attempts=5)

    await worker.run_once()

    dead = await queue.list_dead()
    assert len(dead) == 1
    assert "mystery" in dead[0].failed_reason


@pytest.mark.asyncio
async def test_worker_times_out_slow_jobs(clock):
    queue = InMemoryJobQueue(clock=clock)

    async def slow(job):
        await asyncio.sleep(1)

    worker = JobWorker(queue, {"slow": slow}, job_timeout_seconds=0.01)
    await queue.add("slow", {}, job_id="slow-1", attempts=2)

    await worker.run_once()

    job = await queue.get("slow-1")
    assert job.failed_reason.startswith("Timed out")
    assert (await queue.counts()).delayed == 1


@pytest.mark.asyncio
async def test_worker_sends_non_retryable_errors_to_dlq(clock):
    queue = InMemoryJobQueue(clock=clock)

    async def misconfigured(job):
        raise ConfigurationError("no such action")

    worker = JobWorker(queue, {"esc": misconfigured})
    await queue.add("esc", {}, attempts=6)

    await worker.run_once()

    assert (await queue.counts()).dead == 1


def test_worker_validate_reports_missing_handlers():
    worker = JobWorker(InMemoryJobQueue(), {"a": None})
    worker.validate(["a"])
    with pytest.raises(ConfigurationError):
        worker.validate(["a", "b"])


def test_get_job_queue_defaults_to_inmemory(tmp_path, monkeypatch):
    monkeypatch.setenv("FLOWGUARD_CONFIG", str(tmp_path / "missing.yaml"))
    queue = get_job_queue()
    assert isinstance(queue, InMemoryJobQueue)
    assert queue.name == "workflow"


def test_get_job_queue_selects_redis_backend():
    from flowguard.config import FlowguardConfig
    from flowguard.scheduler.redis import RedisJobQueue

    queue = get_job_queue("redis", FlowguardConfig())
    assert isinstance(queue, RedisJobQueue)
    assert queue._key("schedule") == "flowguard:workflow:schedule"
    with pytest.raises(ValueError):
        get_job_queue("sqs", FlowguardConfig())
