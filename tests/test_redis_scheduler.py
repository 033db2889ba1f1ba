from datetime import timedelta

import fakeredis
import pytest

from flowguard.errors import ConfigurationError, DeadLetterNotFound
from flowguard.scheduler import JobBackoff, JobWorker
from flowguard.scheduler.redis import RedisJobQueue


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(decode_responses=True)


@pytest.fixture
def queue(redis_client, clock):
    return RedisJobQueue(client=redis_client, clock=clock, lease_ms=5000)


@pytest.mark.asyncio
async def test_stable_job_id_deduplicates(queue):
    first = await queue.add("notify", {"n": 1}, job_id="stable", delay_ms=1000)
    second = await queue.add("notify", {"n": 2}, job_id="stable")

    assert second.id == first.id
    assert second.payload == {"n": 1}
    stats = await queue.counts()
    assert stats.delayed == 1
    assert stats.waiting == 0


@pytest.mark.asyncio
async def test_reserve_and_complete(queue, clock):
    await queue.add("notify", {"n": 1}, job_id="a")
    await queue.add("notify", {"n": 2}, job_id="b", delay_ms=1000)

    job = await queue.reserve()
    assert job.id == "a"
    assert job.attempts_made == 1
    assert await queue.reserve() is None
    assert (await queue.counts()).active == 1

    await queue.complete(job)

    assert await queue.get("a") is None
    stats = await queue.counts()
    assert stats.active == 0
    assert stats.completed == 1
    assert stats.delayed == 1


@pytest.mark.asyncio
async def test_failed_job_retries_with_backoff_then_dead_letters(queue, clock):
    await queue.add("flaky", {"x": 1}, attempts=2, backoff=JobBackoff(delay_ms=1000))

    job = await queue.reserve()
    assert await queue.fail(job, "boom") is None
    assert await queue.reserve() is None

    clock.advance(1)
    job = await queue.reserve()
    assert job.attempts_made == 2
    assert job.failed_reason == "boom"
    dead = await queue.fail(job, "still boom")

    assert dead.attempts_made == 2
    assert dead.failed_reason == "still boom"
    assert [d.id for d in await queue.list_dead()] == [dead.id]
    stats = await queue.counts()
    assert stats.dead == 1
    assert stats.failed == 1
    assert stats.waiting == stats.delayed == stats.active == 0


@pytest.mark.asyncio
async def test_non_retryable_failure_dead_letters_immediately(queue):
    await queue.add("bad", {"x": 1}, attempts=5)

    job = await queue.reserve()
    dead = await queue.fail(job, "invalid payload", retryable=False)

    assert dead.attempts_made == 1
    assert dead.payload == {"x": 1}
    assert (await queue.counts()).dead == 1


@pytest.mark.asyncio
async def test_requeue_dead_letter(queue, clock):
    await queue.add("bad", {"x": 1}, attempts=1)
    first = await queue.fail(await queue.reserve(), "nope")
    clock.advance(1)
    await queue.add("bad", {"x": 2}, attempts=1)
    second = await queue.fail(await queue.reserve(), "nope again")

    assert [d.id for d in await queue.list_dead()] == [second.id, first.id]
    assert [d.id for d in await queue.list_dead(limit=1)] == [second.id]

    job = await queue.requeue_dead(first.id)

    assert job.name == "bad"
    assert job.payload == {"x": 1}
    assert job.attempts == 3
    assert job.attempts_made == 0
    assert [d.id for d in await queue.list_dead()] == [second.id]
    assert (await queue.counts()).waiting == 1
    with pytest.raises(DeadLetterNotFound):
        await queue.requeue_dead(first.id)


@pytest.mark.asyncio
async def test_recurring_job_is_rescheduled_after_completion_and_dead_letter(queue, clock):
    await queue.add("scan", {}, job_id="workflow:scan", delay_ms=60000, repeat_every_ms=60000, attempts=1)

    clock.advance(60)
    await queue.complete(await queue.reserve())

    stored = await queue.get("workflow:scan")
    assert stored.attempts_made == 0
    assert stored.run_at == clock.now + timedelta(milliseconds=60000)

    clock.advance(60)
    dead = await queue.fail(await queue.reserve(), "scan crashed")

    assert dead.original_job_id == "workflow:scan"
    stored = await queue.get("workflow:scan")
    assert stored is not None
    assert stored.attempts_made == 0
    stats = await queue.counts()
    assert stats.completed == 1
    assert stats.dead == 1
    assert stats.delayed == 1


@pytest.mark.asyncio
async def test_job_leased_by_a_lost_worker_is_retried(redis_client, queue, clock):
    await queue.add("transition", {"instanceId": 7}, job_id="t-7", attempts=3, backoff=JobBackoff(delay_ms=1000))
    leased = await queue.reserve()
    assert leased.attempts_made == 1

    # the worker process dies here; a new one starts against the same Redis
    restarted = RedisJobQueue(client=redis_client, clock=clock, lease_ms=5000)
    again = await restarted.add("transition", {"instanceId": 7}, job_id="t-7")
    assert again.id == "t-7"
    assert (await restarted.counts()).active == 1
    assert await restarted.reserve() is None

    clock.advance(6)
    assert await restarted.reserve() is None
    stats = await restarted.counts()
    assert stats.active == 0
    assert stats.delayed == 1

    clock.advance(2)
    job = await restarted.reserve()
    assert job.id == "t-7"
    assert job.attempts_made == 2
    assert job.failed_reason == "worker lease expired"
    await restarted.complete(job)
    assert await restarted.get("t-7") is None


@pytest.mark.asyncio
async def test_lost_lease_on_last_attempt_dead_letters(queue, clock):
    await queue.add("transition", {}, job_id="t-8", attempts=1)
    await queue.reserve()

    clock.advance(6)
    assert await queue.reserve() is None

    [dead] = await queue.list_dead()
    assert dead.original_job_id == "t-8"
    assert dead.failed_reason == "worker lease expired"
    assert await queue.get("t-8") is None


@pytest.mark.asyncio
async def test_add_reschedules_a_stored_job_missing_from_the_schedule(redis_client, queue):
    await queue.add("transition", {"instanceId": 9}, job_id="t-9", delay_ms=1000)
    await redis_client.zrem("flowguard:workflow:schedule", "t-9")
    assert (await queue.counts()).delayed == 0

    job = await queue.add("transition", {"instanceId": 9}, job_id="t-9", delay_ms=1000)

    assert job.payload == {"instanceId": 9}
    stats = await queue.counts()
    assert stats.delayed == 1
    assert stats.active == 0


@pytest.mark.asyncio
async def test_worker_runs_handlers_against_redis(queue):
    seen = []

    async def handler(job):
        seen.append(job.payload["n"])

    async def misconfigured(job):
        raise ConfigurationError("no such action")

    worker = JobWorker(queue, {"count": handler, "esc": misconfigured}, concurrency=2)
    for n in range(3):
        await queue.add("count", {"n": n})
    await queue.add("esc", {}, attempts=6)

    assert await worker.run_once() == 4

    assert sorted(seen) == [0, 1, 2]
    stats = await queue.counts()
    assert stats.completed == 3
    assert stats.dead == 1
    assert stats.active == 0
