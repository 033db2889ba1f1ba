"""Pull jobs from a queue and run them with bounded concurrency."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from ..errors import ConfigurationError, UnknownJobError, is_retryable
from .base import Job, JobQueue

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]


class JobWorker:
    """Run queued jobs through a name-to-handler registry.

    At most ``concurrency`` jobs run at once and each attempt is bounded by
    ``job_timeout_seconds``. Failures go back to the queue, which retries or
    dead-letters them.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: Optional[Dict[str, JobHandler]] = None,
        concurrency: int = 8,
        job_timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.queue = queue
        self.handlers: Dict[str, JobHandler] = dict(handlers or {})
        self.concurrency = concurrency
        self.job_timeout_seconds = job_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: Set[asyncio.Task] = set()

    def register(self, name: str, handler: JobHandler) -> None:
        self.handlers[name] = handler

    def validate(self, required: Iterable[str]) -> None:
        """Fail at startup when a job name that will be enqueued has no handler."""
        missing = sorted(set(required) - set(self.handlers))
        if missing:
            raise ConfigurationError(f"No handler registered for jobs: {missing}")

    async def process(self, job: Job) -> bool:
        handler = self.handlers.get(job.name)
        if handler is None:
            await self.queue.fail(job, str(UnknownJobError(job.name)), retryable=False)
            return False
        try:
            await asyncio.wait_for(handler(job), timeout=self.job_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                f"Job {job.name} ({job.id}) timed out after {self.job_timeout_seconds}s "
                f"(attempt {job.attempts_made}/{job.attempts})"
            )
            await self.queue.fail(job, f"Timed out after {self.job_timeout_seconds}s")
            return False
        except Exception as e:
            logger.warning(
                f"Job {job.name} ({job.id}) failed on attempt {job.attempts_made}/{job.attempts}: {e}"
            )
            await self.queue.fail(job, str(e), retryable=is_retryable(e))
            return False
        await self.queue.complete(job)
        return True

    async def run_once(self) -> int:
        """Process every job due now, ``concurrency`` at a time."""
        processed = 0
        while True:
            batch = []
            for _ in range(self.concurrency):
                job = await self.queue.reserve()
                if job is None:
                    break
                batch.append(job)
            if not batch:
                return processed
            await asyncio.gather(*(self.process(job) for job in batch))
            processed += len(batch)

    async def _run_guarded(self, job: Job) -> None:
        try:
            await self.process(job)
        finally:
            self._semaphore.release()

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll the queue until cancelled or ``lifespan`` seconds elapse."""
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        logger.info(f"Worker started on queue {self.queue.name} (concurrency={self.concurrency})")
        try:
            while not lifespan or loop.time() - start_time < lifespan:
                await self._semaphore.acquire()
                job = await self.queue.reserve()
                if job is None:
                    self._semaphore.release()
                    await asyncio.sleep(self.poll_interval_seconds)
                    continue
                task = asyncio.create_task(self._run_guarded(job))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info(f"Worker on queue {self.queue.name} stopped")
