from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Literal, Optional, TypeVar

from pydantic import BaseModel, Field

from ..constants import RETRY_ATTEMPT, RETRY_FAILURE
from ..errors import is_retryable
from .breaker import BreakerOptions, BreakerRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryListener = Callable[[str, Dict[str, Any]], None]


class BackoffPolicy(BaseModel):
    """Delay schedule between retry attempts."""

    type: Literal["exponential", "linear", "fixed"] = "exponential"
    base_ms: float = 200
    max_ms: float = 5000
    jitter: float = Field(default=0.2, ge=0, le=1)


class RetryPolicy(BaseModel):
    """Attempt budget plus backoff and optional breaker settings."""

    retries: int = Field(default=3, ge=1)
    backoff: BackoffPolicy = BackoffPolicy()
    breaker: Optional[BreakerOptions] = None


def compute_backoff(attempt: int, policy: Optional[BackoffPolicy] = None) -> float:
    """Compute the delay in milliseconds before retrying after ``attempt``.

    ``attempt`` is 1-based: the first failed attempt waits ``base_ms`` for both
    exponential and linear schedules. Jitter is symmetric around the capped
    delay.
    """
    policy = policy or BackoffPolicy()
    if policy.type == "exponential":
        delay = policy.base_ms * (2 ** max(0, attempt - 1))
    elif policy.type == "linear":
        delay = policy.base_ms * attempt
    else:
        delay = policy.base_ms
    delay = min(delay, policy.max_ms)

    if policy.jitter > 0:
        variance = delay * policy.jitter
        delay = delay + random.uniform(-variance, variance)
    return max(0.0, delay)


async def schedule_retry(attempt: int, policy: Optional[BackoffPolicy] = None) -> None:
    """Sleep for computed backoff delay before retrying."""
    await asyncio.sleep(compute_backoff(attempt, policy) / 1000)


class Retrier:
    """Runs coroutines with retries, backoff and an optional circuit breaker.

    Breakers come from the injected ``BreakerRegistry`` so that tests and
    separate engines never share breaker state by accident.
    """

    def __init__(
        self,
        breakers: Optional[BreakerRegistry] = None,
        listener: Optional[RetryListener] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.breakers = breakers or BreakerRegistry()
        self.listener = listener
        self._sleep = sleep

    def _notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.listener is None:
            return
        try:
            self.listener(event_type, payload)
        except Exception as e:
            logger.warning(f"Retry listener failed for {event_type}: {e}")

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        breaker_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> T:
        """Execute ``fn`` until it succeeds or the attempt budget is spent.

        Raises:
            Exception: The last error once attempts are exhausted, or the
                first non-retryable error immediately.
        """
        policy = policy or RetryPolicy()
        context = context or {}
        call: Callable[[], Awaitable[T]] = fn
        if breaker_key:
            breaker = self.breakers.get(breaker_key, policy.breaker)

            async def guarded() -> T:
                return await breaker.call(fn)

            call = guarded

        last_error: Optional[BaseException] = None
        for attempt in range(1, policy.retries + 1):
            if attempt > 1:
                self._notify(
                    RETRY_ATTEMPT,
                    {"attempt": attempt, "retries": policy.retries, "context": context},
                )
            try:
                return await call()
            except Exception as e:
                last_error = e
                self._notify(
                    RETRY_FAILURE,
                    {
                        "attempt": attempt,
                        "retries": policy.retries,
                        "error": str(e),
                        "context": context,
                    },
                )
                if not is_retryable(e):
                    raise
                if attempt >= policy.retries:
                    break
                delay_ms = compute_backoff(attempt, policy.backoff)
                logger.debug(
                    f"Attempt {attempt}/{policy.retries} failed ({e}); retrying in {delay_ms:.0f}ms"
                )
                await self._sleep(delay_ms / 1000)

        logger.warning(
            f"Retries exhausted after {policy.retries} attempts: {last_error} context={context}"
        )
        assert last_error is not None
        raise last_error
