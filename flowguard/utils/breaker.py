"""Process-local circuit breakers keyed by dependency name."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from pydantic import BaseModel, Field

from ..errors import CircuitOpenError, is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class BreakerOptions(BaseModel):
    failure_threshold: int = Field(default=5, ge=1)
    open_duration_ms: float = Field(default=10000, ge=0)
    half_open_max_successes: int = Field(default=2, ge=1)


class CircuitBreaker:
    """Fail-fast guard for one dependency.

    ``CLOSED`` counts consecutive failures and opens at ``failure_threshold``.
    ``OPEN`` rejects every call until ``open_duration_ms`` has elapsed.
    ``HALF_OPEN`` admits at most ``half_open_max_successes`` trial calls at a
    time; any failure reopens, enough consecutive successes close it.

    Only errors accepted by ``is_failure`` count against the dependency.
    Client errors such as an illegal transition pass through without
    touching the counters.
    """

    def __init__(
        self,
        key: str,
        options: Optional[BreakerOptions] = None,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Callable[[BaseException], bool] = is_retryable,
    ) -> None:
        self.key = key
        self.options = options or BreakerOptions()
        self._clock = clock
        self._is_failure = is_failure
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: Optional[float] = None
        self.half_open_successes = 0
        self._trials_in_flight = 0

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()
        self.half_open_successes = 0
        logger.warning(
            f"Circuit breaker '{self.key}' opened after {self.consecutive_failures} failures"
        )

    def _close(self) -> None:
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.half_open_successes = 0
        self.opened_at = None
        logger.info(f"Circuit breaker '{self.key}' closed")

    def _admit(self) -> bool:
        if self.state == CircuitState.OPEN:
            elapsed_ms = (self._clock() - (self.opened_at or 0.0)) * 1000
            if elapsed_ms < self.options.open_duration_ms:
                return False
            self.state = CircuitState.HALF_OPEN
            self.half_open_successes = 0
            self._trials_in_flight = 0
        if self.state == CircuitState.HALF_OPEN:
            if self._trials_in_flight >= self.options.half_open_max_successes:
                return False
            self._trials_in_flight += 1
        return True

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` through the breaker.

        Raises:
            CircuitOpenError: If the breaker rejects the call.
        """
        if not self._admit():
            raise CircuitOpenError(self.key)
        trial = self.state == CircuitState.HALF_OPEN
        try:
            result = await fn()
        except Exception as e:
            if trial:
                self._trials_in_flight -= 1
            if self._is_failure(e):
                self._on_failure(trial)
            raise
        if trial:
            self._trials_in_flight -= 1
        self._on_success(trial)
        return result

    def _on_success(self, trial: bool) -> None:
        if trial and self.state == CircuitState.HALF_OPEN:
            self.half_open_successes += 1
            if self.half_open_successes >= self.options.half_open_max_successes:
                self._close()
        elif self.state == CircuitState.CLOSED:
            self.consecutive_failures = 0

    def _on_failure(self, trial: bool) -> None:
        self.consecutive_failures += 1
        if trial:
            if self.state == CircuitState.HALF_OPEN:
                self._open()
            return
        if (
            self.state == CircuitState.CLOSED
            and self.consecutive_failures >= self.options.failure_threshold
        ):
            self._open()

    def reset(self) -> None:
        """Manually reset circuit breaker"""
        self._close()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "opened_at": self.opened_at,
            "half_open_successes": self.half_open_successes,
        }


class BreakerRegistry:
    """Owns the breakers of one process; pass it wherever breakers are needed."""

    def __init__(
        self,
        defaults: Optional[BreakerOptions] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.defaults = defaults or BreakerOptions()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, key: str, options: Optional[BreakerOptions] = None) -> CircuitBreaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(key, options or self.defaults, clock=self._clock)
            self._breakers[key] = breaker
        return breaker

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {key: b.snapshot() for key, b in self._breakers.items()}

    def reset(self, key: Optional[str] = None) -> None:
        targets = [self._breakers[key]] if key in self._breakers else []
        if key is None:
            targets = list(self._breakers.values())
        for breaker in targets:
            breaker.reset()
