"""Reservation/result cache for safely repeated requests.

Also serves as the "seen" marker store used by event consumers for
duplicate suppression.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis

from .config import FlowguardConfig, load_config
from .errors import IdempotencyConflict
from .utils.json_safe import json_safe

logger = logging.getLogger(__name__)


def _pending_key(scope: str, key: str) -> str:
    return f"idem:{scope}:{key}:pending"


def _result_key(scope: str, key: str) -> str:
    return f"idem:{scope}:{key}:result"


class IdempotencyStore(Protocol):
    async def reserve(self, scope: str, key: str, ttl_seconds: int = 300) -> bool:
        """Atomically claim ``(scope, key)``; ``False`` if already claimed."""

    async def store_result(
        self, scope: str, key: str, result: Any, ttl_seconds: int = 3600
    ) -> None:
        """Persist the result and drop the pending reservation."""

    async def get_result(self, scope: str, key: str) -> Any:
        """Return the stored result or ``None``."""

    async def release(self, scope: str, key: str) -> None:
        """Drop a pending reservation so the request can be retried."""


async def run_once(
    store: IdempotencyStore,
    scope: str,
    key: str,
    fn: Callable[[], Awaitable[Any]],
    pending_ttl: int = 300,
    result_ttl: int = 3600,
) -> Any:
    """Run ``fn`` once per ``(scope, key)`` and replay its result afterwards.

    Replayed results are the JSON-safe form of the original result.

    Raises:
        IdempotencyConflict: Another caller reserved the key and has not
            stored a result yet.
    """
    cached = await store.get_result(scope, key)
    if cached is not None:
        return cached
    if not await store.reserve(scope, key, pending_ttl):
        cached = await store.get_result(scope, key)
        if cached is not None:
            return cached
        raise IdempotencyConflict(scope, key)
    try:
        result = await fn()
    except Exception:
        await store.release(scope, key)
        raise
    await store.store_result(scope, key, json_safe(result), result_ttl)
    return result


class InMemoryIdempotencyStore:
    """Process-local store with TTL expiry; useful for tests and single workers.

    Expired entries are dropped when read and, at most every
    ``sweep_interval_seconds``, swept in bulk on write so that markers which
    are never read again do not accumulate.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_seconds: float = 60.0,
    ) -> None:
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = clock() + sweep_interval_seconds

    def _get(self, name: str) -> Any:
        entry = self._entries.get(name)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._entries[name]
            return None
        return value

    def _set(self, name: str, value: Any, ttl_seconds: float) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self.sweep(now)
        self._entries[name] = (value, now + ttl_seconds)

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock() if now is None else now
        expired = [name for name, (_, expires_at) in self._entries.items() if expires_at <= now]
        for name in expired:
            del self._entries[name]
        self._next_sweep = now + self._sweep_interval
        return len(expired)

    async def reserve(self, scope: str, key: str, ttl_seconds: int = 300) -> bool:
        name = _pending_key(scope, key)
        if self._get(name) is not None:
            return False
        self._set(name, "1", ttl_seconds)
        return True

    async def store_result(
        self, scope: str, key: str, result: Any, ttl_seconds: int = 3600
    ) -> None:
        self._set(_result_key(scope, key), json_safe(result), ttl_seconds)
        self._entries.pop(_pending_key(scope, key), None)

    async def get_result(self, scope: str, key: str) -> Any:
        return self._get(_result_key(scope, key))

    async def release(self, scope: str, key: str) -> None:
        self._entries.pop(_pending_key(scope, key), None)


class RedisIdempotencyStore:
    """Redis-backed store using ``SET NX EX`` reservations."""

    def __init__(self, client: Optional[Any] = None, url: Optional[str] = None) -> None:
        self._redis = client or redis.from_url(
            url or "redis://localhost:6379/0", decode_responses=True
        )

    async def reserve(self, scope: str, key: str, ttl_seconds: int = 300) -> bool:
        res = await self._redis.set(_pending_key(scope, key), "1", ex=ttl_seconds, nx=True)
        return bool(res)

    async def store_result(
        self, scope: str, key: str, result: Any, ttl_seconds: int = 3600
    ) -> None:
        payload = json.dumps(json_safe(result))
        await self._redis.set(_result_key(scope, key), payload, ex=ttl_seconds)
        await self._redis.delete(_pending_key(scope, key))

    async def get_result(self, scope: str, key: str) -> Any:
        raw = await self._redis.get(_result_key(scope, key))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Discarding malformed idempotency result for {scope}:{key}")
            return None

    async def release(self, scope: str, key: str) -> None:
        await self._redis.delete(_pending_key(scope, key))

    async def aclose(self) -> None:
        await self._redis.aclose()


def get_idempotency_store(
    backend: Optional[str] = None, config: Optional[FlowguardConfig] = None
) -> IdempotencyStore:
    """Factory function to get the configured idempotency store."""
    config = config or load_config()
    backend = (backend or config.idempotency.backend).lower()
    if backend == "inmemory":
        return InMemoryIdempotencyStore()
    elif backend == "redis":
        return RedisIdempotencyStore(url=config.redis.dsn())
    else:
        raise ValueError(f"Unsupported idempotency backend: {backend}")
