"""Shared fixtures: in-memory backends, zero-delay retry policies and a fake clock."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest

from flowguard.config import ResilienceConfig
from flowguard.contracts import WorkflowDefinition
from flowguard.engine import WorkflowEngine
from flowguard.errors import TransientStoreError
from flowguard.events.bus import EventBus
from flowguard.persistence import InMemoryWorkflowRepository
from flowguard.persistence.inmemory import InMemoryUnitOfWork
from flowguard.utils.breaker import BreakerOptions
from flowguard.utils.retry import BackoffPolicy, RetryPolicy

NO_DELAY = BackoffPolicy(type="fixed", base_ms=0, max_ms=0, jitter=0)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class FlakyUnitOfWork(InMemoryUnitOfWork):
    async def add_history(self, *args, **kwargs):
        if self._repo.failures_left > 0:
            self._repo.failures_left -= 1
            raise TransientStoreError("could not obtain lock on row")
        return await super().add_history(*args, **kwargs)


class FlakyRepository(InMemoryWorkflowRepository):
    """Fails the next ``failures_left`` history writes with a transient error."""

    def __init__(self, failures: int = 0) -> None:
        super().__init__()
        self.failures_left = failures

    @asynccontextmanager
    async def unit_of_work(self):
        async with super().unit_of_work():
            yield FlakyUnitOfWork(self)


class Recorder:
    """Bus subscriber that keeps every envelope it receives."""

    def __init__(self) -> None:
        self.envelopes = []

    async def __call__(self, envelope) -> None:
        self.envelopes.append(envelope)

    def of_type(self, event_type):
        return [e for e in self.envelopes if e.event_type == event_type]


CHECKOUT_FLOW = WorkflowDefinition(
    name="CHECKOUT_FLOW",
    states=["CREATED", "PAYMENT_PENDING", "PAID", "ASSIGNED", "DELIVERED", "EXPIRED"],
    transitions=[
        {"from": "CREATED", "to": "PAYMENT_PENDING", "event": "CHECKOUT"},
        {"from": "PAYMENT_PENDING", "to": "PAID", "event": "PAYMENT_SUCCESS"},
        {"from": "PAYMENT_PENDING", "to": "EXPIRED", "event": "SLA_BREACH"},
        {"from": "PAID", "to": "ASSIGNED", "event": "PROVIDER_ASSIGNED"},
        {"from": "ASSIGNED", "to": "DELIVERED", "event": "DELIVERED"},
        {"from": "ASSIGNED", "to": "EXPIRED", "event": "ASSIGNMENT_TIMEOUT"},
    ],
    final_states=["DELIVERED", "EXPIRED"],
)

PARALLEL_FLOW = WorkflowDefinition(
    name="FULFILMENT_FLOW",
    states=[
        "NEW",
        {"name": "SPLIT", "type": "PARALLEL"},
        "PACKING",
        "BILLING",
        "PACKED",
        "BILLED",
        "FULFILLED",
    ],
    transitions=[
        {"from": "NEW", "to": "SPLIT", "event": "GO"},
        {"from": "SPLIT", "to": "PACKING"},
        {"from": "SPLIT", "to": "BILLING"},
        {"from": "SPLIT", "to": "FULFILLED", "event": "JOIN"},
        {"from": "PACKING", "to": "PACKED", "event": "PACKED_OK"},
        {"from": "BILLING", "to": "BILLED", "event": "BILLED_OK"},
    ],
    final_states=["PACKED", "BILLED", "FULFILLED"],
)


@pytest.fixture
def fast_resilience() -> ResilienceConfig:
    return ResilienceConfig(
        transition=RetryPolicy(
            retries=5,
            backoff=NO_DELAY,
            breaker=BreakerOptions(failure_threshold=5, open_duration_ms=10000),
        ),
        saga=RetryPolicy(retries=2, backoff=NO_DELAY),
        escalation=RetryPolicy(retries=2, backoff=NO_DELAY),
    )


@pytest.fixture
def repo() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def flaky_repo() -> FlakyRepository:
    return FlakyRepository()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(bus) -> Recorder:
    rec = Recorder()
    bus.subscribe("*", rec)
    return rec


@pytest.fixture
def make_engine(repo, bus, fast_resilience):
    def factory(**kwargs) -> WorkflowEngine:
        kwargs.setdefault("resilience", fast_resilience)
        return WorkflowEngine(kwargs.pop("repository", repo), bus, **kwargs)

    return factory


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def checkout_flow() -> WorkflowDefinition:
    return CHECKOUT_FLOW


@pytest.fixture
def parallel_flow() -> WorkflowDefinition:
    return PARALLEL_FLOW
