"""Transitions under a failing store: retries, breaker and saga compensation."""

from decimal import Decimal

import pytest

from flowguard.collaborators import HoldStatus, InMemoryLedger
from flowguard.constants import RETRY_ATTEMPT, SAGA_COMPENSATION, TRANSITION_BREAKER_KEY
from flowguard.definitions import ORDER_FLOW
from flowguard.errors import CircuitOpenError, IllegalTransition, TransientStoreError, is_retryable
from flowguard.saga import SagaCoordinator, default_compensations
from flowguard.utils.retry import Retrier


async def _no_sleep(seconds):
    return None


@pytest.mark.asyncio
async def test_store_failing_four_times_then_succeeding_writes_one_history_row(
    make_engine, flaky_repo, bus, recorder
):
    engine = make_engine(
        repository=flaky_repo, retrier=Retrier(listener=bus.retry_listener, sleep=_no_sleep)
    )
    wf = await flaky_repo.create_workflow(ORDER_FLOW)
    instance = await engine.start_workflow(wf.id, "ORDER", "42")
    graph = await engine.graph(wf.id)

    flaky_repo.failures_left = 4
    updated = await engine.apply_event(instance.id, "ORDER_CANCELLED")

    assert graph.state(updated.current_state).name == "CANCELLED"
    assert len(await flaky_repo.get_history(instance.id)) == 1
    assert len(await flaky_repo.list_pending_outbox()) == 1
    await bus.drain()
    assert len(recorder.of_type(RETRY_ATTEMPT)) == 4


@pytest.mark.asyncio
async def test_exhausted_retries_roll_back_and_compensate(
    make_engine, flaky_repo, bus, recorder, fast_resilience
):
    ledger = InMemoryLedger({"user-1": Decimal("100")})
    retrier = Retrier(listener=bus.retry_listener, sleep=_no_sleep)
    saga = SagaCoordinator(flaky_repo, default_compensations(ledger), retrier, bus, fast_resilience.saga)
    engine = make_engine(repository=flaky_repo, retrier=retrier, saga=saga)

    wf = await flaky_repo.create_workflow(ORDER_FLOW)
    instance = await engine.start_workflow(wf.id, "ORDER", "42")
    await ledger.reserve_funds("user-1", "ORDER:42", Decimal("40"))
    paid = await engine.apply_event(instance.id, "PAYMENT_SUCCESS")

    flaky_repo.failures_left = 100
    with pytest.raises(TransientStoreError) as exc_info:
        await engine.apply_event(instance.id, "PROVIDER_ASSIGNED")

    # already compensated: callers and job queues must not try again
    assert not is_retryable(exc_info.value)
    stored = await flaky_repo.get_instance(instance.id)
    assert stored.current_state == paid.current_state
    assert len(await flaky_repo.get_history(instance.id)) == 1
    assert ledger.holds["ORDER:42"].status == HoldStatus.REFUNDED
    assert ledger.balance("user-1") == Decimal("100")

    await bus.drain()
    compensations = recorder.of_type(SAGA_COMPENSATION)
    assert [e.payload["stateName"] for e in compensations] == ["PAID"]


@pytest.mark.asyncio
async def test_breaker_opens_after_consecutive_transition_failures(make_engine, flaky_repo, bus):
    retrier = Retrier(listener=bus.retry_listener, sleep=_no_sleep)
    engine = make_engine(repository=flaky_repo, retrier=retrier)
    wf = await flaky_repo.create_workflow(ORDER_FLOW)
    instance = await engine.start_workflow(wf.id, "ORDER", "42")

    flaky_repo.failures_left = 100
    with pytest.raises(TransientStoreError):
        await engine.apply_event(instance.id, "ORDER_CANCELLED")

    snapshot = retrier.breakers.snapshot()[TRANSITION_BREAKER_KEY]
    assert snapshot["state"] == "OPEN"
    assert snapshot["consecutive_failures"] == 5


@pytest.mark.asyncio
async def test_illegal_transitions_never_open_the_breaker(make_engine, repo, bus):
    retrier = Retrier(listener=bus.retry_listener, sleep=_no_sleep)
    engine = make_engine(retrier=retrier)
    wf = await repo.create_workflow(ORDER_FLOW)
    graph = await engine.graph(wf.id)
    completed = graph.state_by_name("COMPLETED")
    bad = await engine.start_workflow(wf.id, "ORDER", "1")
    good = await engine.start_workflow(wf.id, "ORDER", "2")

    for _ in range(8):
        with pytest.raises(IllegalTransition):
            await engine.apply_transition(bad.id, completed.id)

    moved = await engine.apply_event(good.id, "PAYMENT_SUCCESS")
    assert graph.state(moved.current_state).name == "PAID"
    snapshot = retrier.breakers.snapshot()[TRANSITION_BREAKER_KEY]
    assert snapshot["state"] == "CLOSED"
    assert snapshot["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_rejected_by_open_breaker_does_not_compensate(
    make_engine, flaky_repo, bus, recorder, fast_resilience
):
    ledger = InMemoryLedger({"user-1": Decimal("100")})
    retrier = Retrier(listener=bus.retry_listener, sleep=_no_sleep)
    saga = SagaCoordinator(flaky_repo, default_compensations(ledger), retrier, bus, fast_resilience.saga)
    engine = make_engine(repository=flaky_repo, retrier=retrier, saga=saga)
    wf = await flaky_repo.create_workflow(ORDER_FLOW)

    healthy = await engine.start_workflow(wf.id, "ORDER", "2")
    await ledger.reserve_funds("user-1", "ORDER:2", Decimal("30"))
    await engine.apply_event(healthy.id, "PAYMENT_SUCCESS")

    failing = await engine.start_workflow(wf.id, "ORDER", "1")
    flaky_repo.failures_left = 100
    with pytest.raises(TransientStoreError):
        await engine.apply_event(failing.id, "ORDER_CANCELLED")
    flaky_repo.failures_left = 0

    with pytest.raises(CircuitOpenError) as exc_info:
        await engine.apply_event(healthy.id, "PROVIDER_ASSIGNED")

    assert is_retryable(exc_info.value)
    assert ledger.holds["ORDER:2"].status == HoldStatus.HELD
    await bus.drain()
    assert [e for e in recorder.of_type(SAGA_COMPENSATION) if e.payload["instanceId"] == healthy.id] == []
