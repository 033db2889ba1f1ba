import pytest

from flowguard.constants import PAYMENT_HELD, RETRY_ATTEMPT, SAGA_COMPENSATION, STATE_CHANGED
from flowguard.contracts import EventEnvelope
from flowguard.events import DedupingConsumer, EventBus, FanOut, OutboxRelay, OutboxTransport
from flowguard.idempotency import InMemoryIdempotencyStore
from flowguard.transports.inmemory import InMemoryTransport


class BrokenTransport(InMemoryTransport):
    async def publish(self, topic, message):
        raise ConnectionError("broker unreachable")


class CountingTransport(InMemoryTransport):
    def __init__(self):
        super().__init__()
        self.acked = []
        self.nacked = []

    async def ack(self, raw_message):
        self.acked.append(raw_message)

    async def nack(self, raw_message, requeue=True):
        self.nacked.append(raw_message)


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_other_handlers():
    bus = EventBus()
    seen = []

    async def broken(envelope):
        raise RuntimeError("subscriber bug")

    async def healthy(envelope):
        seen.append(envelope.event_type)

    bus.subscribe(STATE_CHANGED, broken)
    bus.subscribe(STATE_CHANGED, healthy)
    bus.subscribe("*", healthy)
    bus.announce(STATE_CHANGED, {"instanceId": 1})
    bus.announce(PAYMENT_HELD, {"instanceId": 1})

    assert bus.pending == 2
    assert await bus.drain() == 2
    assert seen == [STATE_CHANGED, STATE_CHANGED, PAYMENT_HELD]
    assert bus.pending == 0


@pytest.mark.asyncio
async def test_fanout_routes_to_log_broadcast_and_outbox(repo):
    log, broadcast = InMemoryTransport(), InMemoryTransport()
    fanout = FanOut(log=log, broadcast=broadcast, outbox=OutboxTransport(repo))

    failed = await fanout.publish(EventEnvelope.build(STATE_CHANGED, {"instanceId": 1}))

    assert failed == []
    assert [topic for topic, _ in log.published] == ["workflow.events"]
    assert [topic for topic, _ in broadcast.published] == ["flowguard.events"]
    rows = await repo.list_pending_outbox()
    assert [r.event_type for r in rows] == [STATE_CHANGED]


@pytest.mark.asyncio
async def test_fanout_topic_suffixes():
    fanout = FanOut(topic_prefix="orders")
    assert fanout.topic_for(STATE_CHANGED) == "orders.events"
    assert fanout.topic_for(RETRY_ATTEMPT) == "orders.retry"
    assert fanout.topic_for(SAGA_COMPENSATION) == "orders.saga"
    assert fanout.topic_for("WORKFLOW.BRANCH_STARTED") is None


@pytest.mark.asyncio
async def test_fanout_skips_unrouted_and_ingested_envelopes(repo):
    log = InMemoryTransport()
    fanout = FanOut(log=log, outbox=OutboxTransport(repo))

    await fanout.publish(EventEnvelope.build("WORKFLOW.BRANCH_STARTED", {}))
    await fanout.publish(EventEnvelope.build(STATE_CHANGED, {}, ingested_from="broadcast"))

    assert log.published == []
    assert await repo.list_pending_outbox() == []


@pytest.mark.asyncio
async def test_fanout_skips_outbox_when_row_already_written(repo):
    log = InMemoryTransport()
    fanout = FanOut(log=log, outbox=OutboxTransport(repo))

    await fanout.publish(EventEnvelope.build(STATE_CHANGED, {}, outbox_id=12))

    assert len(log.published) == 1
    assert await repo.list_pending_outbox() == []


@pytest.mark.asyncio
async def test_fanout_failure_on_one_transport_spares_the_others():
    log, broadcast = BrokenTransport(), InMemoryTransport()
    fanout = FanOut(log=log, broadcast=broadcast)

    failed = await fanout.publish(EventEnvelope.build(STATE_CHANGED, {"instanceId": 2}))

    assert failed == ["log"]
    assert len(broadcast.published) == 1


@pytest.mark.asyncio
async def test_bus_hands_envelopes_to_fanout_before_handlers():
    log = InMemoryTransport()
    bus = EventBus(fanout=FanOut(log=log))
    order = []

    async def handler(envelope):
        order.append(len(log.published))

    bus.subscribe(STATE_CHANGED, handler)
    bus.announce(STATE_CHANGED, {"instanceId": 3})
    await bus.drain()

    assert order == [1]


@pytest.mark.asyncio
async def test_outbox_relay_marks_rows_published(repo):
    relayed = []

    async def forward(envelope):
        relayed.append(envelope)

    first = await repo.add_outbox(EventEnvelope.build(STATE_CHANGED, {"instanceId": 1}))
    await repo.add_outbox(EventEnvelope.build(PAYMENT_HELD, {"instanceId": 1}))
    relay = OutboxRelay(repo, [forward])

    assert await relay.drain() == 2
    assert [e.event_type for e in relayed] == [STATE_CHANGED, PAYMENT_HELD]
    assert relayed[0].outbox_id == first.id
    assert relayed[0].event_id == first.event_id
    assert await repo.list_pending_outbox() == []
    assert await relay.drain() == 0


@pytest.mark.asyncio
async def test_outbox_relay_keeps_rows_whose_handler_fails(repo):
    async def flaky(envelope):
        if envelope.event_type == PAYMENT_HELD:
            raise ConnectionError("log down")

    await repo.add_outbox(EventEnvelope.build(STATE_CHANGED, {}))
    held = await repo.add_outbox(EventEnvelope.build(PAYMENT_HELD, {}))
    relay = OutboxRelay(repo)
    relay.add_handler(flaky)

    assert await relay.drain() == 1
    assert [r.id for r in await repo.list_pending_outbox()] == [held.id]


@pytest.mark.asyncio
async def test_consumer_suppresses_duplicate_deliveries():
    transport = CountingTransport()
    handled = []

    async def handler(envelope):
        handled.append(envelope)

    consumer = DedupingConsumer(
        transport, "flowguard.events", "billing", handler, InMemoryIdempotencyStore(), "broadcast"
    )
    envelope = EventEnvelope.build(STATE_CHANGED, {"instanceId": 4})

    assert await consumer.handle("raw-1", envelope) is True
    assert await consumer.handle("raw-2", envelope) is False

    assert len(handled) == 1
    assert handled[0].ingested_from == "broadcast"
    assert consumer.processed == 1
    assert consumer.duplicates == 1
    assert transport.acked == ["raw-1", "raw-2"]
    assert consumer.scope == "inbox:billing"


@pytest.mark.asyncio
async def test_consumer_failure_releases_the_entry_for_redelivery():
    transport = CountingTransport()
    calls = []

    async def handler(envelope):
        calls.append(envelope.event_id)
        if len(calls) == 1:
            raise RuntimeError("downstream timeout")

    consumer = DedupingConsumer(
        transport, "workflow.events", "search", handler, InMemoryIdempotencyStore(), "log"
    )
    envelope = EventEnvelope.build(STATE_CHANGED, {"instanceId": 5})

    assert await consumer.handle("raw", envelope) is False
    assert transport.nacked == ["raw"]
    assert await consumer.handle("raw", envelope) is True
    assert calls == [envelope.event_id, envelope.event_id]
    assert consumer.duplicates == 0


@pytest.mark.asyncio
async def test_consumer_run_drains_the_topic_within_lifespan():
    transport = InMemoryTransport()
    handled = []

    async def handler(envelope):
        handled.append(envelope.payload["n"])

    consumer = DedupingConsumer(
        transport, "flowguard.events", "ui", handler, InMemoryIdempotencyStore(), "broadcast"
    )
    duplicate = EventEnvelope.build(STATE_CHANGED, {"n": 1})
    await transport.publish("flowguard.events", duplicate)
    await transport.publish("flowguard.events", duplicate)
    await transport.publish("flowguard.events", EventEnvelope.build(STATE_CHANGED, {"n": 2}))

    await consumer.run(lifespan=0.2)

    assert handled == [1, 2]
