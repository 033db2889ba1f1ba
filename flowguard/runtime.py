"""Assemble a complete flowguard runtime from configuration."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional

from .collaborators import InMemoryLedger, InMemoryNotifier, Ledger, Notifier
from .config import FlowguardConfig, load_config
from .constants import JOB_NAMES
from .contracts import EventEnvelope, WorkflowDefinition
from .definitions import BUILTIN_DEFINITIONS, builtin_state_names
from .engine import WorkflowEngine
from .escalation import EscalationActions, EscalationHandler
from .events.bus import EventBus
from .events.consumer import DedupingConsumer
from .events.fanout import FanOut
from .events.outbox import OutboxRelay, OutboxTransport
from .idempotency import IdempotencyStore, get_idempotency_store
from .jobs import WorkflowJobs
from .persistence import WorkflowRecord, WorkflowRepository, get_repository
from .policies import PolicyRegistry
from .saga import CompensationRegistry, SagaCoordinator, default_compensations
from .scheduler import JobQueue, JobWorker, get_job_queue
from .sla import SlaMonitor
from .subscribers import LedgerSettlement
from .transports import get_transport
from .transports.base import BaseTransport
from .utils.breaker import BreakerRegistry
from .utils.clock import Clock, utcnow
from .utils.retry import Retrier

logger = logging.getLogger(__name__)

BROADCAST_SOURCE = "broadcast"


class Runtime:
    """Every long-lived component of one flowguard process, wired together."""

    def __init__(
        self,
        config: FlowguardConfig,
        repository: WorkflowRepository,
        bus: EventBus,
        fanout: FanOut,
        breakers: BreakerRegistry,
        engine: WorkflowEngine,
        saga: SagaCoordinator,
        sla: SlaMonitor,
        escalation: EscalationHandler,
        queue: JobQueue,
        jobs: WorkflowJobs,
        worker: JobWorker,
        relay: OutboxRelay,
        idempotency: IdempotencyStore,
        ledger: Ledger,
        notifier: Notifier,
    ) -> None:
        self.config = config
        self.repository = repository
        self.bus = bus
        self.fanout = fanout
        self.breakers = breakers
        self.engine = engine
        self.saga = saga
        self.sla = sla
        self.escalation = escalation
        self.queue = queue
        self.jobs = jobs
        self.worker = worker
        self.relay = relay
        self.idempotency = idempotency
        self.ledger = ledger
        self.notifier = notifier
        self.consumers: List[DedupingConsumer] = []
        if fanout.broadcast is not None:
            self.consumers.append(
                DedupingConsumer(
                    fanout.broadcast,
                    fanout.channel,
                    f"{config.bus.topic_prefix}.broadcast",
                    self._ingest,
                    idempotency,
                    BROADCAST_SOURCE,
                    config.idempotency.seen_ttl_seconds,
                )
            )

    @property
    def transports(self) -> List[BaseTransport]:
        return [t for t in (self.fanout.log, self.fanout.broadcast) if t is not None]

    async def _ingest(self, envelope: EventEnvelope) -> None:
        self.bus.announce_envelope(envelope)

    async def _relay_to_log(self, envelope: EventEnvelope) -> None:
        topic = self.fanout.topic_for(envelope.event_type)
        if self.fanout.log is not None and topic is not None:
            await self.fanout.log.publish(topic, envelope)

    async def seed(
        self, definitions: Optional[Iterable[WorkflowDefinition]] = None
    ) -> List[WorkflowRecord]:
        """Create the given workflows (the built-in ones by default)."""
        created = []
        for definition in BUILTIN_DEFINITIONS if definitions is None else definitions:
            workflow = await self.repository.create_workflow(definition)
            self.engine.invalidate_graph(workflow.id)
            created.append(workflow)
        return created

    async def start(self) -> None:
        for transport in self.transports:
            await transport.connect()
        self.bus.start()

    async def stop(self) -> None:
        await self.bus.stop()
        await self.bus.drain()
        for transport in self.transports:
            try:
                await transport.disconnect()
            except Exception as e:
                logger.warning(f"Disconnecting {type(transport).__name__} failed: {e}")
        await self.queue.close()

    async def _relay_loop(self, interval_seconds: float) -> None:
        while True:
            await self.relay.drain()
            await asyncio.sleep(interval_seconds)

    async def run_worker(self, lifespan: Optional[float] = None) -> None:
        """Run schedulers, the job worker, the outbox relay and consumers."""
        await self.start()
        await self.jobs.ensure_schedulers()
        background = [asyncio.create_task(self._relay_loop(5.0), name="flowguard-outbox-relay")]
        for consumer in self.consumers:
            background.append(asyncio.create_task(consumer.run(lifespan)))
        try:
            await self.worker.run(lifespan)
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await self.stop()


def build_runtime(
    config: Optional[FlowguardConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    ledger: Optional[Ledger] = None,
    notifier: Optional[Notifier] = None,
    compensations: Optional[CompensationRegistry] = None,
    actions: Optional[EscalationActions] = None,
    known_states: Optional[Iterable[str]] = None,
    clock: Clock = utcnow,
) -> Runtime:
    """Build a runtime whose backends are chosen by ``config``.

    Raises:
        ConfigurationError: A compensator, escalation action or job name
            has nothing to bind to.
    """
    config = config or load_config()
    repository = repository or get_repository(config=config)
    ledger = ledger or InMemoryLedger()
    notifier = notifier or InMemoryNotifier()

    fanout = FanOut(
        log=get_transport(config.bus.log, config),
        broadcast=get_transport(config.bus.broadcast, config),
        outbox=OutboxTransport(repository) if config.bus.outbox else None,
        topic_prefix=config.bus.topic_prefix,
        channel=config.bus.channel,
    )
    bus = EventBus(fanout)
    breakers = BreakerRegistry()
    retrier = Retrier(breakers, listener=bus.retry_listener)
    policies = PolicyRegistry(config.policies.states, config.policies.system)
    idempotency = get_idempotency_store(config=config)

    registry = compensations or default_compensations(ledger)
    registry.ensure_known(known_states or builtin_state_names())
    saga = SagaCoordinator(repository, registry, retrier, bus, config.resilience.saga)

    engine = WorkflowEngine(
        repository,
        bus,
        retrier=retrier,
        policies=policies,
        resilience=config.resilience,
        idempotency=idempotency,
        idempotency_config=config.idempotency,
        saga=saga,
        write_outbox=config.bus.outbox,
    )
    sla = SlaMonitor(repository, engine, bus, policies, clock=clock)

    actions = actions or EscalationActions()
    policies.ensure_actions_known(actions.names())
    escalation = EscalationHandler(notifier, retrier, bus, actions, config.resilience.escalation)

    queue = get_job_queue(config=config)
    jobs = WorkflowJobs(queue, engine, sla, notifier, escalation, config.scheduler)
    jobs.subscribe(bus)
    LedgerSettlement(ledger, bus).subscribe(bus)

    handlers = jobs.handlers()
    worker = JobWorker(
        queue,
        handlers,
        concurrency=config.scheduler.concurrency,
        job_timeout_seconds=config.scheduler.job_timeout_seconds,
        poll_interval_seconds=config.scheduler.poll_interval_seconds,
    )
    worker.validate(JOB_NAMES)

    runtime = Runtime(
        config=config,
        repository=repository,
        bus=bus,
        fanout=fanout,
        breakers=breakers,
        engine=engine,
        saga=saga,
        sla=sla,
        escalation=escalation,
        queue=queue,
        jobs=jobs,
        worker=worker,
        relay=OutboxRelay(repository),
        idempotency=idempotency,
        ledger=ledger,
        notifier=notifier,
    )
    runtime.relay.add_handler(runtime._relay_to_log)
    return runtime
