"""Workflow instance engine: start, transition, fork and join."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .config import IdempotencyConfig, ResilienceConfig
from .constants import (
    BRANCH_DONE,
    BRANCH_FAILED,
    BRANCH_STARTED,
    JOIN_EVENT,
    PARALLEL_STARTED,
    STATE_CHANGED,
    TRANSITION_BREAKER_KEY,
)
from .contracts import BranchStatus, EventEnvelope, StateType
from .errors import (
    BranchNotFound,
    CircuitOpenError,
    CompensationError,
    ConfigurationError,
    GraphError,
    IllegalTransition,
    InstanceNotFound,
    NoTransitionForEvent,
    StaleTransition,
    is_retryable,
    mark_not_retryable,
)
from .events.bus import EventBus
from .graph import TransitionGraph
from .idempotency import IdempotencyStore, InMemoryIdempotencyStore, run_once
from .persistence.models import StateRecord, TransitionRecord, WorkflowInstance
from .persistence.repository import UnitOfWork, WorkflowRepository
from .policies import PolicyRegistry
from .utils.retry import Retrier

if TYPE_CHECKING:
    from .jobs import WorkflowJobs
    from .saga import SagaCoordinator

logger = logging.getLogger(__name__)

START_SCOPE = "workflow.start"


class WorkflowEngine:
    """Drive workflow instances through their transition graphs.

    Every state change happens inside one repository unit of work and is
    announced on the event bus only after that unit of work commits.
    Transitions run through the retrier and the ``workflow.applyTransition``
    circuit breaker; when a retryable failure exhausts the attempt budget the
    saga coordinator compensates the instance and the original error is
    re-raised.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        bus: EventBus,
        retrier: Optional[Retrier] = None,
        policies: Optional[PolicyRegistry] = None,
        resilience: Optional[ResilienceConfig] = None,
        idempotency: Optional[IdempotencyStore] = None,
        idempotency_config: Optional[IdempotencyConfig] = None,
        saga: Optional["SagaCoordinator"] = None,
        write_outbox: bool = True,
    ) -> None:
        self.repository = repository
        self.bus = bus
        self.retrier = retrier or Retrier(listener=bus.retry_listener)
        self.policies = policies or PolicyRegistry()
        self.resilience = resilience or ResilienceConfig()
        self.idempotency = idempotency or InMemoryIdempotencyStore()
        self.idempotency_config = idempotency_config or IdempotencyConfig()
        self.saga = saga
        self.write_outbox = write_outbox
        self.jobs: Optional["WorkflowJobs"] = None
        self._graphs: Dict[int, TransitionGraph] = {}

    # ------------------------------------------------------------------
    # graph access
    async def graph(self, workflow_id: int) -> TransitionGraph:
        graph = self._graphs.get(workflow_id)
        if graph is None:
            graph = await self.repository.get_graph(workflow_id)
            self._graphs[workflow_id] = graph
        return graph

    def invalidate_graph(self, workflow_id: Optional[int] = None) -> None:
        if workflow_id is None:
            self._graphs.clear()
        else:
            self._graphs.pop(workflow_id, None)

    async def get_graph(self, workflow_id: int) -> Dict[str, Any]:
        """Return the workflow, its states (with policies) and transitions."""
        graph = await self.graph(workflow_id)
        states = []
        for state in sorted(graph.states.values(), key=lambda s: s.id):
            policy = self.policies.get(state.name)
            states.append(
                {
                    **state.model_dump(mode="json"),
                    "policy": policy.model_dump(mode="json") if policy else None,
                }
            )
        return {
            "workflow": graph.workflow.model_dump(mode="json"),
            "states": states,
            "transitions": [t.model_dump(mode="json") for t in graph.transitions],
        }

    # ------------------------------------------------------------------
    # start
    async def start_workflow(
        self,
        workflow_id: int,
        entity_type: str,
        entity_id: Any,
        idempotency_key: Optional[str] = None,
    ) -> WorkflowInstance:
        """Create an instance at the workflow's unique start state.

        With ``idempotency_key`` a repeated call returns the instance created
        by the first call.
        """

        async def start() -> WorkflowInstance:
            return await self._start(workflow_id, entity_type, str(entity_id))

        if not idempotency_key:
            return await start()
        result = await run_once(
            self.idempotency,
            START_SCOPE,
            idempotency_key,
            start,
            self.idempotency_config.pending_ttl_seconds,
            self.idempotency_config.result_ttl_seconds,
        )
        if isinstance(result, WorkflowInstance):
            return result
        return WorkflowInstance.model_validate(result)

    async def _start(self, workflow_id: int, entity_type: str, entity_id: str) -> WorkflowInstance:
        graph = await self.graph(workflow_id)
        start_state = graph.start_state()
        async with self.repository.unit_of_work() as uow:
            instance = await uow.create_instance(workflow_id, entity_type, entity_id, start_state.id)
        logger.info(
            f"Started workflow {graph.workflow.name} instance {instance.id} "
            f"for {entity_type}:{entity_id} at {start_state.name}"
        )
        return instance

    # ------------------------------------------------------------------
    # transitions
    async def apply_event(
        self,
        instance_id: int,
        event: str,
        actor_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """Move an instance along the edge triggered by ``event``.

        A concurrent move can make the derived target illegal by the time the
        unit of work runs; the target is then re-derived from the fresh state
        a bounded number of times.
        """
        attempts = self.resilience.event_rederive_attempts
        for attempt in range(1, attempts + 1):
            instance = await self.repository.get_instance(instance_id)
            if instance is None:
                raise InstanceNotFound(instance_id)
            graph = await self.graph(instance.workflow_id)
            transition = graph.find_transition(instance.current_state, event=event)
            if transition is None:
                raise NoTransitionForEvent(event, instance.current_state)
            try:
                return await self.apply_transition(
                    instance_id,
                    transition.to_state,
                    actor_id,
                    {"event": event, **(meta or {})},
                    event=event,
                )
            except IllegalTransition:
                if attempt >= attempts:
                    raise
                logger.info(
                    f"Instance {instance_id} moved concurrently; re-deriving target for {event}"
                )
        raise NoTransitionForEvent(event)

    async def apply_transition(
        self,
        instance_id: int,
        next_state_id: int,
        actor_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        fork: bool = False,
        event: Optional[str] = None,
        expected_from: Optional[int] = None,
    ) -> WorkflowInstance:
        """Move an instance to ``next_state_id`` along an existing edge.

        With ``expected_from`` the move only happens while the instance is
        still in that state; otherwise ``StaleTransition`` is raised and
        nothing changes.

        When a retryable failure exhausts the attempt budget the instance is
        compensated and the error is re-raised flagged as non-retryable, so
        job queues dead-letter it instead of compensating again. A call
        rejected by the open breaker never reached the store and is
        re-raised untouched.
        """
        context = {"instanceId": instance_id, "nextStateId": next_state_id, "meta": meta or {}}

        async def attempt() -> WorkflowInstance:
            return await self._transition_once(
                instance_id, next_state_id, actor_id, meta or {}, fork, event, expected_from
            )

        try:
            return await self.retrier.run(
                attempt, self.resilience.transition, TRANSITION_BREAKER_KEY, context
            )
        except CircuitOpenError:
            raise
        except Exception as e:
            if is_retryable(e):
                await self._compensate(instance_id, e)
                mark_not_retryable(e)
            raise

    async def move_workflow(
        self,
        instance_id: int,
        next_state_id: int,
        actor_id: Optional[str] = None,
        delay_ms: int = 0,
        meta: Optional[Dict[str, Any]] = None,
        dedupe_key: Optional[str] = None,
    ):
        """Apply a transition now, or enqueue it as a delayed job when ``delay_ms > 0``."""
        if delay_ms and delay_ms > 0:
            if self.jobs is None:
                raise ConfigurationError("Delayed transitions require a job queue")
            return await self.jobs.enqueue_delayed_transition(
                instance_id, next_state_id, actor_id, delay_ms, meta, dedupe_key
            )
        return await self.apply_transition(instance_id, next_state_id, actor_id, meta)

    async def _compensate(self, instance_id: int, error: BaseException) -> None:
        if self.saga is None:
            return
        logger.warning(f"Transition of instance {instance_id} failed permanently ({error}); compensating")
        try:
            await self.saga.run_compensation(instance_id, reason=str(error))
        except CompensationError as ce:
            logger.error(str(ce))
        except InstanceNotFound:
            pass

    async def _transition_once(
        self,
        instance_id: int,
        next_state_id: int,
        actor_id: Optional[str],
        meta: Dict[str, Any],
        fork: bool,
        event: Optional[str],
        expected_from: Optional[int] = None,
    ) -> WorkflowInstance:
        announcements: List[EventEnvelope] = []
        async with self.repository.unit_of_work() as uow:
            instance = await uow.get_instance(instance_id)
            if instance is None:
                raise InstanceNotFound(instance_id)
            if instance.current_state == next_state_id:
                return instance
            if expected_from is not None and instance.current_state != expected_from:
                raise StaleTransition(expected_from, instance.current_state, next_state_id)
            graph = await self.graph(instance.workflow_id)
            target = graph.state(next_state_id)
            transition = None
            if event is not None:
                transition = graph.find_transition(
                    instance.current_state, event=event, to_state=next_state_id
                )
            transition = transition or graph.find_transition(
                instance.current_state, to_state=next_state_id
            )
            if transition is None:
                raise IllegalTransition(instance.current_state, next_state_id)

            if fork or target.type == StateType.PARALLEL:
                updated = await self._fork(uow, graph, instance, transition, target, actor_id, announcements)
            else:
                updated = await self._move(
                    uow, graph, instance, transition, target, actor_id, meta, announcements
                )

        for envelope in announcements:
            self.bus.announce_envelope(envelope)
        return updated

    async def _move(
        self,
        uow: UnitOfWork,
        graph: TransitionGraph,
        instance: WorkflowInstance,
        transition: TransitionRecord,
        target: StateRecord,
        actor_id: Optional[str],
        meta: Dict[str, Any],
        announcements: List[EventEnvelope],
    ) -> WorkflowInstance:
        from_state = instance.current_state
        updated = await uow.set_current_state(instance.id, target.id)
        await uow.add_history(instance.id, from_state, target.id, transition.id, actor_id)

        envelope = EventEnvelope.build(
            STATE_CHANGED,
            {
                "instanceId": instance.id,
                "workflowId": instance.workflow_id,
                "entityType": instance.entity_type,
                "entityId": instance.entity_id,
                "fromState": from_state,
                "toState": target.id,
                "toStateName": target.name,
                "actionBy": actor_id,
                "meta": meta,
            },
        )
        if self.write_outbox:
            row = await uow.add_outbox(envelope)
            envelope = envelope.model_copy(update={"outbox_id": row.id})
        announcements.append(envelope)

        if target.is_final:
            branch = await uow.get_branch_for_instance(instance.id)
            if branch is not None and branch.status == BranchStatus.RUNNING:
                branch = await uow.set_branch_status(branch.id, BranchStatus.DONE)
                announcements.append(EventEnvelope.build(BRANCH_DONE, _branch_payload(branch)))

        logger.info(
            f"Instance {instance.id} moved {graph.state(from_state).name} -> {target.name}"
            + (f" by {actor_id}" if actor_id else "")
        )
        return updated

    async def _fork(
        self,
        uow: UnitOfWork,
        graph: TransitionGraph,
        instance: WorkflowInstance,
        transition: TransitionRecord,
        target: StateRecord,
        actor_id: Optional[str],
        announcements: List[EventEnvelope],
    ) -> WorkflowInstance:
        edges = graph.branch_transitions(target.id)
        if not edges:
            raise GraphError(f"Parallel state {target.name} has no branch transitions")

        updated = await uow.set_current_state(instance.id, target.id)
        await uow.add_history(instance.id, instance.current_state, target.id, transition.id, actor_id)

        branch_events = []
        for edge in edges:
            child = await uow.create_instance(
                instance.workflow_id, instance.entity_type, instance.entity_id, edge.to_state
            )
            status = (
                BranchStatus.DONE if graph.state(edge.to_state).is_final else BranchStatus.RUNNING
            )
            branch = await uow.create_branch(instance.id, child.id, edge.to_state, status)
            branch_events.append(EventEnvelope.build(BRANCH_STARTED, _branch_payload(branch)))
            if status == BranchStatus.DONE:
                branch_events.append(EventEnvelope.build(BRANCH_DONE, _branch_payload(branch)))

        announcements.append(
            EventEnvelope.build(
                PARALLEL_STARTED,
                {
                    "instanceId": instance.id,
                    "workflowId": instance.workflow_id,
                    "stateId": target.id,
                    "stateName": target.name,
                    "branches": len(edges),
                },
            )
        )
        announcements.extend(branch_events)
        logger.info(f"Instance {instance.id} forked into {len(edges)} branches at {target.name}")
        return updated

    # ------------------------------------------------------------------
    # parallel branches
    async def complete_branch(
        self, branch_id: int, status: BranchStatus = BranchStatus.DONE
    ) -> Optional[WorkflowInstance]:
        """Mark a branch finished; on DONE, join the parent if every branch is done."""
        async with self.repository.unit_of_work() as uow:
            branch = await uow.get_branch(branch_id)
            if branch is None:
                raise BranchNotFound(branch_id)
            branch = await uow.set_branch_status(branch_id, status)
        self.bus.announce(
            BRANCH_DONE if status == BranchStatus.DONE else BRANCH_FAILED,
            _branch_payload(branch),
        )
        if status != BranchStatus.DONE:
            return None
        return await self.try_join(branch.parent_instance_id)

    async def try_join(self, parent_instance_id: int) -> Optional[WorkflowInstance]:
        """Apply the parent's join edge once all of its branches are DONE.

        Returns ``None`` when the join does not fire: branches still running,
        the parent already left its parallel state, or the join edge is
        missing or ambiguous.
        """
        parent = await self.repository.get_instance(parent_instance_id)
        if parent is None:
            raise InstanceNotFound(parent_instance_id)
        graph = await self.graph(parent.workflow_id)
        if not graph.is_parallel(parent.current_state):
            return None
        branches = await self.repository.list_branches(parent_instance_id)
        if not branches or any(b.status != BranchStatus.DONE for b in branches):
            return None
        join = graph.join_transition(parent.current_state)
        if join is None:
            logger.warning(
                f"Instance {parent_instance_id} finished all branches but "
                f"{graph.state(parent.current_state).name} has no single join transition"
            )
            return None
        try:
            return await self.apply_transition(
                parent_instance_id, join.to_state, meta={"event": JOIN_EVENT}, event=JOIN_EVENT
            )
        except IllegalTransition:
            logger.info(f"Instance {parent_instance_id} already joined")
            return None

    async def on_branch_done(self, envelope: EventEnvelope) -> None:
        parent_id = envelope.payload.get("parentInstanceId")
        if parent_id is not None:
            await self.try_join(int(parent_id))


def _branch_payload(branch) -> Dict[str, Any]:
    return {
        "branchId": branch.id,
        "parentInstanceId": branch.parent_instance_id,
        "branchInstanceId": branch.branch_instance_id,
        "stateId": branch.state_id,
        "status": branch.status.value,
    }
