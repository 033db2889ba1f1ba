"""Saga compensation: undo the effects of entered states, newest first."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel

from .collaborators import Ledger, ledger_reference
from .constants import SAGA_COMPENSATION
from .errors import CompensationError, ConfigurationError, InstanceNotFound
from .persistence.models import HistoryRecord, WorkflowInstance
from .persistence.repository import WorkflowRepository
from .utils.retry import Retrier, RetryPolicy

logger = logging.getLogger(__name__)


class CompensationContext(BaseModel):
    instance: WorkflowInstance
    state_name: str
    step: HistoryRecord
    reason: Optional[str] = None


Compensator = Callable[[CompensationContext], Awaitable[Any]]


class CompensationRegistry:
    """Compensating handlers keyed by the name of the state they undo."""

    def __init__(self, handlers: Optional[Dict[str, Compensator]] = None) -> None:
        self._handlers: Dict[str, Compensator] = dict(handlers or {})

    def register(self, state_name: str, handler: Compensator) -> None:
        self._handlers[state_name] = handler

    def get(self, state_name: str) -> Optional[Compensator]:
        return self._handlers.get(state_name)

    def names(self) -> List[str]:
        return sorted(self._handlers)

    def ensure_known(self, state_names: Iterable[str]) -> None:
        """Fail at startup when a compensator targets a state no workflow declares."""
        known = set(state_names)
        unknown = [name for name in self._handlers if name not in known]
        if unknown:
            raise ConfigurationError(f"Compensators registered for unknown states: {sorted(unknown)}")


def default_compensations(
    ledger: Optional[Ledger] = None,
    unassign: Optional[Compensator] = None,
    reopen: Optional[Compensator] = None,
) -> CompensationRegistry:
    """PAID refunds the ledger hold; ASSIGNED unassigns; COMPLETED reopens."""

    async def refund(ctx: CompensationContext) -> None:
        reference = ledger_reference(ctx.instance.entity_type, ctx.instance.entity_id)
        if ledger is None:
            logger.info(f"Refund requested for {reference} but no ledger is configured")
            return
        await ledger.refund_funds(reference)

    async def log_unassign(ctx: CompensationContext) -> None:
        logger.info(f"Provider unassigned for workflow instance {ctx.instance.id}")

    async def log_reopen(ctx: CompensationContext) -> None:
        logger.info(f"Entity reopened for workflow instance {ctx.instance.id}")

    return CompensationRegistry(
        {
            "PAID": refund,
            "ASSIGNED": unassign or log_unassign,
            "COMPLETED": reopen or log_reopen,
        }
    )


class SagaCoordinator:
    def __init__(
        self,
        repository: WorkflowRepository,
        registry: CompensationRegistry,
        retrier: Retrier,
        bus=None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.retrier = retrier
        self.bus = bus
        self.policy = policy or RetryPolicy()

    async def run_compensation(self, instance_id: int, reason: Optional[str] = None) -> List[str]:
        """Compensate every entered state with a registered handler.

        History is walked newest first. A handler that still fails after its
        retries is logged and skipped so the remaining states are still
        compensated.

        Returns:
            Names of the states compensated, in the order they ran.

        Raises:
            CompensationError: At least one handler failed.
        """
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        graph = await self.repository.get_graph(instance.workflow_id)

        compensated: List[str] = []
        failures: List[Tuple[str, BaseException]] = []
        for step in await self.repository.get_history(instance_id):
            state = graph.states.get(step.to_state)
            if state is None:
                continue
            handler = self.registry.get(state.name)
            if handler is None:
                continue
            ctx = CompensationContext(
                instance=instance, state_name=state.name, step=step, reason=reason
            )
            try:
                await self.retrier.run(
                    lambda: handler(ctx),
                    self.policy,
                    f"workflow.saga.{state.name}",
                    {"instanceId": instance_id, "stateName": state.name},
                )
            except Exception as e:
                logger.error(f"Compensation of {state.name} for instance {instance_id} failed: {e}")
                failures.append((state.name, e))
                continue
            compensated.append(state.name)
            if self.bus is not None:
                self.bus.announce(
                    SAGA_COMPENSATION,
                    {"instanceId": instance_id, "stateName": state.name, "toState": step.to_state},
                )

        if failures:
            raise CompensationError(instance_id, failures)
        return compensated
