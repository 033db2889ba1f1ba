"""Escalation actions raised by the SLA ladder."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from .collaborators import Notifier, notification_recipient
from .constants import SLA_ESCALATION, SLA_ESCALATION_HANDLED
from .errors import ConfigurationError
from .utils.retry import Retrier, RetryPolicy

logger = logging.getLogger(__name__)


class EscalationAction(BaseModel):
    name: str
    message: str
    severity: str = "HIGH"


DEFAULT_ACTIONS: List[EscalationAction] = [
    EscalationAction(name="NOTIFY_L1", message="SLA breach escalation level 1"),
    EscalationAction(name="NOTIFY_L2", message="SLA breach escalation level 2"),
    EscalationAction(
        name="ESCALATE_MANAGER", message="SLA breach escalated to manager", severity="CRITICAL"
    ),
]


class EscalationActions:
    """Registry of the escalation actions state policies may name."""

    def __init__(self, actions: Optional[Iterable[EscalationAction]] = None) -> None:
        self._actions: Dict[str, EscalationAction] = {}
        for action in DEFAULT_ACTIONS if actions is None else actions:
            self.register(action)

    def register(self, action: EscalationAction) -> None:
        self._actions[action.name] = action

    def names(self) -> List[str]:
        return list(self._actions)

    def resolve(self, name: Optional[str]) -> EscalationAction:
        try:
            return self._actions[name]
        except KeyError:
            raise ConfigurationError(f"Unknown escalation action: {name}") from None


class EscalationHandler:
    """Deliver one escalation step to the notifier, then announce it handled."""

    def __init__(
        self,
        notifier: Notifier,
        retrier: Retrier,
        bus,
        actions: Optional[EscalationActions] = None,
        policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.notifier = notifier
        self.retrier = retrier
        self.bus = bus
        self.actions = actions or EscalationActions()
        self.policy = policy or RetryPolicy()

    async def run(self, payload: Dict[str, Any]) -> bool:
        action = self.actions.resolve(payload.get("action"))

        async def deliver() -> None:
            await self.notifier.notify(
                notification_recipient(payload),
                SLA_ESCALATION,
                action.severity,
                {**payload, "message": action.message},
            )

        await self.retrier.run(deliver, self.policy, f"workflow.escalation.{action.name}", payload)
        logger.info(f"Escalation {action.name} delivered for instance {payload.get('instanceId')}")
        self.bus.announce(SLA_ESCALATION_HANDLED, payload)
        return True
