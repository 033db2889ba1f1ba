"""SLA breach, escalation ladder and stuck-instance detection."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from .constants import (
    SIGNAL_ESCALATION,
    SIGNAL_STUCK,
    SLA_BREACH_EVENT,
    SLA_BREACHED,
    SLA_ESCALATION,
    STUCK_DETECTED,
)
from .errors import FlowguardError
from .persistence.models import StateRecord, WorkflowInstance
from .persistence.repository import WorkflowRepository
from .policies import EscalationStep, PolicyRegistry
from .utils.clock import Clock, seconds_since, utcnow

logger = logging.getLogger(__name__)


class SlaReport(BaseModel):
    breached: List[int] = Field(default_factory=list)
    escalations: List[Dict[str, Any]] = Field(default_factory=list)


class SlaMonitor:
    """Periodic checks over every instance sitting in a non-terminal state.

    SLA age is measured from the instance's ``started_at``, not from when it
    entered its current state.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        engine,
        bus,
        policies: PolicyRegistry,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.bus = bus
        self.policies = policies
        self._clock = clock

    async def check_sla(self) -> SlaReport:
        report = SlaReport()
        now = self._clock()
        for instance in await self.repository.list_active_instances():
            graph = await self.engine.graph(instance.workflow_id)
            state = graph.state(instance.current_state)
            sla = self.policies.sla(state.name)
            if sla is None:
                continue
            age = seconds_since(instance.started_at, now)
            if age < sla.breach_seconds:
                continue

            breach = graph.find_transition(state.id, event=SLA_BREACH_EVENT)
            if breach is not None:
                payload = {
                    "instanceId": instance.id,
                    "workflowId": instance.workflow_id,
                    "stateName": state.name,
                    "ageSeconds": age,
                    "breachSeconds": sla.breach_seconds,
                }
                self.bus.announce(SLA_BREACHED, payload)
                try:
                    await self.engine.apply_transition(
                        instance.id,
                        breach.to_state,
                        None,
                        {"event": SLA_BREACH_EVENT, **payload},
                        event=SLA_BREACH_EVENT,
                    )
                    report.breached.append(instance.id)
                except FlowguardError as e:
                    logger.warning(f"SLA breach transition failed for instance {instance.id}: {e}")

            report.escalations.extend(
                await self._process_escalations(instance, state, age, sla.escalations)
            )
        return report

    async def _process_escalations(
        self,
        instance: WorkflowInstance,
        state: StateRecord,
        age: float,
        steps: List[EscalationStep],
    ) -> List[Dict[str, Any]]:
        now = self._clock()
        since = now - timedelta(seconds=self.policies.system.escalation_window_seconds)
        raised = []
        for step in steps:
            if age < step.after_seconds:
                continue
            recent = await self.repository.find_signals(SIGNAL_ESCALATION, instance.id, since)
            if any(
                str(s.metadata.get("stateId")) == str(state.id)
                and s.metadata.get("action") == step.action
                for s in recent
            ):
                continue
            payload = {
                "instanceId": instance.id,
                "workflowId": instance.workflow_id,
                "stateId": state.id,
                "stateName": state.name,
                "action": step.action,
                "ageSeconds": age,
            }
            await self.repository.record_signal(SIGNAL_ESCALATION, instance.id, payload, now)
            self.bus.announce(SLA_ESCALATION, payload)
            raised.append(payload)
        return raised

    async def detect_stuck(self) -> List[int]:
        """Flag instances with no activity for longer than the stuck threshold.

        Nothing is transitioned; a signal is recorded and a fact announced,
        at most once per instance within the escalation window.
        """
        system = self.policies.system
        now = self._clock()
        since = now - timedelta(seconds=system.escalation_window_seconds)
        flagged = []
        for instance in await self.repository.list_active_instances():
            history = await self.repository.get_history(instance.id)
            last_activity = history[0].changed_at if history else instance.started_at
            inactivity = seconds_since(last_activity, now)
            if inactivity < system.stuck_threshold_seconds:
                continue
            if await self.repository.find_signals(SIGNAL_STUCK, instance.id, since):
                continue
            payload = {
                "instanceId": instance.id,
                "currentState": instance.current_state,
                "inactivitySeconds": inactivity,
            }
            await self.repository.record_signal(SIGNAL_STUCK, instance.id, payload, now)
            self.bus.announce(STUCK_DETECTED, payload)
            logger.info(f"Instance {instance.id} stuck for {inactivity:.0f}s")
            flagged.append(instance.id)
        return flagged
