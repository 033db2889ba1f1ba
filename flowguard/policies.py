"""Per-state SLA, escalation and auto-transition policies."""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .errors import ConfigurationError


class EscalationStep(BaseModel):
    after_seconds: float
    action: str


class SlaPolicy(BaseModel):
    breach_seconds: float
    escalations: List[EscalationStep] = Field(default_factory=list)


class AutoTransitionPolicy(BaseModel):
    event: str
    delay_seconds: float


class StatePolicy(BaseModel):
    sla: Optional[SlaPolicy] = None
    auto_transition: Optional[AutoTransitionPolicy] = None


class SystemPolicies(BaseModel):
    stuck_threshold_seconds: float = 1800
    escalation_window_seconds: float = 3600


DEFAULT_STATE_POLICIES: Dict[str, StatePolicy] = {
    "PAYMENT_PENDING": StatePolicy(
        sla=SlaPolicy(
            breach_seconds=600,
            escalations=[
                EscalationStep(after_seconds=600, action="NOTIFY_L1"),
                EscalationStep(after_seconds=1200, action="NOTIFY_L2"),
                EscalationStep(after_seconds=1800, action="ESCALATE_MANAGER"),
            ],
        ),
        auto_transition=AutoTransitionPolicy(event="PAYMENT_TIMEOUT", delay_seconds=900),
    ),
    "ASSIGNED": StatePolicy(
        sla=SlaPolicy(
            breach_seconds=300,
            escalations=[
                EscalationStep(after_seconds=300, action="NOTIFY_L1"),
                EscalationStep(after_seconds=900, action="NOTIFY_L2"),
            ],
        ),
        auto_transition=AutoTransitionPolicy(event="ASSIGNMENT_TIMEOUT", delay_seconds=600),
    ),
    "OUT_FOR_DELIVERY": StatePolicy(
        sla=SlaPolicy(
            breach_seconds=7200,
            escalations=[
                EscalationStep(after_seconds=7200, action="NOTIFY_L2"),
                EscalationStep(after_seconds=10800, action="ESCALATE_MANAGER"),
            ],
        ),
    ),
}


class PolicyRegistry:
    """Lookup of state policies by state name."""

    def __init__(
        self,
        state_policies: Optional[Dict[str, StatePolicy]] = None,
        system: Optional[SystemPolicies] = None,
    ) -> None:
        self._policies = dict(
            DEFAULT_STATE_POLICIES if state_policies is None else state_policies
        )
        self.system = system or SystemPolicies()

    def get(self, state_name: Optional[str]) -> Optional[StatePolicy]:
        if not state_name:
            return None
        return self._policies.get(state_name)

    def sla(self, state_name: Optional[str]) -> Optional[SlaPolicy]:
        policy = self.get(state_name)
        return policy.sla if policy else None

    def all(self) -> Dict[str, StatePolicy]:
        return dict(self._policies)

    def escalation_actions(self) -> List[str]:
        actions: List[str] = []
        for policy in self._policies.values():
            for step in policy.sla.escalations if policy.sla else []:
                if step.action not in actions:
                    actions.append(step.action)
        return actions

    def ensure_actions_known(self, known: Iterable[str]) -> None:
        """Fail at startup when a policy names an escalation action nobody handles."""
        known_set = set(known)
        unknown = [a for a in self.escalation_actions() if a not in known_set]
        if unknown:
            raise ConfigurationError(f"Unknown escalation actions in policies: {unknown}")
