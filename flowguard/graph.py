"""Read-only view over one workflow's states and transitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from .constants import JOIN_EVENT
from .contracts import StateType
from .errors import GraphError, StateNotFound

if TYPE_CHECKING:
    from .persistence.models import StateRecord, TransitionRecord, WorkflowRecord


class TransitionGraph:
    """States and transitions of a workflow, indexed for lookups.

    Multiple automatic edges out of one state are never resolved by guessing:
    :meth:`automatic_transition` returns ``None`` for such manual-choice states.
    """

    def __init__(
        self,
        workflow: WorkflowRecord,
        states: Iterable[StateRecord],
        transitions: Iterable[TransitionRecord],
    ) -> None:
        self.workflow = workflow
        self.states: Dict[int, StateRecord] = {s.id: s for s in states}
        self.transitions: List[TransitionRecord] = list(transitions)
        self._outgoing: Dict[int, List[TransitionRecord]] = {}
        self._incoming: Dict[int, int] = {}
        for t in self.transitions:
            self._outgoing.setdefault(t.from_state, []).append(t)
            self._incoming[t.to_state] = self._incoming.get(t.to_state, 0) + 1

    @property
    def workflow_id(self) -> int:
        return self.workflow.id

    def state(self, state_id: int) -> StateRecord:
        try:
            return self.states[state_id]
        except KeyError:
            raise StateNotFound(state_id) from None

    def has_state(self, state_id: int) -> bool:
        return state_id in self.states

    def state_by_name(self, name: str) -> Optional[StateRecord]:
        return next((s for s in self.states.values() if s.name == name), None)

    def find_outgoing(self, state_id: int) -> List[TransitionRecord]:
        return list(self._outgoing.get(state_id, []))

    def find_transition(
        self,
        from_state: int,
        event: Optional[str] = None,
        to_state: Optional[int] = None,
    ) -> Optional[TransitionRecord]:
        """Return the first edge out of ``from_state`` matching ``event`` or ``to_state``."""
        for t in self._outgoing.get(from_state, []):
            if event is not None and t.trigger_event != event:
                continue
            if to_state is not None and t.to_state != to_state:
                continue
            return t
        return None

    def start_state(self) -> StateRecord:
        candidates = [s for s in self.states.values() if self._incoming.get(s.id, 0) == 0]
        if not candidates:
            raise GraphError(f"No start state found for workflow {self.workflow.name}")
        if len(candidates) > 1:
            names = ", ".join(sorted(s.name for s in candidates))
            raise GraphError(
                f"Ambiguous start state for workflow {self.workflow.name}: {names}"
            )
        return candidates[0]

    def terminal_states(self) -> List[StateRecord]:
        finals = [s for s in self.states.values() if s.is_final]
        if not finals:
            raise GraphError(f"No terminal state for workflow {self.workflow.name}")
        return finals

    def validate(self) -> None:
        self.start_state()
        self.terminal_states()

    def automatic_transition(self, state_id: int) -> Optional[TransitionRecord]:
        automatic = [t for t in self._outgoing.get(state_id, []) if t.is_automatic]
        return automatic[0] if len(automatic) == 1 else None

    def is_parallel(self, state_id: int) -> bool:
        return self.state(state_id).type == StateType.PARALLEL

    def branch_transitions(self, state_id: int) -> List[TransitionRecord]:
        """Outgoing edges that each start a parallel branch."""
        return [t for t in self._outgoing.get(state_id, []) if t.trigger_event != JOIN_EVENT]

    def join_transition(self, state_id: int) -> Optional[TransitionRecord]:
        joins = [t for t in self._outgoing.get(state_id, []) if t.trigger_event == JOIN_EVENT]
        return joins[0] if len(joins) == 1 else None
