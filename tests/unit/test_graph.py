import pytest
from pydantic import ValidationError

from flowguard.contracts import StateType, WorkflowDefinition
from flowguard.errors import GraphError, StateNotFound
from flowguard.graph import TransitionGraph
from flowguard.persistence.models import StateRecord, TransitionRecord, WorkflowRecord

WORKFLOW = WorkflowRecord(id=1, name="REVIEW_FLOW")


def _graph(states, edges):
    """Build a graph from ``(id, name, final)`` states and ``(id, from, to, event)`` edges."""
    return TransitionGraph(
        WORKFLOW,
        [
            StateRecord(
                id=sid,
                workflow_id=1,
                name=name,
                is_final=final,
                type=StateType.PARALLEL if name.startswith("SPLIT") else StateType.NORMAL,
            )
            for sid, name, final in states
        ],
        [
            TransitionRecord(
                id=tid,
                workflow_id=1,
                from_state=src,
                to_state=dst,
                trigger_event=event,
                requires_action=event == "MANUAL",
            )
            for tid, src, dst, event in edges
        ],
    )


def test_start_and_terminal_states():
    graph = _graph(
        [(1, "DRAFT", False), (2, "REVIEW", False), (3, "DONE", True)],
        [(1, 1, 2, "SUBMIT"), (2, 2, 3, "APPROVE"), (3, 2, 1, None)],
    )

    with pytest.raises(GraphError):
        graph.start_state()

    graph = _graph(
        [(1, "DRAFT", False), (2, "REVIEW", False), (3, "DONE", True)],
        [(1, 1, 2, "SUBMIT"), (2, 2, 3, "APPROVE")],
    )
    assert graph.start_state().name == "DRAFT"
    assert [s.name for s in graph.terminal_states()] == ["DONE"]
    graph.validate()


def test_ambiguous_start_and_missing_terminal_are_rejected():
    ambiguous = _graph(
        [(1, "A", False), (2, "B", False), (3, "C", True)],
        [(1, 1, 3, "GO"), (2, 2, 3, "GO")],
    )
    with pytest.raises(GraphError, match="A, B"):
        ambiguous.start_state()

    no_final = _graph([(1, "A", False), (2, "B", False)], [(1, 1, 2, "GO")])
    with pytest.raises(GraphError):
        no_final.validate()


def test_find_transition_by_event_and_target():
    graph = _graph(
        [(1, "A", False), (2, "B", True), (3, "C", True)],
        [(1, 1, 2, "OK"), (2, 1, 3, "FAIL")],
    )
    assert graph.find_transition(1, event="FAIL").to_state == 3
    assert graph.find_transition(1, to_state=2).trigger_event == "OK"
    assert graph.find_transition(1, event="OK", to_state=3) is None
    assert graph.find_transition(2, event="OK") is None
    assert len(graph.find_outgoing(1)) == 2
    with pytest.raises(StateNotFound):
        graph.state(99)


def test_automatic_transition_requires_a_single_unconditional_edge():
    graph = _graph(
        [(1, "A", False), (2, "B", False), (3, "C", False), (4, "D", True), (5, "E", True)],
        [
            (1, 1, 2, None),
            (2, 2, 4, None),
            (3, 2, 5, None),
            (4, 3, 4, "MANUAL"),
            (5, 3, 5, "GO"),
        ],
    )
    assert graph.automatic_transition(1).to_state == 2
    assert graph.automatic_transition(2) is None
    assert graph.automatic_transition(3) is None
    assert graph.automatic_transition(4) is None


def test_parallel_branches_and_join():
    graph = _graph(
        [(1, "NEW", False), (2, "SPLIT", False), (3, "X", True), (4, "Y", True), (5, "Z", True)],
        [(1, 1, 2, "GO"), (2, 2, 3, None), (3, 2, 4, None), (4, 2, 5, "JOIN")],
    )
    assert graph.is_parallel(2)
    assert not graph.is_parallel(1)
    assert [t.to_state for t in graph.branch_transitions(2)] == [3, 4]
    assert graph.join_transition(2).to_state == 5
    assert graph.join_transition(1) is None


def test_definition_accepts_state_names_and_marks_finals():
    definition = WorkflowDefinition(
        name="TICKET_FLOW",
        states=["OPEN", {"name": "CLOSED"}],
        transitions=[{"from": "OPEN", "to": "CLOSED", "event": "CLOSE"}],
        final_states=["CLOSED"],
    )
    assert [s.is_final for s in definition.states] == [False, True]
    assert definition.transitions[0].from_state == "OPEN"


def test_definition_rejects_unknown_state_references():
    with pytest.raises(ValidationError):
        WorkflowDefinition(
            name="BROKEN",
            states=["OPEN"],
            transitions=[{"from": "OPEN", "to": "GONE"}],
        )
    with pytest.raises(ValidationError):
        WorkflowDefinition(name="BROKEN", states=["OPEN"], final_states=["SHUT"])
