"""Exception taxonomy for the workflow engine.

Every error carries a ``retryable`` flag that the retry wrapper consults:
non-retryable errors are surfaced to the caller on the first attempt.
"""

from __future__ import annotations

from typing import Any, List


class FlowguardError(Exception):
    """Base class for all flowguard errors."""

    retryable: bool = True


class GraphError(FlowguardError):
    """Workflow graph is malformed (missing or ambiguous start/terminal state)."""

    retryable = False


class WorkflowNotFound(FlowguardError):
    retryable = False


class InstanceNotFound(FlowguardError):
    retryable = False

    def __init__(self, instance_id: Any) -> None:
        super().__init__(f"Workflow instance not found: {instance_id}")
        self.instance_id = instance_id


class StateNotFound(FlowguardError):
    retryable = False

    def __init__(self, state_id: Any) -> None:
        super().__init__(f"State not found: {state_id}")
        self.state_id = state_id


class IllegalTransition(FlowguardError):
    """No edge connects the instance's current state to the requested target."""

    retryable = False

    def __init__(self, from_state: Any, to_state: Any) -> None:
        super().__init__(f"Illegal transition {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state


class StaleTransition(IllegalTransition):
    """A transition scheduled from one state fired after the instance left it."""

    def __init__(self, expected_state: Any, current_state: Any, to_state: Any) -> None:
        super().__init__(current_state, to_state)
        self.expected_state = expected_state

    def __str__(self) -> str:
        return (
            f"Transition to {self.to_state} was scheduled from state "
            f"{self.expected_state} but the instance is in {self.from_state}"
        )


class NoTransitionForEvent(FlowguardError):
    retryable = False

    def __init__(self, event: str, state_id: Any = None) -> None:
        super().__init__(f"No transition for event: {event}")
        self.event = event
        self.state_id = state_id


class BranchNotFound(FlowguardError):
    retryable = False

    def __init__(self, branch_id: Any) -> None:
        super().__init__(f"Parallel branch not found: {branch_id}")
        self.branch_id = branch_id


class CircuitOpenError(FlowguardError):
    """Raised when a call is rejected by an open circuit breaker."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Circuit breaker open: {key}")
        self.key = key


class TransientStoreError(FlowguardError):
    """Lock contention or a transient persistence failure."""


class InsufficientFundsError(FlowguardError):
    retryable = False


class IdempotencyConflict(FlowguardError):
    """Another caller holds the reservation for this key and has not finished."""

    def __init__(self, scope: str, key: str) -> None:
        super().__init__(f"Request already in progress: {scope}:{key}")
        self.scope = scope
        self.key = key


class CompensationError(FlowguardError):
    """One or more compensating handlers failed after exhausting their retries."""

    retryable = False

    def __init__(self, instance_id: Any, failures: List[tuple[str, BaseException]]) -> None:
        names = ", ".join(name for name, _ in failures)
        super().__init__(f"Compensation failed for instance {instance_id}: {names}")
        self.instance_id = instance_id
        self.failures = failures


class UnknownJobError(FlowguardError):
    retryable = False

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown workflow job: {name}")
        self.name = name


class DeadLetterNotFound(FlowguardError):
    retryable = False

    def __init__(self, dead_letter_id: str) -> None:
        super().__init__(f"DLQ job not found: {dead_letter_id}")
        self.dead_letter_id = dead_letter_id


class ConfigurationError(FlowguardError):
    retryable = False


# Programming and validation errors: a repeat attempt fails the same way.
_NEVER_RETRIED = (
    LookupError,
    TypeError,
    ValueError,
    AttributeError,
    AssertionError,
    NameError,
    NotImplementedError,
)


def is_retryable(error: BaseException, default: bool = True) -> bool:
    """Return whether ``error`` should be retried by the retry wrapper.

    An explicit ``retryable`` attribute wins. Otherwise programming and
    validation errors (``KeyError``, ``TypeError``, pydantic's
    ``ValidationError`` and the like) are never retried, and anything else
    (connection drops, timeouts, driver errors) falls back to ``default``.
    """
    flag = getattr(error, "retryable", None)
    if flag is not None:
        return bool(flag)
    if isinstance(error, _NEVER_RETRIED):
        return False
    return default


def mark_not_retryable(error: BaseException) -> BaseException:
    """Flag ``error`` so that outer retry loops and job queues stop retrying it."""
    error.retryable = False  # type: ignore[attr-defined]
    return error
