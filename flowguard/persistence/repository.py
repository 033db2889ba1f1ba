"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncContextManager, Iterable, Optional, Protocol

from ..contracts import BranchStatus, EventEnvelope, WorkflowDefinition
from .models import (
    BranchRecord,
    HistoryRecord,
    OutboxRecord,
    SignalRecord,
    WorkflowInstance,
    WorkflowRecord,
)

if TYPE_CHECKING:
    from ..graph import TransitionGraph


class UnitOfWork(Protocol):
    """Writes performed atomically: all commit together or none do."""

    async def get_instance(self, instance_id: int) -> WorkflowInstance | None:
        """Re-read an instance inside the unit of work, locking it where supported."""

    async def create_instance(
        self,
        workflow_id: int,
        entity_type: str,
        entity_id: str,
        state_id: int,
        started_at: datetime | None = None,
    ) -> WorkflowInstance:
        """Create an instance positioned at ``state_id``."""

    async def set_current_state(self, instance_id: int, state_id: int) -> WorkflowInstance:
        """Move an instance to ``state_id``."""

    async def add_history(
        self,
        instance_id: int,
        from_state: int | None,
        to_state: int,
        transition_id: int | None = None,
        action_by: str | None = None,
        changed_at: datetime | None = None,
    ) -> HistoryRecord:
        """Append one history row."""

    async def create_branch(
        self,
        parent_instance_id: int,
        branch_instance_id: int | None,
        state_id: int,
        status: BranchStatus = BranchStatus.RUNNING,
    ) -> BranchRecord:
        """Record a parallel branch of ``parent_instance_id``."""

    async def get_branch(self, branch_id: int) -> BranchRecord | None:
        """Return a branch row by id."""

    async def get_branch_for_instance(self, branch_instance_id: int) -> BranchRecord | None:
        """Return the branch row whose branch instance is ``branch_instance_id``."""

    async def set_branch_status(self, branch_id: int, status: BranchStatus) -> BranchRecord:
        """Update a branch row's status."""

    async def add_outbox(self, envelope: EventEnvelope) -> OutboxRecord:
        """Write an outbox row in this unit of work."""


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends."""

    def unit_of_work(self) -> AsyncContextManager[UnitOfWork]:
        """Open an atomic unit of work."""

    async def create_workflow(self, definition: WorkflowDefinition) -> WorkflowRecord:
        """Persist a workflow definition; idempotent by workflow name."""

    async def get_workflow_by_name(self, name: str) -> WorkflowRecord | None:
        """Look up a workflow by name."""

    async def list_workflows(self) -> list[WorkflowRecord]:
        """Return all workflow definitions."""

    async def get_graph(self, workflow_id: int) -> "TransitionGraph":
        """Load the states and transitions of a workflow."""

    async def get_instance(self, instance_id: int) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def list_instances(self) -> list[WorkflowInstance]:
        """Return all instances."""

    async def list_active_instances(self) -> list[WorkflowInstance]:
        """Return instances whose current state is not terminal."""

    async def get_history(self, instance_id: int) -> list[HistoryRecord]:
        """Return the history of an instance, newest first."""

    async def list_branches(self, parent_instance_id: int) -> list[BranchRecord]:
        """Return the branch rows of a parent instance."""

    async def record_signal(
        self,
        kind: str,
        instance_id: int,
        metadata: dict[str, Any],
        created_at: datetime | None = None,
    ) -> SignalRecord:
        """Record an operational signal."""

    async def find_signals(
        self, kind: str, instance_id: int, since: datetime
    ) -> list[SignalRecord]:
        """Return signals of ``kind`` for an instance created at or after ``since``."""

    async def add_outbox(self, envelope: EventEnvelope) -> OutboxRecord:
        """Write an outbox row in its own unit of work."""

    async def list_pending_outbox(self, limit: int = 100) -> list[OutboxRecord]:
        """Return unpublished outbox rows, oldest first."""

    async def mark_outbox_published(
        self, ids: Iterable[int], published_at: Optional[datetime] = None
    ) -> None:
        """Mark outbox rows as published."""
