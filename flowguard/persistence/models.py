"""Data models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import BranchStatus, StateType
from ..utils.clock import utcnow


class WorkflowRecord(BaseModel):
    id: int
    name: str
    description: Optional[str] = None


class StateRecord(BaseModel):
    id: int
    workflow_id: int
    name: str
    type: StateType = StateType.NORMAL
    is_final: bool = False


class TransitionRecord(BaseModel):
    id: int
    workflow_id: int
    from_state: int
    to_state: int
    trigger_event: Optional[str] = None
    requires_action: bool = False

    @property
    def is_automatic(self) -> bool:
        """Eligible for unconditional advancement during automation scans."""
        return self.trigger_event is None and not self.requires_action


class WorkflowInstance(BaseModel):
    """One running execution of a workflow bound to a business entity."""

    id: int
    workflow_id: int
    entity_type: str
    entity_id: str
    current_state: int
    started_at: datetime = Field(default_factory=utcnow)


class BranchRecord(BaseModel):
    """Join bookkeeping row for one parallel branch."""

    id: int
    parent_instance_id: int
    branch_instance_id: Optional[int] = None
    state_id: int
    status: BranchStatus = BranchStatus.RUNNING


class HistoryRecord(BaseModel):
    """Append-only audit row for one state change."""

    id: int
    instance_id: int
    transition_id: Optional[int] = None
    from_state: Optional[int] = None
    to_state: int
    action_by: Optional[str] = None
    changed_at: datetime = Field(default_factory=utcnow)


class OutboxRecord(BaseModel):
    id: int
    event_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    published_at: Optional[datetime] = None


class SignalRecord(BaseModel):
    """Operational signal (escalation raised, stuck instance flagged)."""

    id: int
    kind: str
    instance_id: int
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
