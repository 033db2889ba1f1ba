from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from ..utils.clock import utcnow


def _tz_column(nullable: bool = False) -> Column:
    return Column(DateTime(timezone=True), nullable=nullable)


class WorkflowRow(SQLModel, table=True):
    """A workflow definition."""

    __tablename__ = "workflows"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    description: Optional[str] = None


class StateRow(SQLModel, table=True):
    __tablename__ = "workflow_states"
    __table_args__ = (UniqueConstraint("workflow_id", "name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: int = Field(foreign_key="workflows.id", index=True)
    name: str
    type: str = Field(default="NORMAL")
    is_final: bool = False


class TransitionRow(SQLModel, table=True):
    __tablename__ = "workflow_transitions"

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: int = Field(foreign_key="workflows.id", index=True)
    from_state: int = Field(foreign_key="workflow_states.id")
    to_state: int = Field(foreign_key="workflow_states.id")
    trigger_event: Optional[str] = None
    requires_action: bool = False


class InstanceRow(SQLModel, table=True):
    """One running execution of a workflow."""

    __tablename__ = "workflow_instances"

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: int = Field(foreign_key="workflows.id", index=True)
    entity_type: str
    entity_id: str = Field(index=True)
    current_state: int = Field(foreign_key="workflow_states.id")
    started_at: datetime = Field(default_factory=utcnow, sa_column=_tz_column())


class HistoryRow(SQLModel, table=True):
    __tablename__ = "workflow_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    instance_id: int = Field(foreign_key="workflow_instances.id", index=True)
    transition_id: Optional[int] = None
    from_state: Optional[int] = None
    to_state: int
    action_by: Optional[str] = None
    changed_at: datetime = Field(default_factory=utcnow, sa_column=_tz_column())


class BranchRow(SQLModel, table=True):
    __tablename__ = "workflow_parallel_branches"

    id: Optional[int] = Field(default=None, primary_key=True)
    parent_instance_id: int = Field(foreign_key="workflow_instances.id", index=True)
    branch_instance_id: Optional[int] = Field(default=None, index=True)
    state_id: int
    status: str = Field(default="RUNNING")


class OutboxRow(SQLModel, table=True):
    """Durable record of an emitted event awaiting relay."""

    __tablename__ = "event_outbox"

    id: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(index=True)
    event_type: str
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_tz_column())
    published_at: Optional[datetime] = Field(default=None, sa_column=_tz_column(nullable=True))


class SignalRow(SQLModel, table=True):
    __tablename__ = "workflow_signals"

    id: Optional[int] = Field(default=None, primary_key=True)
    kind: str = Field(index=True)
    instance_id: int = Field(index=True)
    details: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_column=_tz_column())
