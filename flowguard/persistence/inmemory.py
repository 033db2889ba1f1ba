"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from ..contracts import BranchStatus, EventEnvelope, WorkflowDefinition
from ..errors import InstanceNotFound, WorkflowNotFound
from ..graph import TransitionGraph
from ..utils.clock import as_aware, utcnow
from .models import (
    BranchRecord,
    HistoryRecord,
    OutboxRecord,
    SignalRecord,
    StateRecord,
    TransitionRecord,
    WorkflowInstance,
    WorkflowRecord,
)


class _Tables:
    """Mutable row storage; copied wholesale to snapshot a unit of work."""

    def __init__(self) -> None:
        self.workflows: Dict[int, WorkflowRecord] = {}
        self.states: Dict[int, StateRecord] = {}
        self.transitions: Dict[int, TransitionRecord] = {}
        self.instances: Dict[int, WorkflowInstance] = {}
        self.history: List[HistoryRecord] = []
        self.branches: Dict[int, BranchRecord] = {}
        self.outbox: Dict[int, OutboxRecord] = {}
        self.signals: List[SignalRecord] = []
        self.sequences: Dict[str, int] = {}

    def next_id(self, table: str) -> int:
        self.sequences[table] = self.sequences.get(table, 0) + 1
        return self.sequences[table]


class InMemoryUnitOfWork:
    def __init__(self, repo: "InMemoryWorkflowRepository") -> None:
        self._repo = repo

    @property
    def _t(self) -> _Tables:
        return self._repo._tables

    async def get_instance(self, instance_id: int) -> WorkflowInstance | None:
        inst = self._t.instances.get(instance_id)
        return inst.model_copy() if inst else None

    async def create_instance(
        self,
        workflow_id: int,
        entity_type: str,
        entity_id: str,
        state_id: int,
        started_at: datetime | None = None,
    ) -> WorkflowInstance:
        inst = WorkflowInstance(
            id=self._t.next_id("instances"),
            workflow_id=workflow_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            current_state=state_id,
            started_at=started_at or utcnow(),
        )
        self._t.instances[inst.id] = inst
        return inst.model_copy()

    async def set_current_state(self, instance_id: int, state_id: int) -> WorkflowInstance:
        inst = self._t.instances.get(instance_id)
        if inst is None:
            raise InstanceNotFound(instance_id)
        inst.current_state = state_id
        return inst.model_copy()

    async def add_history(
        self,
        instance_id: int,
        from_state: int | None,
        to_state: int,
        transition_id: int | None = None,
        action_by: str | None = None,
        changed_at: datetime | None = None,
    ) -> HistoryRecord:
        row = HistoryRecord(
            id=self._t.next_id("history"),
            instance_id=instance_id,
            transition_id=transition_id,
            from_state=from_state,
            to_state=to_state,
            action_by=action_by,
            changed_at=changed_at or utcnow(),
        )
        self._t.history.append(row)
        return row.model_copy()

    async def create_branch(
        self,
        parent_instance_id: int,
        branch_instance_id: int | None,
        state_id: int,
        status: BranchStatus = BranchStatus.RUNNING,
    ) -> BranchRecord:
        row = BranchRecord(
            id=self._t.next_id("branches"),
            parent_instance_id=parent_instance_id,
            branch_instance_id=branch_instance_id,
            state_id=state_id,
            status=status,
        )
        self._t.branches[row.id] = row
        return row.model_copy()

    async def get_branch(self, branch_id: int) -> BranchRecord | None:
        row = self._t.branches.get(branch_id)
        return row.model_copy() if row else None

    async def get_branch_for_instance(self, branch_instance_id: int) -> BranchRecord | None:
        for row in self._t.branches.values():
            if row.branch_instance_id == branch_instance_id:
                return row.model_copy()
        return None

    async def set_branch_status(self, branch_id: int, status: BranchStatus) -> BranchRecord:
        row = self._t.branches[branch_id]
        row.status = status
        return row.model_copy()

    async def add_outbox(self, envelope: EventEnvelope) -> OutboxRecord:
        row = OutboxRecord(
            id=self._t.next_id("outbox"),
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            payload=envelope.payload,
            created_at=utcnow(),
        )
        self._t.outbox[row.id] = row
        return row.model_copy()


class InMemoryWorkflowRepository:
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Units of work are serialized by a
    lock and rolled back by restoring a snapshot taken on entry.
    """

    def __init__(self) -> None:
        self._tables = _Tables()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[InMemoryUnitOfWork]:
        async with self._lock:
            snapshot = copy.deepcopy(self._tables)
            try:
                yield InMemoryUnitOfWork(self)
            except BaseException:
                self._tables = snapshot
                raise

    # ------------------------------------------------------------------
    async def create_workflow(self, definition: WorkflowDefinition) -> WorkflowRecord:
        async with self._lock:
            t = self._tables
            wf = next((w for w in t.workflows.values() if w.name == definition.name), None)
            if wf is None:
                wf = WorkflowRecord(
                    id=t.next_id("workflows"),
                    name=definition.name,
                    description=definition.description,
                )
                t.workflows[wf.id] = wf
            ids: Dict[str, int] = {
                s.name: s.id for s in t.states.values() if s.workflow_id == wf.id
            }
            edges = {
                (tr.from_state, tr.to_state, tr.trigger_event)
                for tr in t.transitions.values()
                if tr.workflow_id == wf.id
            }
            for spec in definition.states:
                if spec.name in ids:
                    continue
                state = StateRecord(
                    id=t.next_id("states"),
                    workflow_id=wf.id,
                    name=spec.name,
                    type=spec.type,
                    is_final=spec.is_final,
                )
                t.states[state.id] = state
                ids[spec.name] = state.id
            for spec in definition.transitions:
                edge = (ids[spec.from_state], ids[spec.to_state], spec.event)
                if edge in edges:
                    continue
                tr = TransitionRecord(
                    id=t.next_id("transitions"),
                    workflow_id=wf.id,
                    from_state=edge[0],
                    to_state=edge[1],
                    trigger_event=spec.event,
                    requires_action=spec.requires_action,
                )
                t.transitions[tr.id] = tr
            return wf

    async def get_workflow_by_name(self, name: str) -> WorkflowRecord | None:
        return next((w for w in self._tables.workflows.values() if w.name == name), None)

    async def list_workflows(self) -> list[WorkflowRecord]:
        return list(self._tables.workflows.values())

    async def get_graph(self, workflow_id: int) -> TransitionGraph:
        t = self._tables
        wf = t.workflows.get(workflow_id)
        if wf is None:
            raise WorkflowNotFound(f"Workflow {workflow_id} not found")
        return TransitionGraph(
            wf,
            [s for s in t.states.values() if s.workflow_id == workflow_id],
            [tr for tr in t.transitions.values() if tr.workflow_id == workflow_id],
        )

    async def get_instance(self, instance_id: int) -> WorkflowInstance | None:
        inst = self._tables.instances.get(instance_id)
        return inst.model_copy() if inst else None

    async def list_instances(self) -> list[WorkflowInstance]:
        return [i.model_copy() for i in self._tables.instances.values()]

    async def list_active_instances(self) -> list[WorkflowInstance]:
        t = self._tables
        return [
            i.model_copy()
            for i in t.instances.values()
            if not (i.current_state in t.states and t.states[i.current_state].is_final)
        ]

    async def get_history(self, instance_id: int) -> list[HistoryRecord]:
        rows = [h for h in self._tables.history if h.instance_id == instance_id]
        rows.sort(key=lambda h: (h.changed_at, h.id), reverse=True)
        return [h.model_copy() for h in rows]

    async def list_branches(self, parent_instance_id: int) -> list[BranchRecord]:
        return [
            b.model_copy()
            for b in self._tables.branches.values()
            if b.parent_instance_id == parent_instance_id
        ]

    async def record_signal(
        self,
        kind: str,
        instance_id: int,
        metadata: dict[str, Any],
        created_at: datetime | None = None,
    ) -> SignalRecord:
        async with self._lock:
            row = SignalRecord(
                id=self._tables.next_id("signals"),
                kind=kind,
                instance_id=instance_id,
                metadata=dict(metadata),
                created_at=created_at or utcnow(),
            )
            self._tables.signals.append(row)
            return row.model_copy()

    async def find_signals(
        self, kind: str, instance_id: int, since: datetime
    ) -> list[SignalRecord]:
        since = as_aware(since)
        return [
            s.model_copy()
            for s in self._tables.signals
            if s.kind == kind and s.instance_id == instance_id and as_aware(s.created_at) >= since
        ]

    async def add_outbox(self, envelope: EventEnvelope) -> OutboxRecord:
        async with self.unit_of_work() as uow:
            return await uow.add_outbox(envelope)

    async def list_pending_outbox(self, limit: int = 100) -> list[OutboxRecord]:
        pending = [o for o in self._tables.outbox.values() if o.published_at is None]
        pending.sort(key=lambda o: o.id)
        return [o.model_copy() for o in pending[:limit]]

    async def mark_outbox_published(
        self, ids: Iterable[int], published_at: Optional[datetime] = None
    ) -> None:
        at = published_at or utcnow()
        async with self._lock:
            for outbox_id in ids:
                row = self._tables.outbox.get(outbox_id)
                if row is not None:
                    row.published_at = at
