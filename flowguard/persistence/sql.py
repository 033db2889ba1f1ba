"""SQL implementation of the workflow repository (SQLite or PostgreSQL)."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from ..contracts import BranchStatus, EventEnvelope, StateType, WorkflowDefinition
from ..db import (
    BranchRow,
    HistoryRow,
    InstanceRow,
    OutboxRow,
    SignalRow,
    StateRow,
    TransitionRow,
    WorkflowDB,
    WorkflowRow,
)
from ..errors import InstanceNotFound, TransientStoreError, WorkflowNotFound
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

logger = logging.getLogger(__name__)


def _workflow(row: WorkflowRow) -> WorkflowRecord:
    return WorkflowRecord(id=row.id, name=row.name, description=row.description)


def _instance(row: InstanceRow) -> WorkflowInstance:
    return WorkflowInstance(
        id=row.id,
        workflow_id=row.workflow_id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        current_state=row.current_state,
        started_at=as_aware(row.started_at),
    )


def _history(row: HistoryRow) -> HistoryRecord:
    return HistoryRecord(
        id=row.id,
        instance_id=row.instance_id,
        transition_id=row.transition_id,
        from_state=row.from_state,
        to_state=row.to_state,
        action_by=row.action_by,
        changed_at=as_aware(row.changed_at),
    )


def _branch(row: BranchRow) -> BranchRecord:
    return BranchRecord(
        id=row.id,
        parent_instance_id=row.parent_instance_id,
        branch_instance_id=row.branch_instance_id,
        state_id=row.state_id,
        status=BranchStatus(row.status),
    )


def _outbox(row: OutboxRow) -> OutboxRecord:
    return OutboxRecord(
        id=row.id,
        event_id=row.event_id,
        event_type=row.event_type,
        payload=row.payload or {},
        created_at=as_aware(row.created_at),
        published_at=as_aware(row.published_at),
    )


def _signal(row: SignalRow) -> SignalRecord:
    return SignalRecord(
        id=row.id,
        kind=row.kind,
        instance_id=row.instance_id,
        metadata=row.details or {},
        created_at=as_aware(row.created_at),
    )


class SQLUnitOfWork:
    """Unit of work bound to one database transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_instance(self, instance_id: int) -> WorkflowInstance | None:
        stmt = select(InstanceRow).where(InstanceRow.id == instance_id).with_for_update()
        row = (await self.session.execute(stmt)).scalars().first()
        return _instance(row) if row else None

    async def create_instance(
        self,
        workflow_id: int,
        entity_type: str,
        entity_id: str,
        state_id: int,
        started_at: datetime | None = None,
    ) -> WorkflowInstance:
        row = InstanceRow(
            workflow_id=workflow_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            current_state=state_id,
            started_at=started_at or utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return _instance(row)

    async def set_current_state(self, instance_id: int, state_id: int) -> WorkflowInstance:
        row = await self.session.get(InstanceRow, instance_id)
        if row is None:
            raise InstanceNotFound(instance_id)
        row.current_state = state_id
        await self.session.flush()
        return _instance(row)

    async def add_history(
        self,
        instance_id: int,
        from_state: int | None,
        to_state: int,
        transition_id: int | None = None,
        action_by: str | None = None,
        changed_at: datetime | None = None,
    ) -> HistoryRecord:
        row = HistoryRow(
            instance_id=instance_id,
            transition_id=transition_id,
            from_state=from_state,
            to_state=to_state,
            action_by=action_by,
            changed_at=changed_at or utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return _history(row)

    async def create_branch(
        self,
        parent_instance_id: int,
        branch_instance_id: int | None,
        state_id: int,
        status: BranchStatus = BranchStatus.RUNNING,
    ) -> BranchRecord:
        row = BranchRow(
            parent_instance_id=parent_instance_id,
            branch_instance_id=branch_instance_id,
            state_id=state_id,
            status=status.value,
        )
        self.session.add(row)
        await self.session.flush()
        return _branch(row)

    async def get_branch(self, branch_id: int) -> BranchRecord | None:
        row = await self.session.get(BranchRow, branch_id)
        return _branch(row) if row else None

    async def get_branch_for_instance(self, branch_instance_id: int) -> BranchRecord | None:
        stmt = select(BranchRow).where(BranchRow.branch_instance_id == branch_instance_id)
        row = (await self.session.execute(stmt)).scalars().first()
        return _branch(row) if row else None

    async def set_branch_status(self, branch_id: int, status: BranchStatus) -> BranchRecord:
        row = await self.session.get(BranchRow, branch_id)
        row.status = status.value
        await self.session.flush()
        return _branch(row)

    async def add_outbox(self, envelope: EventEnvelope) -> OutboxRecord:
        row = OutboxRow(
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            payload=envelope.payload,
            created_at=utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return _outbox(row)


class SQLWorkflowRepository:
    """Persist workflow state through SQLModel tables.

    Accepts ``sqlite://``, ``sqlite+aiosqlite://``, ``postgres://`` and
    ``postgresql+asyncpg://`` URLs. Tables are created on first use.
    """

    def __init__(self, database_url: str) -> None:
        self.db = WorkflowDB(database_url)
        self._initialized = False

    async def _ensure_schema(self) -> None:
        if not self._initialized:
            await self.db.init_db()
            self._initialized = True

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        await self._ensure_schema()
        async with self.db.session() as session:
            yield session

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[SQLUnitOfWork]:
        await self._ensure_schema()
        try:
            async with self.db.session() as session:
                async with session.begin():
                    yield SQLUnitOfWork(session)
        except OperationalError as exc:
            logger.warning(f"Transient database error, transaction rolled back: {exc}")
            raise TransientStoreError(str(exc)) from exc
        except DBAPIError as exc:
            if exc.connection_invalidated:
                raise TransientStoreError(str(exc)) from exc
            raise

    async def close(self) -> None:
        await self.db.dispose()

    # ------------------------------------------------------------------
    async def create_workflow(self, definition: WorkflowDefinition) -> WorkflowRecord:
        async with self._session() as session:
            async with session.begin():
                stmt = select(WorkflowRow).where(WorkflowRow.name == definition.name)
                wf = (await session.execute(stmt)).scalars().first()
                if wf is None:
                    wf = WorkflowRow(name=definition.name, description=definition.description)
                    session.add(wf)
                    await session.flush()
                existing_states = (
                    await session.execute(select(StateRow).where(StateRow.workflow_id == wf.id))
                ).scalars()
                ids: Dict[str, int] = {s.name: s.id for s in existing_states}
                existing_edges = (
                    await session.execute(
                        select(TransitionRow).where(TransitionRow.workflow_id == wf.id)
                    )
                ).scalars()
                edges = {(t.from_state, t.to_state, t.trigger_event) for t in existing_edges}
                for spec in definition.states:
                    if spec.name in ids:
                        continue
                    state = StateRow(
                        workflow_id=wf.id,
                        name=spec.name,
                        type=spec.type.value,
                        is_final=spec.is_final,
                    )
                    session.add(state)
                    await session.flush()
                    ids[spec.name] = state.id
                for spec in definition.transitions:
                    edge = (ids[spec.from_state], ids[spec.to_state], spec.event)
                    if edge in edges:
                        continue
                    session.add(
                        TransitionRow(
                            workflow_id=wf.id,
                            from_state=edge[0],
                            to_state=edge[1],
                            trigger_event=spec.event,
                            requires_action=spec.requires_action,
                        )
                    )
            return _workflow(wf)

    async def get_workflow_by_name(self, name: str) -> WorkflowRecord | None:
        async with self._session() as session:
            stmt = select(WorkflowRow).where(WorkflowRow.name == name)
            row = (await session.execute(stmt)).scalars().first()
            return _workflow(row) if row else None

    async def list_workflows(self) -> list[WorkflowRecord]:
        async with self._session() as session:
            rows = (await session.execute(select(WorkflowRow).order_by(WorkflowRow.id))).scalars()
            return [_workflow(r) for r in rows]

    async def get_graph(self, workflow_id: int) -> TransitionGraph:
        async with self._session() as session:
            wf = await session.get(WorkflowRow, workflow_id)
            if wf is None:
                raise WorkflowNotFound(f"Workflow {workflow_id} not found")
            states = (
                await session.execute(select(StateRow).where(StateRow.workflow_id == workflow_id))
            ).scalars()
            transitions = (
                await session.execute(
                    select(TransitionRow)
                    .where(TransitionRow.workflow_id == workflow_id)
                    .order_by(TransitionRow.id)
                )
            ).scalars()
            return TransitionGraph(
                _workflow(wf),
                [
                    StateRecord(
                        id=s.id,
                        workflow_id=s.workflow_id,
                        name=s.name,
                        type=StateType(s.type),
                        is_final=s.is_final,
                    )
                    for s in states
                ],
                [
                    TransitionRecord(
                        id=t.id,
                        workflow_id=t.workflow_id,
                        from_state=t.from_state,
                        to_state=t.to_state,
                        trigger_event=t.trigger_event,
                        requires_action=t.requires_action,
                    )
                    for t in transitions
                ],
            )

    async def get_instance(self, instance_id: int) -> WorkflowInstance | None:
        async with self._session() as session:
            row = await session.get(InstanceRow, instance_id)
            return _instance(row) if row else None

    async def list_instances(self) -> list[WorkflowInstance]:
        async with self._session() as session:
            rows = (await session.execute(select(InstanceRow).order_by(InstanceRow.id))).scalars()
            return [_instance(r) for r in rows]

    async def list_active_instances(self) -> list[WorkflowInstance]:
        async with self._session() as session:
            stmt = (
                select(InstanceRow)
                .join(StateRow, StateRow.id == InstanceRow.current_state)
                .where(StateRow.is_final == False)  # noqa: E712
                .order_by(InstanceRow.id)
            )
            return [_instance(r) for r in (await session.execute(stmt)).scalars()]

    async def get_history(self, instance_id: int) -> list[HistoryRecord]:
        async with self._session() as session:
            stmt = (
                select(HistoryRow)
                .where(HistoryRow.instance_id == instance_id)
                .order_by(HistoryRow.changed_at.desc(), HistoryRow.id.desc())
            )
            return [_history(r) for r in (await session.execute(stmt)).scalars()]

    async def list_branches(self, parent_instance_id: int) -> list[BranchRecord]:
        async with self._session() as session:
            stmt = (
                select(BranchRow)
                .where(BranchRow.parent_instance_id == parent_instance_id)
                .order_by(BranchRow.id)
            )
            return [_branch(r) for r in (await session.execute(stmt)).scalars()]

    async def record_signal(
        self,
        kind: str,
        instance_id: int,
        metadata: dict[str, Any],
        created_at: datetime | None = None,
    ) -> SignalRecord:
        at = as_aware(created_at).astimezone(timezone.utc) if created_at else utcnow()
        async with self._session() as session:
            row = SignalRow(kind=kind, instance_id=instance_id, details=dict(metadata), created_at=at)
            session.add(row)
            await session.commit()
            return _signal(row)

    async def find_signals(
        self, kind: str, instance_id: int, since: datetime
    ) -> list[SignalRecord]:
        async with self._session() as session:
            stmt = (
                select(SignalRow)
                .where(SignalRow.kind == kind)
                .where(SignalRow.instance_id == instance_id)
                .where(SignalRow.created_at >= as_aware(since).astimezone(timezone.utc))
                .order_by(SignalRow.id)
            )
            rows = (await session.execute(stmt)).scalars()
            return [_signal(r) for r in rows]

    async def add_outbox(self, envelope: EventEnvelope) -> OutboxRecord:
        async with self.unit_of_work() as uow:
            return await uow.add_outbox(envelope)

    async def list_pending_outbox(self, limit: int = 100) -> list[OutboxRecord]:
        async with self._session() as session:
            stmt = (
                select(OutboxRow)
                .where(OutboxRow.published_at.is_(None))
                .order_by(OutboxRow.id)
                .limit(limit)
            )
            return [_outbox(r) for r in (await session.execute(stmt)).scalars()]

    async def mark_outbox_published(
        self, ids: Iterable[int], published_at: Optional[datetime] = None
    ) -> None:
        ids = list(ids)
        if not ids:
            return
        async with self._session() as session:
            await session.execute(
                update(OutboxRow)
                .where(OutboxRow.id.in_(ids))
                .values(published_at=published_at or utcnow())
            )
            await session.commit()
