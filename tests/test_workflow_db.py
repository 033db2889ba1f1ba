import pytest
from sqlmodel import select

from flowguard.db import WorkflowDB
from flowguard.db.models import StateRow, WorkflowRow
from flowguard.db.workflow_db import normalize_url


@pytest.mark.asyncio
async def test_workflow_db_lifecycle(tmp_path):
    db = WorkflowDB(f"sqlite+aiosqlite:///{tmp_path/'test.db'}")
    await db.init_db()

    async with db.session() as session:
        wf = WorkflowRow(name="ORDER_FLOW")
        session.add(wf)
        await session.flush()
        session.add(StateRow(workflow_id=wf.id, name="CREATED", type="NORMAL", is_final=False))
        await session.commit()

    async with db.session() as session:
        rows = (await session.execute(select(StateRow))).scalars().all()
        assert [r.name for r in rows] == ["CREATED"]

    await db.dispose()


def test_plain_urls_are_mapped_to_async_drivers():
    assert normalize_url("sqlite:///wf.db") == "sqlite+aiosqlite:///wf.db"
    assert normalize_url("sqlite+aiosqlite:///wf.db") == "sqlite+aiosqlite:///wf.db"
    assert normalize_url("postgres://u:p@db/flow") == "postgresql+asyncpg://u:p@db/flow"
    assert normalize_url("postgresql://u:p@db/flow") == "postgresql+asyncpg://u:p@db/flow"
    assert normalize_url("postgresql+asyncpg://db/flow") == "postgresql+asyncpg://db/flow"
