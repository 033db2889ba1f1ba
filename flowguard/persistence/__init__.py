"""Persistence layer for flowguard workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowguardConfig, load_config
from .inmemory import InMemoryWorkflowRepository
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
from .repository import UnitOfWork, WorkflowRepository
from .sql import SQLWorkflowRepository

_repository_instance: WorkflowRepository | None = None

_SQL_PREFIXES = ("sqlite", "postgres://", "postgresql")


def get_repository(
    database_url: Optional[str] = None, config: Optional[FlowguardConfig] = None
) -> WorkflowRepository:
    """Return the process-wide workflow repository, creating it on first use.

    The URL is taken from the argument, then ``FLOWGUARD_DATABASE_URL``,
    then ``DATABASE_URL``, then ``config.database_url``. SQLite and Postgres
    URLs get the SQL repository; no URL at all means in-memory storage.
    Passing either argument rebuilds the cached repository.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWGUARD_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryWorkflowRepository()
    elif database_url.startswith(_SQL_PREFIXES):
        _repository_instance = SQLWorkflowRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "BranchRecord",
    "HistoryRecord",
    "InMemoryWorkflowRepository",
    "OutboxRecord",
    "SQLWorkflowRepository",
    "SignalRecord",
    "StateRecord",
    "TransitionRecord",
    "UnitOfWork",
    "WorkflowInstance",
    "WorkflowRecord",
    "WorkflowRepository",
    "get_repository",
]
