from .models import (
    BranchRow,
    HistoryRow,
    InstanceRow,
    OutboxRow,
    SignalRow,
    StateRow,
    TransitionRow,
    WorkflowRow,
)
from .workflow_db import WorkflowDB, normalize_url

__all__ = [
    "BranchRow",
    "HistoryRow",
    "InstanceRow",
    "OutboxRow",
    "SignalRow",
    "StateRow",
    "TransitionRow",
    "WorkflowRow",
    "WorkflowDB",
    "normalize_url",
]
