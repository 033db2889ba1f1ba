"""flowguard: Durable workflow orchestration with SLAs, sagas and fan-out."""

from .contracts import EventEnvelope, WorkflowDefinition
from .engine import WorkflowEngine
from .events import EventBus
from .persistence import get_repository
from .runtime import Runtime, build_runtime
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "EventBus",
    "EventEnvelope",
    "Runtime",
    "WorkflowDefinition",
    "WorkflowEngine",
    "build_runtime",
    "get_repository",
    "get_transport",
]
