"""Message and definition contracts shared across flowguard components."""

from __future__ import annotations

import os
import socket
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from .utils.json_safe import json_safe


class StateType(str, Enum):
    NORMAL = "NORMAL"
    PARALLEL = "PARALLEL"


class BranchStatus(str, Enum):
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


def default_publisher_id() -> str:
    return os.getenv("SERVICE_INSTANCE_ID") or f"{socket.gethostname()}-{os.getpid()}"


PUBLISHER_ID = default_publisher_id()


class EventEnvelope(BaseModel):
    """Unit published to every transport."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    published_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    publisher_instance_id: str = Field(default_factory=lambda: PUBLISHER_ID)
    outbox_id: Optional[int] = None
    ingested_from: Optional[str] = None

    @classmethod
    def build(cls, event_type: str, payload: Optional[Dict[str, Any]] = None, **kwargs: Any) -> "EventEnvelope":
        return cls(event_type=event_type, payload=json_safe(payload or {}), **kwargs)

    def to_json(self) -> str:
        """Serialize envelope to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "EventEnvelope":
        """Deserialize envelope from JSON."""
        return cls.model_validate_json(data)


class StateSpec(BaseModel):
    name: str
    type: StateType = StateType.NORMAL
    is_final: bool = False


class TransitionSpec(BaseModel):
    from_state: str = Field(alias="from")
    to_state: str = Field(alias="to")
    event: Optional[str] = None
    requires_action: bool = False

    model_config = {"populate_by_name": True}


class WorkflowDefinition(BaseModel):
    """Declarative workflow graph, as loaded from YAML or seed data.

    States may be listed as plain names; ``final_states`` marks terminal
    states when the state entries do not.
    """

    name: str
    description: Optional[str] = None
    states: List[StateSpec] = Field(default_factory=list)
    transitions: List[TransitionSpec] = Field(default_factory=list)
    final_states: List[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _expand_state_names(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("states"), list):
            data = dict(data)
            data["states"] = [
                {"name": s} if isinstance(s, str) else s for s in data["states"]
            ]
        return data

    @model_validator(mode="after")
    def _check_references(self) -> "WorkflowDefinition":
        names = {s.name for s in self.states}
        for name in self.final_states:
            if name not in names:
                raise ValueError(f"final state {name!r} is not a declared state")
        for t in self.transitions:
            for ref in (t.from_state, t.to_state):
                if ref not in names:
                    raise ValueError(f"transition references unknown state {ref!r}")
        for state in self.states:
            if state.name in self.final_states:
                state.is_final = True
        return self
