"""Built-in workflow definitions loaded by ``flowguard workflow seed``."""

from __future__ import annotations

from typing import List

import yaml

from .contracts import WorkflowDefinition

ORDER_FLOW = WorkflowDefinition(
    name="ORDER_FLOW",
    description="Grocery order lifecycle with cancellation path",
    states=["CREATED", "PAID", "ASSIGNED", "IN_PROGRESS", "COMPLETED", "CANCELLED"],
    transitions=[
        {"from": "CREATED", "to": "PAID", "event": "PAYMENT_SUCCESS"},
        {"from": "PAID", "to": "ASSIGNED", "event": "PROVIDER_ASSIGNED"},
        {"from": "ASSIGNED", "to": "IN_PROGRESS", "event": "JOB_STARTED"},
        {"from": "IN_PROGRESS", "to": "COMPLETED", "event": "JOB_DONE"},
        {"from": "CREATED", "to": "CANCELLED", "event": "ORDER_CANCELLED"},
        {"from": "PAID", "to": "CANCELLED", "event": "ORDER_CANCELLED"},
        {"from": "ASSIGNED", "to": "CANCELLED", "event": "ORDER_CANCELLED"},
        {"from": "IN_PROGRESS", "to": "CANCELLED", "event": "ORDER_CANCELLED"},
    ],
    final_states=["COMPLETED", "CANCELLED"],
)

SERVICE_FLOW = WorkflowDefinition(
    name="SERVICE_FLOW",
    description="Service request lifecycle for plumber/electrician hiring",
    states=["CREATED", "ASSIGNED", "IN_PROGRESS", "COMPLETED", "CANCELLED"],
    transitions=[
        {"from": "CREATED", "to": "ASSIGNED", "event": "REQUEST_ACCEPTED"},
        {"from": "ASSIGNED", "to": "IN_PROGRESS", "event": "JOB_STARTED"},
        {"from": "IN_PROGRESS", "to": "COMPLETED", "event": "JOB_DONE"},
        {"from": "CREATED", "to": "CANCELLED", "event": "REQUEST_CANCELLED"},
        {"from": "ASSIGNED", "to": "CANCELLED", "event": "REQUEST_CANCELLED"},
    ],
    final_states=["COMPLETED", "CANCELLED"],
)

BUILTIN_DEFINITIONS: List[WorkflowDefinition] = [ORDER_FLOW, SERVICE_FLOW]


def builtin_state_names() -> List[str]:
    names: List[str] = []
    for definition in BUILTIN_DEFINITIONS:
        for state in definition.states:
            if state.name not in names:
                names.append(state.name)
    return names


def load_definitions(path: str) -> List[WorkflowDefinition]:
    """Read one or more workflow definitions from a YAML file.

    The file holds either a single definition mapping, a list of them, or a
    mapping with a ``workflows`` list.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or []
    if isinstance(data, dict):
        data = data.get("workflows", [data])
    return [WorkflowDefinition.model_validate(item) for item in data]
