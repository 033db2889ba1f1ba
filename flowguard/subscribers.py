"""Bus subscribers that keep business entities in step with their workflows."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Iterable, Optional

from .collaborators import HoldStatus, Ledger, ledger_reference
from .constants import PAYMENT_REFUNDED, PAYMENT_RELEASED, STATE_CHANGED
from .contracts import EventEnvelope

logger = logging.getLogger(__name__)

RELEASE_STATES = ("COMPLETED", "DELIVERED")
REFUND_MARKERS = ("CANCEL", "FAIL")

StatusSink = Callable[[str, str], Awaitable[None]]


def settlement_action(state_name: Optional[str]) -> Optional[str]:
    """Return ``"release"``, ``"refund"`` or ``None`` for a newly entered state."""
    name = (state_name or "").upper()
    if name in RELEASE_STATES:
        return "release"
    if any(marker in name for marker in REFUND_MARKERS):
        return "refund"
    return None


class LedgerSettlement:
    """Release or refund an entity's escrow hold when its workflow settles."""

    def __init__(self, ledger: Ledger, bus, entity_types: Iterable[str] = ("ORDER",)) -> None:
        self.ledger = ledger
        self.bus = bus
        self.entity_types = set(entity_types)

    async def on_state_changed(self, envelope: EventEnvelope) -> Optional[str]:
        p = envelope.payload
        if envelope.ingested_from or p.get("entityType") not in self.entity_types:
            return None
        action = settlement_action(p.get("toStateName"))
        if action is None:
            return None

        reference = ledger_reference(p["entityType"], p["entityId"])
        if action == "release":
            hold = await self.ledger.release_funds(reference)
            event_type, settled = PAYMENT_RELEASED, HoldStatus.RELEASED
        else:
            hold = await self.ledger.refund_funds(reference)
            event_type, settled = PAYMENT_REFUNDED, HoldStatus.REFUNDED
        if hold is None:
            logger.info(f"No ledger hold for {reference}; nothing to {action}")
            return None
        if hold.status != settled:
            logger.warning(f"Ledger hold {reference} is already {hold.status.value}; cannot {action}")
            return None

        self.bus.announce(
            event_type,
            {
                "instanceId": p.get("instanceId"),
                "entityType": p["entityType"],
                "entityId": p["entityId"],
                "referenceId": reference,
                "userId": hold.user_id,
                "amount": hold.amount,
                "status": hold.status.value,
            },
        )
        return action

    def subscribe(self, bus) -> None:
        bus.subscribe(STATE_CHANGED, self.on_state_changed)


class EntityStatusSync:
    """Copy the entered state's name onto the business entity.

    ``sinks`` maps an entity type to a coroutine ``sink(entity_id, status)``;
    entity types without a sink are ignored.
    """

    def __init__(self, sinks: Optional[Dict[str, StatusSink]] = None) -> None:
        self.sinks: Dict[str, StatusSink] = dict(sinks or {})

    def register(self, entity_type: str, sink: StatusSink) -> None:
        self.sinks[entity_type] = sink

    async def on_state_changed(self, envelope: EventEnvelope) -> bool:
        p = envelope.payload
        sink = self.sinks.get(p.get("entityType"))
        status = p.get("toStateName")
        if sink is None or not status:
            return False
        await sink(str(p["entityId"]), status)
        return True

    def subscribe(self, bus) -> None:
        bus.subscribe(STATE_CHANGED, self.on_state_changed)
