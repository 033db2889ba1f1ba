"""Interfaces of the external collaborators, with in-memory implementations."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from .errors import InsufficientFundsError
from .utils.clock import utcnow

logger = logging.getLogger(__name__)


def ledger_reference(entity_type: str, entity_id: Any) -> str:
    """Ledger hold reference for a workflow's business entity."""
    return f"{entity_type}:{entity_id}"


class HoldStatus(str, Enum):
    HELD = "HELD"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


class LedgerHold(BaseModel):
    reference_id: str
    user_id: str
    amount: Decimal
    status: HoldStatus = HoldStatus.HELD
    updated_at: datetime = Field(default_factory=utcnow)


class Ledger(Protocol):
    """Escrow-style holds; every operation is idempotent by reference."""

    async def reserve_funds(self, user_id: str, reference_id: str, amount: Decimal) -> LedgerHold:
        ...

    async def release_funds(self, reference_id: str) -> Optional[LedgerHold]:
        ...

    async def refund_funds(self, reference_id: str) -> Optional[LedgerHold]:
        ...


class InMemoryLedger:
    def __init__(self, balances: Optional[Dict[str, Decimal]] = None) -> None:
        self.balances: Dict[str, Decimal] = {k: Decimal(v) for k, v in (balances or {}).items()}
        self.holds: Dict[str, LedgerHold] = {}
        self._lock = asyncio.Lock()

    def balance(self, user_id: str) -> Decimal:
        return self.balances.get(user_id, Decimal("0"))

    async def reserve_funds(self, user_id: str, reference_id: str, amount: Decimal) -> LedgerHold:
        amount = Decimal(amount)
        async with self._lock:
            existing = self.holds.get(reference_id)
            if existing is not None:
                return existing
            if self.balance(user_id) < amount:
                raise InsufficientFundsError(
                    f"Insufficient funds for {user_id}: need {amount}, have {self.balance(user_id)}"
                )
            self.balances[user_id] = self.balance(user_id) - amount
            hold = LedgerHold(reference_id=reference_id, user_id=user_id, amount=amount)
            self.holds[reference_id] = hold
            return hold

    async def release_funds(self, reference_id: str) -> Optional[LedgerHold]:
        async with self._lock:
            hold = self.holds.get(reference_id)
            if hold is None or hold.status != HoldStatus.HELD:
                return hold
            hold.status = HoldStatus.RELEASED
            hold.updated_at = utcnow()
            return hold

    async def refund_funds(self, reference_id: str) -> Optional[LedgerHold]:
        async with self._lock:
            hold = self.holds.get(reference_id)
            if hold is None or hold.status == HoldStatus.REFUNDED:
                return hold
            self.balances[hold.user_id] = self.balance(hold.user_id) + hold.amount
            hold.status = HoldStatus.REFUNDED
            hold.updated_at = utcnow()
            return hold


class Notification(BaseModel):
    id: int
    user_id: Optional[str] = None
    event_type: str
    priority: str = "MEDIUM"
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None


class Notifier(Protocol):
    async def notify(
        self, user_id: Optional[str], event_type: str, priority: str, payload: Dict[str, Any]
    ) -> Notification:
        ...

    async def deliver_pending(self, limit: int = 100) -> int:
        ...


class InMemoryNotifier:
    """Stores notifications and marks them delivered in batches.

    An optional ``deliver`` coroutine is called per notification; a failure
    leaves that notification pending for the next batch.
    """

    def __init__(self, deliver: Optional[Callable[[Notification], Awaitable[None]]] = None) -> None:
        self.notifications: List[Notification] = []
        self._deliver = deliver

    async def notify(
        self, user_id: Optional[str], event_type: str, priority: str, payload: Dict[str, Any]
    ) -> Notification:
        notification = Notification(
            id=len(self.notifications) + 1,
            user_id=user_id,
            event_type=event_type,
            priority=priority,
            payload=payload,
        )
        self.notifications.append(notification)
        return notification

    def pending(self) -> List[Notification]:
        return [n for n in self.notifications if n.delivered_at is None]

    async def deliver_pending(self, limit: int = 100) -> int:
        delivered = 0
        for notification in self.pending()[:limit]:
            if self._deliver is not None:
                try:
                    await self._deliver(notification)
                except Exception as e:
                    logger.warning(f"Delivery of notification {notification.id} failed: {e}")
                    continue
            notification.delivered_at = utcnow()
            delivered += 1
        return delivered


def notification_recipient(payload: Dict[str, Any]) -> Optional[str]:
    user_id = payload.get("userId") or payload.get("actionBy")
    return str(user_id) if user_id is not None else None
