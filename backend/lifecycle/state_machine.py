"""
Order State Machine
===================
Pure decision function over the order status graph. ``transition`` returns a
new Order (history appended, dependent fields set) plus the side effects the
calling workflow must carry out; it never touches storage or collaborators.

    PLACED ──────────► CONFIRMED ─► PACKED ─► READY_TO_DELIVER ─► HANDED_TO_AGENT ─► DELIVERED
      │  (payment)         │           │
      │                    ▼           ▼
      ├─► PAYMENT_FAILED ─► CANCELLED ◄┘
      └──────────────────► CANCELLED ─► REFUND_INITIATED ─► REFUNDED
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from errors import InvalidTransitionError
from schemas.orders import (
    Actor,
    CancellationInfo,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundInfo,
    StatusHistoryEntry,
    utcnow,
)


TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PLACED: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.PAYMENT_FAILED: frozenset({OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PACKED, OrderStatus.CANCELLED}),
    OrderStatus.PACKED: frozenset({OrderStatus.READY_TO_DELIVER, OrderStatus.CANCELLED}),
    OrderStatus.READY_TO_DELIVER: frozenset({OrderStatus.HANDED_TO_AGENT}),
    OrderStatus.HANDED_TO_AGENT: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.CANCELLED: frozenset({OrderStatus.REFUND_INITIATED}),
    OrderStatus.REFUND_INITIATED: frozenset({OrderStatus.REFUNDED}),
}

# Only reachable from payment workflows, never from an operator request
PAYMENT_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PLACED: frozenset({OrderStatus.PAYMENT_FAILED}),
}

TERMINAL_STATES = frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED})


class SideEffect(str, Enum):
    RELEASE_STOCK = "release_stock"
    MARK_PAID = "mark_paid"
    RECORD_REFUND = "record_refund"


@dataclass(frozen=True)
class Transition:
    order: Order
    previous: OrderStatus
    effects: tuple = field(default_factory=tuple)

    def requires(self, effect: SideEffect) -> bool:
        return effect in self.effects


class OrderStateMachine:

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    @staticmethod
    def allowed_next(current: OrderStatus, payment_flow: bool = False) -> frozenset:
        allowed = TRANSITIONS.get(current, frozenset())
        if payment_flow:
            allowed = allowed | PAYMENT_TRANSITIONS.get(current, frozenset())
        return allowed

    def can_transition(self, current: OrderStatus, new: OrderStatus, payment_flow: bool = False) -> bool:
        return new in self.allowed_next(current, payment_flow)

    def transition(
        self,
        order: Order,
        new_status: OrderStatus,
        actor: Actor,
        note: Optional[str] = None,
        *,
        updates: Optional[Dict[str, Any]] = None,
        refund_amount: Optional[int] = None,
        payment_flow: bool = False,
    ) -> Transition:
        """
        Validate and apply one status change.

        Args:
            order: Current order (left untouched)
            new_status: Requested status
            actor: Who is asking; recorded in history and cancellation info
            note: Free-text history note; doubles as the cancellation reason
            updates: Extra field updates the caller needs in the same write
            refund_amount: Amount for REFUND_INITIATED / REFUNDED
            payment_flow: Allow the payment-only edges (PLACED -> PAYMENT_FAILED)

        Raises:
            InvalidTransitionError: new_status is not reachable from order.status
        """
        if not self.can_transition(order.status, new_status, payment_flow):
            raise InvalidTransitionError(order.status.value, new_status.value)

        now = self._clock()
        changes: Dict[str, Any] = dict(updates or {})
        effects = []

        if new_status == OrderStatus.CANCELLED:
            changes["cancellation"] = CancellationInfo(
                reason=note or "Cancelled",
                cancelled_by=actor.kind,
                cancelled_at=now,
            )
            if order.stock_reserved:
                effects.append(SideEffect.RELEASE_STOCK)

        elif new_status == OrderStatus.PAYMENT_FAILED:
            changes["payment_status"] = PaymentStatus.FAILED
            if order.stock_reserved:
                effects.append(SideEffect.RELEASE_STOCK)

        elif new_status == OrderStatus.DELIVERED:
            if order.payment_method == PaymentMethod.COD and order.payment_status != PaymentStatus.PAID:
                changes["payment_status"] = PaymentStatus.PAID
                changes["paid_at"] = now
                effects.append(SideEffect.MARK_PAID)

        elif new_status == OrderStatus.REFUND_INITIATED:
            changes["payment_status"] = PaymentStatus.REFUND_INITIATED
            changes["refund"] = RefundInfo(
                amount=refund_amount if refund_amount is not None else order.total,
                reason=note,
                initiated_at=now,
            )

        elif new_status == OrderStatus.REFUNDED:
            previous = order.refund or RefundInfo(amount=order.total)
            amount = refund_amount if refund_amount is not None else previous.amount
            changes["refund"] = previous.model_copy(update={"amount": amount, "refunded_at": now})
            changes["payment_status"] = (
                PaymentStatus.REFUNDED if amount >= order.total else PaymentStatus.PARTIALLY_REFUNDED
            )
            effects.append(SideEffect.RECORD_REFUND)

        entry = StatusHistoryEntry(status=new_status, timestamp=now, actor=actor, note=note)
        changes["status"] = new_status
        changes["status_history"] = [*order.status_history, entry]

        return Transition(
            order=order.model_copy(update=changes),
            previous=order.status,
            effects=tuple(effects),
        )
