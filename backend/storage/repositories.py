"""
Persistence Interfaces
======================
Repository abstractions for orders, the checkout reservation journal and the
payment attempt ledger, plus in-memory implementations (swap for PostgreSQL
in production, see storage.postgres).

Every state-changing order write goes through ``replace_if``: a single
conditional write keyed on the stored (status, payment_status) pair. That is
the only guard the two payment confirmation paths need.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from errors import DuplicateOrderNumberError
from schemas.orders import (
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Reservation,
    ReservationState,
    StockLine,
    utcnow,
)
from schemas.payments import AttemptStatus, PaymentAttempt


# =============================================================================
# INTERFACES
# =============================================================================

class IOrderRepository(ABC):
    """Order persistence interface"""

    @abstractmethod
    async def insert(self, order: Order) -> Order:
        """Persist a new order. Raises DuplicateOrderNumberError on collision."""
        pass

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_intent_id(self, intent_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def highest_sequence_for_day(self, day_prefix: str) -> int:
        """Largest numeric suffix among order numbers starting with day_prefix, 0 if none."""
        pass

    @abstractmethod
    async def replace_if(
        self,
        order: Order,
        expected_status: OrderStatus,
        expected_payment_status: PaymentStatus,
    ) -> Optional[Order]:
        """
        Store ``order`` only if the stored row still has the expected status pair.
        Returns the stored order (version bumped) or None when the precondition failed.
        """
        pass

    @abstractmethod
    async def claim_stock_release(self, order_id: str) -> bool:
        """Atomically flip stock_reserved true -> false. True only for the single winner."""
        pass

    @abstractmethod
    async def list_awaiting_payment(self, older_than: datetime, limit: int) -> List[Order]:
        """PLACED online orders with an intent and no captured payment, oldest first."""
        pass


class IReservationJournal(ABC):
    """Saga log for checkout stock reservations"""

    @abstractmethod
    async def begin(self, reservation: Reservation) -> None:
        pass

    @abstractmethod
    async def get(self, reservation_id: str) -> Optional[Reservation]:
        pass

    @abstractmethod
    async def record_applied(self, reservation_id: str, line: StockLine) -> None:
        """Append a line whose stock decrement has been applied."""
        pass

    @abstractmethod
    async def mark(self, reservation_id: str, state: ReservationState) -> bool:
        """Move a PENDING reservation to ``state``. False if it was no longer PENDING."""
        pass

    @abstractmethod
    async def list_pending(self, older_than: datetime, limit: int) -> List[Reservation]:
        pass


class IPaymentAttemptLedger(ABC):
    """Append-only payment attempt ledger"""

    @abstractmethod
    async def append(self, attempt: PaymentAttempt) -> bool:
        """Record an attempt. False if its gateway event id was already recorded."""
        pass

    @abstractmethod
    async def list_for_order(self, order_id: str) -> List[PaymentAttempt]:
        pass

    @abstractmethod
    async def count_failed(self, order_id: str) -> int:
        pass


def sequence_suffix(order_number: str, day_prefix: str) -> int:
    suffix = order_number[len(day_prefix):]
    return int(suffix) if re.fullmatch(r"\d+", suffix) else 0


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryOrderRepository(IOrderRepository):
    """In-memory order repository; one lock makes each write atomic"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._numbers: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def insert(self, order: Order) -> Order:
        async with self._lock:
            if order.order_number in self._numbers:
                raise DuplicateOrderNumberError(order.order_number)
            self._orders[order.order_id] = order
            self._numbers[order.order_number] = order.order_id
            return order

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_by_intent_id(self, intent_id: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.gateway.intent_id == intent_id:
                    return order
            return None

    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.gateway.payment_id == payment_id:
                    return order
            return None

    async def highest_sequence_for_day(self, day_prefix: str) -> int:
        async with self._lock:
            return max(
                (sequence_suffix(n, day_prefix) for n in self._numbers if n.startswith(day_prefix)),
                default=0,
            )

    async def replace_if(self, order, expected_status, expected_payment_status) -> Optional[Order]:
        async with self._lock:
            stored = self._orders.get(order.order_id)
            if stored is None:
                return None
            if stored.status != expected_status or stored.payment_status != expected_payment_status:
                return None
            # stock_reserved never flips back to true
            updated = order.model_copy(update={
                "stock_reserved": stored.stock_reserved and order.stock_reserved,
                "version": stored.version + 1,
                "updated_at": utcnow(),
            })
            self._orders[order.order_id] = updated
            return updated

    async def claim_stock_release(self, order_id: str) -> bool:
        async with self._lock:
            stored = self._orders.get(order_id)
            if stored is None or not stored.stock_reserved:
                return False
            self._orders[order_id] = stored.model_copy(update={
                "stock_reserved": False,
                "version": stored.version + 1,
                "updated_at": utcnow(),
            })
            return True

    async def list_awaiting_payment(self, older_than: datetime, limit: int) -> List[Order]:
        async with self._lock:
            waiting = [
                o for o in self._orders.values()
                if o.status == OrderStatus.PLACED
                and o.payment_method == PaymentMethod.ONLINE
                and o.payment_status == PaymentStatus.PENDING
                and o.gateway.intent_id
                and o.created_at < older_than
            ]
            return sorted(waiting, key=lambda o: o.created_at)[:limit]


class InMemoryReservationJournal(IReservationJournal):

    def __init__(self):
        self._reservations: dict[str, Reservation] = {}
        self._lock = asyncio.Lock()

    async def begin(self, reservation: Reservation) -> None:
        async with self._lock:
            self._reservations[reservation.reservation_id] = reservation

    async def get(self, reservation_id: str) -> Optional[Reservation]:
        async with self._lock:
            return self._reservations.get(reservation_id)

    async def record_applied(self, reservation_id: str, line: StockLine) -> None:
        async with self._lock:
            stored = self._reservations[reservation_id]
            self._reservations[reservation_id] = stored.model_copy(
                update={"applied": [*stored.applied, line], "updated_at": utcnow()}
            )

    async def mark(self, reservation_id: str, state: ReservationState) -> bool:
        async with self._lock:
            stored = self._reservations.get(reservation_id)
            if stored is None or stored.state != ReservationState.PENDING:
                return False
            self._reservations[reservation_id] = stored.model_copy(
                update={"state": state, "updated_at": utcnow()}
            )
            return True

    async def list_pending(self, older_than: datetime, limit: int) -> List[Reservation]:
        async with self._lock:
            pending = [
                r for r in self._reservations.values()
                if r.state == ReservationState.PENDING and r.created_at < older_than
            ]
            return sorted(pending, key=lambda r: r.created_at)[:limit]


class InMemoryPaymentAttemptLedger(IPaymentAttemptLedger):

    def __init__(self):
        self._attempts: List[PaymentAttempt] = []
        self._event_ids: set[str] = set()
        self._lock = asyncio.Lock()

    async def append(self, attempt: PaymentAttempt) -> bool:
        async with self._lock:
            if attempt.gateway_event_id:
                if attempt.gateway_event_id in self._event_ids:
                    return False
                self._event_ids.add(attempt.gateway_event_id)
            self._attempts.append(attempt)
            return True

    async def list_for_order(self, order_id: str) -> List[PaymentAttempt]:
        async with self._lock:
            return [a for a in self._attempts if a.order_id == order_id]

    async def count_failed(self, order_id: str) -> int:
        async with self._lock:
            return sum(
                1 for a in self._attempts
                if a.order_id == order_id and a.status == AttemptStatus.FAILED
            )
