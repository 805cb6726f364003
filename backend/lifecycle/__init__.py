# lifecycle/__init__.py
# ============================================================================
# ORDER ENGINE — ORDER LIFECYCLE
# ============================================================================
# Cart validation, order numbering, stock reservation, the status state
# machine, payment reconciliation, refunds and checkout orchestration
# ============================================================================

from lifecycle.cart_validator import CartSnapshotValidator
from lifecycle.checkout import OrderService
from lifecycle.order_numbers import OrderNumberGenerator
from lifecycle.reconciler import PaymentReconciler
from lifecycle.refunds import RefundCoordinator
from lifecycle.state_machine import (
    PAYMENT_TRANSITIONS,
    TERMINAL_STATES,
    TRANSITIONS,
    OrderStateMachine,
    SideEffect,
    Transition,
)
from lifecycle.stock import StockReservationManager

__all__ = [
    # Checkout
    "CartSnapshotValidator",
    "OrderService",
    # Building blocks
    "OrderNumberGenerator",
    "StockReservationManager",
    "PaymentReconciler",
    "RefundCoordinator",
    # State machine
    "OrderStateMachine",
    "SideEffect",
    "Transition",
    "TRANSITIONS",
    "PAYMENT_TRANSITIONS",
    "TERMINAL_STATES",
]
