# schemas/__init__.py
from schemas.orders import (
    Actor,
    ActorKind,
    AddressSnapshot,
    CancellationInfo,
    CartItem,
    CartValidation,
    GatewayRefs,
    InvalidLine,
    InvalidReason,
    LineItem,
    MinimumOrderCheck,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundInfo,
    Reservation,
    ReservationState,
    ServiceAreaCheck,
    StatusHistoryEntry,
    StockLine,
    ValidatedLine,
    VariantSnapshot,
    compute_total,
    utcnow,
)

from schemas.payments import (
    AttemptSource,
    AttemptStatus,
    GatewayEvent,
    GatewayEventType,
    IntentState,
    PaymentAttempt,
    PaymentIntent,
    PlaceOrderResult,
    RefundReceipt,
)

__all__ = [
    # Orders
    "Actor",
    "ActorKind",
    "AddressSnapshot",
    "CancellationInfo",
    "GatewayRefs",
    "LineItem",
    "Order",
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "RefundInfo",
    "StatusHistoryEntry",
    "compute_total",
    "utcnow",
    # Catalog, cart and stock
    "CartItem",
    "CartValidation",
    "InvalidLine",
    "InvalidReason",
    "Reservation",
    "ReservationState",
    "StockLine",
    "ValidatedLine",
    "VariantSnapshot",
    # Delivery
    "MinimumOrderCheck",
    "ServiceAreaCheck",
    # Payments
    "AttemptSource",
    "AttemptStatus",
    "GatewayEvent",
    "GatewayEventType",
    "IntentState",
    "PaymentAttempt",
    "PaymentIntent",
    "PlaceOrderResult",
    "RefundReceipt",
]
