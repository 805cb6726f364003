# schemas/orders.py
# ============================================================================
# ORDER ENGINE — ORDER, CART AND CATALOG SCHEMAS
# ============================================================================
# Type-safe definitions for the order aggregate, its embedded line items and
# status history, and the read models used during checkout.
#
# All money fields are integer minor units (paise / cents).
# ============================================================================

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PLACED = "PLACED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CONFIRMED = "CONFIRMED"
    PACKED = "PACKED"
    READY_TO_DELIVER = "READY_TO_DELIVER"
    HANDED_TO_AGENT = "HANDED_TO_AGENT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUND_INITIATED = "REFUND_INITIATED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUND_INITIATED = "REFUND_INITIATED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    ONLINE = "ONLINE"
    COD = "COD"  # pay on delivery


class ActorKind(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"
    GATEWAY = "GATEWAY"


class InvalidReason(str, Enum):
    DELETED = "deleted"
    DEACTIVATED = "deactivated"
    INSUFFICIENT_STOCK = "insufficient_stock"


class ReservationState(str, Enum):
    PENDING = "PENDING"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"


# ============================================================================
# SECTION 2: ORDER AGGREGATE
# ============================================================================

class Actor(BaseModel):
    """Who performed an action. Users and admins carry their id."""
    model_config = ConfigDict(frozen=True)

    kind: ActorKind
    id: Optional[str] = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(kind=ActorKind.SYSTEM)

    @classmethod
    def gateway(cls) -> "Actor":
        return cls(kind=ActorKind.GATEWAY)

    @classmethod
    def user(cls, user_id: str) -> "Actor":
        return cls(kind=ActorKind.USER, id=user_id)

    @classmethod
    def admin(cls, admin_id: str) -> "Actor":
        return cls(kind=ActorKind.ADMIN, id=admin_id)

    def __str__(self) -> str:
        return f"{self.kind.value.lower()}:{self.id}" if self.id else self.kind.value.lower()


class LineItem(BaseModel):
    """Frozen price/name snapshot of one purchased variant."""
    model_config = ConfigDict(frozen=True)

    line_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    product_id: str
    variant_id: str
    product_name: str
    variant_label: str
    unit_price: int = Field(ge=0)
    selling_price: int = Field(ge=0)
    quantity: int = Field(ge=1)
    subtotal: int = Field(ge=0)


class AddressSnapshot(BaseModel):
    """Delivery address as it was when the order was placed."""
    model_config = ConfigDict(frozen=True)

    address_id: str
    label: Optional[str] = None
    house_number: Optional[str] = None
    street: Optional[str] = None
    colony: Optional[str] = None
    landmark: Optional[str] = None
    latitude: float
    longitude: float


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: OrderStatus
    timestamp: datetime = Field(default_factory=utcnow)
    actor: Actor = Field(default_factory=Actor.system)
    note: Optional[str] = None


class GatewayRefs(BaseModel):
    """Correlation ids issued by the payment gateway."""
    intent_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    refund_id: Optional[str] = None


class CancellationInfo(BaseModel):
    reason: str
    cancelled_by: ActorKind
    cancelled_at: datetime


class RefundInfo(BaseModel):
    amount: int = Field(ge=0)
    reason: Optional[str] = None
    initiated_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class Order(BaseModel):
    """Core order entity. Never deleted; terminal states persist for audit."""
    order_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_number: str
    user_id: str

    items: List[LineItem] = Field(min_length=1)
    delivery_address: AddressSnapshot

    subtotal: int = Field(ge=0)
    delivery_charge: int = Field(default=0, ge=0)
    discount: int = Field(default=0, ge=0)
    total: int = Field(ge=0)
    currency: str = "inr"

    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status: OrderStatus = OrderStatus.PLACED
    status_history: List[StatusHistoryEntry] = Field(min_length=1)

    cancellation: Optional[CancellationInfo] = None
    refund: Optional[RefundInfo] = None
    gateway: GatewayRefs = Field(default_factory=GatewayRefs)

    stock_reserved: bool = True
    notes: Optional[str] = None
    payment_expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    @model_validator(mode="after")
    def _check_invariants(self) -> "Order":
        if self.total != compute_total(self.subtotal, self.discount, self.delivery_charge):
            raise ValueError("total must equal subtotal - discount + delivery_charge")
        if self.status_history[-1].status != self.status:
            raise ValueError("last status history entry must match current status")
        return self

    @computed_field
    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def stock_lines(self) -> List["StockLine"]:
        return [
            StockLine(product_id=i.product_id, variant_id=i.variant_id, quantity=i.quantity)
            for i in self.items
        ]

    def timeline(self) -> List[str]:
        """Status history as human-readable lines, oldest first."""
        lines = []
        for entry in self.status_history:
            line = f"{entry.timestamp:%Y-%m-%d %H:%M:%S} {entry.status.value} by {entry.actor}"
            if entry.note:
                line = f"{line} ({entry.note})"
            lines.append(line)
        return lines


def compute_total(subtotal: int, discount: int, delivery_charge: int) -> int:
    return subtotal - discount + delivery_charge


# ============================================================================
# SECTION 3: CATALOG, CART AND STOCK
# ============================================================================

class StockLine(BaseModel):
    """One (product, variant, quantity) triple to reserve or release."""
    model_config = ConfigDict(frozen=True)

    product_id: str
    variant_id: str
    quantity: int = Field(ge=1)


class VariantSnapshot(BaseModel):
    """Authoritative catalog view of a purchasable variant."""
    product_id: str
    variant_id: str
    product_name: str
    variant_label: str
    price: int = Field(ge=0)
    selling_price: int = Field(ge=0)
    stock: int = Field(ge=0)
    is_active: bool = True


class CartItem(BaseModel):
    product_id: str
    variant_id: str
    quantity: int = Field(ge=1)


class ValidatedLine(BaseModel):
    product_id: str
    variant_id: str
    product_name: str
    variant_label: str
    unit_price: int
    selling_price: int
    quantity: int
    available_stock: int

    @computed_field
    @property
    def subtotal(self) -> int:
        return self.selling_price * self.quantity


class InvalidLine(BaseModel):
    product_id: str
    variant_id: str
    product_name: Optional[str] = None
    reason: InvalidReason
    requested: int
    available_stock: int = 0

    def describe(self) -> str:
        name = self.product_name or f"{self.product_id}/{self.variant_id}"
        if self.reason == InvalidReason.INSUFFICIENT_STOCK:
            if self.available_stock == 0:
                return f"{name} is out of stock"
            return f"{name}: only {self.available_stock} available, {self.requested} requested"
        return f"{name} is no longer available ({self.reason.value})"


class CartValidation(BaseModel):
    valid: List[ValidatedLine] = Field(default_factory=list)
    invalid: List[InvalidLine] = Field(default_factory=list)

    @computed_field
    @property
    def subtotal(self) -> int:
        return sum(line.subtotal for line in self.valid)


class Reservation(BaseModel):
    """Saga record for one checkout's stock decrements."""
    reservation_id: str
    lines: List[StockLine]
    # Lines whose decrement has landed; only these are ever credited back
    applied: List[StockLine] = Field(default_factory=list)
    state: ReservationState = ReservationState.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# SECTION 4: DELIVERY ELIGIBILITY
# ============================================================================

class ServiceAreaCheck(BaseModel):
    deliverable: bool
    distance_km: float
    max_radius_km: float


class MinimumOrderCheck(BaseModel):
    is_valid: bool
    min_required: int
    shortfall: int
