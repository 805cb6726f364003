# schemas/payments.py
# ============================================================================
# ORDER ENGINE — PAYMENT SCHEMAS
# ============================================================================
# Gateway-neutral payment models. The Stripe adapter translates SDK objects
# into these; nothing outside payments/ sees a raw gateway payload.
# ============================================================================

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from schemas.orders import Order, utcnow


class GatewayEventType(str, Enum):
    CAPTURED = "captured"
    FAILED = "failed"
    REFUND_PROCESSED = "refund_processed"


class AttemptSource(str, Enum):
    CLIENT = "client"
    WEBHOOK = "webhook"
    SYNC = "sync"


class AttemptStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class PaymentIntent(BaseModel):
    """The gateway's record of a pending payment"""
    intent_id: str
    amount: int
    currency: str
    client_secret: Optional[str] = None


class IntentState(BaseModel):
    """Gateway-side view of an intent, used when polling for lost confirmations"""
    intent_id: str
    captured: bool = False
    failed: bool = False
    payment_id: Optional[str] = None
    amount: int = 0


class RefundReceipt(BaseModel):
    refund_id: str
    amount: int
    status: Optional[str] = None


class GatewayEvent(BaseModel):
    """Signature-verified webhook event, normalized"""
    event_id: str
    type: GatewayEventType
    raw_type: str
    intent_id: Optional[str] = None
    payment_id: Optional[str] = None
    refund_id: Optional[str] = None
    amount: int = 0
    error_code: Optional[str] = None
    error_description: Optional[str] = None


class PaymentAttempt(BaseModel):
    """Append-only ledger entry, one per confirmation event received"""
    attempt_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    source: AttemptSource
    status: AttemptStatus
    gateway_event_id: Optional[str] = None
    intent_id: Optional[str] = None
    payment_id: Optional[str] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)


class PlaceOrderResult(BaseModel):
    order: Order
    payment_intent: Optional[PaymentIntent] = None
