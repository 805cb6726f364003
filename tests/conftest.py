"""
Shared fixtures for the order engine test suite.

Everything runs against the in-memory stores, a controllable clock and a fake
payment gateway that implements the gateway contract.
"""

import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from errors import GatewayError
from lifecycle.checkout import OrderService
from payments.gateway import IPaymentGateway
from schemas.orders import (
    Actor,
    AddressSnapshot,
    CartItem,
    LineItem,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    StatusHistoryEntry,
    VariantSnapshot,
    compute_total,
)
from schemas.payments import (
    GatewayEvent,
    GatewayEventType,
    IntentState,
    PaymentIntent,
    RefundReceipt,
)
from services.audit import InMemoryAuditLog
from services.cache import InMemoryCache
from services.catalog import InMemoryCatalog
from services.customers import InMemoryAddressBook, InMemoryCartStore
from services.notifications import LoggingNotifier
from settings import Settings
from storage.repositories import (
    InMemoryOrderRepository,
    InMemoryPaymentAttemptLedger,
    InMemoryReservationJournal,
)

SIGNING_SECRET = "test-signing-secret"
WEBHOOK_SECRET = "whsec_test"

USER_ID = "user-1"
NEAR_ADDRESS_ID = "addr-home"
FAR_ADDRESS_ID = "addr-far"


# ============================================================================
# Clock
# ============================================================================

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ============================================================================
# Gateway
# ============================================================================

class FakeGateway(IPaymentGateway):
    """In-process gateway double; client confirmations and webhook payloads are signed with HMAC."""

    def __init__(self):
        self.intents: Dict[str, PaymentIntent] = {}
        self.intent_states: Dict[str, IntentState] = {}
        self.refunds: List[dict] = []
        self.create_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self._counter = 0

    async def create_intent(self, amount, currency, reference, metadata) -> PaymentIntent:
        if self.create_error:
            raise self.create_error
        self._counter += 1
        intent = PaymentIntent(
            intent_id=f"pi_{self._counter}",
            amount=amount,
            currency=currency,
            client_secret=f"pi_{self._counter}_secret",
        )
        self.intents[intent.intent_id] = intent
        self.intent_states[intent.intent_id] = IntentState(intent_id=intent.intent_id)
        return intent

    async def verify_client_signature(self, intent_id, payment_id, signature) -> bool:
        if not (intent_id and payment_id and signature):
            return False
        return hmac.compare_digest(sign_payment(intent_id, payment_id), signature)

    def verify_webhook_signature(self, raw_payload: bytes, signature: str) -> bool:
        expected = hmac.new(WEBHOOK_SECRET.encode(), raw_payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature or "")

    def parse_event(self, raw_payload: bytes) -> Optional[GatewayEvent]:
        data = json.loads(raw_payload)
        try:
            event_type = GatewayEventType(data["type"])
        except ValueError:
            return None
        return GatewayEvent(
            event_id=data["id"],
            type=event_type,
            raw_type=data["type"],
            intent_id=data.get("intent_id"),
            payment_id=data.get("payment_id"),
            refund_id=data.get("refund_id"),
            amount=data.get("amount", 0),
            error_code=data.get("error_code"),
        )

    async def initiate_refund(self, payment_id, amount, metadata, idempotency_key=None) -> RefundReceipt:
        if self.refund_error:
            raise self.refund_error
        self.refunds.append({
            "payment_id": payment_id,
            "amount": amount,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        return RefundReceipt(refund_id=f"re_{len(self.refunds)}", amount=amount, status="pending")

    async def retrieve_intent(self, intent_id: str) -> IntentState:
        if intent_id not in self.intent_states:
            raise GatewayError(f"No such intent: {intent_id}")
        return self.intent_states[intent_id]


def sign_payment(intent_id: str, payment_id: str) -> str:
    """Client-side signature the fake gateway accepts: HMAC over intent_id|payment_id."""
    message = f"{intent_id}|{payment_id}".encode()
    return hmac.new(SIGNING_SECRET.encode(), message, hashlib.sha256).hexdigest()


def webhook(event_id: str, event_type: str, **fields):
    """Build a signed webhook (payload, signature) pair."""
    payload = json.dumps({"id": event_id, "type": event_type, **fields}).encode()
    signature = hmac.new(WEBHOOK_SECRET.encode(), payload, hashlib.sha256).hexdigest()
    return payload, signature


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 17, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def config():
    return Settings(
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        ORDER_NUMBER_PREFIX="SH",
        MIN_ORDER_VALUE=20000,
        FREE_DELIVERY_THRESHOLD=50000,
        DELIVERY_CHARGE=4000,
        DELIVERY_RADIUS_KM=25.0,
        STORE_LAT=17.385044,
        STORE_LNG=78.486671,
        COD_ENABLED=True,
        MAX_FAILED_PAYMENT_ATTEMPTS=3,
        PAYMENT_WINDOW_MINUTES=30,
        RECONCILE_STALE_MINUTES=10,
        RECONCILE_BATCH_SIZE=50,
        CURRENCY="inr",
    )


@pytest.fixture
def catalog():
    catalog = InMemoryCatalog()
    catalog.add_variant(VariantSnapshot(
        product_id="rice", variant_id="rice-5kg", product_name="Basmati Rice",
        variant_label="5 kg", price=60000, selling_price=55000, stock=10,
    ))
    catalog.add_variant(VariantSnapshot(
        product_id="dal", variant_id="dal-1kg", product_name="Toor Dal",
        variant_label="1 kg", price=18000, selling_price=15000, stock=5,
    ))
    catalog.add_variant(VariantSnapshot(
        product_id="ghee", variant_id="ghee-500ml", product_name="Cow Ghee",
        variant_label="500 ml", price=40000, selling_price=38000, stock=0,
    ))
    catalog.add_variant(VariantSnapshot(
        product_id="salt", variant_id="salt-1kg", product_name="Rock Salt",
        variant_label="1 kg", price=3000, selling_price=2500, stock=100,
    ))
    return catalog


@pytest.fixture
def addresses():
    book = InMemoryAddressBook()
    book.add(USER_ID, AddressSnapshot(
        address_id=NEAR_ADDRESS_ID, label="Home", house_number="8-2-293",
        street="Road No. 12", colony="Banjara Hills", latitude=17.4126, longitude=78.4482,
    ))
    book.add(USER_ID, AddressSnapshot(
        address_id=FAR_ADDRESS_ID, label="Farm", latitude=18.0, longitude=79.6,
    ))
    return book


@pytest.fixture
def carts():
    return InMemoryCartStore()


@pytest.fixture
def orders():
    return InMemoryOrderRepository()


@pytest.fixture
def journal():
    return InMemoryReservationJournal()


@pytest.fixture
def ledger():
    return InMemoryPaymentAttemptLedger()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def audit():
    return InMemoryAuditLog()


@pytest.fixture
def cache(clock):
    return InMemoryCache(clock)


@pytest.fixture
def service(orders, journal, ledger, catalog, carts, addresses, gateway, notifier, audit, cache, config, clock):
    return OrderService(
        orders=orders,
        journal=journal,
        ledger=ledger,
        catalog=catalog,
        carts=carts,
        addresses=addresses,
        gateway=gateway,
        notifier=notifier,
        audit=audit,
        cache=cache,
        config=config,
        clock=clock,
    )


@pytest.fixture
def fill_cart(carts):
    """Put (product_id, variant_id, quantity) lines into the test user's cart."""
    def fill(*lines, user_id=USER_ID):
        for product_id, variant_id, quantity in lines:
            carts.add(user_id, CartItem(product_id=product_id, variant_id=variant_id, quantity=quantity))
    return fill


@pytest.fixture
def place_online_order(service, fill_cart):
    """Place a paid-online order for 2 x rice + 1 x dal and return the result."""
    async def place():
        fill_cart(("rice", "rice-5kg", 2), ("dal", "dal-1kg", 1))
        return await service.place_order(USER_ID, NEAR_ADDRESS_ID, PaymentMethod.ONLINE)
    return place


@pytest.fixture
def paid_order(service, place_online_order):
    """Place an online order and confirm it through the client path."""
    async def make():
        result = await place_online_order()
        intent_id = result.payment_intent.intent_id
        return await service.confirm_client_payment(
            result.order.order_id, intent_id, "ch_1", sign_payment(intent_id, "ch_1")
        )
    return make


@pytest.fixture
def make_order(clock):
    """Build a standalone Order in any status, for pure state-machine tests."""
    def make(
        status: OrderStatus = OrderStatus.PLACED,
        payment_method: PaymentMethod = PaymentMethod.ONLINE,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        **overrides,
    ) -> Order:
        item = LineItem(
            product_id="rice", variant_id="rice-5kg", product_name="Basmati Rice",
            variant_label="5 kg", unit_price=60000, selling_price=55000, quantity=1, subtotal=55000,
        )
        fields = dict(
            order_number="SH202610170001",
            user_id=USER_ID,
            items=[item],
            delivery_address=AddressSnapshot(address_id=NEAR_ADDRESS_ID, latitude=17.41, longitude=78.45),
            subtotal=55000,
            delivery_charge=0,
            total=compute_total(55000, 0, 0),
            payment_method=payment_method,
            payment_status=payment_status,
            status=status,
            status_history=[StatusHistoryEntry(status=status, timestamp=clock(), actor=Actor.system())],
            created_at=clock(),
            updated_at=clock(),
        )
        fields.update(overrides)
        return Order(**fields)
    return make
