"""
Order Service
=============
Checkout orchestration and the order operations exposed to the outside:

    place_order            cart -> reserved stock -> PLACED order (+ payment intent)
    confirm_client_payment client callback after paying
    handle_gateway_webhook signed server-to-server gateway event
    cancel_order           user / operator cancellation (releases stock, refunds)
    initiate_refund        operator refund of a cancelled, paid order
    transition_status      operator-driven fulfilment progression
    retry_payment          fresh intent for an unpaid order
    sync_payment_status    pull the intent state from the gateway

Example:
    service = OrderService(orders=..., journal=..., ...)
    result = await service.place_order(user_id, address_id, PaymentMethod.ONLINE)
    # client pays with result.payment_intent.client_secret
    await service.confirm_client_payment(result.order.order_id, intent_id, payment_id, signature)
"""

import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog

from errors import (
    ConflictError,
    DuplicateOrderNumberError,
    GatewayError,
    NotFoundError,
    ValidationError,
)
from lifecycle.cart_validator import CartSnapshotValidator
from lifecycle.order_numbers import OrderNumberGenerator
from lifecycle.reconciler import PaymentReconciler
from lifecycle.refunds import RefundCoordinator
from lifecycle.state_machine import OrderStateMachine, SideEffect
from lifecycle.stock import StockReservationManager
from payments.gateway import IPaymentGateway
from schemas.orders import (
    Actor,
    ActorKind,
    GatewayRefs,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    StatusHistoryEntry,
    StockLine,
    compute_total,
    utcnow,
)
from schemas.payments import PaymentAttempt, PlaceOrderResult
from services.audit import AuditAction, IAuditLog, record_safely
from services.cache import ICache
from services.catalog import ICatalog
from services.customers import IAddressBook, ICartStore
from services.delivery import DeliveryPolicy
from services.notifications import INotifier, NotificationType, notify_safely
from settings import Settings, settings as default_settings
from storage.repositories import (
    IOrderRepository,
    IPaymentAttemptLedger,
    IReservationJournal,
)

# Statuses a customer may still cancel from
USER_CANCELLABLE = frozenset({OrderStatus.PLACED, OrderStatus.CONFIRMED})

# Order numbers tried per checkout before a collision is surfaced
ORDER_NUMBER_ATTEMPTS = 3


class OrderService:

    def __init__(
        self,
        *,
        orders: IOrderRepository,
        journal: IReservationJournal,
        ledger: IPaymentAttemptLedger,
        catalog: ICatalog,
        carts: ICartStore,
        addresses: IAddressBook,
        gateway: IPaymentGateway,
        notifier: INotifier,
        audit: IAuditLog,
        cache: ICache,
        config: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orders = orders
        self.ledger = ledger
        self.carts = carts
        self.addresses = addresses
        self.gateway = gateway
        self.notifier = notifier
        self.audit = audit
        self.config = config
        self._clock = clock

        self.delivery = DeliveryPolicy(config)
        self.validator = CartSnapshotValidator(catalog, self.delivery)
        self.numbers = OrderNumberGenerator(cache, orders, config, clock)
        self.stock = StockReservationManager(catalog, journal, orders, clock)
        self.state_machine = OrderStateMachine(clock)
        self.refunds = RefundCoordinator(orders, gateway, self.state_machine, notifier, audit, clock)
        self.reconciler = PaymentReconciler(
            orders, ledger, gateway, self.state_machine, self.stock, notifier, config, clock
        )

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="order_service",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def get_order(self, order_id: str, user_id: Optional[str] = None) -> Order:
        """Load an order; with ``user_id`` another user's order is reported as missing."""
        order = await self.orders.get(order_id)
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFoundError("Order", order_id)
        return order

    async def get_payment_attempts(self, order_id: str) -> List[PaymentAttempt]:
        return await self.ledger.list_for_order(order_id)

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def place_order(
        self,
        user_id: str,
        address_id: str,
        payment_method: PaymentMethod,
        notes: Optional[str] = None,
        discount: int = 0,
    ) -> PlaceOrderResult:
        """
        Turn the user's cart into a PLACED order.

        Stock is reserved before the order is written and released again if
        anything after the reservation fails. Online orders come back with a
        payment intent for the order total.

        Raises:
            NotFoundError: address does not exist for this user
            ValidationError: outside the delivery area, COD disabled, empty or
                invalid cart, below minimum order value, insufficient stock,
                discount larger than the order amount
            GatewayError: the payment intent could not be created (order cancelled)
            DuplicateOrderNumberError: every order number tried was already taken
        """
        log = self._get_logger().bind(user_id=user_id)

        address = await self.addresses.get_address(user_id, address_id)
        if address is None:
            raise NotFoundError("Address", address_id)

        area = self.delivery.is_within_service_area(address.latitude, address.longitude)
        if not area.deliverable:
            raise ValidationError(
                f"Sorry, we only deliver within {area.max_radius_km:g} km. "
                f"This address is {area.distance_km:g} km away",
                details={"max_radius_km": area.max_radius_km, "distance_km": area.distance_km},
            )

        if payment_method == PaymentMethod.COD and not self.config.COD_ENABLED:
            raise ValidationError("Cash on delivery is not available")

        items = await self.carts.get_items(user_id)
        validation = await self.validator.validate_or_raise(items)

        subtotal = validation.subtotal
        delivery_charge = self.delivery.calculate_delivery_charge(subtotal)
        if discount < 0 or discount > subtotal + delivery_charge:
            raise ValidationError(
                f"Discount of {discount} cannot exceed the order amount of {subtotal + delivery_charge}",
                details={"discount": discount, "subtotal": subtotal, "delivery_charge": delivery_charge},
            )
        total = compute_total(subtotal, discount, delivery_charge)
        line_items = self.validator.to_line_items(validation)

        order_id = str(uuid.uuid4())
        log = log.bind(order_id=order_id)
        stock_lines = [
            StockLine(product_id=i.product_id, variant_id=i.variant_id, quantity=i.quantity)
            for i in line_items
        ]
        reservation = await self.stock.reserve(order_id, stock_lines)

        def build(order_number: str) -> Order:
            now = self._clock()
            return Order(
                order_id=order_id,
                order_number=order_number,
                user_id=user_id,
                items=line_items,
                delivery_address=address,
                subtotal=subtotal,
                delivery_charge=delivery_charge,
                discount=discount,
                total=total,
                currency=self.config.CURRENCY,
                payment_method=payment_method,
                status_history=[StatusHistoryEntry(
                    status=OrderStatus.PLACED,
                    timestamp=now,
                    actor=Actor.user(user_id),
                    note="Order placed",
                )],
                notes=notes,
                payment_expires_at=(
                    now + timedelta(minutes=self.config.PAYMENT_WINDOW_MINUTES)
                    if payment_method == PaymentMethod.ONLINE else None
                ),
                created_at=now,
                updated_at=now,
            )

        try:
            order = await self._insert_numbered(build, log)
        except BaseException:
            await self.stock.rollback(reservation)
            raise

        log = log.bind(order_number=order.order_number)
        if not await self.stock.commit(order_id):
            # The reservation was rolled back under us: its stock is already back on the shelf
            await self.orders.claim_stock_release(order_id)
            await self._cancel(await self.get_order(order_id), Actor.system(), "Stock reservation expired", log)
            raise ConflictError("Checkout took too long and the reserved stock was released. Please retry")

        log.info("order_placed", total=total, payment_method=payment_method.value, items=len(line_items))

        payment_intent = None
        if payment_method == PaymentMethod.ONLINE:
            try:
                payment_intent = await self.gateway.create_intent(
                    total,
                    order.currency,
                    order.order_number,
                    metadata={
                        "order_id": order.order_id,
                        "order_number": order.order_number,
                        "user_id": user_id,
                    },
                )
            except GatewayError as e:
                log.error("payment_intent_failed", error=str(e))
                await self._cancel(order, Actor.system(), "Payment initiation failed", log)
                raise

            updated = order.model_copy(update={"gateway": GatewayRefs(intent_id=payment_intent.intent_id)})
            stored = await self.orders.replace_if(updated, OrderStatus.PLACED, PaymentStatus.PENDING)
            order = stored or await self.get_order(order_id)

        await self._clear_cart(user_id, log)
        await notify_safely(self.notifier, user_id, NotificationType.ORDER_PLACED, {
            "order_id": order.order_id,
            "order_number": order.order_number,
            "total": order.total,
        })
        return PlaceOrderResult(order=order, payment_intent=payment_intent)

    async def _insert_numbered(self, build: Callable[[str], Order], log) -> Order:
        """Insert under a fresh order number, rebuilding the counter after each collision."""
        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            order = build(await self.numbers.next_number())
            try:
                return await self.orders.insert(order)
            except DuplicateOrderNumberError as e:
                await self.numbers.invalidate()
                if attempt == ORDER_NUMBER_ATTEMPTS:
                    log.critical("order_number_collision", order_number=e.order_number, attempts=attempt)
                    raise
                log.warning("order_number_collision_retry", order_number=e.order_number, attempt=attempt)

    async def _clear_cart(self, user_id: str, log) -> None:
        try:
            await self.carts.clear(user_id)
        except Exception as e:
            log.warning("cart_clear_failed", error=str(e))

    # =========================================================================
    # PAYMENT
    # =========================================================================

    async def confirm_client_payment(
        self,
        order_id: str,
        intent_id: str,
        payment_id: str,
        signature: str,
        user_id: Optional[str] = None,
    ) -> Order:
        return await self.reconciler.confirm_client_payment(
            order_id, intent_id, payment_id, signature, user_id=user_id
        )

    async def handle_gateway_webhook(self, raw_payload: bytes, signature: str) -> dict:
        return await self.reconciler.handle_webhook(raw_payload, signature)

    async def sync_payment_status(self, order_id: str) -> Order:
        return await self.reconciler.sync_payment_status(order_id)

    async def retry_payment(self, order_id: str, user_id: str) -> PlaceOrderResult:
        """
        Issue a fresh payment intent for an unpaid online order.

        The current intent is checked with the gateway first, so a payment
        that did go through is confirmed instead of being charged twice.
        """
        order = await self.get_order(order_id, user_id)
        if order.payment_method != PaymentMethod.ONLINE:
            raise ConflictError(f"Order {order.order_number} is not an online payment order")
        if order.gateway.intent_id:
            order = await self.reconciler.sync_payment_status(order_id)
        if order.is_paid:
            raise ConflictError(f"Order {order.order_number} is already paid")
        if order.status != OrderStatus.PLACED:
            raise ConflictError(f"Payment cannot be retried for an order that is {order.status.value}")

        intent = await self.gateway.create_intent(
            order.total,
            order.currency,
            order.order_number,
            metadata={
                "order_id": order.order_id,
                "order_number": order.order_number,
                "user_id": order.user_id,
            },
        )
        updated = order.model_copy(update={
            "gateway": order.gateway.model_copy(update={"intent_id": intent.intent_id}),
            "payment_expires_at": self._clock() + timedelta(minutes=self.config.PAYMENT_WINDOW_MINUTES),
        })
        stored = await self.orders.replace_if(updated, order.status, order.payment_status)
        if stored is None:
            raise ConflictError(f"Order {order.order_number} changed while retrying payment")

        self._get_logger().info("payment_retry_created", order_id=order_id, intent_id=intent.intent_id)
        return PlaceOrderResult(order=stored, payment_intent=intent)

    # =========================================================================
    # CANCELLATION & REFUNDS
    # =========================================================================

    async def cancel_order(self, order_id: str, actor: Actor, reason: str) -> Order:
        """
        Cancel an order, return its stock and refund a captured payment.

        Customers may cancel only their own orders, and only before packing.
        Re-invoking on an already cancelled order finishes any step that did
        not complete (stock release, refund) and returns it.

        Raises:
            NotFoundError: unknown order, or another user's order
            ConflictError / InvalidTransitionError: status does not allow cancelling
            GatewayError: the refund could not be started; the order stays CANCELLED
        """
        log = self._get_logger().bind(order_id=order_id, actor=str(actor))
        order = await self.get_order(order_id, actor.id if actor.kind == ActorKind.USER else None)

        if order.status == OrderStatus.CANCELLED:
            log.info("cancel_retried")
            if order.stock_reserved:
                await self.stock.release(order)
            return await self._refund_if_paid(await self.get_order(order_id), actor, reason, log)

        if actor.kind == ActorKind.USER and order.status not in USER_CANCELLABLE:
            raise ConflictError(f"Order cannot be cancelled once it is {order.status.value}")

        return await self._cancel(order, actor, reason, log)

    async def _cancel(self, order: Order, actor: Actor, reason: str, log) -> Order:
        transition = self.state_machine.transition(order, OrderStatus.CANCELLED, actor, note=reason)
        stored = await self.orders.replace_if(transition.order, order.status, order.payment_status)
        if stored is None:
            raise ConflictError(f"Order {order.order_number} changed concurrently, please retry")

        if transition.requires(SideEffect.RELEASE_STOCK):
            await self.stock.release(stored)

        log.info("order_cancelled", order_number=order.order_number, previous=order.status.value)
        await record_safely(
            self.audit, actor, AuditAction.ORDER_CANCEL, order.order_id,
            before={"status": order.status.value, "payment_status": order.payment_status.value},
            after={"status": OrderStatus.CANCELLED.value, "reason": reason},
        )
        await notify_safely(self.notifier, order.user_id, NotificationType.ORDER_CANCELLED, {
            "order_id": order.order_id,
            "order_number": order.order_number,
            "reason": reason,
        })
        return await self._refund_if_paid(await self.get_order(order.order_id), actor, reason, log)

    async def _refund_if_paid(self, order: Order, actor: Actor, reason: str, log) -> Order:
        if order.payment_status != PaymentStatus.PAID or not order.gateway.payment_id:
            return order
        try:
            return await self.refunds.initiate(order, None, f"Order cancelled: {reason}", actor)
        except GatewayError:
            log.error("cancel_refund_failed", order_number=order.order_number)
            raise

    async def initiate_refund(
        self,
        order_id: str,
        amount: Optional[int],
        reason: Optional[str],
        actor: Actor,
    ) -> Order:
        order = await self.get_order(order_id)
        return await self.refunds.initiate(order, amount, reason, actor)

    # =========================================================================
    # FULFILMENT
    # =========================================================================

    async def transition_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        actor: Actor,
        note: Optional[str] = None,
    ) -> Order:
        """
        Operator-driven status change.

        CANCELLED and REFUND_INITIATED are routed through their workflows;
        REFUNDED is only ever set by the gateway's refund webhook.
        """
        if new_status == OrderStatus.CANCELLED:
            return await self.cancel_order(order_id, actor, note or "Cancelled by staff")
        if new_status == OrderStatus.REFUND_INITIATED:
            return await self.initiate_refund(order_id, None, note, actor)

        order = await self.get_order(order_id)
        if new_status == OrderStatus.REFUNDED:
            raise ConflictError("Refunds are completed by the payment gateway, not by hand")
        if (
            new_status == OrderStatus.CONFIRMED
            and order.payment_method == PaymentMethod.ONLINE
            and not order.is_paid
        ):
            raise ConflictError(f"Order {order.order_number} is confirmed by its payment")

        transition = self.state_machine.transition(order, new_status, actor, note=note)
        stored = await self.orders.replace_if(transition.order, order.status, order.payment_status)
        if stored is None:
            raise ConflictError(f"Order {order.order_number} changed concurrently, please retry")

        self._get_logger().info(
            "order_status_changed",
            order_id=order_id,
            previous=order.status.value,
            status=new_status.value,
            actor=str(actor),
        )
        await record_safely(
            self.audit, actor, AuditAction.ORDER_STATUS_UPDATE, order_id,
            before={"status": order.status.value, "payment_status": order.payment_status.value},
            after={"status": stored.status.value, "payment_status": stored.payment_status.value},
        )
        await notify_safely(self.notifier, stored.user_id, NotificationType.STATUS_CHANGED, {
            "order_id": stored.order_id,
            "order_number": stored.order_number,
            "status": stored.status.value,
        })
        return stored
