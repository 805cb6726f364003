"""
Payment Reconciler
==================
Converges the two confirmation channels on one idempotent update:

- client confirmation: (intent_id, payment_id, HMAC signature) for one order
- gateway webhook: signed captured / failed / refund-processed events

Both end in ``_apply_capture``, a conditional write keyed on the stored
(status, payment_status) pair. Whichever path writes first performs the
PLACED -> CONFIRMED transition and notifies; the loser reloads, sees the
order already paid, and returns it unchanged. No lock is taken.

Every confirmation event is appended to the payment attempt ledger. Failed
attempts accumulate until MAX_FAILED_PAYMENT_ATTEMPTS, at which point the
order moves to PAYMENT_FAILED and its stock is released.
"""

import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import structlog

from errors import (
    ConflictError,
    InvalidSignatureError,
    NotFoundError,
    ValidationError,
)
from lifecycle.state_machine import OrderStateMachine, SideEffect
from lifecycle.stock import StockReservationManager
from payments.gateway import IPaymentGateway
from payments.webhooks import WebhookRouter
from schemas.orders import (
    Actor,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)
from schemas.payments import (
    AttemptSource,
    AttemptStatus,
    GatewayEvent,
    GatewayEventType,
    PaymentAttempt,
)
from services.notifications import INotifier, NotificationType, notify_safely
from settings import Settings, settings as default_settings
from storage.repositories import IOrderRepository, IPaymentAttemptLedger

# Orders that can no longer take a payment but may still receive a capture
CLOSED_FOR_PAYMENT = frozenset({OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED})


class PaymentReconciler:

    def __init__(
        self,
        orders: IOrderRepository,
        ledger: IPaymentAttemptLedger,
        gateway: IPaymentGateway,
        state_machine: OrderStateMachine,
        stock: StockReservationManager,
        notifier: INotifier,
        config: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orders = orders
        self.ledger = ledger
        self.gateway = gateway
        self.state_machine = state_machine
        self.stock = stock
        self.notifier = notifier
        self.config = config
        self._clock = clock

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(
            component="payment_reconciler",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def _load(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    # =========================================================================
    # CLIENT CONFIRMATION PATH
    # =========================================================================

    async def confirm_client_payment(
        self,
        order_id: str,
        intent_id: str,
        payment_id: str,
        signature: str,
        user_id: Optional[str] = None,
    ) -> Order:
        """
        Confirm a payment reported by the paying client.

        Raises:
            NotFoundError: unknown order, or an order owned by another user
            ConflictError: the order is not an online-payment order
            ValidationError: intent id does not match the one issued for the order
            InvalidSignatureError: signature check failed (recorded as a failed attempt)
            GatewayError: the provider could not be reached to verify the payment
        """
        log = self._get_logger().bind(order_id=order_id, source=AttemptSource.CLIENT.value)
        order = await self._load(order_id)
        if user_id is not None and order.user_id != user_id:
            raise NotFoundError("Order", order_id)
        if order.payment_method != PaymentMethod.ONLINE:
            raise ConflictError(f"Order {order.order_number} is not an online payment order")

        if order.is_paid:
            log.info("payment_already_confirmed", order_number=order.order_number)
            return order

        if not order.gateway.intent_id or order.gateway.intent_id != intent_id:
            log.warning("intent_mismatch", expected=order.gateway.intent_id, received=intent_id)
            raise ValidationError(
                "Payment does not belong to this order",
                details={"order_id": order_id, "intent_id": intent_id},
            )

        if not await self.gateway.verify_client_signature(intent_id, payment_id, signature):
            log.warning("client_signature_invalid", intent_id=intent_id, payment_id=payment_id)
            await self._record_failure(
                order,
                source=AttemptSource.CLIENT,
                intent_id=intent_id,
                payment_id=payment_id,
                error_code="invalid_signature",
                error_description="Client confirmation signature did not verify",
                correlation_id=None,
            )
            raise InvalidSignatureError("Payment signature verification failed")

        await self.ledger.append(PaymentAttempt(
            order_id=order.order_id,
            source=AttemptSource.CLIENT,
            status=AttemptStatus.SUCCESS,
            intent_id=intent_id,
            payment_id=payment_id,
            received_at=self._clock(),
        ))
        return await self._apply_capture(
            order,
            payment_id=payment_id,
            signature=signature,
            actor=Actor.user(order.user_id),
            source=AttemptSource.CLIENT,
        )

    # =========================================================================
    # WEBHOOK PATH
    # =========================================================================

    async def handle_webhook(self, raw_payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify, normalize and route one gateway webhook.

        Safe to re-invoke with the same payload: every handler converges on
        the same end state.

        Raises:
            InvalidSignatureError: payload signature did not verify (nothing is parsed)
            NotFoundError: the event names an intent or payment no order carries
            ConflictError: a refund completed before its initiation was stored
        """
        if not self.gateway.verify_webhook_signature(raw_payload, signature):
            self._get_logger().warning("webhook_rejected", reason="invalid_signature")
            raise InvalidSignatureError("Invalid webhook signature")

        event = self.gateway.parse_event(raw_payload)
        if event is None:
            return {"status": "ignored"}

        log = self._get_logger(event.event_id)
        log.info("webhook_received", event_type=event.type.value, raw_type=event.raw_type)

        order = await self.router.route(event, event.event_id)
        return {
            "status": "processed",
            "event_id": event.event_id,
            "order_id": order.order_id if order else None,
            "order_status": order.status.value if order else None,
        }

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register(GatewayEventType.CAPTURED)
        async def handle_captured(event: GatewayEvent, correlation_id: str):
            return await self._on_captured(event, correlation_id)

        @self.router.register(GatewayEventType.FAILED)
        async def handle_failed(event: GatewayEvent, correlation_id: str):
            return await self._on_failed(event, correlation_id)

        @self.router.register(GatewayEventType.REFUND_PROCESSED)
        async def handle_refund_processed(event: GatewayEvent, correlation_id: str):
            return await self._on_refund_processed(event, correlation_id)

    async def _order_for_intent(self, event: GatewayEvent) -> Order:
        order = await self.orders.get_by_intent_id(event.intent_id) if event.intent_id else None
        if order is None:
            self._get_logger(event.event_id).warning(
                "webhook_order_not_found", intent_id=event.intent_id, event_type=event.type.value
            )
            raise NotFoundError("Order for intent", event.intent_id)
        return order

    async def _on_captured(self, event: GatewayEvent, correlation_id: str) -> Order:
        order = await self._order_for_intent(event)
        recorded = await self.ledger.append(PaymentAttempt(
            order_id=order.order_id,
            source=AttemptSource.WEBHOOK,
            status=AttemptStatus.SUCCESS,
            gateway_event_id=event.event_id,
            intent_id=event.intent_id,
            payment_id=event.payment_id,
            received_at=self._clock(),
        ))
        if not recorded:
            self._get_logger(correlation_id).info("webhook_duplicate_received", order_id=order.order_id)
        # Applied even for a duplicate event: the write below is idempotent and
        # covers a previous delivery that was recorded but never applied.
        return await self._apply_capture(
            order,
            payment_id=event.payment_id,
            signature=None,
            actor=Actor.gateway(),
            source=AttemptSource.WEBHOOK,
            correlation_id=correlation_id,
        )

    async def _on_failed(self, event: GatewayEvent, correlation_id: str) -> Order:
        order = await self._order_for_intent(event)
        return await self._record_failure(
            order,
            source=AttemptSource.WEBHOOK,
            gateway_event_id=event.event_id,
            intent_id=event.intent_id,
            payment_id=event.payment_id,
            error_code=event.error_code,
            error_description=event.error_description,
            correlation_id=correlation_id,
        )

    async def _on_refund_processed(self, event: GatewayEvent, correlation_id: str) -> Order:
        log = self._get_logger(correlation_id)
        order = await self.orders.get_by_payment_id(event.payment_id) if event.payment_id else None
        if order is None:
            log.warning("refund_order_not_found", payment_id=event.payment_id)
            raise NotFoundError("Order for payment", event.payment_id)

        log = log.bind(order_id=order.order_id, order_number=order.order_number)
        if order.status == OrderStatus.REFUNDED:
            log.info("webhook_duplicate_ignored", event_type=event.type.value)
            return order
        if order.status == OrderStatus.CANCELLED:
            # Refund call has not been persisted yet; let the gateway redeliver
            log.warning("refund_processed_before_initiation", amount=event.amount)
            raise ConflictError(f"Refund for order {order.order_number} is still being initiated")
        if order.status != OrderStatus.REFUND_INITIATED:
            log.error("refund_processed_unexpected_state", status=order.status.value, amount=event.amount)
            return order

        gateway_refs = order.gateway
        if event.refund_id and not gateway_refs.refund_id:
            gateway_refs = gateway_refs.model_copy(update={"refund_id": event.refund_id})

        transition = self.state_machine.transition(
            order,
            OrderStatus.REFUNDED,
            Actor.gateway(),
            note="Refund processed by gateway",
            updates={"gateway": gateway_refs},
            refund_amount=event.amount or None,
        )
        stored = await self.orders.replace_if(transition.order, order.status, order.payment_status)
        if stored is None:
            log.info("refund_completion_lost_race")
            return await self._load(order.order_id)

        log.info("refund_completed", amount=stored.refund.amount, payment_status=stored.payment_status.value)
        await notify_safely(self.notifier, stored.user_id, NotificationType.REFUND_COMPLETED, {
            "order_id": stored.order_id,
            "order_number": stored.order_number,
            "amount": stored.refund.amount,
        })
        return stored

    # =========================================================================
    # SYNC PATH (lost confirmations)
    # =========================================================================

    async def sync_payment_status(self, order_id: str) -> Order:
        """Ask the gateway about the stored intent and converge on a capture it reports."""
        order = await self._load(order_id)
        if order.payment_method != PaymentMethod.ONLINE or not order.gateway.intent_id:
            return order
        if order.payment_status != PaymentStatus.PENDING:
            return order

        state = await self.gateway.retrieve_intent(order.gateway.intent_id)
        log = self._get_logger().bind(order_id=order_id, intent_id=state.intent_id)

        if state.captured and state.payment_id:
            log.info("capture_found_by_sync")
            await self.ledger.append(PaymentAttempt(
                order_id=order.order_id,
                source=AttemptSource.SYNC,
                status=AttemptStatus.SUCCESS,
                gateway_event_id=f"sync:{state.intent_id}:{state.payment_id}",
                intent_id=state.intent_id,
                payment_id=state.payment_id,
                received_at=self._clock(),
            ))
            return await self._apply_capture(
                order,
                payment_id=state.payment_id,
                signature=None,
                actor=Actor.system(),
                source=AttemptSource.SYNC,
            )

        log.debug("sync_no_capture", failed=state.failed)
        return order

    # =========================================================================
    # SHARED IDEMPOTENT UPDATES
    # =========================================================================

    async def _apply_capture(
        self,
        order: Order,
        payment_id: Optional[str],
        signature: Optional[str],
        actor: Actor,
        source: AttemptSource,
        correlation_id: Optional[str] = None,
    ) -> Order:
        """Conditional PLACED/PENDING -> CONFIRMED/PAID. A no-op on an already paid order."""
        log = self._get_logger(correlation_id).bind(
            order_id=order.order_id,
            order_number=order.order_number,
            source=source.value,
        )

        # The losing writer gets one more look at the fresh row
        for _ in range(2):
            if order.payment_status == PaymentStatus.PAID:
                log.info("webhook_duplicate_ignored" if source == AttemptSource.WEBHOOK
                         else "payment_already_confirmed")
                return order

            now = self._clock()
            gateway_refs = order.gateway.model_copy(update={
                "payment_id": payment_id,
                "signature": signature or order.gateway.signature,
            })

            if order.status == OrderStatus.PLACED and order.payment_status == PaymentStatus.PENDING:
                transition = self.state_machine.transition(
                    order,
                    OrderStatus.CONFIRMED,
                    actor,
                    note=f"Payment confirmed ({source.value})",
                    updates={
                        "payment_status": PaymentStatus.PAID,
                        "paid_at": now,
                        "gateway": gateway_refs,
                    },
                )
                stored = await self.orders.replace_if(transition.order, order.status, order.payment_status)
                if stored is not None:
                    log.info("payment_confirmed", payment_id=payment_id, total=stored.total)
                    await notify_safely(self.notifier, stored.user_id, NotificationType.PAYMENT_CONFIRMED, {
                        "order_id": stored.order_id,
                        "order_number": stored.order_number,
                        "total": stored.total,
                    })
                    return stored

            elif order.status in CLOSED_FOR_PAYMENT:
                updated = order.model_copy(update={
                    "payment_status": PaymentStatus.PAID,
                    "paid_at": now,
                    "gateway": gateway_refs,
                })
                stored = await self.orders.replace_if(updated, order.status, order.payment_status)
                if stored is not None:
                    # Money was taken for an order that will not ship
                    log.error(
                        "payment_captured_for_closed_order",
                        status=stored.status.value,
                        payment_id=payment_id,
                        total=stored.total,
                    )
                    return stored

            else:
                log.warning(
                    "capture_ignored",
                    status=order.status.value,
                    payment_status=order.payment_status.value,
                )
                return order

            log.info("payment_confirmation_lost_race")
            order = await self._load(order.order_id)

        return order

    async def _record_failure(
        self,
        order: Order,
        source: AttemptSource,
        correlation_id: Optional[str],
        gateway_event_id: Optional[str] = None,
        intent_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> Order:
        """Ledger a failed attempt; past the threshold move PLACED -> PAYMENT_FAILED."""
        log = self._get_logger(correlation_id).bind(
            order_id=order.order_id,
            order_number=order.order_number,
            source=source.value,
        )
        recorded = await self.ledger.append(PaymentAttempt(
            order_id=order.order_id,
            source=source,
            status=AttemptStatus.FAILED,
            gateway_event_id=gateway_event_id,
            intent_id=intent_id,
            payment_id=payment_id,
            error_code=error_code,
            error_description=error_description,
            received_at=self._clock(),
        ))
        if not recorded:
            log.info("webhook_duplicate_ignored", gateway_event_id=gateway_event_id)
            return order

        if order.status != OrderStatus.PLACED or order.payment_status != PaymentStatus.PENDING:
            log.info("payment_failure_ignored", status=order.status.value)
            return order

        failures = await self.ledger.count_failed(order.order_id)
        limit = self.config.MAX_FAILED_PAYMENT_ATTEMPTS
        log.warning("payment_attempt_failed", failures=failures, limit=limit, error_code=error_code)

        if failures < limit:
            await notify_safely(self.notifier, order.user_id, NotificationType.PAYMENT_FAILED, {
                "order_id": order.order_id,
                "order_number": order.order_number,
                "attempts_remaining": limit - failures,
            })
            return order

        transition = self.state_machine.transition(
            order,
            OrderStatus.PAYMENT_FAILED,
            Actor.system(),
            note=f"Payment failed after {failures} attempts",
            payment_flow=True,
        )
        stored = await self.orders.replace_if(transition.order, order.status, order.payment_status)
        if stored is None:
            log.info("payment_failure_lost_race")
            return await self._load(order.order_id)

        if transition.requires(SideEffect.RELEASE_STOCK):
            await self.stock.release(stored)
            stored = await self._load(order.order_id)

        log.warning("payment_failed", failures=failures)
        await notify_safely(self.notifier, stored.user_id, NotificationType.PAYMENT_FAILED, {
            "order_id": stored.order_id,
            "order_number": stored.order_number,
            "attempts_remaining": 0,
        })
        return stored
