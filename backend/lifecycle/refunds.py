"""
Refund Coordinator
==================
Starts a refund with the gateway and records it on the order. Completion
(REFUNDED) only ever comes from the gateway's refund-processed webhook.
"""

from datetime import datetime
from typing import Callable, Optional

import structlog

from errors import ConflictError, GatewayError, InvalidTransitionError, ValidationError
from lifecycle.state_machine import OrderStateMachine
from payments.gateway import IPaymentGateway
from schemas.orders import Actor, Order, OrderStatus, PaymentStatus, utcnow
from services.audit import AuditAction, IAuditLog, record_safely
from services.notifications import INotifier, NotificationType, notify_safely
from storage.repositories import IOrderRepository

logger = structlog.get_logger().bind(component="refunds")

REFUND_STARTED = frozenset({
    PaymentStatus.REFUND_INITIATED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
})


class RefundCoordinator:

    def __init__(
        self,
        orders: IOrderRepository,
        gateway: IPaymentGateway,
        state_machine: OrderStateMachine,
        notifier: INotifier,
        audit: IAuditLog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orders = orders
        self.gateway = gateway
        self.state_machine = state_machine
        self.notifier = notifier
        self.audit = audit
        self._clock = clock

    async def initiate(
        self,
        order: Order,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> Order:
        """
        Refund a captured payment on a cancelled order.

        Args:
            order: Order to refund (must be CANCELLED with a captured payment)
            amount: Minor units to refund; defaults to the order total
            reason: Recorded on the order and sent to the gateway
            actor: Who asked for the refund

        Raises:
            ConflictError: no captured payment, or a refund already started
            InvalidTransitionError: order status does not allow REFUND_INITIATED
            ValidationError: amount is not within (0, total]
            GatewayError: the gateway refused or timed out; the order is unchanged
        """
        actor = actor or Actor.system()
        log = logger.bind(order_id=order.order_id, order_number=order.order_number)

        if order.payment_status in REFUND_STARTED:
            raise ConflictError(
                f"Refund already {order.payment_status.value} for order {order.order_number}"
            )
        if order.payment_status != PaymentStatus.PAID or not order.gateway.payment_id:
            raise ConflictError(f"Order {order.order_number} has no captured payment to refund")
        if not self.state_machine.can_transition(order.status, OrderStatus.REFUND_INITIATED):
            raise InvalidTransitionError(order.status.value, OrderStatus.REFUND_INITIATED.value)

        amount = order.total if amount is None else amount
        if amount <= 0 or amount > order.total:
            raise ValidationError(
                f"Refund amount must be between 1 and {order.total}",
                details={"amount": amount, "total": order.total},
            )

        try:
            receipt = await self.gateway.initiate_refund(
                order.gateway.payment_id,
                amount,
                metadata={
                    "order_id": order.order_id,
                    "order_number": order.order_number,
                    "reason": reason or "",
                },
                idempotency_key=f"refund:{order.order_id}:{amount}",
            )
        except GatewayError as e:
            log.error("refund_initiation_failed", amount=amount, error=str(e), retryable=e.retryable)
            raise

        transition = self.state_machine.transition(
            order,
            OrderStatus.REFUND_INITIATED,
            actor,
            note=reason,
            refund_amount=amount,
            updates={"gateway": order.gateway.model_copy(update={"refund_id": receipt.refund_id})},
        )
        stored = await self.orders.replace_if(transition.order, order.status, order.payment_status)
        if stored is None:
            current = await self.orders.get(order.order_id)
            log.error("refund_state_conflict", refund_id=receipt.refund_id,
                      status=current.status.value if current else None)
            raise ConflictError(
                f"Order {order.order_number} changed while its refund was being initiated"
            )

        log.info("refund_initiated", refund_id=receipt.refund_id, amount=amount)
        await record_safely(
            self.audit, actor, AuditAction.ORDER_REFUND_INITIATE, order.order_id,
            before={"status": order.status.value, "payment_status": order.payment_status.value},
            after={"status": stored.status.value, "payment_status": stored.payment_status.value,
                   "refund_amount": amount, "refund_id": receipt.refund_id},
        )
        await notify_safely(self.notifier, stored.user_id, NotificationType.REFUND_INITIATED, {
            "order_id": stored.order_id,
            "order_number": stored.order_number,
            "amount": amount,
        })
        return stored
