"""
Stripe Payment Gateway
======================
``IPaymentGateway`` on top of the Stripe SDK.

- Blocking SDK calls run in a worker thread under a bounded timeout
- SDK exceptions are translated into GatewayError / GatewayTimeoutError
- Webhook payloads are verified with Stripe's signing scheme before parsing
- Client confirmations are checked against the intent as Stripe reports it

The "payment id" recorded on an order is the Stripe charge id; refunds are
issued against it and ``charge.refunded`` events are resolved by it.

pip install stripe structlog
"""

import asyncio
import hmac
import json
from typing import Any, Dict, Optional

import stripe
import structlog

from errors import GatewayError, GatewayTimeoutError
from payments.gateway import IPaymentGateway
from schemas.payments import (
    GatewayEvent,
    GatewayEventType,
    IntentState,
    PaymentIntent,
    RefundReceipt,
)
from settings import Settings, settings as default_settings

logger = structlog.get_logger().bind(component="stripe_gateway")


EVENT_TYPES = {
    "payment_intent.succeeded": GatewayEventType.CAPTURED,
    "payment_intent.payment_failed": GatewayEventType.FAILED,
    "charge.refunded": GatewayEventType.REFUND_PROCESSED,
}

RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


class StripeGateway(IPaymentGateway):

    def __init__(self, config: Settings = default_settings, stripe_client=stripe):
        self.config = config
        self._stripe = stripe_client
        self._stripe.api_key = config.STRIPE_SECRET_KEY

    async def _call(self, operation: str, fn, *args, **kwargs):
        timeout = self.config.GATEWAY_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout)
        except asyncio.TimeoutError:
            logger.error("gateway_timeout", operation=operation, timeout=timeout)
            raise GatewayTimeoutError(operation, timeout)
        except stripe.StripeError as e:
            retryable = isinstance(e, RETRYABLE_ERRORS) or (e.http_status or 0) >= 500
            logger.error(
                "gateway_call_failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                retryable=retryable,
            )
            raise GatewayError(f"Stripe {operation} failed: {e.user_message or e}", retryable=retryable)

    async def create_intent(self, amount, currency, reference, metadata) -> PaymentIntent:
        intent = await self._call(
            "create_intent",
            self._stripe.PaymentIntent.create,
            amount=amount,
            currency=currency,
            description=reference,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
        )
        logger.info("intent_created", intent_id=intent.id, amount=amount, reference=reference)
        return PaymentIntent(
            intent_id=intent.id,
            amount=intent.amount,
            currency=intent.currency,
            client_secret=intent.client_secret,
        )

    async def verify_client_signature(self, intent_id, payment_id, signature) -> bool:
        """
        Stripe does not sign client-side results. The client echoes back the
        intent's ``client_secret`` as the signature, and the intent read from
        Stripe must have succeeded on the reported charge.
        """
        if not (intent_id and payment_id and signature):
            return False
        intent = await self._call("verify_client_signature", self._stripe.PaymentIntent.retrieve, intent_id)
        if not hmac.compare_digest(intent.client_secret or "", signature):
            logger.warning("client_secret_mismatch", intent_id=intent_id)
            return False
        if intent.status != "succeeded" or intent.latest_charge != payment_id:
            logger.warning(
                "client_confirmation_unverified",
                intent_id=intent_id,
                status=intent.status,
                payment_id=payment_id,
            )
            return False
        return True

    def verify_webhook_signature(self, raw_payload: bytes, signature: str) -> bool:
        if not signature:
            return False
        try:
            payload = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload
            self._stripe.WebhookSignature.verify_header(
                payload, signature, self.config.STRIPE_WEBHOOK_SECRET
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            return False
        return True

    def parse_event(self, raw_payload: bytes) -> Optional[GatewayEvent]:
        event = json.loads(raw_payload)
        raw_type = event.get("type", "unknown")
        event_type = EVENT_TYPES.get(raw_type)
        if event_type is None:
            return None

        obj = event.get("data", {}).get("object", {})
        if event_type == GatewayEventType.REFUND_PROCESSED:
            refunds = (obj.get("refunds") or {}).get("data") or []
            return GatewayEvent(
                event_id=event["id"],
                type=event_type,
                raw_type=raw_type,
                intent_id=obj.get("payment_intent"),
                payment_id=obj.get("id"),
                refund_id=refunds[0]["id"] if refunds else None,
                amount=obj.get("amount_refunded", 0),
            )

        error = obj.get("last_payment_error") or {}
        return GatewayEvent(
            event_id=event["id"],
            type=event_type,
            raw_type=raw_type,
            intent_id=obj.get("id"),
            payment_id=obj.get("latest_charge"),
            amount=obj.get("amount_received") or obj.get("amount", 0),
            error_code=error.get("code"),
            error_description=error.get("message"),
        )

    async def initiate_refund(self, payment_id, amount, metadata, idempotency_key=None) -> RefundReceipt:
        params = {
            "charge": payment_id,
            "amount": amount,
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        refund = await self._call("initiate_refund", self._stripe.Refund.create, **params)
        logger.info("refund_created", refund_id=refund.id, payment_id=payment_id, amount=amount)
        return RefundReceipt(refund_id=refund.id, amount=refund.amount, status=refund.status)

    async def retrieve_intent(self, intent_id: str) -> IntentState:
        intent = await self._call("retrieve_intent", self._stripe.PaymentIntent.retrieve, intent_id)
        return IntentState(
            intent_id=intent.id,
            captured=intent.status == "succeeded",
            failed=intent.status == "canceled" or (
                intent.status == "requires_payment_method" and intent.last_payment_error is not None
            ),
            payment_id=intent.latest_charge,
            amount=intent.amount_received or 0,
        )
