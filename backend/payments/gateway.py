"""
Payment Gateway Contract
========================
The engine talks to the payment provider only through ``IPaymentGateway``.
It never trusts client-supplied amounts or statuses: only verified identifiers
reach the reconciler, which re-derives state from its own records.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from schemas.payments import GatewayEvent, IntentState, PaymentIntent, RefundReceipt


class IPaymentGateway(ABC):
    """External payment provider interface"""

    @abstractmethod
    async def create_intent(
        self,
        amount: int,
        currency: str,
        reference: str,
        metadata: Dict[str, str],
    ) -> PaymentIntent:
        pass

    @abstractmethod
    async def verify_client_signature(self, intent_id: str, payment_id: str, signature: str) -> bool:
        """
        True when the client-reported (intent, payment) pair is genuine. How
        ``signature`` is checked is provider specific; it may call the provider.
        """
        pass

    @abstractmethod
    def verify_webhook_signature(self, raw_payload: bytes, signature: str) -> bool:
        pass

    @abstractmethod
    def parse_event(self, raw_payload: bytes) -> Optional[GatewayEvent]:
        """Normalize a verified payload. None for event types the engine ignores."""
        pass

    @abstractmethod
    async def initiate_refund(
        self,
        payment_id: str,
        amount: int,
        metadata: Dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> RefundReceipt:
        pass

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> IntentState:
        pass

