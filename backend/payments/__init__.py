# payments/__init__.py
# ============================================================================
# ORDER ENGINE — PAYMENTS MODULE
# ============================================================================
# Gateway contract, Stripe adapter and webhook routing
# ============================================================================

from payments.gateway import IPaymentGateway
from payments.stripe_gateway import StripeGateway
from payments.webhooks import WebhookRouter

__all__ = [
    "IPaymentGateway",
    "StripeGateway",
    "WebhookRouter",
]
