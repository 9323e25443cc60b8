# schemas/__init__.py
from .gateway import GatewayOutcome, GatewayResult
from .payment_checkout import CheckoutResponse
from .payment import (
     VerifyPaymentResponse,
     SessionVerifyResponse,
     WebhookAck,
     MonthAllocationResponse,
     ApplyDepositResponse,
)

__all__ = [
     "GatewayOutcome",
     "GatewayResult",
     "CheckoutResponse",
     "VerifyPaymentResponse",
     "SessionVerifyResponse",
     "WebhookAck",
     "MonthAllocationResponse",
     "ApplyDepositResponse",
]
