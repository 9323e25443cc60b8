# services/__init__.py
from .errors import (
     PaymentError,
     NotFoundError,
     InvariantViolationError,
     GatewayError,
     ConfigurationError,
     WebhookRejectedError,
)
from .deposit_allocator import allocate_deposit, DepositAllocation, MonthAllocation, Provenance
from .finalize_payment import finalize_payment_by_tx_ref, apply_deposit_payment_to_months
from .gateway_service import ChapaGateway, StripeGateway, default_gateways
from .verify_payment import verify_and_finalize_payment, VerificationResult
from .finalize_subscription import (
     finalize_subscription_payment,
     sync_subscription_status,
     SubscriptionFinalizeResult,
)
from .plan_change_service import record_plan_change_payment
from .proration import calculate_proration, calculate_new_subscription_dates, ProrationResult
from .webhook_security import (
     WebhookRateLimiter,
     RateLimitDecision,
     ValidationResult,
     client_identifier,
     validate_request_size,
     validate_content_type,
)

__all__ = [
     "PaymentError",
     "NotFoundError",
     "InvariantViolationError",
     "GatewayError",
     "ConfigurationError",
     "WebhookRejectedError",
     "allocate_deposit",
     "DepositAllocation",
     "MonthAllocation",
     "Provenance",
     "finalize_payment_by_tx_ref",
     "apply_deposit_payment_to_months",
     "ChapaGateway",
     "StripeGateway",
     "default_gateways",
     "verify_and_finalize_payment",
     "VerificationResult",
     "finalize_subscription_payment",
     "sync_subscription_status",
     "SubscriptionFinalizeResult",
     "record_plan_change_payment",
     "calculate_proration",
     "calculate_new_subscription_dates",
     "ProrationResult",
     "WebhookRateLimiter",
     "RateLimitDecision",
     "ValidationResult",
     "client_identifier",
     "validate_request_size",
     "validate_content_type",
]
