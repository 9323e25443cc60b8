# services/verify_payment.py
"""
Client-triggered verification: ask the gateway directly and finalize.

Covers missed webhooks. Pending gateway answers change nothing; definitive
answers go through the Finalization Engine, so this can be polled freely.
"""
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from models import CheckoutStatus, PaymentSource
from schemas.gateway import GatewayOutcome
from services.errors import ConfigurationError, PaymentError
from services.finalize_payment import finalize_payment_by_tx_ref, get_checkout

logger = logging.getLogger(__name__)

STRIPE_SESSION_NOT_FOUND = (
     "Stripe session not found. The session may not exist yet or the payment was not completed."
)


@dataclass
class VerificationResult:
     verified: bool
     pending: bool = False
     failed: bool = False
     finalized: bool = False
     already_processed: bool = False
     error: Optional[str] = None


def _gateway_for(gateways: Mapping[PaymentSource, Any], provider: PaymentSource):
     gateway = gateways.get(provider)
     if gateway is None:
          raise ConfigurationError(f"No gateway configured for {provider.value}", {"provider": provider.value})
     return gateway


def _ask_gateway(checkout, gateways: Mapping[PaymentSource, Any]):
     """GatewayResult for the checkout, or None when Stripe has no session for it."""
     if checkout.provider == PaymentSource.CHAPA:
          gateway_result = _gateway_for(gateways, PaymentSource.CHAPA).verify(checkout.tx_ref)
          if gateway_result.outcome == GatewayOutcome.SUCCESS and not gateway_result.currency:
               gateway_result = gateway_result.model_copy(update={"currency": checkout.currency})
          return gateway_result
     if checkout.provider == PaymentSource.STRIPE:
          return _gateway_for(gateways, PaymentSource.STRIPE).verify(checkout)
     raise ConfigurationError(f"Unknown provider: {checkout.provider.value}", {"tx_ref": checkout.tx_ref})


def verify_and_finalize_payment(
     db: Session,
     tx_ref: str,
     gateways: Mapping[PaymentSource, Any],
) -> VerificationResult:
     """
     Verify ``tx_ref`` with its gateway and finalize definitive outcomes.

     Raises:
          NotFoundError: No checkout with this txRef
          ConfigurationError: Provider has no configured gateway/credentials
          GatewayError: Gateway call failed (propagated unchanged)
     """
     checkout = get_checkout(db, tx_ref)
     if checkout.status == CheckoutStatus.COMPLETED or checkout.payment_id:
          logger.debug(f"[VerifyPayment] {tx_ref} already processed")
          return VerificationResult(verified=True, already_processed=True)

     logger.debug(f"[VerifyPayment] Verifying {tx_ref} with {checkout.provider.value}")

     try:
          gateway_result = _ask_gateway(checkout, gateways)
          if gateway_result is None:
               logger.info(f"[VerifyPayment] No Stripe session found for {tx_ref}")
               return VerificationResult(verified=False, error=STRIPE_SESSION_NOT_FOUND)

          if gateway_result.outcome == GatewayOutcome.PENDING:
               logger.debug(f"[VerifyPayment] {tx_ref} still pending ({gateway_result.provider_status})")
               return VerificationResult(verified=True, pending=True)

          finalize_payment_by_tx_ref(db, tx_ref, gateway_result)
     except PaymentError as e:
          logger.error(
               f"[VerifyPayment] Error verifying payment {tx_ref} ({checkout.provider.value}): {e}",
               exc_info=True,
          )
          raise

     failed = gateway_result.outcome == GatewayOutcome.FAILED
     logger.info(f"[VerifyPayment] {tx_ref} finalized as {gateway_result.outcome.value}")
     return VerificationResult(verified=True, finalized=True, failed=failed)
