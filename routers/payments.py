# routers/payments.py
"""
Payment API routes.

- POST /api/payments/{tx_ref}/verify: client-side verification poll
- POST /api/payments/webhooks/chapa: Chapa payment callback
- POST /api/payments/webhooks/stripe: Stripe events (checkout, invoices, subscriptions)
- POST /api/payments/stripe/sessions/{session_id}/verify: return-page subscription check
- POST /api/payments/{payment_id}/apply-deposit: apply an approved manual deposit

Webhook handlers answer non-2xx when finalization fails so the gateway retries;
every finalize entry point is idempotent.
"""
import logging
from typing import Any, Dict, Optional

import stripe
from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from database import get_session
from models import PaymentSource
from schemas.gateway import GatewayOutcome, GatewayResult
from schemas.payment import (
     ApplyDepositResponse,
     MonthAllocationResponse,
     SessionVerifyResponse,
     VerifyPaymentResponse,
     WebhookAck,
)
from schemas.payment_checkout import CheckoutResponse
from services.errors import (
     ConfigurationError,
     GatewayError,
     InvariantViolationError,
     NotFoundError,
     PaymentError,
     WebhookRejectedError,
)
from services.finalize_payment import apply_deposit_payment_to_months, finalize_payment_by_tx_ref, get_checkout
from services.finalize_subscription import finalize_subscription_payment, from_unix, sync_subscription_status
from services.gateway_service import ChapaGateway, default_gateways, stripe_session_result
from services.periods import from_minor_units
from services.verify_payment import verify_and_finalize_payment
from services.webhook_security import (
     WebhookRateLimiter,
     client_identifier,
     validate_content_type,
     validate_request_size,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

_rate_limiter = WebhookRateLimiter()

# subscription_cycle and subscription_update invoices are renewals
INITIAL_BILLING_REASONS = ("subscription_create", None)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_gateways() -> Dict[PaymentSource, Any]:
     return default_gateways()


def get_rate_limiter() -> WebhookRateLimiter:
     return _rate_limiter


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

ERROR_STATUS_CODES = (
     (NotFoundError, status.HTTP_404_NOT_FOUND),
     (InvariantViolationError, 422),
     (WebhookRejectedError, status.HTTP_400_BAD_REQUEST),
     (ConfigurationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
     (GatewayError, status.HTTP_502_BAD_GATEWAY),
)


def _http_error(error: PaymentError) -> HTTPException:
     """Translate a service error into an HTTPException."""
     for error_type, status_code in ERROR_STATUS_CODES:
          if isinstance(error, error_type):
               return HTTPException(status_code=status_code, detail=error.message)
     return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.message)


def _enforce_rate_limit(request: Request, limiter: WebhookRateLimiter) -> None:
     client_host = request.client.host if request.client else None
     decision = limiter.check(client_identifier(request.headers, client_host))
     if not decision.allowed:
          raise HTTPException(
               status_code=status.HTTP_429_TOO_MANY_REQUESTS,
               detail="Too many webhook requests",
               headers={"Retry-After": str(decision.retry_after)},
          )


def _as_mapping(value) -> Dict[str, Any]:
     return value if isinstance(value, dict) else {}


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
     """Subscription id from ``invoice.subscription`` or the newer ``parent.subscription_details``."""
     subscription = invoice.get("subscription")
     if isinstance(subscription, dict):
          subscription = subscription.get("id")
     if subscription:
          return subscription
     details = _as_mapping(_as_mapping(invoice.get("parent")).get("subscription_details"))
     return details.get("subscription")


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

@router.post(
     "/{tx_ref}/verify",
     response_model=VerifyPaymentResponse,
     summary="Verify a checkout with its gateway",
)
def verify_payment(
     tx_ref: str,
     db: Session = Depends(get_session),
     gateways: Dict[PaymentSource, Any] = Depends(get_gateways),
):
     """
     Ask the gateway about ``tx_ref`` and finalize it when the answer is definitive.

     Safe to poll: pending answers change nothing and finalized checkouts
     are reported as already processed.
     """
     try:
          result = verify_and_finalize_payment(db, tx_ref, gateways)
          checkout = get_checkout(db, tx_ref)
     except PaymentError as e:
          logger.error(f"[PaymentsAPI] Verify failed for {tx_ref}: {e}")
          raise _http_error(e)

     return VerifyPaymentResponse(
          tx_ref=tx_ref,
          verified=result.verified,
          pending=result.pending,
          failed=result.failed,
          finalized=result.finalized,
          already_processed=result.already_processed,
          error=result.error,
          checkout=CheckoutResponse.model_validate(checkout),
     )


# ---------------------------------------------------------------------------
# Chapa
# ---------------------------------------------------------------------------

@router.post("/webhooks/chapa", response_model=WebhookAck)
def chapa_webhook(
     request: Request,
     payload: dict = Body(...),
     db: Session = Depends(get_session),
     limiter: WebhookRateLimiter = Depends(get_rate_limiter),
):
     """
     Receives Chapa payment results.
     """
     _enforce_rate_limit(request, limiter)

     tx_ref, result = ChapaGateway.parse_webhook(payload)
     if not tx_ref:
          logger.warning(f"[ChapaWebhook] Payload without tx_ref: {list(payload.keys())}")
          raise HTTPException(status.HTTP_400_BAD_REQUEST, "Missing tx_ref")

     if result.outcome == GatewayOutcome.PENDING:
          logger.info(f"[ChapaWebhook] {tx_ref} still pending ({result.provider_status})")
          return WebhookAck(event_type=result.provider_status, detail="pending")

     try:
          finalize_payment_by_tx_ref(db, tx_ref, result)
     except PaymentError as e:
          logger.error(f"[ChapaWebhook] Finalization failed for {tx_ref}: {e}")
          raise _http_error(e)

     logger.info(f"[ChapaWebhook] {tx_ref} finalized as {result.outcome.value}")
     return WebhookAck(event_type=result.provider_status, detail=result.outcome.value)


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

def _handle_checkout_completed(db: Session, session: Dict[str, Any], gateway) -> str:
     subscription_id = session.get("subscription")
     if isinstance(subscription_id, dict):
          subscription_id = subscription_id.get("id")

     if subscription_id:
          amount_total = session.get("amount_total")
          outcome = finalize_subscription_payment(
               db,
               subscription_id,
               is_initial_payment=True,
               session_id=session.get("id"),
               invoice_amount=from_minor_units(amount_total, session.get("currency")) if amount_total else None,
               idempotency_key=f"webhook_session_{session.get('id')}",
               gateway=gateway,
          )
          return "already processed" if outcome.already_processed else f"subscription {outcome.subscription_id}"

     tx_ref = _as_mapping(session.get("metadata")).get("txRef") or session.get("client_reference_id")
     if not tx_ref:
          logger.warning(f"[StripeWebhook] Session {session.get('id')} has no txRef, ignoring")
          return "ignored"

     result = stripe_session_result(session)
     if result.outcome == GatewayOutcome.PENDING:
          # Async payment methods complete the session before funds settle.
          return "pending"
     finalize_payment_by_tx_ref(db, tx_ref, result)
     return result.outcome.value


def _handle_checkout_expired(db: Session, session: Dict[str, Any]) -> str:
     tx_ref = _as_mapping(session.get("metadata")).get("txRef") or session.get("client_reference_id")
     if not tx_ref:
          return "ignored"
     result = GatewayResult(
          outcome=GatewayOutcome.FAILED,
          provider=PaymentSource.STRIPE,
          provider_reference=session.get("id"),
          provider_status="expired",
          provider_payload=session,
     )
     finalize_payment_by_tx_ref(db, tx_ref, result)
     return result.outcome.value


def _handle_invoice_paid(db: Session, invoice: Dict[str, Any], gateway) -> str:
     subscription_id = _invoice_subscription_id(invoice)
     if not subscription_id:
          return "ignored"
     amount_paid = invoice.get("amount_paid")
     outcome = finalize_subscription_payment(
          db,
          subscription_id,
          is_initial_payment=invoice.get("billing_reason") in INITIAL_BILLING_REASONS,
          invoice_id=invoice.get("id"),
          invoice_amount=from_minor_units(amount_paid, invoice.get("currency")) if amount_paid else None,
          idempotency_key=f"webhook_invoice_{invoice.get('id')}",
          gateway=gateway,
     )
     return "already processed" if outcome.already_processed else f"subscription {outcome.subscription_id}"


def _handle_invoice_failed(db: Session, invoice: Dict[str, Any]) -> str:
     subscription_id = _invoice_subscription_id(invoice)
     if not subscription_id:
          return "ignored"
     sync_subscription_status(db, subscription_id, "past_due")
     return "past_due"


def _handle_subscription_updated(db: Session, subscription: Dict[str, Any]) -> str:
     record = sync_subscription_status(
          db,
          subscription.get("id"),
          subscription.get("status"),
          next_billing_date=from_unix(subscription.get("current_period_end")),
          cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
     )
     return record.status if record is not None else "ignored"


def _handle_subscription_deleted(db: Session, subscription: Dict[str, Any]) -> str:
     record = sync_subscription_status(
          db,
          subscription.get("id"),
          "cancelled",
          end_date=from_unix(subscription.get("canceled_at")),
     )
     return "cancelled" if record is not None else "ignored"


@router.post("/webhooks/stripe", response_model=WebhookAck)
async def stripe_webhook(
     request: Request,
     db: Session = Depends(get_session),
     gateways: Dict[PaymentSource, Any] = Depends(get_gateways),
     limiter: WebhookRateLimiter = Depends(get_rate_limiter),
):
     """
     Receives Stripe events.

     Checks run in order: content type, rate limit, body size, signature.
     Unhandled event types are acknowledged and ignored.
     """
     try:
          content_type = validate_content_type(request.headers.get("content-type"))
          if not content_type.valid:
               raise WebhookRejectedError(content_type.error)

          _enforce_rate_limit(request, limiter)

          body = await request.body()
          size = validate_request_size(body)
          if not size.valid:
               raise WebhookRejectedError(size.error, {"size": len(body)})

          gateway = gateways.get(PaymentSource.STRIPE)
          if gateway is None:
               raise ConfigurationError("No gateway configured for stripe", {"provider": "stripe"})

          try:
               event = gateway.construct_event(body, request.headers.get("stripe-signature"))
          except (stripe.SignatureVerificationError, ValueError) as e:
               raise WebhookRejectedError(f"Webhook signature verification failed: {e}")
     except PaymentError as e:
          logger.warning(f"[StripeWebhook] Rejected: {e}")
          raise _http_error(e)

     event_type = event.get("type")
     data_object = _as_mapping(_as_mapping(event.get("data")).get("object"))
     logger.info(f"[StripeWebhook] Received {event_type} ({event.get('id')})")

     try:
          if event_type == "checkout.session.completed":
               detail = _handle_checkout_completed(db, data_object, gateway)
          elif event_type == "checkout.session.expired":
               detail = _handle_checkout_expired(db, data_object)
          elif event_type == "invoice.payment_succeeded":
               detail = _handle_invoice_paid(db, data_object, gateway)
          elif event_type == "invoice.payment_failed":
               detail = _handle_invoice_failed(db, data_object)
          elif event_type == "customer.subscription.updated":
               detail = _handle_subscription_updated(db, data_object)
          elif event_type == "customer.subscription.deleted":
               detail = _handle_subscription_deleted(db, data_object)
          else:
               logger.debug(f"[StripeWebhook] Ignoring {event_type}")
               detail = "ignored"
     except PaymentError as e:
          logger.error(f"[StripeWebhook] {event_type} ({event.get('id')}) failed: {e}")
          raise _http_error(e)

     return WebhookAck(event_type=event_type, detail=detail)


@router.post(
     "/stripe/sessions/{session_id}/verify",
     response_model=SessionVerifyResponse,
     summary="Verify a Stripe subscription checkout from the return page",
)
def verify_stripe_session(
     session_id: str,
     db: Session = Depends(get_session),
     gateways: Dict[PaymentSource, Any] = Depends(get_gateways),
):
     """
     Finalize a subscription checkout when the student lands on the return page.

     Covers a missed or late ``checkout.session.completed`` webhook. Unpaid
     sessions change nothing; a charge already recorded by a webhook is
     reported as already processed.
     """
     try:
          gateway = gateways.get(PaymentSource.STRIPE)
          if gateway is None:
               raise ConfigurationError("No gateway configured for stripe", {"provider": "stripe"})

          session = gateway.retrieve_session(session_id)
          if session.get("mode") != "subscription":
               return SessionVerifyResponse(session_id=session_id, verified=True, message="Not a subscription checkout")
          if session.get("payment_status") != "paid":
               logger.info(f"[VerifySession] {session_id} not paid yet ({session.get('payment_status')})")
               return SessionVerifyResponse(session_id=session_id, verified=False, message="Payment not completed")

          subscription_id = session.get("subscription")
          if isinstance(subscription_id, dict):
               subscription_id = subscription_id.get("id")
          if not subscription_id:
               raise HTTPException(status.HTTP_400_BAD_REQUEST, "No subscription found in session")

          amount_total = session.get("amount_total")
          outcome = finalize_subscription_payment(
               db,
               subscription_id,
               is_initial_payment=True,
               session_id=session_id,
               invoice_amount=from_minor_units(amount_total, session.get("currency")) if amount_total else None,
               idempotency_key=f"verify_session_{session_id}",
               gateway=gateway,
          )
     except PaymentError as e:
          logger.error(f"[VerifySession] Verify failed for {session_id}: {e}")
          raise _http_error(e)

     return SessionVerifyResponse(
          session_id=session_id,
          verified=True,
          finalized=True,
          already_processed=outcome.already_processed,
          subscription_id=outcome.subscription_id,
          status=outcome.status,
     )


# ---------------------------------------------------------------------------
# Manual deposits
# ---------------------------------------------------------------------------

@router.post(
     "/{payment_id}/apply-deposit",
     response_model=ApplyDepositResponse,
     summary="Apply an approved deposit to unpaid months",
)
def apply_deposit(
     payment_id: int,
     db: Session = Depends(get_session),
):
     """
     Apply an admin-approved deposit payment to the student's unpaid months.

     Returns **applied=false** when the payment is not approved or was already applied.
     """
     try:
          allocation = apply_deposit_payment_to_months(db, payment_id)
     except PaymentError as e:
          logger.error(f"[PaymentsAPI] Apply deposit failed for payment {payment_id}: {e}")
          raise _http_error(e)

     if allocation is None:
          return ApplyDepositResponse(payment_id=payment_id, applied=False)

     return ApplyDepositResponse(
          payment_id=payment_id,
          applied=True,
          months_applied=allocation.months_applied,
          remaining_balance=allocation.remaining_balance,
          allocations=[MonthAllocationResponse.model_validate(item) for item in allocation.allocations],
     )
