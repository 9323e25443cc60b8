# services/gateway_service.py
"""
Gateway Verification Adapters.

ChapaGateway polls Chapa's verify endpoint over HTTP (requests).
StripeGateway talks to Stripe through the official SDK.

Both normalize their answers into GatewayResult. Network/SDK failures raise
GatewayError and are never retried here; missing credentials raise
ConfigurationError when a call is attempted, not at import time.
"""
import logging
import os
import re
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import requests
import stripe

from models.payment import PaymentSource
from schemas.gateway import GatewayOutcome, GatewayResult
from services.errors import ConfigurationError, GatewayError
from services.periods import from_minor_units, to_decimal

logger = logging.getLogger(__name__)

CHAPA_TOKEN = os.getenv("CHAPA_TOKEN")
CHAPA_API = os.getenv("CHAPA_API", "https://api.chapa.co/v1")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))

# Stripe session list scan: 10 pages of 100 sessions
SESSION_SCAN_PAGES = 10
SESSION_SCAN_PAGE_SIZE = 100

SESSION_URL_PATTERN = re.compile(r"/checkout/sessions/(cs_[a-zA-Z0-9_]+)")


def _as_dict(obj) -> Dict[str, Any]:
     """Turn a Stripe object (or plain mapping) into a plain dict."""
     if obj is None:
          return {}
     for method in ("to_dict", "to_dict_recursive"):
          convert = getattr(obj, method, None)
          if callable(convert):
               return convert()
     return dict(obj)


def _metadata_of(checkout) -> Dict[str, Any]:
     metadata = checkout.checkout_metadata
     return metadata if isinstance(metadata, dict) else {}


# ---------------------------------------------------------------------------
# Chapa
# ---------------------------------------------------------------------------

CHAPA_SUCCESS_STATUSES = ("success", "successful")
CHAPA_FAILED_STATUSES = ("failed", "error", "cancelled")


class ChapaGateway:
     """Chapa verification over its REST API."""

     provider = PaymentSource.CHAPA

     def __init__(self, token: Optional[str] = None, api_base: Optional[str] = None, timeout: Optional[float] = None):
          self.token = token if token is not None else CHAPA_TOKEN
          self.api_base = (api_base or CHAPA_API).rstrip("/")
          self.timeout = timeout if timeout is not None else GATEWAY_TIMEOUT_SECONDS

     def _headers(self) -> Dict[str, str]:
          if not self.token:
               raise ConfigurationError("Chapa credentials are not configured", {"provider": "chapa"})
          token = re.sub(r"^Bearer\s+", "", self.token, flags=re.IGNORECASE).strip()
          return {
               "Authorization": f"Bearer {token}",
               "Content-Type": "application/json",
          }

     def verify(self, tx_ref: str) -> GatewayResult:
          """
          Poll GET {api}/transaction/verify/{tx_ref}.

          Raises:
               ConfigurationError: CHAPA_TOKEN is missing
               GatewayError: Network failure, non-2xx or unreadable body
          """
          headers = self._headers()
          url = f"{self.api_base}/transaction/verify/{tx_ref}"
          try:
               response = requests.get(url, headers=headers, timeout=self.timeout)
          except requests.RequestException as e:
               logger.error(f"[ChapaGateway] Verify request failed for {tx_ref}: {e}")
               raise GatewayError(f"Chapa request failed: {e}", {"tx_ref": tx_ref, "provider": "chapa"}) from e

          if response.status_code not in [200, 201]:
               logger.error(f"[ChapaGateway] Verify for {tx_ref} returned {response.status_code}: {response.text}")
               raise GatewayError(
                    f"Chapa API returned {response.status_code}",
                    {"tx_ref": tx_ref, "provider": "chapa"},
                    status_code=response.status_code,
               )

          try:
               data = response.json()
          except ValueError as e:
               raise GatewayError("Chapa API returned a non-JSON body", {"tx_ref": tx_ref, "provider": "chapa"}) from e

          logger.debug(f"[ChapaGateway] Verify response for {tx_ref}: {data}")
          return self.normalize_verification(tx_ref, data)

     def normalize_verification(self, tx_ref: str, data: Dict[str, Any]) -> GatewayResult:
          body = data.get("data") if isinstance(data.get("data"), dict) else {}
          top_status = str(data.get("status") or "").lower()
          inner_status = str(body.get("status") or "").lower()

          if top_status == "success" and inner_status == "success":
               fee = body.get("charge")
               return GatewayResult(
                    outcome=GatewayOutcome.SUCCESS,
                    provider=self.provider,
                    provider_reference=body.get("reference") or body.get("tx_ref") or tx_ref,
                    provider_status=body.get("status") or "success",
                    provider_fee=to_decimal(fee) if fee else None,
                    provider_payload=data,
                    currency=(body.get("currency") or None),
               )
          if top_status == "failed" or inner_status == "failed":
               return GatewayResult(
                    outcome=GatewayOutcome.FAILED,
                    provider=self.provider,
                    provider_reference=body.get("reference") or tx_ref,
                    provider_status=body.get("status") or "failed",
                    provider_payload=data,
               )
          return GatewayResult(
               outcome=GatewayOutcome.PENDING,
               provider=self.provider,
               provider_status=body.get("status") or data.get("status"),
               provider_payload=data,
          )

     @staticmethod
     def parse_webhook(payload: Dict[str, Any]) -> Tuple[Optional[str], GatewayResult]:
          """
          Extract (tx_ref, result) from a Chapa webhook payload.

          Chapa sends either {status, data: {tx_ref, ...}} or a flat
          {tx_ref, status, ...}; both shapes are accepted.
          """
          data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
          tx_ref = (
               data.get("tx_ref")
               or data.get("txRef")
               or data.get("reference")
               or payload.get("tx_ref")
               or payload.get("txRef")
               or payload.get("reference")
          )
          nested = data.get("data") if isinstance(data.get("data"), dict) else {}
          status = str(data.get("status") or payload.get("status") or nested.get("status") or "").lower()
          reference = data.get("reference") or data.get("tx_ref") or payload.get("reference") or tx_ref

          if status in CHAPA_SUCCESS_STATUSES:
               fee = data.get("charge") or payload.get("charge")
               result = GatewayResult(
                    outcome=GatewayOutcome.SUCCESS,
                    provider=PaymentSource.CHAPA,
                    provider_reference=reference,
                    provider_status=data.get("status") or payload.get("status") or "success",
                    provider_fee=to_decimal(fee) if fee else None,
                    provider_payload=payload,
                    currency=data.get("currency") or payload.get("currency") or "ETB",
               )
          elif status in CHAPA_FAILED_STATUSES:
               result = GatewayResult(
                    outcome=GatewayOutcome.FAILED,
                    provider=PaymentSource.CHAPA,
                    provider_reference=reference,
                    provider_status=status,
                    provider_payload=payload,
               )
          else:
               result = GatewayResult(
                    outcome=GatewayOutcome.PENDING,
                    provider=PaymentSource.CHAPA,
                    provider_status=status or None,
                    provider_payload=payload,
               )
          return tx_ref, result


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

def _payment_intent_id(session: Dict[str, Any]) -> Optional[str]:
     intent = session.get("payment_intent")
     if isinstance(intent, dict):
          return intent.get("id")
     return intent


def stripe_session_result(session: Dict[str, Any]) -> GatewayResult:
     """Normalize a Checkout Session into a GatewayResult."""
     payment_status = session.get("payment_status")
     status = session.get("status")
     currency = session.get("currency")

     if payment_status == "paid" and status == "complete":
          return GatewayResult(
               outcome=GatewayOutcome.SUCCESS,
               provider=PaymentSource.STRIPE,
               provider_reference=_payment_intent_id(session) or session.get("id"),
               provider_status=payment_status or "paid",
               provider_payload=session,
               currency=currency.upper() if currency else None,
          )
     if status == "expired":
          return GatewayResult(
               outcome=GatewayOutcome.FAILED,
               provider=PaymentSource.STRIPE,
               provider_reference=session.get("id"),
               provider_status=status or "expired",
               provider_payload=session,
          )
     return GatewayResult(
          outcome=GatewayOutcome.PENDING,
          provider=PaymentSource.STRIPE,
          provider_reference=session.get("id"),
          provider_status=payment_status or status,
          provider_payload=session,
     )


class StripeGateway:
     """Stripe Checkout / Subscription access through the stripe SDK."""

     provider = PaymentSource.STRIPE

     def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
          self.api_key = api_key if api_key is not None else STRIPE_SECRET_KEY
          self.webhook_secret = webhook_secret if webhook_secret is not None else STRIPE_WEBHOOK_SECRET

     def _key(self) -> str:
          if not self.api_key:
               raise ConfigurationError("Stripe client is not configured", {"provider": "stripe"})
          return self.api_key

     def retrieve_session(self, session_id: str) -> Dict[str, Any]:
          api_key = self._key()
          try:
               return _as_dict(stripe.checkout.Session.retrieve(session_id, api_key=api_key))
          except stripe.StripeError as e:
               raise GatewayError(f"Stripe session lookup failed: {e}", {"session_id": session_id}) from e

     def _try_retrieve_session(self, session_id: str, tx_ref: str, origin: str) -> Optional[Dict[str, Any]]:
          try:
               session = self.retrieve_session(session_id)
          except GatewayError:
               logger.debug(f"[StripeGateway] Could not retrieve session {session_id} from {origin} for {tx_ref}")
               return None
          logger.debug(f"[StripeGateway] Found session {session_id} from {origin} for {tx_ref}")
          return session

     def _scan_sessions(self, tx_ref: str) -> Optional[Dict[str, Any]]:
          api_key = self._key()
          starting_after = None
          for _ in range(SESSION_SCAN_PAGES):
               params = {"limit": SESSION_SCAN_PAGE_SIZE}
               if starting_after:
                    params["starting_after"] = starting_after
               try:
                    page = _as_dict(stripe.checkout.Session.list(api_key=api_key, **params))
               except stripe.StripeError as e:
                    raise GatewayError(f"Stripe session list failed: {e}", {"tx_ref": tx_ref}) from e

               sessions = [_as_dict(item) for item in page.get("data") or []]
               for session in sessions:
                    if (session.get("metadata") or {}).get("txRef") == tx_ref:
                         logger.debug(f"[StripeGateway] Found session {session.get('id')} by listing for {tx_ref}")
                         return session

               if not sessions or not page.get("has_more"):
                    break
               starting_after = sessions[-1].get("id")
          return None

     def find_checkout_session(self, checkout) -> Optional[Dict[str, Any]]:
          """
          Locate the Checkout Session for a local checkout.

          Order: session id in checkout metadata, session id embedded in the
          checkout URL, then a paged scan matching metadata.txRef.
          """
          self._key()
          session = None

          session_id = _metadata_of(checkout).get("stripeSessionId")
          if session_id:
               session = self._try_retrieve_session(session_id, checkout.tx_ref, "metadata")

          if session is None and checkout.checkout_url:
               match = SESSION_URL_PATTERN.search(checkout.checkout_url)
               if match:
                    session = self._try_retrieve_session(match.group(1), checkout.tx_ref, "checkout URL")

          if session is None:
               session = self._scan_sessions(checkout.tx_ref)
          return session

     def verify(self, checkout) -> Optional[GatewayResult]:
          """None when no session can be found for the checkout."""
          session = self.find_checkout_session(checkout)
          if session is None:
               return None
          logger.debug(
               f"[StripeGateway] Session {session.get('id')} for {checkout.tx_ref}: "
               f"payment_status={session.get('payment_status')} status={session.get('status')}"
          )
          return stripe_session_result(session)

     def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
          api_key = self._key()
          try:
               return _as_dict(stripe.Subscription.retrieve(subscription_id, api_key=api_key))
          except stripe.StripeError as e:
               raise GatewayError(f"Stripe subscription lookup failed: {e}", {"subscription_id": subscription_id}) from e

     def latest_invoice_amount(self, subscription_id: str) -> Optional[Decimal]:
          """Amount paid on the most recent invoice, in major units. None when nothing was paid."""
          api_key = self._key()
          try:
               invoices = _as_dict(stripe.Invoice.list(subscription=subscription_id, limit=1, api_key=api_key))
          except stripe.StripeError as e:
               raise GatewayError(f"Stripe invoice list failed: {e}", {"subscription_id": subscription_id}) from e

          data = invoices.get("data") or []
          if not data:
               return None
          invoice = _as_dict(data[0])
          amount_paid = invoice.get("amount_paid") or 0
          if amount_paid <= 0:
               return None
          return from_minor_units(amount_paid, invoice.get("currency"))

     def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
          """
          Verify the Stripe-Signature header and parse the event.

          Raises:
               ConfigurationError: STRIPE_WEBHOOK_SECRET is missing
               stripe.SignatureVerificationError: Signature does not match
               ValueError: Body is not valid JSON
          """
          if not self.webhook_secret:
               raise ConfigurationError("Stripe webhook secret is not configured", {"provider": "stripe"})
          event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
          return _as_dict(event)


def default_gateways() -> Dict[PaymentSource, Any]:
     """Gateways configured from the environment, keyed by provider."""
     return {
          PaymentSource.CHAPA: ChapaGateway(),
          PaymentSource.STRIPE: StripeGateway(),
     }
