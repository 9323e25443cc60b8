# services/errors.py
"""
Error taxonomy for the payment engine.

Every error carries a ``context`` dict (ids, amounts, stage) so the logging
layer and the HTTP boundary can reconstruct what failed without parsing the
message. Services raise these; routers translate them into status codes.
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
     """Base class for all payment engine failures."""

     def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
          super().__init__(message)
          self.message = message
          self.context = dict(context or {})

     def __str__(self) -> str:
          if not self.context:
               return self.message
          details = ", ".join(f"{key}={value!r}" for key, value in self.context.items())
          return f"{self.message} ({details})"


class NotFoundError(PaymentError, LookupError):
     """A referenced Checkout, Student, Package or Payment does not exist."""


class InvariantViolationError(PaymentError, ValueError):
     """
     A ledger invariant would be broken: cross-tenant subscription
     reassignment, zero months generated, non-positive class fee or deposit.
     """


class GatewayError(PaymentError):
     """Gateway SDK failure or non-2xx response. Never retried internally."""

     def __init__(self, message: str, context: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None):
          super().__init__(message, context)
          self.status_code = status_code


class ConfigurationError(PaymentError, RuntimeError):
     """A gateway credential or required setting is missing."""


class WebhookRejectedError(PaymentError):
     """Webhook request failed content-type, size or signature validation."""
