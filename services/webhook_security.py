# services/webhook_security.py
"""
Webhook boundary checks: rate limiting, body size and content type.

The rate limiter is an object over an injected ``limits`` storage rather than
process-wide state: ``memory://`` for a single instance, a shared backend
(e.g. ``redis://``) when several workers must agree, and ``reset()`` for tests.
"""
import logging
import math
import os
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Union

from limits import parse
from limits.storage import Storage, storage_from_string
from limits.strategies import MovingWindowRateLimiter

logger = logging.getLogger(__name__)

WEBHOOK_RATE_LIMIT = os.getenv("WEBHOOK_RATE_LIMIT", "100/minute")
WEBHOOK_RATE_LIMIT_STORAGE = os.getenv("WEBHOOK_RATE_LIMIT_STORAGE", "memory://")
WEBHOOK_MAX_BODY_BYTES = int(os.getenv("WEBHOOK_MAX_BODY_BYTES", str(1024 * 1024)))

ALLOWED_CONTENT_TYPES = ("application/json", "text/plain")

RATE_LIMIT_NAMESPACE = "webhook"


@dataclass
class RateLimitDecision:
     allowed: bool
     retry_after: Optional[int] = None


@dataclass
class ValidationResult:
     valid: bool
     error: Optional[str] = None


class WebhookRateLimiter:
     """Moving-window limiter keyed by client identifier (default 100 requests per minute)."""

     def __init__(self, limit: str = WEBHOOK_RATE_LIMIT, storage: Union[str, Storage, None] = None):
          self.limit = parse(limit)
          if storage is None:
               storage = WEBHOOK_RATE_LIMIT_STORAGE
          if isinstance(storage, str):
               storage = storage_from_string(storage)
          self.storage = storage
          self.strategy = MovingWindowRateLimiter(storage)

     def check(self, identifier: str) -> RateLimitDecision:
          """Count one request for ``identifier``; reports seconds to wait once over the limit."""
          if self.strategy.hit(self.limit, RATE_LIMIT_NAMESPACE, identifier):
               return RateLimitDecision(allowed=True)

          reset_time, _remaining = self.strategy.get_window_stats(self.limit, RATE_LIMIT_NAMESPACE, identifier)
          retry_after = max(1, math.ceil(reset_time - time.time()))
          logger.warning(f"[WebhookSecurity] Rate limit exceeded for {identifier} ({self.limit}), retry after {retry_after}s")
          return RateLimitDecision(allowed=False, retry_after=retry_after)

     def reset(self) -> None:
          self.storage.reset()


def client_identifier(headers: Mapping[str, str], client_host: Optional[str] = None) -> str:
     """
     Rate-limit key for a webhook request.

     ``stripe:{event id}`` when the Stripe event id header is present,
     otherwise ``ip:{address}`` from X-Forwarded-For (first hop), X-Real-IP,
     the socket peer, or ``unknown``.
     """
     lowered = {key.lower(): value for key, value in headers.items()}

     event_id = lowered.get("stripe-event-id")
     if event_id:
          return f"stripe:{event_id}"

     forwarded = (lowered.get("x-forwarded-for") or "").split(",")[0].strip()
     ip = forwarded or lowered.get("x-real-ip") or client_host or "unknown"
     return f"ip:{ip}"


def validate_request_size(body: Union[bytes, str], max_size: int = WEBHOOK_MAX_BODY_BYTES) -> ValidationResult:
     size = len(body.encode("utf-8")) if isinstance(body, str) else len(body)
     if size > max_size:
          logger.warning(f"[WebhookSecurity] Webhook request too large: {size} bytes (max {max_size})")
          return ValidationResult(
               valid=False,
               error=f"Request body too large: {size} bytes (max: {max_size} bytes)",
          )
     return ValidationResult(valid=True)


def validate_content_type(content_type: Optional[str]) -> ValidationResult:
     if not content_type or not any(allowed in content_type for allowed in ALLOWED_CONTENT_TYPES):
          logger.warning(f"[WebhookSecurity] Invalid content type: {content_type}")
          return ValidationResult(
               valid=False,
               error=f"Invalid content type: {content_type}. Expected application/json or text/plain",
          )
     return ValidationResult(valid=True)
