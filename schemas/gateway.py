# schemas/gateway.py
"""
Provider-agnostic gateway results.

Gateway payloads are kept as opaque dicts; only the fields the engine reads
(outcome, reference, status, fee, currency) are extracted and validated.
"""
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ConfigDict

from models.payment import PaymentSource


class GatewayOutcome(str, Enum):
     """Normalized verdict of a gateway check."""
     SUCCESS = "success"
     FAILED = "failed"
     PENDING = "pending"


class GatewayResult(BaseModel):
     """Normalized answer from a payment gateway for one transaction."""

     outcome: GatewayOutcome = Field(default=GatewayOutcome.SUCCESS, description="success, failed or pending")
     provider: PaymentSource = Field(..., description="Gateway that produced the result")
     provider_reference: Optional[str] = Field(None, description="Gateway-side reference (charge, payment intent, session)")
     provider_status: Optional[str] = Field(None, description="Raw status string reported by the gateway")
     provider_fee: Optional[Decimal] = Field(None, description="Fee charged by the gateway, if reported")
     provider_payload: Dict[str, Any] = Field(default_factory=dict, description="Raw gateway object, stored verbatim")
     currency: Optional[str] = Field(None, min_length=3, max_length=3, description="ISO currency code")

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "outcome": "success",
                    "provider": "chapa",
                    "provider_reference": "APfx8Y2kLm",
                    "provider_status": "success",
                    "provider_fee": 3.50,
                    "provider_payload": {"status": "success", "data": {"tx_ref": "tx-123"}},
                    "currency": "ETB",
               }
          }
     )

     @property
     def is_success(self) -> bool:
          return self.outcome == GatewayOutcome.SUCCESS

     @property
     def is_failed(self) -> bool:
          return self.outcome == GatewayOutcome.FAILED
