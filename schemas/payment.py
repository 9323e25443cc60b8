# schemas/payment.py
"""
Pydantic schemas for the payments API (verify, webhooks, deposit application).
"""
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict

from .payment_checkout import CheckoutResponse


class VerifyPaymentResponse(BaseModel):
     """Response for POST /api/payments/{tx_ref}/verify."""

     tx_ref: str = Field(..., description="Checkout transaction reference")
     verified: bool = Field(..., description="Gateway gave an answer for this transaction")
     pending: bool = Field(default=False, description="Gateway has not settled the transaction yet")
     failed: bool = Field(default=False, description="Gateway reported failure/expiry")
     finalized: bool = Field(default=False, description="Ledger rows were written by this call")
     already_processed: bool = Field(default=False, description="Checkout was finalized earlier")
     error: Optional[str] = Field(None, description="Why verification could not complete")
     checkout: Optional[CheckoutResponse] = None

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "tx_ref": "tx-9f1c2b",
                    "verified": True,
                    "pending": False,
                    "failed": False,
                    "finalized": True,
                    "already_processed": False,
                    "error": None,
               }
          }
     )


class SessionVerifyResponse(BaseModel):
     """Response for POST /api/payments/stripe/sessions/{session_id}/verify."""

     session_id: str
     verified: bool = Field(..., description="Session is paid")
     finalized: bool = Field(default=False, description="Subscription ledger rows exist for this session")
     already_processed: bool = Field(default=False, description="A webhook or earlier call recorded the charge")
     subscription_id: Optional[int] = Field(None, description="Local subscription id")
     status: Optional[str] = Field(None, description="Local subscription status")
     message: Optional[str] = None


class WebhookAck(BaseModel):
     """Acknowledgement returned to a gateway after a webhook was handled."""

     received: bool = True
     event_type: Optional[str] = Field(None, description="Gateway event type, when known")
     detail: Optional[str] = None


class MonthAllocationResponse(BaseModel):
     month: str = Field(..., description="Billing month (YYYY-MM)")
     amount: int = Field(..., description="Whole units applied by this payment")
     paid_total: int = Field(..., description="Month total after the allocation")
     fully_covered: bool

     model_config = ConfigDict(from_attributes=True)


class ApplyDepositResponse(BaseModel):
     """Response for POST /api/payments/{payment_id}/apply-deposit."""

     payment_id: int
     applied: bool = Field(..., description="False when the payment is not approved or was already applied")
     months_applied: int = 0
     remaining_balance: Decimal = Decimal("0")
     allocations: List[MonthAllocationResponse] = Field(default_factory=list)

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "payment_id": 31,
                    "applied": True,
                    "months_applied": 2,
                    "remaining_balance": 0,
                    "allocations": [
                         {"month": "2025-01", "amount": 20, "paid_total": 20, "fully_covered": True},
                         {"month": "2025-02", "amount": 5, "paid_total": 5, "fully_covered": False}
                    ]
               }
          }
     )
