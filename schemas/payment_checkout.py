# schemas/payment_checkout.py
"""
Pydantic schemas for checkout state returned by the payments API.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict

from models.payment import PaymentIntent, PaymentSource
from models.payment_checkout import CheckoutStatus


class CheckoutResponse(BaseModel):
     """Schema for a checkout after verification/finalization."""
     id: int
     tx_ref: str
     student_id: int
     provider: PaymentSource
     intent: PaymentIntent
     amount: Decimal
     currency: Optional[str] = None
     months: Optional[List[str]] = None
     status: CheckoutStatus
     payment_id: Optional[int] = None
     checkout_metadata: Optional[Dict[str, Any]] = Field(None, serialization_alias="metadata")
     updated_at: Optional[datetime] = None

     model_config = ConfigDict(
          from_attributes=True,
          json_schema_extra={
               "example": {
                    "id": 12,
                    "tx_ref": "tx-9f1c2b",
                    "student_id": 7,
                    "provider": "chapa",
                    "intent": "tuition",
                    "amount": 100.00,
                    "currency": "ETB",
                    "months": ["2025-01", "2025-02"],
                    "status": "completed",
                    "payment_id": 31,
                    "metadata": {"finalizedAt": "2025-01-03T09:12:44", "paymentCreated": True},
                    "updated_at": "2025-01-03T09:12:44"
               }
          }
     )
