"""
PaymentCheckout model - an initiated payment attempt keyed by txRef.

Lifecycle: pending -> completed | failed. A completed checkout links to the
Payment created when the gateway confirmed it.
"""
import enum

from sqlalchemy import Column, Integer, String, Numeric, ForeignKey, Enum, JSON
from sqlalchemy.orm import relationship
from .base import Base, TimestampMixin
from .payment import PaymentIntent, PaymentSource, _enum_values


class CheckoutStatus(str, enum.Enum):
     """Enumeration for checkout status."""
     PENDING = "pending"
     COMPLETED = "completed"
     FAILED = "failed"


class PaymentCheckout(TimestampMixin, Base):
     id = Column(Integer, primary_key=True, autoincrement=True)
     tx_ref = Column(String(255), nullable=False, unique=True, index=True)

     student_id = Column(
          Integer,
          ForeignKey("students.id", ondelete="RESTRICT"),
          nullable=False,
          index=True
     )
     payment_id = Column(
          Integer,
          ForeignKey("payments.id", ondelete="SET NULL"),
          nullable=True,
          index=True
     )

     provider = Column(
          Enum(PaymentSource, name="checkout_provider", create_constraint=True, values_callable=_enum_values),
          nullable=False
     )
     intent = Column(
          Enum(PaymentIntent, name="checkout_intent", create_constraint=True, values_callable=_enum_values),
          nullable=False
     )
     amount = Column(Numeric(12, 2), nullable=False)
     currency = Column(String(3), nullable=True)
     months = Column(JSON, nullable=True)  # ordered list of "YYYY-MM" strings
     status = Column(
          Enum(CheckoutStatus, name="checkout_status", create_constraint=True, values_callable=_enum_values),
          default=CheckoutStatus.PENDING,
          nullable=False,
          index=True
     )
     checkout_url = Column(String(1000), nullable=True)
     checkout_metadata = Column("metadata", JSON, nullable=True)

     # Relationships
     student = relationship("Student")
     payment = relationship("Payment")

     def __repr__(self):
          return f"<PaymentCheckout(id={self.id}, tx_ref='{self.tx_ref}', intent='{self.intent.value}', status='{self.status.value}')>"

     @property
     def requested_months(self) -> list[str]:
          """Months from the checkout payload, ignoring anything that is not a string."""
          value = self.months
          if not isinstance(value, list):
               return []
          return [month for month in value if isinstance(month, str)]

     @property
     def is_completed(self) -> bool:
          return self.status == CheckoutStatus.COMPLETED
