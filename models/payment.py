"""
Payment model - one row per confirmed monetary event.

A Payment is written when a gateway confirms a transaction. Rows are never
deleted; subscription reconciliation may correct the amount/reason.
"""
import enum

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Enum, JSON, func
from sqlalchemy.orm import relationship
from .base import Base


def _enum_values(enum_cls):
     return [member.value for member in enum_cls]


class PaymentStatus(str, enum.Enum):
     """Approval status of a payment."""
     APPROVED = "Approved"
     REJECTED = "Rejected"
     PENDING = "pending"


class PaymentSource(str, enum.Enum):
     """Where the money came from."""
     CHAPA = "chapa"
     STRIPE = "stripe"
     MANUAL = "manual"


class PaymentIntent(str, enum.Enum):
     """What the money is for."""
     DEPOSIT = "deposit"
     TUITION = "tuition"
     SUBSCRIPTION = "subscription"


class Payment(Base):
     id = Column(Integer, primary_key=True, autoincrement=True)

     # Foreign keys
     student_id = Column(
          Integer,
          ForeignKey("students.id", ondelete="RESTRICT"),
          nullable=False,
          index=True
     )
     subscription_id = Column(
          Integer,
          ForeignKey("student_subscriptions.id", ondelete="SET NULL"),
          nullable=True,
          index=True
     )

     student_name = Column(String(255), nullable=False, default="")
     payment_date = Column(DateTime, nullable=False, index=True)
     transaction_id = Column(String(255), nullable=False, unique=True, index=True)
     paid_amount = Column(Numeric(12, 2), nullable=False)
     reason = Column(String(500), nullable=True)
     currency = Column(String(3), nullable=False)
     status = Column(
          Enum(PaymentStatus, name="payment_status", create_constraint=True, values_callable=_enum_values),
          default=PaymentStatus.PENDING,
          nullable=False,
          index=True
     )
     source = Column(
          Enum(PaymentSource, name="payment_source", create_constraint=True, values_callable=_enum_values),
          nullable=False
     )
     intent = Column(
          Enum(PaymentIntent, name="payment_intent", create_constraint=True, values_callable=_enum_values),
          nullable=False
     )

     # Gateway provenance
     provider_reference = Column(String(255), nullable=True)
     provider_status = Column(String(50), nullable=True)
     provider_fee = Column(Numeric(12, 2), nullable=True)
     provider_payload = Column(JSON, nullable=True)  # raw gateway object, stored verbatim

     created_at = Column(DateTime, server_default=func.now(), nullable=False)

     # Relationships
     student = relationship("Student", back_populates="payments")
     subscription = relationship("StudentSubscription", back_populates="payments")
     months = relationship("MonthRecord", back_populates="payment")

     def __repr__(self):
          return f"<Payment(id={self.id}, transaction_id='{self.transaction_id}', amount={self.paid_amount}, status='{self.status.value}')>"

     @property
     def is_approved(self) -> bool:
          return self.status == PaymentStatus.APPROVED
