"""
MonthRecord model - one ledger line per (student, calendar month).

paid_amount is stored in whole currency units and must never exceed the
student's class fee. Rows are superseded by updates, never deleted.
"""
import enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from .base import Base


class MonthPaymentStatus(str, enum.Enum):
     PAID = "Paid"
     PENDING = "pending"


class MonthPaymentType(str, enum.Enum):
     AUTO = "auto"
     PARTIAL = "partial"


class MonthRecord(Base):
     __table_args__ = (
          UniqueConstraint("student_id", "month", name="uq_month_records_student_month"),
     )

     id = Column(Integer, primary_key=True, autoincrement=True)
     student_id = Column(
          Integer,
          ForeignKey("students.id", ondelete="RESTRICT"),
          nullable=False,
          index=True
     )
     month = Column(String(7), nullable=False, index=True)  # YYYY-MM
     paid_amount = Column(Integer, nullable=False, default=0)
     # Plain strings so legacy statuses still load; the engine writes the enums above
     payment_status = Column(String(20), nullable=False, default=MonthPaymentStatus.PENDING.value)
     payment_type = Column(String(20), nullable=True)
     start_date = Column(DateTime, nullable=True)
     end_date = Column(DateTime, nullable=True)
     is_free_month = Column(Boolean, nullable=True, default=False)

     # Provenance
     source = Column(String(20), nullable=True)
     provider_reference = Column(String(255), nullable=True)
     provider_status = Column(String(50), nullable=True)
     provider_payload = Column(JSON, nullable=True)
     payment_id = Column(
          Integer,
          ForeignKey("payments.id", ondelete="SET NULL"),
          nullable=True,
          index=True
     )

     # Relationships
     student = relationship("Student", back_populates="months")
     payment = relationship("Payment", back_populates="months")

     def __repr__(self):
          return f"<MonthRecord(student_id={self.student_id}, month='{self.month}', paid={self.paid_amount}, status='{self.payment_status}')>"

     @property
     def is_paid(self) -> bool:
          return self.payment_status == MonthPaymentStatus.PAID.value
