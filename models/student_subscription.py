from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.orm import relationship
from .base import Base, TimestampMixin


class StudentSubscription(TimestampMixin, Base):
     """
     Local mirror of a gateway subscription.

     A stripe_subscription_id belongs to exactly one student for its whole
     lifetime; only status and date fields are ever updated.
     """

     id = Column(Integer, primary_key=True, autoincrement=True)
     student_id = Column(
          Integer,
          ForeignKey("students.id", ondelete="RESTRICT"),
          nullable=False,
          index=True
     )
     package_id = Column(
          Integer,
          ForeignKey("subscription_packages.id", ondelete="RESTRICT"),
          nullable=False
     )
     stripe_subscription_id = Column(String(255), nullable=False, unique=True, index=True)
     stripe_customer_id = Column(String(255), nullable=True)
     status = Column(String(50), nullable=False)  # mirrored from the gateway
     start_date = Column(DateTime, nullable=True)
     end_date = Column(DateTime, nullable=True)
     next_billing_date = Column(DateTime, nullable=True)

     # Relationships
     student = relationship("Student", back_populates="subscriptions")
     package = relationship("SubscriptionPackage")
     payments = relationship("Payment", back_populates="subscription")

     def __repr__(self):
          return f"<StudentSubscription(id={self.id}, stripe_subscription_id='{self.stripe_subscription_id}', status='{self.status}')>"
