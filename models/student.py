from sqlalchemy import Column, Integer, String, Numeric, Date, DateTime, func
from sqlalchemy.orm import relationship
from .base import Base


class Student(Base):
     """
     Student model - enrolment record holding the monthly class fee.

     Read-only for the payment engine: the class fee is the ceiling for
     every month row and the baseline for deposit allocation.
     """

     id = Column(Integer, primary_key=True, autoincrement=True)
     name = Column(String(255), nullable=False, default="")
     classfee = Column(Numeric(12, 2), nullable=True)
     classfee_currency = Column(String(3), nullable=True)
     start_date = Column(Date, nullable=True)
     created_at = Column(DateTime, server_default=func.now(), nullable=False)

     # Relationships
     payments = relationship("Payment", back_populates="student")
     months = relationship("MonthRecord", back_populates="student")
     subscriptions = relationship("StudentSubscription", back_populates="student")

     def __repr__(self):
          return f"<Student(id={self.id}, name='{self.name}', classfee={self.classfee})>"
