from sqlalchemy import Column, Integer, String, Numeric, Boolean
from .base import Base, TimestampMixin


class SubscriptionPackage(TimestampMixin, Base):
     """
     Catalog entry for a recurring subscription: how many months one billing
     cycle covers and what it costs. Owned by the catalog, never mutated here.
     """

     id = Column(Integer, primary_key=True, autoincrement=True)
     name = Column(String(255), nullable=False)
     duration = Column(Integer, nullable=False)  # months per billing cycle
     price = Column(Numeric(12, 2), nullable=False)
     currency = Column(String(3), nullable=False, default="USD")
     is_active = Column(Boolean, default=True, nullable=False)

     def __repr__(self):
          return f"<SubscriptionPackage(id={self.id}, name='{self.name}', duration={self.duration}, price={self.price})>"
