from .base import Base
from .student import Student
from .subscription_package import SubscriptionPackage
from .student_subscription import StudentSubscription
from .payment import Payment, PaymentStatus, PaymentSource, PaymentIntent
from .payment_checkout import PaymentCheckout, CheckoutStatus
from .month_record import MonthRecord, MonthPaymentStatus, MonthPaymentType

__all__ = [
     "Base",
     "Student",
     "SubscriptionPackage",
     "StudentSubscription",
     "Payment",
     "PaymentStatus",
     "PaymentSource",
     "PaymentIntent",
     "PaymentCheckout",
     "CheckoutStatus",
     "MonthRecord",
     "MonthPaymentStatus",
     "MonthPaymentType",
]
