# services/plan_change_service.py
"""
Upgrade/downgrade payment recording.

The plan-change flow writes its own Payment (transaction id
``upgrade_{sub}_{ms}`` / ``downgrade_{sub}_{ms}``) before Stripe's webhook
reaches the Subscription Finalizer, which then reuses that Payment instead
of creating a second one. Downgrade credits are stored as positive amounts
with a ``CREDIT:`` reason prefix.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from database import unit_of_work
from models import (
     Payment,
     PaymentIntent,
     PaymentSource,
     PaymentStatus,
     StudentSubscription,
     SubscriptionPackage,
)
from services.periods import to_decimal

logger = logging.getLogger(__name__)

UPGRADE = "upgrade"
DOWNGRADE = "downgrade"
PLAN_CHANGES = (UPGRADE, DOWNGRADE)

# An upgrade payment written this recently is refreshed rather than duplicated.
UPGRADE_DEDUP_WINDOW = timedelta(minutes=5)


def _find_recent_upgrade_payment(db: Session, subscription: StudentSubscription, now: datetime) -> Optional[Payment]:
     return (
          db.query(Payment)
          .filter(
               Payment.subscription_id == subscription.id,
               Payment.payment_date >= now - UPGRADE_DEDUP_WINDOW,
               Payment.transaction_id.startswith(f"{UPGRADE}_{subscription.stripe_subscription_id}"),
               Payment.reason.contains(UPGRADE),
          )
          .order_by(Payment.payment_date.desc())
          .first()
     )


def record_plan_change_payment(
     db: Session,
     subscription: StudentSubscription,
     new_package: SubscriptionPackage,
     change: str,
     charged_amount,
     now: Optional[datetime] = None,
) -> Payment:
     """
     Record the prorated charge (or credit) for a plan change.

     Args:
          db: Database session
          subscription: Local subscription being changed
          new_package: Package the student moves to
          change: "upgrade" or "downgrade"
          charged_amount: Net prorated amount; negative means a credit
          now: Change timestamp (defaults to utcnow)

     Returns:
          The Payment written (or refreshed) for this change.

     Raises:
          ValueError: If change is not "upgrade" or "downgrade"
     """
     if change not in PLAN_CHANGES:
          raise ValueError(f"Unknown plan change: {change!r}")

     now = now or datetime.utcnow()
     amount = to_decimal(charged_amount)
     old_name = subscription.package.name if subscription.package else "previous plan"
     transaction_id = f"{change}_{subscription.stripe_subscription_id}_{int(time.time() * 1000)}"

     with unit_of_work(db):
          if change == UPGRADE:
               reason = f"Subscription upgrade - {old_name} → {new_package.name} (prorated)"
               payload = {"type": "upgrade_charge", "netAmount": str(amount)}
               paid_amount = amount
               payment = _find_recent_upgrade_payment(db, subscription, now)
               if payment is not None:
                    logger.info(
                         f"[PlanChange] Refreshing upgrade payment {payment.id}: {payment.paid_amount} -> {amount}"
                    )
                    payment.paid_amount = paid_amount
                    payment.reason = reason
                    payment.payment_date = now
          else:
               payment = None
               if amount < 0:
                    paid_amount = abs(amount)
                    reason = (
                         f"CREDIT: Subscription downgrade - {old_name} → {new_package.name} "
                         f"(Credit: {paid_amount:.2f} {new_package.currency})"
                    )
                    payload = {
                         "isCredit": True,
                         "creditAmount": str(paid_amount),
                         "originalNetAmount": str(amount),
                         "type": "downgrade_credit",
                    }
               else:
                    paid_amount = amount
                    reason = (
                         f"Subscription downgrade - {old_name} → {new_package.name} "
                         f"(Net charge: {amount:.2f} {new_package.currency})"
                    )
                    payload = {"type": "downgrade_charge", "netAmount": str(amount)}

          if payment is None:
               payment = Payment(
                    student_id=subscription.student_id,
                    student_name=subscription.student.name if subscription.student else "",
                    payment_date=now,
                    transaction_id=transaction_id,
                    paid_amount=paid_amount,
                    reason=reason,
                    status=PaymentStatus.APPROVED,
                    currency=new_package.currency,
                    source=PaymentSource.STRIPE,
                    intent=PaymentIntent.SUBSCRIPTION,
                    provider_reference=subscription.stripe_subscription_id,
                    provider_status="success",
                    provider_payload=payload,
                    subscription_id=subscription.id,
               )
               db.add(payment)
               logger.info(f"[PlanChange] Recorded {change} payment {transaction_id} ({paid_amount} {new_package.currency})")

          subscription.package_id = new_package.id
          db.flush()

     return payment
