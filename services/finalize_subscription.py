# services/finalize_subscription.py
"""
Subscription Finalizer - reconciles a Stripe subscription into the ledger.

For one gateway subscription id it upserts the local StudentSubscription,
locates or creates the Payment, and writes one Paid month per package month.

Idempotency: the derived key becomes the Payment's transaction id, and a
Payment already carrying that key (or the correlation id plus a subscription
link) short-circuits the whole call. An initial charge also short-circuits
when the subscription already has an approved initial Payment, whichever
event or page recorded it. A subscription id is bound to one
student for life; reassignment is rejected before and inside the transaction.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from database import unit_of_work
from models import (
     MonthPaymentStatus,
     MonthPaymentType,
     MonthRecord,
     Payment,
     PaymentIntent,
     PaymentSource,
     PaymentStatus,
     Student,
     StudentSubscription,
     SubscriptionPackage,
)
from services.deposit_allocator import find_month
from services.errors import GatewayError, InvariantViolationError, NotFoundError
from services.periods import generate_months, month_bounds, shift_datetime, split_with_remainder, to_decimal, to_whole_units
from services.plan_change_service import DOWNGRADE, UPGRADE

logger = logging.getLogger(__name__)

# Plan-change payments written this recently are reused by the finalizer.
PLAN_CHANGE_PAYMENT_WINDOW = timedelta(minutes=10)

AMOUNT_TOLERANCE = Decimal("0.01")

INITIAL_LABEL = "Initial"
RENEWAL_LABEL = "Renewal"


@dataclass
class SubscriptionFinalizeResult:
     subscription_id: int
     status: str
     already_processed: bool = False


def derive_idempotency_key(
     stripe_subscription_id: str,
     session_id: Optional[str] = None,
     invoice_id: Optional[str] = None,
     idempotency_key: Optional[str] = None,
) -> str:
     """``finalize_{subscription}_{session|invoice|epoch-ms}`` unless the caller supplies one."""
     if idempotency_key:
          return idempotency_key
     suffix = session_id or invoice_id or str(int(time.time() * 1000))
     return f"finalize_{stripe_subscription_id}_{suffix}"


def _metadata_int(metadata: Dict[str, Any], key: str) -> Optional[int]:
     value = metadata.get(key)
     try:
          return int(value) if value not in (None, "") else None
     except (TypeError, ValueError):
          return None


def from_unix(value) -> Optional[datetime]:
     if isinstance(value, bool) or not isinstance(value, (int, float)):
          return None
     return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def _period_timestamps(subscription: Dict[str, Any]) -> Tuple[Any, Any]:
     """current_period_start/end from the subscription, or from its first item on newer API versions."""
     start = subscription.get("current_period_start")
     end = subscription.get("current_period_end")
     if start is None or end is None:
          items = (subscription.get("items") or {}).get("data") or []
          if items:
               start = start if start is not None else items[0].get("current_period_start")
               end = end if end is not None else items[0].get("current_period_end")
     return start, end


def plan_change_kind(metadata: Dict[str, Any]) -> Optional[str]:
     if metadata.get("upgradedAt"):
          return UPGRADE
     if metadata.get("downgradedAt"):
          return DOWNGRADE
     return None


def find_processed_payment(db: Session, idempotency_key: str, correlation_id: str) -> Optional[Payment]:
     return (
          db.query(Payment)
          .filter(
               or_(
                    Payment.transaction_id == idempotency_key,
                    and_(Payment.transaction_id == correlation_id, Payment.subscription_id.isnot(None)),
               )
          )
          .first()
     )


def find_initial_payment(db: Session, subscription_record_id: int) -> Optional[Payment]:
     """Approved first charge already linked to this subscription, whichever entry point wrote it."""
     return (
          db.query(Payment)
          .filter(
               Payment.subscription_id == subscription_record_id,
               Payment.intent == PaymentIntent.SUBSCRIPTION,
               Payment.status == PaymentStatus.APPROVED,
               Payment.reason.contains(f"({INITIAL_LABEL})"),
          )
          .order_by(Payment.id)
          .first()
     )


def find_plan_change_payment(db: Session, subscription_record_id: int, change: str, now: datetime) -> Optional[Payment]:
     """Payment written by the upgrade/downgrade flow for this subscription in the last 10 minutes."""
     return (
          db.query(Payment)
          .filter(
               Payment.subscription_id == subscription_record_id,
               Payment.payment_date >= now - PLAN_CHANGE_PAYMENT_WINDOW,
               or_(Payment.reason.contains(change), Payment.transaction_id.contains(f"{change}_")),
          )
          .order_by(Payment.payment_date.desc())
          .first()
     )


def _guard_tenant(db: Session, stripe_subscription_id: str, student_id: int, stage: str) -> Optional[StudentSubscription]:
     existing = (
          db.query(StudentSubscription)
          .filter(StudentSubscription.stripe_subscription_id == stripe_subscription_id)
          .first()
     )
     if existing is not None and existing.student_id != student_id:
          logger.error(
               f"[FinalizeSubscription] Subscription {stripe_subscription_id} belongs to student "
               f"{existing.student_id}, refusing to assign it to student {student_id} ({stage})"
          )
          raise InvariantViolationError(
               f"Subscription {stripe_subscription_id} already exists for another student",
               {
                    "stripe_subscription_id": stripe_subscription_id,
                    "existing_student_id": existing.student_id,
                    "student_id": student_id,
                    "stage": stage,
               },
          )
     return existing


def _upsert_subscription(
     db: Session,
     existing: Optional[StudentSubscription],
     subscription: Dict[str, Any],
     stripe_subscription_id: str,
     student_id: int,
     package_id: int,
     period_start: datetime,
     period_end: datetime,
     next_billing_date: Optional[datetime],
) -> StudentSubscription:
     status = subscription.get("status") or "active"
     if existing is None:
          existing = StudentSubscription(
               student_id=student_id,
               package_id=package_id,
               stripe_subscription_id=stripe_subscription_id,
               stripe_customer_id=subscription.get("customer"),
               status=status,
               start_date=period_start,
               end_date=period_end,
               next_billing_date=next_billing_date,
          )
          db.add(existing)
     else:
          # student_id is write-once
          existing.status = status
          existing.next_billing_date = next_billing_date
          existing.end_date = period_end
     db.flush()
     logger.info(f"[FinalizeSubscription] Upserted subscription {existing.id} ({existing.status})")
     return existing


def _charge_amount(gateway, stripe_subscription_id: str, invoice_amount, package: SubscriptionPackage) -> Decimal:
     """Explicit invoice amount, else the latest paid invoice, else the package price."""
     if invoice_amount is not None and to_decimal(invoice_amount) > 0:
          return to_decimal(invoice_amount)
     try:
          latest = gateway.latest_invoice_amount(stripe_subscription_id)
     except GatewayError as e:
          logger.warning(f"[FinalizeSubscription] Could not fetch invoice amount, using package price: {e}")
          latest = None
     if latest:
          logger.debug(f"[FinalizeSubscription] Using invoice amount {latest} (package price {package.price})")
          return latest
     return to_decimal(package.price)


def _locate_payment(
     db: Session,
     record: StudentSubscription,
     package: SubscriptionPackage,
     student: Student,
     subscription: Dict[str, Any],
     idempotency_key: str,
     amount: Decimal,
     change: Optional[str],
     is_initial_payment: bool,
     now: datetime,
) -> Payment:
     reason = f"Subscription payment - {package.name} ({INITIAL_LABEL if is_initial_payment else RENEWAL_LABEL})"

     if change:
          payment = find_plan_change_payment(db, record.id, change, now)
          if payment is not None:
               # Downgrade credits may be intentionally negative-net; keep the amount as written.
               logger.info(
                    f"[FinalizeSubscription] Reusing {change} payment {payment.id} "
                    f"({payment.paid_amount}, '{payment.reason}')"
               )
               return payment

     payment = db.query(Payment).filter(Payment.transaction_id == idempotency_key).first()
     if payment is not None:
          difference = abs(to_decimal(payment.paid_amount) - amount)
          if difference > AMOUNT_TOLERANCE:
               logger.info(
                    f"[FinalizeSubscription] Correcting payment {payment.id} amount {payment.paid_amount} -> {amount}"
               )
               payment.paid_amount = amount
               payment.reason = reason
          if payment.subscription_id is None:
               payment.subscription_id = record.id
          db.flush()
          return payment

     if change:
          logger.warning(f"[FinalizeSubscription] No {change} payment found for {record.stripe_subscription_id}, creating one")

     payment = Payment(
          student_id=student.id,
          student_name=student.name or "",
          payment_date=now,
          transaction_id=idempotency_key,
          paid_amount=amount,
          reason=reason,
          status=PaymentStatus.APPROVED,
          currency=package.currency,
          source=PaymentSource.STRIPE,
          intent=PaymentIntent.SUBSCRIPTION,
          provider_reference=idempotency_key,
          provider_status="success",
          provider_payload=subscription,
          subscription_id=record.id,
     )
     db.add(payment)
     db.flush()
     logger.info(f"[FinalizeSubscription] Created payment {payment.id} ({amount} {package.currency})")
     return payment


def _write_months(
     db: Session,
     student_id: int,
     payment: Payment,
     months: List[str],
     amounts: List[int],
     change: Optional[str],
     provider_reference: str,
) -> Tuple[List[int], List[int], List[int]]:
     created: List[int] = []
     updated: List[int] = []
     preserved: List[int] = []

     for month, paid_amount in zip(months, amounts):
          month_start, month_end = month_bounds(month)
          existing = find_month(db, student_id, month)

          if existing is not None:
               if change == DOWNGRADE:
                    logger.debug(
                         f"[FinalizeSubscription] Downgrade: preserving {month} at {existing.paid_amount} "
                         f"(new rate {paid_amount})"
                    )
                    preserved.append(existing.id)
                    continue
               if change == UPGRADE and existing.paid_amount == paid_amount:
                    logger.debug(f"[FinalizeSubscription] Upgrade: {month} already at {paid_amount}")
                    preserved.append(existing.id)
                    continue

               logger.debug(f"[FinalizeSubscription] Updating {month}: {existing.paid_amount} -> {paid_amount}")
               existing.paid_amount = paid_amount
               existing.payment_status = MonthPaymentStatus.PAID.value
               existing.payment_type = MonthPaymentType.AUTO.value
               existing.start_date = month_start
               existing.end_date = month_end
               existing.source = PaymentSource.STRIPE.value
               existing.provider_reference = provider_reference
               existing.provider_status = "success"
               existing.payment_id = payment.id
               db.flush()
               updated.append(existing.id)
          else:
               record = MonthRecord(
                    student_id=student_id,
                    month=month,
                    paid_amount=paid_amount,
                    payment_status=MonthPaymentStatus.PAID.value,
                    payment_type=MonthPaymentType.AUTO.value,
                    start_date=month_start,
                    end_date=month_end,
                    is_free_month=False,
                    source=PaymentSource.STRIPE.value,
                    provider_reference=provider_reference,
                    provider_status="success",
                    payment_id=payment.id,
               )
               db.add(record)
               db.flush()
               logger.debug(f"[FinalizeSubscription] Created {month} ({paid_amount})")
               created.append(record.id)

     return created, updated, preserved


def _verify_months(
     db: Session,
     student_id: int,
     payment: Payment,
     months: List[str],
     created: List[int],
     updated: List[int],
     preserved: List[int],
     stripe_subscription_id: str,
) -> None:
     """Re-read the rows linked to the payment; a write that left nothing linked fails the unit."""
     context = {
          "stripe_subscription_id": stripe_subscription_id,
          "payment_id": payment.id,
          "student_id": student_id,
          "months": months,
     }
     if not (created or updated or preserved):
          logger.error(f"[FinalizeSubscription] No month rows created or updated for {stripe_subscription_id}")
          raise InvariantViolationError("No month rows were written for the subscription", context)

     linked = (
          db.query(MonthRecord)
          .filter(MonthRecord.student_id == student_id, MonthRecord.payment_id == payment.id)
          .all()
     )
     logger.info(
          f"[FinalizeSubscription] Verification: {len(linked)} month(s) linked to payment {payment.id} "
          f"(expected {len(months)}, created {len(created)}, updated {len(updated)}, preserved {len(preserved)})"
     )

     if not linked:
          if created or updated:
               logger.error(
                    f"[FinalizeSubscription] Payment {payment.id} has no linked month rows after writing "
                    f"{len(created) + len(updated)}"
               )
               raise InvariantViolationError("Payment has no linked month rows after finalization", context)
          logger.warning(
               f"[FinalizeSubscription] Payment {payment.id} has no linked months; "
               f"all {len(preserved)} existing month(s) were preserved"
          )
     elif len(linked) < len(months):
          logger.warning(
               f"[FinalizeSubscription] {len(months) - len(linked)} month(s) not linked to payment {payment.id}"
          )


def finalize_subscription_payment(
     db: Session,
     stripe_subscription_id: str,
     *,
     is_initial_payment: bool,
     session_id: Optional[str] = None,
     invoice_id: Optional[str] = None,
     invoice_amount=None,
     idempotency_key: Optional[str] = None,
     gateway,
) -> SubscriptionFinalizeResult:
     """
     Finalize a subscription payment after Stripe confirmation.

     Args:
          db: Database session
          stripe_subscription_id: Stripe subscription id (sub_...)
          is_initial_payment: First charge of the subscription (else renewal)
          session_id: Checkout session that created the subscription
          invoice_id: Invoice that was paid
          invoice_amount: Amount charged, in major units
          idempotency_key: Caller-supplied key; derived when omitted
          gateway: StripeGateway (or compatible) for subscription/invoice lookups

     Returns:
          SubscriptionFinalizeResult with already_processed=True on replays.

     Raises:
          InvariantViolationError: Cross-tenant reassignment, missing metadata, no months
          NotFoundError: Package or student missing
          GatewayError: Subscription lookup failed
     """
     key = derive_idempotency_key(stripe_subscription_id, session_id, invoice_id, idempotency_key)
     logger.info(f"[FinalizeSubscription] Starting {stripe_subscription_id} (key {key})")

     correlation_id = session_id or invoice_id or stripe_subscription_id
     existing = (
          db.query(StudentSubscription)
          .filter(StudentSubscription.stripe_subscription_id == stripe_subscription_id)
          .first()
     )
     processed = find_processed_payment(db, key, correlation_id)
     if processed is None and is_initial_payment and existing is not None:
          # checkout.session.completed, invoice.payment_succeeded and the return page all report the first charge
          processed = find_initial_payment(db, existing.id)
     if processed is not None and existing is not None:
          logger.info(
               f"[FinalizeSubscription] Already processed (payment {processed.id}), returning subscription {existing.id}"
          )
          return SubscriptionFinalizeResult(existing.id, existing.status, already_processed=True)

     subscription = gateway.retrieve_subscription(stripe_subscription_id)
     metadata = subscription.get("metadata") or {}
     student_id = _metadata_int(metadata, "studentId")
     package_id = _metadata_int(metadata, "packageId")
     if not student_id or not package_id:
          logger.error(f"[FinalizeSubscription] Missing studentId or packageId in metadata of {stripe_subscription_id}: {metadata}")
          raise InvariantViolationError(
               "Missing studentId or packageId in subscription metadata",
               {"stripe_subscription_id": stripe_subscription_id, "metadata": dict(metadata)},
          )

     package = db.query(SubscriptionPackage).filter(SubscriptionPackage.id == package_id).first()
     if not package:
          logger.error(f"[FinalizeSubscription] Package {package_id} not found")
          raise NotFoundError(f"Package {package_id} not found", {"package_id": package_id})

     student = db.query(Student).filter(Student.id == student_id).first()
     if not student:
          logger.error(f"[FinalizeSubscription] Student {student_id} not found")
          raise NotFoundError(f"Student {student_id} not found", {"student_id": student_id})

     _guard_tenant(db, stripe_subscription_id, student_id, "pre-transaction")

     change = plan_change_kind(metadata)
     now = datetime.utcnow()

     with unit_of_work(db):
          start_ts, end_ts = _period_timestamps(subscription)
          period_start = from_unix(start_ts) or now
          period_end = from_unix(end_ts) or shift_datetime(period_start, package.duration)
          next_billing_date = from_unix(end_ts)

          existing = _guard_tenant(db, stripe_subscription_id, student_id, "upsert")
          record = _upsert_subscription(
               db, existing, subscription, stripe_subscription_id, student_id, package_id,
               period_start, period_end, next_billing_date,
          )

          amount = _charge_amount(gateway, stripe_subscription_id, invoice_amount, package)
          payment = _locate_payment(
               db, record, package, student, subscription, key, amount, change, is_initial_payment, now,
          )

          months = generate_months(period_start, package.duration)
          if not months:
               logger.error(
                    f"[FinalizeSubscription] No months generated (duration {package.duration}, start {period_start})"
               )
               raise InvariantViolationError(
                    "No months generated for subscription",
                    {"stripe_subscription_id": stripe_subscription_id, "duration": package.duration},
               )

          # Plan changes bill a one-off prorated invoice; months carry the package's regular rate.
          monthly_total = to_decimal(package.price) if change else amount
          amounts = split_with_remainder(to_whole_units(monthly_total), len(months))
          logger.debug(f"[FinalizeSubscription] Distributing {monthly_total} over {months}: {amounts}")

          provider_reference = invoice_id or session_id or stripe_subscription_id
          created, updated, preserved = _write_months(
               db, student_id, payment, months, amounts, change, provider_reference,
          )
          _verify_months(db, student_id, payment, months, created, updated, preserved, stripe_subscription_id)

     logger.info(f"[FinalizeSubscription] Completed {stripe_subscription_id} (subscription {record.id}, {record.status})")
     return SubscriptionFinalizeResult(record.id, record.status)


def sync_subscription_status(
     db: Session,
     stripe_subscription_id: str,
     status: str,
     *,
     next_billing_date: Optional[datetime] = None,
     end_date: Optional[datetime] = None,
     cancel_at_period_end: bool = False,
) -> Optional[StudentSubscription]:
     """
     Mirror a gateway status change onto the local subscription.

     Only status and date fields change. A subscription scheduled to cancel
     at period end is recorded as cancelled. Unknown ids are ignored.
     """
     record = (
          db.query(StudentSubscription)
          .filter(StudentSubscription.stripe_subscription_id == stripe_subscription_id)
          .first()
     )
     if record is None:
          logger.debug(f"[SubscriptionSync] No local subscription for {stripe_subscription_id}, skipping")
          return None

     final_status = "cancelled" if cancel_at_period_end else status
     with unit_of_work(db):
          record.status = final_status
          if next_billing_date is not None:
               record.next_billing_date = next_billing_date
          if end_date is not None:
               record.end_date = end_date
     logger.info(f"[SubscriptionSync] Subscription {stripe_subscription_id} is now {final_status}")
     return record
