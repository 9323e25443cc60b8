# services/finalize_payment.py
"""
Finalization Engine - turns a gateway confirmation into ledger rows.

finalize_payment_by_tx_ref():
1. Completed checkout: deposits with linked Month rows are a no-op;
   deposits without any are re-applied (self-heal); anything else is a no-op
2. Reuse or create the Payment (status from the gateway outcome)
3. Link the checkout to the Payment and stamp its metadata
4. On success: tuition months are marked Paid, deposits go to the allocator
5. Commit

Steps 2-4 run in one unit of work; any error rolls all of them back.
Every entry point here may be called any number of times with the same
reference.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from database import unit_of_work
from models import (
     CheckoutStatus,
     MonthPaymentStatus,
     MonthPaymentType,
     MonthRecord,
     Payment,
     PaymentCheckout,
     PaymentIntent,
     PaymentSource,
     PaymentStatus,
     Student,
)
from schemas.gateway import GatewayOutcome, GatewayResult
from services.deposit_allocator import DepositAllocation, Provenance, allocate_deposit, find_month
from services.errors import NotFoundError
from services.periods import DEFAULT_CURRENCY, clamp_allocation, is_month_string, split_evenly, to_decimal

logger = logging.getLogger(__name__)

PAYMENT_STATUS_BY_OUTCOME = {
     GatewayOutcome.SUCCESS: PaymentStatus.APPROVED,
     GatewayOutcome.FAILED: PaymentStatus.REJECTED,
     GatewayOutcome.PENDING: PaymentStatus.PENDING,
}

CHECKOUT_STATUS_BY_OUTCOME = {
     GatewayOutcome.SUCCESS: CheckoutStatus.COMPLETED,
     GatewayOutcome.FAILED: CheckoutStatus.FAILED,
     GatewayOutcome.PENDING: CheckoutStatus.PENDING,
}


def get_checkout(db: Session, tx_ref: str) -> PaymentCheckout:
     checkout = db.query(PaymentCheckout).filter(PaymentCheckout.tx_ref == tx_ref).first()
     if not checkout:
          raise NotFoundError(f"Checkout with txRef {tx_ref} not found", {"tx_ref": tx_ref})
     return checkout


def count_months_for_payment(db: Session, payment_id: int) -> int:
     return db.query(MonthRecord).filter(MonthRecord.payment_id == payment_id).count()


def _already_applied(db: Session, checkout: PaymentCheckout, result: GatewayResult) -> bool:
     """True when re-running finalization would change nothing."""
     if not result.is_success:
          # A completed checkout never moves back to pending or failed.
          logger.warning(
               f"[FinalizePayment] Ignoring {result.outcome.value} result for completed checkout {checkout.tx_ref}"
          )
          return True
     if checkout.intent == PaymentIntent.DEPOSIT and checkout.payment_id:
          linked = count_months_for_payment(db, checkout.payment_id)
          if linked == 0:
               logger.warning(
                    f"[FinalizePayment] Checkout {checkout.tx_ref} completed but deposit not applied, re-applying "
                    f"(payment {checkout.payment_id})"
               )
               return False
          logger.debug(f"[FinalizePayment] Checkout {checkout.tx_ref} already applied to {linked} month(s)")
          return True
     logger.debug(f"[FinalizePayment] Checkout {checkout.tx_ref} already completed")
     return True


def _resolve_payment(
     db: Session,
     checkout: PaymentCheckout,
     student: Student,
     result: GatewayResult,
     now: datetime,
) -> Payment:
     payment = checkout.payment
     if payment is None:
          payment = db.query(Payment).filter(Payment.transaction_id == checkout.tx_ref).first()
     if payment is not None:
          logger.debug(f"[FinalizePayment] Using existing payment {payment.id} ({payment.status.value})")
          if result.is_success and payment.status != PaymentStatus.APPROVED:
               logger.info(f"[FinalizePayment] Payment {payment.id} approved after {payment.status.value}")
               payment.status = PaymentStatus.APPROVED
               payment.provider_status = result.provider_status or payment.provider_status
               db.flush()
          return payment

     status = PAYMENT_STATUS_BY_OUTCOME[result.outcome]
     if checkout.intent == PaymentIntent.DEPOSIT:
          reason = "Automated deposit via payment gateway"
     else:
          reason = "Automated payment via payment gateway"

     payment = Payment(
          student_id=checkout.student_id,
          student_name=student.name or "",
          payment_date=now,
          transaction_id=checkout.tx_ref,
          paid_amount=checkout.amount,
          reason=reason,
          status=status,
          currency=(result.currency or checkout.currency or student.classfee_currency or DEFAULT_CURRENCY).upper(),
          source=result.provider,
          intent=checkout.intent,
          provider_reference=result.provider_reference or checkout.tx_ref,
          provider_status=result.provider_status or result.outcome.value,
          provider_fee=result.provider_fee,
          provider_payload=result.provider_payload or {},
     )
     db.add(payment)
     db.flush()
     logger.info(f"[FinalizePayment] Created payment {payment.id} for {checkout.tx_ref} ({status.value})")
     return payment


def _apply_tuition(
     db: Session,
     checkout: PaymentCheckout,
     student: Student,
     payment: Payment,
     months: List[str],
     result: GatewayResult,
     now: datetime,
) -> None:
     """Gateway confirmation is final approval: every requested month becomes Paid."""
     currency = (checkout.currency or result.currency or student.classfee_currency or DEFAULT_CURRENCY).upper()
     amounts = split_evenly(checkout.amount, len(months), currency)
     class_fee = to_decimal(student.classfee)

     for month, paid_amount in zip(months, amounts):
          if class_fee > 0 and paid_amount > class_fee:
               capped = clamp_allocation(0, class_fee, paid_amount)
               logger.warning(
                    f"[FinalizePayment] Tuition share {paid_amount} for {month} exceeds class fee {class_fee}, "
                    f"capping to {capped}"
               )
               paid_amount = capped

          existing = find_month(db, checkout.student_id, month)
          if existing is not None:
               existing.paid_amount = paid_amount
               existing.payment_status = MonthPaymentStatus.PAID.value
               existing.payment_type = MonthPaymentType.AUTO.value
               existing.source = result.provider.value
               existing.provider_reference = result.provider_reference or existing.provider_reference
               existing.provider_status = result.provider_status or "success"
               if result.provider_payload:
                    existing.provider_payload = result.provider_payload
               existing.payment_id = payment.id
          else:
               db.add(MonthRecord(
                    student_id=checkout.student_id,
                    month=month,
                    paid_amount=paid_amount,
                    payment_status=MonthPaymentStatus.PAID.value,
                    payment_type=MonthPaymentType.AUTO.value,
                    start_date=now,
                    end_date=None,
                    is_free_month=False,
                    source=result.provider.value,
                    provider_reference=result.provider_reference or checkout.tx_ref,
                    provider_status=result.provider_status or "success",
                    provider_payload=result.provider_payload or {},
                    payment_id=payment.id,
               ))
          db.flush()
          logger.debug(f"[FinalizePayment] Tuition month {month} marked Paid ({paid_amount})")


def finalize_payment_by_tx_ref(db: Session, tx_ref: str, result: GatewayResult) -> PaymentCheckout:
     """
     Finalize the checkout identified by ``tx_ref`` with a gateway result.

     Raises:
          NotFoundError: Checkout or student does not exist
          InvariantViolationError: Deposit cannot be allocated (bad fee/amount)
     """
     checkout = get_checkout(db, tx_ref)
     if checkout.status == CheckoutStatus.COMPLETED and _already_applied(db, checkout, result):
          return checkout

     months = [month for month in checkout.requested_months if is_month_string(month)]
     if len(months) != len(checkout.requested_months):
          logger.warning(f"[FinalizePayment] Ignoring malformed months on checkout {tx_ref}: {checkout.months}")

     student = db.query(Student).filter(Student.id == checkout.student_id).first()
     if not student:
          raise NotFoundError(f"Student {checkout.student_id} not found", {"tx_ref": tx_ref, "student_id": checkout.student_id})

     now = datetime.utcnow()
     with unit_of_work(db):
          payment = _resolve_payment(db, checkout, student, result, now)

          metadata = dict(checkout.checkout_metadata or {})
          metadata.update({
               "finalizedAt": now.isoformat(),
               "providerStatus": result.provider_status or result.outcome.value,
               "paymentCreated": True,
          })
          checkout.payment_id = payment.id
          checkout.status = CHECKOUT_STATUS_BY_OUTCOME[result.outcome]
          checkout.checkout_metadata = metadata
          db.flush()

          if result.is_success:
               if checkout.intent == PaymentIntent.TUITION and months:
                    _apply_tuition(db, checkout, student, payment, months, result, now)
               elif checkout.intent == PaymentIntent.DEPOSIT:
                    logger.info(f"[FinalizePayment] Applying deposit {tx_ref} (payment {payment.id}) to months")
                    allocation = allocate_deposit(
                         db,
                         student_id=checkout.student_id,
                         amount=checkout.amount,
                         currency=checkout.currency or payment.currency,
                         payment_id=payment.id,
                         requested_months=months,
                         provenance=Provenance(
                              source=result.provider.value,
                              provider_reference=result.provider_reference or checkout.tx_ref,
                              provider_status=result.provider_status or "success",
                              provider_payload=result.provider_payload or {},
                         ),
                    )
                    if allocation.remaining_balance > 0:
                         logger.warning(
                              f"[FinalizePayment] Deposit {tx_ref} left {allocation.remaining_balance} unapplied"
                         )

     db.refresh(checkout)
     logger.info(f"[FinalizePayment] Finalized {tx_ref}: checkout {checkout.status.value}, payment {checkout.payment_id}")
     return checkout


def apply_deposit_payment_to_months(db: Session, payment_id: int) -> Optional[DepositAllocation]:
     """
     Apply an admin-approved deposit Payment to the student's existing unpaid months.

     No months are synthesized. Returns None (no-op) unless the Payment is
     Approved and not yet linked to any month.
     """
     payment = db.query(Payment).filter(Payment.id == payment_id).first()
     if not payment:
          raise NotFoundError(f"Payment {payment_id} not found", {"payment_id": payment_id})

     if payment.status != PaymentStatus.APPROVED:
          logger.debug(f"[ApplyDeposit] Payment {payment_id} is {payment.status.value}, nothing to apply")
          return None

     if count_months_for_payment(db, payment.id) > 0:
          logger.debug(f"[ApplyDeposit] Payment {payment_id} already applied")
          return None

     source = payment.source or PaymentSource.MANUAL
     with unit_of_work(db):
          allocation = allocate_deposit(
               db,
               student_id=payment.student_id,
               amount=payment.paid_amount,
               currency=payment.currency,
               payment_id=payment.id,
               requested_months=[],
               provenance=Provenance(
                    source=source.value,
                    provider_reference=payment.provider_reference or payment.transaction_id,
                    provider_status=payment.provider_status,
                    provider_payload=payment.provider_payload or {},
               ),
               extend=False,
          )
     logger.info(f"[ApplyDeposit] Payment {payment_id} applied to {allocation.months_applied} month(s)")
     return allocation
