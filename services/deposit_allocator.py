# services/deposit_allocator.py
"""
Deposit Allocator - spreads one lump payment across a student's months.

Queue priority:
1. Months explicitly requested by the checkout
2. Existing unpaid (not Paid, not free) Month rows, oldest first
3. Synthesized future months, starting after the latest known month

Each month receives at most ``class_fee - already_paid`` (whole units). The
allocator only flushes; the caller owns the transaction.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from models import MonthRecord, MonthPaymentStatus, MonthPaymentType, Student
from services.errors import InvariantViolationError, NotFoundError
from services.periods import (
     clamp_allocation,
     format_month,
     is_month_string,
     next_month,
     normalize_amount,
     to_decimal,
     to_whole_units,
)

logger = logging.getLogger(__name__)

# Upper bound on future months generated for a single deposit.
MAX_SYNTHESIZED_MONTHS = 120


@dataclass
class Provenance:
     """Where the money came from; copied onto every Month row touched."""
     source: Optional[str] = None
     provider_reference: Optional[str] = None
     provider_status: Optional[str] = None
     provider_payload: Optional[Dict[str, Any]] = None


@dataclass
class MonthAllocation:
     month: str
     amount: int
     paid_total: int
     fully_covered: bool


@dataclass
class DepositAllocation:
     months_applied: int = 0
     remaining_balance: Decimal = Decimal("0")
     allocations: List[MonthAllocation] = field(default_factory=list)


def find_month(db: Session, student_id: int, month: str) -> Optional[MonthRecord]:
     return (
          db.query(MonthRecord)
          .filter(MonthRecord.student_id == student_id, MonthRecord.month == month)
          .first()
     )


def get_unpaid_months(db: Session, student_id: int) -> List[MonthRecord]:
     """Month rows that still owe money, oldest first. Free months never owe."""
     return (
          db.query(MonthRecord)
          .filter(
               MonthRecord.student_id == student_id,
               MonthRecord.payment_status != MonthPaymentStatus.PAID.value,
               or_(MonthRecord.is_free_month.is_(None), MonthRecord.is_free_month.is_(False)),
          )
          .order_by(MonthRecord.month.asc())
          .all()
     )


def get_latest_month(db: Session, student_id: int) -> Optional[str]:
     latest = (
          db.query(MonthRecord.month)
          .filter(MonthRecord.student_id == student_id)
          .order_by(MonthRecord.month.desc())
          .first()
     )
     return latest[0] if latest else None


class _AllocationQueue:
     """Ordered, de-duplicated month queue that can grow into the future."""

     def __init__(self, extend: bool):
          self.items: List[str] = []
          self._seen = set()
          self.extend = extend
          self.next_auto: Optional[str] = None
          self.synthesized = 0

     def add(self, month: Optional[str]) -> None:
          if not month or month in self._seen:
               return
          self._seen.add(month)
          self.items.append(month)

     def synthesize(self) -> bool:
          """Append the next future month. False once no month can be produced."""
          if not self.extend or self.next_auto is None:
               return False
          if self.synthesized >= MAX_SYNTHESIZED_MONTHS:
               return False
          month = self.next_auto
          self.next_auto = next_month(month)
          self.synthesized += 1
          logger.debug(f"[DepositAllocator] Synthesized month {month}")
          self.add(month)
          return True


def _initial_auto_month(queue: _AllocationQueue, latest_month: Optional[str], student: Student) -> str:
     # Continues after the last queued month, which is the oldest unpaid one when
     # later months were requested, so gaps between them are filled first.
     if queue.items:
          return next_month(queue.items[-1])
     if latest_month:
          return next_month(latest_month)
     if student.start_date:
          return format_month(student.start_date)
     return format_month(date.today())


def _write_month(
     db: Session,
     student_id: int,
     month: str,
     existing: Optional[MonthRecord],
     paid_total: int,
     fully_covered: bool,
     payment_id: Optional[int],
     provenance: Provenance,
) -> MonthRecord:
     status = MonthPaymentStatus.PAID if fully_covered else MonthPaymentStatus.PENDING
     payment_type = MonthPaymentType.AUTO if fully_covered else MonthPaymentType.PARTIAL
     provider_status = provenance.provider_status or ("success" if fully_covered else "partial")
     payload = provenance.provider_payload if provenance.provider_payload is not None else {}

     if existing is None:
          existing = MonthRecord(
               student_id=student_id,
               month=month,
               start_date=datetime.utcnow(),
               end_date=None,
               is_free_month=False,
          )
          db.add(existing)

     existing.paid_amount = paid_total
     existing.payment_status = status.value
     existing.payment_type = payment_type.value
     existing.source = provenance.source
     existing.provider_reference = provenance.provider_reference
     existing.provider_status = provider_status
     existing.provider_payload = payload
     existing.payment_id = payment_id
     db.flush()
     return existing


def allocate_deposit(
     db: Session,
     student_id: int,
     amount,
     currency: Optional[str],
     payment_id: Optional[int],
     requested_months: Optional[List[str]] = None,
     provenance: Optional[Provenance] = None,
     extend: bool = True,
) -> DepositAllocation:
     """
     Distribute ``amount`` across the student's month queue.

     Args:
          db: Session inside the caller's unit of work
          student_id: Student receiving the deposit
          amount: Deposit amount in major units
          currency: Deposit currency (controls pre-rounding)
          payment_id: Payment every touched Month row is linked to
          requested_months: Months the checkout asked for, highest priority
          provenance: Gateway fields copied onto each Month row
          extend: Synthesize future months once the queue is exhausted

     Returns:
          DepositAllocation with months_applied, the unapplied remainder and
          a per-month breakdown.

     Raises:
          NotFoundError: Student does not exist
          InvariantViolationError: Class fee or deposit amount is not positive
     """
     provenance = provenance or Provenance()

     student = db.query(Student).filter(Student.id == student_id).first()
     if not student:
          raise NotFoundError(f"Student {student_id} not found", {"student_id": student_id, "stage": "allocate_deposit"})

     class_fee = to_decimal(student.classfee)
     if class_fee <= 0:
          logger.error(f"[DepositAllocator] Invalid class fee {class_fee} for student {student_id}")
          raise InvariantViolationError(
               "Class fee must be positive to apply a deposit",
               {"student_id": student_id, "class_fee": str(class_fee), "payment_id": payment_id},
          )

     remaining = normalize_amount(amount, currency)
     if remaining <= 0:
          logger.error(f"[DepositAllocator] Invalid deposit amount {amount} for student {student_id}")
          raise InvariantViolationError(
               "Deposit amount must be positive",
               {"student_id": student_id, "amount": str(amount), "payment_id": payment_id},
          )

     logger.info(
          f"[DepositAllocator] Applying {remaining} {currency or ''} to student {student_id} "
          f"(class fee {class_fee}, payment {payment_id})"
     )

     queue = _AllocationQueue(extend=extend)
     for month in requested_months or []:
          if is_month_string(month):
               queue.add(month)
          else:
               logger.debug(f"[DepositAllocator] Ignoring malformed requested month {month!r}")
     for record in get_unpaid_months(db, student_id):
          queue.add(record.month)
     queue.next_auto = _initial_auto_month(queue, get_latest_month(db, student_id), student)

     if queue.items:
          logger.debug(f"[DepositAllocator] Queue: {queue.items}")
     else:
          logger.debug(f"[DepositAllocator] No unpaid months for student {student_id}, future months will be generated")

     result = DepositAllocation()
     processed = set()
     index = 0

     while remaining > 0:
          if to_whole_units(remaining) <= 0:
               logger.debug(f"[DepositAllocator] Remaining {remaining} is below one unit, stopping")
               break

          if index >= len(queue.items):
               if not queue.synthesize():
                    logger.debug(
                         f"[DepositAllocator] No further months available, stopping with {remaining} unapplied"
                    )
                    break
               continue

          month = queue.items[index]
          index += 1
          if month in processed:
               continue
          processed.add(month)

          existing = find_month(db, student_id, month)
          if existing is not None and existing.is_free_month:
               logger.debug(f"[DepositAllocator] {month} is a free month, skipping")
               continue
          already_paid = (existing.paid_amount or 0) if existing else 0
          needed = class_fee - already_paid

          if needed <= 0:
               logger.debug(f"[DepositAllocator] {month} already fully paid ({already_paid}/{class_fee}), skipping")
               continue

          proposed = min(remaining, needed)
          actual = clamp_allocation(already_paid, class_fee, proposed)
          if actual != to_whole_units(proposed):
               logger.debug(f"[DepositAllocator] {month} allocation capped from {proposed} to {actual}")
          if actual <= 0:
               logger.debug(f"[DepositAllocator] {month} has no whole unit of headroom, skipping")
               continue

          paid_total = already_paid + actual
          fully_covered = paid_total >= class_fee
          logger.debug(
               f"[DepositAllocator] {month}: +{actual} (paid {already_paid} -> {paid_total} of {class_fee}, "
               f"{'full' if fully_covered else 'partial'})"
          )
          _write_month(db, student_id, month, existing, paid_total, fully_covered, payment_id, provenance)

          remaining -= actual
          result.months_applied += 1
          result.allocations.append(MonthAllocation(month, actual, paid_total, fully_covered))

     result.remaining_balance = max(remaining, Decimal("0"))
     logger.info(
          f"[DepositAllocator] Completed for student {student_id}: "
          f"{result.months_applied} month(s) applied, {result.remaining_balance} remaining"
     )
     return result
