# services/proration.py
"""
Proration for subscription upgrades and downgrades.

Every month counts as 30 days so the same plan always prorates the same way
regardless of calendar length (3 months = 90 days). Money is rounded to cents.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Tuple

from services.periods import round_half_up, shift_datetime, to_decimal

STANDARD_DAYS_PER_MONTH = 30


@dataclass
class ProrationResult:
     credit_amount: Decimal
     net_amount: Decimal
     days_used: int
     days_remaining: int
     current_daily_rate: Decimal
     new_daily_rate: Decimal
     current_monthly_rate: Decimal
     new_monthly_rate: Decimal
     total_days: int

     @property
     def is_credit(self) -> bool:
          """Net negative: the unused time is worth more than the new plan."""
          return self.net_amount < 0


def calculate_proration(
     current_price,
     current_duration: int,
     new_price,
     new_duration: int,
     original_start_date: datetime,
     change_date: datetime,
) -> ProrationResult:
     """
     Credit the unused part of the current plan against the new plan's price.

     Args:
          current_price: Price of the current package (whole duration)
          current_duration: Current package length in months
          new_price: Price of the new package (whole duration)
          new_duration: New package length in months
          original_start_date: When the current cycle started
          change_date: When the upgrade/downgrade happens

     Raises:
          ValueError: If either duration is not positive
     """
     if current_duration <= 0 or new_duration <= 0:
          raise ValueError("Package durations must be positive")

     current_price = to_decimal(current_price)
     new_price = to_decimal(new_price)

     total_days = current_duration * STANDARD_DAYS_PER_MONTH
     days_used = max(0, (change_date - original_start_date) // timedelta(days=1))
     days_remaining = max(0, total_days - days_used)

     current_monthly_rate = current_price / current_duration
     new_monthly_rate = new_price / new_duration
     current_daily_rate = current_price / total_days
     new_daily_rate = new_monthly_rate / STANDARD_DAYS_PER_MONTH

     credit_amount = current_daily_rate * days_remaining
     net_amount = new_price - credit_amount

     return ProrationResult(
          credit_amount=round_half_up(credit_amount, 2),
          net_amount=round_half_up(net_amount, 2),
          days_used=days_used,
          days_remaining=days_remaining,
          current_daily_rate=round_half_up(current_daily_rate, 2),
          new_daily_rate=round_half_up(new_daily_rate, 2),
          current_monthly_rate=round_half_up(current_monthly_rate, 2),
          new_monthly_rate=round_half_up(new_monthly_rate, 2),
          total_days=total_days,
     )


def calculate_new_subscription_dates(change_date: datetime, new_duration: int) -> Tuple[datetime, datetime]:
     """New cycle: start of the change day through the end of the day ``new_duration`` months later."""
     start_date = change_date.replace(hour=0, minute=0, second=0, microsecond=0)
     end_date = shift_datetime(start_date, new_duration).replace(hour=23, minute=59, second=59, microsecond=999000)
     return start_date, end_date
