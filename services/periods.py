# services/periods.py
"""
Month-string arithmetic and money rounding used across the payment engine.

Months are ``YYYY-MM`` strings. Month rows store whole currency units, so
every amount that lands on a month goes through ``to_whole_units`` (half-up),
and the only place that caps an amount against the class fee is
``clamp_allocation``.
"""
import calendar
import re
from datetime import date, datetime
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import List, Optional, Tuple, Union


MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")

ZERO_DECIMAL_CURRENCIES = frozenset({
     "BIF",
     "CLP",
     "DJF",
     "GNF",
     "JPY",
     "KMF",
     "KRW",
     "MGA",
     "PYG",
     "RWF",
     "UGX",
     "VND",
     "VUV",
     "XAF",
     "XOF",
     "XPF",
})

DEFAULT_CURRENCY = "ETB"

Number = Union[int, float, Decimal, str]


# ---------------------------------------------------------------------------
# Months
# ---------------------------------------------------------------------------

def format_month(value: Union[date, datetime]) -> str:
     """Format a date as ``YYYY-MM``."""
     return f"{value.year:04d}-{value.month:02d}"


def parse_month(month: str) -> Tuple[int, int]:
     """
     Split a ``YYYY-MM`` string into (year, month).

     Raises:
          ValueError: If the string is not a valid month.
     """
     match = MONTH_PATTERN.match(month or "")
     if not match:
          raise ValueError(f"Invalid month string: {month!r}")
     year, month_number = int(match.group(1)), int(match.group(2))
     if not 1 <= month_number <= 12:
          raise ValueError(f"Invalid month number in {month!r}")
     return year, month_number


def is_month_string(value) -> bool:
     if not isinstance(value, str):
          return False
     try:
          parse_month(value)
     except ValueError:
          return False
     return True


def add_months(value: Union[date, datetime, str], count: int) -> str:
     """Shift a date or month string by ``count`` calendar months."""
     if isinstance(value, str):
          year, month = parse_month(value)
     else:
          year, month = value.year, value.month
     index = year * 12 + (month - 1) + count
     return f"{index // 12:04d}-{index % 12 + 1:02d}"


def shift_datetime(value: datetime, count: int) -> datetime:
     """Move a datetime by ``count`` calendar months, clamping the day to the target month."""
     year, month = parse_month(add_months(value, count))
     day = min(value.day, calendar.monthrange(year, month)[1])
     return value.replace(year=year, month=month, day=day)


def next_month(month: str) -> str:
     """The month after ``month``; malformed input falls back to the current month."""
     try:
          return add_months(month, 1)
     except ValueError:
          return format_month(date.today())


def generate_months(start: Union[date, datetime, str], count: int) -> List[str]:
     """``count`` consecutive months beginning at ``start``, de-duplicated."""
     months: List[str] = []
     for offset in range(max(count, 0)):
          month = add_months(start, offset)
          if month not in months:
               months.append(month)
     return months


def generate_month_strings(start_date: Union[date, datetime], end_date: Union[date, datetime]) -> List[str]:
     """Every month from start_date's month through end_date's month, inclusive."""
     months: List[str] = []
     current = format_month(start_date)
     last = format_month(end_date)
     while current <= last:
          months.append(current)
          current = add_months(current, 1)
     return months


def month_bounds(month: str) -> Tuple[datetime, datetime]:
     """First and last second of a calendar month."""
     year, month_number = parse_month(month)
     last_day = calendar.monthrange(year, month_number)[1]
     return (
          datetime(year, month_number, 1, 0, 0, 0),
          datetime(year, month_number, last_day, 23, 59, 59),
     )


# ---------------------------------------------------------------------------
# Money
# ---------------------------------------------------------------------------

def to_decimal(value: Optional[Number]) -> Decimal:
     if value is None:
          return Decimal("0")
     if isinstance(value, Decimal):
          return value
     if isinstance(value, float):
          return Decimal(str(value))
     return Decimal(value)


def is_zero_decimal(currency: Optional[str]) -> bool:
     return (currency or "").upper() in ZERO_DECIMAL_CURRENCIES


def round_half_up(value: Number, places: int = 0) -> Decimal:
     """Round like a cashier: 0.5 goes up."""
     exponent = Decimal(1).scaleb(-places)
     return to_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP)


def to_whole_units(value: Number) -> int:
     return int(round_half_up(value, 0))


def normalize_amount(amount: Number, currency: Optional[str]) -> Decimal:
     """Zero-decimal currencies round to whole units, everything else to cents."""
     places = 0 if is_zero_decimal(currency) else 2
     return round_half_up(amount, places)


def from_minor_units(amount: Optional[int], currency: Optional[str]) -> Decimal:
     """Convert a gateway amount in minor units (cents) to major units."""
     value = to_decimal(amount or 0)
     if is_zero_decimal(currency):
          return value
     return round_half_up(value / 100, 2)


def split_evenly(total: Number, count: int, currency: Optional[str]) -> List[int]:
     """
     Tuition split: the per-month share is rounded for the currency first,
     then to a whole unit, and every month gets the same value.
     """
     if count <= 0:
          return []
     share = normalize_amount(to_decimal(total) / count, currency)
     return [to_whole_units(share)] * count


def split_with_remainder(total: int, count: int) -> List[int]:
     """
     Floor-divide ``total`` across ``count`` months; the last month absorbs
     the remainder so the parts always sum to ``total``.
     """
     if count < 1:
          raise ValueError("count must be at least 1")
     base = total // count
     return [base] * (count - 1) + [total - base * (count - 1)]


def clamp_allocation(already_paid: Number, class_fee: Number, proposed: Number) -> int:
     """
     The amount that may actually be applied to a month.

     ``proposed`` is rounded half-up to a whole unit and capped so that
     ``already_paid + actual <= class_fee``. Never negative.
     """
     headroom = to_decimal(class_fee) - to_decimal(already_paid)
     if headroom <= 0:
          return 0
     cap = int(headroom.to_integral_value(rounding=ROUND_FLOOR))
     return max(0, min(to_whole_units(proposed), cap))
