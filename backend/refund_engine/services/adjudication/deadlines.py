"""
Deadlines

AUTHORITY: SYSTEM
Business-day arithmetic, limitation windows and value-band SLAs.

Key behaviors:
- Business days skip weekends and configured holidays
- Limitation windows are per transaction category (Art. 6.1)
- Decision and disbursement SLAs scale with the refund value (Art. 11.1(d))
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from dateutil.relativedelta import relativedelta

from ...models.db_models import TransactionCategory, RefundGround


def utcnow() -> datetime:
    """Naive UTC timestamp used throughout the engine."""
    return datetime.utcnow()


def is_business_day(day: date, holidays: Iterable[date] = ()) -> bool:
    return day.weekday() < 5 and day not in set(holidays)


def add_business_days(start: date, days: int, holidays: Iterable[date] = ()) -> date:
    """Date `days` business days after `start` (start itself not counted)."""
    holidays = set(holidays)
    current = start
    counted = 0
    while counted < days:
        current += timedelta(days=1)
        if current.weekday() < 5 and current not in holidays:
            counted += 1
    return current


def business_days_between(start: date, end: date, holidays: Iterable[date] = ()) -> int:
    """Business days after `start` up to and including `end`. Zero if end <= start."""
    holidays = set(holidays)
    count = 0
    current = start
    while current < end:
        current += timedelta(days=1)
        if current.weekday() < 5 and current not in holidays:
            count += 1
    return count


# =============================================================================
# LIMITATION WINDOWS (Art. 6.1)
# =============================================================================

INVESTMENT_CATEGORIES = frozenset({
    TransactionCategory.SUBSCRIPTION_PRE_ALLOTMENT,
    TransactionCategory.SUBSCRIPTION_POST_ALLOTMENT,
    TransactionCategory.SHARE_PURCHASE,
})

LIMITATION_CONFIG = {
    "investment": {"days": 90, "business_days": False, "clause": "Art. 6.1(a)"},
    TransactionCategory.ADVISORY_SERVICE: {"days": 30, "business_days": False, "clause": "Art. 6.1(b)"},
    TransactionCategory.PLATFORM_FEE: {"days": 15, "business_days": False, "clause": "Art. 6.1(c)"},
    TransactionCategory.TECHNICAL_ERROR: {"days": 7, "business_days": True, "clause": "Art. 6.1(d)"},
    "statutory": {"days": 180, "business_days": False, "clause": "Art. 6.1(e)"},
}

STATUTORY_GROUNDS = frozenset({RefundGround.REGULATORY_NON_COMPLIANCE})


def limitation_deadline(
    category: TransactionCategory,
    grounds: Iterable[RefundGround],
    event_date: date,
    billing_cycle_end: Optional[date] = None,
    holidays: Iterable[date] = (),
) -> Tuple[date, str]:
    """
    Last day a refund request may be submitted.

    Returns (deadline, clause)
    """
    if STATUTORY_GROUNDS.intersection(grounds):
        config = LIMITATION_CONFIG["statutory"]
    elif category in INVESTMENT_CATEGORIES:
        config = LIMITATION_CONFIG["investment"]
    else:
        config = LIMITATION_CONFIG[category]

    anchor = event_date
    if category == TransactionCategory.PLATFORM_FEE and billing_cycle_end:
        anchor = billing_cycle_end

    if config["business_days"]:
        return add_business_days(anchor, config["days"], holidays), config["clause"]
    return anchor + timedelta(days=config["days"]), config["clause"]


# =============================================================================
# VALUE-BAND SLAS (Art. 11.1(d))
# =============================================================================

@dataclass(frozen=True)
class ValueBand:
    name: str
    ceiling: Optional[Decimal]  # Inclusive upper bound; None for the top band
    acknowledgment_days: int
    decision_days: int
    disbursement_days: int


VALUE_BANDS = (
    ValueBand("up_to_1_lakh", Decimal("100000"), 1, 7, 3),
    ValueBand("up_to_10_lakh", Decimal("1000000"), 2, 15, 5),
    ValueBand("up_to_25_lakh", Decimal("2500000"), 2, 21, 7),
    ValueBand("above_25_lakh", None, 3, 30, 10),
)


def value_band(amount: Decimal) -> ValueBand:
    for band in VALUE_BANDS:
        if band.ceiling is None or amount <= band.ceiling:
            return band
    return VALUE_BANDS[-1]


# =============================================================================
# RETENTION (Art. 11.4(b))
# =============================================================================

RETENTION_YEARS = 5
HIGH_VALUE_RETENTION_YEARS = 8
HIGH_VALUE_RETENTION_CUTOFF = Decimal("2500000")


def retention_until(submitted: date, amount: Decimal) -> date:
    years = HIGH_VALUE_RETENTION_YEARS if amount > HIGH_VALUE_RETENTION_CUTOFF else RETENTION_YEARS
    return submitted + relativedelta(years=years)
