# backend/lib/meter_core/billing.py
"""
Progressive-tier billing.

Every cost shown anywhere (dashboard estimate, generated bills, cost-over-time
charts, tier breakdowns) goes through ``walk_tiers`` so the numbers agree.
"""
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .errors import ValidationError
from .models import (Bill, BillStatus, MeterReading, PricingTier, new_id,
                     parse_datetime, to_decimal, utc_now)

ZERO = Decimal(0)
ONE = Decimal(1)
CENT = Decimal('0.01')
DAYS_PER_YEAR = Decimal('365.0')


def round_money(amount) -> Decimal:
    # ROUND_HALF_UP, not banker's rounding
    return to_decimal(amount, 'amount').quantize(CENT, rounding=ROUND_HALF_UP)


def sort_tiers(tiers: Iterable[PricingTier]) -> List[PricingTier]:
    """
    Return the tiers ordered by ascending threshold, rejecting tables that
    cannot be walked (negative numbers, shared thresholds).
    """
    ordered = sorted(tiers, key=lambda t: t.threshold)
    previous = None
    for tier in ordered:
        if tier.threshold < 0:
            raise ValidationError(f"tier '{tier.name}' has a negative threshold")
        if tier.rate_per_unit < 0:
            raise ValidationError(f"tier '{tier.name}' has a negative rate")
        if tier.inflation_factor <= -1:
            raise ValidationError(f"tier '{tier.name}' inflation factor must be greater than -1")
        if previous is not None and tier.threshold == previous.threshold:
            raise ValidationError(
                f"tiers '{previous.name}' and '{tier.name}' share threshold {tier.threshold}")
        previous = tier
    return ordered


def active_tiers(tiers: Iterable[PricingTier], as_of) -> List[PricingTier]:
    """Tiers whose validity window covers ``as_of``."""
    return [t for t in tiers if t.covers(as_of)]


def years_since(start: datetime, as_of: datetime) -> Decimal:
    """Whole days between the two dates (truncated toward zero) over 365."""
    days = int((as_of - start) / timedelta(days=1))
    return Decimal(days) / DAYS_PER_YEAR


def adjusted_rate(tier: PricingTier, as_of: datetime) -> Decimal:
    """Tier rate compounded by its annual inflation factor up to ``as_of``."""
    years = years_since(tier.start_date, as_of)
    if years == 0 or tier.inflation_factor == 0:
        return tier.rate_per_unit
    return tier.rate_per_unit * (ONE + tier.inflation_factor) ** years


def _checked_consumption(consumption) -> Decimal:
    value = to_decimal(consumption, 'consumption')
    if value < 0:
        raise ValidationError(f"consumption must be >= 0, got {value}")
    return value


def walk_tiers(consumption, tiers: Iterable[PricingTier]) -> Iterator[Tuple[PricingTier, Decimal]]:
    """
    Yield ``(tier, units)`` for every tier the consumption reaches.

    ``remaining`` starts at the full consumption and shrinks as tiers take
    their share. The first tier takes ``min(remaining, threshold)``. A later
    tier only takes units while ``remaining`` is above the previous tier's
    threshold, and then takes ``min(remaining, threshold) - previous
    threshold``. Whatever is left after the walk is yielded once more
    against the last tier, which is open-ended.
    """
    remaining = _checked_consumption(consumption)
    ordered = sort_tiers(tiers)
    if not ordered or remaining == 0:
        return

    previous = None
    for tier in ordered:
        if previous is None:
            in_tier = min(remaining, tier.threshold)
        elif remaining > previous.threshold:
            in_tier = min(remaining, tier.threshold) - previous.threshold
        else:
            in_tier = ZERO
        previous = tier
        if in_tier > 0:
            yield tier, in_tier
            remaining -= in_tier
        if remaining <= 0:
            return

    yield ordered[-1], remaining


def compute_cost(consumption, tiers: Iterable[PricingTier], as_of=None) -> Decimal:
    """
    Total cost of ``consumption`` units under the tier table as of a date.

    Empty tables and zero consumption cost nothing; negative consumption
    raises ValidationError.
    """
    as_of = parse_datetime(as_of, 'as_of') if as_of is not None else utc_now()
    total = ZERO
    for tier, units in walk_tiers(consumption, tiers):
        total += units * adjusted_rate(tier, as_of)
    return total


def tier_breakdown(consumption, tiers: Iterable[PricingTier]) -> Dict[str, Decimal]:
    """Units per tier name; the values always add up to ``consumption``."""
    breakdown: Dict[str, Decimal] = {}
    for tier, units in walk_tiers(consumption, tiers):
        breakdown[tier.name] = breakdown.get(tier.name, ZERO) + units
    return breakdown


class BillingEstimator:
    def __init__(self, tiers: Iterable[PricingTier]):
        """
        tiers: pricing tier snapshot, in any order
        """
        self.tiers = sort_tiers(tiers)

    def cost_for(self, consumption, as_of=None) -> Decimal:
        """Cost of a single consumption figure, rounded to cents."""
        return round_money(compute_cost(consumption, self.tiers, as_of))

    def estimate_cost(self, usage_by_period: Dict[str, Decimal], as_of=None) -> Decimal:
        """
        usage_by_period: dict like {'2025-11-01': Decimal('3.4'), ...}
        Tiers apply to the summed usage, not per period.
        """
        total = sum((to_decimal(v, 'usage') for v in usage_by_period.values()), ZERO)
        return self.cost_for(total, as_of)

    def breakdown(self, consumption) -> Dict[str, Decimal]:
        return tier_breakdown(consumption, self.tiers)


# =============================================================================
# BILL GENERATION
# =============================================================================

def total_consumption(readings: Iterable[MeterReading]) -> Decimal:
    return sum((r.consumption for r in readings), ZERO)


def build_bill(user_id: str, readings: Iterable[MeterReading], tiers: Iterable[PricingTier],
               start: datetime, end: datetime, generated_at: Optional[datetime] = None,
               bill_id: Optional[str] = None) -> Bill:
    """
    Derive a bill for ``[start, end]`` from a reading snapshot.

    Only readings dated inside the period count; the amount is priced with
    the tiers as of ``generated_at``.
    """
    start = parse_datetime(start, 'start_date')
    end = parse_datetime(end, 'end_date')
    if end < start:
        raise ValidationError("bill end date is before its start date")
    generated_at = generated_at or utc_now()

    units = total_consumption(r for r in readings if start <= r.date <= end)
    amount = round_money(compute_cost(units, tiers, generated_at))
    return Bill(
        id=bill_id or new_id(),
        user_id=user_id,
        start_date=start,
        end_date=end,
        total_units=units,
        total_amount=amount,
        generated_at=generated_at,
        status=BillStatus.UNPAID,
    )


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_period(year: int, month: int) -> Tuple[datetime, datetime]:
    """First instant and last microsecond of a calendar month."""
    start = datetime(year, month, 1)
    next_year, next_month = _shift_month(year, month, 1)
    return start, datetime(next_year, next_month, 1) - timedelta(microseconds=1)


def current_month_period(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    now = now or utc_now()
    return month_period(now.year, now.month)


def previous_billing_period(today: Optional[datetime] = None, months: int = 1) -> Tuple[datetime, datetime]:
    """
    The ``months`` calendar months that ended just before ``today``'s month.
    """
    today = today or utc_now()
    start_year, start_month = _shift_month(today.year, today.month, -months)
    start = datetime(start_year, start_month, 1)
    end = datetime(today.year, today.month, 1) - timedelta(microseconds=1)
    return start, end


def is_billing_day(today: Optional[datetime] = None) -> bool:
    """Automatic bills are raised on the 1st of odd-numbered months."""
    today = today or utc_now()
    return today.day == 1 and today.month % 2 == 1
