# backend/lib/meter_core/processor.py
import logging
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from .billing import ZERO, compute_cost
from .models import MeterReading, PricingTier, to_decimal

logger = logging.getLogger(__name__)


def consumption_since(previous: Optional[MeterReading], reading_value) -> Decimal:
    """
    Units used since ``previous``. The first reading counts its own value.
    A drop in the meter (reset or rollover) is clamped to zero.
    """
    value = to_decimal(reading_value, 'reading_value')
    if previous is None:
        return value
    delta = value - previous.reading_value
    if delta < 0:
        logger.warning("Meter value dropped from %s to %s; treating consumption as 0",
                       previous.reading_value, value)
        return ZERO
    return delta


def derive_consumption(readings: Iterable[MeterReading]) -> List[MeterReading]:
    """
    Recompute ``consumption`` for one user's cumulative readings in date
    order. Returns copies; only records whose value changed are marked dirty.
    """
    result = []
    previous = None
    for reading in sorted(readings, key=lambda r: r.date):
        consumption = consumption_since(previous, reading.reading_value)
        if consumption != reading.consumption:
            reading = replace(reading, consumption=consumption, is_synced=False)
        result.append(reading)
        previous = reading
    return result


class EnergyAnalyzer:
    def __init__(self, readings: List[MeterReading]):
        # Ensure readings are sorted by date
        self.readings = sorted(readings, key=lambda r: (r.user_id, r.date))

    def total_consumption(self) -> Decimal:
        return sum((r.consumption for r in self.readings), ZERO)

    def daily_usage(self) -> Dict[str, Decimal]:
        """
        Returns a dict keyed by 'YYYY-MM-DD' -> consumption.

        Uses the per-reading consumption delta, not the cumulative meter value.
        """
        daily = defaultdict(lambda: ZERO)
        for r in self.readings:
            daily[r.date.strftime("%Y-%m-%d")] += r.consumption
        return dict(daily)

    def monthly_usage(self) -> Dict[str, Decimal]:
        """
        Aggregates the daily_usage into monthly totals (YYYY-MM).
        """
        monthly = defaultdict(lambda: ZERO)
        for day_str, units in self.daily_usage().items():
            monthly[day_str[:7]] += units
        return dict(monthly)

    def cost_over_time(self, tiers: List[PricingTier]) -> Dict[str, Decimal]:
        """
        Monthly cost, each month priced on its own with the tiers as of the
        first day of that month.
        """
        costs = {}
        for month, units in sorted(self.monthly_usage().items()):
            as_of = datetime.strptime(month, "%Y-%m")
            costs[month] = compute_cost(units, tiers, as_of)
        return costs

    def detect_spikes(self, threshold_pct: float = 50.0) -> List[Tuple[str, Decimal, Decimal]]:
        """
        Detects spikes where day N increased by more than threshold_pct compared to previous day.
        Returns list of tuples: (date_str, prev_total, curr_total)
        """
        items = sorted(self.daily_usage().items())
        threshold = to_decimal(threshold_pct, 'threshold_pct')
        spikes = []
        for i in range(1, len(items)):
            prev_date, prev_val = items[i - 1]
            curr_date, curr_val = items[i]
            if prev_val == 0:
                continue
            change_pct = (curr_val - prev_val) / prev_val * 100
            if change_pct > threshold:
                spikes.append((curr_date, prev_val, curr_val))
        return spikes

    def predict(self, days: int = 30) -> List[Tuple[str, float]]:
        """
        Least-squares line through (days since first reading, consumption),
        extended ``days`` days past the last reading. Needs two readings.
        """
        if len(self.readings) < 2:
            return []
        origin = self.readings[0].date
        xs = [(r.date - origin) / timedelta(days=1) for r in self.readings]
        ys = [float(r.consumption) for r in self.readings]
        n = len(xs)
        mean_x = sum(xs) / n
        mean_y = sum(ys) / n
        denom = sum((x - mean_x) ** 2 for x in xs)
        slope = 0.0 if denom == 0 else sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys)) / denom
        intercept = mean_y - slope * mean_x

        last = xs[-1]
        points = []
        for i in range(1, days + 1):
            x = last + i
            day = origin + timedelta(days=x)
            points.append((day.strftime("%Y-%m-%d"), round(slope * x + intercept, 4)))
        return points


def energy_saving_suggestion(month_readings: List[MeterReading], today: datetime) -> Optional[str]:
    """Tip text based on this month's average daily usage, or None without data."""
    if not month_readings:
        return None
    total = sum((r.consumption for r in month_readings), ZERO)
    average = total / today.day
    if average > 20:
        return (f"Your average daily usage is high ({average:.1f} kWh). Try unplugging unused "
                "devices and using LED bulbs to save energy.")
    if average > 15:
        return "Consider running appliances during off-peak hours to reduce your electricity costs."
    if len(month_readings) < 10:
        return "Track your usage more frequently to identify patterns and optimize your consumption."
    return "Great job on your energy usage! Keep monitoring to maintain efficient consumption."
