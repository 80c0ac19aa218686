# tests/test_processor.py
from datetime import datetime
from decimal import Decimal

from backend.lib.meter_core.processor import (EnergyAnalyzer, consumption_since,
                                              derive_consumption, energy_saving_suggestion)


def make_readings(make_reading):
    # Create sample readings across two days
    return [
        make_reading(datetime(2025, 11, 1, 0, 0), consumption="1.0"),
        make_reading(datetime(2025, 11, 1, 1, 0), consumption="1.5"),
        make_reading(datetime(2025, 11, 2, 0, 0), consumption="5.0"),  # spike
        make_reading(datetime(2025, 11, 2, 1, 0), consumption="2.0"),
    ]


def test_daily_and_spike_detection(make_reading):
    analyzer = EnergyAnalyzer(make_readings(make_reading))
    daily = analyzer.daily_usage()
    assert daily["2025-11-01"] == Decimal("2.5")
    assert daily["2025-11-02"] == Decimal("7.0")
    spikes = analyzer.detect_spikes(threshold_pct=50.0)
    # prev=2.5, curr=7.0 -> change = 180% -> should be flagged
    assert len(spikes) == 1
    assert spikes[0][0] == "2025-11-02"


def test_monthly_usage_and_cost(make_reading, make_tier):
    readings = make_readings(make_reading) + [make_reading(datetime(2025, 12, 3), consumption="10")]
    analyzer = EnergyAnalyzer(readings)
    assert analyzer.monthly_usage() == {"2025-11": Decimal("9.5"), "2025-12": Decimal("10")}
    costs = analyzer.cost_over_time([make_tier("Flat", "0.2", "1000")])
    assert costs == {"2025-11": Decimal("1.9"), "2025-12": Decimal("2.0")}


def test_consumption_from_cumulative_values(make_reading):
    readings = [
        make_reading(datetime(2025, 11, 3), reading_value="150"),
        make_reading(datetime(2025, 11, 1), reading_value="100"),
        make_reading(datetime(2025, 11, 4), reading_value="140"),  # meter reset
        make_reading(datetime(2025, 11, 5), reading_value="200"),
    ]
    derived = derive_consumption(readings)
    assert [r.reading_value for r in derived] == [Decimal(v) for v in ("100", "150", "140", "200")]
    assert [r.consumption for r in derived] == [Decimal(v) for v in ("100", "50", "0", "60")]


def test_first_reading_counts_its_own_value(make_reading):
    assert consumption_since(None, "1200") == Decimal("1200")
    previous = make_reading(datetime(2025, 11, 1), reading_value="1200")
    assert consumption_since(previous, "1275.5") == Decimal("75.5")


def test_prediction_follows_linear_trend(make_reading):
    readings = [
        make_reading(datetime(2025, 11, 1), consumption="10"),
        make_reading(datetime(2025, 11, 2), consumption="20"),
        make_reading(datetime(2025, 11, 3), consumption="30"),
    ]
    points = EnergyAnalyzer(readings).predict(days=2)
    assert points == [("2025-11-04", 40.0), ("2025-11-05", 50.0)]
    assert EnergyAnalyzer(readings[:1]).predict() == []


def test_energy_saving_suggestion(make_reading):
    today = datetime(2025, 11, 10)
    heavy = [make_reading(datetime(2025, 11, 5), consumption="250")]
    assert energy_saving_suggestion(heavy, today).startswith("Your average daily usage is high (25.0 kWh)")
    light = [make_reading(datetime(2025, 11, 5), consumption="20")]
    assert energy_saving_suggestion(light, today).startswith("Track your usage more frequently")
    assert energy_saving_suggestion([], today) is None
