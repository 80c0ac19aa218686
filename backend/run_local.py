# backend/run_local.py
import sys
from pathlib import Path

from backend.lib.config import Config
from backend.lib.meter_core.io import parse_csv_string
from backend.lib.wiring import build_tracker

DEFAULT_TIERS = [
    {"name": "Tier 1", "rate_per_unit": "0.50", "threshold": "100", "start_date": "2020-01-01"},
    {"name": "Tier 2", "rate_per_unit": "1.00", "threshold": "300", "start_date": "2020-01-01"},
]


def main(csv_path, data_dir="backend/data"):
    config = Config.from_env()
    config.data_dir = data_dir
    tracker = build_tracker(config)

    readings = tracker.import_readings(parse_csv_string(Path(csv_path).read_text()))
    print(f"Imported {len(readings)} readings:")
    for r in readings:
        print(f" - {r.user_id} @ {r.date.isoformat()} : {r.reading_value} (+{r.consumption} kWh)")

    for user_id in sorted({r.user_id for r in readings}):
        if not tracker.get_tiers(user_id):
            tracker.replace_tiers(user_id, DEFAULT_TIERS)
        units = sum(r.consumption for r in readings if r.user_id == user_id)
        print(f"{user_id}: {units} kWh -> {tracker.cost_for(user_id, units)} {config.default_currency}")


if __name__ == "__main__":
    csv = sys.argv[1] if len(sys.argv) > 1 else "tests/sample.csv"
    main(csv)
