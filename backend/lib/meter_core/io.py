# backend/lib/meter_core/io.py
import csv
from io import StringIO
from typing import List, Optional

from .errors import ValidationError
from .models import MeterReading, new_id, parse_datetime, to_decimal


def parse_csv_string(csv_text: str, user_id: Optional[str] = None) -> List[MeterReading]:
    """
    Parse CSV text with header: user_id,date,reading_value[,notes]
    Dates should be ISO8601, e.g. 2025-11-01T00:00:00Z
    reading_value is the cumulative meter value; consumption is derived later.

    If ``user_id`` is given it overrides the column, which may then be omitted.
    """
    f = StringIO(csv_text.strip())
    reader = csv.DictReader(f)
    readings = []
    for line_no, row in enumerate(reader, start=2):
        owner = user_id or (row.get('user_id') or '').strip()
        # Basic validation
        if not owner or not row.get('date') or not row.get('reading_value'):
            raise ValidationError(f"Missing field on line {line_no}: {row}")
        value = to_decimal(row['reading_value'], 'reading_value')
        if value < 0:
            raise ValidationError(f"reading_value must be >= 0 on line {line_no}")
        readings.append(MeterReading(
            id=new_id(),
            user_id=owner,
            reading_value=value,
            date=parse_datetime(row['date'], 'date'),
            notes=(row.get('notes') or '').strip() or None,
            is_manual=True,
        ))
    return readings
