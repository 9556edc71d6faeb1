# balance_guard/demo/seed_demo_data.py

from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from balance_guard.storage.db import DEFAULT_DB_PATH
from balance_guard.storage.models import Reading
from balance_guard.storage.repository import initialize_schema, insert_readings, new_reading_id


def build_demo_series(start: Optional[datetime] = None, hours: int = 48) -> List[Reading]:
    """Hourly readings with one spike, one step change and one malformed entry."""
    start = start or datetime(2024, 1, 1)
    readings = []
    for i in range(hours):
        onchain_a = Decimal("6000") + i
        onsite_a = Decimal("4000")
        onchain_b = Decimal("300000")
        onsite_b = Decimal("200000")
        if i == 10:
            onsite_a += Decimal("2500")  # capture glitch, reverts next hour
        if i >= 30:
            onchain_b += Decimal("20000")  # deposit, new level
        readings.append(Reading(
            id=new_reading_id(),
            timestamp=start + timedelta(hours=i),
            onchain_a=onchain_a,
            onchain_b=onchain_b,
            onsite_a=None if i == 20 else onsite_a,
            onsite_b=onsite_b,
            pid=1,
        ))
    return readings


def seed_demo_data(db_path: str = DEFAULT_DB_PATH) -> int:
    initialize_schema(db_path)
    readings = build_demo_series()
    insert_readings(readings, db_path)
    return len(readings)


if __name__ == "__main__":
    count = seed_demo_data()
    print(f"Demo balance readings inserted: {count}")
