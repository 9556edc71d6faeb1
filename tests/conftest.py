"""
Shared helpers for balance_guard tests.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Sequence

import pytest

from balance_guard.storage.models import Reading
from balance_guard.storage.repository import (
    SnapshotRepository,
    initialize_schema,
    insert_readings,
)

START = datetime(2024, 1, 1, 12, 0, 0)


def make_reading(
    reading_id: str,
    minute: int,
    total_a: Optional[float] = 1000,
    total_b: Optional[float] = 50000,
) -> Reading:
    """Build a reading whose derived totals equal the given values.

    A total of None produces a malformed reading (missing on-site leg).
    """
    return Reading(
        id=reading_id,
        timestamp=START + timedelta(minutes=minute),
        onchain_a=None if total_a is None else Decimal(str(total_a)) - Decimal("100"),
        onchain_b=None if total_b is None else Decimal(str(total_b)) - Decimal("2000"),
        onsite_a=Decimal("100"),
        onsite_b=Decimal("2000"),
    )


def make_series(
    totals_a: Sequence[Optional[float]],
    totals_b: Optional[Sequence[Optional[float]]] = None,
    prefix: str = "r",
) -> List[Reading]:
    """Build readings r0, r1, ... one minute apart."""
    if totals_b is None:
        totals_b = [50000] * len(totals_a)
    return [
        make_reading(f"{prefix}{i}", i, a, b)
        for i, (a, b) in enumerate(zip(totals_a, totals_b))
    ]


def populate(db_path: str, readings: List[Reading]) -> SnapshotRepository:
    """Create the schema, insert the readings, return a repository."""
    initialize_schema(db_path)
    insert_readings(readings, db_path)
    return SnapshotRepository(db_path)


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "balance.db")


@pytest.fixture
def store_factory(db_path):
    """Return a function that fills the test database with a series."""
    def factory(readings: List[Reading]) -> SnapshotRepository:
        return populate(db_path, readings)
    return factory


def ids(items) -> List[str]:
    return [item.id for item in items]
