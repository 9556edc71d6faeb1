"""
Repository pattern for data access.

SQLite implementation of the snapshot store contract, plus the schema and
insert helpers used by seeding and tests.
"""

import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Iterator, List, Optional

from balance_guard.core.errors import MalformedReading, ReadingNotFound, StoreUnavailable
from .db import DEFAULT_DB_PATH, get_connection
from .models import Reading


_SELECT_COLUMNS = """
    SELECT id, timestamp, onchain_a, onchain_b, onsite_a, onsite_b,
           pid, price_usd
    FROM balance_snapshot
"""


def new_reading_id() -> str:
    """Generate an opaque, globally unique reading id."""
    return uuid.uuid4().hex


def _format_timestamp(value: datetime) -> str:
    # Aware values are stored in UTC so lexical order stays time order.
    # Naive values are taken to be UTC already.
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="microseconds")


def _format_decimal(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError):
        # Unreadable text is kept as NaN so the reading counts as malformed.
        return Decimal("NaN")


def _row_to_reading(row) -> Reading:
    try:
        timestamp = datetime.fromisoformat(row[1])
    except (TypeError, ValueError):
        raise MalformedReading(row[0], "timestamp")
    return Reading(
        id=row[0],
        timestamp=timestamp,
        onchain_a=_parse_decimal(row[2]),
        onchain_b=_parse_decimal(row[3]),
        onsite_a=_parse_decimal(row[4]),
        onsite_b=_parse_decimal(row[5]),
        pid=row[6],
        price_usd=_parse_decimal(row[7]),
    )


def _reading_params(reading: Reading) -> tuple:
    return (
        reading.id,
        _format_timestamp(reading.timestamp),
        _format_decimal(reading.onchain_a),
        _format_decimal(reading.onchain_b),
        _format_decimal(reading.onsite_a),
        _format_decimal(reading.onsite_b),
        reading.pid,
        _format_decimal(reading.price_usd),
        datetime.now().isoformat(timespec="microseconds"),
    )


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    """Translate SQLite failures into StoreUnavailable."""
    try:
        yield
    except sqlite3.Error as e:
        raise StoreUnavailable(f"Failed to {action}: {e}") from e


class SnapshotRepository:
    """SQLite-backed snapshot store.

    Every call opens and closes its own connection, so reads always see the
    current state of the database and nothing is cached between calls.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @property
    def key(self) -> str:
        return f"sqlite:{self.db_path}"

    def count(self) -> int:
        with _store_errors("count readings"):
            conn = get_connection(self.db_path)
            try:
                row = conn.execute("SELECT COUNT(*) FROM balance_snapshot").fetchone()
                return row[0]
            finally:
                conn.close()

    def page(self, skip: int, take: int) -> List[Reading]:
        """Fetch one page of the series in ascending time order.

        Args:
            skip: Number of readings to skip
            take: Maximum number of readings to return

        Returns:
            Readings ordered by timestamp, ties broken by id
        """
        if skip < 0 or take <= 0:
            raise ValueError("skip must be >= 0 and take must be > 0")
        with _store_errors("read page"):
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute(
                    _SELECT_COLUMNS + " ORDER BY timestamp ASC, id ASC LIMIT ? OFFSET ?",
                    (take, skip),
                )
                return [_row_to_reading(row) for row in cursor.fetchall()]
            finally:
                conn.close()

    def get(self, reading_id: str) -> Optional[Reading]:
        with _store_errors("read reading"):
            conn = get_connection(self.db_path)
            try:
                row = conn.execute(_SELECT_COLUMNS + " WHERE id = ?", (reading_id,)).fetchone()
                return _row_to_reading(row) if row else None
            finally:
                conn.close()

    def delete(self, reading_id: str) -> None:
        """Permanently delete a reading.

        Raises:
            ReadingNotFound: If no reading has this id
            StoreUnavailable: If the database cannot be written
        """
        with _store_errors("delete reading"):
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute("DELETE FROM balance_snapshot WHERE id = ?", (reading_id,))
                conn.commit()
                deleted = cursor.rowcount
            finally:
                conn.close()
        if deleted == 0:
            raise ReadingNotFound(reading_id)

    def count_between(self, start: datetime, end: datetime) -> int:
        with _store_errors("count range"):
            conn = get_connection(self.db_path)
            try:
                row = conn.execute(
                    "SELECT COUNT(*) FROM balance_snapshot WHERE timestamp >= ? AND timestamp <= ?",
                    (_format_timestamp(start), _format_timestamp(end)),
                ).fetchone()
                return row[0]
            finally:
                conn.close()

    def delete_between(self, start: datetime, end: datetime) -> int:
        """Delete every reading with start <= timestamp <= end.

        Returns:
            Number of readings deleted
        """
        with _store_errors("delete range"):
            conn = get_connection(self.db_path)
            try:
                cursor = conn.execute(
                    "DELETE FROM balance_snapshot WHERE timestamp >= ? AND timestamp <= ?",
                    (_format_timestamp(start), _format_timestamp(end)),
                )
                conn.commit()
                return cursor.rowcount
            finally:
                conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the balance_snapshot table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    with _store_errors("initialize schema"):
        conn = get_connection(db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS balance_snapshot (
                    id TEXT PRIMARY KEY,
                    timestamp TEXT NOT NULL,
                    onchain_a TEXT,
                    onchain_b TEXT,
                    onsite_a TEXT,
                    onsite_b TEXT,
                    pid INTEGER,
                    price_usd TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_balance_snapshot_timestamp
                ON balance_snapshot (timestamp, id)
            """)
            conn.commit()
        finally:
            conn.close()


_INSERT_SQL = """
    INSERT INTO balance_snapshot
    (id, timestamp, onchain_a, onchain_b, onsite_a, onsite_b,
     pid, price_usd, created_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def insert_reading(reading: Reading, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single reading.

    Args:
        reading: The reading to record
        db_path: Path to SQLite database file
    """
    with _store_errors("insert reading"):
        conn = get_connection(db_path)
        try:
            conn.execute(_INSERT_SQL, _reading_params(reading))
            conn.commit()
        finally:
            conn.close()


def insert_readings(readings: List[Reading], db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert multiple readings atomically.

    All readings are inserted in a single transaction.

    Args:
        readings: List of readings to record
        db_path: Path to SQLite database file
    """
    if not readings:
        return

    with _store_errors("insert readings"):
        conn = get_connection(db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for reading in readings:
                conn.execute(_INSERT_SQL, _reading_params(reading))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()


def fetch_recent_readings(limit: int = 100, db_path: str = DEFAULT_DB_PATH) -> List[Reading]:
    """Fetch the most recent readings, newest first.

    Args:
        limit: Maximum number of readings to return
        db_path: Path to SQLite database file
    """
    with _store_errors("fetch readings"):
        conn = get_connection(db_path)
        try:
            cursor = conn.execute(
                _SELECT_COLUMNS + " ORDER BY timestamp DESC, id DESC LIMIT ?",
                (limit,),
            )
            return [_row_to_reading(row) for row in cursor.fetchall()]
        finally:
            conn.close()
