"""
Read-only reports over the balance series, and manual deletion.

- ``scan_report``: every anomaly the reconciler would consider, classified
  and deduplicated.
- ``preview``: a capped ``scan_report`` of the current state. It does not
  run the convergent loop, so its count can differ from what ``reconcile``
  ends up deleting.
- ``review``: every adjacent jump over the looser review thresholds, tagged
  with the later reading, with no outlier-side decision.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .aggregator import find_anomalies
from .classifier import DEFAULT_REVERSION_RATIO, FlaggedReading, format_reason
from .scanner import (
    DEFAULT_PAGE_SIZE,
    RECONCILE_THRESHOLDS,
    REVIEW_THRESHOLDS,
    Thresholds,
    WindowedScanner,
)
from balance_guard.storage.models import Reading
from balance_guard.storage.store import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_PREVIEW_LIMIT = 50


@dataclass(frozen=True)
class ReviewEntry:
    """A jump worth a human look, attributed to the later reading."""
    id: str
    timestamp: datetime
    total_a: Decimal
    total_b: Decimal
    jump_a: Decimal
    jump_b: Decimal
    reason: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "total_a": float(self.total_a),
            "total_b": float(self.total_b),
            "jump_a": float(self.jump_a),
            "jump_b": float(self.jump_b),
            "reason": self.reason,
        }


def scan_report(
    store: SnapshotStore,
    thresholds: Thresholds = RECONCILE_THRESHOLDS,
    page_size: int = DEFAULT_PAGE_SIZE,
    reversion_ratio: Decimal = DEFAULT_REVERSION_RATIO,
    limit: Optional[int] = None,
) -> List[FlaggedReading]:
    """Full-series anomaly report. Never mutates the store."""
    return find_anomalies(
        store,
        thresholds,
        limit=limit,
        page_size=page_size,
        reversion_ratio=reversion_ratio,
    )


def preview(
    store: SnapshotStore,
    thresholds: Thresholds = RECONCILE_THRESHOLDS,
    limit: int = DEFAULT_PREVIEW_LIMIT,
    page_size: int = DEFAULT_PAGE_SIZE,
    reversion_ratio: Decimal = DEFAULT_REVERSION_RATIO,
) -> List[FlaggedReading]:
    """Anomalies visible right now, capped at ``limit``.

    Use ``reconcile(dry_run=True)`` for an exact preview of a live run.
    """
    return scan_report(store, thresholds, page_size, reversion_ratio, limit=limit)


def review(
    store: SnapshotStore,
    thresholds: Thresholds = REVIEW_THRESHOLDS,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> List[ReviewEntry]:
    """List every adjacent jump over the review thresholds.

    Each entry carries the later reading of the pair. No classification and
    no deduplication take place.
    """
    scanner = WindowedScanner(store, thresholds, page_size=page_size)
    entries = []
    for pair in scanner.iter_suspects():
        total_a, total_b = pair.curr.totals()
        entries.append(ReviewEntry(
            id=pair.curr.id,
            timestamp=pair.curr.timestamp,
            total_a=total_a,
            total_b=total_b,
            jump_a=pair.diff_a,
            jump_b=pair.diff_b,
            reason=format_reason(pair.diff_a, pair.diff_b, pair.exceeds_a, pair.exceeds_b),
        ))
    return entries


def delete_reading(store: SnapshotStore, reading_id: str) -> None:
    """Permanently delete one reading by id.

    Raises:
        ReadingNotFound: If the reading does not exist
    """
    store.delete(reading_id)
    logger.info("Deleted reading", extra={"reading_id": reading_id})


def describe(reading: Reading) -> str:
    """Short one-line description of a reading for CLI output."""
    if reading.is_malformed:
        return f"{reading.id} @ {reading.timestamp.isoformat()} (malformed)"
    total_a, total_b = reading.totals()
    return f"{reading.id} @ {reading.timestamp.isoformat()} A={total_a:.2f} B={total_b:.2f}"
