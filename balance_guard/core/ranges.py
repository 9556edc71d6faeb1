"""
Range purge: bulk removal of readings that sit away from the series median.

Instead of deleting one anomaly at a time, consecutive readings whose
totals deviate from the median by more than the thresholds are grouped into
time ranges, and every reading inside a range is deleted in one call.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .reconciler import store_lock
from .scanner import DEFAULT_PAGE_SIZE, RECONCILE_THRESHOLDS, Thresholds, WindowedScanner
from balance_guard.storage.store import RangeSnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class AnomalousRange:
    """Inclusive time range of consecutive off-baseline readings."""
    start: datetime
    end: datetime
    reason: str
    reading_count: int = 0

    def to_dict(self) -> dict:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "reason": self.reason,
            "reading_count": self.reading_count,
        }


@dataclass
class RangePurgeReport:
    """Outcome of a range purge."""
    dry_run: bool
    ranges: List[AnomalousRange] = field(default_factory=list)
    deleted_count: int = 0


def _median(values: List[Decimal]) -> Decimal:
    # Upper median, matching the baseline used by the bulk purge.
    ordered = sorted(values)
    return ordered[len(ordered) // 2]


def find_anomalous_ranges(
    store: RangeSnapshotStore,
    thresholds: Thresholds = RECONCILE_THRESHOLDS,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> List[AnomalousRange]:
    """Group off-median readings into contiguous time ranges.

    Args:
        store: Store to read the series from
        thresholds: Allowed deviation from the median per metric
        page_size: Number of readings fetched per page

    Returns:
        Ranges in ascending time order with their reading counts
    """
    scanner = WindowedScanner(store, thresholds, page_size=page_size)
    readings = list(scanner.iter_readings())
    if len(readings) < 2:
        return []

    totals = [reading.totals() for reading in readings]
    median_a = _median([a for a, _ in totals])
    median_b = _median([b for _, b in totals])

    ranges: List[AnomalousRange] = []
    current: Optional[AnomalousRange] = None
    for reading, (total_a, total_b) in zip(readings, totals):
        diff_a = abs(total_a - median_a)
        diff_b = abs(total_b - median_b)
        if any(thresholds.exceeded(diff_a, diff_b)):
            if current is None:
                current = AnomalousRange(
                    start=reading.timestamp,
                    end=reading.timestamp,
                    reason=f"A diff: {diff_a:.0f}, B diff: {diff_b:.0f}",
                )
                ranges.append(current)
            current.end = reading.timestamp
            current.reading_count += 1
        else:
            current = None
    return ranges


def purge_ranges(
    store: RangeSnapshotStore,
    ranges: List[AnomalousRange],
    dry_run: bool = False,
) -> RangePurgeReport:
    """Delete every reading inside the given ranges.

    In a dry run the store is only counted. Counts are taken from the store
    at purge time, so readings the range scan skipped (malformed ones) are
    included too.
    """
    if dry_run:
        return _count_ranges(store, ranges)
    with store_lock(store):
        return _delete_ranges(store, ranges)


def purge_anomalous_ranges(
    store: RangeSnapshotStore,
    thresholds: Thresholds = RECONCILE_THRESHOLDS,
    page_size: int = DEFAULT_PAGE_SIZE,
    dry_run: bool = False,
) -> RangePurgeReport:
    """Find the anomalous ranges and purge them in one step.

    A live purge holds the store lock from detection to the last delete.
    """
    if dry_run:
        ranges = find_anomalous_ranges(store, thresholds, page_size=page_size)
        return _count_ranges(store, ranges)
    with store_lock(store):
        ranges = find_anomalous_ranges(store, thresholds, page_size=page_size)
        return _delete_ranges(store, ranges)


def _count_ranges(store: RangeSnapshotStore, ranges: List[AnomalousRange]) -> RangePurgeReport:
    report = RangePurgeReport(dry_run=True)
    for item in ranges:
        item.reading_count = store.count_between(item.start, item.end)
        report.deleted_count += item.reading_count
        report.ranges.append(item)
    return report


def _delete_ranges(store: RangeSnapshotStore, ranges: List[AnomalousRange]) -> RangePurgeReport:
    # Caller holds the store lock.
    report = RangePurgeReport(dry_run=False)
    for item in ranges:
        item.reading_count = store.delete_between(item.start, item.end)
        report.deleted_count += item.reading_count
        report.ranges.append(item)
        logger.info(
            "Purged range %s .. %s", item.start.isoformat(), item.end.isoformat(),
            extra={"deleted_count": item.reading_count, "reason": item.reason},
        )
    return report
