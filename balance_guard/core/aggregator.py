"""
Deduplication of flagged readings and the canonical detection pipeline.

``find_anomalies`` is the single entry point for detection. Scan reports,
previews and the reconciler all go through it.
"""

import logging
from decimal import Decimal
from typing import Collection, Iterable, List, Optional, Set

from .classifier import DEFAULT_REVERSION_RATIO, FlaggedReading, classify
from .scanner import DEFAULT_PAGE_SIZE, RECONCILE_THRESHOLDS, Thresholds, WindowedScanner
from balance_guard.storage.store import SnapshotStore

logger = logging.getLogger(__name__)


class DedupAggregator:
    """Collects flagged readings, keeping only the first flag per id.

    Flags must be added in ascending time order of their suspect pairs;
    output order is insertion order.
    """

    def __init__(self):
        self._seen: Set[str] = set()
        self._flagged: List[FlaggedReading] = []

    def add(self, flagged: FlaggedReading) -> bool:
        """Record a flag. Returns False if the reading was already reported."""
        if flagged.id in self._seen:
            return False
        self._seen.add(flagged.id)
        self._flagged.append(flagged)
        return True

    def __len__(self) -> int:
        return len(self._flagged)

    @property
    def results(self) -> List[FlaggedReading]:
        return list(self._flagged)


def aggregate(flags: Iterable[FlaggedReading]) -> List[FlaggedReading]:
    """Drop repeated flags, keeping first occurrences in order."""
    aggregator = DedupAggregator()
    for flagged in flags:
        aggregator.add(flagged)
    return aggregator.results


def find_anomalies(
    store: SnapshotStore,
    thresholds: Thresholds = RECONCILE_THRESHOLDS,
    limit: Optional[int] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    reversion_ratio: Decimal = DEFAULT_REVERSION_RATIO,
    excluded: Collection[str] = (),
) -> List[FlaggedReading]:
    """Scan, classify and deduplicate the series.

    Args:
        store: Snapshot store to read from (never mutated)
        thresholds: Per-metric jump thresholds
        limit: Stop after this many unique flagged readings (None for all)
        page_size: Number of readings fetched per page
        reversion_ratio: Ratio used by the spike/step classifier
        excluded: Reading ids to treat as already deleted

    Returns:
        Unique flagged readings in ascending time order of detection
    """
    if limit is not None and limit <= 0:
        return []

    scanner = WindowedScanner(store, thresholds, page_size=page_size, excluded=excluded)
    aggregator = DedupAggregator()
    for pair in scanner.iter_suspects():
        aggregator.add(classify(pair, reversion_ratio))
        if limit is not None and len(aggregator) >= limit:
            break

    if scanner.malformed_ids:
        logger.info(
            "Skipped %d malformed readings during scan",
            len(scanner.malformed_ids),
        )
    return aggregator.results
