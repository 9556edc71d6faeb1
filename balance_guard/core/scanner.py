"""
Windowed scanning of the balance series.

Pages through the store in ascending time order and yields every adjacent
pair whose derived totals jump by more than the configured thresholds.
Pages are fetched lazily, so a caller that stops early never reads more
than one page past the last pair it consumed.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Collection, Iterator, List, Optional, Tuple

from balance_guard.storage.models import Reading
from balance_guard.storage.store import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000


@dataclass(frozen=True)
class Thresholds:
    """Maximum allowed absolute jump per derived total between neighbours."""
    a: Decimal
    b: Decimal

    def __post_init__(self):
        """Validate thresholds are non-negative."""
        if self.a < 0:
            raise ValueError("threshold a cannot be negative")
        if self.b < 0:
            raise ValueError("threshold b cannot be negative")

    def exceeded(self, diff_a: Decimal, diff_b: Decimal) -> Tuple[bool, bool]:
        """Return which metrics jump strictly more than allowed."""
        return diff_a > self.a, diff_b > self.b


# Thresholds used by detection and reconciliation.
RECONCILE_THRESHOLDS = Thresholds(a=Decimal("300"), b=Decimal("999"))

# Looser thresholds for the human review report.
REVIEW_THRESHOLDS = Thresholds(a=Decimal("500"), b=Decimal("5000"))


@dataclass(frozen=True)
class SuspectPair:
    """Two time-adjacent readings whose totals jump over a threshold.

    ``next`` is the reading right after ``curr``, or None when ``curr`` is
    the last usable reading of the series.
    """
    prev: Reading
    curr: Reading
    next: Optional[Reading]
    diff_a: Decimal
    diff_b: Decimal
    exceeds_a: bool
    exceeds_b: bool


class WindowedScanner:
    """Read-only pager over a snapshot store.

    Readings listed in ``excluded`` are treated as if they were already
    deleted. Malformed readings are skipped and their ids collected in
    ``malformed_ids``; they never take part in a pair.
    """

    def __init__(
        self,
        store: SnapshotStore,
        thresholds: Thresholds = RECONCILE_THRESHOLDS,
        page_size: int = DEFAULT_PAGE_SIZE,
        excluded: Collection[str] = (),
    ):
        if page_size <= 0:
            raise ValueError("page_size must be > 0")
        self.store = store
        self.thresholds = thresholds
        self.page_size = page_size
        self.excluded = frozenset(excluded)
        self.malformed_ids: List[str] = []

    def iter_pages(self) -> Iterator[List[Reading]]:
        """Yield the series page by page in ascending time order."""
        total = self.store.count()
        offset = 0
        while offset < total:
            page = self.store.page(offset, self.page_size)
            if not page:
                break
            yield page
            offset += self.page_size

    def iter_readings(self) -> Iterator[Reading]:
        """Yield usable readings across all pages."""
        for page in self.iter_pages():
            for reading in page:
                if reading.id in self.excluded:
                    continue
                if reading.is_malformed:
                    self.malformed_ids.append(reading.id)
                    logger.warning(
                        "Skipping malformed reading",
                        extra={"reading_id": reading.id},
                    )
                    continue
                yield reading

    def iter_neighbours(self) -> Iterator[Tuple[Reading, Reading, Optional[Reading]]]:
        """Yield (prev, curr, next) for every adjacent pair of the series.

        The last reading of a page stays in the window when the next page
        is fetched, so pairs spanning a page boundary are not lost and the
        lookahead reading is available at the boundary too.
        """
        readings = self.iter_readings()
        prev = next(readings, None)
        curr = next(readings, None)
        while prev is not None and curr is not None:
            following = next(readings, None)
            yield prev, curr, following
            prev, curr = curr, following

    def iter_suspects(self) -> Iterator[SuspectPair]:
        """Yield suspect pairs in ascending time order."""
        for prev, curr, following in self.iter_neighbours():
            prev_a, prev_b = prev.totals()
            curr_a, curr_b = curr.totals()
            diff_a = abs(curr_a - prev_a)
            diff_b = abs(curr_b - prev_b)
            exceeds_a, exceeds_b = self.thresholds.exceeded(diff_a, diff_b)
            if not exceeds_a and not exceeds_b:
                continue
            yield SuspectPair(
                prev=prev,
                curr=curr,
                next=following,
                diff_a=diff_a,
                diff_b=diff_b,
                exceeds_a=exceeds_a,
                exceeds_b=exceeds_b,
            )

    def scan(self, anomaly_limit: Optional[int] = None) -> List[SuspectPair]:
        """Collect suspect pairs, stopping once ``anomaly_limit`` are found.

        Args:
            anomaly_limit: Maximum number of pairs to return (None for all)

        Returns:
            Suspect pairs in ascending time order
        """
        if anomaly_limit is not None and anomaly_limit <= 0:
            return []
        suspects = []
        for pair in self.iter_suspects():
            suspects.append(pair)
            if anomaly_limit is not None and len(suspects) >= anomaly_limit:
                break
        return suspects
