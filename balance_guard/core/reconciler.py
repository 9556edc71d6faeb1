"""
Iterative reconciliation of the balance series.

Deletes one anomaly at a time and rescans after every deletion, because
removing a reading changes the neighbours of the readings around it. A set
of anomalies computed up front would be stale after the first delete.

States:
    SCANNING -> DELETING -> SCANNING ... -> CONVERGED | LIMIT_REACHED
    any state -> FAILED (store failure) | CANCELLED (cancel event set)

Dry runs execute the same loop. Instead of deleting, the flagged reading is
hidden from later scans, so the preview lists exactly what a live run
starting from the same series would delete.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Set

from .aggregator import find_anomalies
from .classifier import DEFAULT_REVERSION_RATIO
from .errors import BalanceGuardError, ReadingNotFound, ReconciliationError
from .scanner import DEFAULT_PAGE_SIZE, RECONCILE_THRESHOLDS, Thresholds
from balance_guard.storage.store import SnapshotStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 100


class ReconcileState(Enum):
    """Lifecycle of a reconciliation run."""
    SCANNING = "scanning"
    DELETING = "deleting"
    CONVERGED = "converged"
    LIMIT_REACHED = "limit_reached"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ReconciledReading:
    """A reading removed (or, in a dry run, that would be removed)."""
    id: str
    timestamp: datetime
    diff_a: Decimal
    diff_b: Decimal
    reason: str
    iteration: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "diff_a": float(self.diff_a),
            "diff_b": float(self.diff_b),
            "reason": self.reason,
            "iteration": self.iteration,
        }


@dataclass
class ReconcileReport:
    """Accumulated outcome of a reconciliation run.

    ``conflicts`` lists ids another actor deleted before this run could.
    """
    dry_run: bool
    max_iterations: int
    state: ReconcileState = ReconcileState.SCANNING
    iterations: int = 0
    deleted: List[ReconciledReading] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)

    @property
    def reached_limit(self) -> bool:
        return self.state == ReconcileState.LIMIT_REACHED

    def to_dict(self) -> dict:
        return {
            "deletedCount": self.deleted_count,
            "iterations": self.iterations,
            "reachedLimit": self.reached_limit,
            "dryRun": self.dry_run,
            "state": self.state.value,
            "deleted": [entry.to_dict() for entry in self.deleted],
            "conflicts": list(self.conflicts),
        }


# One lock per store, so live runs against the same store never interleave.
_store_locks: Dict[str, threading.Lock] = {}
_store_locks_guard = threading.Lock()


def store_lock(store: SnapshotStore) -> threading.Lock:
    """Return the reconciliation lock for a store, creating it on first use."""
    with _store_locks_guard:
        lock = _store_locks.get(store.key)
        if lock is None:
            lock = threading.Lock()
            _store_locks[store.key] = lock
        return lock


class Reconciler:
    """Drives the scan-classify-delete loop against one store."""

    def __init__(
        self,
        store: SnapshotStore,
        thresholds: Thresholds = RECONCILE_THRESHOLDS,
        page_size: int = DEFAULT_PAGE_SIZE,
        reversion_ratio: Decimal = DEFAULT_REVERSION_RATIO,
    ):
        self.store = store
        self.thresholds = thresholds
        self.page_size = page_size
        self.reversion_ratio = reversion_ratio

    def run(
        self,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> ReconcileReport:
        """Reconcile the store until no anomaly remains or a limit is hit.

        Args:
            max_iterations: Safety cap on the number of deletions attempted
            dry_run: Report what would be deleted without deleting
            cancel_event: Checked before every iteration; setting it stops the run

        Returns:
            ReconcileReport in state CONVERGED, LIMIT_REACHED or CANCELLED

        Raises:
            ReconciliationError: If the store fails; the partial report is attached
        """
        if max_iterations < 0:
            raise ValueError("max_iterations cannot be negative")

        report = ReconcileReport(dry_run=dry_run, max_iterations=max_iterations)
        if dry_run:
            self._loop(report, cancel_event)
        else:
            with store_lock(self.store):
                self._loop(report, cancel_event)

        logger.info(
            "Reconciliation finished",
            extra={
                "state": report.state.value,
                "iteration": report.iterations,
                "deleted_count": report.deleted_count,
                "dry_run": dry_run,
            },
        )
        return report

    def _loop(self, report: ReconcileReport, cancel_event: Optional[threading.Event]) -> None:
        hidden: Set[str] = set()
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    report.state = ReconcileState.CANCELLED
                    logger.warning("Reconciliation cancelled", extra={"iteration": report.iterations})
                    return

                report.state = ReconcileState.SCANNING
                found = find_anomalies(
                    self.store,
                    self.thresholds,
                    limit=1,
                    page_size=self.page_size,
                    reversion_ratio=self.reversion_ratio,
                    excluded=hidden,
                )
                if not found:
                    report.state = ReconcileState.CONVERGED
                    return
                if report.iterations >= report.max_iterations:
                    report.state = ReconcileState.LIMIT_REACHED
                    return

                flagged = found[0]
                iteration = report.iterations + 1
                if report.dry_run:
                    hidden.add(flagged.id)
                else:
                    report.state = ReconcileState.DELETING
                    try:
                        self.store.delete(flagged.id)
                    except ReadingNotFound:
                        logger.warning(
                            "Reading already removed by another actor, rescanning",
                            extra={"reading_id": flagged.id, "iteration": iteration},
                        )
                        report.conflicts.append(flagged.id)
                        report.iterations = iteration
                        continue

                report.deleted.append(ReconciledReading(
                    id=flagged.id,
                    timestamp=flagged.timestamp,
                    diff_a=flagged.diff_a,
                    diff_b=flagged.diff_b,
                    reason=flagged.reason,
                    iteration=iteration,
                ))
                report.iterations = iteration
                logger.info(
                    "Would delete anomalous reading" if report.dry_run else "Deleted anomalous reading",
                    extra={"reading_id": flagged.id, "iteration": iteration, "reason": flagged.reason},
                )
        except BalanceGuardError as e:
            report.state = ReconcileState.FAILED
            logger.error(
                "Reconciliation failed: %s", e,
                extra={"iteration": report.iterations, "deleted_count": report.deleted_count},
            )
            raise ReconciliationError(f"Reconciliation failed: {e}", report, e) from e


def reconcile(
    store: SnapshotStore,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    dry_run: bool = False,
    thresholds: Thresholds = RECONCILE_THRESHOLDS,
    page_size: int = DEFAULT_PAGE_SIZE,
    reversion_ratio: Decimal = DEFAULT_REVERSION_RATIO,
    cancel_event: Optional[threading.Event] = None,
) -> ReconcileReport:
    """Run a reconciliation with a one-off Reconciler."""
    reconciler = Reconciler(store, thresholds, page_size=page_size, reversion_ratio=reversion_ratio)
    return reconciler.run(max_iterations=max_iterations, dry_run=dry_run, cancel_event=cancel_event)
