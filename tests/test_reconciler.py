"""
Unit tests for the iterative reconciler.

Tests convergence, the iteration cap, dry runs, conflicts, failures and
cancellation.
"""

import threading
from decimal import Decimal
from unittest.mock import patch

import pytest

from balance_guard.core.errors import (
    MalformedReading,
    ReadingNotFound,
    ReconciliationError,
    StoreUnavailable,
)
from balance_guard.core.reconciler import (
    ReconcileState,
    Reconciler,
    reconcile,
    store_lock,
)
from balance_guard.core.scanner import Thresholds
from balance_guard.storage.db import get_connection
from balance_guard.storage.repository import SnapshotRepository

from conftest import ids, make_series, populate

CASCADE_A = [1000, 2000, 1000, 1000, 1000, 1400, 1400, 1310, 1400, 1400, 1000]
CASCADE_B = [50000, 50000, 50000, 53000, 50000, 50000, 50000, 50000, 50000, 50000, 50000]


class TestReconcile:
    """Test the scan-classify-delete loop against SQLite."""

    def test_end_to_end_single_spike(self, store_factory):
        """[1000, 1310, 1005]: t2 deleted on iteration 1, then converged."""
        store = store_factory(make_series([1000, 1310, 1005]))
        report = reconcile(store)

        assert report.state == ReconcileState.CONVERGED
        assert report.iterations == 1
        assert report.deleted_count == 1
        entry = report.deleted[0]
        assert entry.id == "r1"
        assert entry.iteration == 1
        assert entry.diff_a == Decimal("310")
        assert entry.reason == "A: ±310.00"
        assert ids(store.page(0, 10)) == ["r0", "r2"]

    def test_clean_store_converges_immediately(self, store_factory):
        store = store_factory(make_series([1000, 1001, 1002]))
        report = reconcile(store)

        assert report.state == ReconcileState.CONVERGED
        assert report.iterations == 0
        assert report.deleted == []
        assert report.reached_limit is False

    def test_rerun_after_convergence_is_idempotent(self, store_factory):
        store = store_factory(make_series(CASCADE_A, CASCADE_B))
        first = reconcile(store)
        assert first.state == ReconcileState.CONVERGED
        assert first.deleted_count > 0

        second = reconcile(store)
        assert second.state == ReconcileState.CONVERGED
        assert second.deleted_count == 0
        assert second.iterations == 0

    def test_step_change_removes_earlier_level(self, store_factory):
        """A sustained step keeps the new level; earlier readings go one by one."""
        thresholds = Thresholds(a=Decimal("50"), b=Decimal("50"))
        store = store_factory(make_series([0] * 6, [100, 100, 100, 600, 600, 600]))
        report = reconcile(store, thresholds=thresholds)

        assert report.state == ReconcileState.CONVERGED
        assert ids(report.deleted) == ["r2", "r1", "r0"]
        assert [e.iteration for e in report.deleted] == [1, 2, 3]
        assert ids(store.page(0, 10)) == ["r3", "r4", "r5"]

    def test_limit_reached_is_not_an_error(self, store_factory):
        store = store_factory(make_series([1000, 2000] * 6))
        report = reconcile(store, max_iterations=3)

        assert report.state == ReconcileState.LIMIT_REACHED
        assert report.reached_limit is True
        assert report.deleted_count == 3
        assert report.iterations == 3
        assert store.count() == 9

    def test_zero_iterations_only_scans(self, store_factory):
        store = store_factory(make_series([1000, 1310, 1005]))
        report = reconcile(store, max_iterations=0)

        assert report.state == ReconcileState.LIMIT_REACHED
        assert report.deleted == []
        assert store.count() == 3

    def test_negative_max_iterations_rejected(self, store_factory):
        store = store_factory([])
        with pytest.raises(ValueError):
            reconcile(store, max_iterations=-1)

    def test_dry_run_does_not_mutate(self, store_factory):
        store = store_factory(make_series(CASCADE_A, CASCADE_B))
        before = store.count()
        report = reconcile(store, dry_run=True)

        assert report.dry_run is True
        assert report.deleted_count > 0
        assert store.count() == before

    def test_dry_run_matches_live_run(self, tmp_path):
        """The preview lists exactly what a live run deletes, in order."""
        preview_store = populate(str(tmp_path / "preview.db"), make_series(CASCADE_A, CASCADE_B))
        live_store = populate(str(tmp_path / "live.db"), make_series(CASCADE_A, CASCADE_B))

        preview = reconcile(preview_store, dry_run=True)
        live = reconcile(live_store)

        assert preview.state == live.state == ReconcileState.CONVERGED
        assert [(e.id, e.iteration, e.reason) for e in preview.deleted] == [
            (e.id, e.iteration, e.reason) for e in live.deleted
        ]

    def test_dry_run_respects_limit(self, store_factory):
        store = store_factory(make_series([1000, 2000] * 6))
        report = reconcile(store, max_iterations=2, dry_run=True)

        assert report.reached_limit is True
        assert report.deleted_count == 2
        assert len(set(ids(report.deleted))) == 2

    def test_small_pages_give_same_result(self, tmp_path):
        a = populate(str(tmp_path / "a.db"), make_series(CASCADE_A, CASCADE_B))
        b = populate(str(tmp_path / "b.db"), make_series(CASCADE_A, CASCADE_B))

        assert ids(reconcile(a).deleted) == ids(reconcile(b, page_size=2).deleted)

    def test_report_to_dict(self, store_factory):
        store = store_factory(make_series([1000, 1310, 1005]))
        data = reconcile(store, dry_run=True).to_dict()

        assert data["deletedCount"] == 1
        assert data["iterations"] == 1
        assert data["reachedLimit"] is False
        assert data["dryRun"] is True
        assert data["state"] == "converged"
        assert data["deleted"][0]["id"] == "r1"
        assert data["deleted"][0]["iteration"] == 1


class TestReconcileFailures:
    """Test conflicts, store failures and cancellation."""

    def test_delete_conflict_is_recorded_and_rescanned(self, store_factory):
        """Another actor removes the reading first; the run carries on."""
        store = store_factory(make_series([1000, 1310, 1005]))
        real_delete = store.delete

        def racing_delete(reading_id):
            real_delete(reading_id)
            raise ReadingNotFound(reading_id)

        with patch.object(store, "delete", side_effect=racing_delete):
            report = reconcile(store)

        assert report.state == ReconcileState.CONVERGED
        assert report.conflicts == ["r1"]
        assert report.deleted == []
        assert report.iterations == 1
        assert store.count() == 2

    def test_store_failure_raises_with_partial_report(self, store_factory):
        store = store_factory(make_series([1000, 2000, 1000, 1000, 2000, 1000]))
        real_delete = store.delete
        calls = []

        def flaky_delete(reading_id):
            calls.append(reading_id)
            if len(calls) > 1:
                raise StoreUnavailable("database is locked")
            real_delete(reading_id)

        with patch.object(store, "delete", side_effect=flaky_delete):
            with pytest.raises(ReconciliationError) as exc_info:
                reconcile(store)

        report = exc_info.value.report
        assert report.state == ReconcileState.FAILED
        assert ids(report.deleted) == ["r1"]
        assert isinstance(exc_info.value.cause, StoreUnavailable)
        # The first deletion is not rolled back.
        assert store.get("r1") is None
        assert store.count() == 5

    def test_adjacent_infinite_readings_are_skipped(self, store_factory):
        """Non-finite legs are malformed, so finite neighbours are not deleted."""
        store = store_factory(make_series([1000, 1310, 1005, float("inf"), float("inf")]))
        report = reconcile(store)

        assert report.state == ReconcileState.CONVERGED
        assert ids(report.deleted) == ["r1"]
        assert ids(store.page(0, 10)) == ["r0", "r2", "r3", "r4"]

    def test_unreadable_timestamp_fails_run(self, store_factory, db_path):
        store = store_factory(make_series([1000, 1310, 1005]))
        conn = get_connection(db_path)
        try:
            conn.execute("UPDATE balance_snapshot SET timestamp = 'garbage' WHERE id = 'r2'")
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(ReconciliationError) as exc_info:
            reconcile(store)

        assert exc_info.value.report.state == ReconcileState.FAILED
        assert isinstance(exc_info.value.cause, MalformedReading)
        assert store.count() == 3

    def test_missing_table_fails_run(self, db_path):
        with pytest.raises(ReconciliationError) as exc_info:
            reconcile(SnapshotRepository(db_path))
        assert exc_info.value.report.state == ReconcileState.FAILED
        assert exc_info.value.report.deleted == []

    def test_cancel_before_start(self, store_factory):
        store = store_factory(make_series([1000, 1310, 1005]))
        cancel = threading.Event()
        cancel.set()

        report = reconcile(store, cancel_event=cancel)

        assert report.state == ReconcileState.CANCELLED
        assert report.iterations == 0
        assert store.count() == 3

    def test_cancel_between_iterations(self, store_factory):
        store = store_factory(make_series([1000, 2000] * 4))
        cancel = threading.Event()
        real_delete = store.delete

        def delete_then_cancel(reading_id):
            real_delete(reading_id)
            cancel.set()

        with patch.object(store, "delete", side_effect=delete_then_cancel):
            report = reconcile(store, cancel_event=cancel)

        assert report.state == ReconcileState.CANCELLED
        assert report.deleted_count == 1


class TestSerialization:
    """Test that live runs on one store are serialized."""

    def test_lock_is_shared_per_store_key(self, db_path, tmp_path):
        assert store_lock(SnapshotRepository(db_path)) is store_lock(SnapshotRepository(db_path))
        other = SnapshotRepository(str(tmp_path / "other.db"))
        assert store_lock(other) is not store_lock(SnapshotRepository(db_path))

    def test_live_run_waits_for_lock(self, store_factory):
        store = store_factory(make_series([1000, 1310, 1005]))
        results = []
        worker = threading.Thread(target=lambda: results.append(Reconciler(store).run()))

        with store_lock(store):
            worker.start()
            worker.join(timeout=0.2)
            assert worker.is_alive()
            assert store.count() == 3

        worker.join(timeout=5)
        assert not worker.is_alive()
        assert results[0].deleted_count == 1

    def test_dry_run_does_not_take_lock(self, store_factory):
        store = store_factory(make_series([1000, 1310, 1005]))
        with store_lock(store):
            report = reconcile(store, dry_run=True)
        assert report.deleted_count == 1
