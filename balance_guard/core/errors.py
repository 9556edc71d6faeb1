"""
Error types shared by the store and the reconciliation engine.

StoreUnavailable aborts a run, ReadingNotFound is a non-fatal delete
conflict, MalformedReading marks a reading that cannot produce totals.
"""

from typing import Any, Optional


class BalanceGuardError(Exception):
    """Base class for all balance_guard errors."""


class StoreUnavailable(BalanceGuardError):
    """Raised when the snapshot store cannot be read from or written to."""


class ReadingNotFound(BalanceGuardError):
    """Raised when a reading to delete no longer exists."""
    def __init__(self, reading_id: str):
        super().__init__(f"Reading not found: {reading_id}")
        self.reading_id = reading_id


class MalformedReading(BalanceGuardError):
    """Raised when a reading has a missing or NaN leg."""
    def __init__(self, reading_id: str, field_name: str):
        super().__init__(f"Reading {reading_id} has no usable value for {field_name}")
        self.reading_id = reading_id
        self.field_name = field_name


class ReconciliationError(BalanceGuardError):
    """Raised when a reconciliation run fails.

    Carries the partial report accumulated before the failure. Deletions
    already applied are not rolled back.
    """
    def __init__(self, message: str, report: Any, cause: Optional[Exception] = None):
        super().__init__(message)
        self.report = report
        self.cause = cause
