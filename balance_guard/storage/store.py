"""
Snapshot store contract consumed by the reconciliation engine.

The engine only needs ordered paging, a count, and point deletes. Range
purging additionally needs the optional range methods.
"""

from datetime import datetime
from typing import List, Protocol

from .models import Reading


class SnapshotStore(Protocol):
    """Narrow read/page/delete contract over the balance series."""

    @property
    def key(self) -> str:
        """Identity of the underlying store, used to serialize reconciliations."""
        ...

    def count(self) -> int:
        ...

    def page(self, skip: int, take: int) -> List[Reading]:
        """Return readings ordered by timestamp ascending, then id."""
        ...

    def delete(self, reading_id: str) -> None:
        """Delete a reading, raising ReadingNotFound if it is already gone."""
        ...


class RangeSnapshotStore(SnapshotStore, Protocol):
    """Store that also supports inclusive timestamp-range operations."""

    def count_between(self, start: datetime, end: datetime) -> int:
        ...

    def delete_between(self, start: datetime, end: datetime) -> int:
        ...
