"""
Data models for storage layer.

Defines the balance reading record and its derived totals.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from balance_guard.core.errors import MalformedReading


LEG_FIELDS = ("onchain_a", "onchain_b", "onsite_a", "onsite_b")


@dataclass(frozen=True)
class Reading:
    """One entry of the balance series.

    Holds the four raw legs as read from the store. Totals are derived on
    demand and never persisted:

    - total_a = onchain_a + onsite_a
    - total_b = onchain_b + onsite_b

    A leg may be None, NaN or infinite when capture failed; such a
    reading is malformed and ``totals()`` raises ``MalformedReading``.
    """
    id: str
    timestamp: datetime
    onchain_a: Optional[Decimal]
    onchain_b: Optional[Decimal]
    onsite_a: Optional[Decimal]
    onsite_b: Optional[Decimal]
    pid: Optional[int] = None
    price_usd: Optional[Decimal] = None

    @property
    def is_malformed(self) -> bool:
        """True when any leg is missing or not a finite number."""
        return self._first_bad_leg() is not None

    def _first_bad_leg(self) -> Optional[str]:
        for name in LEG_FIELDS:
            value = getattr(self, name)
            if value is None or not value.is_finite():
                return name
        return None

    def totals(self) -> Tuple[Decimal, Decimal]:
        """Return (total_a, total_b).

        Raises:
            MalformedReading: If any leg is missing or not finite
        """
        bad_leg = self._first_bad_leg()
        if bad_leg is not None:
            raise MalformedReading(self.id, bad_leg)
        return self.onchain_a + self.onsite_a, self.onchain_b + self.onsite_b

    @property
    def total_a(self) -> Decimal:
        return self.totals()[0]

    @property
    def total_b(self) -> Decimal:
        return self.totals()[1]
