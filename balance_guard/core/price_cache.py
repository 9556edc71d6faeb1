"""
Price cache for the optional price annotation on readings.

An explicit object instead of module state: callers inject the fetcher and
the clock, so behaviour in tests does not depend on wall time.
"""

import logging
import time
from dataclasses import replace
from decimal import Decimal
from typing import Callable, Optional

from balance_guard.storage.models import Reading

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600.0
DEFAULT_MAX_STALE_SECONDS = 7200.0
DEFAULT_CALL_BUDGET = 25
DEFAULT_BUDGET_WINDOW_SECONDS = 60.0


class PriceCache:
    """TTL cache in front of a price fetcher, with a per-window call budget.

    - A cached price younger than ``ttl_seconds`` is returned without a call.
    - At most ``call_budget`` fetches are made per ``budget_window_seconds``.
    - When a fetch fails or the budget is spent, a price younger than
      ``max_stale_seconds`` is still returned; otherwise None.
    """

    def __init__(
        self,
        fetcher: Callable[[], Decimal],
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_stale_seconds: float = DEFAULT_MAX_STALE_SECONDS,
        call_budget: int = DEFAULT_CALL_BUDGET,
        budget_window_seconds: float = DEFAULT_BUDGET_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_stale_seconds < ttl_seconds:
            raise ValueError("max_stale_seconds must be >= ttl_seconds")
        if call_budget <= 0:
            raise ValueError("call_budget must be > 0")
        self._fetcher = fetcher
        self.ttl_seconds = ttl_seconds
        self.max_stale_seconds = max_stale_seconds
        self.call_budget = call_budget
        self.budget_window_seconds = budget_window_seconds
        self._clock = clock
        self._price: Optional[Decimal] = None
        self._fetched_at: Optional[float] = None
        self._calls_in_window = 0
        self._window_start = clock()

    @property
    def calls_remaining(self) -> int:
        self._roll_window()
        return self.call_budget - self._calls_in_window

    def _roll_window(self) -> None:
        now = self._clock()
        if now - self._window_start >= self.budget_window_seconds:
            self._window_start = now
            self._calls_in_window = 0

    def _age(self) -> Optional[float]:
        if self._fetched_at is None:
            return None
        return self._clock() - self._fetched_at

    def _stale_fallback(self) -> Optional[Decimal]:
        age = self._age()
        if age is not None and age < self.max_stale_seconds:
            return self._price
        return None

    def get(self, force_refresh: bool = False) -> Optional[Decimal]:
        """Return the current price, fetching only when needed and allowed."""
        age = self._age()
        if not force_refresh and age is not None and age < self.ttl_seconds:
            return self._price

        if self.calls_remaining <= 0:
            logger.warning("Price call budget exhausted, using cached price if fresh enough")
            return self._stale_fallback()

        self._calls_in_window += 1
        try:
            price = self._fetcher()
        except Exception as e:  # noqa: BLE001
            logger.warning("Price fetch failed: %s", e)
            return self._stale_fallback()

        self._price = price
        self._fetched_at = self._clock()
        return price


def annotate_price(reading: Reading, cache: PriceCache) -> Reading:
    """Return a copy of the reading carrying the current price, if any."""
    price = cache.get()
    if price is None:
        return reading
    return replace(reading, price_usd=price)
