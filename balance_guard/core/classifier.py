"""
Outlier side selection for suspect pairs.

Decides which reading of a suspect pair is the erroneous one using a single
lookahead sample:

- Spike: the reading after ``curr`` comes back within ``reversion_ratio``
  of the original jump on at least one triggering metric. ``curr`` is the
  outlier.
- Step change: no lookahead, or no reversion. ``prev`` is the outlier and
  the new level is kept.

This is a heuristic, not a robust estimator. A slow two-step drift can be
reported as two separate anomalies.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from .scanner import SuspectPair
from balance_guard.storage.models import Reading

DEFAULT_REVERSION_RATIO = Decimal("0.4")


class OutlierSide(Enum):
    """Which reading of the pair was flagged."""
    CURRENT = "current"
    PREVIOUS = "previous"


@dataclass(frozen=True)
class FlaggedReading:
    """A reading identified as the outlier of a suspect pair."""
    id: str
    timestamp: datetime
    diff_a: Decimal
    diff_b: Decimal
    reason: str
    side: OutlierSide
    reverted: bool

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "diff_a": float(self.diff_a),
            "diff_b": float(self.diff_b),
            "reason": self.reason,
            "side": self.side.value,
        }


def format_reason(diff_a: Decimal, diff_b: Decimal, exceeds_a: bool, exceeds_b: bool) -> str:
    """Build the human-readable reason, one entry per triggering metric."""
    reasons: List[str] = []
    if exceeds_a:
        reasons.append(f"A: ±{diff_a:.2f}")
    if exceeds_b:
        reasons.append(f"B: ±{diff_b:.2f}")
    return ", ".join(reasons)


def reverts(
    pair: SuspectPair,
    following: Optional[Reading],
    ratio: Decimal = DEFAULT_REVERSION_RATIO,
) -> bool:
    """Check whether the series returns towards ``prev`` right after ``curr``.

    Only metrics that triggered the suspicion are tested.
    """
    if following is None:
        return False
    prev_a, prev_b = pair.prev.totals()
    next_a, next_b = following.totals()
    if pair.exceeds_a and abs(next_a - prev_a) < pair.diff_a * ratio:
        return True
    if pair.exceeds_b and abs(next_b - prev_b) < pair.diff_b * ratio:
        return True
    return False


def classify(pair: SuspectPair, ratio: Decimal = DEFAULT_REVERSION_RATIO) -> FlaggedReading:
    """Pick the outlier of a suspect pair.

    Args:
        pair: Suspect pair, with its lookahead reading if the series has one
        ratio: Fraction of the original jump the lookahead must come back within

    Returns:
        FlaggedReading for ``pair.curr`` on reversion, ``pair.prev`` otherwise
    """
    reverted = reverts(pair, pair.next, ratio)
    outlier = pair.curr if reverted else pair.prev
    return FlaggedReading(
        id=outlier.id,
        timestamp=outlier.timestamp,
        diff_a=pair.diff_a,
        diff_b=pair.diff_b,
        reason=format_reason(pair.diff_a, pair.diff_b, pair.exceeds_a, pair.exceeds_b),
        side=OutlierSide.CURRENT if reverted else OutlierSide.PREVIOUS,
        reverted=reverted,
    )
