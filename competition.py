"""
Competitor count adjustment for site scoring.

The Places search radius almost always catches one site that should not
count against the location: the subject site itself, or one already
priced into the traffic estimate.  Detected counts are reduced before
they feed any competition math.

The /places route passes Google's results through unadjusted; scoring
clients apply this to the counts they derive from that response.
"""

import math
from dataclasses import dataclass
from typing import Any

# Subtracted when more than one competitor is detected.
DEFAULT_PENALTY = 1.0
# Subtracted when exactly one competitor is detected, so a lone
# competitor still leaves a small competitive impact.
SINGLE_COMPETITOR_PENALTY = 0.8


@dataclass(frozen=True)
class CompetitionCounts:
    comp_count: float    # adjusted total competitors
    heavy_count: float   # adjusted big-box competitors, never above comp_count


def _non_negative(count: Any) -> float:
    if isinstance(count, bool) or not isinstance(count, (int, float)):
        return 0.0
    if not math.isfinite(count):
        return 0.0
    return max(0.0, float(count))


def adjust_competition_counts(comp_detected: Any, heavy_detected: Any) -> CompetitionCounts:
    """Remove one detected site from the competitor counts.

    Non-numeric, non-finite and negative inputs count as 0.
    """
    detected = _non_negative(comp_detected)
    heavy = _non_negative(heavy_detected)

    penalty = SINGLE_COMPETITOR_PENALTY if detected == 1 else DEFAULT_PENALTY
    comp_count = max(0.0, detected - penalty)

    return CompetitionCounts(
        comp_count=comp_count,
        heavy_count=min(heavy, comp_count),
    )
