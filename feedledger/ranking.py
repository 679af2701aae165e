"""
Scoring and visibility rules shared by the feed service and the sync workers.

Score formula:
  engagement = ln(likes + 2*comments + 3*shares + 1)
  recency    = 1 / (age_hours + 1)
  score      = 0.6 * engagement + 0.4 * recency

The log keeps viral outliers from dominating linearly; the hyperbola lets
brand-new posts with no engagement still surface and decays smoothly
instead of cutting off at a fixed age.
"""
import math
from datetime import datetime
from typing import Optional

from feedledger.models import (
    VISIBILITY_FOLLOWERS,
    VISIBILITY_PRIVATE,
    VISIBILITY_PUBLIC,
    utcnow,
)

ENGAGEMENT_WEIGHT = 0.6
RECENCY_WEIGHT = 0.4

ALGORITHM_HYBRID = "hybrid"
ALGORITHM_CHRONOLOGICAL = "chronological"
ALGORITHM_ENGAGEMENT = "engagement"
ALGORITHMS = (ALGORITHM_HYBRID, ALGORITHM_CHRONOLOGICAL, ALGORITHM_ENGAGEMENT)


def engagement_score(likes: int, comments: int, shares: int) -> float:
    weighted = max(likes, 0) + 2 * max(comments, 0) + 3 * max(shares, 0)
    return math.log(weighted + 1)


def recency_score(created_at: datetime, now: Optional[datetime] = None) -> float:
    now = now or utcnow()
    age_hours = max(0.0, (now - created_at).total_seconds() / 3600)
    return 1.0 / (age_hours + 1.0)


def calculate_score(
    likes: int,
    comments: int,
    shares: int,
    created_at: datetime,
    now: Optional[datetime] = None,
) -> float:
    return (
        ENGAGEMENT_WEIGHT * engagement_score(likes, comments, shares)
        + RECENCY_WEIGHT * recency_score(created_at, now)
    )


def engagement_total(stats: dict[str, int]) -> int:
    return stats.get("likes", 0) + stats.get("comments", 0) + stats.get("shares", 0)


def can_view(
    visibility: str,
    author_id: str,
    author_is_private: bool,
    viewer_id: Optional[str],
    viewer_follows_author: bool,
) -> bool:
    """
    The single visibility predicate every feed variant applies.

      public    — everyone, except posts by private accounts, which need an
                  accepted follow
      followers — accepted followers only
      private   — the author only
    The author always sees their own posts.
    """
    if viewer_id is not None and viewer_id == author_id:
        return True
    if visibility == VISIBILITY_PUBLIC:
        return not author_is_private or viewer_follows_author
    if visibility == VISIBILITY_FOLLOWERS:
        return viewer_follows_author
    if visibility == VISIBILITY_PRIVATE:
        return False
    # Unknown values are treated as the most restrictive
    return False
