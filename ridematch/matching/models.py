"""Data models for the match scorer.

This module defines the result structures produced when two ride requests are
compared, and the ranked candidate entries handed back to callers.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from ridematch.domain.models import RideRequest


@dataclass
class ScoreBreakdown:
    """Raw measurements and per-component sub-scores (each 0..100).

    Attributes:
        origin_distance_m: Great-circle distance between pickup points
        destination_distance_m: Great-circle distance between dropoff points
        time_difference_min: Absolute difference of departure times
        time_window_min: Allowed difference for this pair
        preferences_match: Whether the gender / verification gate passed
        department_match: Whether the same-department bonus applied
    """

    origin_distance_m: float = 0.0
    destination_distance_m: float = 0.0
    time_difference_min: float = 0.0
    time_window_min: float = 0.0
    preferences_match: bool = False
    department_match: bool = False
    origin_score: float = 0.0
    destination_score: float = 0.0
    time_score: float = 0.0
    preferences_score: float = 0.0
    department_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MatchScore:
    """Compatibility of a candidate request with a reference request.

    ``score`` is 0 whenever ``eligible`` is False; ``rejection_reason`` then
    names the first rule that failed.
    """

    request_id: str
    score: int
    eligible: bool
    breakdown: ScoreBreakdown = field(default_factory=ScoreBreakdown)
    rejection_reason: Optional[str] = None


@dataclass
class ScoredCandidate:
    """A candidate request together with its score, as returned by ranking."""

    request: RideRequest
    match_score: MatchScore

    @property
    def score(self) -> int:
        return self.match_score.score

    @property
    def request_id(self) -> str:
        return self.request.id
