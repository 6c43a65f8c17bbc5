"""Ride request compatibility scoring and fare estimation.

This module provides:
- MatchScorer: pairwise scoring, candidate ranking, group validation
- MatchScore / ScoreBreakdown / ScoredCandidate: scoring results
- Pricing helpers: meeting points, earliest departure, fare and split
"""

from .models import MatchScore, ScoreBreakdown, ScoredCandidate
from .pricing import (
    earliest_departure,
    estimate_total_cost,
    meeting_points,
    quote,
    split_cost,
)
from .scorer import MatchScorer

__all__ = [
    "MatchScorer",
    "MatchScore",
    "ScoreBreakdown",
    "ScoredCandidate",
    "earliest_departure",
    "estimate_total_cost",
    "meeting_points",
    "quote",
    "split_cost",
]
