"""Compatibility scoring between ride requests.

This module implements the matching logic that:
1. Measures pickup distance, dropoff distance and departure time difference
2. Applies hard cutoffs and the mutual preference gate
3. Combines weighted sub-scores into a 0..100 score
4. Ranks a pool of candidates for a request and validates N-way groups

Weights (configurable, must sum to 1.0):

    origin 0.40, destination 0.40, time 0.10, preferences 0.05, department 0.05
"""

import logging
from itertools import combinations
from typing import Iterable, List, Optional, Sequence

from ridematch.config.models import MatchingConfig
from ridematch.domain.exceptions import IneligibleGroupError
from ridematch.domain.models import Gender, GenderPreference, RequestStatus, RideRequest
from ridematch.utils.geo import distance_m
from ridematch.utils.timestamps import minutes_between

from .models import MatchScore, ScoreBreakdown, ScoredCandidate

logger = logging.getLogger(__name__)

# Rejection reasons
REASON_SAME_REQUEST = "same request"
REASON_SAME_RIDER = "same rider"
REASON_ORIGIN_TOO_FAR = "pickup points too far apart"
REASON_DESTINATION_TOO_FAR = "dropoff points too far apart"
REASON_TIME_WINDOW = "departure times too far apart"
REASON_GENDER = "gender preference not satisfied"
REASON_VERIFICATION = "student verification required"


def _implied_gender(request: RideRequest) -> Optional[Gender]:
    """Gender of the rider, falling back to what their own preference implies."""
    if request.rider.gender is not None:
        return request.rider.gender
    preference = request.preferences.gender_preference
    if preference == GenderPreference.FEMALE_ONLY:
        return Gender.FEMALE
    if preference == GenderPreference.MALE_ONLY:
        return Gender.MALE
    return None


def _accepts(preference: GenderPreference, other: Optional[Gender]) -> bool:
    # Unknown gender never satisfies an *_only preference
    if preference == GenderPreference.FEMALE_ONLY:
        return other == Gender.FEMALE
    if preference == GenderPreference.MALE_ONLY:
        return other == Gender.MALE
    return True


def _linear(value: float, limit: float) -> float:
    """100 at zero, falling linearly to 0 at the limit."""
    if limit <= 0:
        return 100.0 if value == 0 else 0.0
    return max(0.0, 100.0 * (1.0 - value / limit))


class MatchScorer:
    """Scores pairs of ride requests and ranks candidate pools.

    Responsibilities:
    - Hard cutoffs on pickup distance, dropoff distance and departure time
    - Mutual gender preference and student verification gate
    - Same-department bonus
    - Ranking of candidates above the minimum score
    - Pairwise validation of a proposed group
    """

    def __init__(self, config: Optional[MatchingConfig] = None):
        """Initialize MatchScorer.

        Args:
            config: Cutoffs, weights and minimum score (defaults if omitted)
        """
        self.config = config or MatchingConfig()

    def score(self, a: RideRequest, b: RideRequest) -> MatchScore:
        """Score request ``b`` as a co-rider for request ``a``.

        The result is symmetric in everything except ``request_id``, which
        names ``b``.

        Args:
            a: Reference request
            b: Candidate request

        Returns:
            MatchScore with eligibility, breakdown and the 0..100 score
        """
        cfg = self.config
        breakdown = ScoreBreakdown(
            origin_distance_m=distance_m(a.origin, b.origin),
            destination_distance_m=distance_m(a.destination, b.destination),
            time_difference_min=minutes_between(a.departure_time, b.departure_time),
            time_window_min=float(min(cfg.max_time_difference_min, a.flexibility + b.flexibility)),
        )

        breakdown.origin_score = _linear(breakdown.origin_distance_m, cfg.max_origin_distance_m)
        breakdown.destination_score = _linear(
            breakdown.destination_distance_m, cfg.max_destination_distance_m
        )
        breakdown.time_score = _linear(breakdown.time_difference_min, breakdown.time_window_min)

        gate_reason = self._preference_gate(a, b)
        breakdown.preferences_match = gate_reason is None
        breakdown.preferences_score = 100.0 if gate_reason is None else 0.0

        breakdown.department_match = self._department_bonus(a, b)
        breakdown.department_score = 100.0 if breakdown.department_match else 0.0

        reason = self._rejection_reason(a, b, breakdown, gate_reason)
        if reason is not None:
            return MatchScore(request_id=b.id, score=0, eligible=False,
                              breakdown=breakdown, rejection_reason=reason)

        w = cfg.weights
        total = (
            w.origin * breakdown.origin_score
            + w.destination * breakdown.destination_score
            + w.time * breakdown.time_score
            + w.preferences * breakdown.preferences_score
            + w.department * breakdown.department_score
        )
        score = max(0, min(100, int(round(total))))
        return MatchScore(request_id=b.id, score=score, eligible=True, breakdown=breakdown)

    def _rejection_reason(
        self,
        a: RideRequest,
        b: RideRequest,
        breakdown: ScoreBreakdown,
        gate_reason: Optional[str],
    ) -> Optional[str]:
        cfg = self.config
        if a.id == b.id:
            return REASON_SAME_REQUEST
        if a.user_id == b.user_id:
            return REASON_SAME_RIDER
        if breakdown.origin_distance_m > cfg.max_origin_distance_m:
            return REASON_ORIGIN_TOO_FAR
        if breakdown.destination_distance_m > cfg.max_destination_distance_m:
            return REASON_DESTINATION_TOO_FAR
        if breakdown.time_window_min == 0:
            if breakdown.time_difference_min != 0:
                return REASON_TIME_WINDOW
        elif breakdown.time_difference_min > breakdown.time_window_min:
            return REASON_TIME_WINDOW
        return gate_reason

    @staticmethod
    def _preference_gate(a: RideRequest, b: RideRequest) -> Optional[str]:
        if not _accepts(a.preferences.gender_preference, _implied_gender(b)):
            return REASON_GENDER
        if not _accepts(b.preferences.gender_preference, _implied_gender(a)):
            return REASON_GENDER

        if a.preferences.student_verified_only or b.preferences.student_verified_only:
            if not (a.rider.is_student_verified and b.rider.is_student_verified):
                return REASON_VERIFICATION
        return None

    @staticmethod
    def _department_bonus(a: RideRequest, b: RideRequest) -> bool:
        dept_a, dept_b = a.rider.department, b.rider.department
        if not dept_a or not dept_b or dept_a.casefold() != dept_b.casefold():
            return False
        return a.preferences.same_department_preferred and b.preferences.same_department_preferred

    def score_candidates(
        self,
        request: RideRequest,
        pool: Iterable[RideRequest],
        limit: Optional[int] = None,
    ) -> List[ScoredCandidate]:
        """Rank the pool as co-riders for ``request``.

        Excludes the request itself, requests that are not searching, requests
        from the same user, ineligible pairs and scores below min_match_score.
        Ordered by score descending, then earlier created_at, then id.

        Args:
            request: Reference request
            pool: Candidate requests
            limit: Keep at most this many candidates

        Returns:
            Ranked list of ScoredCandidate
        """
        ranked: List[ScoredCandidate] = []
        for candidate in pool:
            if candidate.id == request.id or candidate.user_id == request.user_id:
                continue
            if candidate.status != RequestStatus.SEARCHING:
                continue

            result = self.score(request, candidate)
            if not result.eligible or result.score < self.config.min_match_score:
                continue
            ranked.append(ScoredCandidate(request=candidate, match_score=result))

        ranked.sort(key=lambda c: (-c.score, c.request.created_at, c.request.id))

        logger.debug(
            "Scored candidate pool",
            extra={
                "event": "matching.candidates.scored",
                "request_id": request.id,
                "candidates": len(ranked),
            },
        )
        return ranked[:limit] if limit is not None else ranked

    def check_group(self, requests: Sequence[RideRequest]) -> None:
        """Verify every pair in the group is eligible.

        Raises:
            IneligibleGroupError: Naming the first incompatible pair
        """
        for a, b in combinations(requests, 2):
            result = self.score(a, b)
            if not result.eligible:
                raise IneligibleGroupError(
                    f"Requests {a.id} and {b.id} cannot share a ride: {result.rejection_reason}",
                    request_ids=(a.id, b.id),
                    reason=result.rejection_reason,
                )

    def is_group_eligible(self, requests: Sequence[RideRequest]) -> bool:
        try:
            self.check_group(requests)
        except IneligibleGroupError:
            return False
        return True
