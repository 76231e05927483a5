# matching/engine.py
"""
Matching engine: geo query -> eligibility filter -> score -> rank, with
bounded radius expansion when too few donors survive.

The engine holds no mutable state of its own and may be called from many
requests concurrently.
"""
import logging
import warnings
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from django.utils import timezone

from algorithms import scoring
from algorithms.eligibility import DONATION_COOLDOWN_DAYS, is_eligible
from algorithms.urgency import DEFAULT_POLICIES, policy_for
from matching.entities import RankedCandidate
from matching.exceptions import NoEligibleCandidates, StaleLocationData

logger = logging.getLogger(__name__)


@dataclass
class CandidateSearch:
    candidates: List[RankedCandidate] = field(default_factory=list)
    radius_km: float = 0.0
    expansions: int = 0

    @property
    def exhausted(self):
        return not self.candidates

    def __len__(self):
        return len(self.candidates)

    def __iter__(self):
        return iter(self.candidates)


class MatchingEngine:

    def __init__(self, geo_index, donor_store, weights=None, policies=None,
                 cooldown_days=DONATION_COOLDOWN_DAYS,
                 availability_freshness=scoring.AVAILABILITY_FRESHNESS,
                 speed_reference_seconds=scoring.RESPONSE_SPEED_REFERENCE_SECONDS,
                 clock=timezone.now):
        self.geo_index = geo_index
        self.donor_store = donor_store
        self.weights = weights or scoring.ScoreWeights()
        self.policies = policies or DEFAULT_POLICIES
        self.cooldown_days = cooldown_days
        self.availability_freshness = availability_freshness
        self.speed_reference_seconds = speed_reference_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, geo_index, donor_store, clock=timezone.now):
        from algorithms.urgency import build_policies
        from matching.conf import matching_settings

        return cls(
            geo_index,
            donor_store,
            weights=scoring.ScoreWeights.from_setting(matching_settings.SCORE_WEIGHTS).validate(),
            policies=build_policies(matching_settings.URGENCY_POLICIES),
            cooldown_days=matching_settings.DONATION_COOLDOWN_DAYS,
            availability_freshness=timedelta(hours=matching_settings.AVAILABILITY_FRESHNESS_HOURS),
            speed_reference_seconds=matching_settings.RESPONSE_SPEED_REFERENCE_SECONDS,
            clock=clock,
        )

    def policy(self, blood_request):
        return policy_for(blood_request.urgency, self.policies)

    def _score_hits(self, blood_request, hits, max_radius_km, now):
        ranked = []
        for hit in hits:
            donor = self.donor_store.get_donor(hit.donor_id)
            if donor is None:
                continue
            if not is_eligible(donor, blood_request, now, self.cooldown_days):
                continue
            match_score = scoring.score(
                donor,
                blood_request,
                hit.distance_km,
                now=now,
                max_radius_km=max_radius_km,
                stale=hit.stale,
                weights=self.weights,
                freshness=self.availability_freshness,
                reference_seconds=self.speed_reference_seconds,
            )
            ranked.append(RankedCandidate(donor, match_score, hit.distance_km, hit.stale))
        return ranked

    def _rank_at(self, blood_request, radius_km, max_radius_km, now):
        hits = self.geo_index.query(blood_request.location, radius_km, now=now)
        ranked = self._score_hits(blood_request, [h for h in hits if not h.stale], max_radius_km, now)
        if not ranked:
            # Stale positions only count when no fresh donor is eligible
            ranked = self._score_hits(blood_request, [h for h in hits if h.stale], max_radius_km, now)
            if ranked:
                message = (f"Request {blood_request.request_id}: no eligible donor with a fresh position "
                           f"within {radius_km:.1f}km; falling back to {len(ranked)} stale positions")
                logger.warning(message)
                warnings.warn(message, StaleLocationData, stacklevel=3)
        return scoring.rank(ranked)

    def search(self, blood_request, radius_km=None, now=None):
        """
        Ranked candidates for a request, widening the radius as needed.

        Args:
            blood_request: BloodRequest snapshot (attempted donors excluded)
            radius_km: Starting radius; defaults to the urgency policy's
            now: Reference time

        Returns:
            CandidateSearch; empty candidates means nobody is eligible even
            at the policy's maximum radius
        """
        now = now or self.clock()
        policy = self.policy(blood_request)
        radius = min(radius_km or policy.initial_radius_km, policy.max_radius_km)
        max_radius = max(policy.max_radius_km, radius)

        expansions = 0
        ranked = self._rank_at(blood_request, radius, max_radius, now)
        while (len(ranked) < policy.min_candidate_pool
               and radius < max_radius
               and expansions < policy.max_expansion_steps):
            radius = min(radius * policy.expansion_factor, max_radius)
            expansions += 1
            logger.debug(f"Request {blood_request.request_id}: {len(ranked)} candidates, expanding to {radius:.1f}km")
            ranked = self._rank_at(blood_request, radius, max_radius, now)

        logger.info(f"{len(ranked)} donors matched for request {blood_request.request_id} "
                    f"within {radius:.1f}km ({expansions} expansions)")
        return CandidateSearch(ranked, radius, expansions)

    def find_candidates(self, blood_request, radius_km=None, now=None):
        return self.search(blood_request, radius_km, now).candidates

    def require_candidates(self, blood_request, radius_km=None, now=None):
        """Like find_candidates, but raises NoEligibleCandidates when empty"""
        result = self.search(blood_request, radius_km, now)
        if result.exhausted:
            raise NoEligibleCandidates(blood_request.request_id, result.radius_km)
        return result.candidates
