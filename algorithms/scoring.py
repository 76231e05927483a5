# algorithms/scoring.py
"""
Weighted-sum match scoring.

Five axes, each normalised to [0, 1]:
1. Distance (closer is better)
2. Availability freshness (recently confirmed availability is better)
3. Response history (high acceptance rate, fast responses)
4. Blood compatibility (exact type beats compatible type)
5. Urgency bonus (fast responders, scaled by request urgency)
"""
import math
from dataclasses import astuple, dataclass
from datetime import timedelta

from algorithms.blood_compatibility import compatibility_score
from algorithms.urgency import urgency_factor
from matching.entities import MatchCandidateScore
from matching.exceptions import InvalidScoreWeights, ScoreInvariantViolation

AVAILABILITY_FRESHNESS = timedelta(hours=72)
RESPONSE_SPEED_REFERENCE_SECONDS = 1800  # 30 minutes = slowest useful response
STALE_DISTANCE_CONFIDENCE = 0.5
NEUTRAL_SCORE = 0.5
WEIGHT_SUM_TOLERANCE = 1e-9


@dataclass(frozen=True)
class ScoreWeights:
    distance: float = 0.35
    availability: float = 0.25
    history: float = 0.20
    compatibility: float = 0.15
    urgency: float = 0.05

    def validate(self):
        """Weights must be non-negative and sum to 1"""
        values = astuple(self)
        if any(not math.isfinite(w) or w < 0 for w in values):
            raise InvalidScoreWeights(f"Score weights must be non-negative numbers: {values}")
        if not math.isclose(math.fsum(values), 1.0, rel_tol=0, abs_tol=WEIGHT_SUM_TOLERANCE):
            raise InvalidScoreWeights(f"Score weights must sum to 1.0, got {math.fsum(values)}")
        return self

    @classmethod
    def from_setting(cls, value):
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls(**{key.lower(): float(w) for key, w in value.items()})


def distance_score(distance_km, max_radius_km, stale=False):
    score = 1.0 - min(distance_km / max_radius_km, 1.0)
    if stale:
        score *= STALE_DISTANCE_CONFIDENCE
    return score


def availability_score(donor, now, freshness=AVAILABILITY_FRESHNESS):
    """
    Graded freshness of the donor's availability status.
    Status confirmed just now = 1, older than the freshness window = 0.
    """
    if donor.availability_updated_at is None:
        return NEUTRAL_SCORE
    age = max((now - donor.availability_updated_at).total_seconds(), 0.0)
    return 1.0 - min(age / freshness.total_seconds(), 1.0)


def response_speed(stats, reference_seconds=RESPONSE_SPEED_REFERENCE_SECONDS):
    if stats.avg_response_seconds is None:
        return NEUTRAL_SCORE
    return 1.0 - min(max(stats.avg_response_seconds, 0.0) / reference_seconds, 1.0)


def history_score(stats, reference_seconds=RESPONSE_SPEED_REFERENCE_SECONDS):
    rate = stats.acceptance_rate
    if rate is None:
        rate = NEUTRAL_SCORE
    return 0.5 * rate + 0.5 * response_speed(stats, reference_seconds)


def score(donor, blood_request, distance_km, *, now, max_radius_km, stale=False,
          weights=None, freshness=AVAILABILITY_FRESHNESS,
          reference_seconds=RESPONSE_SPEED_REFERENCE_SECONDS):
    """
    Composite match score for a donor/request pair.

    Args:
        donor: DonorCandidate
        blood_request: BloodRequest
        distance_km: Great-circle distance from the geo index
        now: Current datetime
        max_radius_km: Distance at which the distance axis reaches 0
        stale: Whether the donor location is past the staleness threshold
        weights: ScoreWeights (validated at startup)

    Returns:
        MatchCandidateScore with composite in [0, 1]
    """
    weights = weights or ScoreWeights()

    d = distance_score(distance_km, max_radius_km, stale)
    a = availability_score(donor, now, freshness)
    h = history_score(donor.response_stats, reference_seconds)
    c = compatibility_score(donor.blood_type, blood_request.blood_type)
    # Urgency rewards speed, so critical requests lean harder on fast responders
    u = urgency_factor(blood_request.urgency) * response_speed(donor.response_stats, reference_seconds)

    weighted = (
        weights.distance * d,
        weights.availability * a,
        weights.history * h,
        weights.compatibility * c,
        weights.urgency * u,
    )
    composite = sum(weighted)

    # Weights may sum to 1 within WEIGHT_SUM_TOLERANCE, so a perfect donor can land a hair above 1
    if not 0.0 <= composite <= 1.0 + WEIGHT_SUM_TOLERANCE:
        raise ScoreInvariantViolation(
            f"Score {composite} out of range for donor {donor.donor_id} / request {blood_request.request_id}"
        )
    composite = min(composite, 1.0)

    return MatchCandidateScore(
        donor_id=donor.donor_id,
        request_id=blood_request.request_id,
        distance_score=d,
        availability_score=a,
        history_score=h,
        compatibility_score=c,
        urgency_bonus=u,
        weighted=weighted,
        composite_score=composite,
        distance_km=distance_km,
        stale_location=stale,
    )


def rank(candidates):
    """
    Sort RankedCandidates: highest composite first, then nearest, then donor id
    """
    return sorted(
        candidates,
        key=lambda c: (-c.score.composite_score, c.distance_km, c.donor_id),
    )
