# algorithms/urgency.py
"""
Urgency policy: how wide, how fast and how patiently a request searches.

Higher urgency searches wider, expands sooner (a larger minimum candidate
pool triggers expansion more readily) and gives each donor less time to
respond.
"""
from dataclasses import dataclass, replace
from datetime import timedelta

from matching.entities import Urgency


@dataclass(frozen=True)
class UrgencyPolicy:
    initial_radius_km: float
    max_radius_km: float
    expansion_factor: float
    max_expansion_steps: int
    min_candidate_pool: int
    response_deadline: timedelta


DEFAULT_POLICIES = {
    Urgency.LOW: UrgencyPolicy(10.0, 25.0, 1.5, 3, 1, timedelta(minutes=30)),
    Urgency.MEDIUM: UrgencyPolicy(10.0, 40.0, 1.5, 4, 1, timedelta(minutes=15)),
    Urgency.HIGH: UrgencyPolicy(10.0, 60.0, 1.5, 5, 2, timedelta(minutes=5)),
    Urgency.CRITICAL: UrgencyPolicy(10.0, 100.0, 1.5, 6, 3, timedelta(seconds=45)),
}

# How much a fast-responding donor is rewarded at each urgency level
URGENCY_FACTORS = {
    Urgency.LOW: 0.25,
    Urgency.MEDIUM: 0.5,
    Urgency.HIGH: 0.75,
    Urgency.CRITICAL: 1.0,
}


def urgency_factor(urgency):
    return URGENCY_FACTORS.get(urgency, URGENCY_FACTORS[Urgency.MEDIUM])


def build_policies(overrides=None):
    """
    Merge settings overrides into the default policies.

    Args:
        overrides: {urgency: {field: value}}; 'response_deadline' may be
            given as seconds

    Returns:
        Dict mapping urgency to UrgencyPolicy
    """
    policies = dict(DEFAULT_POLICIES)
    for urgency, fields in (overrides or {}).items():
        fields = dict(fields)
        deadline = fields.get('response_deadline')
        if deadline is not None and not isinstance(deadline, timedelta):
            fields['response_deadline'] = timedelta(seconds=deadline)
        policies[Urgency(urgency)] = replace(policies[Urgency(urgency)], **fields)

    for urgency, policy in policies.items():
        if policy.initial_radius_km <= 0 or policy.max_radius_km < policy.initial_radius_km:
            raise ValueError(f"Invalid search radii for urgency '{urgency}'")
        if policy.expansion_factor <= 1.0:
            raise ValueError(f"Expansion factor for urgency '{urgency}' must be > 1")
    return policies


def policy_for(urgency, policies=None):
    policies = policies or DEFAULT_POLICIES
    policy = policies.get(urgency)
    if policy is None:
        policy = policies.get(Urgency.MEDIUM) or DEFAULT_POLICIES[Urgency.MEDIUM]
    return policy


def request_priority(blood_request, now):
    """
    Priority score (0-100) used to order many pending requests: urgency,
    time waiting, units needed and blood rarity
    """
    urgency_score = calculate_urgency_score(blood_request.urgency)
    time_score = calculate_time_score(blood_request.created_at, now)
    units_score = calculate_units_score(blood_request.required_units)
    blood_rarity_score = calculate_blood_rarity_score(blood_request.blood_type)

    return (
        urgency_score * 0.40 +
        time_score * 0.30 +
        units_score * 0.20 +
        blood_rarity_score * 0.10
    )


def calculate_urgency_score(urgency):
    urgency_mapping = {
        Urgency.CRITICAL: 100,
        Urgency.HIGH: 70,
        Urgency.MEDIUM: 40,
        Urgency.LOW: 20,
    }
    return urgency_mapping.get(urgency, 40)


def calculate_time_score(created_at, now):
    """Longer wait = higher score (0-100)"""
    hours_waiting = (now - created_at).total_seconds() / 3600

    if hours_waiting >= 24:
        return 100
    elif hours_waiting >= 12:
        return 80
    elif hours_waiting >= 6:
        return 60
    elif hours_waiting >= 3:
        return 40
    elif hours_waiting >= 1:
        return 20
    else:
        return 0


def calculate_units_score(units_needed):
    if units_needed >= 5:
        return 100
    elif units_needed >= 4:
        return 80
    elif units_needed >= 3:
        return 60
    elif units_needed >= 2:
        return 40
    else:
        return 20


def calculate_blood_rarity_score(blood_type):
    """Rarer blood types get higher scores (0-100)"""
    rarity_mapping = {
        'AB-': 100,  # Rarest
        'B-': 90,
        'AB+': 80,
        'A-': 70,
        'O-': 60,   # Universal donor but still rare
        'B+': 50,
        'A+': 40,
        'O+': 30,   # Most common
    }
    return rarity_mapping.get(str(blood_type), 50)
