"""
Error taxonomy for the matching core.

Candidate exhaustion and radius expansion are ordinary outcomes and are
reported as request status transitions. Only configuration errors and
internal invariant violations are raised.
"""
from django.core.exceptions import ImproperlyConfigured


class MatchingError(Exception):
    """Base class for matching core errors"""


class NoEligibleCandidates(MatchingError):
    """No eligible donor was found, even at the maximum search radius"""

    def __init__(self, request_id, radius_km):
        self.request_id = request_id
        self.radius_km = radius_km
        super().__init__(f"No eligible donors for request {request_id} within {radius_km:.1f}km")


class StaleLocationData(UserWarning):
    """A donor location older than the staleness threshold was used"""


class NotificationDeliveryFailure(MatchingError):
    """An alert could not be delivered to the donor"""

    def __init__(self, donor_id, request_id, reason=''):
        self.donor_id = donor_id
        self.request_id = request_id
        self.reason = reason
        super().__init__(f"Alert for request {request_id} to donor {donor_id} failed: {reason}")


class UnknownRequest(MatchingError, KeyError):
    """An event referenced a request the coordinator does not own"""


class InvalidScoreWeights(ImproperlyConfigured):
    """Score weights are negative or do not sum to 1.0"""


# Invariant violations. These are bugs, never business outcomes.

class DuplicateAttempt(MatchingError):
    """A second pending attempt was about to be opened for a request"""


class MalformedCoordinates(MatchingError, ValueError):
    """Latitude/longitude outside their valid range, or not finite"""


class ScoreInvariantViolation(MatchingError):
    """A composite score fell outside [0, 1]"""
