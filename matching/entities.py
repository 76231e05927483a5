# matching/entities.py
"""
In-memory records the matching core works on.

Donor and request records are immutable snapshots handed in by the store
collaborators; the coordinator replaces its copy of a request with
dataclasses.replace() when the status or attempted list changes.
"""
import math
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Optional, Tuple

from django.db import models

from matching.exceptions import MalformedCoordinates


class BloodType(models.TextChoices):
    O_NEG = 'O-', 'O-'
    O_POS = 'O+', 'O+'
    A_NEG = 'A-', 'A-'
    A_POS = 'A+', 'A+'
    B_NEG = 'B-', 'B-'
    B_POS = 'B+', 'B+'
    AB_NEG = 'AB-', 'AB-'
    AB_POS = 'AB+', 'AB+'


class Availability(models.TextChoices):
    AVAILABLE = 'available', 'Available'
    UNAVAILABLE = 'unavailable', 'Unavailable'
    RECENTLY_DONATED = 'recently_donated', 'Recently Donated'


class Urgency(models.TextChoices):
    LOW = 'low', 'Low'
    MEDIUM = 'medium', 'Medium'
    HIGH = 'high', 'High'
    CRITICAL = 'critical', 'Critical - Life Threatening'


class RequestStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    MATCHED = 'matched', 'Matched'
    FULFILLED = 'fulfilled', 'Fulfilled'
    EXPIRED = 'expired', 'Expired'
    CANCELLED = 'cancelled', 'Cancelled'


class MatchState(models.TextChoices):
    PENDING = 'pending', 'Pending'
    AWAITING_RESPONSE = 'awaiting_response', 'Awaiting Response'
    MATCHED = 'matched', 'Matched'
    FULFILLED = 'fulfilled', 'Fulfilled'
    EXPIRED = 'expired', 'Expired'
    CANCELLED = 'cancelled', 'Cancelled'

    @property
    def is_terminal(self):
        return self in (MatchState.FULFILLED, MatchState.EXPIRED, MatchState.CANCELLED)

    @property
    def request_status(self):
        """Status the request store sees for this coordinator state"""
        if self == MatchState.AWAITING_RESPONSE:
            return RequestStatus.PENDING
        return RequestStatus(self.value)


class AttemptOutcome(models.TextChoices):
    PENDING = 'pending', 'Pending'
    ACCEPTED = 'accepted', 'Accepted'
    DECLINED = 'declined', 'Declined'
    TIMED_OUT = 'timed_out', 'Timed Out'
    DELIVERY_FAILED = 'delivery_failed', 'Delivery Failed'
    INVALIDATED = 'invalidated', 'Invalidated'


class LocationSource(models.TextChoices):
    GPS = 'gps', 'GPS'
    NETWORK = 'network', 'Network'
    MANUAL = 'manual', 'Manual'
    LAST_KNOWN = 'last_known', 'Last Known'


class ContactPreference(models.TextChoices):
    APP = 'app', 'Push'
    SMS = 'sms', 'SMS'
    EMAIL = 'email', 'Email'


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float
    timestamp: datetime
    accuracy_m: Optional[float] = None
    source: str = LocationSource.GPS

    def validate(self):
        lat, lon = self.latitude, self.longitude
        if not (isinstance(lat, (int, float)) and isinstance(lon, (int, float))):
            raise MalformedCoordinates(f"Coordinates must be numeric, got ({lat!r}, {lon!r})")
        if not (math.isfinite(lat) and math.isfinite(lon)):
            raise MalformedCoordinates(f"Coordinates must be finite, got ({lat}, {lon})")
        if not -90.0 <= lat <= 90.0 or not -180.0 <= lon <= 180.0:
            raise MalformedCoordinates(f"Coordinates out of range: ({lat}, {lon})")
        if self.accuracy_m is not None and self.accuracy_m < 0:
            raise MalformedCoordinates(f"Negative accuracy: {self.accuracy_m}")
        return self


@dataclass(frozen=True)
class ResponseStats:
    """Historical alert response behaviour of a donor"""
    alerts_received: int = 0
    alerts_accepted: int = 0
    avg_response_seconds: Optional[float] = None

    @property
    def acceptance_rate(self):
        if self.alerts_received <= 0:
            return None
        return min(self.alerts_accepted / self.alerts_received, 1.0)


@dataclass(frozen=True)
class DonorCandidate:
    donor_id: str
    blood_type: str
    location: Optional[Coordinates] = None
    availability: str = Availability.AVAILABLE
    availability_updated_at: Optional[datetime] = None
    last_donation_date: Optional[date] = None
    response_stats: ResponseStats = field(default_factory=ResponseStats)
    active: bool = True
    contact_preference: str = ContactPreference.APP
    email: str = ''

    def deactivate(self):
        return replace(self, active=False)

    def __str__(self):
        return f"{self.donor_id} ({self.blood_type})"


@dataclass(frozen=True)
class BloodRequest:
    request_id: str
    requester_id: str
    blood_type: str
    urgency: str
    location: Coordinates
    created_at: datetime
    expires_at: datetime
    required_units: int = 1
    status: str = RequestStatus.PENDING
    attempted_donors: Tuple[str, ...] = ()
    contact_email: str = ''

    def has_attempted(self, donor_id):
        return donor_id in self.attempted_donors

    def is_expired(self, now):
        return now >= self.expires_at

    def with_attempted(self, donor_id):
        if donor_id in self.attempted_donors:
            return self
        return replace(self, attempted_donors=self.attempted_donors + (donor_id,))

    def __str__(self):
        return f"Request {self.request_id} - {self.blood_type} ({self.urgency})"


@dataclass(frozen=True)
class MatchCandidateScore:
    """Derived view of how well one donor fits one request"""
    donor_id: str
    request_id: str
    distance_score: float
    availability_score: float
    history_score: float
    compatibility_score: float
    urgency_bonus: float
    weighted: Tuple[float, float, float, float, float]
    composite_score: float
    distance_km: float
    stale_location: bool = False

    def contributions(self):
        """Weighted terms in order: distance, availability, history, compatibility, urgency"""
        return self.weighted


@dataclass(frozen=True)
class RankedCandidate:
    donor: DonorCandidate
    score: MatchCandidateScore
    distance_km: float
    stale: bool = False

    @property
    def donor_id(self):
        return self.donor.donor_id


@dataclass
class MatchAttempt:
    attempt_id: str
    request_id: str
    donor_id: str
    dispatched_at: datetime
    deadline: datetime
    outcome: str = AttemptOutcome.PENDING
    responded_at: Optional[datetime] = None
    rank: int = 0
    score: Optional[float] = None

    @property
    def is_pending(self):
        return self.outcome == AttemptOutcome.PENDING

    @property
    def response_time_seconds(self):
        if self.responded_at is None:
            return None
        return (self.responded_at - self.dispatched_at).total_seconds()

    def __str__(self):
        return f"Attempt {self.attempt_id} -> donor {self.donor_id} | Request {self.request_id} ({self.outcome})"
