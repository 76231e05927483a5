from datetime import datetime, timedelta, timezone

from algorithms.haversine import KM_PER_DEGREE
from matching.coordinator import MatchCoordinator
from matching.engine import MatchingEngine
from matching.entities import BloodRequest, Coordinates, DonorCandidate, Urgency
from matching.exceptions import NotificationDeliveryFailure
from matching.geo_index import GeoIndex
from matching.notifications import NotificationChannel
from matching.stores import InMemoryDonorStore, InMemoryRequestStore

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)

# Bir Hospital, Kathmandu
CENTER_LAT = 27.7049
CENTER_LON = 85.3133


class FakeClock:

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class RecordingChannel(NotificationChannel):
    name = 'recording'

    def __init__(self, fail_for=()):
        self.alerts = []
        self.requester_notices = []
        self.fail_for = set(fail_for)

    @property
    def alerted(self):
        return [donor_id for donor_id, _, _, _ in self.alerts]

    async def send_alert(self, donor_id, request_id, payload, deadline):
        self.alerts.append((donor_id, request_id, payload, deadline))
        if donor_id in self.fail_for:
            raise NotificationDeliveryFailure(donor_id, request_id, 'gateway down')
        return self.receipt(donor_id, request_id)

    async def notify_requester(self, blood_request, attempt):
        self.requester_notices.append((blood_request.request_id, attempt.donor_id))


def point_north(km, timestamp=NOW, lat=CENTER_LAT, lon=CENTER_LON):
    """Coordinates `km` due north of (lat, lon)"""
    return Coordinates(lat + km / KM_PER_DEGREE, lon, timestamp)


def make_donor(donor_id, km=1.0, blood_type='O-', **kwargs):
    kwargs.setdefault('location', point_north(km))
    return DonorCandidate(donor_id=donor_id, blood_type=blood_type, **kwargs)


def make_request(request_id='r1', blood_type='O-', urgency=Urgency.CRITICAL, **kwargs):
    kwargs.setdefault('location', Coordinates(CENTER_LAT, CENTER_LON, NOW))
    kwargs.setdefault('created_at', NOW)
    kwargs.setdefault('expires_at', NOW + timedelta(hours=6))
    return BloodRequest(
        request_id=request_id,
        requester_id='hospital-1',
        blood_type=blood_type,
        urgency=urgency,
        **kwargs,
    )


def build_engine(donors, clock=None, **kwargs):
    clock = clock or FakeClock()
    geo_index = GeoIndex(clock=clock)
    donor_store = InMemoryDonorStore(donors)
    for donor in donors:
        if donor.location is not None:
            geo_index.upsert_location(donor.donor_id, donor.location)
    return MatchingEngine(geo_index, donor_store, clock=clock, **kwargs)


def build_coordinator(donors, clock=None, channel=None):
    clock = clock or FakeClock()
    engine = build_engine(donors, clock)
    return MatchCoordinator(engine, InMemoryRequestStore(), channel or RecordingChannel(), clock=clock)
