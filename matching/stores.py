# matching/stores.py
"""
Collaborator contracts the matching core consumes, with in-memory
implementations used by tests and by single-process deployments.

The core never writes donor profile fields. Request status and the
attempted-donor list are reported back through RequestStore.record_state.
"""
import abc
import logging
import threading

logger = logging.getLogger(__name__)


class LocationStore(abc.ABC):

    @abc.abstractmethod
    def current_location(self, donor_id):
        """Coordinates for the donor, or None when unknown"""


class DonorStore(abc.ABC):

    @abc.abstractmethod
    def get_donor(self, donor_id):
        """DonorCandidate snapshot, or None when unknown"""


class RequestStore(abc.ABC):

    @abc.abstractmethod
    def get_request(self, request_id):
        """BloodRequest snapshot, or None when unknown"""

    @abc.abstractmethod
    def record_state(self, blood_request, state, attempt=None):
        """Receive a state-change event for a request"""


class InMemoryLocationStore(LocationStore):
    """
    Location store that forwards every update to subscribed geo indexes.
    """

    def __init__(self):
        self._locations = {}
        self._subscribers = []
        self._lock = threading.Lock()

    def subscribe(self, geo_index):
        self._subscribers.append(geo_index)

    def current_location(self, donor_id):
        return self._locations.get(donor_id)

    def update(self, donor_id, coordinates):
        coordinates.validate()
        with self._lock:
            current = self._locations.get(donor_id)
            if current is None or coordinates.timestamp > current.timestamp:
                self._locations[donor_id] = coordinates
        for geo_index in self._subscribers:
            geo_index.upsert_location(donor_id, coordinates)

    def donor_ids(self):
        return list(self._locations)


class InMemoryDonorStore(DonorStore):

    def __init__(self, donors=()):
        self._donors = {d.donor_id: d for d in donors}

    def add(self, donor):
        self._donors[donor.donor_id] = donor

    def get_donor(self, donor_id):
        return self._donors.get(donor_id)

    def deactivate(self, donor_id):
        donor = self._donors.get(donor_id)
        if donor is not None:
            self._donors[donor_id] = donor.deactivate()

    def __iter__(self):
        return iter(list(self._donors.values()))


class InMemoryRequestStore(RequestStore):

    def __init__(self, requests=()):
        self._requests = {r.request_id: r for r in requests}
        self.history = []

    def add(self, blood_request):
        self._requests[blood_request.request_id] = blood_request

    def get_request(self, request_id):
        return self._requests.get(request_id)

    def record_state(self, blood_request, state, attempt=None):
        self._requests[blood_request.request_id] = blood_request
        self.history.append((blood_request.request_id, state, attempt.attempt_id if attempt else None))
        logger.debug(f"Request {blood_request.request_id} -> {state}")
