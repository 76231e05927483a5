import logging
from datetime import datetime

from algorithms.blood_compatibility import is_compatible
from matching.entities import Availability, BloodRequest, DonorCandidate

# Constants
DONATION_COOLDOWN_DAYS = 90

# Logger
logger = logging.getLogger(__name__)


def _today(now):
    return now.date() if isinstance(now, datetime) else now


def ineligibility_reasons(donor: DonorCandidate, blood_request: BloodRequest, now,
                          cooldown_days: int = DONATION_COOLDOWN_DAYS) -> list:
    """
    List every eligibility clause the donor fails for the request.

    Args:
        donor (DonorCandidate): Donor snapshot
        blood_request (BloodRequest): Request snapshot
        now: Current datetime (or date)
        cooldown_days (int): Minimum days between donations

    Returns:
        list: Failing clause names, empty when the donor is eligible
    """
    reasons = []

    if not is_compatible(donor.blood_type, blood_request.blood_type):
        reasons.append('blood_type')

    # Donation cooldown; never donated is always fine
    if donor.last_donation_date:
        days_since_last = (_today(now) - donor.last_donation_date).days
        if days_since_last < cooldown_days:
            reasons.append('cooldown')

    if donor.availability != Availability.AVAILABLE:
        reasons.append('availability')

    if not donor.active:
        reasons.append('inactive')

    if blood_request.has_attempted(donor.donor_id):
        reasons.append('already_attempted')

    return reasons


def is_eligible(donor: DonorCandidate, blood_request: BloodRequest, now,
                cooldown_days: int = DONATION_COOLDOWN_DAYS) -> bool:
    """
    Check if a donor may be considered for a given blood request.

    Criteria:
    - Donor blood type compatible with request
    - Donor hasn't donated in the last 90 days
    - Donor is available and active
    - Donor hasn't already been alerted for this request

    Never mutates the donor or the request.
    """
    reasons = ineligibility_reasons(donor, blood_request, now, cooldown_days)
    if reasons:
        logger.debug(f"Donor {donor.donor_id} ineligible for request {blood_request.request_id}: {', '.join(reasons)}")
        return False
    return True

