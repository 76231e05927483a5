# matching/signals.py
"""
Signals the coordinator sends when a request changes state, so that the
request store, dashboards and analytics can follow along without the
core writing to them directly
"""
from django.dispatch import Signal

# kwargs: request_id, state, status, attempted_donors, attempt
request_state_changed = Signal()

# kwargs: attempt, reason ('declined', 'timed_out', 'delivery_failed')
attempt_closed = Signal()
