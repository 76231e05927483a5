# matching/coordinator.py
"""
Match lifecycle coordinator.

Every blood request is driven by its own RequestActor: an asyncio task that
owns the request's mutable state and processes events from a private inbox
strictly in arrival order. Requests never share locks, so thousands of them
progress independently.

    pending --dispatch--> awaiting_response --accept--> matched --donation--> fulfilled
                 ^                |
                 +--decline/timeout/delivery failure--+
    any non-terminal state --cancel--> cancelled
    any non-terminal state --expiry/exhaustion--> expired

Notification sends and deadlines never block an actor: their outcomes come
back as inbox events. Whichever event reaches a pending attempt first wins;
later events for that attempt are no-ops.
"""
import asyncio
import itertools
import logging
from collections import OrderedDict
from dataclasses import dataclass, replace

from django.utils import timezone

from algorithms.eligibility import is_eligible
from algorithms.urgency import request_priority
from matching import signals
from matching.entities import AttemptOutcome, MatchAttempt, MatchState
from matching.exceptions import DuplicateAttempt, MatchingError, NotificationDeliveryFailure, UnknownRequest
from matching.scheduler import DeadlineScheduler

logger = logging.getLogger(__name__)


# ---------------------------
# Inbox events
# ---------------------------
@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class Accept:
    donor_id: str


@dataclass(frozen=True)
class Decline:
    donor_id: str


@dataclass(frozen=True)
class TimeoutFired:
    attempt_id: str


@dataclass(frozen=True)
class DeliveryResult:
    attempt_id: str
    delivered: bool
    error: str = ''


@dataclass(frozen=True)
class Cancel:
    reason: str = ''


@dataclass(frozen=True)
class DonationCompleted:
    attempt_id: str


@dataclass(frozen=True)
class RequestExpired:
    pass


@dataclass(frozen=True)
class FinishedRequest:
    """What is kept of an actor once its request reaches a terminal state"""
    request: object
    state: MatchState
    attempts: tuple

    finished = True


class RequestActor:
    """Owns one request's state machine; only its own task mutates it"""

    def __init__(self, coordinator, blood_request):
        self.coordinator = coordinator
        self.request = blood_request
        self.state = MatchState.PENDING
        self.attempts = []
        self.ranked = []
        self.cursor = 0
        self.radius_km = None
        self.inbox = asyncio.Queue()
        self.deliveries = set()
        self.task = None
        self._attempt_seq = itertools.count(1)
        self._handlers = {
            Start: self._on_start,
            Accept: self._on_accept,
            Decline: self._on_decline,
            TimeoutFired: self._on_timeout,
            DeliveryResult: self._on_delivery,
            Cancel: self._on_cancel,
            DonationCompleted: self._on_donation_completed,
            RequestExpired: self._on_request_expired,
        }

    @property
    def request_id(self):
        return self.request.request_id

    @property
    def finished(self):
        return self.state.is_terminal

    @property
    def engine(self):
        return self.coordinator.engine

    def now(self):
        return self.coordinator.clock()

    def pending_attempts(self):
        return [a for a in self.attempts if a.is_pending]

    def current_attempt(self):
        pending = self.pending_attempts()
        return pending[0] if pending else None

    def accepted_attempt(self):
        for attempt in self.attempts:
            if attempt.outcome == AttemptOutcome.ACCEPTED:
                return attempt
        return None

    def start(self):
        self.task = asyncio.get_running_loop().create_task(self.run(), name=f"match-{self.request_id}")
        return self.task

    def post(self, event):
        if self.finished:
            return
        self.inbox.put_nowait(event)

    async def run(self):
        while True:
            event = await self.inbox.get()
            try:
                self._handlers[type(event)](event)
            except MatchingError:
                logger.critical(f"Request {self.request_id}: invariant violated handling {event}", exc_info=True)
                self._force_expire('internal consistency error')
            except Exception:
                logger.exception(f"Request {self.request_id}: failed to handle {event}")
                self._force_expire('internal error')
            finally:
                self.inbox.task_done()

            # Nothing but no-ops can follow a terminal state
            if self.finished and self.inbox.empty():
                self.coordinator.retire(self)
                return

    # ---------------------------
    # Event handlers
    # ---------------------------
    def _on_start(self, event):
        if self.state != MatchState.PENDING or self.attempts:
            logger.debug(f"Request {self.request_id}: duplicate start ignored")
            return
        self.dispatch_next()

    def _on_accept(self, event):
        attempt = self.current_attempt()
        if self.finished or attempt is None or attempt.donor_id != event.donor_id:
            logger.info(f"Request {self.request_id}: ignoring accept from donor {event.donor_id} "
                        f"(state {self.state})")
            return

        now = self.now()
        if now >= attempt.deadline:
            # The deadline passed before the accept reached us; the timeout wins
            logger.info(f"Request {self.request_id}: late accept from donor {event.donor_id}, treating as timeout")
            self._close_attempt(attempt, AttemptOutcome.TIMED_OUT, None)
            self.dispatch_next()
            return

        attempt.outcome = AttemptOutcome.ACCEPTED
        attempt.responded_at = now
        self.coordinator.scheduler.cancel(('timeout', attempt.attempt_id))
        for other in self.attempts:
            if other is not attempt and other.is_pending:
                other.outcome = AttemptOutcome.INVALIDATED

        self._transition(MatchState.MATCHED, attempt)
        logger.info(f"✅ Request {self.request_id} matched with donor {attempt.donor_id}")
        self.coordinator.spawn(self, self._notify_requester(attempt))

    def _on_decline(self, event):
        attempt = self.current_attempt()
        if self.finished or attempt is None or attempt.donor_id != event.donor_id:
            logger.info(f"Request {self.request_id}: ignoring decline from donor {event.donor_id} "
                        f"(state {self.state})")
            return
        logger.info(f"Request {self.request_id}: donor {event.donor_id} declined")
        self._close_attempt(attempt, AttemptOutcome.DECLINED, self.now())
        self.dispatch_next()

    def _on_timeout(self, event):
        attempt = self.current_attempt()
        if self.finished or attempt is None or attempt.attempt_id != event.attempt_id:
            return
        logger.info(f"⏰ Request {self.request_id}: donor {attempt.donor_id} did not respond by {attempt.deadline}")
        self._close_attempt(attempt, AttemptOutcome.TIMED_OUT, None)
        self.dispatch_next()

    def _on_delivery(self, event):
        attempt = self.current_attempt()
        if event.delivered:
            logger.debug(f"Request {self.request_id}: alert {event.attempt_id} delivered")
            return
        if self.finished or attempt is None or attempt.attempt_id != event.attempt_id:
            return
        logger.warning(f"❌ Request {self.request_id}: alert to donor {attempt.donor_id} "
                       f"could not be delivered: {event.error}")
        self._close_attempt(attempt, AttemptOutcome.DELIVERY_FAILED, None)
        self.dispatch_next()

    def _on_cancel(self, event):
        if self.finished:
            logger.info(f"Request {self.request_id}: cancel ignored, already {self.state}")
            return
        self._invalidate_pending()
        self._transition(MatchState.CANCELLED)
        logger.info(f"Request {self.request_id} cancelled {event.reason}".rstrip())

    def _on_donation_completed(self, event):
        accepted = self.accepted_attempt()
        if self.state != MatchState.MATCHED or accepted is None or accepted.attempt_id != event.attempt_id:
            logger.warning(f"Request {self.request_id}: completion for attempt {event.attempt_id} "
                           f"ignored in state {self.state}")
            return
        self._transition(MatchState.FULFILLED, accepted)
        logger.info(f"🩸 Request {self.request_id} fulfilled by donor {accepted.donor_id}")

    def _on_request_expired(self, event):
        if self.finished:
            return
        self._invalidate_pending()
        self._transition(MatchState.EXPIRED)
        logger.info(f"Request {self.request_id} expired at {self.request.expires_at}")

    # ---------------------------
    # Candidate progression
    # ---------------------------
    def dispatch_next(self):
        """
        Alert the next candidate, widening the search when the ranked list
        runs out, or expire the request when nobody is left.
        """
        if self.current_attempt() is not None:
            raise DuplicateAttempt(f"Request {self.request_id} already has a pending attempt")

        now = self.now()
        if self.request.is_expired(now):
            self._invalidate_pending()
            self._transition(MatchState.EXPIRED)
            logger.info(f"Request {self.request_id} expired before a donor accepted")
            return

        # The cached list first, then one fresh search from the current radius
        for _ in range(2):
            candidate = self._next_from_cursor(now)
            if candidate is not None:
                self._open_attempt(candidate, now)
                return
            search = self.engine.search(self.request, radius_km=self.radius_km, now=now)
            self.ranked = search.candidates
            self.cursor = 0
            self.radius_km = search.radius_km
            if search.exhausted:
                break

        self._transition(MatchState.EXPIRED)
        logger.info(f"⚠️ No more donors available for request {self.request_id} "
                    f"within {self.radius_km or 0:.1f}km")

    def _next_from_cursor(self, now):
        while self.cursor < len(self.ranked):
            candidate = self.ranked[self.cursor]
            self.cursor += 1
            if self.request.has_attempted(candidate.donor_id):
                continue
            # Donors can change between the search and their turn
            donor = self.engine.donor_store.get_donor(candidate.donor_id)
            if donor is None or not is_eligible(donor, self.request, now, self.engine.cooldown_days):
                continue
            return candidate
        return None

    def _open_attempt(self, candidate, now):
        if self.pending_attempts():
            raise DuplicateAttempt(f"Request {self.request_id} already has a pending attempt")

        policy = self.engine.policy(self.request)
        attempt = MatchAttempt(
            attempt_id=f"{self.request_id}-{next(self._attempt_seq)}",
            request_id=self.request_id,
            donor_id=candidate.donor_id,
            dispatched_at=now,
            deadline=now + policy.response_deadline,
            rank=self.cursor,
            score=candidate.score.composite_score,
        )
        self.attempts.append(attempt)
        self._transition(MatchState.AWAITING_RESPONSE, attempt)

        attempt_id = attempt.attempt_id
        self.coordinator.scheduler.schedule(
            attempt.deadline,
            ('timeout', attempt_id),
            lambda: self.coordinator.post(self.request_id, TimeoutFired(attempt_id)),
        )
        payload = self.coordinator.build_payload(self.request, candidate, attempt)
        self.coordinator.spawn(self, self._deliver(attempt, payload))
        logger.info(f"🔔 Request {self.request_id}: alerted donor {candidate.donor_id} "
                    f"(priority #{attempt.rank}, {candidate.distance_km:.2f}km, deadline {attempt.deadline})")

    async def _deliver(self, attempt, payload):
        channel = self.coordinator.channel
        try:
            receipt = await channel.send_alert(attempt.donor_id, self.request_id, payload, attempt.deadline)
        except NotificationDeliveryFailure as exc:
            self.post(DeliveryResult(attempt.attempt_id, False, exc.reason or str(exc)))
            return
        except Exception as exc:
            logger.exception(f"Notification channel failed for attempt {attempt.attempt_id}")
            self.post(DeliveryResult(attempt.attempt_id, False, str(exc)))
            return
        self.post(DeliveryResult(attempt.attempt_id, receipt.delivered, receipt.error))

    async def _notify_requester(self, attempt):
        try:
            await self.coordinator.channel.notify_requester(self.request, attempt)
        except Exception:
            logger.exception(f"Request {self.request_id}: could not notify requester")

    def _close_attempt(self, attempt, outcome, responded_at):
        attempt.outcome = outcome
        attempt.responded_at = responded_at
        self.coordinator.scheduler.cancel(('timeout', attempt.attempt_id))
        self.request = self.request.with_attempted(attempt.donor_id)
        self._transition(MatchState.PENDING, attempt)
        signals.attempt_closed.send_robust(sender=MatchCoordinator, attempt=attempt, reason=str(outcome))

    def _invalidate_pending(self):
        for attempt in self.pending_attempts():
            attempt.outcome = AttemptOutcome.INVALIDATED
            self.coordinator.scheduler.cancel(('timeout', attempt.attempt_id))

    def _force_expire(self, reason):
        if self.finished:
            return
        self._invalidate_pending()
        self._transition(MatchState.EXPIRED)
        logger.error(f"Request {self.request_id} forced to expired: {reason}")

    def _transition(self, state, attempt=None):
        self.state = state
        self.request = replace(self.request, status=state.request_status)
        if self.finished:
            self.coordinator.scheduler.cancel(('expiry', self.request_id))
        self.coordinator.report(self, attempt)


class MatchCoordinator:

    def __init__(self, engine, request_store, channel, scheduler=None, clock=timezone.now,
                 finished_retention=1000):
        self.engine = engine
        self.request_store = request_store
        self.channel = channel
        self.clock = clock
        self.scheduler = scheduler or DeadlineScheduler(clock=clock)
        self.finished_retention = finished_retention
        self._actors = {}
        self._finished = OrderedDict()

    @classmethod
    def from_settings(cls, engine, request_store, clock=timezone.now):
        from matching.conf import matching_settings
        from matching.notifications import get_notification_channel

        scheduler = DeadlineScheduler(clock=clock, poll_interval=matching_settings.SCHEDULER_POLL_SECONDS)
        return cls(engine, request_store, get_notification_channel(), scheduler, clock,
                   finished_retention=matching_settings.FINISHED_REQUEST_RETENTION)

    def __len__(self):
        """Number of requests still being matched"""
        return len(self._actors)

    def start(self):
        """Start firing deadlines in the background (needs a running loop)"""
        return self.scheduler.start()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    async def shutdown(self):
        await self.scheduler.stop()
        tasks = []
        for actor in self._actors.values():
            tasks.extend(actor.deliveries)
            if actor.task is not None:
                tasks.append(actor.task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ---------------------------
    # Inputs
    # ---------------------------
    async def submit(self, blood_request):
        """
        Start matching a newly created request.

        Returns:
            The request's actor, or its FinishedRequest if it was already
            submitted and has finished
        """
        existing = self._actors.get(blood_request.request_id) or self._finished.get(blood_request.request_id)
        if existing is not None:
            logger.warning(f"Request {blood_request.request_id} already submitted")
            return existing

        actor = RequestActor(self, blood_request)
        self._actors[blood_request.request_id] = actor
        request_id = blood_request.request_id
        self.scheduler.schedule(
            blood_request.expires_at,
            ('expiry', request_id),
            lambda: self.post(request_id, RequestExpired()),
        )
        actor.start()
        actor.post(Start())
        return actor

    async def submit_many(self, blood_requests):
        """Submit a batch, most urgent first"""
        now = self.clock()
        ordered = sorted(blood_requests, key=lambda r: (-request_priority(r, now), r.created_at))
        return [await self.submit(r) for r in ordered]

    async def accept(self, request_id, donor_id):
        self.post(request_id, Accept(donor_id))

    async def decline(self, request_id, donor_id):
        self.post(request_id, Decline(donor_id))

    async def cancel(self, request_id, reason=''):
        self.post(request_id, Cancel(reason))

    async def confirm_donation(self, request_id, attempt_id):
        self.post(request_id, DonationCompleted(attempt_id))

    def post(self, request_id, event):
        actor = self._actor(request_id)
        if actor.finished:
            logger.info(f"Request {request_id} is {actor.state}; ignoring {type(event).__name__}")
            return
        actor.post(event)

    # ---------------------------
    # Queries
    # ---------------------------
    def _actor(self, request_id):
        actor = self._actors.get(request_id) or self._finished.get(request_id)
        if actor is None:
            raise UnknownRequest(request_id)
        return actor

    def state(self, request_id):
        return self._actor(request_id).state

    def attempts(self, request_id):
        return list(self._actor(request_id).attempts)

    def request(self, request_id):
        return self._actor(request_id).request

    async def drain(self):
        """Wait until every inbox is empty and no alert is in flight"""
        while True:
            actors = list(self._actors.values())
            in_flight = [t for a in actors for t in a.deliveries if not t.done()]
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            await asyncio.gather(*(a.inbox.join() for a in actors))
            await asyncio.sleep(0)
            if not any(not a.inbox.empty() or any(not t.done() for t in a.deliveries) for a in actors):
                return

    # ---------------------------
    # Helpers used by actors
    # ---------------------------
    def spawn(self, actor, coro):
        task = asyncio.get_running_loop().create_task(coro)
        actor.deliveries.add(task)

        def done(finished_task):
            actor.deliveries.discard(finished_task)
            self.retire(actor)

        task.add_done_callback(done)
        return task

    def retire(self, actor):
        """
        Swap a finished actor for a FinishedRequest once its inbox and
        in-flight sends are drained. Only the most recent
        `finished_retention` finished requests stay queryable.
        """
        if not actor.finished or not actor.inbox.empty() or actor.deliveries:
            return
        if self._actors.get(actor.request_id) is not actor:
            return
        del self._actors[actor.request_id]
        self._finished[actor.request_id] = FinishedRequest(actor.request, actor.state, tuple(actor.attempts))
        while len(self._finished) > self.finished_retention:
            self._finished.popitem(last=False)
        logger.debug(f"Request {actor.request_id} retired as {actor.state}")

    def build_payload(self, blood_request, candidate, attempt):
        return {
            'attempt_id': attempt.attempt_id,
            'request_id': blood_request.request_id,
            'donor_id': candidate.donor_id,
            'blood_type': str(blood_request.blood_type),
            'required_units': blood_request.required_units,
            'urgency': str(blood_request.urgency),
            'distance_km': round(candidate.distance_km, 2),
            'stale_location': candidate.stale,
            'score': round(candidate.score.composite_score, 4),
            'rank': attempt.rank,
            'deadline': attempt.deadline.isoformat(),
            'contact_preference': str(candidate.donor.contact_preference),
            'email': candidate.donor.email,
        }

    def report(self, actor, attempt=None):
        blood_request = actor.request
        self.request_store.record_state(blood_request, actor.state, attempt)
        signals.request_state_changed.send_robust(
            sender=MatchCoordinator,
            request_id=blood_request.request_id,
            state=actor.state,
            status=blood_request.status,
            attempted_donors=blood_request.attempted_donors,
            attempt=attempt,
        )
