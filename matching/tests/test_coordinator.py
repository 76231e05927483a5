import asyncio
from datetime import timedelta

from django.test import SimpleTestCase

from matching import signals
from matching.coordinator import MatchCoordinator, TimeoutFired
from matching.entities import AttemptOutcome, MatchAttempt, MatchState, RequestStatus, Urgency
from matching.exceptions import UnknownRequest
from matching.tests.factories import (
    NOW,
    FakeClock,
    RecordingChannel,
    build_coordinator,
    make_donor,
    make_request,
)


def three_donors():
    return [make_donor('d1', km=1), make_donor('d3', km=3), make_donor('d5', km=5)]


class PendingAttemptWatcher:
    """Records the number of pending attempts at every state change"""

    def __init__(self, coordinator):
        self.coordinator = coordinator
        self.max_pending = 0
        signals.request_state_changed.connect(self.receive, sender=MatchCoordinator)

    def receive(self, sender, request_id, **kwargs):
        pending = [a for a in self.coordinator.attempts(request_id) if a.is_pending]
        self.max_pending = max(self.max_pending, len(pending))

    def close(self):
        signals.request_state_changed.disconnect(self.receive, sender=MatchCoordinator)


class DispatchTests(SimpleTestCase):

    async def test_first_alert_goes_to_top_ranked_donor(self):
        async with build_coordinator(three_donors()) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()

            self.assertEqual(coordinator.channel.alerted, ['d1'])
            self.assertEqual(coordinator.state('r1'), MatchState.AWAITING_RESPONSE)
            attempt, = coordinator.attempts('r1')
            self.assertEqual(attempt.outcome, AttemptOutcome.PENDING)
            self.assertEqual(attempt.deadline, NOW + timedelta(seconds=45))
            self.assertEqual(coordinator.request('r1').status, RequestStatus.PENDING)

            _, _, payload, deadline = coordinator.channel.alerts[0]
            self.assertEqual(payload['rank'], 1)
            self.assertEqual(payload['blood_type'], 'O-')
            self.assertEqual(deadline, attempt.deadline)

    async def test_non_critical_requests_get_longer_deadline(self):
        async with build_coordinator(three_donors()) as coordinator:
            await coordinator.submit(make_request('r1', urgency=Urgency.LOW))
            await coordinator.drain()
            self.assertEqual(coordinator.attempts('r1')[0].deadline, NOW + timedelta(minutes=30))

    async def test_decline_falls_back_to_next_candidate(self):
        async with build_coordinator(three_donors()) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()

            await coordinator.decline('r1', 'd1')
            await coordinator.drain()

            self.assertEqual(coordinator.channel.alerted, ['d1', 'd3'])
            first, second = coordinator.attempts('r1')
            self.assertEqual(first.outcome, AttemptOutcome.DECLINED)
            self.assertEqual(second.outcome, AttemptOutcome.PENDING)
            self.assertEqual(coordinator.request('r1').attempted_donors, ('d1',))

            await coordinator.decline('r1', 'd3')
            await coordinator.drain()
            self.assertEqual(coordinator.channel.alerted, ['d1', 'd3', 'd5'])
            self.assertEqual(coordinator.channel.alerted.count('d1'), 1)

    async def test_timeout_falls_back_like_decline(self):
        clock = FakeClock()
        async with build_coordinator(three_donors(), clock=clock) as coordinator:
            await coordinator.submit(make_request('r1', urgency=Urgency.CRITICAL))
            await coordinator.drain()

            clock.advance(seconds=44)
            self.assertEqual(coordinator.scheduler.fire_due(), 0)

            clock.advance(seconds=2)
            self.assertEqual(coordinator.scheduler.fire_due(), 1)
            await coordinator.drain()

            first, second = coordinator.attempts('r1')
            self.assertEqual(first.outcome, AttemptOutcome.TIMED_OUT)
            self.assertIsNone(first.responded_at)
            self.assertEqual(second.donor_id, 'd3')
            self.assertEqual(second.deadline, clock.now + timedelta(seconds=45))
            self.assertEqual(coordinator.request('r1').attempted_donors, ('d1',))
            self.assertEqual(coordinator.state('r1'), MatchState.AWAITING_RESPONSE)

    async def test_no_donors_within_max_radius_expires(self):
        async with build_coordinator([make_donor('far', km=150)]) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()

            self.assertEqual(coordinator.state('r1'), MatchState.EXPIRED)
            self.assertEqual(coordinator.attempts('r1'), [])
            self.assertEqual(coordinator.channel.alerted, [])
            self.assertEqual(coordinator.request_store.get_request('r1').status, RequestStatus.EXPIRED)

    async def test_exhausting_every_candidate_expires(self):
        async with build_coordinator([make_donor('d1', km=1)]) as coordinator:
            await coordinator.submit(make_request('r1', urgency=Urgency.LOW))
            await coordinator.drain()
            await coordinator.decline('r1', 'd1')
            await coordinator.drain()

            self.assertEqual(coordinator.state('r1'), MatchState.EXPIRED)
            self.assertEqual(coordinator.channel.alerted, ['d1'])

    async def test_exhausted_list_widens_the_search(self):
        donors = [make_donor('near', km=5), make_donor('wider', km=14)]
        async with build_coordinator(donors) as coordinator:
            await coordinator.submit(make_request('r1', urgency=Urgency.LOW))
            await coordinator.drain()
            self.assertEqual(coordinator.channel.alerted, ['near'])

            await coordinator.decline('r1', 'near')
            await coordinator.drain()
            self.assertEqual(coordinator.channel.alerted, ['near', 'wider'])

    async def test_donor_who_became_unavailable_is_skipped(self):
        donors = three_donors()
        async with build_coordinator(donors) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()

            coordinator.engine.donor_store.deactivate('d3')
            await coordinator.decline('r1', 'd1')
            await coordinator.drain()
            self.assertEqual(coordinator.channel.alerted, ['d1', 'd5'])

    async def test_delivery_failure_treated_as_timeout(self):
        channel = RecordingChannel(fail_for={'d1'})
        async with build_coordinator(three_donors(), channel=channel) as coordinator:
            with self.assertLogs('matching.coordinator', 'WARNING') as logs:
                await coordinator.submit(make_request('r1'))
                await coordinator.drain()

            first, second = coordinator.attempts('r1')
            self.assertEqual(first.outcome, AttemptOutcome.DELIVERY_FAILED)
            self.assertEqual(second.donor_id, 'd3')
            self.assertTrue(any('could not be delivered' in line for line in logs.output))


class AcceptanceTests(SimpleTestCase):

    async def test_accept_matches_and_notifies_requester(self):
        async with build_coordinator(three_donors()) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()

            await coordinator.accept('r1', 'd1')
            await coordinator.drain()

            attempt, = coordinator.attempts('r1')
            self.assertEqual(attempt.outcome, AttemptOutcome.ACCEPTED)
            self.assertEqual(attempt.response_time_seconds, 0.0)
            self.assertEqual(coordinator.state('r1'), MatchState.MATCHED)
            self.assertEqual(coordinator.request('r1').status, RequestStatus.MATCHED)
            self.assertEqual(coordinator.channel.requester_notices, [('r1', 'd1')])
            self.assertEqual(len(coordinator.scheduler), 1)  # only the request expiry

    async def test_donation_completion_fulfils_request(self):
        async with build_coordinator(three_donors()) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()
            await coordinator.accept('r1', 'd1')
            await coordinator.drain()

            attempt, = coordinator.attempts('r1')
            await coordinator.confirm_donation('r1', 'not-the-attempt')
            await coordinator.drain()
            self.assertEqual(coordinator.state('r1'), MatchState.MATCHED)

            await coordinator.confirm_donation('r1', attempt.attempt_id)
            await coordinator.drain()
            self.assertEqual(coordinator.state('r1'), MatchState.FULFILLED)
            self.assertEqual(coordinator.request_store.get_request('r1').status, RequestStatus.FULFILLED)
            self.assertEqual(len(coordinator.scheduler), 0)

    async def test_completion_before_match_is_ignored(self):
        async with build_coordinator(three_donors()) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()
            attempt, = coordinator.attempts('r1')

            await coordinator.confirm_donation('r1', attempt.attempt_id)
            await coordinator.drain()
            self.assertEqual(coordinator.state('r1'), MatchState.AWAITING_RESPONSE)

    async def test_accept_from_donor_not_alerted_is_ignored(self):
        async with build_coordinator(three_donors()) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()

            await coordinator.accept('r1', 'd5')
            await coordinator.drain()
            self.assertEqual(coordinator.state('r1'), MatchState.AWAITING_RESPONSE)

    async def test_accept_after_deadline_counts_as_timeout(self):
        clock = FakeClock()
        async with build_coordinator(three_donors(), clock=clock) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()

            clock.advance(seconds=50)
            await coordinator.accept('r1', 'd1')
            await coordinator.drain()

            first, second = coordinator.attempts('r1')
            self.assertEqual(first.outcome, AttemptOutcome.TIMED_OUT)
            self.assertIsNone(first.responded_at)
            self.assertIsNone(first.response_time_seconds)
            self.assertEqual(second.donor_id, 'd3')

            # The timeout that lost the race is a no-op
            coordinator.scheduler.fire_due()
            await coordinator.drain()
            self.assertEqual(len(coordinator.attempts('r1')), 2)


class CancellationAndExpiryTests(SimpleTestCase):

    async def test_cancel_invalidates_alert_and_ignores_late_accept(self):
        async with build_coordinator(three_donors()) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()

            await coordinator.cancel('r1', 'patient transferred')
            await coordinator.drain()
            await coordinator.accept('r1', 'd1')
            await coordinator.drain()

            attempt, = coordinator.attempts('r1')
            self.assertEqual(attempt.outcome, AttemptOutcome.INVALIDATED)
            self.assertEqual(coordinator.state('r1'), MatchState.CANCELLED)
            self.assertEqual(coordinator.channel.requester_notices, [])
            self.assertEqual(len(coordinator.scheduler), 0)

    async def test_cancel_is_noop_on_terminal_request(self):
        async with build_coordinator([]) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()
            await coordinator.cancel('r1')
            await coordinator.drain()
            self.assertEqual(coordinator.state('r1'), MatchState.EXPIRED)

    async def test_request_expiration_time(self):
        clock = FakeClock()
        async with build_coordinator(three_donors(), clock=clock) as coordinator:
            await coordinator.submit(make_request('r1', urgency=Urgency.LOW, expires_at=NOW + timedelta(minutes=20)))
            await coordinator.drain()

            clock.advance(minutes=21)
            coordinator.scheduler.fire_due()
            await coordinator.drain()

            self.assertEqual(coordinator.state('r1'), MatchState.EXPIRED)
            self.assertEqual(coordinator.attempts('r1')[0].outcome, AttemptOutcome.INVALIDATED)

    async def test_already_expired_request_never_dispatches(self):
        clock = FakeClock()
        async with build_coordinator(three_donors(), clock=clock) as coordinator:
            clock.advance(hours=7)
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()
            self.assertEqual(coordinator.state('r1'), MatchState.EXPIRED)
            self.assertEqual(coordinator.channel.alerted, [])

    async def test_unknown_request(self):
        async with build_coordinator([]) as coordinator:
            with self.assertRaises(UnknownRequest):
                await coordinator.accept('missing', 'd1')
            with self.assertRaises(UnknownRequest):
                coordinator.state('missing')


class ConcurrencyTests(SimpleTestCase):

    async def test_racing_events_leave_one_pending_attempt(self):
        async with build_coordinator(three_donors()) as coordinator:
            watcher = PendingAttemptWatcher(coordinator)
            try:
                await coordinator.submit(make_request('r1'))
                await coordinator.drain()
                attempt_id = coordinator.attempts('r1')[0].attempt_id

                async def fire_timeout():
                    coordinator.post('r1', TimeoutFired(attempt_id))

                # Decline lands first; the accept and the timeout then find d3's attempt pending
                await asyncio.gather(
                    coordinator.decline('r1', 'd1'),
                    coordinator.accept('r1', 'd1'),
                    fire_timeout(),
                )
                await coordinator.drain()
            finally:
                watcher.close()

            attempts = coordinator.attempts('r1')
            self.assertEqual([a.outcome for a in attempts], [AttemptOutcome.DECLINED, AttemptOutcome.PENDING])
            self.assertEqual(watcher.max_pending, 1)

    async def test_requests_progress_independently(self):
        donors = three_donors() + [make_donor('a1', km=2, blood_type='A+')]
        async with build_coordinator(donors) as coordinator:
            await coordinator.submit_many([
                make_request('r1', blood_type='O-'),
                make_request('r2', blood_type='A+', urgency=Urgency.LOW),
            ])
            await coordinator.drain()

            await asyncio.gather(coordinator.accept('r2', 'a1'), coordinator.decline('r1', 'd1'))
            await coordinator.drain()

            self.assertEqual(coordinator.state('r2'), MatchState.MATCHED)
            self.assertEqual(coordinator.state('r1'), MatchState.AWAITING_RESPONSE)
            self.assertEqual(coordinator.attempts('r1')[-1].donor_id, 'd3')

    async def test_many_requests_in_parallel(self):
        async with build_coordinator(three_donors()) as coordinator:
            requests = [make_request(f"r{i}") for i in range(50)]
            await coordinator.submit_many(requests)
            await coordinator.drain()

            await asyncio.gather(*(coordinator.decline(r.request_id, 'd1') for r in requests))
            await coordinator.drain()

            for r in requests:
                pending = [a for a in coordinator.attempts(r.request_id) if a.is_pending]
                self.assertEqual([a.donor_id for a in pending], ['d3'])

    async def test_second_pending_attempt_forces_expiry(self):
        async with build_coordinator(three_donors()) as coordinator:
            actor = await coordinator.submit(make_request('r1'))
            await coordinator.drain()

            rogue = MatchAttempt('rogue', 'r1', 'd5', NOW, NOW + timedelta(seconds=45))
            actor.attempts.append(rogue)

            with self.assertLogs('matching.coordinator', 'CRITICAL'):
                await coordinator.decline('r1', 'd1')
                await coordinator.drain()

            self.assertEqual(coordinator.state('r1'), MatchState.EXPIRED)
            self.assertEqual(rogue.outcome, AttemptOutcome.INVALIDATED)


class RetentionTests(SimpleTestCase):

    async def test_finished_requests_release_their_actors(self):
        async with build_coordinator([]) as coordinator:
            coordinator.finished_retention = 10
            await coordinator.submit_many([make_request(f"r{i}") for i in range(100)])
            await coordinator.drain()

            self.assertEqual(len(coordinator), 0)
            self.assertEqual(len(coordinator.scheduler), 0)
            self.assertEqual(coordinator.state('r99'), MatchState.EXPIRED)
            with self.assertRaises(UnknownRequest):
                coordinator.state('r0')
            # The request store keeps the full history
            self.assertEqual(coordinator.request_store.get_request('r0').status, RequestStatus.EXPIRED)

    async def test_matched_request_stays_live_until_fulfilled(self):
        async with build_coordinator(three_donors()) as coordinator:
            await coordinator.submit(make_request('r1'))
            await coordinator.drain()
            await coordinator.accept('r1', 'd1')
            await coordinator.drain()
            self.assertEqual(len(coordinator), 1)

            attempt_id = coordinator.attempts('r1')[0].attempt_id
            await coordinator.confirm_donation('r1', attempt_id)
            await coordinator.drain()

            self.assertEqual(len(coordinator), 0)
            self.assertEqual(coordinator.state('r1'), MatchState.FULFILLED)
            self.assertEqual(coordinator.attempts('r1')[0].outcome, AttemptOutcome.ACCEPTED)
            # Events for a retired request are ignored
            await coordinator.decline('r1', 'd1')
