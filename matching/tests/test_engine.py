from datetime import timedelta

from django.test import SimpleTestCase

from algorithms.urgency import UrgencyPolicy
from matching.entities import Availability, ResponseStats, Urgency
from matching.exceptions import NoEligibleCandidates, StaleLocationData
from matching.tests.factories import NOW, build_engine, make_donor, make_request, point_north


class FindCandidatesTests(SimpleTestCase):

    def test_critical_o_negative_ranked_by_distance(self):
        engine = build_engine([make_donor('d5', km=5), make_donor('d1', km=1), make_donor('d3', km=3)])
        request = make_request(blood_type='O-', urgency=Urgency.CRITICAL)

        ranked = engine.find_candidates(request, radius_km=10)
        self.assertEqual([c.donor_id for c in ranked], ['d1', 'd3', 'd5'])
        scores = [c.score.composite_score for c in ranked]
        self.assertEqual(scores, sorted(scores, reverse=True))

    def test_ineligible_donors_filtered_out(self):
        engine = build_engine([
            make_donor('wrong-type', km=1, blood_type='A+'),
            make_donor('cooling-down', km=1, last_donation_date=NOW.date() - timedelta(days=30)),
            make_donor('busy', km=1, availability=Availability.UNAVAILABLE),
            make_donor('ok', km=2),
        ])
        ranked = engine.find_candidates(make_request(blood_type='O-', urgency=Urgency.LOW))
        self.assertEqual([c.donor_id for c in ranked], ['ok'])

    def test_attempted_donors_excluded(self):
        engine = build_engine([make_donor('d1', km=1), make_donor('d2', km=2)])
        request = make_request(urgency=Urgency.LOW).with_attempted('d1')
        self.assertEqual([c.donor_id for c in engine.find_candidates(request)], ['d2'])

    def test_unknown_donor_in_index_is_skipped(self):
        engine = build_engine([make_donor('d1', km=1)])
        engine.geo_index.upsert_location('ghost', make_donor('ghost', km=1).location)
        self.assertEqual([c.donor_id for c in engine.find_candidates(make_request(urgency=Urgency.LOW))], ['d1'])

    def test_better_history_outranks_slightly_closer_donor(self):
        reliable = make_donor('reliable', km=3, response_stats=ResponseStats(20, 19, 90))
        flaky = make_donor('flaky', km=2, response_stats=ResponseStats(20, 2, 1700))
        engine = build_engine([reliable, flaky])
        ranked = engine.find_candidates(make_request(urgency=Urgency.CRITICAL))
        self.assertEqual([c.donor_id for c in ranked], ['reliable', 'flaky'])

    def test_search_is_read_only(self):
        engine = build_engine([make_donor('d1', km=1)])
        request = make_request()
        engine.find_candidates(request)
        engine.find_candidates(request)
        self.assertEqual(request.attempted_donors, ())
        self.assertEqual(len(engine.geo_index), 1)


class RadiusExpansionTests(SimpleTestCase):

    def test_expands_to_reach_donor_beyond_initial_radius(self):
        engine = build_engine([make_donor('d1', km=14)])
        request = make_request(urgency=Urgency.LOW)

        search = engine.search(request, radius_km=10)
        self.assertEqual([c.donor_id for c in search], ['d1'])
        self.assertEqual(search.radius_km, 15.0)
        self.assertEqual(search.expansions, 1)
        self.assertFalse(search.exhausted)

    def test_expansion_capped_at_max_radius(self):
        engine = build_engine([make_donor('d1', km=150)])
        search = engine.search(make_request(urgency=Urgency.CRITICAL))

        self.assertTrue(search.exhausted)
        self.assertEqual(len(search), 0)
        self.assertEqual(search.radius_km, 100.0)

    def test_expansion_bounded_by_step_count(self):
        policies = {Urgency.LOW: UrgencyPolicy(1.0, 1000.0, 1.5, 2, 1, timedelta(minutes=30))}
        engine = build_engine([make_donor('d1', km=500)], policies=policies)
        search = engine.search(make_request(urgency=Urgency.LOW))

        self.assertTrue(search.exhausted)
        self.assertEqual(search.expansions, 2)
        self.assertEqual(search.radius_km, 2.25)

    def test_critical_keeps_expanding_until_pool_is_large_enough(self):
        donors = [make_donor('d1', km=2), make_donor('d2', km=12), make_donor('d3', km=20)]
        engine = build_engine(donors)

        critical = engine.search(make_request(urgency=Urgency.CRITICAL))
        low = engine.search(make_request(urgency=Urgency.LOW))

        self.assertEqual([c.donor_id for c in critical], ['d1', 'd2', 'd3'])
        self.assertEqual([c.donor_id for c in low], ['d1'])

    def test_require_candidates_raises_when_exhausted(self):
        engine = build_engine([])
        with self.assertRaises(NoEligibleCandidates):
            engine.require_candidates(make_request())


class StaleLocationTests(SimpleTestCase):

    def test_stale_donor_used_with_lower_distance_confidence(self):
        donor = make_donor('d1', location=point_north(2, timestamp=NOW - timedelta(hours=8)))
        engine = build_engine([donor])

        with self.assertWarns(StaleLocationData):
            ranked = engine.find_candidates(make_request(urgency=Urgency.LOW))
        self.assertEqual(len(ranked), 1)
        self.assertTrue(ranked[0].stale)
        self.assertTrue(ranked[0].score.stale_location)
        self.assertAlmostEqual(ranked[0].score.distance_score, 0.5 * (1 - ranked[0].distance_km / 25.0))

    def test_fresh_ineligible_donor_does_not_hide_stale_eligible_one(self):
        engine = build_engine([
            make_donor('fresh-wrong-type', km=1, blood_type='A+'),
            make_donor('stale-match', location=point_north(2, timestamp=NOW - timedelta(hours=12))),
        ])

        with self.assertWarns(StaleLocationData):
            ranked = engine.find_candidates(make_request(blood_type='O-', urgency=Urgency.LOW))
        self.assertEqual([(c.donor_id, c.stale) for c in ranked], [('stale-match', True)])

    def test_fresh_eligible_donor_preferred_over_closer_stale_one(self):
        engine = build_engine([
            make_donor('stale-near', location=point_north(1, timestamp=NOW - timedelta(hours=12))),
            make_donor('fresh-far', km=4),
        ])
        ranked = engine.find_candidates(make_request(urgency=Urgency.LOW))
        self.assertEqual([(c.donor_id, c.stale) for c in ranked], [('fresh-far', False)])
