"""
Tests for consultant ranking.

Tests cover:
- Score components and their caps
- Zero tag overlap excludes a candidate
- Eligibility and exclusion filtering
- Availability windows evaluated in their own timezone
- Deterministic ordering and tie-breaking
- Priority bonus for subscribed requesters
- Database snapshot used by rank_for_request
"""

from datetime import time, timedelta
from decimal import Decimal

import pytest

from core.models import Consultant
from core.services import consultations, matching
from core.services.matching import (
    AvailabilityWindow,
    CandidateSnapshot,
    ScoringWeights,
    normalize_tags,
    rank,
)

# FIXED_NOW is Wednesday 10:00 UTC; Wednesday is day 3 with Sunday as 0.
WEDNESDAY = 3

WEIGHTS = ScoringWeights(
    per_tag_points=25,
    technology_cap=50,
    availability_bonus=20,
    rating_cap=20,
    experience_cap=10,
    priority_bonus=100,
)


def snapshot(consultant_id, tags, **kwargs):
    return CandidateSnapshot(consultant_id=consultant_id, tags=tuple(tags), **kwargs)


def office_hours(tz='UTC', day=WEDNESDAY, start=time(9, 0), end=time(17, 0)):
    return (AvailabilityWindow(day_of_week=day, start_time=start, end_time=end, timezone=tz),)


class TestScoring:

    def test_full_score_for_strong_candidate(self, now):
        """Two matching tags, available, top rating, 10 sessions: every cap reached."""
        x = snapshot(
            1,
            ['React', 'PostgreSQL', 'AWS'],
            availability_windows=office_hours(),
            completed_session_count=10,
            mean_rating=Decimal('5.00'),
        )
        y = snapshot(2, ['Go', 'Kubernetes'], completed_session_count=50, mean_rating=Decimal('5.00'))

        ranked = rank(['React', 'PostgreSQL'], [x, y], now=now, weights=WEIGHTS)

        assert [candidate.consultant_id for candidate in ranked] == [1]
        assert ranked[0].breakdown == matching.ScoreBreakdown(
            technology=50, availability=20, rating=20, experience=10
        )
        assert ranked[0].score == 100

    def test_technology_score_is_capped(self, now):
        candidate = snapshot(1, ['a', 'b', 'c', 'd'])

        ranked = rank(['a', 'b', 'c', 'd'], [candidate], now=now, weights=WEIGHTS)

        assert ranked[0].breakdown.technology == 50

    def test_single_tag_scores_per_tag_points(self, now):
        ranked = rank(['React', 'PostgreSQL'], [snapshot(1, ['react'])], now=now, weights=WEIGHTS)

        assert ranked[0].breakdown.technology == 25
        assert ranked[0].score == 25

    def test_tag_overlap_ignores_case_and_whitespace(self):
        assert normalize_tags([' React ', 'POSTGRESQL', '', None]) == {'react', 'postgresql'}

    def test_rating_scales_onto_cap(self, now):
        candidate = snapshot(1, ['React'], mean_rating=Decimal('3.5'))

        ranked = rank(['React'], [candidate], now=now, weights=WEIGHTS)

        assert ranked[0].breakdown.rating == 14

    def test_experience_is_capped(self, now):
        candidate = snapshot(1, ['React'], completed_session_count=250)

        ranked = rank(['React'], [candidate], now=now, weights=WEIGHTS)

        assert ranked[0].breakdown.experience == 10

    def test_other_components_do_not_rescue_zero_overlap(self, now):
        candidate = snapshot(
            1,
            ['Go'],
            availability_windows=office_hours(),
            completed_session_count=10,
            mean_rating=Decimal('5.00'),
        )

        assert rank(['React'], [candidate], now=now, weights=WEIGHTS) == []


class TestAvailabilityWindows:

    def test_window_outside_current_time_gives_no_bonus(self, now):
        candidate = snapshot(1, ['React'], availability_windows=office_hours(start=time(13, 0)))

        ranked = rank(['React'], [candidate], now=now, weights=WEIGHTS)

        assert ranked[0].breakdown.availability == 0

    def test_window_on_another_day_gives_no_bonus(self, now):
        candidate = snapshot(1, ['React'], availability_windows=office_hours(day=WEDNESDAY + 1))

        ranked = rank(['React'], [candidate], now=now, weights=WEIGHTS)

        assert ranked[0].breakdown.availability == 0

    def test_window_is_read_in_its_own_timezone(self, now):
        # 10:00 UTC is 05:00 in New York and 19:00 in Tokyo on the same Wednesday.
        new_york = snapshot(
            1, ['React'], availability_windows=office_hours('America/New_York', start=time(4, 0), end=time(6, 0))
        )
        tokyo = snapshot(
            2, ['React'], availability_windows=office_hours('Asia/Tokyo', start=time(18, 0), end=time(20, 0))
        )
        new_york_office = snapshot(3, ['React'], availability_windows=office_hours('America/New_York'))

        ranked = {
            candidate.consultant_id: candidate
            for candidate in rank(['React'], [new_york, tokyo, new_york_office], now=now, weights=WEIGHTS)
        }

        assert ranked[1].breakdown.availability == 20
        assert ranked[2].breakdown.availability == 20
        assert ranked[3].breakdown.availability == 0

    def test_window_bounds_are_inclusive(self, now):
        ending_now = AvailabilityWindow(day_of_week=WEDNESDAY, start_time=time(9, 0), end_time=time(10, 0))
        starting_now = AvailabilityWindow(day_of_week=WEDNESDAY, start_time=time(10, 0), end_time=time(11, 0))
        ended = AvailabilityWindow(day_of_week=WEDNESDAY, start_time=time(9, 0), end_time=time(9, 59))

        assert ending_now.covers(now)
        assert starting_now.covers(now)
        assert not ended.covers(now)

    def test_inactive_window_is_ignored(self, now):
        window = AvailabilityWindow(
            day_of_week=WEDNESDAY, start_time=time(0, 0), end_time=time(23, 59), is_active=False
        )
        assert not window.covers(now)


class TestOrderingAndFiltering:

    def test_ineligible_candidates_are_skipped(self, now):
        candidates = [
            snapshot(1, ['React'], approval_status=Consultant.STATUS_PENDING),
            snapshot(2, ['React'], approval_status=Consultant.STATUS_SUSPENDED),
            snapshot(3, ['React'], is_available=False),
            snapshot(4, ['React']),
        ]

        ranked = rank(['React'], candidates, now=now, weights=WEIGHTS)

        assert [candidate.consultant_id for candidate in ranked] == [4]

    def test_excluded_ids_are_skipped(self, now):
        candidates = [snapshot(1, ['React']), snapshot(2, ['React'])]

        ranked = rank(['React'], candidates, now=now, excluded_ids=[1], weights=WEIGHTS)

        assert [candidate.consultant_id for candidate in ranked] == [2]

    def test_higher_score_ranks_first(self, now):
        candidates = [
            snapshot(1, ['React']),
            snapshot(2, ['React', 'PostgreSQL']),
            snapshot(3, ['React'], completed_session_count=4),
        ]

        ranked = rank(['React', 'PostgreSQL'], candidates, now=now, weights=WEIGHTS)

        assert [candidate.consultant_id for candidate in ranked] == [2, 3, 1]

    def test_ties_break_by_consultant_id(self, now):
        candidates = [snapshot(9, ['React']), snapshot(4, ['React']), snapshot(7, ['React'])]

        ranked = rank(['React'], candidates, now=now, weights=WEIGHTS)

        assert [candidate.consultant_id for candidate in ranked] == [4, 7, 9]

    def test_ranking_is_deterministic(self, now):
        candidates = [
            snapshot(index, ['React', 'Go'][: 1 + index % 2], completed_session_count=index % 4)
            for index in range(1, 12)
        ]

        first = rank(['React', 'Go'], candidates, now=now, weights=WEIGHTS)
        second = rank(['React', 'Go'], list(reversed(candidates)), now=now, weights=WEIGHTS)

        assert first == second

    def test_priority_raises_rank_score_only(self, now):
        candidate = snapshot(1, ['React'])

        normal = rank(['React'], [candidate], now=now, weights=WEIGHTS)[0]
        prioritized = rank(['React'], [candidate], now=now, priority=True, weights=WEIGHTS)[0]

        assert prioritized.score == normal.score == 25
        assert prioritized.rank_score == normal.rank_score + 100


@pytest.mark.django_db
class TestRankForRequest:

    def test_uses_database_snapshot(self, submitted_request, make_consultant, now):
        strong = make_consultant(
            tags=['React', 'PostgreSQL', 'AWS'],
            rating=Decimal('5.00'),
            completed=10,
            windows=[(WEDNESDAY, time(9, 0), time(17, 0))],
        )
        weak = make_consultant(tags=['React'])
        make_consultant(tags=['Go'])
        make_consultant(tags=['React'], status=Consultant.STATUS_PENDING)
        make_consultant(tags=['React'], available=False)

        ranked = matching.rank_for_request(submitted_request, now=now)

        assert [candidate.consultant_id for candidate in ranked] == [strong.pk, weak.pk]
        assert ranked[0].score == 100

    def test_excluded_consultants_are_left_out(self, submitted_request, make_consultant, now):
        first = make_consultant(tags=['React'])
        second = make_consultant(tags=['React'])
        submitted_request.excluded_consultants = [first.pk]

        ranked = matching.rank_for_request(submitted_request, now=now)

        assert [candidate.consultant_id for candidate in ranked] == [second.pk]

    def test_active_subscription_sets_priority(self, make_client_user, make_consultant, now):
        subscriber = make_client_user(subscription_until=now + timedelta(days=30))
        consultation_request = consultations.submit_request(
            subscriber, 'Webpack build fails with a cryptic loader error.', ['React'], now=now
        )
        make_consultant(tags=['React'])

        ranked = matching.rank_for_request(consultation_request, now=now)

        assert ranked[0].rank_score == ranked[0].score + 100

    def test_per_tag_points_read_from_settings(self, settings, submitted_request, make_consultant, now):
        settings.CONSULTATION = {'PER_TAG_POINTS': 10}
        make_consultant(tags=['React'])

        ranked = matching.rank_for_request(submitted_request, now=now)

        assert ranked[0].breakdown.technology == 10
