"""
Consultant ranking.

``rank`` is a pure function over a snapshot of candidates and a clock reading,
so identical inputs always give the identical ordering. ``rank_for_request``
builds the snapshot from the database.

Score components, each capped on its own:
- technology: matched tags x PER_TAG_POINTS (case-insensitive overlap)
- availability: flat bonus when an active weekly window covers ``now``
- rating: mean rating scaled from 0-5 onto the rating cap
- experience: one point per completed session

A candidate without any tag overlap scores 0 and is left out.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.utils import timezone

from ..conf import get_setting
from ..models import Consultant, local_day_and_time

logger = logging.getLogger(__name__)


def normalize_tags(tags):
    return {tag.strip().lower() for tag in tags or () if isinstance(tag, str) and tag.strip()}


@dataclass(frozen=True)
class AvailabilityWindow:
    day_of_week: int
    start_time: object
    end_time: object
    timezone: str = 'UTC'
    is_active: bool = True

    def covers(self, instant):
        if not self.is_active:
            return False
        day, wall_time = local_day_and_time(instant, self.timezone)
        return day == self.day_of_week and self.start_time <= wall_time <= self.end_time


@dataclass(frozen=True)
class CandidateSnapshot:
    """What matching needs to know about one consultant."""
    consultant_id: int
    tags: tuple
    availability_windows: tuple = ()
    approval_status: str = Consultant.STATUS_APPROVED
    is_available: bool = True
    completed_session_count: int = 0
    mean_rating: Decimal = Decimal('0')
    is_surge_available: bool = False

    @classmethod
    def from_consultant(cls, consultant):
        return cls(
            consultant_id=consultant.pk,
            tags=tuple(consultant.specializations or ()),
            availability_windows=tuple(
                AvailabilityWindow(
                    day_of_week=window.day_of_week,
                    start_time=window.start_time,
                    end_time=window.end_time,
                    timezone=window.timezone,
                    is_active=window.is_active,
                )
                for window in consultant.availability_windows.all()
            ),
            approval_status=consultant.status,
            is_available=consultant.is_available,
            completed_session_count=consultant.completed_sessions,
            mean_rating=consultant.rating_average,
            is_surge_available=consultant.is_surge_available,
        )

    def is_eligible(self):
        return self.approval_status == Consultant.STATUS_APPROVED and self.is_available


@dataclass(frozen=True)
class ScoreBreakdown:
    technology: int
    availability: int
    rating: int
    experience: int

    @property
    def total(self):
        if not self.technology:
            return 0
        return self.technology + self.availability + self.rating + self.experience


@dataclass(frozen=True)
class RankedCandidate:
    consultant_id: int
    score: int
    rank_score: int
    breakdown: ScoreBreakdown
    is_surge_available: bool = False


@dataclass(frozen=True)
class ScoringWeights:
    per_tag_points: int
    technology_cap: int
    availability_bonus: int
    rating_cap: int
    experience_cap: int
    priority_bonus: int

    @classmethod
    def from_settings(cls):
        caps = get_setting('SCORE_CAPS')
        return cls(
            per_tag_points=get_setting('PER_TAG_POINTS'),
            technology_cap=caps['technology'],
            availability_bonus=caps['availability'],
            rating_cap=caps['rating'],
            experience_cap=caps['experience'],
            priority_bonus=get_setting('PRIORITY_BONUS'),
        )


def score_candidate(required_tags, candidate, now, weights):
    """Score one candidate against a normalized set of required tags."""
    matched = len(required_tags & normalize_tags(candidate.tags))
    technology = min(weights.technology_cap, matched * weights.per_tag_points)

    availability = 0
    if any(window.covers(now) for window in candidate.availability_windows):
        availability = weights.availability_bonus

    rating = 0
    mean_rating = Decimal(str(candidate.mean_rating or 0))
    if mean_rating > 0:
        rating = min(weights.rating_cap, int(mean_rating * weights.rating_cap / 5))

    experience = min(weights.experience_cap, max(0, candidate.completed_session_count))

    return ScoreBreakdown(
        technology=technology,
        availability=availability,
        rating=rating,
        experience=experience,
    )


def rank(required_tags, candidates, now=None, excluded_ids=(), priority=False, weights=None):
    """
    Rank candidates for a set of required technology tags.

    Args:
        required_tags: Tags of the request
        candidates: Iterable of CandidateSnapshot
        now: Clock reading used for the availability bonus
        excluded_ids: Consultant ids that must not be ranked
        priority: Requester holds an active subscription; raises rank_score only
        weights: ScoringWeights, read from settings when omitted

    Returns:
        list[RankedCandidate]: Highest rank_score first, ties by consultant id
    """
    now = now or timezone.now()
    weights = weights or ScoringWeights.from_settings()
    required = normalize_tags(required_tags)
    excluded = set(excluded_ids or ())
    bonus = weights.priority_bonus if priority else 0

    ranked = []
    for candidate in candidates:
        if candidate.consultant_id in excluded or not candidate.is_eligible():
            continue
        breakdown = score_candidate(required, candidate, now, weights)
        score = breakdown.total
        if score <= 0:
            continue
        ranked.append(RankedCandidate(
            consultant_id=candidate.consultant_id,
            score=score,
            rank_score=score + bonus,
            breakdown=breakdown,
            is_surge_available=candidate.is_surge_available,
        ))

    ranked.sort(key=lambda item: (-item.rank_score, item.consultant_id))
    return ranked


def candidate_pool(excluded_ids=()):
    """Snapshot of every approved and available consultant outside the exclusions."""
    consultants = (
        Consultant.objects.eligible()
        .exclude(pk__in=list(excluded_ids or ()))
        .prefetch_related('availability_windows')
        .order_by('id')
    )
    return [CandidateSnapshot.from_consultant(consultant) for consultant in consultants]


def rank_for_request(consultation_request, now=None):
    """Rank the current pool for a request, honoring its exclusion set."""
    now = now or timezone.now()
    excluded = consultation_request.excluded_consultants or []
    ranked = rank(
        consultation_request.tech_stack,
        candidate_pool(excluded),
        now=now,
        excluded_ids=excluded,
        priority=consultation_request.requester.has_active_subscription(now),
    )
    logger.info(
        f"Ranked {len(ranked)} consultants for request {consultation_request.pk} "
        f"(excluded {len(excluded)})"
    )
    return ranked
