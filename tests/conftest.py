"""
Shared fixtures for the consultation test suite.

Service calls take ``now`` explicitly; tests pin it to FIXED_NOW (a Wednesday,
10:00 UTC) so invitation deadlines and availability windows are predictable.
"""

from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from itertools import count

import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from core.models import Consultant, ConsultantAvailability
from core.services import consultations, ledger

User = get_user_model()

FIXED_NOW = datetime(2026, 3, 4, 10, 0, tzinfo=dt_timezone.utc)

PROBLEM = 'My React app renders a blank page after upgrading to version 18.'

_sequence = count(1)


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def api_client():
    """Return API client for testing."""
    return APIClient()


@pytest.fixture
def make_client_user(db):
    """Factory for client accounts, optionally pre-funded through the ledger."""

    def _make(tokens=100, subscription_until=None, **extra):
        number = next(_sequence)
        user = User.objects.create_user(
            username=extra.pop('username', f'client{number}'),
            email=extra.pop('email', f'client{number}@test.com'),
            password='TestPass123!',
            user_type='client',
            subscription_expires_at=subscription_until,
            **extra
        )
        if tokens:
            ledger.credit(user, tokens, description='Test funding')
            user.refresh_from_db()
        return user

    return _make


@pytest.fixture
def make_consultant(db):
    """
    Factory for consultant profiles.

    Defaults to an approved, available consultant without availability
    windows; pass ``windows`` as (day_of_week, start, end) tuples in UTC.
    """

    def _make(tags=('React',), status=Consultant.STATUS_APPROVED, available=True,
              surge=False, rating=Decimal('0.00'), completed=0, windows=()):
        number = next(_sequence)
        user = User.objects.create_user(
            username=f'consultant{number}',
            email=f'consultant{number}@test.com',
            password='TestPass123!',
            user_type='consultant',
        )
        consultant = Consultant.objects.create(
            user=user,
            specializations=list(tags),
            status=status,
            is_available=available,
            is_surge_available=surge,
            rating_average=rating,
            completed_sessions=completed,
        )
        for day_of_week, start, end in windows:
            ConsultantAvailability.objects.create(
                consultant=consultant,
                day_of_week=day_of_week,
                start_time=start,
                end_time=end,
            )
        return consultant

    return _make


@pytest.fixture
def requester(make_client_user):
    return make_client_user(tokens=100)


@pytest.fixture
def staff_user(db):
    return User.objects.create_user(
        username='operator',
        email='operator@test.com',
        password='TestPass123!',
        is_staff=True,
    )


@pytest.fixture
def submitted_request(requester, now):
    """A pending request for React and PostgreSQL help."""
    return consultations.submit_request(requester, PROBLEM, ['React', 'PostgreSQL'], now=now)


@pytest.fixture
def two_consultants(make_consultant):
    return [
        make_consultant(tags=['React', 'PostgreSQL']),
        make_consultant(tags=['React']),
    ]


@pytest.fixture
def invited_request(submitted_request, two_consultants, now):
    """The submitted request with one pending invitation per consultant."""
    invitation_ids = consultations.match_and_invite(submitted_request.pk, now=now)
    submitted_request.refresh_from_db()
    return submitted_request, invitation_ids


@pytest.fixture
def matched_request(invited_request, two_consultants, now):
    """Request in time_proposed after the first consultant accepted."""
    consultation_request, invitation_ids = invited_request
    consultant = two_consultants[0]
    consultations.respond_to_invitation(
        invitation_ids[0],
        consultant.user,
        consultations.DECISION_ACCEPT,
        {'proposed_time': now + timedelta(days=1)},
        now=now,
    )
    consultation_request.refresh_from_db()
    return consultation_request, consultant


@pytest.fixture
def scheduled_request(matched_request, now):
    consultation_request, consultant = matched_request
    consultations.accept_proposed_time(consultation_request.pk, consultation_request.requester, now=now)
    consultation_request.refresh_from_db()
    return consultation_request, consultant
