"""
Tests for the invitation lifecycle.

Tests cover:
- Creating invitations (eligibility, surge, duplicates, exclusions, state)
- Accepting: single winner, sibling expiry, request advanced to time_proposed
- Declining: the decliner is excluded, request returns to pending when no invitation is left
- Authorization and expired or already answered invitations
- Concurrent accepts on one request
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta
from decimal import Decimal

import pytest
from django.db import connection

from core.exceptions import (
    DuplicateInvitation,
    Forbidden,
    InvalidProposedTime,
    NotRespondable,
    ValidationError,
)
from core.models import Consultant, ConsultantInvitation, ConsultationRequest
from core.services import consultations, invitations


@pytest.mark.django_db
class TestCreateInvitation:

    def test_first_invitation_moves_request_to_invited(self, submitted_request, make_consultant, now):
        consultant = make_consultant()

        invitation = invitations.create_invitation(submitted_request, consultant, now=now)

        submitted_request.refresh_from_db()
        assert submitted_request.status == ConsultationRequest.STATUS_INVITED
        assert invitation.status == ConsultantInvitation.STATUS_PENDING
        assert invitation.invited_at == now
        assert invitation.expires_at == now + timedelta(hours=24)
        assert invitation.surge_multiplier == 1

    def test_invitation_window_from_settings(self, settings, submitted_request, make_consultant, now):
        settings.CONSULTATION = {'INVITATION_WINDOW_HOURS': 2}

        invitation = invitations.create_invitation(submitted_request, make_consultant(), now=now)

        assert invitation.expires_at == now + timedelta(hours=2)

    def test_operator_invitation_records_inviter(self, submitted_request, make_consultant, staff_user, now):
        invitation = invitations.create_invitation(
            submitted_request, make_consultant(), inviter=staff_user, now=now
        )

        assert invitation.invited_by == staff_user

    def test_duplicate_pending_invitation_rejected(self, submitted_request, make_consultant, now):
        consultant = make_consultant()
        invitations.create_invitation(submitted_request, consultant, now=now)

        with pytest.raises(DuplicateInvitation):
            invitations.create_invitation(submitted_request, consultant, now=now)
        assert ConsultantInvitation.objects.filter(consultation_request=submitted_request).count() == 1

    def test_surge_requires_opt_in(self, submitted_request, make_consultant, now):
        with pytest.raises(ValidationError) as exc_info:
            invitations.create_invitation(submitted_request, make_consultant(surge=False), surge=True, now=now)
        assert exc_info.value.code == 'surge_not_available'

    def test_surge_invitation_carries_multiplier(self, submitted_request, make_consultant, now):
        invitation = invitations.create_invitation(
            submitted_request, make_consultant(surge=True), surge=True, now=now
        )

        assert invitation.is_surge
        assert invitation.surge_multiplier == Decimal('1.20')

    @pytest.mark.parametrize('status,available', [
        (Consultant.STATUS_PENDING, True),
        (Consultant.STATUS_SUSPENDED, True),
        (Consultant.STATUS_APPROVED, False),
    ])
    def test_ineligible_consultant_rejected(self, submitted_request, make_consultant, now, status, available):
        consultant = make_consultant(status=status, available=available)

        with pytest.raises(ValidationError):
            invitations.create_invitation(submitted_request, consultant, now=now)
        submitted_request.refresh_from_db()
        assert submitted_request.status == ConsultationRequest.STATUS_PENDING

    def test_excluded_consultant_rejected(self, submitted_request, make_consultant, now):
        consultant = make_consultant()
        ConsultationRequest.objects.filter(pk=submitted_request.pk).update(excluded_consultants=[consultant.pk])

        with pytest.raises(ValidationError) as exc_info:
            invitations.create_invitation(submitted_request, consultant, now=now)
        assert exc_info.value.code == 'consultant_excluded'

    def test_matched_request_takes_no_new_invitations(self, matched_request, make_consultant, now):
        consultation_request, _ = matched_request

        with pytest.raises(NotRespondable):
            invitations.create_invitation(consultation_request, make_consultant(), now=now)


@pytest.mark.django_db
class TestAcceptInvitation:

    def test_accept_matches_request_and_expires_siblings(self, invited_request, two_consultants, now):
        consultation_request, invitation_ids = invited_request
        proposed = now + timedelta(days=2)

        invitation = invitations.accept_invitation(
            invitation_ids[0], two_consultants[0].user, proposed, message='Works for me', now=now
        )

        consultation_request.refresh_from_db()
        sibling = ConsultantInvitation.objects.get(pk=invitation_ids[1])
        assert invitation.status == ConsultantInvitation.STATUS_ACCEPTED
        assert invitation.responded_at == now
        assert invitation.proposal_message == 'Works for me'
        assert sibling.status == ConsultantInvitation.STATUS_EXPIRED
        assert consultation_request.status == ConsultationRequest.STATUS_TIME_PROPOSED
        assert consultation_request.matched_consultant == two_consultants[0]
        assert consultation_request.matched_at == now
        assert consultation_request.proposed_time == proposed
        assert consultation_request.last_proposed_by == ConsultationRequest.ROLE_CONSULTANT

    def test_second_accept_loses(self, invited_request, two_consultants, now):
        """A accepts first, B a moment later: A wins, B ends expired."""
        consultation_request, (first_id, second_id) = invited_request

        invitations.accept_invitation(
            first_id, two_consultants[0].user, now + timedelta(days=1), now=now
        )
        with pytest.raises(NotRespondable):
            invitations.accept_invitation(
                second_id,
                two_consultants[1].user,
                now + timedelta(days=1),
                now=now + timedelta(milliseconds=5),
            )

        consultation_request.refresh_from_db()
        assert ConsultantInvitation.objects.get(pk=first_id).status == ConsultantInvitation.STATUS_ACCEPTED
        assert ConsultantInvitation.objects.get(pk=second_id).status == ConsultantInvitation.STATUS_EXPIRED
        assert consultation_request.matched_consultant == two_consultants[0]
        assert ConsultantInvitation.objects.filter(
            consultation_request=consultation_request,
            status=ConsultantInvitation.STATUS_ACCEPTED,
        ).count() == 1

    def test_only_invited_consultant_may_accept(self, invited_request, two_consultants, now):
        _, invitation_ids = invited_request

        with pytest.raises(Forbidden):
            invitations.accept_invitation(
                invitation_ids[0], two_consultants[1].user, now + timedelta(days=1), now=now
            )
        assert ConsultantInvitation.objects.get(pk=invitation_ids[0]).is_pending()

    def test_accept_after_deadline_rejected(self, invited_request, two_consultants, now):
        _, invitation_ids = invited_request
        late = now + timedelta(hours=25)

        with pytest.raises(NotRespondable):
            invitations.accept_invitation(
                invitation_ids[0], two_consultants[0].user, late + timedelta(days=1), now=late
            )
        # Only the sweeper expires invitations by time.
        assert ConsultantInvitation.objects.get(pk=invitation_ids[0]).is_pending()

    @pytest.mark.parametrize('offset', [None, timedelta(0), timedelta(hours=-1)])
    def test_proposed_time_must_be_in_future(self, invited_request, two_consultants, now, offset):
        _, invitation_ids = invited_request
        proposed = None if offset is None else now + offset

        with pytest.raises(InvalidProposedTime):
            invitations.accept_invitation(invitation_ids[0], two_consultants[0].user, proposed, now=now)
        assert ConsultantInvitation.objects.get(pk=invitation_ids[0]).is_pending()

    def test_declined_invitation_cannot_be_accepted(self, invited_request, two_consultants, now):
        _, invitation_ids = invited_request
        invitations.decline_invitation(invitation_ids[0], two_consultants[0].user, now=now)

        with pytest.raises(NotRespondable):
            invitations.accept_invitation(
                invitation_ids[0], two_consultants[0].user, now + timedelta(days=1), now=now
            )


@pytest.mark.django_db
class TestDeclineInvitation:

    def test_decline_with_sibling_pending_keeps_request_invited(self, invited_request, two_consultants, now):
        consultation_request, invitation_ids = invited_request

        invitation = invitations.decline_invitation(
            invitation_ids[0], two_consultants[0].user, reason='Too busy this week', now=now
        )

        consultation_request.refresh_from_db()
        assert invitation.status == ConsultantInvitation.STATUS_DECLINED
        assert invitation.decline_reason == 'Too busy this week'
        assert consultation_request.status == ConsultationRequest.STATUS_INVITED

    def test_last_decline_returns_request_to_pending(self, invited_request, two_consultants, now):
        consultation_request, invitation_ids = invited_request

        for invitation_id, consultant in zip(invitation_ids, two_consultants):
            invitations.decline_invitation(invitation_id, consultant.user, now=now)

        consultation_request.refresh_from_db()
        assert consultation_request.status == ConsultationRequest.STATUS_PENDING
        assert consultation_request.matched_consultant is None

    def test_decliner_is_not_invited_again(self, invited_request, two_consultants, make_consultant, now):
        consultation_request, invitation_ids = invited_request
        for invitation_id, consultant in zip(invitation_ids, two_consultants):
            invitations.decline_invitation(invitation_id, consultant.user, now=now)
        newcomer = make_consultant(tags=['React'])

        created = consultations.match_pending_requests(now=now + timedelta(minutes=5))

        consultation_request.refresh_from_db()
        assert created == 1
        assert sorted(consultation_request.excluded_consultants) == sorted(c.pk for c in two_consultants)
        assert consultation_request.status == ConsultationRequest.STATUS_INVITED
        pending = ConsultantInvitation.objects.filter(
            consultation_request=consultation_request, status=ConsultantInvitation.STATUS_PENDING
        )
        assert [invitation.consultant_id for invitation in pending] == [newcomer.pk]

    def test_decliner_cannot_be_invited_directly(self, invited_request, two_consultants, now):
        consultation_request, invitation_ids = invited_request
        invitations.decline_invitation(invitation_ids[0], two_consultants[0].user, now=now)

        with pytest.raises(ValidationError) as exc_info:
            invitations.create_invitation(consultation_request, two_consultants[0], now=now)

        assert exc_info.value.code == 'consultant_excluded'

    def test_decline_twice_rejected(self, invited_request, two_consultants, now):
        _, invitation_ids = invited_request
        invitations.decline_invitation(invitation_ids[0], two_consultants[0].user, now=now)

        with pytest.raises(NotRespondable):
            invitations.decline_invitation(invitation_ids[0], two_consultants[0].user, now=now)

    def test_only_invited_consultant_may_decline(self, invited_request, requester, now):
        _, invitation_ids = invited_request

        with pytest.raises(Forbidden):
            invitations.decline_invitation(invitation_ids[0], requester, now=now)


@pytest.mark.django_db(transaction=True)
class TestConcurrentAccept:
    """Several consultants accepting the same request at once."""

    def test_exactly_one_accept_wins(self, make_client_user, make_consultant, now):
        requester = make_client_user()
        consultation_request = consultations.submit_request(
            requester, 'Docker compose networking breaks between two services.', ['Docker'], now=now
        )
        consultants = [make_consultant(tags=['Docker']) for _ in range(3)]
        invitation_ids = consultations.match_and_invite(consultation_request.pk, now=now)
        by_invitation = dict(zip(invitation_ids, consultants))

        def accept(invitation_id):
            try:
                invitations.accept_invitation(
                    invitation_id,
                    by_invitation[invitation_id].user,
                    now + timedelta(days=1),
                    now=now,
                )
                return 'accepted'
            except NotRespondable:
                return 'lost'
            finally:
                connection.close()

        with ThreadPoolExecutor(max_workers=3) as executor:
            futures = [executor.submit(accept, invitation_id) for invitation_id in invitation_ids]
            outcomes = [future.result() for future in as_completed(futures)]

        assert sorted(outcomes) == ['accepted', 'lost', 'lost']

        consultation_request.refresh_from_db()
        statuses = list(
            ConsultantInvitation.objects.filter(consultation_request=consultation_request)
            .values_list('status', flat=True)
        )
        assert statuses.count(ConsultantInvitation.STATUS_ACCEPTED) == 1
        assert statuses.count(ConsultantInvitation.STATUS_EXPIRED) == 2
        winner = ConsultantInvitation.objects.get(
            consultation_request=consultation_request,
            status=ConsultantInvitation.STATUS_ACCEPTED,
        )
        assert consultation_request.status == ConsultationRequest.STATUS_TIME_PROPOSED
        assert consultation_request.matched_consultant_id == winner.consultant_id
