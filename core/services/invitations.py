"""
Invitation lifecycle: create, accept and decline.

An invitation leaves pending exactly once. Accept and decline are
compare-and-set updates conditioned on ``status='pending'`` and
``expires_at > now``, the same guard the expiry sweeper uses, so a response
racing the sweeper or a sibling's accept has exactly one winner. Expiry
itself is only done by the sweeper or by a winning accept.
"""

import logging
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from ..conf import get_setting
from ..exceptions import (
    DuplicateInvitation,
    Forbidden,
    InvalidProposedTime,
    NotFound,
    NotRespondable,
    ValidationError,
    atomic_operation,
)
from ..models import ConsultantInvitation, ConsultationRequest
from . import state_machine

logger = logging.getLogger(__name__)

INVITABLE_STATUSES = (
    ConsultationRequest.STATUS_PENDING,
    ConsultationRequest.STATUS_MATCHING,
    ConsultationRequest.STATUS_INVITED,
)


def get_invitation(invitation_id):
    try:
        return ConsultantInvitation.objects.select_related('consultant').get(pk=invitation_id)
    except ConsultantInvitation.DoesNotExist:
        raise NotFound(f'Invitation {invitation_id} does not exist.')


def create_invitation(consultation_request, consultant, inviter=None, surge=False, now=None):
    """
    Invite one consultant to a request.

    Moves the request to invited if it is not there already.

    Args:
        consultation_request: Request to offer
        consultant: Consultant to invite
        inviter: Operator sending the invitation, None for automated matching
        surge: Offer the configured surge multiplier

    Returns:
        ConsultantInvitation: The new pending invitation

    Raises:
        ValidationError: If the consultant is not eligible or did not opt into surge
        NotRespondable: If the request no longer accepts invitations
        DuplicateInvitation: If a pending invitation for this pair exists
    """
    now = now or timezone.now()

    if not consultant.is_eligible_for_matching():
        raise ValidationError(
            'Only approved and available consultants can be invited.',
            code='consultant_not_eligible',
        )
    if surge and not consultant.is_surge_available:
        raise ValidationError(
            'This consultant does not accept surge invitations.',
            code='surge_not_available',
        )

    with atomic_operation('invitation create'):
        locked = state_machine.get_request(consultation_request.pk, lock=True)

        if locked.status not in INVITABLE_STATUSES:
            raise NotRespondable(
                f'A {locked.status} request cannot receive new invitations.',
                details={'status': locked.status},
            )
        if consultant.pk in (locked.excluded_consultants or []):
            raise ValidationError(
                'This consultant was already tried for this request.',
                code='consultant_excluded',
            )

        pending = ConsultantInvitation.objects.filter(
            consultation_request=locked,
            consultant=consultant,
            status=ConsultantInvitation.STATUS_PENDING,
        )
        if pending.exists():
            raise DuplicateInvitation(
                'This consultant already has a pending invitation for this request.',
                details={'request_id': locked.pk, 'consultant_id': consultant.pk},
            )

        try:
            with transaction.atomic():
                invitation = ConsultantInvitation.objects.create(
                    consultation_request=locked,
                    consultant=consultant,
                    invited_by=inviter,
                    is_surge=surge,
                    surge_multiplier=get_setting('SURGE_MULTIPLIER') if surge else 1,
                    invited_at=now,
                    expires_at=now + timedelta(hours=get_setting('INVITATION_WINDOW_HOURS')),
                )
        except IntegrityError as exc:
            raise DuplicateInvitation(
                'This consultant already has a pending invitation for this request.',
                details={'request_id': locked.pk, 'consultant_id': consultant.pk},
            ) from exc

        if locked.status != ConsultationRequest.STATUS_INVITED:
            state_machine.transition(locked, ConsultationRequest.STATUS_INVITED, now=now)

    logger.info(
        f"Invited consultant {consultant.pk} to request {locked.pk} "
        f"(surge={surge}, expires {invitation.expires_at.isoformat()})"
    )
    return invitation


def _require_invited_consultant(invitation, actor):
    if actor is None or invitation.consultant.user_id != actor.pk:
        raise Forbidden(
            'Only the invited consultant can respond to this invitation.',
            details={'invitation_id': invitation.pk},
        )


def _not_respondable(invitation):
    return NotRespondable(
        'This invitation can no longer be answered.',
        details={'invitation_id': invitation.pk, 'status': invitation.status},
    )


def accept_invitation(invitation_id, actor, proposed_time, message='', now=None):
    """
    Accept an invitation and propose the first meeting time.

    In one transaction: the invitation moves to accepted, every other pending
    invitation of the request is expired and the request moves to
    time_proposed with this consultant matched. Of several concurrent accepts
    on one request exactly one succeeds.

    Raises:
        Forbidden: If the actor is not the invited consultant
        NotRespondable: If the invitation is not pending or has expired, or a sibling won
        InvalidProposedTime: If proposed_time is not strictly in the future
    """
    now = now or timezone.now()
    invitation = get_invitation(invitation_id)
    _require_invited_consultant(invitation, actor)

    if not invitation.can_respond(now):
        raise _not_respondable(invitation)
    if proposed_time is None or proposed_time <= now:
        raise InvalidProposedTime('The proposed time must be in the future.')

    with atomic_operation('invitation accept'):
        consultation_request = state_machine.get_request(invitation.consultation_request_id, lock=True)

        won = ConsultantInvitation.objects.filter(
            pk=invitation.pk,
            status=ConsultantInvitation.STATUS_PENDING,
            expires_at__gt=now,
        ).update(
            status=ConsultantInvitation.STATUS_ACCEPTED,
            responded_at=now,
            proposed_time=proposed_time,
            proposal_message=message or '',
        )
        if not won:
            invitation.refresh_from_db()
            raise _not_respondable(invitation)

        if consultation_request.status not in (
            ConsultationRequest.STATUS_INVITED,
            ConsultationRequest.STATUS_MATCHED,
        ):
            # Rolls back the accept above.
            raise NotRespondable(
                f'The request is {consultation_request.status} and no longer takes acceptances.',
                details={'request_id': consultation_request.pk},
            )

        expired = state_machine.expire_pending_invitations(consultation_request, exclude_id=invitation.pk)

        state_machine.transition(
            consultation_request,
            ConsultationRequest.STATUS_TIME_PROPOSED,
            now=now,
            matched_consultant_id=invitation.consultant_id,
            matched_at=now,
            proposed_time=proposed_time,
            last_proposed_by=ConsultationRequest.ROLE_CONSULTANT,
        )

    invitation.refresh_from_db()
    logger.info(
        f"Consultant {invitation.consultant_id} accepted invitation {invitation.pk}; "
        f"request {consultation_request.pk} matched, {expired} sibling invitations expired"
    )
    return invitation


def decline_invitation(invitation_id, actor, reason='', now=None):
    """
    Decline an invitation.

    The consultant joins the request's exclusion set so matching does not
    offer it to them again. When no sibling invitation is left pending the
    request goes back to pending so it can be matched again.

    Raises:
        Forbidden: If the actor is not the invited consultant
        NotRespondable: If the invitation is not pending or has expired
    """
    now = now or timezone.now()
    invitation = get_invitation(invitation_id)
    _require_invited_consultant(invitation, actor)

    if not invitation.can_respond(now):
        raise _not_respondable(invitation)

    with atomic_operation('invitation decline'):
        consultation_request = state_machine.get_request(invitation.consultation_request_id, lock=True)

        declined = ConsultantInvitation.objects.filter(
            pk=invitation.pk,
            status=ConsultantInvitation.STATUS_PENDING,
            expires_at__gt=now,
        ).update(
            status=ConsultantInvitation.STATUS_DECLINED,
            responded_at=now,
            decline_reason=(reason or '')[:500],
        )
        if not declined:
            invitation.refresh_from_db()
            raise _not_respondable(invitation)

        state_machine.exclude_consultant(consultation_request, invitation.consultant_id, now=now)
        reverted = state_machine.revert_if_exhausted(invitation.consultation_request_id, now=now)

    invitation.refresh_from_db()
    logger.info(
        f"Consultant {invitation.consultant_id} declined invitation {invitation.pk}"
        + (f"; request {invitation.consultation_request_id} back to pending" if reverted else "")
    )
    return invitation
