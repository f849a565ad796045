"""
Consultation request operations used by the API, commands and scheduler.

This module composes the ledger, matching, invitation and negotiation
services into the request lifecycle:

    submit_request -> match_and_invite -> respond_to_invitation
    -> propose_counter_time / accept_proposed_time -> attach_meeting
    -> start_session -> complete_session

with cancel_request and shuffle_request available along the way. Every
function takes an optional ``now`` so tests can pin the clock.
"""

import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db.models import Case, IntegerField, Value, When
from django.utils import timezone

from ..conf import get_setting
from ..exceptions import (
    Forbidden,
    NotFound,
    NotRespondable,
    ValidationError,
    atomic_operation,
)
from ..models import (
    Consultant,
    ConsultantAvailability,
    ConsultantInvitation,
    Consultation,
    ConsultationRequest,
)
from . import invitations, ledger, matching, negotiation, state_machine

logger = logging.getLogger(__name__)

DECISION_ACCEPT = 'accept'
DECISION_DECLINE = 'decline'

SHUFFLEABLE_STATUSES = (
    ConsultationRequest.STATUS_INVITED,
    ConsultationRequest.STATUS_MATCHED,
)


def submit_request(requester, problem_description, tech_stack, error_logs='', now=None):
    """
    Create a consultation request and hold the submission fee.

    The fee debit and the insert share one transaction, so a failed debit
    leaves no request behind.

    Returns:
        ConsultationRequest: The new pending request

    Raises:
        ValidationError: Blank or too short problem text, empty or invalid tags
        InsufficientBalance: If the requester cannot pay the fee
    """
    problem_description = (problem_description or '').strip()
    min_length = get_setting('MIN_PROBLEM_LENGTH')
    if len(problem_description) < min_length:
        raise ValidationError(
            f'Describe the problem in at least {min_length} characters.',
            code='problem_too_short',
        )

    tags = [tag.strip() for tag in tech_stack or [] if isinstance(tag, str) and tag.strip()]
    if not tags:
        raise ValidationError('Select at least one technology.', code='empty_tech_stack')

    fee = get_setting('SUBMISSION_FEE')
    consultation_request = ConsultationRequest(
        requester=requester,
        problem_description=problem_description,
        tech_stack=tags,
        error_logs=error_logs or '',
        submission_fee=fee,
    )
    try:
        consultation_request.full_clean()
    except DjangoValidationError as exc:
        raise ValidationError('Invalid consultation request.', details={'errors': exc.message_dict}) from exc

    with atomic_operation('request submission'):
        consultation_request.save()
        if fee:
            ledger.debit(
                requester,
                fee,
                description=f'Submission fee for request #{consultation_request.pk}',
                consultation_request=consultation_request,
            )

    logger.info(
        f"User {requester.pk} submitted request {consultation_request.pk} "
        f"({', '.join(tags)}), fee {fee}"
    )
    return consultation_request


def match_and_invite(request_id, inviter=None, surge=False, limit=None, now=None):
    """
    Rank consultants for a pending request and invite the best ones.

    The request passes through matching; with nobody to invite it returns to
    pending and an empty list is returned.

    Args:
        request_id: Request to match
        inviter: Operator triggering the match, None when automated
        surge: Only invite surge-eligible consultants, at the surge multiplier
        limit: Number of invitations, INVITATION_FANOUT by default

    Returns:
        list[int]: Ids of the invitations created

    Raises:
        NotRespondable: If the request is not pending
    """
    now = now or timezone.now()
    if limit is None:
        limit = get_setting('INVITATION_FANOUT')

    with atomic_operation('match and invite'):
        locked = state_machine.get_request(request_id, lock=True)
        if locked.status != ConsultationRequest.STATUS_PENDING:
            raise NotRespondable(
                f'Only pending requests can be matched; this one is {locked.status}.',
                details={'status': locked.status},
            )
        state_machine.transition(locked, ConsultationRequest.STATUS_MATCHING, now=now)

        ranked = matching.rank_for_request(locked, now=now)
        if surge:
            ranked = [candidate for candidate in ranked if candidate.is_surge_available]
        chosen = ranked[:limit]

        if not chosen:
            state_machine.transition(locked, ConsultationRequest.STATUS_PENDING, now=now)
            logger.info(f"No consultants available for request {request_id}, back to pending")
            return []

        consultants = Consultant.objects.in_bulk([candidate.consultant_id for candidate in chosen])
        invitation_ids = []
        for candidate in chosen:
            invitation = invitations.create_invitation(
                locked,
                consultants[candidate.consultant_id],
                inviter=inviter,
                surge=surge,
                now=now,
            )
            invitation_ids.append(invitation.pk)

    logger.info(f"Request {request_id}: invited {len(invitation_ids)} consultants")
    return invitation_ids


def match_pending_requests(limit=None, now=None):
    """
    Automated matching pass over pending requests.

    Requesters with an active subscription go first, then oldest first. A
    request that changed state in the meantime is skipped.

    Returns:
        int: Number of invitations created
    """
    now = now or timezone.now()
    pending = (
        ConsultationRequest.objects.filter(status=ConsultationRequest.STATUS_PENDING)
        .annotate(
            priority=Case(
                When(requester__subscription_expires_at__gt=now, then=Value(0)),
                default=Value(1),
                output_field=IntegerField(),
            )
        )
        .order_by('priority', 'created_at', 'id')
        .values_list('id', flat=True)
    )
    if limit is not None:
        pending = pending[:limit]

    created = 0
    for request_id in list(pending):
        try:
            created += len(match_and_invite(request_id, now=now))
        except NotRespondable as exc:
            logger.info(f"Skipped automated matching of request {request_id}: {exc.message}")
    return created


def respond_to_invitation(invitation_id, actor, decision, payload=None, now=None):
    """
    Accept or decline an invitation on behalf of the invited consultant.

    payload for accept: {'proposed_time': datetime, 'message': str}
    payload for decline: {'reason': str}

    Returns:
        ConsultationRequest: The owning request after the response
    """
    payload = payload or {}
    if decision == DECISION_ACCEPT:
        invitation = invitations.accept_invitation(
            invitation_id,
            actor,
            payload.get('proposed_time'),
            message=payload.get('message', ''),
            now=now,
        )
    elif decision == DECISION_DECLINE:
        invitation = invitations.decline_invitation(
            invitation_id,
            actor,
            reason=payload.get('reason', ''),
            now=now,
        )
    else:
        raise ValidationError(
            f'Decision must be "{DECISION_ACCEPT}" or "{DECISION_DECLINE}".',
            code='invalid_decision',
        )
    return state_machine.get_request(invitation.consultation_request_id)


def propose_counter_time(request_id, actor, new_time, reason='', now=None):
    return negotiation.counter_propose(request_id, actor, new_time, reason=reason, now=now)


def accept_proposed_time(request_id, actor, now=None):
    return negotiation.accept_proposed_time(request_id, actor, now=now)


def accept_counter_proposal(request_id, actor, now=None):
    return negotiation.accept_counter_proposal(request_id, actor, now=now)


def cancel_request(request_id, actor, reason='', now=None):
    """
    Cancel a request from any non-terminal state.

    Pending invitations are expired, a scheduled session is cancelled and the
    submission fee is refunded unless the session already started.

    Raises:
        Forbidden: If the actor is neither a party nor staff
        NotRespondable: If the request is already completed or cancelled
    """
    now = now or timezone.now()
    consultation_request = state_machine.get_request(request_id)
    if not getattr(actor, 'is_staff', False):
        state_machine.require_party(consultation_request, actor)

    with atomic_operation('request cancellation'):
        locked = state_machine.get_request(request_id, lock=True)
        if locked.is_terminal():
            raise NotRespondable(
                f'The request is already {locked.status}.',
                details={'status': locked.status},
            )
        previous_status = locked.status

        expired = state_machine.expire_pending_invitations(locked)

        state_machine.transition(
            locked,
            ConsultationRequest.STATUS_CANCELLED,
            now=now,
            matched_consultant=None,
            cancelled_by=actor,
            cancelled_at=now,
            cancellation_reason=(reason or '')[:500],
        )

        Consultation.objects.filter(
            consultation_request=locked,
            status__in=[Consultation.STATUS_SCHEDULED, Consultation.STATUS_IN_PROGRESS],
        ).update(status=Consultation.STATUS_CANCELLED, updated_at=now)

        if previous_status != ConsultationRequest.STATUS_IN_PROGRESS:
            ledger.refund_submission_fee(locked, now=now)

    logger.info(
        f"Request {request_id} cancelled by user {actor.pk} from {previous_status}; "
        f"{expired} invitations expired"
    )
    return locked


def shuffle_request(request_id, actor, now=None):
    """
    Drop the current invitations and match again without the consultants tried so far.

    Only the requester may shuffle, at most MAX_SHUFFLES times, and only
    before any consultant accepted.

    Returns:
        tuple: (ConsultationRequest, list of new invitation ids)

    Raises:
        Forbidden: If the actor is not the requester
        NotRespondable: Wrong state or shuffle limit reached
    """
    now = now or timezone.now()
    consultation_request = state_machine.get_request(request_id)
    if consultation_request.party_role(actor) != ConsultationRequest.ROLE_REQUESTER:
        raise Forbidden('Only the requester can shuffle the match.')

    max_shuffles = get_setting('MAX_SHUFFLES')
    with atomic_operation('request shuffle'):
        locked = state_machine.get_request(request_id, lock=True)
        if locked.status not in SHUFFLEABLE_STATUSES:
            raise NotRespondable(
                f'Cannot shuffle while the request is {locked.status}.',
                details={'status': locked.status},
            )
        if locked.shuffle_count >= max_shuffles:
            raise NotRespondable(
                f'The request was already shuffled {max_shuffles} times.',
                code='shuffle_limit_reached',
                details={'shuffle_count': locked.shuffle_count},
            )

        tried = set(locked.excluded_consultants or [])
        tried.update(
            ConsultantInvitation.objects.filter(consultation_request=locked)
            .values_list('consultant_id', flat=True)
        )
        if locked.matched_consultant_id:
            tried.add(locked.matched_consultant_id)

        state_machine.expire_pending_invitations(locked)
        state_machine.transition(
            locked,
            ConsultationRequest.STATUS_PENDING,
            now=now,
            matched_consultant=None,
            matched_at=None,
            excluded_consultants=sorted(tried),
            shuffle_count=locked.shuffle_count + 1,
        )

    logger.info(
        f"Request {request_id} shuffled ({locked.shuffle_count}/{max_shuffles}), "
        f"{len(tried)} consultants excluded"
    )
    invitation_ids = match_and_invite(request_id, now=now)
    return state_machine.get_request(request_id), invitation_ids


def get_session(consultation_request):
    try:
        return consultation_request.session
    except Consultation.DoesNotExist:
        raise NotFound(f'Request {consultation_request.pk} has no consultation session.')


def attach_meeting(request_id, meeting_reference, now=None):
    """
    Record the external meeting for a scheduled request and mark it ready.

    Raises:
        ValidationError: If the reference is blank
        NotRespondable: If the request is not scheduled
    """
    now = now or timezone.now()
    if not meeting_reference or not meeting_reference.strip():
        raise ValidationError('A meeting reference is required.', code='missing_meeting_reference')

    with atomic_operation('meeting attach'):
        locked = state_machine.get_request(request_id, lock=True)
        state_machine.transition(
            locked,
            ConsultationRequest.STATUS_READY,
            now=now,
            meeting_reference=meeting_reference.strip()[:255],
        )
    return locked


def start_session(request_id, actor, now=None):
    """Move a ready request to in_progress and stamp the session start."""
    now = now or timezone.now()
    consultation_request = state_machine.get_request(request_id)
    state_machine.require_party(consultation_request, actor)

    with atomic_operation('session start'):
        locked = state_machine.get_request(request_id, lock=True)
        if locked.status != ConsultationRequest.STATUS_READY:
            raise NotRespondable(
                f'Cannot start a session while the request is {locked.status}.',
                details={'status': locked.status},
            )
        state_machine.transition(locked, ConsultationRequest.STATUS_IN_PROGRESS, now=now)
        session = Consultation.objects.select_for_update().get(consultation_request=locked)
        session.status = Consultation.STATUS_IN_PROGRESS
        session.started_at = now
        session.save(update_fields=['status', 'started_at', 'updated_at'])

    logger.info(f"Session {session.pk} of request {request_id} started")
    return locked


def complete_session(request_id, actor, now=None):
    """
    Finish an in-progress session and bill the requester.

    The state change commits first; the per-minute charge then runs as its own
    ledger operation. If the requester cannot cover it, InsufficientBalance
    propagates and the session stays completed but uncharged, so
    ``ledger.charge_session`` can be retried.

    Returns:
        tuple: (ConsultationRequest, TokenTransaction or None)
    """
    now = now or timezone.now()
    consultation_request = state_machine.get_request(request_id)
    state_machine.require_party(consultation_request, actor)

    with atomic_operation('session completion'):
        locked = state_machine.get_request(request_id, lock=True)
        if locked.status != ConsultationRequest.STATUS_IN_PROGRESS:
            raise NotRespondable(
                f'Cannot complete a session while the request is {locked.status}.',
                details={'status': locked.status},
            )
        state_machine.transition(
            locked,
            ConsultationRequest.STATUS_COMPLETED,
            now=now,
            matched_consultant=None,
        )
        session = Consultation.objects.select_for_update().get(consultation_request=locked)
        started_at = session.started_at or now
        session.status = Consultation.STATUS_COMPLETED
        session.ended_at = now
        session.duration_minutes = max(0, int((now - started_at).total_seconds() // 60))
        session.save(update_fields=['status', 'ended_at', 'duration_minutes', 'updated_at'])

    logger.info(f"Session {session.pk} of request {request_id} completed after {session.duration_minutes} minutes")
    charge = ledger.charge_session(session)
    return locked, charge


def rate_session(session_id, actor, rating, feedback=''):
    """
    Store the requester's rating of a completed session.

    Raises:
        Forbidden: If the actor is not the requester
        NotRespondable: If the session is not completed
        ValidationError: If the rating is not 1-5
    """
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError('Rating must be a whole number from 1 to 5.', code='invalid_rating')

    with atomic_operation('session rating'):
        try:
            session = Consultation.objects.select_for_update().get(pk=session_id)
        except Consultation.DoesNotExist:
            raise NotFound(f'Consultation session {session_id} does not exist.')
        if actor is None or session.requester_id != actor.pk:
            raise Forbidden('Only the requester can rate this session.')
        if session.status != Consultation.STATUS_COMPLETED:
            raise NotRespondable('Only completed sessions can be rated.', code='session_not_completed')

        session.user_rating = rating
        session.user_feedback = feedback or ''
        session.save(update_fields=['user_rating', 'user_feedback', 'updated_at'])

    logger.info(f"Session {session_id} rated {rating} by user {actor.pk}")
    return session


def replace_availability(consultant, windows):
    """
    Replace all availability windows of a consultant.

    Args:
        windows: Iterable of dicts with day_of_week, start_time, end_time,
            and optionally timezone and is_active

    Returns:
        list[ConsultantAvailability]: The new windows
    """
    with atomic_operation('availability replace'):
        Consultant.objects.select_for_update().get(pk=consultant.pk)
        ConsultantAvailability.objects.filter(consultant=consultant).delete()
        created = []
        for window in windows:
            availability = ConsultantAvailability(consultant=consultant, **window)
            try:
                availability.save()
            except DjangoValidationError as exc:
                raise ValidationError('Invalid availability window.', details={'errors': exc.message_dict}) from exc
            created.append(availability)

    logger.info(f"Consultant {consultant.pk} replaced availability with {len(created)} windows")
    return created
