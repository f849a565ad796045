"""
Shared helpers for ConsultationRequest status transitions.

Every transition is a compare-and-set: a queryset ``update()`` filtered on the
status the caller observed. Zero updated rows means somebody else moved the
request first, which callers report as NotRespondable.
"""

import logging

from django.utils import timezone

from ..exceptions import Forbidden, NotFound, NotRespondable
from ..models import ConsultantInvitation, ConsultationRequest

logger = logging.getLogger(__name__)


def get_request(request_id, lock=False):
    """
    Fetch a request, optionally locking the row for the current transaction.

    Raises:
        NotFound: If no request has this id
    """
    if lock:
        queryset = ConsultationRequest.objects.select_for_update()
    else:
        queryset = ConsultationRequest.objects.select_related('matched_consultant')
    try:
        return queryset.get(pk=request_id)
    except ConsultationRequest.DoesNotExist:
        raise NotFound(f'Consultation request {request_id} does not exist.')


def require_party(consultation_request, actor):
    """
    Return the actor's role on the request.

    Raises:
        Forbidden: If the actor is neither the requester nor the matched consultant
    """
    role = consultation_request.party_role(actor)
    if role is None:
        raise Forbidden(
            'Only the requester and the matched consultant can act on this request.',
            details={'request_id': consultation_request.pk},
        )
    return role


def transition(consultation_request, to_status, from_statuses=None, now=None, **fields):
    """
    Move a request to ``to_status`` if it is still in one of ``from_statuses``.

    ``from_statuses`` defaults to the status held by the passed instance. On
    success the instance is refreshed from the database.

    Raises:
        NotRespondable: If the transition is not allowed or the guard failed
    """
    now = now or timezone.now()
    if from_statuses is None:
        from_statuses = [consultation_request.status]

    is_valid, error_message = consultation_request.can_transition_to(to_status)
    if not is_valid:
        raise NotRespondable(error_message, details={'status': consultation_request.status})

    updated = ConsultationRequest.objects.filter(
        pk=consultation_request.pk,
        status__in=from_statuses,
    ).update(status=to_status, updated_at=now, **fields)

    if not updated:
        raise NotRespondable(
            'The consultation request changed state before this action completed.',
            details={'request_id': consultation_request.pk},
        )

    previous = consultation_request.status
    consultation_request.refresh_from_db()
    logger.info(f"Request {consultation_request.pk} moved {previous} -> {to_status}")
    return consultation_request


def expire_pending_invitations(consultation_request, exclude_id=None):
    """Force every pending invitation of the request to expired. Returns the count."""
    queryset = ConsultantInvitation.objects.filter(
        consultation_request_id=consultation_request.pk,
        status=ConsultantInvitation.STATUS_PENDING,
    )
    if exclude_id is not None:
        queryset = queryset.exclude(pk=exclude_id)
    return queryset.update(status=ConsultantInvitation.STATUS_EXPIRED)


def exclude_consultant(consultation_request, consultant_id, now=None):
    """Add a consultant to the request's exclusion set. Must run on a locked row."""
    excluded = list(consultation_request.excluded_consultants or [])
    if consultant_id in excluded:
        return excluded
    excluded = sorted(excluded + [consultant_id])
    ConsultationRequest.objects.filter(pk=consultation_request.pk).update(
        excluded_consultants=excluded,
        updated_at=now or timezone.now(),
    )
    consultation_request.excluded_consultants = excluded
    return excluded


def revert_if_exhausted(request_id, now=None):
    """
    Send a request back to pending once all of its invitations ended without a winner.

    Must run inside a transaction. Requests that have moved on (accepted,
    cancelled) are left alone.

    Returns:
        bool: True if the request was reverted
    """
    now = now or timezone.now()
    consultation_request = get_request(request_id, lock=True)

    if consultation_request.status not in (
        ConsultationRequest.STATUS_INVITED,
        ConsultationRequest.STATUS_MATCHED,
    ):
        return False

    open_invitations = ConsultantInvitation.objects.filter(
        consultation_request_id=request_id,
        status__in=[ConsultantInvitation.STATUS_PENDING, ConsultantInvitation.STATUS_ACCEPTED],
    )
    if open_invitations.exists():
        return False

    updated = ConsultationRequest.objects.filter(
        pk=request_id,
        status=consultation_request.status,
    ).update(
        status=ConsultationRequest.STATUS_PENDING,
        matched_consultant=None,
        matched_at=None,
        updated_at=now,
    )
    if updated:
        logger.info(f"Request {request_id} has no open invitations left, back to pending")
    return bool(updated)
