"""
Expiry sweeper.

The only place pending invitations expire by time. Each expiry is a
status-guarded update, so concurrent sweeps and a racing accept never both
win, and a second sweep over the same rows changes nothing.
"""

import logging

from django.utils import timezone

from ..exceptions import atomic_operation
from ..models import ConsultantInvitation
from . import state_machine

logger = logging.getLogger(__name__)


def stale_invitations(now=None):
    """Pending invitations whose expiry instant has passed."""
    now = now or timezone.now()
    return ConsultantInvitation.objects.filter(
        status=ConsultantInvitation.STATUS_PENDING,
        expires_at__lt=now,
    )


def sweep_expired_invitations(now=None):
    """
    Expire stale pending invitations and release requests left without any.

    A request whose invitations all ended without a winner goes from invited
    back to pending.

    Returns:
        int: Number of invitations this run expired
    """
    now = now or timezone.now()
    candidates = list(
        stale_invitations(now)
        .order_by('id')
        .values_list('id', 'consultation_request_id')
    )

    expired_count = 0
    touched_requests = []
    for invitation_id, request_id in candidates:
        with atomic_operation('invitation expiry'):
            updated = ConsultantInvitation.objects.filter(
                pk=invitation_id,
                status=ConsultantInvitation.STATUS_PENDING,
                expires_at__lt=now,
            ).update(status=ConsultantInvitation.STATUS_EXPIRED)
        if updated:
            expired_count += 1
            if request_id not in touched_requests:
                touched_requests.append(request_id)

    reverted = 0
    for request_id in touched_requests:
        with atomic_operation('request reconcile after expiry'):
            if state_machine.revert_if_exhausted(request_id, now=now):
                reverted += 1

    if expired_count:
        logger.info(
            f"Expiry sweep expired {expired_count} invitations, "
            f"{reverted} requests back to pending"
        )
    else:
        logger.debug("Expiry sweep found no stale invitations")
    return expired_count
