"""
Django signals for session creation and consultant statistics.

``consultation_scheduled`` is sent inside the transaction that schedules a
request; its receiver creates the billable session. post_save on Consultation
keeps the consultant's rating_average and completed_sessions in step with the
session table, which matching reads.
"""

import logging
from decimal import Decimal

from django.db import transaction
from django.db.models import Avg, Count, Q
from django.db.models.signals import post_save
from django.dispatch import Signal, receiver

from .conf import get_setting
from .models import Consultant, Consultation

logger = logging.getLogger(__name__)

# Sent with consultation_request=<ConsultationRequest> once a request is scheduled.
consultation_scheduled = Signal()


@receiver(consultation_scheduled)
def create_session_for_scheduled_request(sender, consultation_request, **kwargs):
    """
    Create the billable session of a newly scheduled request.

    Runs inside the scheduling transaction: if this fails the request stays
    in its previous state.
    """
    session, created = Consultation.objects.get_or_create(
        consultation_request=consultation_request,
        defaults={
            'requester_id': consultation_request.requester_id,
            'consultant_id': consultation_request.matched_consultant_id,
            'scheduled_at': consultation_request.agreed_time,
            'token_rate_per_minute': get_setting('TOKEN_RATE_PER_MINUTE'),
        },
    )
    if created:
        logger.info(
            f"Created session {session.pk} for request {consultation_request.pk} "
            f"at {session.scheduled_at.isoformat()}"
        )


def consultant_stats(consultant_id):
    """Return (rating_average, completed_sessions) computed from the session table."""
    stats = Consultation.objects.filter(
        consultant_id=consultant_id,
        status=Consultation.STATUS_COMPLETED,
    ).aggregate(
        avg_rating=Avg('user_rating', filter=Q(user_rating__isnull=False)),
        completed=Count('id'),
    )
    raw_avg = stats['avg_rating']
    if raw_avg is None:
        rating_average = Decimal('0.00')
    else:
        rating_average = Decimal(str(raw_avg)).quantize(Decimal('0.01'))
    return rating_average, stats['completed'] or 0


@receiver(post_save, sender=Consultation)
def update_consultant_stats_on_session_save(sender, instance, created, **kwargs):
    """
    Recompute the consultant's cached statistics when a session changes.

    Only completed sessions count, so scheduled and in-progress saves are
    skipped. The consultant row is locked while the caches are rewritten.
    """
    if instance.status != Consultation.STATUS_COMPLETED:
        return

    update_fields = kwargs.get('update_fields')
    if update_fields and not {'status', 'user_rating'} & set(update_fields):
        return

    try:
        with transaction.atomic():
            consultant = Consultant.objects.select_for_update().get(pk=instance.consultant_id)
            rating_average, completed = consultant_stats(consultant.pk)
            Consultant.objects.filter(pk=consultant.pk).update(
                rating_average=rating_average,
                completed_sessions=completed,
            )
            logger.info(
                f"Updated consultant {consultant.pk} stats: "
                f"rating {rating_average}, completed sessions {completed}"
            )
    except Exception as e:
        logger.error(
            f"Error updating stats for consultant {instance.consultant_id} "
            f"after session {instance.pk}: {e}",
            exc_info=True
        )
        raise
