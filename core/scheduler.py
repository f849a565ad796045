"""
Recurring background jobs.

Uses APScheduler to run the invitation expiry sweep and the automated
matching pass on fixed intervals. Started by ``manage.py run_scheduler``.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger
from django.db import close_old_connections

from .conf import get_setting
from .exceptions import ConsultationError
from .services.consultations import match_pending_requests
from .services.expiry import sweep_expired_invitations

logger = logging.getLogger(__name__)


def run_expiry_sweep():
    """Scheduled job: expire stale invitations."""
    close_old_connections()
    try:
        expired = sweep_expired_invitations()
        logger.info(f"Scheduled expiry sweep finished, {expired} invitations expired")
        return expired
    except ConsultationError as e:
        # StorageError and friends: the next run is the retry.
        logger.error(f"Scheduled expiry sweep failed: {e.message}")
        return 0
    finally:
        close_old_connections()


def run_automated_matching():
    """Scheduled job: invite consultants for pending requests."""
    close_old_connections()
    try:
        created = match_pending_requests()
        logger.info(f"Automated matching finished, {created} invitations sent")
        return created
    except ConsultationError as e:
        logger.error(f"Automated matching failed: {e.message}")
        return 0
    finally:
        close_old_connections()


def setup_scheduler(scheduler=None):
    """
    Register the recurring jobs on a scheduler.

    Each job runs at most once at a time and late runs are coalesced, so a
    slow sweep never overlaps with the next one.
    """
    scheduler = scheduler or BlockingScheduler(timezone='UTC')

    sweep_minutes = get_setting('SWEEP_INTERVAL_MINUTES')
    scheduler.add_job(
        run_expiry_sweep,
        IntervalTrigger(minutes=sweep_minutes),
        id='expire_invitations',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=sweep_minutes * 60,
    )

    match_minutes = get_setting('AUTO_MATCH_INTERVAL_MINUTES')
    if match_minutes:
        scheduler.add_job(
            run_automated_matching,
            IntervalTrigger(minutes=match_minutes),
            id='match_pending_requests',
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=match_minutes * 60,
        )

    logger.info(
        f"Scheduler configured: expiry sweep every {sweep_minutes} min, "
        f"automated matching every {match_minutes or 'never'} min"
    )
    return scheduler
