"""
Tests for the recurring job setup.

Tests cover:
- Both jobs registered with their configured intervals
- Automated matching can be switched off
- Job failures are logged and reported as zero work done
"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from core import scheduler as jobs
from core.exceptions import StorageError


@pytest.fixture
def background_scheduler():
    scheduler = BackgroundScheduler(timezone='UTC')
    yield scheduler
    if scheduler.running:
        scheduler.shutdown(wait=False)


class TestSetupScheduler:

    def test_registers_sweep_and_matching_jobs(self, settings, background_scheduler):
        settings.CONSULTATION = {'SWEEP_INTERVAL_MINUTES': 15, 'AUTO_MATCH_INTERVAL_MINUTES': 2}

        scheduler = jobs.setup_scheduler(background_scheduler)

        registered = {job.id: job for job in scheduler.get_jobs()}
        assert set(registered) == {'expire_invitations', 'match_pending_requests'}
        assert registered['expire_invitations'].trigger.interval == timedelta(minutes=15)
        assert registered['match_pending_requests'].trigger.interval == timedelta(minutes=2)
        assert registered['expire_invitations'].max_instances == 1
        assert registered['expire_invitations'].coalesce is True

    def test_matching_job_can_be_disabled(self, settings, background_scheduler):
        settings.CONSULTATION = {'AUTO_MATCH_INTERVAL_MINUTES': 0}

        scheduler = jobs.setup_scheduler(background_scheduler)

        assert [job.id for job in scheduler.get_jobs()] == ['expire_invitations']


@patch('core.scheduler.close_old_connections')
class TestJobs:

    def test_sweep_job_reports_expired_count(self, mock_close):
        with patch('core.scheduler.sweep_expired_invitations', return_value=4) as sweep:
            assert jobs.run_expiry_sweep() == 4
        sweep.assert_called_once_with()
        assert mock_close.call_count == 2

    def test_sweep_job_survives_storage_errors(self, mock_close):
        failure = StorageError('Could not complete invitation expiry. Please try again.')
        with patch('core.scheduler.sweep_expired_invitations', side_effect=failure), \
                patch.object(jobs.logger, 'error') as log_error:
            assert jobs.run_expiry_sweep() == 0
        assert 'Scheduled expiry sweep failed' in log_error.call_args[0][0]

    def test_matching_job_reports_invitation_count(self, mock_close):
        with patch('core.scheduler.match_pending_requests', return_value=3):
            assert jobs.run_automated_matching() == 3

    def test_matching_job_survives_storage_errors(self, mock_close):
        with patch('core.scheduler.match_pending_requests', side_effect=StorageError('down')), \
                patch.object(jobs.logger, 'error') as log_error:
            assert jobs.run_automated_matching() == 0
        assert 'Automated matching failed' in log_error.call_args[0][0]
