from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.management import CommandError, call_command
from django.test import TestCase
from django.utils import timezone

from core.models import (
    Consultant,
    ConsultantInvitation,
    Consultation,
    ConsultationRequest,
    User,
)
from core.services import consultations, ledger


class CommandTestData:

    def make_requester(self, username, tokens=50):
        user = User.objects.create_user(
            username=username, email=f'{username}@test.com', password='password', user_type='client'
        )
        ledger.credit(user, tokens)
        return user

    def make_consultant(self, username, tags=('Python',)):
        user = User.objects.create_user(
            username=username, email=f'{username}@test.com', password='password', user_type='consultant'
        )
        return Consultant.objects.create(
            user=user,
            specializations=list(tags),
            status=Consultant.STATUS_APPROVED,
            is_available=True,
        )


class ExpireInvitationsCommandTests(CommandTestData, TestCase):
    def setUp(self):
        self.requester = self.make_requester('requester1')
        self.consultant = self.make_consultant('consultant1')
        two_days_ago = timezone.now() - timedelta(days=2)
        self.request = consultations.submit_request(
            self.requester, 'Celery workers stop consuming after a broker restart.', ['Python'], now=two_days_ago
        )
        self.invitation_ids = consultations.match_and_invite(self.request.pk, now=two_days_ago)

    def test_expires_stale_invitations(self):
        out = StringIO()
        call_command('expire_invitations', stdout=out)

        self.request.refresh_from_db()
        self.assertEqual(
            ConsultantInvitation.objects.get(pk=self.invitation_ids[0]).status,
            ConsultantInvitation.STATUS_EXPIRED,
        )
        self.assertEqual(self.request.status, ConsultationRequest.STATUS_PENDING)
        self.assertIn('Expired 1 invitations.', out.getvalue())

    def test_dry_run_changes_nothing(self):
        out = StringIO()
        call_command('expire_invitations', '--dry-run', stdout=out)

        self.assertTrue(ConsultantInvitation.objects.get(pk=self.invitation_ids[0]).is_pending())
        self.assertIn('[DRY-RUN]', out.getvalue())
        self.assertIn('1 invitations would expire', out.getvalue())


class ReconcileLedgerCommandTests(CommandTestData, TestCase):
    def setUp(self):
        self.clean_user = self.make_requester('clean', tokens=20)
        self.drifted_user = self.make_requester('drifted', tokens=30)
        ledger.debit(self.drifted_user, 10)
        User.objects.filter(pk=self.drifted_user.pk).update(tokens_balance=99)

    def test_reconciles_drifted_balance(self):
        out = StringIO()
        call_command('reconcile_ledger', stdout=out)

        self.drifted_user.refresh_from_db()
        self.clean_user.refresh_from_db()
        self.assertEqual(self.drifted_user.tokens_balance, 20)
        self.assertEqual(self.clean_user.tokens_balance, 20)
        self.assertIn('1 inconsistent', out.getvalue())
        self.assertIn('Ledger reconciliation completed successfully.', out.getvalue())

    def test_dry_run(self):
        out = StringIO()
        call_command('reconcile_ledger', '--dry-run', stdout=out)

        self.drifted_user.refresh_from_db()
        self.assertEqual(self.drifted_user.tokens_balance, 99)
        self.assertIn('[DRY-RUN] User', out.getvalue())

    def test_single_user(self):
        out = StringIO()
        call_command('reconcile_ledger', '--user-id', str(self.clean_user.pk), stdout=out)

        self.drifted_user.refresh_from_db()
        self.assertEqual(self.drifted_user.tokens_balance, 99)
        self.assertIn('Processed 1 users total, 0 inconsistent.', out.getvalue())

    def test_unknown_user(self):
        with self.assertRaises(CommandError):
            call_command('reconcile_ledger', '--user-id', '987654', stdout=StringIO())


class RecalculateConsultantStatsCommandTests(CommandTestData, TestCase):
    def setUp(self):
        self.requester = self.make_requester('requester1')
        self.consultant1 = self.make_consultant('consultant1')
        self.consultant2 = self.make_consultant('consultant2')

        for rating in (5, 4):
            consultation_request = consultations.submit_request(
                self.requester, 'Pandas merge produces duplicated rows unexpectedly.', ['Python']
            )
            Consultation.objects.create(
                consultation_request=consultation_request,
                requester=self.requester,
                consultant=self.consultant1,
                status=Consultation.STATUS_COMPLETED,
                scheduled_at=timezone.now(),
                duration_minutes=15,
                user_rating=rating,
            )

        # Corrupt the caches
        Consultant.objects.filter(pk=self.consultant1.pk).update(
            rating_average=Decimal('1.00'), completed_sessions=0
        )
        Consultant.objects.filter(pk=self.consultant2.pk).update(
            rating_average=Decimal('3.00'), completed_sessions=7
        )

    def test_recalculate_stats(self):
        out = StringIO()
        call_command('recalculate_consultant_stats', stdout=out)

        self.consultant1.refresh_from_db()
        self.consultant2.refresh_from_db()
        self.assertEqual(self.consultant1.rating_average, Decimal('4.50'))
        self.assertEqual(self.consultant1.completed_sessions, 2)
        self.assertEqual(self.consultant2.rating_average, Decimal('0.00'))
        self.assertEqual(self.consultant2.completed_sessions, 0)
        self.assertIn('Recalculation completed successfully.', out.getvalue())

    def test_dry_run(self):
        out = StringIO()
        call_command('recalculate_consultant_stats', '--dry-run', stdout=out)

        self.consultant1.refresh_from_db()
        self.assertEqual(self.consultant1.rating_average, Decimal('1.00'))
        self.assertIn('[DRY-RUN] Consultant', out.getvalue())
        self.assertIn('Dry run completed. No changes saved.', out.getvalue())

    def test_batch_size(self):
        out = StringIO()
        call_command('recalculate_consultant_stats', '--batch-size', '1', stdout=out)

        self.consultant1.refresh_from_db()
        self.assertEqual(self.consultant1.completed_sessions, 2)


class RunSchedulerCommandTests(CommandTestData, TestCase):
    # The jobs recycle connections between runs, which would break the test transaction.
    @patch('core.scheduler.close_old_connections')
    def test_once_runs_both_jobs(self, mock_close):
        requester = self.make_requester('requester1')
        self.make_consultant('consultant1')
        consultation_request = consultations.submit_request(
            requester, 'FastAPI dependency injection behaves oddly in tests.', ['Python']
        )

        out = StringIO()
        call_command('run_scheduler', '--once', stdout=out)

        consultation_request.refresh_from_db()
        self.assertEqual(consultation_request.status, ConsultationRequest.STATUS_INVITED)
        self.assertIn('Expired 0 invitations, sent 1 invitations.', out.getvalue())
