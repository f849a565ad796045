from django.core.management.base import BaseCommand

from core.services.expiry import stale_invitations, sweep_expired_invitations


class Command(BaseCommand):
    help = 'Expires pending invitations past their deadline and returns orphaned requests to pending.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Report stale invitations without changing them.',
        )

    def handle(self, *args, **options):
        if options['dry_run']:
            stale = stale_invitations()
            for invitation in stale.order_by('id'):
                self.stdout.write(
                    f'  [DRY-RUN] Invitation {invitation.id} (request {invitation.consultation_request_id}) '
                    f'expired at {invitation.expires_at.isoformat()}'
                )
            self.stdout.write(self.style.SUCCESS(
                f'Dry run completed. {stale.count()} invitations would expire.'
            ))
            return

        expired = sweep_expired_invitations()
        self.stdout.write(self.style.SUCCESS(f'Expired {expired} invitations.'))
