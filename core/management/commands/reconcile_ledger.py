from django.core.management.base import BaseCommand, CommandError

from core.models import User
from core.services import ledger


class Command(BaseCommand):
    help = 'Replays token transaction logs and repairs cached balances that drifted from them.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Report inconsistencies without saving changes to the database.',
        )
        parser.add_argument(
            '--user-id',
            type=int,
            help='Check a single user.',
        )
        parser.add_argument(
            '--batch-size',
            type=int,
            default=1000,
            help='Batch size for iterating over users.',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        users = User.objects.order_by('id')
        if options['user_id'] is not None:
            users = users.filter(pk=options['user_id'])
            if not users.exists():
                raise CommandError(f'User {options["user_id"]} does not exist.')

        checked = 0
        inconsistent = 0
        for user_id in users.values_list('id', flat=True).iterator(chunk_size=options['batch_size']):
            result = ledger.replay(user_id) if dry_run else ledger.reconcile(user_id)
            checked += 1

            if not result.is_consistent:
                inconsistent += 1
                prefix = '[DRY-RUN] ' if dry_run else ''
                self.stdout.write(
                    f'  {prefix}User {user_id}: cached {result.cached_balance}, '
                    f'replayed {result.replayed_balance}, '
                    f'{len(result.mismatched_transactions)} entries with wrong balance_after'
                )

            if checked % 100 == 0:
                self.stdout.write(f'Processed {checked} users...')

        self.stdout.write(f'Processed {checked} users total, {inconsistent} inconsistent.')
        if dry_run:
            self.stdout.write(self.style.SUCCESS('Dry run completed. No changes saved.'))
        else:
            self.stdout.write(self.style.SUCCESS('Ledger reconciliation completed successfully.'))
