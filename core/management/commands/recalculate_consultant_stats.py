from django.core.management.base import BaseCommand

from core.models import Consultant
from core.signals import consultant_stats


class Command(BaseCommand):
    help = 'Recalculates consultant rating averages and completed session counts from sessions.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Run the command without saving changes to the database.',
        )
        parser.add_argument(
            '--batch-size',
            type=int,
            default=1000,
            help='Batch size for bulk processing.',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        batch_size = options['batch_size']

        self.stdout.write('Recalculating consultant statistics...')
        updates = []
        count = 0

        for consultant in Consultant.objects.all().iterator(chunk_size=batch_size):
            new_avg, new_completed = consultant_stats(consultant.pk)

            if consultant.rating_average != new_avg or consultant.completed_sessions != new_completed:
                if dry_run:
                    self.stdout.write(
                        f'  [DRY-RUN] Consultant {consultant.id}: '
                        f'Rating {consultant.rating_average} -> {new_avg}, '
                        f'Completed {consultant.completed_sessions} -> {new_completed}'
                    )
                consultant.rating_average = new_avg
                consultant.completed_sessions = new_completed
                updates.append(consultant)

            if len(updates) >= batch_size:
                if not dry_run:
                    Consultant.objects.bulk_update(updates, ['rating_average', 'completed_sessions'])
                updates = []

            count += 1
            if count % 100 == 0:
                self.stdout.write(f'Processed {count} consultants...')

        if updates and not dry_run:
            Consultant.objects.bulk_update(updates, ['rating_average', 'completed_sessions'])

        self.stdout.write(f'Processed {count} consultants total.')
        if dry_run:
            self.stdout.write(self.style.SUCCESS('Dry run completed. No changes saved.'))
        else:
            self.stdout.write(self.style.SUCCESS('Recalculation completed successfully.'))
