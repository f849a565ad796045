import logging

from django.core.management.base import BaseCommand

from core.scheduler import run_automated_matching, run_expiry_sweep, setup_scheduler

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Runs the invitation expiry sweep and automated matching on a recurring schedule.'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once',
            action='store_true',
            help='Run every job once and exit instead of starting the scheduler.',
        )

    def handle(self, *args, **options):
        if options['once']:
            expired = run_expiry_sweep()
            created = run_automated_matching()
            self.stdout.write(self.style.SUCCESS(
                f'Expired {expired} invitations, sent {created} invitations.'
            ))
            return

        scheduler = setup_scheduler()
        self.stdout.write('Starting scheduler. Press Ctrl+C to stop.')
        try:
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            scheduler.shutdown(wait=False)
            self.stdout.write(self.style.SUCCESS('Scheduler stopped.'))
