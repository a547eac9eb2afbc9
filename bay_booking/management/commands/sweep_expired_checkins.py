import logging
import time

from django.conf import settings
from django.core.management.base import BaseCommand

from bay_booking.engine import sweep_expired_checkins

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Complete checked-in bookings whose end time has passed (run from cron every minute)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--loop',
            action='store_true',
            help='Keep running and sweep every --interval seconds instead of once',
        )
        parser.add_argument(
            '--interval',
            type=int,
            default=settings.SWEEP_INTERVAL_SECONDS,
            help='Seconds between sweeps when --loop is given',
        )

    def handle(self, *args, **options):
        if not options['loop']:
            completed = sweep_expired_checkins()
            self.stdout.write(self.style.SUCCESS(f'Auto-completed {completed} booking(s)'))
            return

        interval = max(options['interval'], 1)
        logger.info(f'Starting expiry sweep loop every {interval}s')
        try:
            while True:
                completed = sweep_expired_checkins()
                if completed:
                    self.stdout.write(f'Auto-completed {completed} booking(s)')
                time.sleep(interval)
        except KeyboardInterrupt:
            logger.info('Expiry sweep loop stopped')
