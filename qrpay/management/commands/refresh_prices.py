from django.core.management.base import BaseCommand
from loguru import logger

from qrpay.pricing import PriceRefresher
from qrpay.services import get_price_service


class Command(BaseCommand):
    help = 'Refresh the USDC/ARS oracle price every interval, or once with --once.'

    def add_arguments(self, parser):
        parser.add_argument('--once', action='store_true',
                            help='Refresh a single time and exit.')
        parser.add_argument('--interval', type=float, default=None,
                            help='Seconds between refreshes (defaults to QRPAY_PRICE_REFRESH_SECONDS).')

    def handle(self, *args, **options):
        from django.conf import settings

        interval = options['interval'] or getattr(settings, 'QRPAY_PRICE_REFRESH_SECONDS', 30)
        refresher = PriceRefresher(get_price_service(), interval_seconds=interval)

        if options['once']:
            if not refresher.tick():
                logger.warning('price refresh failed, see previous errors')
                return
            self.stdout.write(self.style.SUCCESS('USDC/ARS price refreshed'))
            return

        try:
            refresher.run_forever()
        except KeyboardInterrupt:
            logger.info('price refresher interrupted')
