import os
import sys

from django.apps import AppConfig
from django.conf import settings


class QRPayConfig(AppConfig):
    name = 'qrpay'
    verbose_name = 'QR payments'
    default_auto_field = 'django.db.models.BigAutoField'

    def ready(self):
        if not getattr(settings, 'QRPAY_PRICE_REFRESH_AUTOSTART', False):
            return
        # Under manage.py only the runserver child process refreshes prices.
        if os.path.basename(sys.argv[0]) == 'manage.py':
            command = sys.argv[1] if len(sys.argv) > 1 else ''
            if command != 'runserver' or os.environ.get('RUN_MAIN') != 'true':
                return

        from .services import start_price_refresher
        start_price_refresher()
