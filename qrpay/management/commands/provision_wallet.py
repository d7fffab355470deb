from django.core.management.base import BaseCommand, CommandError

from qrpay.exceptions import QRPayError
from qrpay.models import Merchant
from qrpay.wallets import provision_wallet


class Command(BaseCommand):
    help = 'Generate and store an encrypted settlement wallet for a merchant.'

    def add_arguments(self, parser):
        parser.add_argument('merchant_id', type=int)
        parser.add_argument('--rotate', action='store_true',
                            help='Replace an existing wallet.')

    def handle(self, *args, **options):
        try:
            merchant = Merchant.objects.get(pk=options['merchant_id'])
        except Merchant.DoesNotExist as exc:
            raise CommandError(f"Merchant not found: {options['merchant_id']}") from exc

        try:
            wallet = provision_wallet(merchant, rotate=options['rotate'])
        except QRPayError as exc:
            raise CommandError(exc.message) from exc

        self.stdout.write(self.style.SUCCESS(
            f'Wallet {wallet.address} assigned to merchant {merchant.pk}'))
