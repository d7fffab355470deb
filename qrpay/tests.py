import json
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.core.management import call_command
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone

from qrpay import codec, services
from qrpay.engine import SettlementEngine
from qrpay.exceptions import AlreadyFinalizedError, SessionNotFoundError, ValidationError
from qrpay.models import Merchant, PaymentSequence, PaymentSession, PriceRecord
from qrpay.networks import Network, get_network_config
from qrpay.pricing import PriceCache, PriceService
from qrpay.repositories import (
    DjangoMerchantRepository,
    DjangoPriceHistoryRepository,
    DjangoSessionRepository,
)
from qrpay.test_engine import TX_HASH, FakeChainHandler
from qrpay.test_pricing import FakeOracle
from qrpay.wallets import WalletCipher, merchant_private_key, provision_wallet


MERCHANT_ADDRESS = '0x' + 'b' * 40


class QRPayViewTests(TestCase):
    def setUp(self) -> None:
        self.merchant = Merchant.objects.create(
            name='Almacen Central',
            email='almacen@example.com',
            wallet_address=MERCHANT_ADDRESS,
        )
        self.handler = FakeChainHandler()
        self.prices = PriceService(
            oracles={Network.POLYGON: FakeOracle()},
            cache=PriceCache(),
            history=DjangoPriceHistoryRepository(),
        )
        self.engine = SettlementEngine(
            sessions=DjangoSessionRepository(),
            merchants=DjangoMerchantRepository(),
            handlers={Network.POLYGON: self.handler},
            prices=self.prices,
        )

        for target, value in (
            ('qrpay.views.get_settlement_engine', self.engine),
            ('qrpay.views.get_price_service', self.prices),
        ):
            patcher = patch(target, return_value=value)
            patcher.start()
            self.addCleanup(patcher.stop)

    def _post(self, name, payload):
        return self.client.post(
            reverse(name),
            data=json.dumps(payload),
            content_type='application/json',
        )

    def _create(self, amount=1000):
        return self._post('qrpay:create-payment', {
            'merchantId': self.merchant.pk,
            'amountARS': amount,
            'concept': 'Yerba y facturas',
            'network': 'polygon',
        })

    def test_create_payment(self):
        response = self._create()

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body['success'])
        self.assertEqual(body['paymentData']['paymentId'], 'payment_1')
        self.assertEqual(body['paymentData']['status'], 'PENDING')
        self.assertEqual(body['paymentData']['merchantName'], 'Almacen Central')
        self.assertEqual(body['paymentData']['cryptoAmountWithMargin'], '0.784000')
        self.assertTrue(body['qrCodeImage'].startswith('data:image/png;base64,'))
        self.assertEqual(codec.decode(body['tlvData']).reference, 'payment_1')

        session = PaymentSession.objects.get(reference='payment_1')
        self.assertEqual(session.amount, Decimal('1000'))
        self.assertEqual(session.concept, 'Yerba y facturas')
        self.assertEqual(session.quote_source, 'POLYGON_ORACLE')

    def test_create_payment_rejects_missing_fields(self):
        response = self._post('qrpay:create-payment', {'amountARS': 1000})

        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertFalse(body['success'])
        self.assertEqual(body['code'], 'validation_error')
        self.assertIn('merchantId', body['error'])

    def test_create_payment_unknown_merchant(self):
        response = self._post('qrpay:create-payment', {
            'merchantId': 9999,
            'amountARS': 1000,
        })

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['code'], 'merchant_not_found')

    def test_create_payment_unsupported_network(self):
        response = self._post('qrpay:create-payment', {
            'merchantId': self.merchant.pk,
            'amountARS': 1000,
            'network': 'optimism',
        })

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'validation_error')

    def test_scan_settles_payment(self):
        wire = self._create().json()['tlvData']

        response = self._post('qrpay:scan-payment', {'qrData': wire})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body['success'])
        self.assertEqual(body['paymentData']['status'], 'PAID')
        self.assertEqual(body['paymentData']['blockchainTransaction']['hash'], TX_HASH)

        session = PaymentSession.objects.get(reference='payment_1')
        self.assertEqual(session.status, PaymentSession.Status.PAID)
        self.assertEqual(session.blockchain_tx_hash, TX_HASH)
        self.assertIsNotNone(session.paid_at)

    def test_second_scan_is_rejected(self):
        wire = self._create().json()['tlvData']
        self._post('qrpay:scan-payment', {'qrData': wire})

        response = self._post('qrpay:scan-payment', {'qrData': wire})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['code'], 'already_finalized')
        self.assertEqual(len(self.handler.calls), 1)

    def test_scan_malformed_code(self):
        response = self._post('qrpay:scan-payment', {'qrData': '26xxnot-a-code'})

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'malformed_code')

    def test_scan_expired_session(self):
        wire = self._create().json()['tlvData']
        PaymentSession.objects.filter(reference='payment_1').update(
            expires_at=timezone.now() - timedelta(minutes=1))

        response = self._post('qrpay:scan-payment', {'qrData': wire})

        self.assertEqual(response.status_code, 410)
        self.assertEqual(response.json()['code'], 'expired')
        self.assertEqual(
            PaymentSession.objects.get(reference='payment_1').status,
            PaymentSession.Status.EXPIRED,
        )
        self.assertEqual(self.handler.calls, [])

    def test_payment_status(self):
        self._create()

        response = self.client.get(
            reverse('qrpay:payment-status', kwargs={'reference': 'payment_1'}))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['paymentData']['amountARS'], '1000.00')

        missing = self.client.get(
            reverse('qrpay:payment-status', kwargs={'reference': 'payment_77'}))
        self.assertEqual(missing.status_code, 404)

    def test_merchant_payments_and_stats(self):
        first = self._create(1000).json()['tlvData']
        self._create(250)
        self._post('qrpay:scan-payment', {'qrData': first})

        payments = self.client.get(
            reverse('qrpay:merchant-payments', kwargs={'merchant_id': self.merchant.pk}))
        stats = self.client.get(
            reverse('qrpay:merchant-stats', kwargs={'merchant_id': self.merchant.pk}))

        self.assertEqual(len(payments.json()['payments']), 2)
        body = stats.json()['stats']
        self.assertEqual(body['totalPayments'], 2)
        self.assertEqual(body['completedPayments'], 1)
        self.assertEqual(Decimal(body['totalARS']), Decimal('1250'))
        self.assertEqual(body['successRate'], 50.0)

    def test_networks(self):
        response = self.client.get(reverse('qrpay:networks'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            [n['network'] for n in response.json()['networks']], ['polygon'])

    def test_current_price_and_history(self):
        current = self.client.get(reverse('qrpay:current-price'))

        self.assertEqual(current.status_code, 200)
        self.assertEqual(Decimal(current.json()['price']), Decimal('1250'))
        self.assertEqual(PriceRecord.objects.count(), 1)

        history = self.client.get(reverse('qrpay:price-history'), {'hours': 1})
        self.assertEqual(len(history.json()['prices']), 1)

        unsupported = self.client.get(reverse('qrpay:current-price'), {'currency': 'BTC'})
        self.assertEqual(unsupported.status_code, 400)

    def test_oracle_status_reports_errors(self):
        response = self.client.get(
            reverse('qrpay:oracle-status', kwargs={'network': 'polygon'}))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], 'ERROR')

    def test_gateway_info(self):
        response = self.client.get(
            reverse('qrpay:gateway-info', kwargs={'network': 'polygon'}))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['network'], 'polygon')
        self.assertEqual(body['tokenAddress'], self.handler.token_address)
        self.assertEqual(body['admin'], '0x' + 'c' * 40)

    def test_gateway_info_for_disabled_network(self):
        response = self.client.get(
            reverse('qrpay:gateway-info', kwargs={'network': 'optimism'}))

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['code'], 'validation_error')

    def test_home(self):
        response = self.client.get(reverse('home'))

        self.assertEqual(response.status_code, 200)
        self.assertContains(response, 'POST /payments/scan')

    def test_health(self):
        response = self.client.get(reverse('health'))

        self.assertEqual(response.json()['status'], 'ok')


class DjangoSessionRepositoryTests(TestCase):
    def setUp(self) -> None:
        self.repository = DjangoSessionRepository()
        self.merchant = Merchant.objects.create(name='Ferreteria', wallet_address=MERCHANT_ADDRESS)

    def _builder(self, amount=Decimal('100')):
        def build(reference, sequence):
            now = timezone.now()
            return PaymentSession(
                reference=reference,
                sequence=sequence,
                merchant=self.merchant,
                merchant_address=MERCHANT_ADDRESS,
                amount=amount,
                network='polygon',
                qr_payload=codec.encode(MERCHANT_ADDRESS, amount, reference),
                expires_at=now + timedelta(minutes=30),
            )
        return build

    def test_create_allocates_sequential_references(self):
        first = self.repository.create(self._builder())
        second = self.repository.create(self._builder())

        self.assertEqual((first.reference, second.reference), ('payment_1', 'payment_2'))
        self.assertEqual(PaymentSequence.objects.get(pk=1).value, 2)

    def test_counter_seeds_from_existing_sessions(self):
        self.repository.create(self._builder())
        PaymentSequence.objects.all().delete()

        session = self.repository.create(self._builder())

        self.assertEqual(session.reference, 'payment_2')

    def test_failed_build_consumes_nothing(self):
        def broken(reference, sequence):
            raise ValidationError('boom')

        with self.assertRaises(ValidationError):
            self.repository.create(broken)

        self.assertEqual(self.repository.create(self._builder()).reference, 'payment_1')
        self.assertEqual(PaymentSession.objects.count(), 1)

    def test_update_status_only_from_pending(self):
        session = self.repository.create(self._builder())

        paid = self.repository.update_status(
            session.reference, PaymentSession.Status.PAID, blockchain_tx_hash=TX_HASH)
        self.assertEqual(paid.status, PaymentSession.Status.PAID)
        self.assertEqual(paid.blockchain_tx_hash, TX_HASH)

        with self.assertRaises(AlreadyFinalizedError):
            self.repository.update_status(session.reference, PaymentSession.Status.EXPIRED)
        self.assertEqual(
            PaymentSession.objects.get(pk=session.pk).status, PaymentSession.Status.PAID)

    def test_attach_transaction_ignores_status(self):
        session = self.repository.create(self._builder())
        self.repository.update_status(session.reference, PaymentSession.Status.EXPIRED)

        updated = self.repository.attach_transaction(
            session.reference, blockchain_tx_hash=TX_HASH, block_number=42)

        self.assertEqual(updated.status, PaymentSession.Status.EXPIRED)
        self.assertEqual(updated.blockchain_tx_hash, TX_HASH)
        self.assertEqual(updated.block_number, 42)

        with self.assertRaises(SessionNotFoundError):
            self.repository.attach_transaction('payment_9', blockchain_tx_hash=TX_HASH)

    def test_update_status_unknown_reference(self):
        with self.assertRaises(SessionNotFoundError):
            self.repository.update_status('payment_5', PaymentSession.Status.PAID)

    def test_merchant_totals_for_merchant_without_payments(self):
        totals = self.repository.merchant_totals(self.merchant.pk)

        self.assertEqual(totals['total_payments'], 0)
        self.assertEqual(totals['total_amount'], Decimal('0'))


@override_settings(QRPAY_WALLET_ENCRYPTION_KEY='test-wallet-passphrase')
class WalletProvisioningTests(TestCase):
    def test_provision_stores_encrypted_key(self):
        merchant = Merchant.objects.create(name='Libreria')

        wallet = provision_wallet(merchant)

        merchant.refresh_from_db()
        self.assertEqual(merchant.wallet_address, wallet.address)
        self.assertNotEqual(merchant.encrypted_private_key, wallet.private_key)
        self.assertEqual(merchant_private_key(merchant), wallet.private_key)

    def test_existing_wallet_requires_rotate(self):
        merchant = Merchant.objects.create(name='Libreria', wallet_address=MERCHANT_ADDRESS)

        with self.assertRaises(ValidationError):
            provision_wallet(merchant)

        wallet = provision_wallet(merchant, cipher=WalletCipher('other'), rotate=True)
        merchant.refresh_from_db()
        self.assertEqual(merchant.wallet_address, wallet.address)

    def test_provision_wallet_command(self):
        merchant = Merchant.objects.create(name='Verduleria')
        out = StringIO()

        call_command('provision_wallet', merchant.pk, stdout=out)

        merchant.refresh_from_db()
        self.assertTrue(merchant.has_wallet)
        self.assertIn(merchant.wallet_address, out.getvalue())


class ConfigurationTests(TestCase):
    def tearDown(self) -> None:
        services.reset()

    @override_settings(QRPAY_NETWORKS={'polygon': {'rpc_url': 'http://node:8545', 'gas_limit': None}})
    def test_network_config_merges_defaults(self):
        config = get_network_config('polygon')

        self.assertEqual(config['rpc_url'], 'http://node:8545')
        self.assertEqual(config['chain_id'], 137)
        self.assertEqual(config['gas_limit'], 250000)
        self.assertEqual(config['network'], 'polygon')

    @override_settings(QRPAY_SESSION_TTL_MINUTES=5, QRPAY_DEFAULT_RATE='1100')
    def test_engine_built_from_settings(self):
        services.reset()

        engine = services.get_settlement_engine()

        self.assertEqual(engine.session_ttl, timedelta(minutes=5))
        self.assertEqual(engine.prices.default_rate, Decimal('1100'))
        self.assertEqual(sorted(engine.supported_networks()), ['optimism', 'polygon'])
        self.assertIs(services.get_settlement_engine(), engine)

    def test_refresh_prices_once(self):
        prices = PriceService(
            oracles={Network.POLYGON: FakeOracle()},
            cache=PriceCache(),
            history=DjangoPriceHistoryRepository(),
        )
        out = StringIO()

        with patch('qrpay.management.commands.refresh_prices.get_price_service',
                   return_value=prices):
            call_command('refresh_prices', '--once', stdout=out)

        self.assertEqual(PriceRecord.objects.count(), 1)
        self.assertIn('refreshed', out.getvalue())
