import unittest
from decimal import Decimal
from unittest.mock import MagicMock, patch

from django.utils import timezone

from qrpay.exceptions import OracleUnavailableError, ValidationError
from qrpay.networks import Network
from qrpay.oracle import FxOracleClient, OracleQuote
from qrpay.pricing import (
    DEFAULT_SOURCE,
    PriceCache,
    PriceRefresher,
    PriceService,
)
from qrpay.repositories import InMemoryPriceHistoryRepository


TOKEN = '0xC37c16139a8eFC8f4c2B7CAA5C607514C825FC4C'


class FakeOracle(FxOracleClient):
    """Oracle double answering with a fixed ARS price per token."""

    def __init__(self, network='polygon', rate=Decimal('1250')):
        super().__init__({
            'network': network,
            'oracle_address': '0x2eF8D1930b1d20504445943A18d6F70e7ce6ABbe',
            'token_address': TOKEN,
        })
        self.rate = rate
        self.calls = 0

    def quote(self, fiat_amount, token_address=None):
        self.calls += 1
        fiat = Decimal(str(fiat_amount))
        units = int(fiat * 10 ** 6 / self.rate)
        return OracleQuote(
            fiat_amount=fiat,
            token_amount=units / 10 ** 6,
            token_amount_units=units,
            rate=self.rate,
            token_address=TOKEN,
            oracle_address=self.oracle_address,
            timestamp=timezone.now(),
            source=self.source,
        )


class FailingOracle(FakeOracle):
    def quote(self, fiat_amount, token_address=None):
        self.calls += 1
        raise OracleUnavailableError('polygon oracle is paused.')


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class PriceCacheTests(unittest.TestCase):
    def test_entry_expires_after_ttl(self):
        clock = FakeClock()
        cache = PriceCache(ttl_seconds=30, clock=clock)
        cache.set('USDC', 'ARS', 'snapshot')

        clock.now += 29
        self.assertEqual(cache.get('USDC', 'ARS'), 'snapshot')

        clock.now += 1
        self.assertIsNone(cache.get('USDC', 'ARS'))

    def test_pairs_are_independent(self):
        cache = PriceCache()
        cache.set('USDC', 'ARS', 'usdc')

        self.assertIsNone(cache.get('USDT', 'ARS'))
        cache.clear()
        self.assertIsNone(cache.get('USDC', 'ARS'))


class PriceServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.oracle = FakeOracle()
        self.history = InMemoryPriceHistoryRepository()
        self.prices = PriceService(
            oracles={Network.POLYGON: self.oracle},
            cache=PriceCache(ttl_seconds=30, clock=self.clock),
            history=self.history,
        )

    def test_cached_price_skips_oracle(self):
        first = self.prices.get_current_price('USDC', 'ARS')
        second = self.prices.get_current_price('USDC', 'ARS')

        self.assertEqual(first.price, Decimal('1250'))
        self.assertIs(first, second)
        self.assertEqual(self.oracle.calls, 1)
        self.assertEqual(len(self.history.records), 1)

    def test_expired_cache_queries_oracle_again(self):
        self.prices.get_current_price('USDC', 'ARS')
        self.clock.now += 31

        self.prices.get_current_price('USDC', 'ARS')

        self.assertEqual(self.oracle.calls, 2)

    def test_unsupported_pair(self):
        with self.assertRaises(ValidationError):
            self.prices.get_current_price('BTC', 'ARS')
        with self.assertRaises(ValidationError):
            self.prices.get_current_price('USDC', 'USD')

    def test_invalid_oracle_rate_is_not_cached(self):
        self.oracle.rate = Decimal('0')

        snapshot = self.prices.get_current_price('USDC', 'ARS')

        self.assertEqual(snapshot.source, DEFAULT_SOURCE)
        self.assertIsNone(self.prices.cache.get('USDC', 'ARS'))
        self.assertEqual(self.history.records, [])

    def test_convert_uses_oracle_quote(self):
        quote = self.prices.convert_fiat_to_crypto(Decimal('1000'), Network.POLYGON)

        self.assertEqual(quote.crypto_amount, Decimal('0.8'))
        self.assertEqual(quote.exchange_rate, Decimal('1250'))
        self.assertEqual(quote.crypto_amount_with_margin, Decimal('0.784'))
        self.assertEqual(quote.source, 'POLYGON_ORACLE')
        self.assertFalse(quote.is_fallback)

    def test_convert_falls_back_to_default_rate(self):
        prices = PriceService(
            oracles={Network.POLYGON: FailingOracle()},
            cache=PriceCache(),
        )

        quote = prices.convert_fiat_to_crypto(1000, 'polygon')

        self.assertTrue(quote.is_fallback)
        self.assertEqual(quote.source, DEFAULT_SOURCE)
        self.assertEqual(quote.crypto_amount, Decimal('1'))
        self.assertEqual(quote.crypto_amount_with_margin, Decimal('0.98'))
        self.assertGreater(quote.crypto_amount, 0)

    def test_convert_without_configured_oracle_falls_back(self):
        quote = self.prices.convert_fiat_to_crypto(500, Network.OPTIMISM)

        self.assertEqual(quote.source, DEFAULT_SOURCE)
        self.assertEqual(quote.crypto_amount, Decimal('0.5'))

    def test_history_persistence_failure_is_not_raised(self):
        history = MagicMock()
        history.record.side_effect = RuntimeError('db down')
        prices = PriceService(
            oracles={Network.POLYGON: FakeOracle()},
            cache=PriceCache(),
            history=history,
        )

        snapshot = prices.get_current_price('USDC', 'ARS')

        self.assertEqual(snapshot.price, Decimal('1250'))

    def test_rate_with_margin(self):
        result = self.prices.rate_with_margin('USDC')

        self.assertEqual(result['base_rate'], Decimal('1250'))
        self.assertEqual(result['rate_with_margin'], Decimal('1275'))

    def test_validate_rate_tolerance(self):
        self.assertTrue(self.prices.validate_rate(Decimal('1200'))['is_valid'])
        self.assertFalse(self.prices.validate_rate(Decimal('1000'))['is_valid'])

    def test_price_history_reads_recent_records(self):
        self.prices.refresh()
        self.prices.refresh()

        records = self.prices.price_history('USDC', 'ARS', hours=24)

        self.assertEqual(len(records), 2)
        self.assertEqual(records[0].price, Decimal('1250'))


class PriceRefresherTests(unittest.TestCase):
    def test_tick_contains_oracle_failures(self):
        prices = PriceService(
            oracles={Network.POLYGON: FailingOracle()},
            cache=PriceCache(),
        )
        refresher = PriceRefresher(prices, interval_seconds=30)

        self.assertFalse(refresher.tick())

    def test_tick_refreshes_bypassing_cache(self):
        oracle = FakeOracle()
        prices = PriceService(oracles={Network.POLYGON: oracle}, cache=PriceCache())
        refresher = PriceRefresher(prices, interval_seconds=30)

        self.assertTrue(refresher.tick())
        self.assertTrue(refresher.tick())
        self.assertEqual(oracle.calls, 2)

    @patch('qrpay.pricing.close_old_connections')
    def test_start_and_stop(self, _close_connections):
        prices = PriceService(oracles={Network.POLYGON: FakeOracle()}, cache=PriceCache())
        refresher = PriceRefresher(prices, interval_seconds=60)

        refresher.start()
        self.assertTrue(refresher.is_running)
        refresher.stop(timeout=5)

        self.assertFalse(refresher.is_running)


if __name__ == '__main__':
    unittest.main()
