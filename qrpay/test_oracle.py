import unittest
from decimal import Decimal
from unittest.mock import MagicMock

from web3 import Web3

from qrpay.exceptions import OracleUnavailableError
from qrpay.oracle import FxOracleClient


ORACLE = '0x2eF8D1930b1d20504445943A18d6F70e7ce6ABbe'
TOKEN = '0xC37c16139a8eFC8f4c2B7CAA5C607514C825FC4C'


def _make_web3(active=True, has_price=True, units=800000, price=1250, last_updated=1714564800):
    web3 = MagicMock()
    functions = web3.eth.contract.return_value.functions
    functions.active.return_value.call.return_value = active
    functions.hasPrice.return_value.call.return_value = has_price
    functions.quote.return_value.call.return_value = units
    functions.priceARS.return_value.call.return_value = price
    functions.lastUpdated.return_value.call.return_value = last_updated
    return web3


class FxOracleClientTests(unittest.TestCase):
    def _client(self, web3):
        return FxOracleClient(
            {
                'network': 'polygon',
                'oracle_address': ORACLE,
                'token_address': TOKEN,
            },
            web3=web3,
        )

    def test_quote_converts_units(self):
        web3 = _make_web3()

        quote = self._client(web3).quote(Decimal('1000'))

        self.assertEqual(quote.token_amount_units, 800000)
        self.assertEqual(quote.token_amount, 0.8)
        self.assertEqual(quote.rate, Decimal('1250'))
        self.assertEqual(quote.source, 'POLYGON_ORACLE')
        self.assertEqual(quote.oracle_address, ORACLE)
        functions = web3.eth.contract.return_value.functions
        functions.quote.assert_called_once_with(Web3.to_checksum_address(TOKEN), 1000)

    def test_inactive_oracle_is_unavailable(self):
        web3 = _make_web3(active=False)

        with self.assertRaises(OracleUnavailableError):
            self._client(web3).quote(1000)
        web3.eth.contract.return_value.functions.quote.assert_not_called()

    def test_missing_price_is_unavailable(self):
        web3 = _make_web3(has_price=False)

        with self.assertRaises(OracleUnavailableError):
            self._client(web3).quote(1000)
        web3.eth.contract.return_value.functions.quote.assert_not_called()

    def test_rpc_failure_is_wrapped(self):
        web3 = _make_web3()
        web3.eth.contract.return_value.functions.active.return_value.call.side_effect = \
            ConnectionError('connection refused')

        with self.assertRaises(OracleUnavailableError) as ctx:
            self._client(web3).quote(1000)
        self.assertIsInstance(ctx.exception.__cause__, ConnectionError)

    def test_missing_rpc_url_is_unavailable(self):
        client = FxOracleClient({'network': 'optimism', 'oracle_address': ORACLE, 'token_address': TOKEN})

        with self.assertRaises(OracleUnavailableError):
            client.quote(1000)

    def test_status_active(self):
        status = self._client(_make_web3()).status()

        self.assertEqual(status['status'], 'ACTIVE')
        self.assertEqual(status['current_rate'], Decimal('1250'))
        self.assertIsNone(status['error'])

    def test_status_reports_errors(self):
        web3 = _make_web3()
        web3.eth.contract.return_value.functions.lastUpdated.return_value.call.side_effect = \
            ConnectionError('timeout')

        status = self._client(web3).status()

        self.assertEqual(status['status'], 'ERROR')
        self.assertFalse(status['is_active'])
        self.assertIn('timeout', status['error'])


if __name__ == '__main__':
    unittest.main()
