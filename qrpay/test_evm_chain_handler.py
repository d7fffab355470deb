import unittest
from decimal import Decimal
from unittest.mock import MagicMock

from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3
from web3.datastructures import AttributeDict
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from qrpay.chain_handlers import (
    ChainHandlerFactory,
    OptimismChainHandler,
    PolygonChainHandler,
)
from qrpay.exceptions import (
    AddressFormatError,
    AlreadyProcessedError,
    InvalidReferenceError,
    SettlementError,
    SigningNotConfiguredError,
    ValidationError,
)
from qrpay.networks import Network


MERCHANT = '0x' + 'a' * 40
TOKEN = '0xC37c16139a8eFC8f4c2B7CAA5C607514C825FC4C'
GATEWAY = '0x52a83a44aa073C0a423f914A6c824DA640ED2F6A'
TX_HASH = HexBytes('0x' + 'ab' * 32)


def _make_web3(processed=False, receipt_status=1):
    web3 = MagicMock()
    contract = MagicMock()
    web3.eth.contract.return_value = contract

    contract.functions.processedPayments.return_value.call.return_value = processed
    pay_fn = contract.functions.pay.return_value
    pay_fn.call.return_value = True
    pay_fn.estimate_gas.return_value = 90000
    pay_fn.build_transaction.return_value = {'to': GATEWAY, 'data': '0x'}

    web3.eth.get_transaction_count.return_value = 7
    web3.eth.gas_price = 30_000_000_000
    web3.eth.send_raw_transaction.return_value = TX_HASH
    web3.eth.wait_for_transaction_receipt.return_value = AttributeDict({
        'status': receipt_status,
        'blockNumber': 123456,
        'gasUsed': 85000,
    })
    contract.events.PaymentProcessed.return_value.process_receipt.return_value = []
    return web3, contract


class EVMChainHandlerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.signer = Account.create()
        self.config = {
            'network': 'polygon',
            'rpc_url': 'http://localhost:8545',
            'gateway_address': GATEWAY,
            'token_address': TOKEN,
            'signer_private_key': '0x' + bytes(self.signer.key).hex(),
            'explorer_url': 'https://polygonscan.com',
            'gas_limit': 250000,
            'tx_timeout_seconds': 5,
        }

    def _handler(self, **web3_kwargs):
        web3, contract = _make_web3(**web3_kwargs)
        return PolygonChainHandler(self.config, web3=web3), web3, contract

    def test_reference_maps_to_zero_padded_bytes32(self):
        handler, _, _ = self._handler()

        chain_id = handler.reference_to_chain_id('payment_1')

        self.assertEqual(len(chain_id), 32)
        self.assertEqual(chain_id, b'\x00' * 31 + b'\x01')
        self.assertEqual(handler.reference_to_chain_id(258), b'\x00' * 30 + b'\x01\x02')

    def test_invalid_references_are_rejected(self):
        handler, _, _ = self._handler()

        for reference in ('abc', 'payment_', 'payment_-1', 2 ** 256, True):
            with self.subTest(reference=reference):
                with self.assertRaises(InvalidReferenceError):
                    handler.reference_to_chain_id(reference)

    def test_validate_address(self):
        handler, _, _ = self._handler()

        self.assertTrue(handler.validate_address(MERCHANT))
        self.assertFalse(handler.validate_address('0x' + 'a' * 39))
        self.assertFalse(handler.validate_address('0x' + 'g' * 40))
        self.assertFalse(handler.validate_address(None))

    def test_execute_payment_success(self):
        handler, web3, contract = self._handler()

        result = handler.execute_payment(MERCHANT, Decimal('1000'), TOKEN, 'payment_1')

        self.assertTrue(result.success)
        self.assertEqual(result.transaction_hash, '0x' + 'ab' * 32)
        self.assertEqual(result.block_number, 123456)
        self.assertEqual(result.gas_used, 85000)
        self.assertEqual(
            result.explorer_url, 'https://polygonscan.com/tx/0x' + 'ab' * 32)

        args = contract.functions.pay.call_args[0]
        self.assertEqual(args[0], Web3.to_checksum_address(MERCHANT))
        self.assertEqual(args[1], 1000)
        self.assertEqual(args[3], b'\x00' * 31 + b'\x01')
        web3.eth.send_raw_transaction.assert_called_once()

    def test_execute_payment_decodes_payment_event(self):
        handler, _, contract = self._handler()
        contract.events.PaymentProcessed.return_value.process_receipt.return_value = [
            {
                'args': {
                    'id': b'\x00' * 31 + b'\x01',
                    'merchant': MERCHANT,
                    'token': TOKEN,
                    'amount': 1000,
                },
            },
        ]

        result = handler.execute_payment(MERCHANT, 1000, TOKEN, 'payment_1')

        self.assertEqual(result.payment_event['payment_id'], '0x' + '00' * 31 + '01')
        self.assertEqual(result.payment_event['amount'], '1000')

    def test_second_execution_hits_processed_fast_path(self):
        handler, web3, contract = self._handler()
        contract.functions.processedPayments.return_value.call.side_effect = [False, True]

        first = handler.execute_payment(MERCHANT, 1000, TOKEN, 'payment_1')
        with self.assertRaises(AlreadyProcessedError):
            handler.execute_payment(MERCHANT, 1000, TOKEN, 'payment_1')

        self.assertTrue(first.success)
        self.assertEqual(web3.eth.send_raw_transaction.call_count, 1)

    def test_precheck_failure_does_not_block_submission(self):
        for error in (BadFunctionCallOutput('no data'), ConnectionError('rpc down')):
            with self.subTest(error=type(error).__name__):
                handler, web3, contract = self._handler()
                contract.functions.processedPayments.return_value.call.side_effect = error

                result = handler.execute_payment(MERCHANT, 1000, TOKEN, 'payment_1')

                self.assertTrue(result.success)
                web3.eth.send_raw_transaction.assert_called_once()

    def test_reverted_receipt_returns_failed_result_with_hash(self):
        handler, _, _ = self._handler(receipt_status=0)

        result = handler.execute_payment(MERCHANT, 1000, TOKEN, 'payment_1')

        self.assertFalse(result.success)
        self.assertEqual(result.transaction_hash, '0x' + 'ab' * 32)
        self.assertIn('reverted', result.error)

    def test_simulation_revert_for_processed_payment(self):
        handler, web3, contract = self._handler()
        contract.functions.pay.return_value.call.side_effect = ContractLogicError(
            'execution reverted: payment already processed')

        with self.assertRaises(AlreadyProcessedError):
            handler.execute_payment(MERCHANT, 1000, TOKEN, 'payment_1')
        web3.eth.send_raw_transaction.assert_not_called()

    def test_signing_not_configured(self):
        config = dict(self.config, signer_private_key='')
        web3, _ = _make_web3()
        handler = PolygonChainHandler(config, web3=web3)

        with self.assertRaises(SigningNotConfiguredError):
            handler.execute_payment(MERCHANT, 1000, TOKEN, 'payment_1')
        web3.eth.contract.assert_not_called()

    def test_bad_merchant_address(self):
        handler, web3, _ = self._handler()

        with self.assertRaises(AddressFormatError):
            handler.execute_payment('0x1234', 1000, TOKEN, 'payment_1')
        web3.eth.send_raw_transaction.assert_not_called()

    def test_fractional_amount_rejected(self):
        handler, _, _ = self._handler()

        with self.assertRaises(ValidationError):
            handler.execute_payment(MERCHANT, Decimal('10.5'), TOKEN, 'payment_1')

    def test_is_processed_is_false_on_rpc_error(self):
        handler, _, contract = self._handler()
        contract.functions.processedPayments.return_value.call.side_effect = ConnectionError('down')

        self.assertFalse(handler.is_processed('payment_1'))

    def test_contract_info_reads_gateway_wiring(self):
        handler, _, contract = self._handler()
        admin = '0x' + 'c' * 40
        oracle = '0x2eF8D1930b1d20504445943A18d6F70e7ce6ABbe'
        contract.functions.admin.return_value.call.return_value = admin
        contract.functions.oracle.return_value.call.return_value = oracle

        info = handler.contract_info()

        self.assertEqual(info['network'], 'polygon')
        self.assertEqual(info['gateway_address'], GATEWAY)
        self.assertEqual(info['admin'], admin)
        self.assertEqual(info['oracle'], oracle)
        self.assertEqual(info['token_address'], TOKEN)
        self.assertEqual(info['signer_address'], self.signer.address)

    def test_contract_info_wraps_rpc_errors(self):
        handler, _, contract = self._handler()
        contract.functions.admin.return_value.call.side_effect = ConnectionError('down')

        with self.assertRaises(SettlementError):
            handler.contract_info()

    def test_explorer_url_defaults_per_network(self):
        handler = OptimismChainHandler({'signer_private_key': ''})

        self.assertEqual(
            handler.get_explorer_url('0xabc'), 'https://optimistic.etherscan.io/tx/0xabc')


class ChainHandlerFactoryTests(unittest.TestCase):
    def test_create_by_name(self):
        handler = ChainHandlerFactory.create('optimism', {'signer_private_key': ''})

        self.assertIsInstance(handler, OptimismChainHandler)
        self.assertEqual(handler.chain_name, 'optimism')
        self.assertEqual(handler.chain_id, 10)

    def test_unknown_network(self):
        with self.assertRaises(ValidationError):
            ChainHandlerFactory.create('solana')

    def test_supported_networks(self):
        self.assertEqual(
            ChainHandlerFactory.get_supported_networks(),
            [Network.POLYGON.value, Network.OPTIMISM.value],
        )


if __name__ == '__main__':
    unittest.main()
