"""
EVM chain handlers (Polygon, Optimism) for the PaymentGateway contract.
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from eth_account import Account
from hexbytes import HexBytes
from loguru import logger
from web3 import HTTPProvider, Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TimeExhausted
from web3.logs import DISCARD

from ..exceptions import (
    AddressFormatError,
    AlreadyProcessedError,
    SettlementError,
    SettlementSubmissionError,
    SigningNotConfiguredError,
    ValidationError,
)
from .base import ChainHandler, ExecutionResult


PAYMENT_GATEWAY_ABI = [
    {
        'inputs': [
            {'name': 'merchant', 'type': 'address'},
            {'name': 'amountARS', 'type': 'uint256'},
            {'name': 'token', 'type': 'address'},
            {'name': 'paymentId', 'type': 'bytes32'},
        ],
        'name': 'pay',
        'outputs': [{'name': '', 'type': 'bool'}],
        'stateMutability': 'nonpayable',
        'type': 'function',
    },
    {
        'inputs': [{'name': '', 'type': 'bytes32'}],
        'name': 'processedPayments',
        'outputs': [{'name': '', 'type': 'bool'}],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'inputs': [],
        'name': 'admin',
        'outputs': [{'name': '', 'type': 'address'}],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'inputs': [],
        'name': 'oracle',
        'outputs': [{'name': '', 'type': 'address'}],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'anonymous': False,
        'inputs': [
            {'indexed': True, 'name': 'id', 'type': 'bytes32'},
            {'indexed': False, 'name': 'merchant', 'type': 'address'},
            {'indexed': False, 'name': 'token', 'type': 'address'},
            {'indexed': False, 'name': 'amount', 'type': 'uint256'},
        ],
        'name': 'PaymentProcessed',
        'type': 'event',
    },
]

ADDRESS_LENGTH = 42


class EVMChainHandler(ChainHandler):
    """Handler for EVM networks settling through the PaymentGateway contract."""

    NETWORK = ''
    CHAIN_ID = 0
    EXPLORER_URL = ''

    def __init__(self, config: Dict[str, Any], web3: Optional[Web3] = None):
        super().__init__(config)
        self.rpc_url = config.get('rpc_url', '')
        self.chain_id = int(config.get('chain_id') or self.CHAIN_ID)
        self.gateway_address = config.get('gateway_address', '')
        self.gas_limit = config.get('gas_limit', 250000)
        self.tx_timeout_seconds = config.get('tx_timeout_seconds', 120)
        self.rpc_timeout_seconds = config.get('rpc_timeout_seconds', 15)
        self.max_fee_per_gas_wei = config.get('max_fee_per_gas_wei', 0)
        self.max_priority_fee_per_gas_wei = config.get(
            'max_priority_fee_per_gas_wei', 0)
        self._web3 = web3
        # Signing credential is loaded once and kept for the handler lifetime.
        self._account = self._load_account(config.get('signer_private_key', ''))

    @property
    def chain_name(self) -> str:
        return self.NETWORK

    @property
    def signer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    @property
    def web3(self) -> Web3:
        if self._web3 is None:
            if not self.rpc_url:
                raise SettlementSubmissionError(
                    f'RPC URL not configured for {self.chain_name}.')
            self._web3 = Web3(HTTPProvider(
                self.rpc_url,
                request_kwargs={'timeout': self.rpc_timeout_seconds},
            ))
        return self._web3

    def _load_account(self, private_key: str):
        if not private_key:
            logger.warning(
                '{} signer private key not configured, payments cannot be signed', self.chain_name)
            return None
        try:
            account = Account.from_key(private_key)
        except (ValueError, TypeError) as exc:
            logger.error('{} signer private key is invalid: {}',
                         self.chain_name, type(exc).__name__)
            return None
        logger.info('{} signer loaded: {}', self.chain_name, account.address)
        return account

    def validate_address(self, address: str) -> bool:
        """Validate EVM address format (0x + 40 hex chars)."""
        if not isinstance(address, str) or len(address) != ADDRESS_LENGTH:
            return False
        try:
            Web3.to_checksum_address(address)
            return True
        except (ValueError, TypeError):
            return False

    def _normalize_address(self, address: str, label: str) -> str:
        if not self.validate_address(address):
            length = len(address) if isinstance(address, str) else 0
            raise AddressFormatError(
                f'Invalid {label} address for {self.chain_name}: {address}. '
                f'Addresses must have {ADDRESS_LENGTH} characters (got {length}).'
            )
        return Web3.to_checksum_address(address)

    @staticmethod
    def _to_fiat_units(fiat_amount: Union[Decimal, int, str]) -> int:
        try:
            amount = Decimal(str(fiat_amount))
        except InvalidOperation as exc:
            raise ValidationError(f'Invalid fiat amount: {fiat_amount}') from exc
        if not amount.is_finite() or amount <= 0:
            raise ValidationError('Fiat amount must be positive.')
        if amount != amount.to_integral_value():
            raise ValidationError(
                f'Fiat amount must be a whole number of units: {fiat_amount}')
        return int(amount)

    def _gateway(self):
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.gateway_address),
            abi=PAYMENT_GATEWAY_ABI,
        )

    def execute_payment(
        self,
        merchant_address: str,
        fiat_amount: Union[Decimal, int],
        token_address: str,
        reference: Union[str, int],
    ) -> ExecutionResult:
        """
        Call PaymentGateway.pay and wait for the receipt.
        """
        if self._account is None:
            raise SigningNotConfiguredError(
                f'Signer private key not configured for {self.chain_name}.')

        merchant = self._normalize_address(merchant_address, 'merchant')
        token = self._normalize_address(token_address, 'token')
        amount = self._to_fiat_units(fiat_amount)
        chain_id = self.reference_to_chain_id(reference)

        logger.info(
            'executing payment on {}: reference={} merchant={} amount={} token={}',
            self.chain_name, reference, merchant, amount, token,
        )

        try:
            contract = self._gateway()
        except SettlementError:
            raise
        except Exception as exc:
            raise SettlementSubmissionError(
                f'Unable to load payment gateway on {self.chain_name}: {exc}') from exc

        self._ensure_not_processed(contract, chain_id, reference)
        tx_hash = self._submit(contract, merchant, amount, token, chain_id)
        return self._await_settlement(contract, tx_hash)

    def _ensure_not_processed(self, contract, chain_id: bytes, reference) -> None:
        # The contract rejects duplicates on its own; this only saves a wasted submission.
        try:
            processed = contract.functions.processedPayments(chain_id).call()
        except BadFunctionCallOutput as exc:
            logger.error(
                'processedPayments returned no data on {} (gateway ABI mismatch?), continuing: {}',
                self.chain_name, exc,
            )
            return
        except Exception as exc:
            logger.warning(
                'could not verify processedPayments on {}, continuing: {}', self.chain_name, exc)
            return

        if processed:
            logger.info('payment {} already processed on {}', reference, self.chain_name)
            raise AlreadyProcessedError(
                f'Payment {reference} already processed on {self.chain_name}.')

    def _submit(self, contract, merchant: str, amount: int, token: str, chain_id: bytes) -> HexBytes:
        signer_address = self._account.address
        pay_fn = contract.functions.pay(merchant, amount, token, chain_id)

        try:
            # Pre-flight simulation
            try:
                pay_fn.call({'from': signer_address})
            except ContractLogicError as exc:
                raise self._map_contract_error(exc) from exc
            except BadFunctionCallOutput:
                logger.warning(
                    'settlement simulation returned empty data, continuing')

            try:
                estimated_gas = pay_fn.estimate_gas({'from': signer_address})
            except Exception as exc:
                logger.debug(
                    'Gas estimation failed, falling back to configured gas limit: {}', exc)
                estimated_gas = self.gas_limit

            tx_params = {
                'chainId': self.chain_id,
                'from': signer_address,
                'nonce': self.web3.eth.get_transaction_count(signer_address),
                'gas': max(estimated_gas, self.gas_limit),
            }
            if self.max_fee_per_gas_wei and self.max_priority_fee_per_gas_wei:
                tx_params['maxFeePerGas'] = int(self.max_fee_per_gas_wei)
                tx_params['maxPriorityFeePerGas'] = int(
                    self.max_priority_fee_per_gas_wei)
            else:
                tx_params['gasPrice'] = self.web3.eth.gas_price

            transaction = pay_fn.build_transaction(tx_params)
            signed = self.web3.eth.account.sign_transaction(
                transaction, private_key=self._account.key)

            raw_tx = getattr(signed, 'raw_transaction', None)
            if raw_tx is None:
                raw_tx = getattr(signed, 'rawTransaction', None)
            if raw_tx is None:
                raise SettlementSubmissionError(
                    'Signer returned unexpected transaction encoding.')

            tx_hash = self.web3.eth.send_raw_transaction(raw_tx)
        except SettlementError:
            raise
        except Exception as exc:
            logger.error('{} settlement submission failed: {}', self.chain_name, exc)
            raise SettlementSubmissionError(
                f'Unable to submit settlement transaction: {exc}') from exc

        logger.info('{} settlement transaction submitted: {}',
                    self.chain_name, Web3.to_hex(tx_hash))
        return tx_hash

    def _await_settlement(self, contract, tx_hash: HexBytes) -> ExecutionResult:
        tx_hash_hex = Web3.to_hex(tx_hash)
        explorer_url = self.get_explorer_url(tx_hash_hex)

        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.tx_timeout_seconds)
        except TimeExhausted:
            logger.error('timed out waiting for {} transaction {}',
                         self.chain_name, tx_hash_hex)
            return ExecutionResult(
                success=False,
                transaction_hash=tx_hash_hex,
                explorer_url=explorer_url,
                error='Timed out waiting for settlement transaction.',
            )
        except Exception as exc:
            logger.error('failed waiting for {} transaction {}: {}',
                         self.chain_name, tx_hash_hex, exc)
            return ExecutionResult(
                success=False,
                transaction_hash=tx_hash_hex,
                explorer_url=explorer_url,
                error=f'Unable to confirm settlement transaction: {exc}',
            )

        if receipt.status != 1:
            logger.error('{} transaction {} reverted', self.chain_name, tx_hash_hex)
            return ExecutionResult(
                success=False,
                transaction_hash=tx_hash_hex,
                block_number=receipt.blockNumber,
                gas_used=receipt.gasUsed,
                explorer_url=explorer_url,
                error='Transaction reverted on-chain',
            )

        logger.info('{} transaction {} confirmed in block {} (gas used {})',
                    self.chain_name, tx_hash_hex, receipt.blockNumber, receipt.gasUsed)
        return ExecutionResult(
            success=True,
            transaction_hash=tx_hash_hex,
            block_number=receipt.blockNumber,
            gas_used=receipt.gasUsed,
            explorer_url=explorer_url,
            payment_event=self._extract_payment_event(contract, receipt),
        )

    def _extract_payment_event(self, contract, receipt) -> Optional[Dict[str, Any]]:
        try:
            events = contract.events.PaymentProcessed().process_receipt(
                receipt, errors=DISCARD)
        except Exception as exc:
            logger.warning('Error parsing PaymentProcessed event: {}', exc)
            return None
        if not events:
            return None

        args = events[0]['args']
        return {
            'payment_id': Web3.to_hex(args['id']),
            'merchant': args['merchant'],
            'token': args['token'],
            'amount': str(args['amount']),
        }

    def _map_contract_error(self, exc: ContractLogicError) -> SettlementError:
        """Map contract errors to user-friendly messages."""
        message = str(exc).lower()
        if 'processed' in message:
            return AlreadyProcessedError('Payment already processed on-chain.')
        if 'insufficient funds' in message:
            return SettlementSubmissionError(
                'Signer has insufficient native balance for gas')
        if 'oracle' in message or 'price' in message:
            return SettlementSubmissionError(
                'Price oracle rejected the payment')
        return SettlementSubmissionError(
            'Settlement transaction reverted on-chain')

    def is_processed(self, reference: Union[str, int]) -> bool:
        try:
            chain_id = self.reference_to_chain_id(reference)
            return bool(self._gateway().functions.processedPayments(chain_id).call())
        except Exception as exc:
            logger.warning('Error checking processed payment {} on {}: {}',
                           reference, self.chain_name, exc)
            return False

    def contract_info(self) -> Dict[str, Any]:
        try:
            functions = self._gateway().functions
            admin = functions.admin().call()
            oracle = functions.oracle().call()
        except SettlementError:
            raise
        except Exception as exc:
            logger.warning('could not read payment gateway on {}: {}', self.chain_name, exc)
            raise SettlementError(
                f'Unable to read payment gateway on {self.chain_name}: {exc}') from exc
        return {
            'network': self.chain_name,
            'gateway_address': self.gateway_address,
            'admin': admin,
            'oracle': oracle,
            'token_address': self.token_address,
            'signer_address': self.signer_address,
        }

    def get_explorer_url(self, tx_hash: str) -> str:
        base_url = self.config.get('explorer_url') or self.EXPLORER_URL
        return f'{base_url}/tx/{tx_hash}'


class PolygonChainHandler(EVMChainHandler):
    """Handler for Polygon PoS mainnet."""

    NETWORK = 'polygon'
    CHAIN_ID = 137
    EXPLORER_URL = 'https://polygonscan.com'


class OptimismChainHandler(EVMChainHandler):
    """Handler for Optimism mainnet."""

    NETWORK = 'optimism'
    CHAIN_ID = 10
    EXPLORER_URL = 'https://optimistic.etherscan.io'
