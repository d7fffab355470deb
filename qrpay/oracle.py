"""
Client for the on-chain ARS price oracle (DynamicFxOracle).
"""
from dataclasses import dataclass
from datetime import datetime, timezone as datetime_timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from django.utils import timezone
from loguru import logger
from web3 import HTTPProvider, Web3

from .exceptions import OracleUnavailableError, ValidationError


FX_ORACLE_ABI = [
    {
        'inputs': [
            {'name': 'token', 'type': 'address'},
            {'name': 'amountARS', 'type': 'uint256'},
        ],
        'name': 'quote',
        'outputs': [{'name': '', 'type': 'uint256'}],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'inputs': [{'name': 'token', 'type': 'address'}],
        'name': 'priceARS',
        'outputs': [{'name': '', 'type': 'uint256'}],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'inputs': [{'name': 'token', 'type': 'address'}],
        'name': 'tokenDecimals',
        'outputs': [{'name': '', 'type': 'uint8'}],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'inputs': [{'name': 'token', 'type': 'address'}],
        'name': 'hasPrice',
        'outputs': [{'name': '', 'type': 'bool'}],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'inputs': [],
        'name': 'active',
        'outputs': [{'name': '', 'type': 'bool'}],
        'stateMutability': 'view',
        'type': 'function',
    },
    {
        'inputs': [],
        'name': 'lastUpdated',
        'outputs': [{'name': '', 'type': 'uint256'}],
        'stateMutability': 'view',
        'type': 'function',
    },
]

# quote() answers in 6-decimal fixed point
QUOTE_DECIMALS = 6


@dataclass(frozen=True)
class OracleQuote:
    fiat_amount: Decimal
    token_amount: float
    token_amount_units: int
    rate: Decimal
    token_address: str
    oracle_address: str
    timestamp: datetime
    source: str


class FxOracleClient:
    """Reads ARS quotes from one network's oracle contract."""

    def __init__(self, config: Dict[str, Any], web3: Optional[Web3] = None):
        self.network = config.get('network', '')
        self.rpc_url = config.get('rpc_url', '')
        self.oracle_address = config.get('oracle_address', '')
        self.token_address = config.get('token_address', '')
        self.source = config.get('oracle_source') or f'{self.network.upper()}_ORACLE'
        self.rpc_timeout_seconds = config.get('rpc_timeout_seconds', 15)
        self._web3 = web3
        self._contract = None

    @property
    def contract(self):
        if self._contract is None:
            web3 = self._web3
            if web3 is None:
                if not self.rpc_url:
                    raise OracleUnavailableError(
                        f'RPC URL not configured for {self.network} oracle.')
                web3 = Web3(HTTPProvider(
                    self.rpc_url,
                    request_kwargs={'timeout': self.rpc_timeout_seconds},
                ))
            self._contract = web3.eth.contract(
                address=Web3.to_checksum_address(self.oracle_address),
                abi=FX_ORACLE_ABI,
            )
        return self._contract

    def _token(self, token_address: Optional[str]) -> str:
        token = token_address or self.token_address
        try:
            return Web3.to_checksum_address(token)
        except (ValueError, TypeError) as exc:
            raise ValidationError(f'Invalid token address: {token}') from exc

    def quote(self, fiat_amount: Union[Decimal, int], token_address: Optional[str] = None) -> OracleQuote:
        """
        Quote ``fiat_amount`` ARS in token units.

        Raises:
            OracleUnavailableError: if the oracle is paused, has no price for
                the token or the RPC call fails
        """
        token = self._token(token_address)
        fiat = Decimal(str(fiat_amount))
        fiat_units = int(fiat.to_integral_value())
        logger.debug('requesting {} oracle quote: {} ARS -> {}',
                     self.network, fiat, token)

        try:
            functions = self.contract.functions
            if not functions.active().call():
                raise OracleUnavailableError(f'{self.network} oracle is paused.')
            if not functions.hasPrice(token).call():
                raise OracleUnavailableError(
                    f'Token {token} has no price configured in the {self.network} oracle.')
            token_amount_units = int(functions.quote(token, fiat_units).call())
            rate = Decimal(int(functions.priceARS(token).call()))
        except OracleUnavailableError:
            raise
        except Exception as exc:
            logger.error('{} oracle call failed: {}', self.network, exc)
            raise OracleUnavailableError(
                f'{self.network} oracle call failed: {exc}') from exc

        # Display value only; settlement keeps the integer units.
        token_amount = float(Decimal(token_amount_units).scaleb(-QUOTE_DECIMALS))
        logger.debug('{} oracle quote: {} ARS = {} tokens (1 token = {} ARS)',
                     self.network, fiat, token_amount, rate)
        return OracleQuote(
            fiat_amount=fiat,
            token_amount=token_amount,
            token_amount_units=token_amount_units,
            rate=rate,
            token_address=token,
            oracle_address=self.oracle_address,
            timestamp=timezone.now(),
            source=self.source,
        )

    def token_price(self, token_address: Optional[str] = None) -> Decimal:
        token = self._token(token_address)
        try:
            return Decimal(int(self.contract.functions.priceARS(token).call()))
        except OracleUnavailableError:
            raise
        except Exception as exc:
            raise OracleUnavailableError(
                f'{self.network} oracle price lookup failed: {exc}') from exc

    def status(self, token_address: Optional[str] = None) -> Dict[str, Any]:
        """Oracle health summary; never raises."""
        token = token_address or self.token_address
        try:
            functions = self.contract.functions
            checksum_token = self._token(token)
            is_active = bool(functions.active().call())
            last_updated = int(functions.lastUpdated().call())
            has_price = bool(functions.hasPrice(checksum_token).call())
            current_rate = self.token_price(checksum_token) if has_price else None
        except Exception as exc:
            logger.warning('{} oracle status check failed: {}', self.network, exc)
            return {
                'network': self.network,
                'is_active': False,
                'has_price': False,
                'current_rate': None,
                'oracle_address': self.oracle_address,
                'token_address': token,
                'status': 'ERROR',
                'error': str(exc),
                'timestamp': timezone.now(),
            }

        return {
            'network': self.network,
            'is_active': is_active,
            'has_price': has_price,
            'current_rate': current_rate,
            'oracle_address': self.oracle_address,
            'token_address': token,
            'last_updated': datetime.fromtimestamp(last_updated, tz=datetime_timezone.utc),
            'status': 'ACTIVE' if is_active and has_price else 'INACTIVE',
            'error': None,
            'timestamp': timezone.now(),
        }
