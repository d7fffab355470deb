"""
Base chain handler interface.
"""
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from ..exceptions import InvalidReferenceError


REFERENCE_PATTERN = re.compile(r'^(?:payment_)?(-?\d+)$')

CHAIN_ID_SIZE = 32


@dataclass
class ExecutionResult:
    """Result of an on-chain payment execution."""
    success: bool
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    explorer_url: Optional[str] = None
    error: Optional[str] = None
    payment_event: Optional[Dict[str, Any]] = None


class ChainHandler(ABC):
    """
    Abstract base class for blockchain payment handlers.
    Each network (Polygon, Optimism, etc.) implements this interface.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize the chain handler.

        Args:
            config: Network configuration (RPC URL, contract addresses, signer key, etc.)
        """
        self.config = config

    @property
    @abstractmethod
    def chain_name(self) -> str:
        """Return the network name (e.g., 'polygon', 'optimism')."""
        pass

    @property
    def token_address(self) -> str:
        """Settlement token configured for this network."""
        return self.config.get('token_address', '')

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        """
        Validate if the address format is correct for this chain.

        Args:
            address: Address to validate

        Returns:
            True if valid, False otherwise
        """
        pass

    @abstractmethod
    def execute_payment(
        self,
        merchant_address: str,
        fiat_amount: Union[Decimal, int],
        token_address: str,
        reference: Union[str, int],
    ) -> ExecutionResult:
        """
        Settle the payment on-chain through the payment gateway contract.

        Args:
            merchant_address: Receiving account
            fiat_amount: Amount in fiat units (whole pesos)
            token_address: Settlement token
            reference: Payment reference (``payment_<n>``)

        Returns:
            ExecutionResult; ``success=False`` only once a transaction was broadcast

        Raises:
            SigningNotConfiguredError, AddressFormatError, AlreadyProcessedError,
            SettlementSubmissionError
        """
        pass

    @abstractmethod
    def is_processed(self, reference: Union[str, int]) -> bool:
        """Read-only check of the contract's processed registry."""
        pass

    @abstractmethod
    def contract_info(self) -> Dict[str, Any]:
        """Gateway wiring (admin, oracle, token, signer) for diagnostics."""
        pass

    def reference_to_chain_id(self, reference: Union[str, int]) -> bytes:
        """
        Convert a payment reference to the 32-byte on-chain identifier.

        ``payment_1`` -> 0x00...01 (sequence number, big-endian, zero padded).
        """
        if isinstance(reference, bool):
            raise InvalidReferenceError(f'Invalid payment reference: {reference}')
        if isinstance(reference, int):
            number = reference
        else:
            match = REFERENCE_PATTERN.match(str(reference or '').strip())
            if not match:
                raise InvalidReferenceError(
                    f'Invalid payment reference: {reference}')
            number = int(match.group(1))

        if number < 0:
            raise InvalidReferenceError(
                f'Invalid payment reference: {reference} (must be a positive number)')
        try:
            return number.to_bytes(CHAIN_ID_SIZE, 'big')
        except OverflowError as exc:
            raise InvalidReferenceError(
                f'Payment reference {reference} does not fit in {CHAIN_ID_SIZE} bytes') from exc

    def get_explorer_url(self, tx_hash: str) -> str:
        """
        Get block explorer URL for transaction.

        Args:
            tx_hash: Transaction hash

        Returns:
            Explorer URL
        """
        return f"{self.config.get('explorer_url', '')}/tx/{tx_hash}"
