"""
Settlement engine: payment session lifecycle from QR issue to on-chain
settlement.

    PENDING -> PAID      scan executed on-chain
    PENDING -> EXPIRED   scan after expires_at (evaluated lazily)
    PENDING -> FAILED    payment can never settle (bad address/reference)

A failed on-chain attempt leaves the session PENDING so it can be rescanned.
"""
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional

from django.utils import timezone
from loguru import logger

from . import codec
from .chain_handlers import ChainHandler, ExecutionResult
from .exceptions import (
    AddressFormatError,
    AlreadyFinalizedError,
    ExpiredError,
    InvalidReferenceError,
    MerchantNotFoundError,
    NoWalletError,
    QRPayError,
    SessionNotFoundError,
    ValidationError,
)
from .models import PaymentSession
from .networks import Network
from .pricing import PriceService
from .repositories import MerchantRepository, SessionRepository


DEFAULT_SESSION_TTL = timedelta(minutes=30)
DEFAULT_CONCEPT = 'Pago QR'
TARGET_CRYPTO = 'USDC'


@dataclass
class SessionCreated:
    session: PaymentSession
    wire: str
    qr_image: str
    payment: Dict[str, Any]


@dataclass
class ScanResult:
    success: bool
    status: str
    payment: Dict[str, Any] = field(default_factory=dict)
    blockchain_transaction: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payment = dict(self.payment)
        payment['status'] = self.status
        payment['blockchainTransaction'] = self.blockchain_transaction
        return {
            'success': self.success,
            'error': self.error,
            'paymentData': payment,
        }


def _as_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(f'Invalid amount: {value}') from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError('Amount must be positive.')
    if amount != amount.to_integral_value():
        raise ValidationError('Amount must be a whole number of pesos.')
    return amount


def _decimal_str(value) -> Optional[str]:
    return None if value is None else str(value)


class SettlementEngine:

    def __init__(
        self,
        sessions: SessionRepository,
        merchants: MerchantRepository,
        handlers: Mapping[Network, ChainHandler],
        prices: PriceService,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Callable = timezone.now,
    ):
        if session_ttl <= timedelta(0):
            raise ValueError('session_ttl must be positive')
        self.sessions = sessions
        self.merchants = merchants
        self.handlers = dict(handlers)
        self.prices = prices
        self.session_ttl = session_ttl
        self.clock = clock

    def supported_networks(self) -> List[str]:
        return [network.value for network in self.handlers]

    def handler_for(self, network) -> ChainHandler:
        network = Network.parse(network)
        try:
            return self.handlers[network]
        except KeyError as exc:
            raise ValidationError(
                f'Network {network.value} is not enabled.') from exc

    def _resolve_merchant(self, merchant_id, handler: ChainHandler):
        merchant = self.merchants.get(merchant_id)
        if merchant is None:
            raise MerchantNotFoundError(f'Merchant not found: {merchant_id}')
        if not merchant.wallet_address:
            raise NoWalletError(
                f'Merchant {merchant_id} has no wallet. Please create a wallet first.')
        if not handler.validate_address(merchant.wallet_address):
            raise AddressFormatError(
                f'Merchant wallet {merchant.wallet_address} is not a valid '
                f'{handler.chain_name} address.')
        return merchant

    def create_session(self, merchant_id, amount, concept: str = DEFAULT_CONCEPT, network=Network.POLYGON) -> SessionCreated:
        """
        Issue a new PENDING payment session and its QR code.

        Raises:
            ValidationError, MerchantNotFoundError, NoWalletError, AddressFormatError
        """
        network = Network.parse(network)
        amount = _as_amount(amount)
        concept = (concept or DEFAULT_CONCEPT).strip()[:255] or DEFAULT_CONCEPT
        handler = self.handler_for(network)
        merchant = self._resolve_merchant(merchant_id, handler)

        quote = self.prices.convert_fiat_to_crypto(amount, network, TARGET_CRYPTO)

        rendered = {}

        def build(reference: str, sequence: int) -> PaymentSession:
            wire = codec.encode(merchant.wallet_address, amount, reference)
            rendered['image'] = codec.render_qr_image(wire)
            now = self.clock()
            return PaymentSession(
                reference=reference,
                sequence=sequence,
                merchant=merchant,
                merchant_address=merchant.wallet_address,
                amount=amount,
                currency='ARS',
                concept=concept,
                network=network.value,
                status=PaymentSession.Status.PENDING,
                qr_payload=wire,
                quoted_crypto_amount=quote.crypto_amount,
                quoted_rate=quote.exchange_rate,
                quote_source=quote.source,
                created_at=now,
                expires_at=now + self.session_ttl,
            )

        session = self.sessions.create(build)
        logger.info(
            'payment session {} created: merchant={} amount={} ARS network={} quote={} {} ({})',
            session.reference, merchant.pk, amount, network.value,
            quote.crypto_amount, TARGET_CRYPTO, quote.source,
        )

        payment = self.describe(session)
        payment.update({
            'merchantName': merchant.name,
            'targetCrypto': TARGET_CRYPTO,
            'cryptoAmount': str(quote.crypto_amount),
            'cryptoAmountWithMargin': str(quote.crypto_amount_with_margin),
            'exchangeRate': str(quote.exchange_rate),
            'quoteSource': quote.source,
        })
        return SessionCreated(
            session=session,
            wire=session.qr_payload,
            qr_image=rendered['image'],
            payment=payment,
        )

    def scan(self, wire: str) -> ScanResult:
        """
        Execute the payment encoded in a scanned QR code.

        Raises:
            MalformedCodeError, SessionNotFoundError, ValidationError,
            ExpiredError, AlreadyFinalizedError
        """
        code = codec.decode(wire)
        session = self.sessions.find_by_reference(code.reference)
        if session is None:
            raise SessionNotFoundError(f'Payment not found: {code.reference}')

        if (code.merchant_address.lower() != session.merchant_address.lower()
                or code.amount != session.amount):
            raise ValidationError(
                f'Payment code does not match payment {session.reference}.')

        self._ensure_executable(session)

        handler = self.handler_for(session.network)
        logger.info('payment {} scanned, executing on {}',
                    session.reference, session.network)

        try:
            result = handler.execute_payment(
                session.merchant_address,
                session.amount,
                handler.token_address,
                session.reference,
            )
        except (AddressFormatError, InvalidReferenceError) as exc:
            logger.error('payment {} cannot settle: {}', session.reference, exc.message)
            session = self._finalize(session, PaymentSession.Status.FAILED,
                                     failure_reason=exc.message)
            return ScanResult(
                success=False,
                status=session.status,
                payment=self.describe(session),
                error=exc.message,
            )
        except QRPayError as exc:
            logger.warning('payment {} execution failed on {}: {}',
                           session.reference, session.network, exc.message)
            return ScanResult(
                success=False,
                status=session.status,
                payment=self.describe(session),
                error=exc.message,
            )

        if not result.success:
            logger.warning('payment {} transaction {} failed: {}',
                           session.reference, result.transaction_hash, result.error)
            return ScanResult(
                success=False,
                status=session.status,
                payment=self.describe(session),
                blockchain_transaction=self._transaction_data(result, session.network),
                error=result.error,
            )

        settlement = {
            'blockchain_tx_hash': result.transaction_hash,
            'block_number': result.block_number,
            'gas_used': result.gas_used,
            'explorer_url': result.explorer_url or '',
            'paid_at': self.clock(),
        }
        try:
            session = self._finalize(session, PaymentSession.Status.PAID, **settlement)
            logger.info('payment {} PAID: tx {}', session.reference, result.transaction_hash)
        except AlreadyFinalizedError:
            # The transfer is on chain whatever the local status became; keep the receipt.
            session = self.sessions.attach_transaction(session.reference, **settlement)
            logger.error('payment {} settled in tx {} while {}',
                         session.reference, result.transaction_hash, session.status)
        return ScanResult(
            success=True,
            status=session.status,
            payment=self.describe(session),
            blockchain_transaction=self._transaction_data(result, session.network),
        )

    def _ensure_executable(self, session: PaymentSession) -> None:
        if session.status == PaymentSession.Status.EXPIRED:
            raise ExpiredError(f'Payment {session.reference} has expired.')
        if session.status != PaymentSession.Status.PENDING:
            raise AlreadyFinalizedError(
                f'Payment {session.reference} already processed ({session.status}).')
        if session.is_expired(self.clock()):
            try:
                self.sessions.update_status(
                    session.reference, PaymentSession.Status.EXPIRED)
                logger.info('payment {} expired', session.reference)
            except AlreadyFinalizedError:
                logger.debug('payment {} finalized concurrently', session.reference)
            raise ExpiredError(f'Payment {session.reference} has expired.')

    def _finalize(self, session: PaymentSession, status: str, **fields) -> PaymentSession:
        try:
            return self.sessions.update_status(session.reference, status, **fields)
        except AlreadyFinalizedError:
            logger.warning('payment {} was finalized concurrently, not moving to {}',
                           session.reference, status)
            raise

    @staticmethod
    def _transaction_data(result: ExecutionResult, network: str) -> Optional[Dict[str, Any]]:
        if not result.transaction_hash:
            return None
        return {
            'hash': result.transaction_hash,
            'explorerUrl': result.explorer_url,
            'blockNumber': result.block_number,
            'gasUsed': _decimal_str(result.gas_used),
            'success': result.success,
            'network': network,
            'paymentEvent': result.payment_event,
        }

    @staticmethod
    def describe(session: PaymentSession) -> Dict[str, Any]:
        return {
            'paymentId': session.reference,
            'merchantId': session.merchant_id,
            'merchantAddress': session.merchant_address,
            'amountARS': str(session.amount),
            'currency': session.currency,
            'concept': session.concept,
            'network': session.network,
            'status': session.status,
            'quotedCryptoAmount': _decimal_str(session.quoted_crypto_amount),
            'quotedRate': _decimal_str(session.quoted_rate),
            'quoteSource': session.quote_source,
            'transactionHash': session.blockchain_tx_hash,
            'explorerUrl': session.explorer_url or None,
            'createdAt': session.created_at.isoformat() if session.created_at else None,
            'expiresAt': session.expires_at.isoformat() if session.expires_at else None,
            'paidAt': session.paid_at.isoformat() if session.paid_at else None,
        }

    def get_session(self, reference: str) -> PaymentSession:
        session = self.sessions.find_by_reference(reference)
        if session is None:
            raise SessionNotFoundError(f'Payment not found: {reference}')
        return session

    def merchant_history(self, merchant_id, limit: int = 50) -> List[PaymentSession]:
        merchant = self.merchants.get(merchant_id)
        if merchant is None:
            raise MerchantNotFoundError(f'Merchant not found: {merchant_id}')
        return self.sessions.list_recent(merchant_id=merchant.pk, limit=limit)

    def merchant_stats(self, merchant_id) -> Dict[str, Any]:
        merchant = self.merchants.get(merchant_id)
        if merchant is None:
            raise MerchantNotFoundError(f'Merchant not found: {merchant_id}')
        totals = self.sessions.merchant_totals(merchant.pk)
        total = totals['total_payments']
        completed = totals['completed_payments']
        return {
            'totalPayments': total,
            'completedPayments': completed,
            'totalARS': str(totals['total_amount']),
            'completedARS': str(totals['completed_amount']),
            'totalCrypto': str(totals['completed_crypto']),
            'successRate': round(completed / total * 100, 2) if total else 0,
        }
