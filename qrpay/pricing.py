"""
Price pipeline: cached USDC/ARS rates, fiat conversion with fallback and the
periodic refresher that keeps the price history populated.
"""
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from django.db import close_old_connections
from django.utils import timezone
from loguru import logger

from .exceptions import OracleUnavailableError, ValidationError
from .networks import Network
from .oracle import QUOTE_DECIMALS, FxOracleClient
from .repositories import PriceHistoryRepository


DEFAULT_SOURCE = 'DEFAULT'
SUPPORTED_TOKENS = ('USDC', 'USDT')
BASE_CURRENCY = 'ARS'
TOKEN_DISPLAY_DECIMALS = Decimal('0.000001')
# Share of the quoted amount shown to the payer after the 2 % spread.
CONVERSION_MARGIN = Decimal('0.98')


@dataclass(frozen=True)
class PriceSnapshot:
    """ARS price of one token unit."""
    currency: str
    base_currency: str
    price: Decimal
    source: str
    timestamp: datetime
    network: str = ''
    oracle_address: str = ''


@dataclass(frozen=True)
class ConversionQuote:
    fiat_amount: Decimal
    target_crypto: str
    crypto_amount: Decimal
    exchange_rate: Decimal
    source: str
    timestamp: datetime
    network: str
    oracle_address: str = ''
    token_amount_units: Optional[int] = None

    @property
    def is_fallback(self) -> bool:
        return self.source == DEFAULT_SOURCE

    @property
    def crypto_amount_with_margin(self) -> Decimal:
        return (self.crypto_amount * CONVERSION_MARGIN).quantize(TOKEN_DISPLAY_DECIMALS)


@dataclass
class _CacheEntry:
    value: Any
    stored_at: float = field(default_factory=time.monotonic)


class PriceCache:
    """Process-wide TTL cache keyed by (currency, base_currency)."""

    def __init__(self, ttl_seconds: float = 30, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Tuple[str, str], _CacheEntry] = {}

    def get(self, currency: str, base_currency: str):
        with self._lock:
            entry = self._entries.get((currency, base_currency))
            if entry is None:
                return None
            if self._clock() - entry.stored_at >= self.ttl_seconds:
                del self._entries[(currency, base_currency)]
                return None
            return entry.value

    def set(self, currency: str, base_currency: str, value) -> None:
        with self._lock:
            self._entries[(currency, base_currency)] = _CacheEntry(
                value=value, stored_at=self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class PriceService:
    """
    Converts ARS amounts to stablecoin amounts for display.

    Oracle failures never reach the caller of ``convert_fiat_to_crypto``:
    the configured default rate is used instead and the result is tagged
    with ``source='DEFAULT'``.
    """

    def __init__(
        self,
        oracles: Mapping[Network, FxOracleClient],
        cache: PriceCache,
        history: Optional[PriceHistoryRepository] = None,
        default_rate: Decimal = Decimal('1000'),
        primary_network: Network = Network.POLYGON,
    ):
        if default_rate <= 0:
            raise ValueError('default_rate must be positive')
        self.oracles = dict(oracles)
        self.cache = cache
        self.history = history
        self.default_rate = Decimal(default_rate)
        self.primary_network = Network.parse(primary_network)

    def oracle_for(self, network) -> FxOracleClient:
        network = Network.parse(network)
        try:
            return self.oracles[network]
        except KeyError as exc:
            raise ValidationError(
                f'No price oracle configured for {network.value}') from exc

    def _default_snapshot(self, currency: str, base_currency: str) -> PriceSnapshot:
        return PriceSnapshot(
            currency=currency,
            base_currency=base_currency,
            price=self.default_rate,
            source=DEFAULT_SOURCE,
            timestamp=timezone.now(),
        )

    def get_current_price(self, currency: str = 'USDC', base_currency: str = BASE_CURRENCY, use_cache: bool = True) -> PriceSnapshot:
        """
        Current ARS price of one token unit from the primary network oracle.

        Raises:
            ValidationError: for pairs other than USDC/USDT against ARS
            OracleUnavailableError: if the oracle cannot be queried
        """
        if currency not in SUPPORTED_TOKENS or base_currency != BASE_CURRENCY:
            raise ValidationError(
                f'Only USDC/ARS is supported. Requested: {currency}/{base_currency}')

        if use_cache:
            cached = self.cache.get(currency, base_currency)
            if cached is not None:
                return cached

        oracle = self.oracle_for(self.primary_network)
        quote = oracle.quote(1)

        rate = quote.rate
        if rate <= 0 or not math.isfinite(rate):
            logger.warning('Invalid oracle rate {}, not cached', rate)
            return self._default_snapshot(currency, base_currency)

        snapshot = PriceSnapshot(
            currency=currency,
            base_currency=base_currency,
            price=rate,
            source=quote.source,
            timestamp=quote.timestamp,
            network=self.primary_network.value,
            oracle_address=quote.oracle_address,
        )
        self.cache.set(currency, base_currency, snapshot)
        self._persist(snapshot)
        logger.debug('{}/{} price from oracle: {}', currency, base_currency, rate)
        return snapshot

    def _persist(self, snapshot: PriceSnapshot) -> None:
        if self.history is None:
            return
        try:
            self.history.record(
                currency=snapshot.currency,
                base_currency=snapshot.base_currency,
                price=snapshot.price,
                source=snapshot.source,
                network=snapshot.network,
            )
        except Exception as exc:
            logger.warning('Error saving oracle price: {}', exc)

    def convert_fiat_to_crypto(self, fiat_amount, network, target_crypto: str = 'USDC') -> ConversionQuote:
        """Display quote for ``fiat_amount`` ARS; falls back to the default rate."""
        network = Network.parse(network)
        fiat = Decimal(str(fiat_amount))
        try:
            oracle = self.oracle_for(network)
            quote = oracle.quote(fiat)
        except (OracleUnavailableError, ValidationError) as exc:
            logger.warning(
                'Oracle quote unavailable on {}, using default rate {}: {}',
                network.value, self.default_rate, exc,
            )
            return ConversionQuote(
                fiat_amount=fiat,
                target_crypto=target_crypto,
                crypto_amount=(fiat / self.default_rate).quantize(TOKEN_DISPLAY_DECIMALS),
                exchange_rate=self.default_rate,
                source=DEFAULT_SOURCE,
                timestamp=timezone.now(),
                network=network.value,
            )

        return ConversionQuote(
            fiat_amount=fiat,
            target_crypto=target_crypto,
            crypto_amount=Decimal(quote.token_amount_units).scaleb(-QUOTE_DECIMALS).quantize(TOKEN_DISPLAY_DECIMALS),
            exchange_rate=quote.rate,
            source=quote.source,
            timestamp=quote.timestamp,
            network=network.value,
            oracle_address=quote.oracle_address,
            token_amount_units=quote.token_amount_units,
        )

    def rate_with_margin(self, currency: str = 'USDC', margin_percent: Decimal = Decimal('2')) -> Dict[str, Any]:
        snapshot = self.get_current_price(currency, BASE_CURRENCY)
        margin = Decimal(str(margin_percent)) / 100
        return {
            'base_rate': snapshot.price,
            'rate_with_margin': snapshot.price * (1 + margin),
            'margin_percent': Decimal(str(margin_percent)),
            'target_crypto': currency,
            'source': snapshot.source,
            'timestamp': snapshot.timestamp,
        }

    def validate_rate(self, expected_rate, currency: str = 'USDC', tolerance_percent: Decimal = Decimal('5')) -> Dict[str, Any]:
        expected = Decimal(str(expected_rate))
        if expected <= 0:
            raise ValidationError('Expected rate must be positive.')
        current = self.get_current_price(currency, BASE_CURRENCY).price
        tolerance = Decimal(str(tolerance_percent)) / 100
        min_rate = expected * (1 - tolerance)
        max_rate = expected * (1 + tolerance)
        return {
            'is_valid': min_rate <= current <= max_rate,
            'current_rate': current,
            'expected_rate': expected,
            'tolerance_percent': Decimal(str(tolerance_percent)),
            'min_rate': min_rate,
            'max_rate': max_rate,
            'deviation_percent': abs(current - expected) / expected * 100,
        }

    def price_history(self, currency: str = 'USDC', base_currency: str = BASE_CURRENCY, hours: int = 24) -> List[Any]:
        if self.history is None:
            return []
        since = timezone.now() - timedelta(hours=hours)
        return self.history.recent(currency, base_currency, since, limit=100)

    def refresh(self) -> PriceSnapshot:
        """Re-query the oracle, bypassing the cache, and persist the rate."""
        snapshot = self.get_current_price('USDC', BASE_CURRENCY, use_cache=False)
        logger.info('USDC/ARS price refreshed: {} ({})', snapshot.price, snapshot.source)
        return snapshot


class PriceRefresher:
    """Background thread calling ``PriceService.refresh`` on a fixed interval."""

    def __init__(self, prices: PriceService, interval_seconds: float = 30):
        self.prices = prices
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> bool:
        try:
            self.prices.refresh()
            return True
        except Exception as exc:
            logger.error('Error refreshing USDC/ARS price: {}', exc)
            return False

    def _run(self) -> None:
        logger.info('price refresher started (every {}s)', self.interval_seconds)
        while not self._stop.is_set():
            self.tick()
            close_old_connections()
            self._stop.wait(self.interval_seconds)
        logger.info('price refresher stopped')

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name='qrpay-price-refresher', daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None

    def run_forever(self) -> None:
        """Run in the calling thread until ``stop`` is called."""
        self._stop.clear()
        self._run()
