"""
Process-scoped wiring of the settlement engine from Django settings.

Signing credentials are read once when the handlers are built and the price
cache is shared by every request in the process.
"""
import threading
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Optional

from django.conf import settings
from loguru import logger

from .chain_handlers import ChainHandler, ChainHandlerFactory
from .engine import SettlementEngine
from .networks import Network, get_network_config
from .oracle import FxOracleClient
from .pricing import PriceCache, PriceRefresher, PriceService
from .repositories import (
    DjangoMerchantRepository,
    DjangoPriceHistoryRepository,
    DjangoSessionRepository,
)


_lock = threading.Lock()
_engine: Optional[SettlementEngine] = None
_prices: Optional[PriceService] = None
_refresher: Optional[PriceRefresher] = None


def build_price_service() -> PriceService:
    oracles = {
        network: FxOracleClient(get_network_config(network))
        for network in Network
    }
    return PriceService(
        oracles=oracles,
        cache=PriceCache(ttl_seconds=getattr(settings, 'QRPAY_PRICE_CACHE_SECONDS', 30)),
        history=DjangoPriceHistoryRepository(),
        default_rate=Decimal(str(getattr(settings, 'QRPAY_DEFAULT_RATE', '1000'))),
        primary_network=Network.parse(getattr(settings, 'QRPAY_PRICE_NETWORK', 'polygon')),
    )


def build_chain_handlers() -> Dict[Network, ChainHandler]:
    return {
        network: ChainHandlerFactory.create(network, get_network_config(network))
        for network in Network
    }


def get_price_service() -> PriceService:
    global _prices
    with _lock:
        if _prices is None:
            _prices = build_price_service()
        return _prices


def get_settlement_engine() -> SettlementEngine:
    global _engine
    prices = get_price_service()
    with _lock:
        if _engine is None:
            _engine = SettlementEngine(
                sessions=DjangoSessionRepository(),
                merchants=DjangoMerchantRepository(),
                handlers=build_chain_handlers(),
                prices=prices,
                session_ttl=timedelta(
                    minutes=getattr(settings, 'QRPAY_SESSION_TTL_MINUTES', 30)),
            )
            logger.info('settlement engine ready for networks: {}',
                        ', '.join(_engine.supported_networks()))
        return _engine


def start_price_refresher() -> PriceRefresher:
    global _refresher
    prices = get_price_service()
    with _lock:
        if _refresher is None:
            _refresher = PriceRefresher(
                prices,
                interval_seconds=getattr(settings, 'QRPAY_PRICE_REFRESH_SECONDS', 30),
            )
        _refresher.start()
        return _refresher


def reset() -> None:
    """Drop process singletons (settings changes in tests)."""
    global _engine, _prices, _refresher
    with _lock:
        if _refresher is not None:
            _refresher.stop(timeout=1)
        _engine = None
        _prices = None
        _refresher = None
