"""
Chain handlers for multi-chain payment settlement.
"""
from .base import ChainHandler, ExecutionResult
from .evm_chain import EVMChainHandler, OptimismChainHandler, PolygonChainHandler
from .factory import ChainHandlerFactory

__all__ = [
    'ChainHandler',
    'ExecutionResult',
    'EVMChainHandler',
    'PolygonChainHandler',
    'OptimismChainHandler',
    'ChainHandlerFactory',
]
