"""
Factory for creating chain handlers.
"""
from typing import Any, Dict, List, Type

from ..networks import Network
from .base import ChainHandler
from .evm_chain import OptimismChainHandler, PolygonChainHandler


class ChainHandlerFactory:
    """Factory to create chain handlers based on network."""

    _handlers: Dict[Network, Type[ChainHandler]] = {
        Network.POLYGON: PolygonChainHandler,
        Network.OPTIMISM: OptimismChainHandler,
    }

    @classmethod
    def create(cls, network, config: Dict[str, Any] = None, **kwargs) -> ChainHandler:
        """
        Create a chain handler for the specified network.

        Args:
            network: Network member or name ('polygon', 'optimism')
            config: Optional configuration dict (RPC URL, signer key, etc.)

        Returns:
            ChainHandler instance

        Raises:
            ValidationError: If network is not supported
        """
        network = Network.parse(network)
        handler_class = cls._handlers[network]
        return handler_class(config or {}, **kwargs)

    @classmethod
    def get_supported_networks(cls) -> List[str]:
        """Get list of supported network names."""
        return [network.value for network in cls._handlers]
