"""
Supported settlement networks and their configuration.
"""
from enum import Enum
from typing import Any, Dict

from django.conf import settings

from .exceptions import ValidationError


class Network(str, Enum):
    POLYGON = 'polygon'
    OPTIMISM = 'optimism'

    @classmethod
    def parse(cls, value) -> 'Network':
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or '').lower().strip())
        except ValueError as exc:
            supported = ', '.join(n.value for n in cls)
            raise ValidationError(
                f'Unsupported network: {value}. Supported networks: {supported}'
            ) from exc


NETWORK_DEFAULTS: Dict[Network, Dict[str, Any]] = {
    Network.POLYGON: {
        'chain_id': 137,
        'explorer_url': 'https://polygonscan.com',
        'oracle_source': 'POLYGON_ORACLE',
    },
    Network.OPTIMISM: {
        'chain_id': 10,
        'explorer_url': 'https://optimistic.etherscan.io',
        'oracle_source': 'OPTIMISM_ORACLE',
    },
}


def get_network_config(network) -> Dict[str, Any]:
    """
    Get network configuration from Django settings.

    Settings values override the built-in defaults for the network.
    """
    network = Network.parse(network)
    configured = (getattr(settings, 'QRPAY_NETWORKS', None) or {}).get(
        network.value, {})
    config = dict(NETWORK_DEFAULTS[network])
    config.update({k: v for k, v in configured.items() if v not in (None, '')})
    config.setdefault('gas_limit', 250000)
    config.setdefault('tx_timeout_seconds', 120)
    config.setdefault('rpc_timeout_seconds', 15)
    config['network'] = network.value
    return config
