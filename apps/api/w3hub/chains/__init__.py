"""Chain backends and the registry that indexes them by chain id."""
import logging

from w3hub.chains.base import Asset, ChainClient, Transaction
from w3hub.chains.ethereum import EthereumClient
from w3hub.chains.registry import ChainRegistry

logger = logging.getLogger(__name__)


def build_registry(settings) -> ChainRegistry:
    """Register one EthereumClient per configured EVM RPC endpoint."""
    registry = ChainRegistry()
    for chain_id, rpc_url in settings.chain_rpc_urls.items():
        registry.register(
            chain_id,
            EthereumClient(
                rpc_url,
                chain_id=chain_id,
                native_symbol=settings.evm_native_symbols.get(chain_id, "ETH"),
                timeout=settings.rpc_timeout_seconds,
                stream_poll_interval=settings.stream_poll_interval_seconds,
            ),
        )
    if not registry.chains():
        logger.warning("⚠️ No chain RPC endpoints configured, tracking and live reads disabled")
    return registry


__all__ = [
    "Asset",
    "ChainClient",
    "Transaction",
    "EthereumClient",
    "ChainRegistry",
    "build_registry",
]
