"""
Chain backend implementations.

Available backends:
- ElectrumBackend: ElectrumX indexer over a persistent JSON-RPC connection
- NodeRpcBackend: Palladium node wallet RPC (legacy polling mode)

The variant is chosen once from ``ChatConfig.mode`` by ``create_backend``.
"""

from plmcore.models import BackendMode, ChatConfig

from plmwallet.backends.base import UTXO, ChainBackend, HistoryEntry
from plmwallet.backends.electrum import ElectrumBackend, ElectrumConnection
from plmwallet.backends.node_rpc import NodeRpcBackend


def create_backend(config: ChatConfig) -> ChainBackend:
    """Instantiate the backend variant selected by the configuration."""
    if config.mode == BackendMode.ELECTRUM:
        return ElectrumBackend(host=config.host, port=config.port, use_ssl=config.use_ssl)
    return NodeRpcBackend(
        rpc_url=f"http://{config.host}:{config.port}",
        rpc_user=config.user,
        rpc_password=config.password,
    )


__all__ = [
    "ChainBackend",
    "ElectrumBackend",
    "ElectrumConnection",
    "HistoryEntry",
    "NodeRpcBackend",
    "UTXO",
    "create_backend",
]
