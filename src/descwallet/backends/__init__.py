"""
Blockchain backend implementations.

Available backends:
- EsploraBackend: Esplora REST API (blockstream.info, mempool.space, electrs)
- BitcoinCoreBackend: Full node via Bitcoin Core RPC (no wallet, uses scantxoutset)
"""

from descwallet.backends.base import BlockchainBackend, ChainTransaction
from descwallet.backends.bitcoin_core import BitcoinCoreBackend
from descwallet.backends.blockchain import Blockchain, LogProgress, NoopProgress, Progress
from descwallet.backends.esplora import EsploraBackend

__all__ = [
    "BitcoinCoreBackend",
    "Blockchain",
    "BlockchainBackend",
    "ChainTransaction",
    "EsploraBackend",
    "LogProgress",
    "NoopProgress",
    "Progress",
]
