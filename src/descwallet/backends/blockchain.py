"""
Blockchain client facade and sync progress reporting.
"""

from __future__ import annotations

from typing import Protocol

from loguru import logger

from descwallet.backends.base import BlockchainBackend
from descwallet.backends.bitcoin_core import BitcoinCoreBackend
from descwallet.backends.esplora import EsploraBackend
from descwallet.config import EsploraConfig, RpcConfig
from descwallet.constants import DEFAULT_STOP_GAP
from descwallet.models import FeeRate
from descwallet.wallet.psbt import PartiallySignedTransaction


class Progress(Protocol):
    def update(self, progress: float, message: str | None) -> None:
        """Called with non-decreasing percentages in [0, 100]"""


class NoopProgress:
    def update(self, progress: float, message: str | None) -> None:
        pass


class LogProgress:
    """Reports sync progress through the logger."""

    def update(self, progress: float, message: str | None) -> None:
        logger.info(f"Sync progress {progress:.1f}%" + (f": {message}" if message else ""))


def create_backend(config: EsploraConfig | RpcConfig) -> BlockchainBackend:
    if isinstance(config, EsploraConfig):
        return EsploraBackend(
            config.base_url,
            proxy=config.proxy,
            concurrency=config.concurrency,
            timeout=config.timeout,
        )
    return BitcoinCoreBackend(config.url, auth=config.auth.credentials(), timeout=config.timeout)


class Blockchain:
    def __init__(
        self,
        config: EsploraConfig | RpcConfig,
        backend: BlockchainBackend | None = None,
    ):
        self.config = config
        self.backend = backend or create_backend(config)

    @property
    def stop_gap(self) -> int:
        if isinstance(self.config, EsploraConfig):
            return self.config.stop_gap
        return DEFAULT_STOP_GAP

    def broadcast(self, psbt: PartiallySignedTransaction) -> str:
        tx = psbt.extract_tx()
        return self.backend.broadcast_transaction(tx.serialize_hex())

    def estimate_fee(self, target: int) -> FeeRate:
        return FeeRate.from_sat_per_vb(self.backend.estimate_fee(target))

    def get_height(self) -> int:
        return self.backend.get_block_height()

    def get_block_hash(self, height: int) -> str:
        return self.backend.get_block_hash(height)

    def close(self) -> None:
        self.backend.close()
