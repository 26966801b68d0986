"""
Base blockchain backend interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from descwallet.models import BlockTime
from descwallet.wallet.address import Script


@dataclass
class ChainTransaction:
    txid: str
    raw: bytes
    # None while unconfirmed
    confirmation_time: BlockTime | None = None


class BlockchainBackend(ABC):
    """
    Abstract blockchain backend interface.
    Implementations look transactions up by output script, so no
    node-side wallet is needed.
    """

    @abstractmethod
    def get_script_history(self, scripts: list[Script]) -> dict[Script, list[ChainTransaction]]:
        """Transactions touching each of ``scripts`` (scripts without history may be omitted)"""

    @abstractmethod
    def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    @abstractmethod
    def estimate_fee(self, target_blocks: int) -> float:
        """Estimate fee in sat/vbyte for target confirmation blocks"""

    @abstractmethod
    def get_block_height(self) -> int:
        """Get current blockchain height"""

    @abstractmethod
    def get_block_hash(self, block_height: int) -> str:
        """Get block hash for given height"""

    def close(self) -> None:
        """Close backend connection"""
        pass
