"""
Base wallet storage interface.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass

from descwallet.models import BlockTime, KeychainKind, OutPoint
from descwallet.wallet.address import Script


@dataclass
class UtxoRecord:
    outpoint: OutPoint
    value: int
    script_pubkey: Script
    keychain: KeychainKind
    is_spent: bool = False


@dataclass
class TxRecord:
    txid: str
    raw: bytes
    # Sum of owned outputs / owned inputs
    received: int
    sent: int
    fee: int | None = None
    confirmation_time: BlockTime | None = None


class Database(ABC):
    """
    Storage for a wallet's derived scripts, derivation indices, UTXOs and
    transactions. Implementations are not thread-safe; the wallet
    serializes access.
    """

    @abstractmethod
    def set_script_pubkey(self, script: Script, keychain: KeychainKind, index: int) -> None:
        """Cache the script derived at (keychain, index)"""

    @abstractmethod
    def get_script_pubkey(self, keychain: KeychainKind, index: int) -> Script | None:
        """Script cached at (keychain, index), if any"""

    @abstractmethod
    def get_path_from_script(self, script: Script) -> tuple[KeychainKind, int] | None:
        """Reverse lookup of a cached script"""

    @abstractmethod
    def iter_script_pubkeys(self, keychain: KeychainKind | None = None) -> Iterator[Script]:
        """All cached scripts, optionally for one keychain"""

    @abstractmethod
    def get_last_index(self, keychain: KeychainKind) -> int | None:
        """Last revealed derivation index, None if nothing was revealed yet"""

    @abstractmethod
    def set_last_index(self, keychain: KeychainKind, index: int) -> None:
        """Record the last revealed derivation index"""

    @abstractmethod
    def set_utxo(self, utxo: UtxoRecord) -> None:
        """Insert or replace a UTXO"""

    @abstractmethod
    def get_utxo(self, outpoint: OutPoint) -> UtxoRecord | None:
        """Look up a UTXO by outpoint"""

    @abstractmethod
    def iter_utxos(self) -> Iterator[UtxoRecord]:
        """All known wallet outputs, spent ones included"""

    @abstractmethod
    def set_tx(self, tx: TxRecord) -> None:
        """Insert or replace a transaction"""

    @abstractmethod
    def get_tx(self, txid: str) -> TxRecord | None:
        """Look up a transaction by txid"""

    @abstractmethod
    def iter_txs(self) -> Iterator[TxRecord]:
        """All wallet transactions"""

    @abstractmethod
    def del_tx(self, txid: str) -> None:
        """Forget a transaction and the UTXOs it created"""

    def close(self) -> None:
        """Release underlying resources"""
        pass
