"""
In-memory wallet storage.
"""

from __future__ import annotations

from collections.abc import Iterator

from descwallet.database.base import Database, TxRecord, UtxoRecord
from descwallet.models import KeychainKind, OutPoint
from descwallet.wallet.address import Script


class MemoryDatabase(Database):
    def __init__(self) -> None:
        self._scripts: dict[tuple[KeychainKind, int], Script] = {}
        self._paths: dict[Script, tuple[KeychainKind, int]] = {}
        self._last_index: dict[KeychainKind, int] = {}
        self._utxos: dict[OutPoint, UtxoRecord] = {}
        self._txs: dict[str, TxRecord] = {}

    def set_script_pubkey(self, script: Script, keychain: KeychainKind, index: int) -> None:
        self._scripts[(keychain, index)] = script
        self._paths[script] = (keychain, index)

    def get_script_pubkey(self, keychain: KeychainKind, index: int) -> Script | None:
        return self._scripts.get((keychain, index))

    def get_path_from_script(self, script: Script) -> tuple[KeychainKind, int] | None:
        return self._paths.get(script)

    def iter_script_pubkeys(self, keychain: KeychainKind | None = None) -> Iterator[Script]:
        for (kind, _), script in sorted(self._scripts.items(), key=lambda item: item[0][1]):
            if keychain is None or kind is keychain:
                yield script

    def get_last_index(self, keychain: KeychainKind) -> int | None:
        return self._last_index.get(keychain)

    def set_last_index(self, keychain: KeychainKind, index: int) -> None:
        self._last_index[keychain] = index

    def set_utxo(self, utxo: UtxoRecord) -> None:
        self._utxos[utxo.outpoint] = utxo

    def get_utxo(self, outpoint: OutPoint) -> UtxoRecord | None:
        return self._utxos.get(outpoint)

    def iter_utxos(self) -> Iterator[UtxoRecord]:
        yield from list(self._utxos.values())

    def set_tx(self, tx: TxRecord) -> None:
        self._txs[tx.txid] = tx

    def get_tx(self, txid: str) -> TxRecord | None:
        return self._txs.get(txid)

    def iter_txs(self) -> Iterator[TxRecord]:
        yield from list(self._txs.values())

    def del_tx(self, txid: str) -> None:
        self._txs.pop(txid, None)
        for outpoint in [op for op in self._utxos if op.txid == txid]:
            del self._utxos[outpoint]
