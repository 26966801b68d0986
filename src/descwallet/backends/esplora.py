"""
Esplora REST blockchain backend (blockstream.info, mempool.space, electrs).
"""

from __future__ import annotations

import hashlib
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import httpx
from loguru import logger

from descwallet.backends.base import BlockchainBackend, ChainTransaction
from descwallet.errors import BlockchainError
from descwallet.models import BlockTime
from descwallet.wallet.address import Script

# Esplora returns at most this many confirmed transactions per page
CHAIN_PAGE_SIZE = 25


def script_hash(script: Script) -> str:
    """Electrum-style script hash: reversed SHA256 of the script, hex encoded."""
    return hashlib.sha256(script.raw).digest()[::-1].hex()


class EsploraBackend(BlockchainBackend):
    def __init__(
        self,
        base_url: str,
        proxy: str | None = None,
        concurrency: int | None = None,
        timeout: float | None = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.concurrency = concurrency or 1
        self.client = httpx.Client(
            base_url=self.base_url, proxy=proxy, timeout=timeout, transport=transport
        )

    def _get(self, path: str) -> httpx.Response:
        try:
            response = self.client.get(path)
            response.raise_for_status()
            return response
        except httpx.HTTPError as e:
            logger.error(f"Esplora request failed: GET {path} - {e}")
            raise BlockchainError(f"Esplora request failed: {e}") from e

    def _get_json(self, path: str) -> Any:
        return self._get(path).json()

    @staticmethod
    def _confirmation_time(status: dict[str, Any]) -> BlockTime | None:
        if not status.get("confirmed"):
            return None
        return BlockTime(height=status["block_height"], timestamp=status["block_time"])

    def _script_txs(self, script: Script) -> list[dict[str, Any]]:
        path = f"/scripthash/{script_hash(script)}/txs"
        txs: list[dict[str, Any]] = self._get_json(path)
        confirmed = [tx for tx in txs if tx.get("status", {}).get("confirmed")]
        # Fetch more confirmed history while full pages come back
        while len(confirmed) >= CHAIN_PAGE_SIZE:
            page = self._get_json(f"{path}/chain/{confirmed[-1]['txid']}")
            if not page:
                break
            txs.extend(page)
            confirmed = page
        return txs

    def _history_for(self, script: Script) -> list[ChainTransaction]:
        result = []
        for tx in self._script_txs(script):
            raw = self._get(f"/tx/{tx['txid']}/raw").content
            result.append(
                ChainTransaction(tx["txid"], raw, self._confirmation_time(tx.get("status", {})))
            )
        return result

    def get_script_history(self, scripts: list[Script]) -> dict[Script, list[ChainTransaction]]:
        if self.concurrency > 1:
            with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                histories = list(pool.map(self._history_for, scripts))
        else:
            histories = [self._history_for(script) for script in scripts]
        return {script: history for script, history in zip(scripts, histories) if history}

    def broadcast_transaction(self, tx_hex: str) -> str:
        try:
            response = self.client.post("/tx", content=tx_hex)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to broadcast transaction: {e}")
            raise BlockchainError(f"Broadcast failed: {e}") from e
        txid = response.text.strip()
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    def estimate_fee(self, target_blocks: int) -> float:
        """
        Esplora reports estimates for a fixed set of targets; use the closest
        target not above ``target_blocks``.
        """
        estimates: dict[str, float] = self._get_json("/fee-estimates")
        candidates = sorted(
            (int(target), rate)
            for target, rate in estimates.items()
            if int(target) <= target_blocks
        )
        if not candidates:
            raise BlockchainError(f"No fee estimate available for {target_blocks} blocks")
        rate = candidates[-1][1]
        logger.debug(f"Estimated fee for {target_blocks} blocks: {rate} sat/vB")
        return rate

    def get_block_height(self) -> int:
        return int(self._get("/blocks/tip/height").text)

    def get_block_hash(self, block_height: int) -> str:
        return self._get(f"/block-height/{block_height}").text.strip()

    def close(self) -> None:
        self.client.close()
