"""
Bitcoin Core RPC blockchain backend.
Uses RPC calls but NOT wallet functionality: outputs are found with
``scantxoutset`` over ``raw()`` descriptors, so only unspent history is seen.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from descwallet.backends.base import BlockchainBackend, ChainTransaction
from descwallet.errors import BlockchainError
from descwallet.models import BlockTime
from descwallet.wallet.address import Script

# Timeout for regular RPC calls (seconds)
DEFAULT_RPC_TIMEOUT = 30.0

# Timeout for scantxoutset calls - mainnet scans can take 90+ seconds
SCAN_RPC_TIMEOUT = 300.0

# Scripts per scantxoutset request
SCAN_BATCH_SIZE = 100


class BitcoinCoreBackend(BlockchainBackend):
    def __init__(
        self,
        rpc_url: str = "http://127.0.0.1:18443",
        auth: tuple[str, str] | None = None,
        timeout: float = DEFAULT_RPC_TIMEOUT,
        scan_timeout: float = SCAN_RPC_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ):
        self.rpc_url = rpc_url.rstrip("/")
        self.scan_timeout = scan_timeout
        self.client = httpx.Client(timeout=timeout, auth=auth, transport=transport)
        self._request_id = 0

    def _rpc_call(
        self, method: str, params: list | None = None, timeout: float | None = None
    ) -> Any:
        """
        Make an RPC call to Bitcoin Core.

        Raises:
            BlockchainError: on RPC errors and connection/timeout errors
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }

        try:
            response = self.client.post(
                self.rpc_url, json=payload, timeout=timeout or self.client.timeout
            )
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"RPC call failed: {method} - {e}")
            raise BlockchainError(f"RPC call {method} failed: {e}") from e

        if data.get("error"):
            error_info = data["error"]
            error_code = error_info.get("code", "unknown")
            error_msg = error_info.get("message", str(error_info))
            raise BlockchainError(f"RPC error {error_code}: {error_msg}")

        return data.get("result")

    def _block_time(self, height: int) -> tuple[str, BlockTime]:
        block_hash = self.get_block_hash(height)
        header = self._rpc_call("getblockheader", [block_hash])
        return block_hash, BlockTime(height=height, timestamp=header.get("time", 0))

    def get_script_history(self, scripts: list[Script]) -> dict[Script, list[ChainTransaction]]:
        result: dict[Script, list[ChainTransaction]] = {}
        by_hex = {script.hex(): script for script in scripts}
        block_cache: dict[int, tuple[str, BlockTime]] = {}

        for i in range(0, len(scripts), SCAN_BATCH_SIZE):
            chunk = scripts[i : i + SCAN_BATCH_SIZE]
            descriptors = [f"raw({script.hex()})" for script in chunk]
            scan = self._rpc_call(
                "scantxoutset", ["start", descriptors], timeout=self.scan_timeout
            )
            if not scan:
                continue

            for unspent in scan.get("unspents", []):
                script = by_hex.get(unspent.get("scriptPubKey", ""))
                if script is None:
                    logger.warning(f"Scan returned an unrequested script: {unspent}")
                    continue

                height = unspent.get("height", 0)
                params: list[Any] = [unspent["txid"], False]
                confirmation_time = None
                if height > 0:
                    if height not in block_cache:
                        block_cache[height] = self._block_time(height)
                    block_hash, confirmation_time = block_cache[height]
                    params.append(block_hash)

                raw_hex = self._rpc_call("getrawtransaction", params)
                history = result.setdefault(script, [])
                if all(tx.txid != unspent["txid"] for tx in history):
                    history.append(
                        ChainTransaction(unspent["txid"], bytes.fromhex(raw_hex), confirmation_time)
                    )

            logger.debug(f"Scanned {len(chunk)} scripts, found {len(scan.get('unspents', []))}")

        return result

    def broadcast_transaction(self, tx_hex: str) -> str:
        txid = self._rpc_call("sendrawtransaction", [tx_hex])
        logger.info(f"Broadcast transaction: {txid}")
        return txid

    def estimate_fee(self, target_blocks: int) -> float:
        result = self._rpc_call("estimatesmartfee", [target_blocks])
        if not result or "feerate" not in result:
            raise BlockchainError(f"No fee estimate available for {target_blocks} blocks")
        btc_per_kvb = result["feerate"]
        sat_per_vbyte = btc_per_kvb * 100_000_000 / 1000
        logger.debug(f"Estimated fee for {target_blocks} blocks: {sat_per_vbyte} sat/vB")
        return sat_per_vbyte

    def get_block_height(self) -> int:
        info = self._rpc_call("getblockchaininfo", [])
        return info.get("blocks", 0)

    def get_block_hash(self, block_height: int) -> str:
        return self._rpc_call("getblockhash", [block_height])

    def close(self) -> None:
        self.client.close()
