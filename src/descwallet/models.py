"""
Wallet data models.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum


class Network(str, Enum):
    BITCOIN = "bitcoin"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @classmethod
    def _missing_(cls, value: object) -> Network | None:
        if isinstance(value, str) and value.lower() == "mainnet":
            return cls.BITCOIN
        return None

    @property
    def is_mainnet(self) -> bool:
        return self is Network.BITCOIN

    def accepts(self, key_is_mainnet: bool) -> bool:
        """Whether a key encoded for mainnet (or for any test network) is valid here."""
        return self.is_mainnet == key_is_mainnet


class KeychainKind(str, Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"

    @property
    def index(self) -> int:
        return 0 if self is KeychainKind.EXTERNAL else 1


class AddressIndex(str, Enum):
    """Address selection strategy for Wallet.get_address."""

    # Reveal the next unused derivation index
    NEW = "new"
    # Reuse the last revealed address unless a received transaction used it
    LAST_UNUSED = "last_unused"


@dataclass(frozen=True)
class OutPoint:
    """A reference to a transaction output."""

    txid: str
    vout: int

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class TxOut:
    """A transaction output as seen by callers: value and rendered address."""

    value: int
    address: str


@dataclass(frozen=True)
class LocalUtxo:
    outpoint: OutPoint
    txout: TxOut
    keychain: KeychainKind
    is_spent: bool


@dataclass(frozen=True)
class BlockTime:
    """Height and timestamp of the block confirming a transaction."""

    height: int
    timestamp: int


@dataclass(frozen=True)
class TransactionDetails:
    txid: str
    # Sum of owned outputs of this transaction
    received: int
    # Sum of owned inputs of this transaction
    sent: int
    # Known for every transaction the wallet built; may be missing for received ones
    fee: int | None = None
    # None while unconfirmed
    confirmation_time: BlockTime | None = None
    # Raw serialized transaction, only filled when requested
    transaction: bytes | None = None


@dataclass(frozen=True)
class AddressInfo:
    index: int
    address: str


@dataclass(frozen=True)
class Balance:
    # Coinbase outputs not yet matured
    immature: int = 0
    # Unconfirmed UTXOs generated by a wallet tx
    trusted_pending: int = 0
    # Unconfirmed UTXOs received from an external wallet
    untrusted_pending: int = 0
    # Confirmed and immediately spendable balance
    confirmed: int = 0

    @property
    def spendable(self) -> int:
        return self.trusted_pending + self.confirmed

    @property
    def total(self) -> int:
        return self.immature + self.trusted_pending + self.untrusted_pending + self.confirmed


@dataclass(frozen=True)
class FeeRate:
    """Fee rate in satoshis per virtual byte."""

    sat_per_vb: float

    def __post_init__(self) -> None:
        if self.sat_per_vb < 0 or math.isnan(self.sat_per_vb):
            raise ValueError(f"Invalid fee rate: {self.sat_per_vb}")

    @classmethod
    def from_sat_per_vb(cls, sat_per_vb: float) -> FeeRate:
        return cls(float(sat_per_vb))

    @classmethod
    def from_wu(cls, fee: int, weight: int) -> FeeRate:
        """Fee rate paid by a transaction of ``weight`` weight units spending ``fee``."""
        return cls(fee / (weight / 4.0))

    def as_sat_per_vb(self) -> float:
        return self.sat_per_vb

    def fee_vb(self, vbytes: float) -> int:
        # strip float noise before the ceiling
        return math.ceil(round(self.sat_per_vb * vbytes, 8))

    def fee_wu(self, weight: int) -> int:
        return self.fee_vb(weight / 4.0)
