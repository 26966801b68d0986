"""
BIP32 HD key derivation.

Raw extended key material: private/public key, chain code and the
serialization metadata (depth, parent fingerprint, child number).
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

import base58
from coincurve import PrivateKey, PublicKey

from descwallet.constants import (
    SECP256K1_N,
    XPRV_MAINNET,
    XPRV_TESTNET,
    XPUB_MAINNET,
    XPUB_TESTNET,
)
from descwallet.errors import InvalidHardenedDerivationError, KeyParseError
from descwallet.wallet.address import hash160
from descwallet.wallet.derivation import ChildNumber, DerivationPath


def _ckd_hmac(chain_code: bytes, data: bytes) -> tuple[bytes, bytes]:
    hmac_result = hmac.new(chain_code, data, hashlib.sha512).digest()
    return hmac_result[:32], hmac_result[32:]


@dataclass(frozen=True)
class ExtendedPrivKey:
    """
    Extended private key.
    ``mainnet`` records which version bytes the key is encoded with; every
    test network shares the ``tprv`` prefix.
    """

    mainnet: bool
    depth: int
    parent_fingerprint: bytes
    child_number: int
    chain_code: bytes
    secret: bytes

    @classmethod
    def new_master(cls, seed: bytes, mainnet: bool) -> ExtendedPrivKey:
        """Create master key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        # Validates the scalar is inside the curve order
        PrivateKey(key_bytes)

        return cls(mainnet, 0, b"\x00" * 4, 0, chain_code, key_bytes)

    @property
    def private_key(self) -> PrivateKey:
        return PrivateKey(self.secret)

    def public_key_bytes(self) -> bytes:
        return self.private_key.public_key.format(compressed=True)

    def identifier(self) -> bytes:
        return hash160(self.public_key_bytes())

    def fingerprint(self) -> bytes:
        return self.identifier()[:4]

    def derive_priv(self, path: DerivationPath) -> ExtendedPrivKey:
        key = self
        for step in path:
            key = key._derive_child(step)
        return key

    def _derive_child(self, step: ChildNumber) -> ExtendedPrivKey:
        """Derive a child key at the given index"""
        index = step.to_int()
        if step.hardened:
            data = b"\x00" + self.secret + index.to_bytes(4, "big")
        else:
            data = self.public_key_bytes() + index.to_bytes(4, "big")

        key_offset, child_chain = _ckd_hmac(self.chain_code, data)

        parent_key_int = int.from_bytes(self.secret, "big")
        offset_int = int.from_bytes(key_offset, "big")
        if offset_int >= SECP256K1_N:
            raise ValueError("Invalid child key")

        child_key_int = (parent_key_int + offset_int) % SECP256K1_N
        if child_key_int == 0:
            raise ValueError("Invalid child key")

        return ExtendedPrivKey(
            mainnet=self.mainnet,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint(),
            child_number=index,
            chain_code=child_chain,
            secret=child_key_int.to_bytes(32, "big"),
        )

    def to_public(self) -> ExtendedPubKey:
        return ExtendedPubKey(
            mainnet=self.mainnet,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
            chain_code=self.chain_code,
            public_key=self.public_key_bytes(),
        )

    def encode(self) -> bytes:
        version = XPRV_MAINNET if self.mainnet else XPRV_TESTNET
        return (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + b"\x00"
            + self.secret
        )

    def __str__(self) -> str:
        return base58.b58encode_check(self.encode()).decode()

    def __repr__(self) -> str:
        return f"ExtendedPrivKey(fingerprint={self.fingerprint().hex()}, depth={self.depth})"


@dataclass(frozen=True)
class ExtendedPubKey:
    mainnet: bool
    depth: int
    parent_fingerprint: bytes
    child_number: int
    chain_code: bytes
    public_key: bytes

    def identifier(self) -> bytes:
        return hash160(self.public_key)

    def fingerprint(self) -> bytes:
        return self.identifier()[:4]

    def derive_pub(self, path: DerivationPath) -> ExtendedPubKey:
        """
        Derive a child public key along ``path``.

        Raises:
            InvalidHardenedDerivationError: if any step is hardened
        """
        key = self
        for step in path:
            if step.hardened:
                raise InvalidHardenedDerivationError(
                    f"Cannot derive hardened step {step} from a public key"
                )
            key = key._derive_child(step)
        return key

    def _derive_child(self, step: ChildNumber) -> ExtendedPubKey:
        index = step.to_int()
        key_offset, child_chain = _ckd_hmac(
            self.chain_code, self.public_key + index.to_bytes(4, "big")
        )
        if int.from_bytes(key_offset, "big") >= SECP256K1_N:
            raise ValueError("Invalid child key")

        child_point = PublicKey(self.public_key).add(key_offset)

        return ExtendedPubKey(
            mainnet=self.mainnet,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint(),
            child_number=index,
            chain_code=child_chain,
            public_key=child_point.format(compressed=True),
        )

    def encode(self) -> bytes:
        version = XPUB_MAINNET if self.mainnet else XPUB_TESTNET
        return (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + self.public_key
        )

    def __str__(self) -> str:
        return base58.b58encode_check(self.encode()).decode()

    def __repr__(self) -> str:
        return f"ExtendedPubKey({self})"


def decode_extended_key(text: str) -> ExtendedPrivKey | ExtendedPubKey:
    """
    Decode a base58check ``xprv``/``xpub``/``tprv``/``tpub`` string.

    Raises:
        KeyParseError: on bad checksum, length or version bytes
    """
    try:
        data = base58.b58decode_check(text)
    except ValueError as e:
        raise KeyParseError(f"Invalid extended key encoding: {e}") from e

    if len(data) != 78:
        raise KeyParseError(f"Extended key must be 78 bytes, got {len(data)}")

    version = data[:4]
    depth = data[4]
    parent_fingerprint = data[5:9]
    child_number = int.from_bytes(data[9:13], "big")
    chain_code = data[13:45]
    key_data = data[45:78]

    if version in (XPRV_MAINNET, XPRV_TESTNET):
        if key_data[0] != 0:
            raise KeyParseError("Extended private key has an invalid key prefix")
        secret = key_data[1:]
        try:
            PrivateKey(secret)
        except ValueError as e:
            raise KeyParseError(f"Invalid private key: {e}") from e
        return ExtendedPrivKey(
            version == XPRV_MAINNET, depth, parent_fingerprint, child_number, chain_code, secret
        )

    if version in (XPUB_MAINNET, XPUB_TESTNET):
        try:
            PublicKey(key_data)
        except ValueError as e:
            raise KeyParseError(f"Invalid public key: {e}") from e
        return ExtendedPubKey(
            version == XPUB_MAINNET, depth, parent_fingerprint, child_number, chain_code, key_data
        )

    raise KeyParseError(f"Unknown extended key version: {version.hex()}")
