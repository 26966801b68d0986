"""
Descriptor keys: extended or single keys carrying an optional origin,
an un-baked derivation suffix and a wildcard marker.

Both key types are immutable values. A key is either *derivable*
(backed by an extended key with a chain code) or *single* (a bare
private/public key). ``derive`` and ``extend`` on a single key raise
:class:`NotDerivableError`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import base58
from coincurve import PrivateKey, PublicKey
from loguru import logger

from descwallet.constants import WIF_MAINNET, WIF_TESTNET
from descwallet.errors import (
    InvalidHardenedDerivationError,
    KeyParseError,
    MalformedPathError,
    NotDerivableError,
)
from descwallet.models import Network
from descwallet.wallet.bip32 import ExtendedPrivKey, ExtendedPubKey, decode_extended_key
from descwallet.wallet.derivation import ChildNumber, DerivationPath, KeyOrigin
from descwallet.wallet.mnemonic import Mnemonic, WordCount


class Wildcard(str, Enum):
    NONE = ""
    UNHARDENED = "/*"
    HARDENED = "/*'"


@dataclass(frozen=True)
class SinglePriv:
    """A bare private key as imported from WIF."""

    secret: bytes
    compressed: bool = True
    mainnet: bool = True

    def public_key_bytes(self) -> bytes:
        return PrivateKey(self.secret).public_key.format(compressed=self.compressed)

    def to_wif(self) -> str:
        prefix = WIF_MAINNET if self.mainnet else WIF_TESTNET
        payload = bytes([prefix]) + self.secret + (b"\x01" if self.compressed else b"")
        return base58.b58encode_check(payload).decode()

    def __repr__(self) -> str:
        return "SinglePriv(<secret>)"


@dataclass(frozen=True)
class SinglePub:
    public_key: bytes


@dataclass(frozen=True)
class _KeyExpression:
    origin: KeyOrigin | None
    body: str
    path: DerivationPath
    wildcard: Wildcard


def _split_key_expression(text: str) -> _KeyExpression:
    """Split ``[origin]KEY/path/*`` into its parts without decoding KEY."""
    origin = None
    if text.startswith("["):
        end = text.find("]")
        if end == -1:
            raise KeyParseError(f"Unterminated key origin in {text!r}")
        try:
            origin = KeyOrigin.parse(text[1:end])
        except MalformedPathError as e:
            raise KeyParseError(f"Invalid key origin: {e}") from e
        text = text[end + 1 :]

    body, slash, suffix = text.partition("/")
    if not body:
        raise KeyParseError("Empty key expression")
    suffix = slash + suffix

    wildcard = Wildcard.NONE
    if suffix.endswith("/*"):
        wildcard = Wildcard.UNHARDENED
        suffix = suffix[:-2]
    elif suffix.endswith(("/*'", "/*h")):
        wildcard = Wildcard.HARDENED
        suffix = suffix[:-3]

    try:
        path = DerivationPath.parse_suffix(suffix)
    except MalformedPathError as e:
        raise KeyParseError(f"Invalid derivation suffix: {e}") from e
    return _KeyExpression(origin, body, path, wildcard)


def _decode_wif(text: str) -> SinglePriv | None:
    try:
        data = base58.b58decode_check(text)
    except ValueError:
        return None
    if len(data) not in (33, 34) or data[0] not in (WIF_MAINNET, WIF_TESTNET):
        return None
    if len(data) == 34 and data[33] != 0x01:
        return None
    secret = data[1:33]
    try:
        PrivateKey(secret)
    except ValueError as e:
        raise KeyParseError(f"Invalid WIF private key: {e}") from e
    return SinglePriv(secret, compressed=len(data) == 34, mainnet=data[0] == WIF_MAINNET)


def _decode_hex_pubkey(text: str) -> SinglePub | None:
    if len(text) not in (66, 130):
        return None
    try:
        raw = bytes.fromhex(text)
        PublicKey(raw)
    except ValueError:
        return None
    return SinglePub(raw)


def _render(origin: KeyOrigin | None, body: str, path: DerivationPath, wildcard: Wildcard) -> str:
    prefix = f"[{origin}]" if origin is not None else ""
    return prefix + body + path.suffix_str() + wildcard.value


def _index_step(wildcard: Wildcard, index: int) -> tuple[ChildNumber, ...]:
    if wildcard is Wildcard.NONE:
        return ()
    return (ChildNumber(index, hardened=wildcard is Wildcard.HARDENED),)


@dataclass(frozen=True)
class DescriptorSecretKey:
    key: ExtendedPrivKey | SinglePriv
    origin: KeyOrigin | None = None
    derivation_path: DerivationPath = field(default_factory=DerivationPath)
    wildcard: Wildcard = Wildcard.NONE

    @classmethod
    def new(
        cls, network: Network, mnemonic: Mnemonic, password: str | None = None
    ) -> DescriptorSecretKey:
        """Master key for ``mnemonic``, ready to be used as a range key (``/*``)."""
        seed = mnemonic.to_seed(password)
        xprv = ExtendedPrivKey.new_master(seed, network.is_mainnet)
        logger.debug(f"Created master key {xprv.fingerprint().hex()} for {network.value}")
        return cls(xprv, None, DerivationPath(), Wildcard.UNHARDENED)

    @classmethod
    def generate(
        cls, network: Network, word_count: WordCount | int = WordCount.WORDS24
    ) -> DescriptorSecretKey:
        return cls.new(network, Mnemonic.new(word_count))

    @classmethod
    def from_entropy(cls, network: Network, entropy: bytes) -> DescriptorSecretKey:
        return cls.new(network, Mnemonic.from_entropy(entropy))

    @classmethod
    def from_string(cls, text: str) -> DescriptorSecretKey:
        """
        Parse a WIF key or an ``xprv``/``tprv`` key expression.

        Raises:
            KeyParseError: for anything else, public keys included
        """
        expr = _split_key_expression(text.strip())

        single = _decode_wif(expr.body)
        if single is not None:
            if len(expr.path) or expr.wildcard is not Wildcard.NONE:
                raise KeyParseError("Single keys cannot carry a derivation path")
            return cls(single, expr.origin)

        key = decode_extended_key(expr.body)
        if not isinstance(key, ExtendedPrivKey):
            raise KeyParseError("Expected a secret key, found an extended public key")
        return cls(key, expr.origin, expr.path, expr.wildcard)

    @property
    def is_derivable(self) -> bool:
        return isinstance(self.key, ExtendedPrivKey)

    @property
    def mainnet(self) -> bool:
        return self.key.mainnet

    def derive(self, path: DerivationPath) -> DescriptorSecretKey:
        """
        Compute the child key at ``path`` and bake the path into the origin.
        The trailing derivation suffix of the result is empty.
        """
        if isinstance(self.key, SinglePriv):
            raise NotDerivableError("Cannot derive from a single key")

        derived = self.key.derive_priv(path)
        if self.origin is not None:
            origin = self.origin.extend(path)
        else:
            origin = KeyOrigin(self.key.fingerprint(), path)
        return DescriptorSecretKey(derived, origin, DerivationPath(), self.wildcard)

    def extend(self, path: DerivationPath) -> DescriptorSecretKey:
        """Append ``path`` to the trailing suffix without touching key material."""
        if isinstance(self.key, SinglePriv):
            raise NotDerivableError("Cannot extend from a single key")
        return DescriptorSecretKey(
            self.key, self.origin, self.derivation_path.extend(path), self.wildcard
        )

    def as_public(self) -> DescriptorPublicKey:
        """
        Public counterpart. Hardened steps of the trailing suffix are
        derived here and moved into the origin, since a public key cannot
        derive them later.
        """
        if isinstance(self.key, SinglePriv):
            return DescriptorPublicKey(SinglePub(self.key.public_key_bytes()), self.origin)

        hardened_path, unhardened_path = self.derivation_path.split_last_hardened()
        xprv = self.key.derive_priv(hardened_path)
        if self.origin is not None:
            origin: KeyOrigin | None = self.origin.extend(hardened_path)
        elif len(hardened_path):
            origin = KeyOrigin(self.key.fingerprint(), hardened_path)
        else:
            origin = None
        return DescriptorPublicKey(xprv.to_public(), origin, unhardened_path, self.wildcard)

    def secret_bytes(self) -> bytes:
        return self.key.secret

    def at_derivation_index(self, index: int) -> bytes:
        """Secret scalar of the key used at range position ``index``."""
        if isinstance(self.key, SinglePriv):
            return self.key.secret
        path = self.derivation_path.extend(_index_step(self.wildcard, index))
        return self.key.derive_priv(path).secret

    def as_string(self) -> str:
        body = self.key.to_wif() if isinstance(self.key, SinglePriv) else str(self.key)
        return _render(self.origin, body, self.derivation_path, self.wildcard)

    def __str__(self) -> str:
        return self.as_string()

    def __repr__(self) -> str:
        origin = f"[{self.origin}]" if self.origin is not None else ""
        return f"DescriptorSecretKey({origin}<secret>{self.derivation_path.suffix_str()})"


@dataclass(frozen=True)
class DescriptorPublicKey:
    key: ExtendedPubKey | SinglePub
    origin: KeyOrigin | None = None
    derivation_path: DerivationPath = field(default_factory=DerivationPath)
    wildcard: Wildcard = Wildcard.NONE

    @classmethod
    def from_string(cls, text: str) -> DescriptorPublicKey:
        """
        Parse a hex public key or an ``xpub``/``tpub`` key expression.

        Raises:
            KeyParseError: for anything else, secret keys included
        """
        expr = _split_key_expression(text.strip())

        single = _decode_hex_pubkey(expr.body)
        if single is not None:
            if len(expr.path) or expr.wildcard is not Wildcard.NONE:
                raise KeyParseError("Single keys cannot carry a derivation path")
            return cls(single, expr.origin)

        key = decode_extended_key(expr.body)
        if not isinstance(key, ExtendedPubKey):
            raise KeyParseError("Expected a public key, found an extended private key")
        return cls(key, expr.origin, expr.path, expr.wildcard)

    @property
    def is_derivable(self) -> bool:
        return isinstance(self.key, ExtendedPubKey)

    @property
    def mainnet(self) -> bool | None:
        """Network kind of an extended key; ``None`` for single keys (valid anywhere)."""
        if isinstance(self.key, SinglePub):
            return None
        return self.key.mainnet

    @property
    def has_wildcard(self) -> bool:
        return self.wildcard is not Wildcard.NONE

    def derive(self, path: DerivationPath) -> DescriptorPublicKey:
        """
        Raises:
            NotDerivableError: on a single key
            InvalidHardenedDerivationError: if ``path`` has a hardened step
        """
        if isinstance(self.key, SinglePub):
            raise NotDerivableError("Cannot derive from a single key")

        derived = self.key.derive_pub(path)
        if self.origin is not None:
            origin = self.origin.extend(path)
        else:
            origin = KeyOrigin(self.key.fingerprint(), path)
        return DescriptorPublicKey(derived, origin, DerivationPath(), self.wildcard)

    def extend(self, path: DerivationPath) -> DescriptorPublicKey:
        if isinstance(self.key, SinglePub):
            raise NotDerivableError("Cannot extend from a single key")
        return DescriptorPublicKey(
            self.key, self.origin, self.derivation_path.extend(path), self.wildcard
        )

    def at_derivation_index(self, index: int) -> bytes:
        """Serialized public key at range position ``index``."""
        if isinstance(self.key, SinglePub):
            return self.key.public_key
        if self.wildcard is Wildcard.HARDENED:
            raise InvalidHardenedDerivationError(
                "Hardened wildcards need the secret key to expand"
            )
        path = self.derivation_path.extend(_index_step(self.wildcard, index))
        return self.key.derive_pub(path).public_key

    def master_fingerprint(self) -> bytes:
        if self.origin is not None:
            return self.origin.fingerprint
        if isinstance(self.key, SinglePub):
            return b"\x00" * 4
        return self.key.fingerprint()

    def full_derivation_path(self, index: int) -> DerivationPath:
        """Path from the master fingerprint to the key at ``index``."""
        base = self.origin.path if self.origin is not None else DerivationPath()
        if isinstance(self.key, SinglePub):
            return base
        return base.extend(self.derivation_path).extend(_index_step(self.wildcard, index))

    def as_string(self) -> str:
        if isinstance(self.key, SinglePub):
            body = self.key.public_key.hex()
        else:
            body = str(self.key)
        return _render(self.origin, body, self.derivation_path, self.wildcard)

    def __str__(self) -> str:
        return self.as_string()
