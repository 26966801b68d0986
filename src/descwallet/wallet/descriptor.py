"""
Single-key output script descriptors: ``pkh(KEY)``, ``wpkh(KEY)`` and
``sh(wpkh(KEY))``, with BIP380 checksums.

A descriptor holds one key expression. When that key was given as a
secret, the key map binds its public form to the secret so that
``as_string_private`` can reproduce it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from coincurve import PrivateKey
from loguru import logger

from descwallet.errors import DescriptorSyntaxError, InvalidNetworkError, KeyParseError
from descwallet.models import Network
from descwallet.wallet.address import (
    Script,
    p2pkh_script,
    p2sh_script,
    p2wpkh_script,
    script_to_address,
)
from descwallet.wallet.derivation import DerivationPath
from descwallet.wallet.keys import (
    DescriptorPublicKey,
    DescriptorSecretKey,
    SinglePub,
    Wildcard,
)

INPUT_CHARSET = (
    "0123456789()[],'/*abcdefgh@:$%{}"
    "IJKLMNOPQRSTUVWXYZ&+-.;<=>?!^_|~"
    'ijklmnopqrstuvwxyzABCDEFGH`#"\\ '
)
CHECKSUM_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


def _polymod(c: int, val: int) -> int:
    c0 = c >> 35
    c = ((c & 0x7FFFFFFFF) << 5) ^ val
    if c0 & 1:
        c ^= 0xF5DEE51989
    if c0 & 2:
        c ^= 0xA9FDCA3312
    if c0 & 4:
        c ^= 0x1BAB10E32D
    if c0 & 8:
        c ^= 0x3706B1677A
    if c0 & 16:
        c ^= 0x644D626FFD
    return c


def descriptor_checksum(desc: str) -> str:
    """
    Compute the 8-character checksum of a descriptor (without ``#``).

    Raises:
        DescriptorSyntaxError: if ``desc`` contains a character outside the descriptor charset
    """
    c = 1
    cls = 0
    clscount = 0
    for ch in desc:
        pos = INPUT_CHARSET.find(ch)
        if pos == -1:
            raise DescriptorSyntaxError(f"Invalid character in descriptor: {ch!r}")
        c = _polymod(c, pos & 31)
        cls = cls * 3 + (pos >> 5)
        clscount += 1
        if clscount == 3:
            c = _polymod(c, cls)
            cls = 0
            clscount = 0
    if clscount > 0:
        c = _polymod(c, cls)
    for _ in range(8):
        c = _polymod(c, 0)
    c ^= 1
    return "".join(CHECKSUM_CHARSET[(c >> (5 * (7 - j))) & 31] for j in range(8))


def add_checksum(desc: str) -> str:
    return f"{desc}#{descriptor_checksum(desc)}"


class ScriptType(str, Enum):
    PKH = "pkh"
    WPKH = "wpkh"
    SH_WPKH = "sh(wpkh)"

    @property
    def purpose(self) -> int:
        """BIP44-family purpose number of the matching template."""
        return {ScriptType.PKH: 44, ScriptType.SH_WPKH: 49, ScriptType.WPKH: 84}[self]

    @property
    def is_segwit(self) -> bool:
        return self is not ScriptType.PKH

    def wrap(self, key: str) -> str:
        if self is ScriptType.SH_WPKH:
            return f"sh(wpkh({key}))"
        return f"{self.value}({key})"

    def satisfaction_weight(self) -> int:
        """
        Maximum weight of the data needed to spend one output of this type:
        a 72-byte signature plus sighash byte and a compressed public key.
        """
        if self is ScriptType.PKH:
            # scriptSig length + <sig> + <pubkey>, non-witness
            return 4 * (1 + 73 + 34)
        if self is ScriptType.SH_WPKH:
            # scriptSig pushing the 22-byte redeem script
            return 4 * (1 + 1 + 22) + 4 + 1 + 73 + 34
        return 4 + 1 + 73 + 34


def _get_func_expr(s: str) -> tuple[str, str]:
    """Split ``func(inner)`` into ``("func", "inner")``."""
    try:
        start = s.index("(")
        end = s.rindex(")")
    except ValueError as e:
        raise DescriptorSyntaxError(f"Expected a function expression: {s!r}") from e
    if end != len(s) - 1:
        raise DescriptorSyntaxError(f"Trailing characters after expression: {s!r}")
    return s[:start], s[start + 1 : end]


def _parse_key(text: str) -> tuple[DescriptorPublicKey, DescriptorSecretKey | None]:
    try:
        secret = DescriptorSecretKey.from_string(text)
    except KeyParseError:
        secret = None
    if secret is not None:
        return secret.as_public(), secret

    try:
        return DescriptorPublicKey.from_string(text), None
    except KeyParseError as e:
        raise DescriptorSyntaxError(f"Invalid key expression {text!r}: {e}") from e


@dataclass(frozen=True)
class Descriptor:
    script_type: ScriptType
    public_key: DescriptorPublicKey
    secret_key: DescriptorSecretKey | None
    network: Network

    @classmethod
    def new(cls, descriptor: str, network: Network) -> Descriptor:
        """
        Parse a descriptor string, verifying its checksum when present.

        Raises:
            DescriptorSyntaxError: malformed expression or bad checksum
            InvalidNetworkError: an embedded key is encoded for another network
        """
        text = descriptor.strip()
        body, hash_sign, checksum = text.partition("#")
        if hash_sign:
            expected = descriptor_checksum(body)
            if checksum != expected:
                raise DescriptorSyntaxError(
                    f"Checksum mismatch: got {checksum!r}, expected {expected!r}"
                )

        func, inner = _get_func_expr(body)
        if func == "sh":
            inner_func, inner = _get_func_expr(inner)
            if inner_func != "wpkh":
                raise DescriptorSyntaxError(f"Unsupported sh() payload: {inner_func!r}")
            script_type = ScriptType.SH_WPKH
        elif func in ("pkh", "wpkh"):
            script_type = ScriptType(func)
        else:
            raise DescriptorSyntaxError(f"Unsupported descriptor function: {func!r}")

        public_key, secret_key = _parse_key(inner)
        result = cls(script_type, public_key, secret_key, network)
        result.validate()
        logger.debug(f"Parsed {script_type.value} descriptor for {network.value}")
        return result

    def validate(self) -> None:
        key_mainnet = self.public_key.mainnet
        if self.secret_key is not None:
            key_mainnet = self.secret_key.mainnet
        if key_mainnet is not None and not self.network.accepts(key_mainnet):
            raise InvalidNetworkError(
                f"Key is encoded for {'mainnet' if key_mainnet else 'a test network'}, "
                f"descriptor network is {self.network.value}"
            )

        single = self.public_key.key
        if self.script_type.is_segwit and isinstance(single, SinglePub) and (
            len(single.public_key) != 33
        ):
            raise DescriptorSyntaxError("Segwit descriptors require compressed public keys")

        if self.secret_key is None and not isinstance(single, SinglePub):
            hardened_steps = any(step.hardened for step in self.public_key.derivation_path.steps)
            if hardened_steps or self.public_key.wildcard is Wildcard.HARDENED:
                raise DescriptorSyntaxError(
                    "Hardened derivation steps after an extended public key are not derivable"
                )

    @property
    def key_map(self) -> dict[DescriptorPublicKey, DescriptorSecretKey]:
        if self.secret_key is None:
            return {}
        return {self.public_key: self.secret_key}

    @property
    def has_wildcard(self) -> bool:
        return self.public_key.has_wildcard

    def as_string(self) -> str:
        """Descriptor with every key in public form, checksum appended."""
        return add_checksum(self.script_type.wrap(self.public_key.as_string()))

    def as_string_private(self) -> str:
        """Descriptor with the secret key where one is known, checksum appended."""
        if self.secret_key is None:
            return self.as_string()
        return add_checksum(self.script_type.wrap(self.secret_key.as_string()))

    def public_key_at(self, index: int) -> bytes:
        if self.public_key.wildcard is Wildcard.HARDENED and self.secret_key is not None:
            secret = self.secret_key.at_derivation_index(index)
            return PrivateKey(secret).public_key.format(compressed=True)
        return self.public_key.at_derivation_index(index)

    def secret_at(self, index: int) -> bytes | None:
        if self.secret_key is None:
            return None
        return self.secret_key.at_derivation_index(index)

    def script_pubkey_at(self, index: int) -> Script:
        pubkey = self.public_key_at(index)
        if self.script_type is ScriptType.PKH:
            return p2pkh_script(pubkey)
        if self.script_type is ScriptType.WPKH:
            return p2wpkh_script(pubkey)
        return p2sh_script(p2wpkh_script(pubkey).raw)

    def redeem_script_at(self, index: int) -> Script | None:
        if self.script_type is not ScriptType.SH_WPKH:
            return None
        return p2wpkh_script(self.public_key_at(index))

    def address_at(self, index: int) -> str:
        return script_to_address(self.script_pubkey_at(index), self.network)

    def key_source_at(self, index: int) -> tuple[bytes, DerivationPath]:
        """(master fingerprint, full path) of the key used at ``index``."""
        return self.public_key.master_fingerprint(), self.public_key.full_derivation_path(index)

    def satisfaction_weight(self) -> int:
        return self.script_type.satisfaction_weight()

    def __str__(self) -> str:
        return self.as_string()
