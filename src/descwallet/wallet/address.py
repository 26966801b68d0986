"""
Bitcoin address and output script utilities.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

import base58
import bech32

from descwallet.constants import (
    BECH32_HRP,
    DUST_RELAY_TX_FEE,
    P2PKH_MAINNET,
    P2PKH_TESTNET,
    P2SH_MAINNET,
    P2SH_TESTNET,
)
from descwallet.models import Network

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_1 = 0x51
OP_16 = 0x60
OP_RETURN = 0x6A
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def push_data(data: bytes) -> bytes:
    """Minimal push of ``data`` onto the script stack."""
    if len(data) < OP_PUSHDATA1:
        return bytes([len(data)]) + data
    if len(data) <= 0xFF:
        return bytes([OP_PUSHDATA1, len(data)]) + data
    return bytes([OP_PUSHDATA2]) + len(data).to_bytes(2, "little") + data


@dataclass(frozen=True)
class Script:
    """A raw output script (scriptPubKey)."""

    raw: bytes

    @classmethod
    def from_hex(cls, hex_str: str) -> Script:
        return cls(bytes.fromhex(hex_str))

    def hex(self) -> str:
        return self.raw.hex()

    def serialized_len(self) -> int:
        """Length including the compact-size prefix."""
        return len(encode_varint(len(self.raw))) + len(self.raw)

    def is_op_return(self) -> bool:
        return len(self.raw) > 0 and self.raw[0] == OP_RETURN

    def is_witness_program(self) -> bool:
        if not 4 <= len(self.raw) <= 42:
            return False
        version = self.raw[0]
        if version != OP_0 and not OP_1 <= version <= OP_16:
            return False
        return self.raw[1] == len(self.raw) - 2

    def is_p2pkh(self) -> bool:
        r = self.raw
        return (
            len(r) == 25
            and r[0] == OP_DUP
            and r[1] == OP_HASH160
            and r[2] == 0x14
            and r[23] == OP_EQUALVERIFY
            and r[24] == OP_CHECKSIG
        )

    def is_p2sh(self) -> bool:
        r = self.raw
        return len(r) == 23 and r[0] == OP_HASH160 and r[1] == 0x14 and r[22] == OP_EQUAL

    def is_p2wpkh(self) -> bool:
        return len(self.raw) == 22 and self.raw[0] == OP_0 and self.raw[1] == 0x14

    def dust_value(self) -> int:
        """Smallest non-dust amount for an output paying to this script."""
        if self.is_op_return():
            return 0
        output_size = 8 + self.serialized_len()
        if self.is_witness_program():
            spend_size = 32 + 4 + 1 + (107 // 4) + 4
        else:
            spend_size = 32 + 4 + 1 + 107 + 4
        return DUST_RELAY_TX_FEE * (output_size + spend_size) // 1000

    def __repr__(self) -> str:
        return f"Script({self.raw.hex()})"


def p2pkh_script(pubkey: bytes) -> Script:
    """OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG"""
    return Script(
        bytes([OP_DUP, OP_HASH160, 0x14]) + hash160(pubkey) + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    )


def p2wpkh_script(pubkey: bytes) -> Script:
    """OP_0 <20-byte-pubkeyhash>"""
    return Script(bytes([OP_0, 0x14]) + hash160(pubkey))


def p2sh_script(redeem_script: bytes) -> Script:
    """OP_HASH160 <20-byte-scripthash> OP_EQUAL"""
    return Script(bytes([OP_HASH160, 0x14]) + hash160(redeem_script) + bytes([OP_EQUAL]))


def op_return_script(data: bytes) -> Script:
    return Script(bytes([OP_RETURN]) + push_data(data))


def _base58_prefixes(network: Network) -> tuple[int, int]:
    if network.is_mainnet:
        return P2PKH_MAINNET, P2SH_MAINNET
    return P2PKH_TESTNET, P2SH_TESTNET


def script_to_address(script: Script, network: Network) -> str:
    """
    Render an output script as an address for ``network``.

    Raises:
        ValueError: for scripts that have no address form (e.g. OP_RETURN)
    """
    raw = script.raw
    if script.is_witness_program():
        version = 0 if raw[0] == OP_0 else raw[0] - OP_1 + 1
        result = bech32.encode(BECH32_HRP[network.value], version, raw[2:])
        if result is None:
            raise ValueError(f"Failed to encode witness program: {raw.hex()}")
        return result

    p2pkh_prefix, p2sh_prefix = _base58_prefixes(network)
    if script.is_p2pkh():
        return base58.b58encode_check(bytes([p2pkh_prefix]) + raw[3:23]).decode()
    if script.is_p2sh():
        return base58.b58encode_check(bytes([p2sh_prefix]) + raw[2:22]).decode()

    raise ValueError(f"Unsupported scriptPubKey: {raw.hex()}")


class Address:
    """
    A parsed Bitcoin address.

    Supports:
    - P2PKH (1..., m..., n...)
    - P2SH (3..., 2...)
    - Segwit v0 and v1+ (bc1..., tb1..., bcrt1...)
    """

    def __init__(self, address: str):
        self.address = address
        self._script, self._mainnet = self._parse(address)

    @staticmethod
    def _parse(address: str) -> tuple[Script, bool]:
        lowered = address.lower()
        for hrp in ("bcrt", "bc", "tb"):
            if lowered.startswith(hrp + "1"):
                witver, witprog = bech32.decode(hrp, address)
                if witver is None or witprog is None:
                    raise ValueError(f"Invalid bech32 address: {address}")
                opcode = OP_0 if witver == 0 else OP_1 + witver - 1
                program = bytes(witprog)
                return Script(bytes([opcode, len(program)]) + program), hrp == "bc"

        try:
            decoded = base58.b58decode_check(address)
        except ValueError as e:
            raise ValueError(f"Invalid address: {address}") from e
        if len(decoded) != 21:
            raise ValueError(f"Invalid address length: {address}")

        version = decoded[0]
        payload = decoded[1:]
        if version in (P2PKH_MAINNET, P2PKH_TESTNET):
            script = Script(
                bytes([OP_DUP, OP_HASH160, 0x14]) + payload + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
            )
            return script, version == P2PKH_MAINNET
        if version in (P2SH_MAINNET, P2SH_TESTNET):
            return Script(bytes([OP_HASH160, 0x14]) + payload + bytes([OP_EQUAL])), (
                version == P2SH_MAINNET
            )

        raise ValueError(f"Unknown address version: {version}")

    def script_pubkey(self) -> Script:
        return self._script

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Address):
            return NotImplemented
        return self._script == other._script and self._mainnet == other._mainnet

    def __hash__(self) -> int:
        return hash((self._script, self._mainnet))

    def __str__(self) -> str:
        return self.address

    def __repr__(self) -> str:
        return f"Address({self.address})"
