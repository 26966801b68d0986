"""
Bitcoin transaction wire format: parsing, serialization, txid and weight.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from descwallet.constants import SEQUENCE_FINAL, TX_VERSION
from descwallet.models import OutPoint
from descwallet.wallet.address import Script, encode_varint


class TransactionParseError(ValueError):
    pass


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        value = int.from_bytes(data[offset : offset + 2], "little")
        return value, offset + 2
    if first == 0xFE:
        value = int.from_bytes(data[offset : offset + 4], "little")
        return value, offset + 4
    value = int.from_bytes(data[offset : offset + 8], "little")
    return value, offset + 8


def _read(data: bytes, offset: int, size: int) -> tuple[bytes, int]:
    chunk = data[offset : offset + size]
    if len(chunk) != size:
        raise TransactionParseError("Unexpected end of transaction data")
    return chunk, offset + size


@dataclass
class TxIn:
    previous_output: OutPoint
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: list[bytes] = field(default_factory=list)

    def serialize(self) -> bytes:
        return (
            bytes.fromhex(self.previous_output.txid)[::-1]
            + self.previous_output.vout.to_bytes(4, "little")
            + encode_varint(len(self.script_sig))
            + self.script_sig
            + self.sequence.to_bytes(4, "little")
        )

    def serialize_witness(self) -> bytes:
        return encode_varint(len(self.witness)) + b"".join(
            encode_varint(len(item)) + item for item in self.witness
        )


@dataclass
class TxOutput:
    value: int
    script_pubkey: Script

    def serialize(self) -> bytes:
        raw = self.script_pubkey.raw
        return self.value.to_bytes(8, "little") + encode_varint(len(raw)) + raw


@dataclass
class Transaction:
    version: int = TX_VERSION
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOutput] = field(default_factory=list)
    locktime: int = 0

    @classmethod
    def deserialize(cls, tx_bytes: bytes) -> Transaction:
        try:
            offset = 0
            version = int.from_bytes(tx_bytes[0:4], "little")
            offset += 4

            segwit = False
            if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
                segwit = True
                offset += 2

            input_count, offset = read_varint(tx_bytes, offset)
            inputs: list[TxIn] = []
            for _ in range(input_count):
                txid_le, offset = _read(tx_bytes, offset, 32)
                vout_raw, offset = _read(tx_bytes, offset, 4)
                script_len, offset = read_varint(tx_bytes, offset)
                script_sig, offset = _read(tx_bytes, offset, script_len)
                sequence_raw, offset = _read(tx_bytes, offset, 4)
                inputs.append(
                    TxIn(
                        OutPoint(txid_le[::-1].hex(), int.from_bytes(vout_raw, "little")),
                        script_sig,
                        int.from_bytes(sequence_raw, "little"),
                    )
                )

            output_count, offset = read_varint(tx_bytes, offset)
            outputs: list[TxOutput] = []
            for _ in range(output_count):
                value_raw, offset = _read(tx_bytes, offset, 8)
                script_len, offset = read_varint(tx_bytes, offset)
                script, offset = _read(tx_bytes, offset, script_len)
                outputs.append(TxOutput(int.from_bytes(value_raw, "little"), Script(script)))

            if segwit:
                for txin in inputs:
                    stack_count, offset = read_varint(tx_bytes, offset)
                    for _ in range(stack_count):
                        item_len, offset = read_varint(tx_bytes, offset)
                        item, offset = _read(tx_bytes, offset, item_len)
                        txin.witness.append(item)

            locktime_raw, offset = _read(tx_bytes, offset, 4)
            if offset != len(tx_bytes):
                raise TransactionParseError("Trailing bytes after transaction")
            return cls(version, inputs, outputs, int.from_bytes(locktime_raw, "little"))

        except (IndexError, TransactionParseError) as e:
            raise TransactionParseError(f"Failed to parse transaction: {e}") from e

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        return cls.deserialize(bytes.fromhex(tx_hex))

    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness()
        result = self.version.to_bytes(4, "little")
        if segwit:
            result += b"\x00\x01"
        result += encode_varint(len(self.inputs))
        result += b"".join(txin.serialize() for txin in self.inputs)
        result += encode_varint(len(self.outputs))
        result += b"".join(txout.serialize() for txout in self.outputs)
        if segwit:
            result += b"".join(txin.serialize_witness() for txin in self.inputs)
        result += self.locktime.to_bytes(4, "little")
        return result

    def serialize_hex(self) -> str:
        return self.serialize().hex()

    def txid(self) -> str:
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    def weight(self) -> int:
        base_size = len(self.serialize(include_witness=False))
        total_size = len(self.serialize())
        return base_size * 3 + total_size

    def vsize(self) -> int:
        return (self.weight() + 3) // 4

    def is_rbf_signaling(self) -> bool:
        return any(txin.sequence < 0xFFFFFFFE for txin in self.inputs)

    def is_coinbase(self) -> bool:
        return len(self.inputs) == 1 and self.inputs[0].previous_output.txid == "00" * 32

    def copy(self) -> Transaction:
        return Transaction.deserialize(self.serialize())
