"""
Partially signed transactions (BIP174, version 0).

Only the fields this wallet produces or consumes are modelled; any other
key-value pair is preserved verbatim in ``unknown`` so that combining and
re-serializing a foreign PSBT does not lose data.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field

from descwallet.errors import PsbtError
from descwallet.models import FeeRate
from descwallet.wallet.address import Script, encode_varint
from descwallet.wallet.transaction import (
    Transaction,
    TransactionParseError,
    TxOutput,
    read_varint,
)

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00

PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_BIP32_DERIVATION = 0x02

KeySource = tuple[bytes, list[int]]


def _encode_key_source(source: KeySource) -> bytes:
    fingerprint, path = source
    return fingerprint + b"".join(step.to_bytes(4, "little") for step in path)


def _decode_key_source(value: bytes) -> KeySource:
    if len(value) < 4 or len(value) % 4 != 0:
        raise PsbtError("Invalid BIP32 derivation value")
    path = [int.from_bytes(value[i : i + 4], "little") for i in range(4, len(value), 4)]
    return value[:4], path


def _write_pair(key: bytes, value: bytes) -> bytes:
    return encode_varint(len(key)) + key + encode_varint(len(value)) + value


def _read_map(data: bytes, offset: int) -> tuple[list[tuple[bytes, bytes]], int]:
    pairs: list[tuple[bytes, bytes]] = []
    while True:
        key_len, offset = read_varint(data, offset)
        if key_len == 0:
            return pairs, offset
        key = data[offset : offset + key_len]
        offset += key_len
        value_len, offset = read_varint(data, offset)
        value = data[offset : offset + value_len]
        offset += value_len
        if len(key) != key_len or len(value) != value_len:
            raise PsbtError("Truncated PSBT key-value map")
        pairs.append((key, value))


def _encode_witness(stack: list[bytes]) -> bytes:
    return encode_varint(len(stack)) + b"".join(encode_varint(len(i)) + i for i in stack)


def _decode_witness(value: bytes) -> list[bytes]:
    count, offset = read_varint(value, 0)
    stack = []
    for _ in range(count):
        size, offset = read_varint(value, offset)
        stack.append(value[offset : offset + size])
        offset += size
    return stack


@dataclass
class PsbtInput:
    non_witness_utxo: Transaction | None = None
    witness_utxo: TxOutput | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: Script | None = None
    bip32_derivation: dict[bytes, KeySource] = field(default_factory=dict)
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None

    def spent_output(self, vout: int) -> TxOutput | None:
        if self.witness_utxo is not None:
            return self.witness_utxo
        if self.non_witness_utxo is not None and vout < len(self.non_witness_utxo.outputs):
            return self.non_witness_utxo.outputs[vout]
        return None

    def serialize(self) -> bytes:
        result = b""
        if self.non_witness_utxo is not None:
            result += _write_pair(
                bytes([PSBT_IN_NON_WITNESS_UTXO]), self.non_witness_utxo.serialize()
            )
        if self.witness_utxo is not None:
            result += _write_pair(bytes([PSBT_IN_WITNESS_UTXO]), self.witness_utxo.serialize())
        for pubkey, sig in self.partial_sigs.items():
            result += _write_pair(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, sig)
        if self.sighash_type is not None:
            result += _write_pair(
                bytes([PSBT_IN_SIGHASH_TYPE]), self.sighash_type.to_bytes(4, "little")
            )
        if self.redeem_script is not None:
            result += _write_pair(bytes([PSBT_IN_REDEEM_SCRIPT]), self.redeem_script.raw)
        for pubkey, source in self.bip32_derivation.items():
            result += _write_pair(
                bytes([PSBT_IN_BIP32_DERIVATION]) + pubkey, _encode_key_source(source)
            )
        if self.final_script_sig is not None:
            result += _write_pair(bytes([PSBT_IN_FINAL_SCRIPTSIG]), self.final_script_sig)
        if self.final_script_witness is not None:
            result += _write_pair(
                bytes([PSBT_IN_FINAL_SCRIPTWITNESS]), _encode_witness(self.final_script_witness)
            )
        for key, value in self.unknown.items():
            result += _write_pair(key, value)
        return result + b"\x00"

    @classmethod
    def from_pairs(cls, pairs: list[tuple[bytes, bytes]]) -> PsbtInput:
        result = cls()
        for key, value in pairs:
            key_type = key[0]
            if key_type == PSBT_IN_NON_WITNESS_UTXO and len(key) == 1:
                result.non_witness_utxo = Transaction.deserialize(value)
            elif key_type == PSBT_IN_WITNESS_UTXO and len(key) == 1:
                amount = int.from_bytes(value[:8], "little")
                script_len, offset = read_varint(value, 8)
                result.witness_utxo = TxOutput(amount, Script(value[offset : offset + script_len]))
            elif key_type == PSBT_IN_PARTIAL_SIG:
                result.partial_sigs[key[1:]] = value
            elif key_type == PSBT_IN_SIGHASH_TYPE and len(key) == 1:
                result.sighash_type = int.from_bytes(value, "little")
            elif key_type == PSBT_IN_REDEEM_SCRIPT and len(key) == 1:
                result.redeem_script = Script(value)
            elif key_type == PSBT_IN_BIP32_DERIVATION:
                result.bip32_derivation[key[1:]] = _decode_key_source(value)
            elif key_type == PSBT_IN_FINAL_SCRIPTSIG and len(key) == 1:
                result.final_script_sig = value
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS and len(key) == 1:
                result.final_script_witness = _decode_witness(value)
            else:
                result.unknown[key] = value
        return result

    def merge(self, other: PsbtInput) -> None:
        self.non_witness_utxo = self.non_witness_utxo or other.non_witness_utxo
        self.witness_utxo = self.witness_utxo or other.witness_utxo
        self.partial_sigs = {**other.partial_sigs, **self.partial_sigs}
        if self.sighash_type is None:
            self.sighash_type = other.sighash_type
        self.redeem_script = self.redeem_script or other.redeem_script
        self.bip32_derivation = {**other.bip32_derivation, **self.bip32_derivation}
        if self.final_script_sig is None:
            self.final_script_sig = other.final_script_sig
        if self.final_script_witness is None:
            self.final_script_witness = other.final_script_witness
        self.unknown = {**other.unknown, **self.unknown}


@dataclass
class PsbtOutput:
    redeem_script: Script | None = None
    bip32_derivation: dict[bytes, KeySource] = field(default_factory=dict)
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def serialize(self) -> bytes:
        result = b""
        if self.redeem_script is not None:
            result += _write_pair(bytes([PSBT_OUT_REDEEM_SCRIPT]), self.redeem_script.raw)
        for pubkey, source in self.bip32_derivation.items():
            result += _write_pair(
                bytes([PSBT_OUT_BIP32_DERIVATION]) + pubkey, _encode_key_source(source)
            )
        for key, value in self.unknown.items():
            result += _write_pair(key, value)
        return result + b"\x00"

    @classmethod
    def from_pairs(cls, pairs: list[tuple[bytes, bytes]]) -> PsbtOutput:
        result = cls()
        for key, value in pairs:
            if key[0] == PSBT_OUT_REDEEM_SCRIPT and len(key) == 1:
                result.redeem_script = Script(value)
            elif key[0] == PSBT_OUT_BIP32_DERIVATION:
                result.bip32_derivation[key[1:]] = _decode_key_source(value)
            else:
                result.unknown[key] = value
        return result

    def merge(self, other: PsbtOutput) -> None:
        self.redeem_script = self.redeem_script or other.redeem_script
        self.bip32_derivation = {**other.bip32_derivation, **self.bip32_derivation}
        self.unknown = {**other.unknown, **self.unknown}


@dataclass
class PartiallySignedTransaction:
    unsigned_tx: Transaction
    inputs: list[PsbtInput] = field(default_factory=list)
    outputs: list[PsbtOutput] = field(default_factory=list)
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.inputs:
            self.inputs = [PsbtInput() for _ in self.unsigned_tx.inputs]
        if not self.outputs:
            self.outputs = [PsbtOutput() for _ in self.unsigned_tx.outputs]
        if len(self.inputs) != len(self.unsigned_tx.inputs) or len(self.outputs) != len(
            self.unsigned_tx.outputs
        ):
            raise PsbtError("PSBT maps do not match the unsigned transaction")

    @classmethod
    def from_string(cls, psbt_base64: str) -> PartiallySignedTransaction:
        """
        Raises:
            PsbtError: on invalid base64 or a malformed PSBT
        """
        try:
            data = base64.b64decode(psbt_base64.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise PsbtError(f"Invalid base64 PSBT: {e}") from e
        return cls.deserialize(data)

    @classmethod
    def deserialize(cls, data: bytes) -> PartiallySignedTransaction:
        if not data.startswith(PSBT_MAGIC):
            raise PsbtError("Missing PSBT magic bytes")
        try:
            global_pairs, offset = _read_map(data, len(PSBT_MAGIC))
            unsigned_tx = None
            unknown: dict[bytes, bytes] = {}
            for key, value in global_pairs:
                if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                    unsigned_tx = Transaction.deserialize(value)
                else:
                    unknown[key] = value
            if unsigned_tx is None:
                raise PsbtError("PSBT has no unsigned transaction")
            if any(txin.script_sig or txin.witness for txin in unsigned_tx.inputs):
                raise PsbtError("Unsigned transaction carries signatures")

            inputs = []
            for _ in unsigned_tx.inputs:
                pairs, offset = _read_map(data, offset)
                inputs.append(PsbtInput.from_pairs(pairs))
            outputs = []
            for _ in unsigned_tx.outputs:
                pairs, offset = _read_map(data, offset)
                outputs.append(PsbtOutput.from_pairs(pairs))
        except (IndexError, TransactionParseError) as e:
            raise PsbtError(f"Malformed PSBT: {e}") from e

        return cls(unsigned_tx, inputs, outputs, unknown)

    def to_bytes(self) -> bytes:
        result = PSBT_MAGIC
        result += _write_pair(
            bytes([PSBT_GLOBAL_UNSIGNED_TX]), self.unsigned_tx.serialize(include_witness=False)
        )
        for key, value in self.unknown.items():
            result += _write_pair(key, value)
        result += b"\x00"
        result += b"".join(psbt_in.serialize() for psbt_in in self.inputs)
        result += b"".join(psbt_out.serialize() for psbt_out in self.outputs)
        return result

    def serialize(self) -> str:
        """Base64 encoding of the PSBT."""
        return base64.b64encode(self.to_bytes()).decode()

    def txid(self) -> str:
        return self.unsigned_tx.txid()

    def extract_tx(self) -> Transaction:
        """Unsigned transaction with every finalized scriptSig/witness filled in."""
        tx = self.unsigned_tx.copy()
        for txin, psbt_in in zip(tx.inputs, self.inputs, strict=True):
            if psbt_in.final_script_sig is not None:
                txin.script_sig = psbt_in.final_script_sig
            if psbt_in.final_script_witness is not None:
                txin.witness = list(psbt_in.final_script_witness)
        return tx

    def combine(self, other: PartiallySignedTransaction) -> PartiallySignedTransaction:
        """
        Merge the signatures and metadata of two PSBTs for the same transaction.
        Neither operand is modified.

        Raises:
            PsbtError: if the unsigned transactions differ
        """
        if self.txid() != other.txid():
            raise PsbtError("Cannot combine PSBTs of different transactions")
        result = PartiallySignedTransaction.deserialize(self.to_bytes())
        for mine, theirs in zip(result.inputs, other.inputs, strict=True):
            mine.merge(theirs)
        for mine_out, theirs_out in zip(result.outputs, other.outputs, strict=True):
            mine_out.merge(theirs_out)
        result.unknown = {**other.unknown, **result.unknown}
        return result

    def fee_amount(self) -> int | None:
        """Total input value minus total output value; None if an input value is unknown."""
        total_in = 0
        for txin, psbt_in in zip(self.unsigned_tx.inputs, self.inputs, strict=True):
            spent = psbt_in.spent_output(txin.previous_output.vout)
            if spent is None:
                return None
            total_in += spent.value
        return total_in - sum(txout.value for txout in self.unsigned_tx.outputs)

    def fee_rate(self) -> FeeRate | None:
        """Fee rate over the size of the unsigned transaction."""
        fee = self.fee_amount()
        if fee is None:
            return None
        return FeeRate.from_wu(fee, self.unsigned_tx.weight())

    def __str__(self) -> str:
        return self.serialize()
