"""
Signature hashes and input signing for P2PKH, P2WPKH and P2SH-P2WPKH.
"""

from __future__ import annotations

from coincurve import PrivateKey

from descwallet.errors import SigningError
from descwallet.wallet.address import Script, encode_varint, p2pkh_script, push_data
from descwallet.wallet.transaction import Transaction, hash256

SIGHASH_ALL = 1


def compute_sighash_legacy(
    tx: Transaction, input_index: int, script_code: bytes, sighash_type: int = SIGHASH_ALL
) -> bytes:
    """Pre-segwit signature hash (SIGHASH_ALL only)."""
    if input_index >= len(tx.inputs):
        raise SigningError("Input index out of range")
    if sighash_type != SIGHASH_ALL:
        raise SigningError(f"Unsupported sighash type: {sighash_type}")

    preimage = tx.version.to_bytes(4, "little") + encode_varint(len(tx.inputs))
    for i, txin in enumerate(tx.inputs):
        script = script_code if i == input_index else b""
        preimage += (
            bytes.fromhex(txin.previous_output.txid)[::-1]
            + txin.previous_output.vout.to_bytes(4, "little")
            + encode_varint(len(script))
            + script
            + txin.sequence.to_bytes(4, "little")
        )
    preimage += encode_varint(len(tx.outputs))
    preimage += b"".join(txout.serialize() for txout in tx.outputs)
    preimage += tx.locktime.to_bytes(4, "little") + sighash_type.to_bytes(4, "little")
    return hash256(preimage)


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash."""
    if input_index >= len(tx.inputs):
        raise SigningError("Input index out of range")

    hash_prevouts = hash256(
        b"".join(
            bytes.fromhex(txin.previous_output.txid)[::-1]
            + txin.previous_output.vout.to_bytes(4, "little")
            for txin in tx.inputs
        )
    )
    hash_sequence = hash256(b"".join(txin.sequence.to_bytes(4, "little") for txin in tx.inputs))
    hash_outputs = hash256(b"".join(txout.serialize() for txout in tx.outputs))

    target = tx.inputs[input_index]
    preimage = (
        tx.version.to_bytes(4, "little")
        + hash_prevouts
        + hash_sequence
        + bytes.fromhex(target.previous_output.txid)[::-1]
        + target.previous_output.vout.to_bytes(4, "little")
        + encode_varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + target.sequence.to_bytes(4, "little")
        + hash_outputs
        + tx.locktime.to_bytes(4, "little")
        + sighash_type.to_bytes(4, "little")
    )
    return hash256(preimage)


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """BIP143 scriptCode for P2WPKH: the P2PKH script of the same key hash."""
    return p2pkh_script(pubkey_bytes).raw


def _sign(sighash: bytes, secret: bytes, sighash_type: int) -> bytes:
    # sighash is already SHA256d
    signature = PrivateKey(secret).sign(sighash, hasher=None)
    return signature + bytes([sighash_type])


def sign_p2wpkh_input(
    tx: Transaction,
    input_index: int,
    value: int,
    secret: bytes,
    pubkey: bytes,
    redeem_script: Script | None = None,
    sighash_type: int = SIGHASH_ALL,
) -> tuple[bytes, list[bytes]]:
    """
    Sign a native or P2SH-wrapped P2WPKH input.

    Returns:
        (script_sig, witness) to place on the input
    """
    sighash = compute_sighash_segwit(
        tx, input_index, create_p2wpkh_script_code(pubkey), value, sighash_type
    )
    signature = _sign(sighash, secret, sighash_type)
    script_sig = push_data(redeem_script.raw) if redeem_script is not None else b""
    return script_sig, [signature, pubkey]


def sign_p2pkh_input(
    tx: Transaction,
    input_index: int,
    secret: bytes,
    pubkey: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Sign a legacy P2PKH input. Returns the scriptSig."""
    script_code = p2pkh_script(pubkey).raw
    sighash = compute_sighash_legacy(tx, input_index, script_code, sighash_type)
    signature = _sign(sighash, secret, sighash_type)
    return push_data(signature) + push_data(pubkey)


def verify_pubkey(secret: bytes, pubkey: bytes) -> bool:
    """Check that ``secret`` controls ``pubkey`` (compressed or not)."""
    key = PrivateKey(secret).public_key
    return key.format(compressed=len(pubkey) == 33) == pubkey

