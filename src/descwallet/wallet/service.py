"""
Descriptor wallet service.

The wallet owns its descriptors and its database. All access to wallet
state goes through one lock; builders and keys are plain values and never
hold a reference to the wallet between calls.
"""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass

from loguru import logger

from descwallet.backends.base import ChainTransaction
from descwallet.backends.blockchain import Blockchain, NoopProgress, Progress
from descwallet.config import DatabaseConfig, MemoryConfig
from descwallet.constants import (
    COINBASE_MATURITY,
    DEFAULT_FEE_RATE,
    SCRIPT_LOOKAHEAD,
    SEQUENCE_FINAL,
)
from descwallet.database import Database, TxRecord, UtxoRecord, open_database
from descwallet.errors import (
    FeeRateTooLowError,
    FeeRateUnavailableError,
    FeeTooLowError,
    InsufficientFundsError,
    InvalidRbfSequenceError,
    NoRecipientsError,
    NotReplaceableError,
    NoUtxosSelectedError,
    OutputBelowDustLimitError,
    SigningError,
    TransactionConfirmedError,
    TransactionNotFoundError,
    UnknownUtxoError,
)
from descwallet.models import (
    AddressIndex,
    AddressInfo,
    Balance,
    BlockTime,
    FeeRate,
    KeychainKind,
    LocalUtxo,
    Network,
    OutPoint,
    TransactionDetails,
    TxOut,
)
from descwallet.wallet.address import Script, script_to_address
from descwallet.wallet.coin_selection import (
    Change,
    NoChange,
    WeightedUtxo,
    preselect,
    select_largest_first,
)
from descwallet.wallet.descriptor import Descriptor, ScriptType
from descwallet.wallet.psbt import PartiallySignedTransaction, PsbtInput
from descwallet.wallet.signing import sign_p2pkh_input, sign_p2wpkh_input
from descwallet.wallet.transaction import Transaction, TxIn, TxOutput
from descwallet.wallet.tx_builder import (
    BumpFeeTxBuilder,
    PreviousFee,
    ScriptAmount,
    TxBuilder,
    TxParams,
)


@dataclass(frozen=True)
class SignOptions:
    # Fill in final scriptSig/witness once every signature is present
    try_finalize: bool = True
    # Drop partial signatures and derivation info from finalized inputs
    remove_partial_sigs: bool = True


class Wallet:
    """
    Descriptor wallet with an external and an optional internal (change)
    keychain. Without a change descriptor, change goes to the external
    keychain.
    """

    def __init__(
        self,
        descriptor: Descriptor,
        change_descriptor: Descriptor | None,
        network: Network,
        database_config: DatabaseConfig | None = None,
        database: Database | None = None,
    ):
        # Re-parse against the wallet network so mismatched keys are rejected
        self._descriptors = {KeychainKind.EXTERNAL: self._check_network(descriptor, network)}
        if change_descriptor is not None:
            self._descriptors[KeychainKind.INTERNAL] = self._check_network(
                change_descriptor, network
            )
        self._network = network
        self._db = database or open_database(database_config or MemoryConfig())
        self._lock = threading.Lock()
        self._tip_height: int | None = None

        for keychain in self._descriptors:
            last = self._db.get_last_index(keychain)
            self._cache_scripts(keychain, (last or 0) + SCRIPT_LOOKAHEAD)

        logger.info(
            f"Initialized {network.value} wallet "
            f"({'with' if change_descriptor else 'without'} change descriptor)"
        )

    @staticmethod
    def _check_network(descriptor: Descriptor, network: Network) -> Descriptor:
        return Descriptor.new(descriptor.as_string_private(), network)

    def network(self) -> Network:
        return self._network

    def close(self) -> None:
        with self._lock:
            self._db.close()

    # Keychains and scripts

    def _keychain(self, keychain: KeychainKind) -> KeychainKind:
        if keychain in self._descriptors:
            return keychain
        return KeychainKind.EXTERNAL

    def _descriptor(self, keychain: KeychainKind) -> Descriptor:
        return self._descriptors[self._keychain(keychain)]

    def _cache_scripts(self, keychain: KeychainKind, up_to: int) -> None:
        descriptor = self._descriptors[keychain]
        if not descriptor.has_wildcard:
            up_to = 0
        for index in range(up_to + 1):
            if self._db.get_script_pubkey(keychain, index) is None:
                self._db.set_script_pubkey(descriptor.script_pubkey_at(index), keychain, index)

    def _script_at(self, keychain: KeychainKind, index: int) -> Script:
        script = self._db.get_script_pubkey(keychain, index)
        if script is None:
            self._cache_scripts(keychain, index)
            script = self._descriptors[keychain].script_pubkey_at(index)
        return script

    def _reveal(self, keychain: KeychainKind, index: int) -> None:
        if not self._descriptors[keychain].has_wildcard:
            index = 0
        last = self._db.get_last_index(keychain)
        if last is None or index > last:
            self._db.set_last_index(keychain, index)
        self._cache_scripts(keychain, index + SCRIPT_LOOKAHEAD)

    def _is_used(self, script: Script) -> bool:
        return any(utxo.script_pubkey == script for utxo in self._db.iter_utxos())

    def _next_index(self, keychain: KeychainKind, address_index: AddressIndex) -> int:
        if not self._descriptors[keychain].has_wildcard:
            return 0
        last = self._db.get_last_index(keychain)
        if last is None:
            return 0
        if address_index is AddressIndex.LAST_UNUSED and not self._is_used(
            self._script_at(keychain, last)
        ):
            return last
        return last + 1

    def _get_address(self, keychain: KeychainKind, address_index: AddressIndex) -> AddressInfo:
        keychain = self._keychain(keychain)
        index = self._next_index(keychain, address_index)
        self._reveal(keychain, index)
        return AddressInfo(index, self._descriptors[keychain].address_at(index))

    def get_address(self, address_index: AddressIndex = AddressIndex.NEW) -> AddressInfo:
        with self._lock:
            return self._get_address(KeychainKind.EXTERNAL, address_index)

    def get_internal_address(
        self, address_index: AddressIndex = AddressIndex.NEW
    ) -> AddressInfo:
        with self._lock:
            return self._get_address(KeychainKind.INTERNAL, address_index)

    def is_mine(self, script: Script) -> bool:
        with self._lock:
            return self._db.get_path_from_script(script) is not None

    # Transactions and UTXOs

    def insert_tx(self, tx: Transaction, confirmation_time: BlockTime | None = None) -> None:
        """Record a transaction relevant to the wallet and update its UTXOs."""
        with self._lock:
            self._store_tx(tx.txid(), tx.serialize(), confirmation_time)
            self._reindex()

    def _store_tx(self, txid: str, raw: bytes, confirmation_time: BlockTime | None) -> None:
        existing = self._db.get_tx(txid)
        fee = existing.fee if existing else None
        self._db.set_tx(TxRecord(txid, raw, 0, 0, fee, confirmation_time))

    def _reindex(self) -> None:
        """Rebuild UTXOs, spent flags and per-transaction amounts from stored transactions."""
        records = {record.txid: record for record in self._db.iter_txs()}
        parsed = {txid: Transaction.deserialize(r.raw) for txid, r in records.items()}

        spent = {
            txin.previous_output for tx in parsed.values() for txin in tx.inputs
        }
        owned: dict[OutPoint, UtxoRecord] = {}
        for txid, tx in parsed.items():
            for vout, txout in enumerate(tx.outputs):
                path = self._db.get_path_from_script(txout.script_pubkey)
                if path is None:
                    continue
                keychain, index = path
                outpoint = OutPoint(txid, vout)
                owned[outpoint] = UtxoRecord(
                    outpoint, txout.value, txout.script_pubkey, keychain, outpoint in spent
                )
                self._reveal(keychain, index)

        for utxo in owned.values():
            self._db.set_utxo(utxo)

        for txid, tx in parsed.items():
            record = records[txid]
            received = sum(u.value for op, u in owned.items() if op.txid == txid)
            sent = sum(
                owned[txin.previous_output].value
                for txin in tx.inputs
                if txin.previous_output in owned
            )
            fee = record.fee
            prev_values = [self._prevout_value(parsed, txin) for txin in tx.inputs]
            if not tx.is_coinbase() and all(v is not None for v in prev_values):
                fee = sum(v for v in prev_values if v is not None) - sum(
                    out.value for out in tx.outputs
                )
            self._db.set_tx(
                TxRecord(txid, record.raw, received, sent, fee, record.confirmation_time)
            )

    @staticmethod
    def _prevout_value(parsed: dict[str, Transaction], txin: TxIn) -> int | None:
        prev = parsed.get(txin.previous_output.txid)
        if prev is None or txin.previous_output.vout >= len(prev.outputs):
            return None
        return prev.outputs[txin.previous_output.vout].value

    def _local_utxo(self, record: UtxoRecord) -> LocalUtxo:
        address = script_to_address(record.script_pubkey, self._network)
        return LocalUtxo(
            record.outpoint, TxOut(record.value, address), record.keychain, record.is_spent
        )

    def list_unspent(self) -> list[LocalUtxo]:
        with self._lock:
            return [self._local_utxo(u) for u in self._db.iter_utxos() if not u.is_spent]

    def list_transactions(self, include_raw: bool = False) -> list[TransactionDetails]:
        with self._lock:
            records = list(self._db.iter_txs())
        # Confirmed by height first, then unconfirmed
        records.sort(key=_confirmation_order)
        return [self._details(record, include_raw) for record in records]

    @staticmethod
    def _details(record: TxRecord, include_raw: bool) -> TransactionDetails:
        return TransactionDetails(
            txid=record.txid,
            received=record.received,
            sent=record.sent,
            fee=record.fee,
            confirmation_time=record.confirmation_time,
            transaction=record.raw if include_raw else None,
        )

    def get_balance(self) -> Balance:
        with self._lock:
            records = {r.txid: r for r in self._db.iter_txs()}
            tip = self._tip_height
            if tip is None:
                tip = max(
                    (r.confirmation_time.height for r in records.values() if r.confirmation_time),
                    default=0,
                )

            immature = trusted_pending = untrusted_pending = confirmed = 0
            for utxo in self._db.iter_utxos():
                if utxo.is_spent:
                    continue
                record = records.get(utxo.outpoint.txid)
                conf = record.confirmation_time if record else None
                coinbase = record is not None and Transaction.deserialize(record.raw).is_coinbase()
                if coinbase and (conf is None or tip - conf.height + 1 < COINBASE_MATURITY):
                    immature += utxo.value
                elif conf is not None:
                    confirmed += utxo.value
                elif utxo.keychain is KeychainKind.INTERNAL:
                    trusted_pending += utxo.value
                else:
                    untrusted_pending += utxo.value

        return Balance(immature, trusted_pending, untrusted_pending, confirmed)

    # Sync

    def sync(self, blockchain: Blockchain, progress: Progress | None = None) -> None:
        """
        Scan both keychains until ``stop_gap`` consecutive scripts have no
        history, then store what was found. Holds the wallet lock throughout.
        """
        progress = progress or NoopProgress()
        stop_gap = blockchain.stop_gap
        with self._lock:
            logger.info("Syncing wallet...")
            progress.update(0.0, "Starting sync")
            found: dict[str, ChainTransaction] = {}
            keychains = list(self._descriptors)
            for position, keychain in enumerate(keychains):
                found.update(self._scan_keychain(blockchain, keychain, stop_gap))
                progress.update(
                    90.0 * (position + 1) / len(keychains), f"Scanned {keychain.value} keychain"
                )

            for record in list(self._db.iter_txs()):
                if record.confirmation_time is None and record.txid not in found:
                    logger.warning(f"Dropping unconfirmed transaction {record.txid}")
                    self._db.del_tx(record.txid)
            for chain_tx in found.values():
                self._store_tx(chain_tx.txid, chain_tx.raw, chain_tx.confirmation_time)
            self._reindex()
            self._tip_height = blockchain.get_height()

            progress.update(100.0, "Sync complete")
            logger.info(f"Sync complete: {len(found)} transactions")

    def _scan_keychain(
        self, blockchain: Blockchain, keychain: KeychainKind, stop_gap: int
    ) -> dict[str, ChainTransaction]:
        descriptor = self._descriptors[keychain]
        found: dict[str, ChainTransaction] = {}
        last_used: int | None = None
        consecutive_empty = 0
        index = 0

        while consecutive_empty < stop_gap:
            batch = list(range(index, index + stop_gap)) if descriptor.has_wildcard else [0]
            scripts = [self._script_at(keychain, i) for i in batch]
            history = blockchain.backend.get_script_history(scripts)

            for i, script in zip(batch, scripts):
                txs = history.get(script, [])
                if txs:
                    consecutive_empty = 0
                    last_used = i
                    for chain_tx in txs:
                        found[chain_tx.txid] = chain_tx
                else:
                    consecutive_empty += 1
                if consecutive_empty >= stop_gap:
                    break

            if not descriptor.has_wildcard:
                break
            index += stop_gap

        if last_used is not None:
            self._reveal(keychain, last_used)
        logger.debug(
            f"Synced {keychain.value} keychain: last used index {last_used}, "
            f"{len(found)} transactions"
        )
        return found

    # Building

    def build_tx(self) -> TxBuilder:
        return TxBuilder()

    def build_fee_bump(self, txid: str, new_fee_rate: float) -> BumpFeeTxBuilder:
        return BumpFeeTxBuilder(txid, new_fee_rate)

    def _weighted(self, record: UtxoRecord) -> WeightedUtxo:
        weight = self._descriptor(record.keychain).satisfaction_weight()
        return WeightedUtxo(self._local_utxo(record), weight)

    def _spendable_utxos(self, exclude_txid: str | None) -> list[WeightedUtxo]:
        records = {r.txid: r for r in self._db.iter_txs()}
        tip = self._tip_height or 0
        result = []
        for utxo in self._db.iter_utxos():
            if utxo.is_spent or utxo.outpoint.txid == exclude_txid:
                continue
            record = records.get(utxo.outpoint.txid)
            if record is not None and Transaction.deserialize(record.raw).is_coinbase():
                conf = record.confirmation_time
                if conf is None or tip - conf.height + 1 < COINBASE_MATURITY:
                    continue
            result.append(self._weighted(utxo))
        return result

    @staticmethod
    def _n_sequence(params: TxParams) -> int:
        if params.rbf is None:
            return SEQUENCE_FINAL
        if params.rbf.sequence > 0xFFFFFFFD:
            raise InvalidRbfSequenceError(params.rbf.sequence)
        return params.rbf.sequence

    @staticmethod
    def _fee_terms(params: TxParams) -> tuple[FeeRate, int]:
        """(rate used for selection, fee already committed)"""
        policy = params.fee_policy
        if policy is None:
            policy = FeeRate.from_sat_per_vb(DEFAULT_FEE_RATE)
        if isinstance(policy, int):
            previous = params.bumping_fee
            if previous is not None and policy < previous.absolute:
                raise FeeTooLowError(previous.absolute)
            return FeeRate.from_sat_per_vb(0.0), policy

        previous = params.bumping_fee
        if previous is not None:
            required = previous.rate + 1.0
            if policy.as_sat_per_vb() < required:
                raise FeeRateTooLowError(required)
        return policy, 0

    def create_tx(self, params: TxParams) -> tuple[PartiallySignedTransaction, TransactionDetails]:
        """
        Compile ``params`` into an unsigned PSBT.

        Raises:
            TxBuildError: any constraint that cannot be satisfied
        """
        with self._lock:
            return self._create_tx(params)

    def _create_tx(self, params: TxParams) -> tuple[PartiallySignedTransaction, TransactionDetails]:
        n_sequence = self._n_sequence(params)
        fee_rate, fee_amount = self._fee_terms(params)

        if params.manually_selected_only and not params.utxos:
            raise NoUtxosSelectedError("Manual selection requested but no UTXOs were added")
        if not params.recipients and params.drain_to is None:
            raise NoRecipientsError("No recipients and no drain target")
        if not params.recipients and not params.utxos and not params.drain_wallet:
            raise NoUtxosSelectedError("Draining needs added UTXOs or drain_wallet")

        tx = Transaction()
        outgoing = 0
        received = 0
        for index, recipient in enumerate(params.recipients):
            script = recipient.script
            if not script.is_op_return() and recipient.amount < script.dust_value():
                raise OutputBelowDustLimitError(index)
            if self._db.get_path_from_script(script) is not None:
                received += recipient.amount
            tx.outputs.append(TxOutput(recipient.amount, script))
            outgoing += recipient.amount
        fee_amount += fee_rate.fee_wu(tx.weight())

        must_use = []
        for outpoint in dict.fromkeys(params.utxos):
            record = self._db.get_utxo(outpoint)
            if record is None:
                raise UnknownUtxoError(outpoint)
            must_use.append(self._weighted(record))
        required, optional = preselect(
            self._spendable_utxos(params.replacing_txid),
            must_use,
            set(params.unspendable),
            params.change_policy,
            params.manually_selected_only,
            params.drain_wallet,
        )

        change_keychain: KeychainKind | None = None
        change_index = 0
        if params.drain_to is not None:
            drain_script = params.drain_to
        else:
            change_keychain = self._keychain(KeychainKind.INTERNAL)
            change_index = self._next_index(change_keychain, AddressIndex.LAST_UNUSED)
            drain_script = self._script_at(change_keychain, change_index)

        selection = select_largest_first(
            required, optional, fee_rate, outgoing, fee_amount, drain_script
        )
        fee_amount = selection.fee_amount
        tx.inputs = [
            TxIn(weighted.outpoint, sequence=n_sequence) for weighted in selection.selected
        ]

        excess = selection.excess
        if not tx.outputs and isinstance(excess, NoChange):
            raise InsufficientFundsError(
                excess.dust_threshold, max(excess.remaining_amount - excess.change_fee, 0)
            )
        if isinstance(excess, Change):
            if self._db.get_path_from_script(drain_script) is not None:
                received += excess.amount
            fee_amount += excess.fee
            tx.outputs.append(TxOutput(excess.amount, drain_script))
            if change_keychain is not None:
                self._reveal(change_keychain, change_index)
        else:
            fee_amount += excess.remaining_amount

        random.shuffle(tx.inputs)
        random.shuffle(tx.outputs)

        psbt = self._complete_psbt(tx)
        sent = selection.selected_amount
        details = TransactionDetails(
            txid=tx.txid(),
            received=received,
            sent=sent,
            fee=fee_amount,
            confirmation_time=None,
            transaction=tx.serialize(),
        )
        logger.info(
            f"Built transaction {details.txid}: {len(tx.inputs)} inputs, "
            f"{len(tx.outputs)} outputs, fee {fee_amount} sat"
        )
        return psbt, details

    def _complete_psbt(self, tx: Transaction) -> PartiallySignedTransaction:
        psbt = PartiallySignedTransaction(tx)
        for txin, psbt_in in zip(tx.inputs, psbt.inputs, strict=True):
            prev = self._db.get_tx(txin.previous_output.txid)
            utxo = self._db.get_utxo(txin.previous_output)
            if prev is not None:
                psbt_in.non_witness_utxo = Transaction.deserialize(prev.raw)
            if utxo is None:
                continue
            descriptor = self._descriptor(utxo.keychain)
            if descriptor.script_type.is_segwit:
                psbt_in.witness_utxo = TxOutput(utxo.value, utxo.script_pubkey)
            self._add_key_info(psbt_in, utxo.script_pubkey)

        for txout, psbt_out in zip(tx.outputs, psbt.outputs, strict=True):
            path = self._db.get_path_from_script(txout.script_pubkey)
            if path is None:
                continue
            keychain, index = path
            descriptor = self._descriptor(keychain)
            psbt_out.redeem_script = descriptor.redeem_script_at(index)
            fingerprint, full_path = descriptor.key_source_at(index)
            psbt_out.bip32_derivation[descriptor.public_key_at(index)] = (
                fingerprint,
                full_path.to_list(),
            )
        return psbt

    def _add_key_info(self, psbt_in: PsbtInput, script: Script) -> None:
        path = self._db.get_path_from_script(script)
        if path is None:
            return
        keychain, index = path
        descriptor = self._descriptor(keychain)
        psbt_in.redeem_script = descriptor.redeem_script_at(index)
        fingerprint, full_path = descriptor.key_source_at(index)
        psbt_in.bip32_derivation[descriptor.public_key_at(index)] = (
            fingerprint,
            full_path.to_list(),
        )

    def fee_bump_params(self, txid: str) -> TxParams:
        """
        Build parameters that replace the unconfirmed transaction ``txid``.

        Raises:
            TransactionNotFoundError, TransactionConfirmedError,
            NotReplaceableError, FeeRateUnavailableError, UnknownUtxoError
        """
        with self._lock:
            record = self._db.get_tx(txid)
            if record is None:
                raise TransactionNotFoundError(f"Transaction {txid} not found in the wallet")
            if record.confirmation_time is not None:
                raise TransactionConfirmedError(f"Transaction {txid} is already confirmed")
            tx = Transaction.deserialize(record.raw)
            if not tx.is_rbf_signaling():
                raise NotReplaceableError(f"Transaction {txid} does not signal RBF")
            if record.fee is None:
                raise FeeRateUnavailableError(f"Fee of transaction {txid} is unknown")

            fee_rate = FeeRate.from_wu(record.fee, tx.weight())
            for txin in tx.inputs:
                if self._db.get_utxo(txin.previous_output) is None:
                    raise UnknownUtxoError(txin.previous_output)

            outputs = list(tx.outputs)
            if len(outputs) > 1:
                change_keychain = self._keychain(KeychainKind.INTERNAL)
                change_position = None
                for position, txout in enumerate(outputs):
                    path = self._db.get_path_from_script(txout.script_pubkey)
                    if path is not None and path[0] is change_keychain:
                        change_position = position
                if change_position is not None:
                    outputs.pop(change_position)

            return TxParams(
                recipients=tuple(ScriptAmount(out.script_pubkey, out.value) for out in outputs),
                utxos=tuple(txin.previous_output for txin in tx.inputs),
                bumping_fee=PreviousFee(record.fee, fee_rate.as_sat_per_vb()),
                replacing_txid=txid,
            )

    # Signing

    def sign(self, psbt: PartiallySignedTransaction, options: SignOptions | None = None) -> bool:
        """
        Sign every input this wallet holds keys for, in place.

        Returns:
            True if every input of ``psbt`` is finalized afterwards
        """
        options = options or SignOptions()
        with self._lock:
            tx = psbt.unsigned_tx
            for input_index, (txin, psbt_in) in enumerate(zip(tx.inputs, psbt.inputs, strict=True)):
                if psbt_in.is_finalized():
                    continue
                spent = psbt_in.spent_output(txin.previous_output.vout)
                if spent is None:
                    record = self._db.get_utxo(txin.previous_output)
                    if record is None:
                        continue
                    spent = TxOutput(record.value, record.script_pubkey)

                path = self._db.get_path_from_script(spent.script_pubkey)
                if path is None:
                    continue
                keychain, index = path
                descriptor = self._descriptor(keychain)
                secret = descriptor.secret_at(index)
                if secret is None:
                    continue
                self._sign_input(psbt, input_index, descriptor, index, secret, spent, options)

            finalized = all(psbt_in.is_finalized() for psbt_in in psbt.inputs)
        logger.debug(f"Signed PSBT {psbt.txid()}, finalized: {finalized}")
        return finalized

    def _sign_input(
        self,
        psbt: PartiallySignedTransaction,
        input_index: int,
        descriptor: Descriptor,
        index: int,
        secret: bytes,
        spent: TxOutput,
        options: SignOptions,
    ) -> None:
        psbt_in = psbt.inputs[input_index]
        pubkey = descriptor.public_key_at(index)
        if descriptor.script_type is ScriptType.PKH:
            if psbt_in.non_witness_utxo is None:
                raise SigningError(f"Input {input_index} is missing its previous transaction")
            script_sig = sign_p2pkh_input(psbt.unsigned_tx, input_index, secret, pubkey)
            witness: list[bytes] | None = None
            # scriptSig is <sig> <pubkey>; keep the signature as the partial sig
            psbt_in.partial_sigs[pubkey] = script_sig[1 : 1 + script_sig[0]]
        else:
            redeem = descriptor.redeem_script_at(index)
            script_sig, witness = sign_p2wpkh_input(
                psbt.unsigned_tx, input_index, spent.value, secret, pubkey, redeem
            )
            psbt_in.partial_sigs[pubkey] = witness[0]

        if not options.try_finalize:
            return
        psbt_in.final_script_sig = script_sig or None
        psbt_in.final_script_witness = witness
        if options.remove_partial_sigs:
            psbt_in.partial_sigs = {}
            psbt_in.bip32_derivation = {}
            psbt_in.redeem_script = None


def _confirmation_order(record: TxRecord) -> tuple[bool, int]:
    conf = record.confirmation_time
    return (conf is None, conf.height if conf else 0)
