"""
Immutable transaction builders.

Every setter returns a new builder and leaves the receiver untouched, so
a partially configured builder can be shared and branched freely. All
validation happens in ``finish``, which compiles the accumulated options
into :class:`TxParams` and hands them to the wallet.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from descwallet.constants import MAX_RBF_SEQUENCE
from descwallet.errors import AddressNotInTransactionError
from descwallet.models import FeeRate, OutPoint, TransactionDetails
from descwallet.wallet.address import Address, Script, op_return_script
from descwallet.wallet.coin_selection import ChangeSpendPolicy
from descwallet.wallet.psbt import PartiallySignedTransaction

if TYPE_CHECKING:
    from descwallet.wallet.service import Wallet


@dataclass(frozen=True)
class ScriptAmount:
    script: Script
    amount: int


@dataclass(frozen=True)
class RbfValue:
    """Replace-by-fee signaling; the default sequence is the largest signaling value."""

    sequence: int = MAX_RBF_SEQUENCE


@dataclass(frozen=True)
class PreviousFee:
    absolute: int
    rate: float


FeePolicy = FeeRate | int


@dataclass(frozen=True)
class TxParams:
    """Compiled build request consumed by ``Wallet.create_tx``."""

    recipients: tuple[ScriptAmount, ...] = ()
    utxos: tuple[OutPoint, ...] = ()
    unspendable: frozenset[OutPoint] = frozenset()
    change_policy: ChangeSpendPolicy = ChangeSpendPolicy.CHANGE_ALLOWED
    manually_selected_only: bool = False
    # A FeeRate, or an absolute fee in satoshis
    fee_policy: FeePolicy | None = None
    drain_wallet: bool = False
    drain_to: Script | None = None
    rbf: RbfValue | None = None
    # Set when replacing an existing transaction
    bumping_fee: PreviousFee | None = None
    replacing_txid: str | None = None


@dataclass(frozen=True)
class TxBuilderResult:
    psbt: PartiallySignedTransaction
    transaction_details: TransactionDetails


@dataclass(frozen=True)
class TxBuilder:
    recipients: tuple[ScriptAmount, ...] = ()
    utxos: tuple[OutPoint, ...] = ()
    unspendable_utxos: frozenset[OutPoint] = field(default_factory=frozenset)
    change_policy: ChangeSpendPolicy = ChangeSpendPolicy.CHANGE_ALLOWED
    manual_selection: bool = False
    rate: FeeRate | None = None
    absolute_fee: int | None = None
    drain_all: bool = False
    drain_script: Script | None = None
    rbf: RbfValue | None = None
    data: bytes | None = None

    def add_recipient(self, script: Script, amount: int) -> TxBuilder:
        return replace(self, recipients=self.recipients + (ScriptAmount(script, amount),))

    def set_recipients(self, recipients: Iterable[ScriptAmount]) -> TxBuilder:
        return replace(self, recipients=tuple(recipients))

    def add_unspendable(self, unspendable: OutPoint) -> TxBuilder:
        return replace(self, unspendable_utxos=self.unspendable_utxos | {unspendable})

    def unspendable(self, unspendable: Iterable[OutPoint]) -> TxBuilder:
        """Replace the whole set of outputs that must not be spent."""
        return replace(self, unspendable_utxos=frozenset(unspendable))

    def add_utxo(self, outpoint: OutPoint) -> TxBuilder:
        """Force ``outpoint`` into the transaction, even if marked unspendable."""
        return replace(self, utxos=self.utxos + (outpoint,))

    def add_utxos(self, outpoints: Iterable[OutPoint]) -> TxBuilder:
        return replace(self, utxos=self.utxos + tuple(outpoints))

    def manually_selected_only(self) -> TxBuilder:
        return replace(self, manual_selection=True)

    def do_not_spend_change(self) -> TxBuilder:
        return replace(self, change_policy=ChangeSpendPolicy.CHANGE_FORBIDDEN)

    def only_spend_change(self) -> TxBuilder:
        return replace(self, change_policy=ChangeSpendPolicy.ONLY_CHANGE)

    def fee_rate(self, sat_per_vbyte: float) -> TxBuilder:
        return replace(self, rate=FeeRate.from_sat_per_vb(sat_per_vbyte))

    def fee_absolute(self, fee_amount: int) -> TxBuilder:
        if fee_amount < 0:
            raise ValueError(f"Absolute fee must not be negative: {fee_amount}")
        return replace(self, absolute_fee=fee_amount)

    def drain_wallet(self) -> TxBuilder:
        return replace(self, drain_all=True)

    def drain_to(self, script: Script) -> TxBuilder:
        """Send whatever is left after recipients and fees to ``script`` instead of change."""
        return replace(self, drain_script=script)

    def enable_rbf(self) -> TxBuilder:
        return replace(self, rbf=RbfValue())

    def enable_rbf_with_sequence(self, nsequence: int) -> TxBuilder:
        return replace(self, rbf=RbfValue(nsequence))

    def add_data(self, data: bytes | Iterable[int]) -> TxBuilder:
        """Embed ``data`` in a zero-value OP_RETURN output."""
        return replace(self, data=bytes(data))

    def to_params(self) -> TxParams:
        params = TxParams(recipients=self.recipients)
        params = replace(params, change_policy=self.change_policy)
        if self.utxos:
            params = replace(params, utxos=self.utxos)
        if self.unspendable_utxos:
            params = replace(params, unspendable=self.unspendable_utxos)
        if self.manual_selection:
            params = replace(params, manually_selected_only=True)
        # Absolute fee wins when both are set
        if self.rate is not None:
            params = replace(params, fee_policy=self.rate)
        if self.absolute_fee is not None:
            params = replace(params, fee_policy=self.absolute_fee)
        if self.drain_all:
            params = replace(params, drain_wallet=True)
        if self.drain_script is not None:
            params = replace(params, drain_to=self.drain_script)
        if self.rbf is not None:
            params = replace(params, rbf=self.rbf)
        if self.data is not None:
            data_output = ScriptAmount(op_return_script(self.data), 0)
            params = replace(params, recipients=params.recipients + (data_output,))
        return params

    def finish(self, wallet: Wallet) -> TxBuilderResult:
        """
        Select coins and build an unsigned PSBT.

        Raises:
            TxBuildError: any constraint that cannot be satisfied
        """
        psbt, details = wallet.create_tx(self.to_params())
        return TxBuilderResult(psbt, details)


@dataclass(frozen=True)
class BumpFeeTxBuilder:
    txid: str
    new_fee_rate: float
    shrink_address: Address | None = None
    rbf: RbfValue | None = None

    def allow_shrinking(self, address: Address | str) -> BumpFeeTxBuilder:
        """Let the output paying to ``address`` shrink to cover the higher fee."""
        if isinstance(address, str):
            address = Address(address)
        return replace(self, shrink_address=address)

    def enable_rbf(self) -> BumpFeeTxBuilder:
        return replace(self, rbf=RbfValue())

    def enable_rbf_with_sequence(self, nsequence: int) -> BumpFeeTxBuilder:
        return replace(self, rbf=RbfValue(nsequence))

    def finish(self, wallet: Wallet) -> PartiallySignedTransaction:
        """
        Build the replacement transaction.

        Raises:
            TransactionNotFoundError, TransactionConfirmedError, NotReplaceableError,
            FeeRateUnavailableError, FeeRateTooLowError, AddressNotInTransactionError
        """
        params = wallet.fee_bump_params(self.txid)
        params = replace(
            params,
            fee_policy=FeeRate.from_sat_per_vb(self.new_fee_rate),
            rbf=self.rbf or RbfValue(),
        )

        if self.shrink_address is not None:
            script = self.shrink_address.script_pubkey()
            recipients = list(params.recipients)
            position = next(
                (i for i, recipient in enumerate(recipients) if recipient.script == script), None
            )
            if position is None:
                raise AddressNotInTransactionError(
                    f"{self.shrink_address} was not in the original transaction"
                )
            recipients.pop(position)
            params = replace(params, recipients=tuple(recipients), drain_to=script)

        psbt, _ = wallet.create_tx(params)
        return psbt
