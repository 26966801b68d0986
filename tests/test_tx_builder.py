"""
Tests for the immutable transaction builder.
"""

import pytest

from descwallet.constants import MAX_RBF_SEQUENCE, SEQUENCE_FINAL
from descwallet.errors import (
    InsufficientFundsError,
    InvalidRbfSequenceError,
    NoRecipientsError,
    NoUtxosSelectedError,
    OutputBelowDustLimitError,
    UnknownUtxoError,
)
from descwallet.models import FeeRate, OutPoint
from descwallet.wallet.address import Address, op_return_script
from descwallet.wallet.tx_builder import RbfValue, ScriptAmount, TxBuilder

from conftest import RECIPIENT_ADDRESS

RECIPIENT = Address(RECIPIENT_ADDRESS).script_pubkey()


class TestBuilderValues:
    def test_setters_return_new_builders(self):
        base = TxBuilder()
        with_recipient = base.add_recipient(RECIPIENT, 1_000)
        with_rbf = with_recipient.enable_rbf()

        assert base.recipients == ()
        assert with_recipient.rbf is None
        assert with_rbf.recipients == (ScriptAmount(RECIPIENT, 1_000),)
        assert with_rbf.rbf == RbfValue(MAX_RBF_SEQUENCE)

    def test_branching_from_shared_builder(self):
        base = TxBuilder().add_recipient(RECIPIENT, 1_000)
        fast = base.fee_rate(10.0)
        slow = base.fee_rate(1.0)
        assert fast.to_params().fee_policy == FeeRate(10.0)
        assert slow.to_params().fee_policy == FeeRate(1.0)
        assert base.to_params().fee_policy is None

    def test_set_recipients_replaces(self):
        builder = TxBuilder().add_recipient(RECIPIENT, 1_000)
        builder = builder.set_recipients([ScriptAmount(RECIPIENT, 2_000)])
        assert builder.recipients == (ScriptAmount(RECIPIENT, 2_000),)

    def test_unspendable_replaces_set(self):
        a, b = OutPoint("aa" * 32, 0), OutPoint("bb" * 32, 1)
        builder = TxBuilder().add_unspendable(a).unspendable([b])
        assert builder.to_params().unspendable == frozenset({b})

    def test_add_utxos_appends_without_dedup(self):
        a, b = OutPoint("aa" * 32, 0), OutPoint("bb" * 32, 1)
        builder = TxBuilder().add_utxo(a).add_utxos([b, a])
        assert builder.to_params().utxos == (a, b, a)

    def test_absolute_fee_wins_over_rate(self):
        params = TxBuilder().fee_absolute(500).fee_rate(3.0).to_params()
        assert params.fee_policy == 500

    def test_negative_absolute_fee(self):
        with pytest.raises(ValueError):
            TxBuilder().fee_absolute(-1)

    def test_data_is_last_recipient(self):
        params = TxBuilder().add_data(b"hello").add_recipient(RECIPIENT, 1_000).to_params()
        assert params.recipients[-1] == ScriptAmount(op_return_script(b"hello"), 0)
        assert params.recipients[0].script == RECIPIENT

    def test_change_policies(self):
        assert TxBuilder().do_not_spend_change().to_params().change_policy.value == (
            "change_forbidden"
        )
        assert TxBuilder().only_spend_change().to_params().change_policy.value == "only_change"


class TestDrainWallet:
    def test_drain_wallet_to_address(self, funded_wallet):
        result = (
            funded_wallet.build_tx().drain_wallet().drain_to(RECIPIENT).finish(funded_wallet)
        )
        tx = result.psbt.unsigned_tx
        details = result.transaction_details

        assert len(tx.inputs) == 1
        assert len(tx.outputs) == 1
        assert tx.outputs[0].value == 49_890
        assert tx.outputs[0].script_pubkey == RECIPIENT
        assert details.fee == 110
        assert details.received == 0
        assert details.sent == 50_000
        assert details.confirmation_time is None
        assert details.txid == result.psbt.txid()

    def test_drain_wallet_higher_fee_rate(self, funded_wallet):
        result = (
            funded_wallet.build_tx()
            .drain_wallet()
            .drain_to(RECIPIENT)
            .fee_rate(2.0)
            .finish(funded_wallet)
        )
        assert result.transaction_details.fee == 220
        assert result.psbt.unsigned_tx.outputs[0].value == 49_780
        assert result.psbt.fee_rate().as_sat_per_vb() == pytest.approx(2.682927, abs=1e-6)

    def test_drain_remainder_below_dust(self, funded_wallet):
        builder = funded_wallet.build_tx().drain_wallet().drain_to(RECIPIENT).fee_rate(452.0)
        with pytest.raises(InsufficientFundsError) as exc_info:
            builder.finish(funded_wallet)
        assert exc_info.value.needed == RECIPIENT.dust_value()
        assert exc_info.value.available == 280

    def test_drain_without_utxos(self, funded_wallet):
        with pytest.raises(NoUtxosSelectedError):
            funded_wallet.build_tx().drain_to(RECIPIENT).finish(funded_wallet)


class TestSpending:
    def test_payment_with_change(self, funded_wallet):
        result = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000).finish(funded_wallet)
        tx = result.psbt.unsigned_tx
        details = result.transaction_details

        assert sorted(out.value for out in tx.outputs) == [10_000, 39_859]
        assert details.fee == 141
        assert details.sent == 50_000
        # change returns to the wallet
        assert details.received == 39_859
        assert all(txin.sequence == SEQUENCE_FINAL for txin in tx.inputs)

    def test_enable_rbf(self, funded_wallet):
        builder = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000)
        result = builder.enable_rbf().finish(funded_wallet)
        assert result.psbt.unsigned_tx.inputs[0].sequence == MAX_RBF_SEQUENCE
        assert result.psbt.unsigned_tx.is_rbf_signaling()

    def test_enable_rbf_with_sequence(self, funded_wallet):
        builder = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000)
        result = builder.enable_rbf_with_sequence(42).finish(funded_wallet)
        assert result.psbt.unsigned_tx.inputs[0].sequence == 42

    def test_invalid_rbf_sequence(self, funded_wallet):
        builder = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000)
        with pytest.raises(InvalidRbfSequenceError):
            builder.enable_rbf_with_sequence(0xFFFFFFFE).finish(funded_wallet)

    def test_absolute_fee(self, funded_wallet):
        builder = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000)
        result = builder.fee_absolute(1_000).finish(funded_wallet)
        assert result.transaction_details.fee == 1_000
        assert result.psbt.fee_amount() == 1_000

    def test_op_return_data(self, funded_wallet):
        result = (
            funded_wallet.build_tx()
            .add_recipient(RECIPIENT, 10_000)
            .add_data(b"descwallet")
            .finish(funded_wallet)
        )
        outputs = result.psbt.unsigned_tx.outputs
        data_outputs = [o for o in outputs if o.script_pubkey.is_op_return()]
        assert len(data_outputs) == 1
        assert data_outputs[0].value == 0

    def test_no_recipients(self, funded_wallet):
        with pytest.raises(NoRecipientsError):
            funded_wallet.build_tx().finish(funded_wallet)

    def test_dust_recipient(self, funded_wallet):
        builder = funded_wallet.build_tx().add_recipient(RECIPIENT, 2_000).add_recipient(
            RECIPIENT, 100
        )
        with pytest.raises(OutputBelowDustLimitError) as exc_info:
            builder.finish(funded_wallet)
        assert exc_info.value.index == 1

    def test_insufficient_funds(self, funded_wallet):
        with pytest.raises(InsufficientFundsError) as exc_info:
            funded_wallet.build_tx().add_recipient(RECIPIENT, 100_000).finish(funded_wallet)
        assert exc_info.value.available == 50_000

    def test_unspendable_utxo(self, funded_wallet):
        outpoint = funded_wallet.list_unspent()[0].outpoint
        builder = funded_wallet.build_tx().add_recipient(RECIPIENT, 1_000)
        with pytest.raises(InsufficientFundsError):
            builder.add_unspendable(outpoint).finish(funded_wallet)

    def test_forced_utxo_overrides_unspendable(self, funded_wallet):
        outpoint = funded_wallet.list_unspent()[0].outpoint
        result = (
            funded_wallet.build_tx()
            .add_recipient(RECIPIENT, 1_000)
            .add_unspendable(outpoint)
            .add_utxo(outpoint)
            .finish(funded_wallet)
        )
        assert result.psbt.unsigned_tx.inputs[0].previous_output == outpoint

    def test_repeated_forced_utxo_spent_once(self, funded_wallet):
        outpoint = funded_wallet.list_unspent()[0].outpoint
        result = (
            funded_wallet.build_tx()
            .add_recipient(RECIPIENT, 1_000)
            .add_utxo(outpoint)
            .add_utxo(outpoint)
            .finish(funded_wallet)
        )
        inputs = [txin.previous_output for txin in result.psbt.unsigned_tx.inputs]
        assert inputs == [outpoint]
        assert result.transaction_details.sent == 50_000

    def test_repeated_forced_utxo_counts_value_once(self, funded_wallet):
        outpoint = funded_wallet.list_unspent()[0].outpoint
        builder = (
            funded_wallet.build_tx()
            .add_recipient(RECIPIENT, 60_000)
            .add_utxos([outpoint, outpoint])
        )
        with pytest.raises(InsufficientFundsError):
            builder.finish(funded_wallet)

    def test_only_spend_change_without_change(self, funded_wallet):
        builder = funded_wallet.build_tx().add_recipient(RECIPIENT, 1_000).only_spend_change()
        with pytest.raises(InsufficientFundsError):
            builder.finish(funded_wallet)

    def test_manual_selection_without_utxos(self, funded_wallet):
        builder = funded_wallet.build_tx().add_recipient(RECIPIENT, 1_000).manually_selected_only()
        with pytest.raises(NoUtxosSelectedError):
            builder.finish(funded_wallet)

    def test_unknown_forced_utxo(self, funded_wallet):
        builder = funded_wallet.build_tx().add_recipient(RECIPIENT, 1_000)
        with pytest.raises(UnknownUtxoError):
            builder.add_utxo(OutPoint("ee" * 32, 0)).finish(funded_wallet)

    def test_builder_does_not_touch_wallet_utxos(self, funded_wallet):
        funded_wallet.build_tx().add_recipient(RECIPIENT, 1_000).finish(funded_wallet)
        assert [u.txout.value for u in funded_wallet.list_unspent()] == [50_000]
