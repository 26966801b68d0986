"""
Tests for UTXO preselection, largest-first selection and change decisions.
"""

import pytest

from descwallet.errors import InsufficientFundsError
from descwallet.models import FeeRate, KeychainKind, LocalUtxo, OutPoint, TxOut
from descwallet.wallet.address import Address
from descwallet.wallet.coin_selection import (
    Change,
    ChangeSpendPolicy,
    NoChange,
    WeightedUtxo,
    decide_change,
    preselect,
    select_largest_first,
)

from conftest import RECIPIENT_ADDRESS

DRAIN_SCRIPT = Address(RECIPIENT_ADDRESS).script_pubkey()
WPKH_WEIGHT = 112


def utxo(value: int, vout: int = 0, keychain: KeychainKind = KeychainKind.EXTERNAL):
    local = LocalUtxo(
        OutPoint("cd" * 32, vout), TxOut(value, RECIPIENT_ADDRESS), keychain, is_spent=False
    )
    return WeightedUtxo(local, WPKH_WEIGHT)


class TestDecideChange:
    def test_change_above_dust(self):
        excess = decide_change(10_000, FeeRate.from_sat_per_vb(1.0), DRAIN_SCRIPT)
        assert excess == Change(amount=10_000 - 31, fee=31)

    def test_dust_goes_to_fee(self):
        excess = decide_change(300, FeeRate.from_sat_per_vb(1.0), DRAIN_SCRIPT)
        assert isinstance(excess, NoChange)
        assert excess.remaining_amount == 300
        assert excess.dust_threshold == DRAIN_SCRIPT.dust_value()


class TestPreselect:
    def test_forced_utxos_are_required_even_if_unspendable(self):
        forced = utxo(1_000, vout=1)
        required, optional = preselect(
            [forced, utxo(2_000, vout=2)],
            [forced],
            {forced.outpoint},
            ChangeSpendPolicy.CHANGE_ALLOWED,
            manually_selected_only=False,
            drain_wallet=False,
        )
        assert required == [forced]
        assert [w.value for w in optional] == [2_000]

    def test_unspendable_excluded(self):
        blocked = utxo(2_000, vout=2)
        _, optional = preselect(
            [utxo(1_000, vout=1), blocked],
            [],
            {blocked.outpoint},
            ChangeSpendPolicy.CHANGE_ALLOWED,
            False,
            False,
        )
        assert blocked not in optional

    def test_manual_selection_has_no_optional(self):
        forced = utxo(1_000, vout=1)
        required, optional = preselect(
            [forced, utxo(2_000, vout=2)],
            [forced],
            set(),
            ChangeSpendPolicy.CHANGE_ALLOWED,
            True,
            False,
        )
        assert required == [forced]
        assert optional == []

    @pytest.mark.parametrize(
        ("policy", "expected"),
        [
            (ChangeSpendPolicy.CHANGE_ALLOWED, {1, 2}),
            (ChangeSpendPolicy.ONLY_CHANGE, {2}),
            (ChangeSpendPolicy.CHANGE_FORBIDDEN, {1}),
        ],
    )
    def test_change_policy(self, policy, expected):
        available = [utxo(1_000, vout=1), utxo(1_000, vout=2, keychain=KeychainKind.INTERNAL)]
        _, optional = preselect(available, [], set(), policy, False, False)
        assert {w.outpoint.vout for w in optional} == expected

    def test_drain_wallet_requires_everything(self):
        available = [utxo(1_000, vout=1), utxo(2_000, vout=2)]
        required, optional = preselect(
            available, [], set(), ChangeSpendPolicy.CHANGE_ALLOWED, False, True
        )
        assert len(required) == 2
        assert optional == []


class TestSelectLargestFirst:
    def test_picks_largest_until_covered(self):
        optional = [utxo(5_000, vout=1), utxo(60_000, vout=2), utxo(20_000, vout=3)]
        result = select_largest_first(
            [], optional, FeeRate.from_sat_per_vb(1.0), 30_000, 41, DRAIN_SCRIPT
        )
        assert [w.value for w in result.selected] == [60_000]
        # skeleton plus one input at 1 sat/vB
        assert result.fee_amount == 41 + 69
        assert isinstance(result.excess, Change)
        assert result.excess.amount == 60_000 - 30_000 - 110 - 31

    def test_required_always_taken(self):
        required = [utxo(1_000, vout=1)]
        optional = [utxo(60_000, vout=2)]
        result = select_largest_first(
            required, optional, FeeRate.from_sat_per_vb(1.0), 30_000, 41, DRAIN_SCRIPT
        )
        assert [w.value for w in result.selected] == [1_000, 60_000]
        assert result.selected_amount == 61_000

    def test_insufficient_funds(self):
        with pytest.raises(InsufficientFundsError) as exc_info:
            select_largest_first(
                [], [utxo(1_000)], FeeRate.from_sat_per_vb(1.0), 5_000, 41, DRAIN_SCRIPT
            )
        assert exc_info.value.available == 1_000
        assert exc_info.value.needed == 5_000 + 41 + 69

    def test_zero_fee_rate(self):
        result = select_largest_first(
            [utxo(10_000)], [], FeeRate.from_sat_per_vb(0.0), 0, 500, DRAIN_SCRIPT
        )
        assert result.fee_amount == 500
        assert result.excess == Change(amount=9_500, fee=0)
