"""
Coin selection and fee arithmetic.

Fees are accumulated piecewise: the caller seeds ``fee_amount`` with the
cost of the transaction skeleton (or with an absolute fee), every
selected input adds the cost of its outpoint, sequence and satisfaction,
and a change/drain output adds the cost of its own serialization.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from descwallet.constants import TXIN_BASE_WEIGHT
from descwallet.errors import InsufficientFundsError
from descwallet.models import FeeRate, KeychainKind, LocalUtxo, OutPoint
from descwallet.wallet.address import Script


class ChangeSpendPolicy(str, Enum):
    CHANGE_ALLOWED = "change_allowed"
    ONLY_CHANGE = "only_change"
    CHANGE_FORBIDDEN = "change_forbidden"

    def is_satisfied_by(self, utxo: LocalUtxo) -> bool:
        if self is ChangeSpendPolicy.ONLY_CHANGE:
            return utxo.keychain is KeychainKind.INTERNAL
        if self is ChangeSpendPolicy.CHANGE_FORBIDDEN:
            return utxo.keychain is KeychainKind.EXTERNAL
        return True


@dataclass(frozen=True)
class WeightedUtxo:
    """A spendable output plus the weight of the data needed to spend it."""

    utxo: LocalUtxo
    satisfaction_weight: int

    @property
    def outpoint(self) -> OutPoint:
        return self.utxo.outpoint

    @property
    def value(self) -> int:
        return self.utxo.txout.value


@dataclass(frozen=True)
class Change:
    amount: int
    fee: int


@dataclass(frozen=True)
class NoChange:
    dust_threshold: int
    remaining_amount: int
    change_fee: int


Excess = Change | NoChange


@dataclass(frozen=True)
class CoinSelectionResult:
    selected: list[WeightedUtxo]
    # Fee for the skeleton plus the selected inputs, change excluded
    fee_amount: int
    excess: Excess

    @property
    def selected_amount(self) -> int:
        return sum(w.value for w in self.selected)


def decide_change(remaining_amount: int, fee_rate: FeeRate, drain_script: Script) -> Excess:
    """Whether the leftover value is worth an extra output paying to ``drain_script``."""
    change_fee = fee_rate.fee_vb(8 + drain_script.serialized_len())
    drain_value = max(remaining_amount - change_fee, 0)
    dust_threshold = drain_script.dust_value()
    if drain_value < dust_threshold:
        return NoChange(dust_threshold, remaining_amount, change_fee)
    return Change(drain_value, change_fee)


def preselect(
    available: Iterable[WeightedUtxo],
    must_use: list[WeightedUtxo],
    unspendable: set[OutPoint],
    change_policy: ChangeSpendPolicy,
    manually_selected_only: bool,
    drain_wallet: bool,
) -> tuple[list[WeightedUtxo], list[WeightedUtxo]]:
    """
    Split wallet UTXOs into (required, optional) candidates.

    Forced UTXOs are always required, even when also marked unspendable or
    excluded by the change policy. ``drain_wallet`` turns every remaining
    candidate into a required one.
    """
    forced = {w.outpoint for w in must_use}
    required = list(must_use)
    if manually_selected_only:
        optional: list[WeightedUtxo] = []
    else:
        optional = [
            w
            for w in available
            if w.outpoint not in forced
            and w.outpoint not in unspendable
            and not w.utxo.is_spent
            and change_policy.is_satisfied_by(w.utxo)
        ]
    if drain_wallet:
        required.extend(optional)
        optional = []
    return required, optional


def select_largest_first(
    required: list[WeightedUtxo],
    optional: list[WeightedUtxo],
    fee_rate: FeeRate,
    amount_needed: int,
    fee_amount: int,
    drain_script: Script,
) -> CoinSelectionResult:
    """
    Take every required UTXO, then optional ones from the largest down while
    the selection does not yet cover ``amount_needed`` plus fees.

    Raises:
        InsufficientFundsError
    """
    ordered = [(True, w) for w in required] + [
        (False, w) for w in sorted(optional, key=lambda w: w.value, reverse=True)
    ]

    selected: list[WeightedUtxo] = []
    selected_amount = 0
    for must_use, weighted in ordered:
        if must_use or amount_needed + fee_amount > selected_amount:
            fee_amount += fee_rate.fee_wu(TXIN_BASE_WEIGHT + weighted.satisfaction_weight)
            selected_amount += weighted.value
            selected.append(weighted)

    needed_with_fees = amount_needed + fee_amount
    if selected_amount < needed_with_fees:
        raise InsufficientFundsError(needed_with_fees, selected_amount)

    excess = decide_change(selected_amount - needed_with_fees, fee_rate, drain_script)
    logger.debug(
        f"Selected {len(selected)} UTXOs worth {selected_amount} sat, fee {fee_amount} sat"
    )
    return CoinSelectionResult(selected, fee_amount, excess)
