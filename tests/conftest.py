"""
Shared fixtures: a well-known test mnemonic and small funded wallets.
"""

from __future__ import annotations

import pytest

from descwallet.models import BlockTime, KeychainKind, Network, OutPoint
from descwallet.wallet.descriptor import Descriptor
from descwallet.wallet.keys import DescriptorSecretKey
from descwallet.wallet.mnemonic import Mnemonic
from descwallet.wallet.service import Wallet
from descwallet.wallet.templates import new_bip84
from descwallet.wallet.transaction import Transaction, TxIn, TxOutput

TEST_MNEMONIC = (
    "chaos fabric time speed sponsor all flat solution wisdom trophy crack object "
    "robot pave observe combine where aware bench orient secret primary cable detect"
)

SINGLE_KEY_DESCRIPTOR = "wpkh(cVpPVruEDdmutPzisEsYvtST1usBR3ntr8pXSyt6D2YYqXRyPcFW)"

RECIPIENT_ADDRESS = "tb1ql7w62elx9ucw4pj5lgw4l028hmuw80sndtntxt"


def funding_tx(script, value: int, prev_txid: str = "ab" * 32) -> Transaction:
    """A transaction paying ``value`` to ``script`` from an unknown previous output."""
    return Transaction(
        inputs=[TxIn(OutPoint(prev_txid, 0))],
        outputs=[TxOutput(value, script)],
    )


@pytest.fixture
def master_key() -> DescriptorSecretKey:
    return DescriptorSecretKey.new(Network.TESTNET, Mnemonic.from_string(TEST_MNEMONIC))


@pytest.fixture
def single_key_wallet() -> Wallet:
    descriptor = Descriptor.new(SINGLE_KEY_DESCRIPTOR, Network.TESTNET)
    return Wallet(descriptor, None, Network.TESTNET)


@pytest.fixture
def funded_wallet(single_key_wallet: Wallet) -> Wallet:
    """Single-key wallet holding one confirmed 50,000 sat output."""
    script = Descriptor.new(SINGLE_KEY_DESCRIPTOR, Network.TESTNET).script_pubkey_at(0)
    single_key_wallet.insert_tx(funding_tx(script, 50_000), BlockTime(100, 1_600_000_000))
    return single_key_wallet


@pytest.fixture
def bip84_wallet(master_key: DescriptorSecretKey) -> Wallet:
    external = new_bip84(master_key, KeychainKind.EXTERNAL, Network.TESTNET)
    internal = new_bip84(master_key, KeychainKind.INTERNAL, Network.TESTNET)
    return Wallet(external, internal, Network.TESTNET)
