"""
Tests for the descriptor wallet: addresses, balances, sync and signing.
"""

import pytest

from descwallet.backends.base import BlockchainBackend, ChainTransaction
from descwallet.backends.blockchain import Blockchain
from descwallet.config import EsploraConfig, SqliteConfig
from descwallet.errors import InsufficientFundsError
from descwallet.models import AddressIndex, BlockTime, KeychainKind, Network, OutPoint
from descwallet.wallet.address import Address
from descwallet.wallet.descriptor import Descriptor
from descwallet.wallet.service import SignOptions, Wallet
from descwallet.wallet.templates import new_bip84
from descwallet.wallet.transaction import Transaction, TxIn, TxOutput

from conftest import RECIPIENT_ADDRESS, SINGLE_KEY_DESCRIPTOR, funding_tx

RECIPIENT = Address(RECIPIENT_ADDRESS).script_pubkey()


class FakeBackend(BlockchainBackend):
    """In-memory chain keyed by output script."""

    def __init__(self, height: int = 200):
        self.history: dict = {}
        self.height = height
        self.broadcasts: list[str] = []

    def add(self, tx: Transaction, confirmation_time: BlockTime | None = None) -> None:
        chain_tx = ChainTransaction(tx.txid(), tx.serialize(), confirmation_time)
        for txout in tx.outputs:
            self.history.setdefault(txout.script_pubkey, []).append(chain_tx)

    def get_script_history(self, scripts):
        return {s: self.history[s] for s in scripts if s in self.history}

    def broadcast_transaction(self, tx_hex: str) -> str:
        self.broadcasts.append(tx_hex)
        return Transaction.from_hex(tx_hex).txid()

    def estimate_fee(self, target_blocks: int) -> float:
        return 2.0

    def get_block_height(self) -> int:
        return self.height

    def get_block_hash(self, block_height: int) -> str:
        return "00" * 32


class RecordingProgress:
    def __init__(self):
        self.updates: list[float] = []

    def update(self, progress: float, message: str | None) -> None:
        self.updates.append(progress)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def blockchain(backend) -> Blockchain:
    return Blockchain(EsploraConfig(base_url="http://esplora.invalid", stop_gap=5), backend)


def external(master_key):
    return new_bip84(master_key, KeychainKind.EXTERNAL, Network.TESTNET)


def internal(master_key):
    return new_bip84(master_key, KeychainKind.INTERNAL, Network.TESTNET)


class TestAddresses:
    def test_new_addresses_advance(self, bip84_wallet, master_key):
        first = bip84_wallet.get_address(AddressIndex.NEW)
        second = bip84_wallet.get_address(AddressIndex.NEW)
        assert (first.index, second.index) == (0, 1)
        assert first.address == external(master_key).address_at(0)
        assert first.address.startswith("tb1q")

    def test_last_unused_repeats_until_used(self, bip84_wallet, master_key):
        first = bip84_wallet.get_address(AddressIndex.LAST_UNUSED)
        again = bip84_wallet.get_address(AddressIndex.LAST_UNUSED)
        assert first == again

        bip84_wallet.insert_tx(funding_tx(external(master_key).script_pubkey_at(0), 1_000))
        assert bip84_wallet.get_address(AddressIndex.LAST_UNUSED).index == 1

    def test_internal_address(self, bip84_wallet, master_key):
        info = bip84_wallet.get_internal_address()
        assert info.address == internal(master_key).address_at(0)

    def test_internal_address_without_change_descriptor(self, single_key_wallet):
        assert (
            single_key_wallet.get_internal_address().address
            == single_key_wallet.get_address().address
        )

    def test_single_key_always_index_zero(self, single_key_wallet):
        assert single_key_wallet.get_address(AddressIndex.NEW).index == 0
        assert single_key_wallet.get_address(AddressIndex.NEW).index == 0

    def test_is_mine(self, bip84_wallet, master_key):
        # Scripts ahead of the last revealed index are tracked too
        assert bip84_wallet.is_mine(external(master_key).script_pubkey_at(10))
        assert bip84_wallet.is_mine(internal(master_key).script_pubkey_at(0))
        assert not bip84_wallet.is_mine(RECIPIENT)

    def test_network(self, bip84_wallet):
        assert bip84_wallet.network() is Network.TESTNET


class TestBalance:
    def test_confirmed(self, funded_wallet):
        balance = funded_wallet.get_balance()
        assert balance.confirmed == 50_000
        assert balance.total == 50_000
        assert balance.spendable == 50_000

    def test_unconfirmed_external_is_untrusted(self, bip84_wallet, master_key):
        bip84_wallet.insert_tx(funding_tx(external(master_key).script_pubkey_at(0), 7_000))
        balance = bip84_wallet.get_balance()
        assert balance.untrusted_pending == 7_000
        assert balance.spendable == 0

    def test_own_change_is_trusted(self, bip84_wallet, master_key):
        bip84_wallet.insert_tx(
            funding_tx(external(master_key).script_pubkey_at(0), 80_000),
            BlockTime(100, 1_600_000_000),
        )
        psbt = bip84_wallet.build_tx().add_recipient(RECIPIENT, 20_000).finish(bip84_wallet).psbt
        assert bip84_wallet.sign(psbt)
        bip84_wallet.insert_tx(psbt.extract_tx(), None)

        balance = bip84_wallet.get_balance()
        assert balance.confirmed == 0
        assert balance.trusted_pending == 80_000 - 20_000 - psbt.fee_amount()

    def test_immature_coinbase(self, bip84_wallet, master_key):
        coinbase = funding_tx(
            external(master_key).script_pubkey_at(0), 5_000_000_000, prev_txid="00" * 32
        )
        bip84_wallet.insert_tx(coinbase, BlockTime(100, 1_600_000_000))
        assert bip84_wallet.get_balance().immature == 5_000_000_000
        builder = bip84_wallet.build_tx().add_recipient(RECIPIENT, 10_000)
        with pytest.raises(InsufficientFundsError):
            builder.finish(bip84_wallet)


class TestTransactions:
    def test_list_transactions(self, funded_wallet):
        (details,) = funded_wallet.list_transactions()
        assert details.received == 50_000
        assert details.sent == 0
        assert details.fee is None
        assert details.confirmation_time == BlockTime(100, 1_600_000_000)
        assert details.transaction is None

        (with_raw,) = funded_wallet.list_transactions(include_raw=True)
        assert Transaction.deserialize(with_raw.transaction).txid() == details.txid

    def test_list_unspent(self, funded_wallet):
        (utxo,) = funded_wallet.list_unspent()
        descriptor = Descriptor.new(SINGLE_KEY_DESCRIPTOR, Network.TESTNET)
        assert utxo.txout.value == 50_000
        assert utxo.txout.address == descriptor.address_at(0)
        assert utxo.keychain is KeychainKind.EXTERNAL
        assert not utxo.is_spent

    def test_spend_updates_state(self, funded_wallet):
        psbt = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000).finish(funded_wallet).psbt
        assert funded_wallet.sign(psbt)
        tx = psbt.extract_tx()
        funded_wallet.insert_tx(tx, None)

        unspent = funded_wallet.list_unspent()
        assert [u.outpoint.txid for u in unspent] == [tx.txid()]
        spend = next(d for d in funded_wallet.list_transactions() if d.txid == tx.txid())
        assert spend.sent == 50_000
        assert spend.fee == psbt.fee_amount()
        assert spend.received == 50_000 - 10_000 - spend.fee

    def test_confirmed_listed_before_unconfirmed(self, funded_wallet):
        psbt = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000).finish(funded_wallet).psbt
        funded_wallet.sign(psbt)
        funded_wallet.insert_tx(psbt.extract_tx(), None)
        txs = funded_wallet.list_transactions()
        assert txs[0].confirmation_time is not None
        assert txs[-1].confirmation_time is None

    def test_foreign_spend_marks_utxo_spent(self, funded_wallet):
        (utxo,) = funded_wallet.list_unspent()
        spend = Transaction(
            inputs=[TxIn(utxo.outpoint)], outputs=[TxOutput(49_000, RECIPIENT)]
        )
        funded_wallet.insert_tx(spend, None)
        assert funded_wallet.list_unspent() == []
        assert funded_wallet.get_balance().total == 0


class TestSigning:
    def test_sign_finalizes(self, funded_wallet):
        psbt = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000).finish(funded_wallet).psbt
        assert funded_wallet.sign(psbt)
        psbt_in = psbt.inputs[0]
        assert psbt_in.final_script_witness is not None
        assert psbt_in.partial_sigs == {}
        assert psbt_in.bip32_derivation == {}

    def test_sign_without_finalizing(self, funded_wallet):
        psbt = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000).finish(funded_wallet).psbt
        assert not funded_wallet.sign(psbt, SignOptions(try_finalize=False))
        assert len(psbt.inputs[0].partial_sigs) == 1
        assert not psbt.inputs[0].is_finalized()

    def test_keep_partial_sigs(self, funded_wallet):
        psbt = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000).finish(funded_wallet).psbt
        assert funded_wallet.sign(psbt, SignOptions(remove_partial_sigs=False))
        assert len(psbt.inputs[0].partial_sigs) == 1

    def test_watch_only_cannot_sign(self, funded_wallet):
        psbt = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000).finish(funded_wallet).psbt
        descriptor = Descriptor.new(SINGLE_KEY_DESCRIPTOR, Network.TESTNET)
        watch_only = Wallet(Descriptor.new(descriptor.as_string(), Network.TESTNET), None,
                            Network.TESTNET)
        assert not watch_only.sign(psbt)
        assert not psbt.inputs[0].is_finalized()

    @pytest.mark.parametrize(
        "template", ["pkh({})", "sh(wpkh({}))"], ids=["p2pkh", "p2sh-p2wpkh"]
    )
    def test_sign_other_script_types(self, template):
        key = SINGLE_KEY_DESCRIPTOR[len("wpkh(") : -1]
        descriptor = Descriptor.new(template.format(key), Network.TESTNET)
        wallet = Wallet(descriptor, None, Network.TESTNET)
        wallet.insert_tx(
            funding_tx(descriptor.script_pubkey_at(0), 50_000), BlockTime(100, 1_600_000_000)
        )

        psbt = wallet.build_tx().add_recipient(RECIPIENT, 10_000).finish(wallet).psbt
        assert wallet.sign(psbt)
        tx = psbt.extract_tx()
        assert tx.inputs[0].script_sig
        # actual size stays within the fee estimate
        assert psbt.fee_amount() >= tx.vsize()


class TestSync:
    def test_sync_finds_history_within_gap(self, bip84_wallet, master_key, backend, blockchain):
        backend.add(
            funding_tx(external(master_key).script_pubkey_at(3), 30_000),
            BlockTime(150, 1_600_000_000),
        )
        bip84_wallet.sync(blockchain)

        assert bip84_wallet.get_balance().confirmed == 30_000
        assert bip84_wallet.get_address(AddressIndex.NEW).index == 4

    def test_sync_stops_at_gap(self, bip84_wallet, master_key, backend, blockchain):
        backend.add(
            funding_tx(external(master_key).script_pubkey_at(12), 30_000),
            BlockTime(150, 1_600_000_000),
        )
        bip84_wallet.sync(blockchain)
        assert bip84_wallet.get_balance().total == 0

    def test_sync_reports_progress(self, bip84_wallet, blockchain):
        progress = RecordingProgress()
        bip84_wallet.sync(blockchain, progress)
        assert progress.updates[0] == 0.0
        assert progress.updates[-1] == 100.0
        assert progress.updates == sorted(progress.updates)

    def test_sync_drops_vanished_unconfirmed(self, bip84_wallet, master_key, blockchain):
        bip84_wallet.insert_tx(funding_tx(external(master_key).script_pubkey_at(0), 7_000))
        bip84_wallet.sync(blockchain)
        assert bip84_wallet.list_transactions() == []
        assert bip84_wallet.list_unspent() == []

    def test_sync_updates_confirmation(self, bip84_wallet, master_key, backend, blockchain):
        tx = funding_tx(external(master_key).script_pubkey_at(0), 7_000)
        bip84_wallet.insert_tx(tx)
        backend.add(tx, BlockTime(190, 1_600_000_000))
        bip84_wallet.sync(blockchain)
        (details,) = bip84_wallet.list_transactions()
        assert details.confirmation_time == BlockTime(190, 1_600_000_000)

    def test_broadcast(self, funded_wallet, backend, blockchain):
        psbt = funded_wallet.build_tx().add_recipient(RECIPIENT, 10_000).finish(funded_wallet).psbt
        funded_wallet.sign(psbt)
        assert blockchain.broadcast(psbt) == psbt.txid()
        assert len(backend.broadcasts) == 1

    def test_estimate_fee(self, blockchain):
        assert blockchain.estimate_fee(6).as_sat_per_vb() == 2.0


class TestPersistence:
    def test_sqlite_wallet_survives_reopen(self, master_key, tmp_path):
        config = SqliteConfig(path=tmp_path / "wallet.db")
        wallet = Wallet(external(master_key), internal(master_key), Network.TESTNET, config)
        wallet.get_address(AddressIndex.NEW)
        wallet.get_address(AddressIndex.NEW)
        wallet.insert_tx(
            funding_tx(external(master_key).script_pubkey_at(1), 12_000),
            BlockTime(100, 1_600_000_000),
        )
        wallet.close()

        reopened = Wallet(external(master_key), internal(master_key), Network.TESTNET, config)
        assert reopened.get_address(AddressIndex.NEW).index == 2
        assert reopened.get_balance().confirmed == 12_000
        assert reopened.list_unspent()[0].outpoint == OutPoint(
            funding_tx(external(master_key).script_pubkey_at(1), 12_000).txid(), 0
        )
        reopened.close()

