"""
descwallet - BIP32 key derivation, output descriptors and transaction building.

Provides keys, descriptors and templates, a descriptor wallet and its
immutable transaction builders.
"""

__version__ = "0.1.0"

from descwallet.errors import (
    DescriptorSyntaxError,
    InsufficientFundsError,
    InvalidNetworkError,
    TxBuildError,
    WalletError,
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
from descwallet.wallet.address import Address, Script
from descwallet.wallet.derivation import DerivationPath
from descwallet.wallet.descriptor import Descriptor
from descwallet.wallet.keys import DescriptorPublicKey, DescriptorSecretKey
from descwallet.wallet.mnemonic import Mnemonic, WordCount
from descwallet.wallet.psbt import PartiallySignedTransaction
from descwallet.wallet.service import SignOptions, Wallet
from descwallet.wallet.transaction import Transaction
from descwallet.wallet.tx_builder import BumpFeeTxBuilder, ScriptAmount, TxBuilder, TxBuilderResult

__all__ = [
    "Address",
    "AddressIndex",
    "AddressInfo",
    "Balance",
    "BlockTime",
    "BumpFeeTxBuilder",
    "DerivationPath",
    "Descriptor",
    "DescriptorPublicKey",
    "DescriptorSecretKey",
    "DescriptorSyntaxError",
    "FeeRate",
    "InsufficientFundsError",
    "InvalidNetworkError",
    "KeychainKind",
    "LocalUtxo",
    "Mnemonic",
    "Network",
    "OutPoint",
    "PartiallySignedTransaction",
    "Script",
    "ScriptAmount",
    "SignOptions",
    "Transaction",
    "TransactionDetails",
    "TxBuildError",
    "TxBuilder",
    "TxBuilderResult",
    "TxOut",
    "Wallet",
    "WalletError",
    "WordCount",
]
