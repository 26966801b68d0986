"""
Exception hierarchy for descwallet.

Every failure is raised synchronously from the call that detected it.
Key, path and descriptor errors indicate caller input defects and are
never retried.
"""

from __future__ import annotations


class WalletError(Exception):
    """Base class for all descwallet errors."""


# Keys and derivation paths


class MalformedPathError(WalletError):
    pass


class NotDerivableError(WalletError):
    """Raised when deriving or extending a single (non-extended) key."""


class InvalidHardenedDerivationError(WalletError):
    """Raised when a public key is asked to derive across a hardened step."""


class KeyParseError(WalletError):
    pass


class InvalidEntropyLengthError(WalletError):
    pass


class InvalidMnemonicError(WalletError):
    pass


class InvalidNetworkError(WalletError):
    """An embedded key belongs to a different network than the one requested."""


# Descriptors


class DescriptorSyntaxError(WalletError):
    pass


# Transaction building


class TxBuildError(WalletError):
    pass


class InsufficientFundsError(TxBuildError):
    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        super().__init__(f"Insufficient funds: {available} sat available of {needed} sat needed")


class NoRecipientsError(TxBuildError):
    """No recipients and no drain target were given."""


class NoUtxosSelectedError(TxBuildError):
    """Drain target without recipients, without forced UTXOs and without drain_wallet."""


class UnknownUtxoError(TxBuildError):
    def __init__(self, outpoint: object):
        self.outpoint = outpoint
        super().__init__(f"UTXO not found in the wallet: {outpoint}")


class OutputBelowDustLimitError(TxBuildError):
    def __init__(self, index: int):
        self.index = index
        super().__init__(f"Output #{index} is below the dust limit")


class InvalidRbfSequenceError(TxBuildError):
    def __init__(self, sequence: int):
        self.sequence = sequence
        super().__init__(f"Cannot enable RBF with nSequence {sequence:#x}")


class AddressNotInTransactionError(TxBuildError):
    pass


class TransactionNotFoundError(TxBuildError):
    pass


class TransactionConfirmedError(TxBuildError):
    pass


class NotReplaceableError(TxBuildError):
    """The original transaction does not signal replace-by-fee."""


class FeeRateUnavailableError(TxBuildError):
    pass


class FeeTooLowError(TxBuildError):
    def __init__(self, required: float, message: str | None = None):
        self.required = required
        super().__init__(message or f"Fee too low, required at least {required} sat")


class FeeRateTooLowError(FeeTooLowError):
    def __init__(self, required: float):
        super().__init__(required, f"Fee rate too low, required at least {required} sat/vB")


# Signing, storage and chain access


class SigningError(WalletError):
    pass


class PsbtError(WalletError):
    """Malformed PSBT, or PSBTs that cannot be combined."""


class DatabaseError(WalletError):
    pass


class BlockchainError(WalletError):
    pass
