"""
BIP39 mnemonic phrases (English wordlist).
"""

from __future__ import annotations

import secrets
from enum import IntEnum

from mnemonic import Mnemonic as Bip39

from descwallet.errors import InvalidEntropyLengthError, InvalidMnemonicError

_WORDLIST = Bip39("english")


class WordCount(IntEnum):
    WORDS12 = 12
    WORDS15 = 15
    WORDS18 = 18
    WORDS21 = 21
    WORDS24 = 24

    @property
    def entropy_bits(self) -> int:
        return self.value * 32 // 3


def check_entropy_length(entropy: bytes) -> None:
    """
    Entropy must be 128-256 bits long and a multiple of 32 bits.

    Raises:
        InvalidEntropyLengthError
    """
    if len(entropy) % 4 != 0 or not 16 <= len(entropy) <= 32:
        raise InvalidEntropyLengthError(
            f"Entropy must be 16-32 bytes in multiples of 4, got {len(entropy)} bytes"
        )


class Mnemonic:
    """A validated BIP39 phrase. Supported word counts are 12, 15, 18, 21 and 24."""

    def __init__(self, phrase: str):
        self._phrase = phrase

    @classmethod
    def new(cls, word_count: WordCount | int = WordCount.WORDS24) -> Mnemonic:
        """Generate a phrase from fresh OS entropy."""
        try:
            word_count = WordCount(word_count)
        except ValueError as e:
            raise InvalidEntropyLengthError(f"Unsupported word count: {word_count}") from e
        entropy = secrets.token_bytes(word_count.entropy_bits // 8)
        return cls.from_entropy(entropy)

    @classmethod
    def from_string(cls, phrase: str) -> Mnemonic:
        normalized = " ".join(phrase.split())
        if not _WORDLIST.check(normalized):
            raise InvalidMnemonicError("Invalid mnemonic phrase (unknown word or bad checksum)")
        return cls(normalized)

    @classmethod
    def from_entropy(cls, entropy: bytes) -> Mnemonic:
        check_entropy_length(entropy)
        return cls(_WORDLIST.to_mnemonic(entropy))

    def to_seed(self, passphrase: str | None = None) -> bytes:
        return Bip39.to_seed(self._phrase, passphrase or "")

    def word_count(self) -> int:
        return len(self._phrase.split())

    def as_string(self) -> str:
        return self._phrase

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Mnemonic):
            return NotImplemented
        return self._phrase == other._phrase

    def __hash__(self) -> int:
        return hash(self._phrase)

    def __str__(self) -> str:
        return self._phrase

    def __repr__(self) -> str:
        return f"Mnemonic(<{self.word_count()} words>)"
