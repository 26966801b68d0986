"""
BIP32 derivation paths and key origins.

Textual grammar: ``m(/index[h|'])*``. Hardened steps are rendered with
``'``; both ``h`` and ``'`` are accepted on input.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from descwallet.constants import HARDENED_OFFSET
from descwallet.errors import MalformedPathError


@dataclass(frozen=True)
class ChildNumber:
    """A single derivation step: a 31-bit index plus the hardened flag."""

    index: int
    hardened: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.index < HARDENED_OFFSET:
            raise MalformedPathError(f"Child index out of range: {self.index}")

    @classmethod
    def from_int(cls, value: int) -> ChildNumber:
        """Build from the raw 32-bit encoding (hardened offset included)."""
        if value >= HARDENED_OFFSET:
            return cls(value - HARDENED_OFFSET, hardened=True)
        return cls(value)

    @classmethod
    def parse(cls, text: str) -> ChildNumber:
        hardened = text.endswith(("'", "h"))
        digits = text[:-1] if hardened else text
        if not digits.isdigit() or not digits.isascii():
            raise MalformedPathError(f"Invalid child number: {text!r}")
        return cls(int(digits), hardened)

    def to_int(self) -> int:
        return self.index + HARDENED_OFFSET if self.hardened else self.index

    def __str__(self) -> str:
        return f"{self.index}'" if self.hardened else str(self.index)


class DerivationPath:
    """
    Immutable ordered sequence of child numbers.

    ``extend`` returns a new path; the receiver is never modified.
    """

    __slots__ = ("_steps",)

    def __init__(self, steps: Iterable[ChildNumber] = ()):
        self._steps: tuple[ChildNumber, ...] = tuple(steps)

    @classmethod
    def master(cls) -> DerivationPath:
        return cls()

    @classmethod
    def parse(cls, text: str) -> DerivationPath:
        """Parse ``m`` or ``m/0/1'/2h`` notation."""
        parts = text.split("/")
        if parts[0] != "m":
            raise MalformedPathError(f"Derivation path must start with 'm': {text!r}")
        return cls(ChildNumber.parse(part) for part in parts[1:])

    @classmethod
    def parse_suffix(cls, text: str) -> DerivationPath:
        """Parse the ``/0/1'`` tail used inside key expressions (no ``m``)."""
        if not text:
            return cls()
        if not text.startswith("/"):
            raise MalformedPathError(f"Derivation suffix must start with '/': {text!r}")
        return cls(ChildNumber.parse(part) for part in text[1:].split("/"))

    @property
    def steps(self) -> tuple[ChildNumber, ...]:
        return self._steps

    def extend(self, other: DerivationPath | Iterable[ChildNumber]) -> DerivationPath:
        return DerivationPath(self._steps + tuple(other))

    def child(self, step: ChildNumber) -> DerivationPath:
        return DerivationPath(self._steps + (step,))

    def split_last_hardened(self) -> tuple[DerivationPath, DerivationPath]:
        """Split into (prefix up to and including the last hardened step, unhardened tail)."""
        cut = 0
        for position, step in enumerate(self._steps):
            if step.hardened:
                cut = position + 1
        return DerivationPath(self._steps[:cut]), DerivationPath(self._steps[cut:])

    def to_list(self) -> list[int]:
        return [step.to_int() for step in self._steps]

    def suffix_str(self) -> str:
        """Render as ``/0/1'`` (empty string for the master path)."""
        return "".join(f"/{step}" for step in self._steps)

    def __iter__(self) -> Iterator[ChildNumber]:
        return iter(self._steps)

    def __len__(self) -> int:
        return len(self._steps)

    def __getitem__(self, item: int) -> ChildNumber:
        return self._steps[item]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DerivationPath):
            return NotImplemented
        return self._steps == other._steps

    def __hash__(self) -> int:
        return hash(self._steps)

    def __str__(self) -> str:
        return "m" + self.suffix_str()

    def __repr__(self) -> str:
        return f"DerivationPath('{self}')"


@dataclass(frozen=True)
class KeyOrigin:
    """Master key fingerprint plus the path from that master to a key."""

    fingerprint: bytes
    path: DerivationPath

    def __post_init__(self) -> None:
        if len(self.fingerprint) != 4:
            raise MalformedPathError(f"Fingerprint must be 4 bytes, got {len(self.fingerprint)}")

    @classmethod
    def parse(cls, text: str) -> KeyOrigin:
        """Parse the inside of a ``[d1d04177/84'/1'/0']`` origin block."""
        fingerprint_hex, slash, rest = text.partition("/")
        if slash and not rest:
            raise MalformedPathError(f"Empty path after fingerprint: {text!r}")
        fingerprint = parse_fingerprint(fingerprint_hex)
        path = DerivationPath.parse_suffix("/" + rest) if rest else DerivationPath()
        return cls(fingerprint, path)

    def extend(self, path: DerivationPath) -> KeyOrigin:
        return KeyOrigin(self.fingerprint, self.path.extend(path))

    def __str__(self) -> str:
        return self.fingerprint.hex() + self.path.suffix_str()


def parse_fingerprint(text: str) -> bytes:
    if len(text) != 8:
        raise MalformedPathError(f"Fingerprint must be 8 hex characters: {text!r}")
    try:
        return bytes.fromhex(text)
    except ValueError as e:
        raise MalformedPathError(f"Invalid fingerprint: {text!r}") from e
