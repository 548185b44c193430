"""
Wildcard byte pattern matching.

Patterns are written as space separated hex pairs with `?` or `??`
standing in for any byte, e.g. ``"E8 ? ? ? ? 48 8B ?? 05"``. Each pattern
is compiled once into a bytes regex wrapped in a zero-width lookahead so
that overlapping matches are all reported.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

WILDCARD_TOKENS = {"?", "??"}


class PatternError(ValueError):
    """Raised when a signature string cannot be parsed."""


@dataclass(frozen=True)
class Pattern:
    """
    A parsed byte signature.

    ``tokens`` holds one entry per byte: the literal value, or None for
    a wildcard.
    """
    tokens: Tuple[Optional[int], ...]
    text: str = ""

    _regex: "re.Pattern" = field(default=None, init=False, repr=False,
                                 compare=False)

    def __post_init__(self):
        if not self.tokens:
            raise PatternError("Empty pattern")
        object.__setattr__(self, "_regex", _compile(self.tokens))

    def __len__(self) -> int:
        return len(self.tokens)

    @property
    def is_all_wildcard(self) -> bool:
        return all(t is None for t in self.tokens)

    @classmethod
    def parse(cls, text: str) -> "Pattern":
        """Parse a signature string such as ``"48 8D ? ? 05"``."""
        if text is None:
            raise PatternError("Pattern text is missing")

        tokens: List[Optional[int]] = []
        for tok in text.split():
            if tok in WILDCARD_TOKENS:
                tokens.append(None)
                continue
            if len(tok) != 2:
                raise PatternError(f"Invalid token {tok!r} in pattern {text!r}")
            try:
                tokens.append(int(tok, 16))
            except ValueError:
                raise PatternError(
                    f"Invalid token {tok!r} in pattern {text!r}") from None

        return cls(tuple(tokens), text)

    def matches_at(self, data: bytes, offset: int) -> bool:
        """Check the pattern against ``data`` at a single offset."""
        if offset < 0 or offset + len(self.tokens) > len(data):
            return False
        for i, tok in enumerate(self.tokens):
            if tok is not None and data[offset + i] != tok:
                return False
        return True

    def find_all(self, data: bytes, start: int = 0,
                 end: Optional[int] = None) -> List[int]:
        """Return every offset in [start, end) where the pattern matches."""
        return find_pattern(data, self, start, end)


def _compile(tokens: Tuple[Optional[int], ...]) -> "re.Pattern":
    body = b"".join(
        b"." if tok is None else re.escape(bytes([tok]))
        for tok in tokens
    )
    return re.compile(b"(?=(" + body + b"))", re.DOTALL)


def find_pattern(data: bytes, pattern, start: int = 0,
                 end: Optional[int] = None) -> List[int]:
    """
    Scan ``data`` for a pattern, left to right.

    Args:
        data: Buffer to scan.
        pattern: A Pattern or a signature string.
        start: First offset to consider.
        end: Exclusive upper bound; no match extends past it.

    Returns:
        Sorted list of match offsets (matches may overlap). Empty when
        nothing matches.
    """
    if data is None:
        raise ValueError("No data to scan")
    if isinstance(pattern, str):
        pattern = Pattern.parse(pattern)

    if end is None or end > len(data):
        end = len(data)
    start = max(start, 0)
    if end - start < len(pattern):
        return []

    return [m.start() for m in pattern._regex.finditer(data, start, end)]
