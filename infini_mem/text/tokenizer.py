"""Placeholder tokenizer: whitespace split with stable hashed ids."""

from __future__ import annotations

import hashlib


class HashTokenizer:
    """
    Map each whitespace-separated word to a 64-bit BLAKE2b id.

    Ids are stable across processes (unlike ``hash()``), and are unbounded;
    the embedding table reduces them modulo its vocabulary size.

    Args:
        digest_size: Bytes of digest per id.
        lowercase: Fold case before hashing.

    Example:
        >>> tok = HashTokenizer()
        >>> tok("hello world") == tok("hello   world")
        True
    """

    def __init__(self, digest_size: int = 8, lowercase: bool = False) -> None:
        if not 1 <= digest_size <= 64:
            raise ValueError(f"digest_size must be in [1, 64], got {digest_size}")
        self.digest_size = digest_size
        self.lowercase = lowercase

    def token_id(self, word: str) -> int:
        if self.lowercase:
            word = word.lower()
        digest = hashlib.blake2b(word.encode("utf-8"), digest_size=self.digest_size).digest()
        return int.from_bytes(digest, "little")

    def __call__(self, text: str) -> list[int]:
        return [self.token_id(word) for word in text.split()]


_DEFAULT = HashTokenizer()


def tokenize(text: str) -> list[int]:
    """Tokenize with the default HashTokenizer."""
    return _DEFAULT(text)
