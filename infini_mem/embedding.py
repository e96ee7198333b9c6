"""Token embedding table."""

from __future__ import annotations

import os
from typing import Sequence

import numpy as np

from .errors import InvalidConfiguration


class EmbeddingTable:
    """
    Dense [vocab_size, d_model] float32 table indexed by token_id mod vocab_size.

    Args:
        weights: The table.

    Example:
        >>> table = EmbeddingTable.random(vocab_size=10000, d_model=12, seed=0)
        >>> x = table.lookup([17, 2**40])  # [2, 12]
    """

    def __init__(self, weights: np.ndarray) -> None:
        weights = np.ascontiguousarray(weights, dtype=np.float32)
        if weights.ndim != 2 or weights.shape[0] == 0 or weights.shape[1] == 0:
            raise InvalidConfiguration(f"embedding table must be a non-empty 2-D array, got shape {weights.shape}")
        self.weights = weights

    @classmethod
    def random(cls, vocab_size: int, d_model: int, seed: int | None = None) -> EmbeddingTable:
        """Uniform(-0.1, 0.1) table."""
        rng = np.random.default_rng(seed)
        return cls(rng.uniform(-0.1, 0.1, size=(vocab_size, d_model)))

    @classmethod
    def load(cls, path: str | os.PathLike) -> EmbeddingTable:
        """Load a table saved with numpy.save."""
        try:
            weights = np.load(path, allow_pickle=False)
        except ValueError as exc:
            raise InvalidConfiguration(f"cannot load embedding table from {os.fspath(path)!r}: {exc}") from exc
        return cls(weights)

    @property
    def vocab_size(self) -> int:
        return self.weights.shape[0]

    @property
    def d_model(self) -> int:
        return self.weights.shape[1]

    def lookup(self, token_ids: Sequence[int]) -> np.ndarray:
        """Rows for ``token_ids``, shape [len(token_ids), d_model]."""
        # Python ints: ids may exceed the int64 range before the modulo
        rows = [int(t) % self.vocab_size for t in token_ids]
        return self.weights[np.asarray(rows, dtype=np.int64)].reshape(len(rows), self.d_model)
