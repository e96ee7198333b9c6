"""Q/K/V projection and output projection.

The default projection is a fixed partition of the embedding into three equal
chunks. A learned linear projection can be substituted without touching the
other stages. Both accept numpy arrays and torch tensors.
"""

from __future__ import annotations

from typing import Union

import numpy as np
import torch

from .errors import InvalidConfiguration

Array = Union[np.ndarray, torch.Tensor]


def _concat(parts: list[Array]) -> Array:
    if isinstance(parts[0], torch.Tensor):
        return torch.cat(parts, dim=-1)
    return np.concatenate(parts, axis=-1)


class FixedPartitionProjection:
    """
    Split the last axis of [n, d_model] into Q, K, V of width d_model // 3.

    No numeric transformation is applied.

    Args:
        d_model: Model dimension, must be divisible by 3.
    """

    def __init__(self, d_model: int) -> None:
        if d_model <= 0 or d_model % 3 != 0:
            raise InvalidConfiguration(f"d_model ({d_model}) must be a positive multiple of 3")
        self.d_model = d_model
        self.chunk = d_model // 3

    def __call__(self, x: Array) -> tuple[Array, Array, Array]:
        if x.shape[-1] != self.d_model:
            raise ValueError(f"expected last dimension {self.d_model}, got {x.shape[-1]}")
        c = self.chunk
        return x[..., :c], x[..., c : 2 * c], x[..., 2 * c :]


class LinearQKVProjection:
    """
    Learned alternative to the fixed partition: Q = x W_q, K = x W_k, V = x W_v.

    Args:
        w_q: [d_model, d_key] query weights.
        w_k: [d_model, d_key] key weights.
        w_v: [d_model, d_value] value weights.
    """

    def __init__(self, w_q: np.ndarray, w_k: np.ndarray, w_v: np.ndarray) -> None:
        self.weights = tuple(np.asarray(w, dtype=np.float32) for w in (w_q, w_k, w_v))
        d_model = {w.shape[0] for w in self.weights}
        if len(d_model) != 1:
            raise InvalidConfiguration("projection weights must share their input dimension")
        if self.weights[0].shape[1] != self.weights[1].shape[1]:
            raise InvalidConfiguration("query and key projections must have the same width")
        self.d_model = d_model.pop()

    @classmethod
    def random(cls, d_model: int, d_key: int, seed: int | None = None) -> LinearQKVProjection:
        """Random init with std 1/sqrt(d_model)."""
        rng = np.random.default_rng(seed)
        scale = 1.0 / np.sqrt(d_model)
        return cls(*(rng.normal(0.0, scale, size=(d_model, d_key)) for _ in range(3)))

    def __call__(self, x: Array) -> tuple[Array, Array, Array]:
        if isinstance(x, torch.Tensor):
            return tuple(x @ torch.as_tensor(w, device=x.device, dtype=x.dtype) for w in self.weights)
        return tuple(np.asarray(x, dtype=np.float32) @ w for w in self.weights)


class TiledOutputProjection:
    """
    Map concatenated head outputs [n, d_value] back to [n, d_model].

    The context is written into each of the three chunk positions the
    partition read from, so d_model = 3 * d_value is reconstructed.
    """

    def __init__(self, d_model: int) -> None:
        if d_model <= 0 or d_model % 3 != 0:
            raise InvalidConfiguration(f"d_model ({d_model}) must be a positive multiple of 3")
        self.d_model = d_model

    def __call__(self, context: Array) -> Array:
        if context.shape[-1] * 3 != self.d_model:
            raise ValueError(
                f"expected context width {self.d_model // 3}, got {context.shape[-1]}"
            )
        return _concat([context, context, context])
