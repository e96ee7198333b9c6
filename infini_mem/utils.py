"""Utility functions for infini-mem."""

from __future__ import annotations

from typing import Callable

import torch
import torch.nn.functional as f


def elu_plus_one(x: torch.Tensor) -> torch.Tensor:
    """
    ELU + 1 feature map for linear attention.

    φ(x) = ELU(x) + 1 = max(0, x) + min(0, exp(x) - 1) + 1

    Properties:
        - All outputs are positive (>= 1 for x >= 0, > 0 for x < 0)
        - Smooth and differentiable

    Args:
        x: Input tensor of any shape.

    Returns:
        Activated tensor with same shape as input, all values positive.

    Example:
        >>> x = torch.randn(2, 4, 64)
        >>> y = elu_plus_one(x)
        >>> assert (y > 0).all()
    """
    return f.elu(x) + 1.0


def relu(x: torch.Tensor) -> torch.Tensor:
    """Rectification feature map. Non-negative but may be exactly zero."""
    return torch.clamp_min(x, 0.0)


FEATURE_MAPS: dict[str, Callable[[torch.Tensor], torch.Tensor]] = {
    "elu_plus_one": elu_plus_one,
    "relu": relu,
}


def get_feature_map(name: str) -> Callable[[torch.Tensor], torch.Tensor]:
    """Look up a feature map by name."""
    try:
        return FEATURE_MAPS[name]
    except KeyError:
        raise ValueError(f"unknown feature map {name!r}") from None


def sigmoid_gate(raw: torch.Tensor) -> torch.Tensor:
    """
    Map raw gate parameters into the open interval (0, 1).

    A plain sigmoid saturates to exactly 0 or 1 in floating point for large
    |raw|, so the result is clamped to the nearest representable values
    inside the interval for the tensor's dtype. sigmoid(0) stays exactly 0.5.

    Args:
        raw: Raw gate parameters (any shape, floating dtype).

    Returns:
        Gate values with the same shape and dtype.
    """
    finfo = torch.finfo(raw.dtype)
    # 1 - eps/2 is the largest value below 1 for binary floating types
    return torch.sigmoid(raw).clamp(min=finfo.tiny, max=1.0 - finfo.eps / 2)
