"""Batched torch kernels for one segment pass.

Every kernel works on all heads at once: tensors are laid out as
[num_heads, n, head_dim] and heads never read each other's slices.
"""

from __future__ import annotations

import math
from typing import Callable

import torch

from ..utils import sigmoid_gate

FeatureMap = Callable[[torch.Tensor], torch.Tensor]


def split_heads(x: torch.Tensor, num_heads: int) -> torch.Tensor:
    """
    Split [n, num_heads * head_dim] into [num_heads, n, head_dim].
    """
    n, width = x.shape
    if width % num_heads != 0:
        raise ValueError(f"width {width} is not divisible by num_heads {num_heads}")
    return x.reshape(n, num_heads, width // num_heads).transpose(0, 1)


def merge_heads(x: torch.Tensor) -> torch.Tensor:
    """
    Merge [num_heads, n, head_dim] back into [n, num_heads * head_dim].
    """
    num_heads, n, head_dim = x.shape
    return x.transpose(0, 1).reshape(n, num_heads * head_dim)


def local_attention(query: torch.Tensor, key: torch.Tensor, value: torch.Tensor) -> torch.Tensor:
    """
    Scaled dot-product attention restricted to the current segment.

    scores = Q @ K^T / sqrt(head_dim), softmax over keys, then @ V.
    torch.softmax subtracts the row max, so large scores do not overflow.

    Args:
        query: [num_heads, n, head_dim]
        key: [num_heads, n, head_dim]
        value: [num_heads, n, head_dim]

    Returns:
        [num_heads, n, head_dim]
    """
    scale = 1.0 / math.sqrt(query.shape[-1])
    scores = torch.matmul(query, key.transpose(-2, -1)) * scale
    weights = torch.softmax(scores, dim=-1)
    return torch.matmul(weights, value)


def memory_retrieval(
    query: torch.Tensor,
    memory: torch.Tensor,
    normalizer: torch.Tensor,
    eps: float,
    feature_map: FeatureMap,
) -> torch.Tensor:
    """
    Linear-attention read from compressive memory.

    output = (σ(Q) @ M) / max(σ(Q) @ z, eps)

    Args:
        query: [num_heads, n, head_dim]
        memory: [num_heads, head_dim, head_dim]
        normalizer: [num_heads, head_dim]
        eps: Denominator floor.
        feature_map: σ.

    Returns:
        [num_heads, n, head_dim]
    """
    sigma_q = feature_map(query)
    # (σ(Q) @ M)
    retrieved = torch.matmul(sigma_q, memory)
    # σ(Q) @ z
    norm = torch.matmul(sigma_q, normalizer.unsqueeze(-1))
    return retrieved / norm.clamp_min(eps)


def memory_deltas(
    key: torch.Tensor,
    value: torch.Tensor,
    feature_map: FeatureMap,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    One segment's additive memory contribution.

    Args:
        key: [num_heads, n, head_dim]
        value: [num_heads, n, head_dim]
        feature_map: σ.

    Returns:
        (delta_m, delta_z) with shapes [num_heads, head_dim, head_dim] and
        [num_heads, head_dim]: σ(K)^T @ V and Σσ(K).
    """
    sigma_k = feature_map(key)
    delta_m = torch.matmul(sigma_k.transpose(-2, -1), value)
    delta_z = sigma_k.sum(dim=-2)
    return delta_m, delta_z


def gated_combine(
    memory_context: torch.Tensor,
    local_context: torch.Tensor,
    raw_gates: torch.Tensor,
) -> torch.Tensor:
    """
    Blend memory and local context per head.

    head = gate * memory + (1 - gate) * local, gate = sigmoid(raw) in (0, 1).

    Args:
        memory_context: [num_heads, n, head_dim]
        local_context: [num_heads, n, head_dim]
        raw_gates: [num_heads]

    Returns:
        [num_heads, n, head_dim]
    """
    gate = sigmoid_gate(raw_gates.to(local_context.dtype)).view(-1, 1, 1)
    return gate * memory_context + (1.0 - gate) * local_context
