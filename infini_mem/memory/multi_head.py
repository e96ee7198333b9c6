"""Multi-head memory wrapper."""

from __future__ import annotations

import torch
import torch.nn as nn

from .state import HeadMemoryState


class MultiHeadMemory(nn.Module):
    """
    Multi-head container for HeadMemoryState.

    Holds one independent state per head. Batched backends read the stacked
    view and write back per head through ``accumulate``.

    Args:
        heads: List of HeadMemoryState instances, one per head.

    Example:
        >>> mh = MultiHeadMemory([HeadMemoryState(head_dim=4) for _ in range(3)])
        >>> mh.reset(device="cuda")
        >>> M, z = mh.stacked()  # [3, 4, 4], [3, 4]
    """

    def __init__(self, heads: list[HeadMemoryState]) -> None:
        """Initialize MultiHeadMemory."""
        super().__init__()
        if not heads:
            raise ValueError("heads cannot be empty")
        head_dims = {h.head_dim for h in heads}
        if len(head_dims) != 1:
            raise ValueError(f"all heads must share head_dim, got {sorted(head_dims)}")
        self.heads = nn.ModuleList(heads)

    @property
    def num_heads(self) -> int:
        """Number of heads."""
        return len(self.heads)

    @property
    def head_dim(self) -> int:
        """Per-head key/value width."""
        return self.heads[0].head_dim

    @property
    def is_initialized(self) -> bool:
        """Check if all heads are initialized."""
        return all(h.is_initialized for h in self.heads)

    def __getitem__(self, index: int) -> HeadMemoryState:
        return self.heads[index]

    def __iter__(self):
        return iter(self.heads)

    def __len__(self) -> int:
        return len(self.heads)

    def reset(
        self,
        device: torch.device | str | None = None,
        dtype: torch.dtype | None = None,
    ) -> None:
        """Reset all heads."""
        for head in self.heads:
            head.reset(device=device, dtype=dtype)

    def stacked(self) -> tuple[torch.Tensor, torch.Tensor]:
        """
        Snapshot of all heads' memory.

        Returns:
            Tuple (M, z) with shapes [num_heads, head_dim, head_dim] and
            [num_heads, head_dim]. These are copies, later updates do not
            show through.
        """
        if not self.is_initialized:
            raise RuntimeError("Memory not initialized. Call reset() first.")
        return (
            torch.stack([h.M for h in self.heads]),
            torch.stack([h.z for h in self.heads]),
        )

    def raw_gates(self) -> torch.Tensor:
        """Raw gate parameters, shape [num_heads]."""
        return torch.stack([h.gate.detach() for h in self.heads])

    def accumulate(self, delta_m: torch.Tensor, delta_z: torch.Tensor) -> None:
        """
        Apply per-head updates.

        Args:
            delta_m: [num_heads, head_dim, head_dim]
            delta_z: [num_heads, head_dim]
        """
        for h, head in enumerate(self.heads):
            head.accumulate(delta_m[h], delta_z[h])

    def check_numerics(self) -> None:
        """Check every head, raising NumericDegeneracy on the first bad one."""
        for head in self.heads:
            head.check_numerics()

    def extra_repr(self) -> str:
        """Return extra representation string."""
        return f"num_heads={self.num_heads}, head_dim={self.head_dim}"


def create_multi_head_memory(num_heads: int, head_dim: int, gate_init: float) -> MultiHeadMemory:
    """Build a MultiHeadMemory with ``num_heads`` fresh (uninitialized) states."""
    return MultiHeadMemory([HeadMemoryState(head_dim, gate_init=gate_init) for _ in range(num_heads)])
