"""Per-head compressive memory state."""

from __future__ import annotations

import torch
import torch.nn as nn

from ..errors import NumericDegeneracy


class HeadMemoryState(nn.Module):
    """
    Compressive memory owned by a single attention head.

    Memory structure:
        M: [head_dim, head_dim] - Associative matrix storing KV bindings
        z: [head_dim] - Normalization term (cumulative sum of mapped keys)
        gate: scalar raw gate parameter, blended through a sigmoid

    Mathematical formulation:
        Update: M = M + σ(K)^T @ V
                z = z + Σσ(K)
        Retrieve: output = (σ(Q) @ M) / max(σ(Q) @ z, eps)

    The update is purely additive: memory only gains mass over the lifetime
    of a stream. Backends read and write M and z; shapes never change after
    reset().

    Args:
        head_dim: Key/value width of the head.
        gate_init: Initial raw gate value (0.0 gives a gate of exactly 0.5).

    Example:
        >>> state = HeadMemoryState(head_dim=4)
        >>> state.reset(device="cuda")
        >>> state.accumulate(delta_m, delta_z)
    """

    def __init__(self, head_dim: int, gate_init: float = 0.0) -> None:
        """Initialize HeadMemoryState."""
        super().__init__()
        if head_dim <= 0:
            raise ValueError(f"head_dim must be positive, got {head_dim}")
        self._head_dim = head_dim
        self.gate = nn.Parameter(torch.tensor(float(gate_init)), requires_grad=False)

        self.register_buffer("M", None, persistent=False)
        self.register_buffer("z", None, persistent=False)

    @property
    def head_dim(self) -> int:
        """Return the per-head key/value width."""
        return self._head_dim

    @property
    def is_initialized(self) -> bool:
        """Check if memory buffers have been initialized."""
        return self.M is not None and self.z is not None

    @property
    def is_empty(self) -> bool:
        """Check if memory is empty (all zeros or not initialized)."""
        if not self.is_initialized:
            return True
        return bool(torch.all(self.z == 0).item())

    def reset(
        self,
        device: torch.device | str | None = None,
        dtype: torch.dtype | None = None,
    ) -> None:
        """
        Reset memory to zeros.

        Args:
            device: Device to place tensors on.
            dtype: Data type for tensors.
        """
        if device is None:
            device = torch.device("cpu")
        if dtype is None:
            dtype = torch.float32

        self.M = torch.zeros(self._head_dim, self._head_dim, device=device, dtype=dtype)
        self.z = torch.zeros(self._head_dim, device=device, dtype=dtype)
        self.gate.data = self.gate.data.to(device=device, dtype=dtype)

    def accumulate(self, delta_m: torch.Tensor, delta_z: torch.Tensor) -> None:
        """
        Add one segment's contribution to the memory in place.

        Args:
            delta_m: σ(K)^T @ V for this head, shape [head_dim, head_dim].
            delta_z: Σσ(K) for this head, shape [head_dim].
        """
        if not self.is_initialized:
            raise RuntimeError("Memory not initialized. Call reset() first.")
        if delta_m.shape != self.M.shape or delta_z.shape != self.z.shape:
            raise ValueError(
                f"update shapes {tuple(delta_m.shape)}/{tuple(delta_z.shape)} do not match "
                f"memory shapes {tuple(self.M.shape)}/{tuple(self.z.shape)}"
            )
        self.M.add_(delta_m.to(self.M.dtype))
        self.z.add_(delta_z.to(self.z.dtype))

    def check_numerics(self) -> None:
        """Raise NumericDegeneracy if M or z is non-finite or z is negative."""
        if not self.is_initialized:
            raise RuntimeError("Memory not initialized. Call reset() first.")
        if not bool(torch.isfinite(self.M).all()):
            raise NumericDegeneracy("memory matrix contains non-finite values")
        if not bool(torch.isfinite(self.z).all()):
            raise NumericDegeneracy("memory normalizer contains non-finite values")
        if bool((self.z < 0).any()):
            raise NumericDegeneracy("memory normalizer went negative")

    def extra_repr(self) -> str:
        """Return extra representation string."""
        return f"head_dim={self._head_dim}, empty={self.is_empty}"
