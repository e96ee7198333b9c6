"""CPU reference implementation of the segment stages in numpy.

Computes the same algorithm as the device kernels head by head in float64,
so it can be used to check the device path and on machines with no
accelerator.
"""

from __future__ import annotations

from typing import Any, Callable

import numpy as np
import torch

from ..config import EngineConfig
from ..memory import MultiHeadMemory, create_multi_head_memory
from .base import AttentionBackend, SegmentTensors

_FLOAT32 = np.finfo(np.float32)


def elu_plus_one(x: np.ndarray) -> np.ndarray:
    """ELU(x) + 1: x + 1 for x > 0, exp(x) otherwise."""
    return np.where(x > 0, x + 1.0, np.exp(np.minimum(x, 0.0)))


def relu(x: np.ndarray) -> np.ndarray:
    return np.maximum(x, 0.0)


FEATURE_MAPS: dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "elu_plus_one": elu_plus_one,
    "relu": relu,
}


def softmax(scores: np.ndarray) -> np.ndarray:
    """Row-wise softmax with max subtraction."""
    shifted = scores - scores.max(axis=-1, keepdims=True)
    e = np.exp(shifted)
    return e / e.sum(axis=-1, keepdims=True)


def sigmoid_gate(raw: float) -> float:
    """sigmoid(raw) clamped into (0, 1) at float32 resolution."""
    with np.errstate(over="ignore"):
        gate = 1.0 / (1.0 + np.exp(-np.float64(raw)))
    return float(np.clip(gate, _FLOAT32.tiny, 1.0 - _FLOAT32.eps / 2))


class ReferenceBackend(AttentionBackend):
    """
    Straightforward per-head numpy implementation.

    Memory state lives in the same HeadMemoryState modules as the device
    backend, on the CPU, and is written only through ``accumulate``.

    Args:
        config: Engine configuration.
        projection: Optional Q/K/V projection override.
    """

    name = "reference"

    def __init__(
        self,
        config: EngineConfig,
        projection: Callable[[Any], tuple[Any, Any, Any]] | None = None,
    ) -> None:
        super().__init__(config, projection)
        self.feature_map = FEATURE_MAPS[config.feature_map]

    def create_memory(self) -> MultiHeadMemory:
        memory = create_multi_head_memory(
            self.config.num_heads, self.config.head_dim, self.config.gate_init
        )
        memory.reset(device="cpu", dtype=torch.float32)
        return memory

    def _split(self, x: np.ndarray) -> np.ndarray:
        n = x.shape[0]
        h = self.config.num_heads
        return np.asarray(x, dtype=np.float64).reshape(n, h, -1).transpose(1, 0, 2)

    def project(self, embedded: np.ndarray) -> SegmentTensors:
        embedded = np.asarray(embedded, dtype=np.float32)
        q, k, v = self.projection(embedded)
        return SegmentTensors(
            query=self._split(q),
            key=self._split(k),
            value=self._split(v),
            length=embedded.shape[0],
        )

    def local_attention(self, segment: SegmentTensors) -> np.ndarray:
        out = np.empty_like(segment.value)
        scale = 1.0 / np.sqrt(segment.query.shape[-1])
        for h in range(self.config.num_heads):
            scores = segment.query[h] @ segment.key[h].T * scale
            out[h] = softmax(scores) @ segment.value[h]
        return out

    def retrieve(self, segment: SegmentTensors, memory: MultiHeadMemory) -> np.ndarray:
        out = np.empty_like(segment.query)
        for h, head in enumerate(memory):
            m = head.M.numpy().astype(np.float64)
            z = head.z.numpy().astype(np.float64)
            sigma_q = self.feature_map(segment.query[h])
            denominator = np.maximum(sigma_q @ z, self.config.eps)
            out[h] = (sigma_q @ m) / denominator[:, None]
        return out

    def combine(
        self,
        segment: SegmentTensors,
        local: np.ndarray,
        retrieved: np.ndarray,
        memory: MultiHeadMemory,
    ) -> np.ndarray:
        heads = np.empty_like(local)
        for h, head in enumerate(memory):
            gate = sigmoid_gate(head.gate.item())
            heads[h] = gate * retrieved[h] + (1.0 - gate) * local[h]
        merged = heads.transpose(1, 0, 2).reshape(segment.length, -1)
        return self.output_projection(merged)

    def update(self, segment: SegmentTensors, memory: MultiHeadMemory) -> None:
        for h, head in enumerate(memory):
            sigma_k = self.feature_map(segment.key[h])
            delta_m = sigma_k.T @ segment.value[h]
            delta_z = sigma_k.sum(axis=0)
            head.accumulate(torch.from_numpy(delta_m), torch.from_numpy(delta_z))

    def finish(self, segment: SegmentTensors, output: np.ndarray) -> np.ndarray:
        return np.asarray(output, dtype=np.float32)
