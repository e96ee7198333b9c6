"""Backend interface shared by the device and CPU reference implementations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

import numpy as np

from ..config import EngineConfig
from ..memory import MultiHeadMemory
from ..projection import FixedPartitionProjection, TiledOutputProjection


@dataclass
class SegmentTensors:
    """Per-head Q/K/V for one segment pass, each [num_heads, n, head_dim]."""

    query: Any
    key: Any
    value: Any
    length: int
    buffers: list[Any] = field(default_factory=list)


class AttentionBackend(ABC):
    """
    One implementation of the per-segment stages.

    The orchestrator calls the stages in a fixed order for every segment:
    project, local_attention, retrieve, combine, update, finish. Retrieval
    always sees the memory as it stood before ``update``.

    Args:
        config: Engine configuration.
        projection: Q/K/V projection. Defaults to the fixed three-way partition.
    """

    name = "abstract"

    def __init__(
        self,
        config: EngineConfig,
        projection: Callable[[Any], tuple[Any, Any, Any]] | None = None,
    ) -> None:
        self.config = config
        self.projection = projection or FixedPartitionProjection(config.d_model)
        self.output_projection = TiledOutputProjection(config.d_model)

    @abstractmethod
    def create_memory(self) -> MultiHeadMemory:
        """Fresh zeroed memory for ``config.num_heads`` heads, placed for this backend."""

    @abstractmethod
    def project(self, embedded: np.ndarray) -> SegmentTensors:
        """Split an [n, d_model] embedded segment into per-head Q/K/V."""

    @abstractmethod
    def local_attention(self, segment: SegmentTensors) -> Any:
        """Within-segment softmax attention, [num_heads, n, head_dim]."""

    @abstractmethod
    def retrieve(self, segment: SegmentTensors, memory: MultiHeadMemory) -> Any:
        """Memory read for every query, [num_heads, n, head_dim]."""

    @abstractmethod
    def combine(
        self,
        segment: SegmentTensors,
        local: Any,
        retrieved: Any,
        memory: MultiHeadMemory,
    ) -> Any:
        """Gate, merge heads and project to [n, d_model]."""

    @abstractmethod
    def update(self, segment: SegmentTensors, memory: MultiHeadMemory) -> None:
        """Accumulate the segment's keys and values into memory."""

    @abstractmethod
    def finish(self, segment: SegmentTensors, output: Any) -> np.ndarray:
        """Wait for the pass to complete and return the [n, d_model] output on the host."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(num_heads={self.config.num_heads}, head_dim={self.config.head_dim})"
