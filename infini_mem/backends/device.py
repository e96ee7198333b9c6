"""Device backend: batched torch kernels dispatched on a ComputeContext."""

from __future__ import annotations

import contextlib
from typing import Any, Callable, Iterator

import numpy as np
import torch

from ..config import EngineConfig
from ..device import BufferManager, ComputeContext, DeviceBuffer
from ..errors import InfiniMemError, TransferFailure
from ..memory import MultiHeadMemory, create_multi_head_memory
from ..utils import get_feature_map
from . import kernels
from .base import AttentionBackend, SegmentTensors


class DeviceBackend(AttentionBackend):
    """
    Runs every stage for all heads as one batch of device operations.

    Inputs are uploaded once per segment and the output is downloaded once;
    the download is the only point where the host waits on the device.

    Args:
        config: Engine configuration.
        context: Compute context to dispatch on.
        projection: Optional Q/K/V projection override.

    Example:
        >>> backend = DeviceBackend(config, ComputeContext.create())
        >>> memory = backend.create_memory()
    """

    name = "device"

    def __init__(
        self,
        config: EngineConfig,
        context: ComputeContext,
        projection: Callable[[Any], tuple[Any, Any, Any]] | None = None,
    ) -> None:
        super().__init__(config, projection)
        self.context = context
        self.buffers = BufferManager(context)
        self.feature_map = get_feature_map(config.feature_map)

    def create_memory(self) -> MultiHeadMemory:
        memory = create_multi_head_memory(
            self.config.num_heads, self.config.head_dim, self.config.gate_init
        )
        with self.context.submit():
            memory.reset(device=self.context.device, dtype=torch.float32)
        return memory

    @contextlib.contextmanager
    def _dispatch(self, stage: str) -> Iterator[None]:
        """Submit a stage to the context, reporting device errors as TransferFailure."""
        try:
            with self.context.submit():
                yield
        except InfiniMemError:
            raise
        except RuntimeError as exc:
            raise TransferFailure(f"{stage} failed on {self.context.device}: {exc}") from exc

    @torch.no_grad()
    def project(self, embedded: np.ndarray) -> SegmentTensors:
        n, d_model = embedded.shape
        x_buf = self.buffers.upload(embedded, label="x_seg")
        num_heads = self.config.num_heads
        with self._dispatch("projection"):
            q, k, v = self.projection(x_buf.view(n, d_model))
            return SegmentTensors(
                query=kernels.split_heads(q, num_heads),
                key=kernels.split_heads(k, num_heads),
                value=kernels.split_heads(v, num_heads),
                length=n,
                buffers=[x_buf],
            )

    @torch.no_grad()
    def local_attention(self, segment: SegmentTensors) -> torch.Tensor:
        with self._dispatch("local attention"):
            return kernels.local_attention(segment.query, segment.key, segment.value)

    @torch.no_grad()
    def retrieve(self, segment: SegmentTensors, memory: MultiHeadMemory) -> torch.Tensor:
        with self._dispatch("memory retrieval"):
            m, z = memory.stacked()
            return kernels.memory_retrieval(
                segment.query, m, z, self.config.eps, self.feature_map
            )

    @torch.no_grad()
    def combine(
        self,
        segment: SegmentTensors,
        local: torch.Tensor,
        retrieved: torch.Tensor,
        memory: MultiHeadMemory,
    ) -> DeviceBuffer:
        n, d_model = segment.length, self.config.d_model
        out_buf = self.buffers.allocate(n * d_model, label="output")
        segment.buffers.append(out_buf)
        with self._dispatch("gated combine"):
            heads = kernels.gated_combine(retrieved, local, memory.raw_gates())
            out_buf.view(n, d_model).copy_(self.output_projection(kernels.merge_heads(heads)))
        return out_buf

    @torch.no_grad()
    def update(self, segment: SegmentTensors, memory: MultiHeadMemory) -> None:
        with self._dispatch("memory update"):
            delta_m, delta_z = kernels.memory_deltas(segment.key, segment.value, self.feature_map)
            memory.accumulate(delta_m, delta_z)

    def finish(self, segment: SegmentTensors, output: DeviceBuffer) -> np.ndarray:
        n, d_model = segment.length, self.config.d_model
        try:
            host = self.buffers.download(output, n * d_model)
        finally:
            self.buffers.release(*segment.buffers)
        return host.reshape(n, d_model)
