"""
infini-mem: Segmented attention with per-head compressive memory.

Processes token streams of unbounded length in fixed-size segments. Each
head combines softmax attention inside the segment with a linear-attention
read from a bounded associative memory that accumulates every earlier
segment, blended through a learned gate.

Features:
    - Memory cost independent of stream length
    - Batched device backend (CUDA / MPS) and a numpy CPU reference
    - Pluggable Q/K/V projection

Example:
    >>> from infini_mem import (
    ...     EmbeddingTable, ReferenceBackend, SegmentOrchestrator, default_engine_config,
    ... )
    >>> config = default_engine_config(segment_size=4, embed_dim=12)
    >>> table = EmbeddingTable.random(config.vocab_size, config.d_model, seed=0)
    >>> orchestrator = SegmentOrchestrator(config, ReferenceBackend(config), table)
    >>> result = orchestrator.run([1, 2, 3, 4, 5])
    >>> result.average.shape
    (12,)

References:
    - Infini-attention: https://arxiv.org/abs/2404.07143
    - Linear Transformers Are Secretly Fast Weight Programmers: https://arxiv.org/abs/2102.11174
"""

from __future__ import annotations

from .backends import AttentionBackend, DeviceBackend, ReferenceBackend, create_backend
from .config import EngineConfig, default_engine_config
from .device import BufferManager, ComputeContext, shared_context
from .embedding import EmbeddingTable
from .errors import (
    DeviceUnavailable,
    ExternalConversionFailure,
    InfiniMemError,
    InvalidConfiguration,
    NumericDegeneracy,
    TransferFailure,
)
from .memory import HeadMemoryState, MultiHeadMemory
from .orchestrator import SegmentOrchestrator, StreamResult, StreamState
from .projection import FixedPartitionProjection, LinearQKVProjection, TiledOutputProjection
from .utils import elu_plus_one, sigmoid_gate

__version__ = "0.1.0"
__all__ = [
    "AttentionBackend",
    "BufferManager",
    "ComputeContext",
    "DeviceBackend",
    "DeviceUnavailable",
    "EmbeddingTable",
    "EngineConfig",
    "ExternalConversionFailure",
    "FixedPartitionProjection",
    "HeadMemoryState",
    "InfiniMemError",
    "InvalidConfiguration",
    "LinearQKVProjection",
    "MultiHeadMemory",
    "NumericDegeneracy",
    "ReferenceBackend",
    "SegmentOrchestrator",
    "StreamResult",
    "StreamState",
    "TiledOutputProjection",
    "TransferFailure",
    "create_backend",
    "default_engine_config",
    "elu_plus_one",
    "shared_context",
    "sigmoid_gate",
]
