"""Segment-stage backends: batched device kernels and the CPU reference."""

from __future__ import annotations

from ..config import EngineConfig
from ..device import ComputeContext, shared_context
from .base import AttentionBackend, SegmentTensors
from .device import DeviceBackend
from .reference import ReferenceBackend


def create_backend(
    config: EngineConfig,
    context: ComputeContext | None = None,
) -> AttentionBackend:
    """
    Pick the backend requested by ``config.use_device_backend``.

    Args:
        config: Engine configuration.
        context: Context for the device backend. Defaults to the shared one.
    """
    if not config.use_device_backend:
        return ReferenceBackend(config)
    return DeviceBackend(config, context or shared_context())


__all__ = [
    "AttentionBackend",
    "DeviceBackend",
    "ReferenceBackend",
    "SegmentTensors",
    "create_backend",
]
