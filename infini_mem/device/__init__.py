"""Device context and buffer management."""

from .buffers import BufferManager, DeviceBuffer
from .context import ComputeContext, shared_context

__all__ = [
    "BufferManager",
    "ComputeContext",
    "DeviceBuffer",
    "shared_context",
]
