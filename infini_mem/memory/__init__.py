"""Memory module for infini-mem."""

from .multi_head import MultiHeadMemory, create_multi_head_memory
from .state import HeadMemoryState

__all__ = [
    "HeadMemoryState",
    "MultiHeadMemory",
    "create_multi_head_memory",
]
