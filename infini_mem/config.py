"""Configuration dataclasses for the segmented memory engine.

All configuration is centralized here. Fields are required; use
``default_engine_config`` for the standard values.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from .errors import InvalidConfiguration
from .utils import FEATURE_MAPS


@dataclass(frozen=True)
class EngineConfig:
    """Configuration for a segmented compressive-memory attention run.

    All fields are required - no defaults.

    Args:
        segment_size: Number of tokens per full segment.
        embed_dim: Model dimension d_model. Must be divisible by 3, the
            Q/K/V partition gives d_key = d_value = embed_dim // 3.
        vocab_size: Rows in the embedding table.
        num_heads: Number of attention heads. Must divide d_key.
        use_device_backend: Dispatch to a compute device instead of the
            CPU reference implementation.
        eps: Floor for the memory-read denominator.
        feature_map: Name of the non-negative feature map (see FEATURE_MAPS).
        gate_init: Initial raw gate parameter for every head.
        check_numerics: Abort with NumericDegeneracy when memory goes bad.
    """

    segment_size: int
    embed_dim: int
    vocab_size: int
    num_heads: int
    use_device_backend: bool
    eps: float
    feature_map: str
    gate_init: float
    check_numerics: bool

    def __post_init__(self) -> None:
        for name in ("segment_size", "embed_dim", "vocab_size", "num_heads"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidConfiguration(f"{name} must be a positive integer, got {value!r}")
        if self.embed_dim % 3 != 0:
            raise InvalidConfiguration(
                f"embed_dim ({self.embed_dim}) must be divisible by 3 for the Q/K/V partition"
            )
        if self.d_key % self.num_heads != 0:
            raise InvalidConfiguration(
                f"d_key ({self.d_key}) must be divisible by num_heads ({self.num_heads})"
            )
        if not self.eps > 0.0:
            raise InvalidConfiguration(f"eps must be positive, got {self.eps}")
        if self.feature_map not in FEATURE_MAPS:
            raise InvalidConfiguration(
                f"unknown feature_map {self.feature_map!r}, expected one of {sorted(FEATURE_MAPS)}"
            )

    @property
    def d_model(self) -> int:
        """Model dimension."""
        return self.embed_dim

    @property
    def d_key(self) -> int:
        """Total key width (one third of d_model)."""
        return self.embed_dim // 3

    @property
    def d_value(self) -> int:
        """Total value width (one third of d_model)."""
        return self.embed_dim // 3

    @property
    def head_dim(self) -> int:
        """Key/value width handled by each head."""
        return self.d_key // self.num_heads


def default_engine_config(**overrides: Any) -> EngineConfig:
    """Create the default engine configuration.

    Args:
        **overrides: Field values replacing the defaults.

    Returns:
        EngineConfig with standard default values.
    """
    config = EngineConfig(
        segment_size=16,
        embed_dim=12,
        vocab_size=10000,
        num_heads=1,
        use_device_backend=False,
        eps=1e-6,
        feature_map="elu_plus_one",
        gate_init=0.0,
        check_numerics=True,
    )
    if overrides:
        config = replace(config, **overrides)
    return config
