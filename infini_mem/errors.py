"""Exception hierarchy for infini-mem.

Every failure the engine reports derives from ``InfiniMemError`` so callers
can catch the whole family at the process boundary. None of these are retried.
"""

from __future__ import annotations


class InfiniMemError(Exception):
    """Base class for all infini-mem errors."""


class DeviceUnavailable(InfiniMemError, RuntimeError):
    """No compatible compute device, or device/queue creation was refused."""


class InvalidConfiguration(InfiniMemError, ValueError):
    """A size parameter is invalid (non-positive, or embed_dim not divisible by 3)."""


class ExternalConversionFailure(InfiniMemError):
    """The document-to-text converter failed to start or exited abnormally."""


class TransferFailure(InfiniMemError):
    """A host/device transfer or a device-side stage did not complete."""


class NumericDegeneracy(InfiniMemError):
    """Memory state became non-finite or the normalizer went negative."""
