"""Compute context: device handle and submission queue."""

from __future__ import annotations

import contextlib
import functools
import logging
from typing import Iterator

import torch

from ..errors import DeviceUnavailable

logger = logging.getLogger(__name__)


def _mps_available() -> bool:
    backend = getattr(torch.backends, "mps", None)
    return backend is not None and backend.is_available()


class ComputeContext:
    """
    Device handle plus an in-order submission queue.

    On CUDA the queue is a dedicated ``torch.cuda.Stream``; other devices
    use their implicit in-order queue. Work is submitted inside ``submit()``
    and ``wait()`` blocks until all of it has completed.

    Use ``ComputeContext.create`` (or ``shared_context`` for the process-wide
    instance) rather than the constructor.

    Example:
        >>> ctx = ComputeContext.create()
        >>> with ctx.submit():
        ...     y = x.to(ctx.device) * 2
        >>> ctx.wait()
    """

    def __init__(self, device: torch.device, stream: torch.cuda.Stream | None = None) -> None:
        self.device = device
        self.stream = stream

    @classmethod
    def create(cls, device: torch.device | str | None = None) -> ComputeContext:
        """
        Connect to a compute device.

        Args:
            device: Device to use. None selects CUDA, then MPS.

        Returns:
            A ready ComputeContext.

        Raises:
            DeviceUnavailable: No compatible device, or creation was refused.
        """
        if device is None:
            if torch.cuda.is_available():
                device = "cuda"
            elif _mps_available():
                device = "mps"
            else:
                raise DeviceUnavailable("No suitable compute device found (tried CUDA and MPS).")

        try:
            dev = torch.device(device)
        except (RuntimeError, TypeError) as exc:
            raise DeviceUnavailable(f"Invalid device {device!r}: {exc}") from exc

        stream = None
        if dev.type == "cuda":
            if not torch.cuda.is_available():
                raise DeviceUnavailable("CUDA was requested but is not available.")
            if dev.index is not None and dev.index >= torch.cuda.device_count():
                raise DeviceUnavailable(
                    f"CUDA device index {dev.index} out of range "
                    f"({torch.cuda.device_count()} devices present)."
                )
            try:
                stream = torch.cuda.Stream(device=dev)
            except RuntimeError as exc:
                raise DeviceUnavailable(f"Failed to create a CUDA stream on {dev}: {exc}") from exc
        elif dev.type == "mps":
            if not _mps_available():
                raise DeviceUnavailable("MPS was requested but is not available.")
        elif dev.type != "cpu":
            raise DeviceUnavailable(f"Unsupported device type {dev.type!r}.")

        logger.info("Compute context created on %s", dev)
        return cls(dev, stream)

    @contextlib.contextmanager
    def submit(self) -> Iterator[None]:
        """Scope a batch of operations onto this context's queue."""
        if self.stream is None:
            yield
            return
        with torch.cuda.stream(self.stream):
            yield

    def wait(self) -> None:
        """Block until all submitted work has completed."""
        if self.stream is not None:
            self.stream.synchronize()
        elif self.device.type == "mps":
            torch.mps.synchronize()

    def __repr__(self) -> str:
        return f"ComputeContext(device={self.device}, stream={'dedicated' if self.stream else 'default'})"


@functools.lru_cache(maxsize=None)
def _shared(device_key: str | None) -> ComputeContext:
    return ComputeContext.create(device_key)


def shared_context(device: torch.device | str | None = None) -> ComputeContext:
    """
    Process-wide ComputeContext for ``device``.

    Created on first use and reused afterwards. Failures are not cached.
    """
    return _shared(None if device is None else str(device))
