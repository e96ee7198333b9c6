"""Device buffer manager: upload, allocate and download device storage."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import torch

from ..errors import InvalidConfiguration, TransferFailure
from .context import ComputeContext

_DTYPE_BY_ELEMENT_SIZE = {
    2: torch.float16,
    4: torch.float32,
    8: torch.float64,
}


@dataclass
class DeviceBuffer:
    """A device-resident flat buffer owned by one stage of one segment pass."""

    label: str
    tensor: torch.Tensor

    @property
    def element_count(self) -> int:
        return self.tensor.numel()

    def view(self, *shape: int) -> torch.Tensor:
        """Shaped view of the buffer contents for kernels."""
        return self.tensor.view(*shape)


class BufferManager:
    """
    Moves data between host memory and a ComputeContext's device.

    All three operations are complete with respect to data visibility when
    they return: uploads are visible to kernels submitted afterwards and
    downloads reflect every kernel submitted before them.

    Args:
        context: The compute context that owns the device and queue.
    """

    def __init__(self, context: ComputeContext) -> None:
        self.context = context
        self._live: dict[int, DeviceBuffer] = {}

    @property
    def live_count(self) -> int:
        """Number of buffers handed out and not yet released."""
        return len(self._live)

    def _track(self, buffer: DeviceBuffer) -> DeviceBuffer:
        self._live[id(buffer)] = buffer
        return buffer

    def upload(self, host_data: np.ndarray, label: str = "upload") -> DeviceBuffer:
        """
        Copy a host array into a freshly allocated device buffer.

        Args:
            host_data: Array of any shape; stored flat as float32.
            label: Debug name of the buffer.

        Returns:
            DeviceBuffer holding host_data.size elements.
        """
        array = np.asarray(host_data, dtype=np.float32).reshape(-1)
        try:
            with self.context.submit():
                tensor = torch.tensor(array, dtype=torch.float32, device=self.context.device)
        except RuntimeError as exc:
            raise TransferFailure(f"upload of {label!r} ({array.size} elements) failed: {exc}") from exc
        return self._track(DeviceBuffer(label, tensor))

    def allocate(self, element_count: int, element_size: int = 4, label: str = "scratch") -> DeviceBuffer:
        """
        Reserve zero-initialized device storage.

        Args:
            element_count: Number of elements.
            element_size: Bytes per element (2, 4 or 8).
            label: Debug name of the buffer.
        """
        if element_count < 0:
            raise InvalidConfiguration(f"element_count must be non-negative, got {element_count}")
        dtype = _DTYPE_BY_ELEMENT_SIZE.get(element_size)
        if dtype is None:
            raise InvalidConfiguration(
                f"unsupported element_size {element_size}, expected one of {sorted(_DTYPE_BY_ELEMENT_SIZE)}"
            )
        try:
            with self.context.submit():
                tensor = torch.zeros(element_count, dtype=dtype, device=self.context.device)
        except RuntimeError as exc:
            raise TransferFailure(f"allocation of {label!r} ({element_count} elements) failed: {exc}") from exc
        return self._track(DeviceBuffer(label, tensor))

    def download(self, handle: DeviceBuffer, element_count: int) -> np.ndarray:
        """
        Copy the first ``element_count`` elements of a buffer to the host.

        Blocks until the device has finished all work submitted before the
        call.
        """
        if element_count > handle.element_count:
            raise TransferFailure(
                f"download of {element_count} elements from {handle.label!r} "
                f"exceeds its size ({handle.element_count})"
            )
        try:
            with self.context.submit():
                host = handle.tensor.reshape(-1)[:element_count].to("cpu")
            self.context.wait()
        except RuntimeError as exc:
            raise TransferFailure(f"download of {handle.label!r} failed: {exc}") from exc
        return host.numpy()

    def release(self, *handles: DeviceBuffer) -> None:
        """Drop buffers at the end of a segment pass."""
        for handle in handles:
            self._live.pop(id(handle), None)
