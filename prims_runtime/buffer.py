"""Host buffer: numpy-backed DeviceBuffer for the CPU backend."""

from __future__ import annotations

import numpy as np

from prims_runtime.backend import DeviceBuffer
from prims_runtime.device import Device

_CPU = Device.cpu()


class HostBuffer(DeviceBuffer):
    """Flat numpy array in host memory.

    Freed buffers drop their storage; the handle stays around only to
    report the double free.
    """

    def __init__(self, data: np.ndarray):
        self._data = data
        self._size = int(data.size)
        self._dtype = data.dtype
        self._freed = False

    @property
    def device(self) -> Device:
        return _CPU

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def size(self) -> int:
        return self._size

    @property
    def native_handle(self) -> np.ndarray:
        return self._data

    @property
    def ptr(self) -> int:
        return self._data.ctypes.data

    @property
    def freed(self) -> bool:
        return self._freed

    def to_numpy(self) -> np.ndarray:
        return self._data.copy()

    def _release(self) -> None:
        self._data = np.empty(0, dtype=self._dtype)
        self._freed = True
