"""Backend selection: one backend per device, chosen once at startup."""

from __future__ import annotations

import logging
import threading

from prims_runtime.backend import Backend
from prims_runtime.config import DEFAULT_CONFIG, BackendConfig
from prims_runtime.cpu_backend import CPUBackend
from prims_runtime.device import Device, DeviceKind
from prims_runtime.errors import InvalidArgument

logger = logging.getLogger(__name__)

_BACKENDS: dict[Device, Backend] = {}
_LOCK = threading.Lock()


def _cuda_device_count() -> int:
    try:
        import cupy as cp
    except ImportError:
        return 0
    try:
        return cp.cuda.runtime.getDeviceCount()
    except cp.cuda.runtime.CUDARuntimeError as exc:
        logger.warning("CuPy is installed but no CUDA device is usable: %s", exc)
        return 0


def available_devices() -> list[Device]:
    """Host CPU first, then every visible CUDA device."""
    return [Device.cpu()] + [Device.cuda(i) for i in range(_cuda_device_count())]


def get_backend(device: Device | str | None = None, config: BackendConfig | None = None) -> Backend:
    """Return the process-wide backend for `device`, creating it on first use.

    `config` only applies when the backend is created; later calls return
    the existing instance.
    """
    config = config or DEFAULT_CONFIG
    device = Device.parse(device if device is not None else config.default_device)
    with _LOCK:
        backend = _BACKENDS.get(device)
        if backend is None:
            backend = _create_backend(device, config)
            _BACKENDS[device] = backend
            logger.debug("registered %s backend for %s", backend.name, device)
        return backend


def _create_backend(device: Device, config: BackendConfig) -> Backend:
    if device.kind is DeviceKind.CPU:
        return CPUBackend(config)
    if device.index >= _cuda_device_count():
        raise InvalidArgument(f"{device} is not available")
    from cuda_runtime.cuda_backend import CUDABackend

    return CUDABackend(device.index, config)


def reset_backends() -> None:
    """Drop every registered backend (tests only)."""
    with _LOCK:
        _BACKENDS.clear()
