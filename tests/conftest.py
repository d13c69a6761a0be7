"""Shared fixtures and helpers for primitives tests.

Contract tests take the `backend` fixture, which runs them once per
available device (host always, CUDA when CuPy sees a GPU).
"""

import numpy as np
import pytest

from prims_runtime.cpu_backend import CPUBackend
from prims_runtime.device import DeviceKind
from prims_runtime.registry import available_devices


def _make_backend(device):
    if device.kind is DeviceKind.CPU:
        return CPUBackend()
    from cuda_runtime.cuda_backend import CUDABackend

    return CUDABackend(device.index)


@pytest.fixture(params=available_devices(), ids=str)
def backend(request):
    """Fresh backend per test so allocation stats start at zero."""
    return _make_backend(request.param)


@pytest.fixture
def ctx(backend):
    """Worker context, closed (scratch released) at teardown."""
    context = backend.create_context()
    yield context
    context.close()


@pytest.fixture
def cpu():
    return CPUBackend()


def upload(backend, data, ctx=None):
    """Allocate a buffer holding `data` (flattened)."""
    return backend.from_numpy(np.asarray(data), ctx=ctx)


def download(backend, buf, n=None, ctx=None):
    """Copy the first n elements of `buf` to a fresh host array."""
    n = buf.size if n is None else n
    host = np.empty(n, dtype=buf.dtype)
    backend.copy_to_host(buf, host, n, ctx=ctx)
    (ctx or backend.default_context).synchronize()
    return host


def empty(backend, n, dtype):
    return backend.allocate(n, dtype)
