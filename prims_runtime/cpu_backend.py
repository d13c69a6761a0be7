"""Host backend: the primitive catalogue on numpy arrays.

Executes eagerly on the calling thread, so issue order is completion order
and HostContext.synchronize() has nothing to wait for. GEMM goes through the
same row-major -> column-major parameter mapping as the accelerator backend,
executed by the numpy column-major reference in prims_runtime.blas.
"""

from __future__ import annotations

import logging

import numpy as np

from prims_runtime import dtypes as dt
from prims_runtime.backend import Backend, ExecutionContext
from prims_runtime.blas import GemmCall, column_major_gemm
from prims_runtime.buffer import HostBuffer
from prims_runtime.config import BackendConfig
from prims_runtime.device import Device
from prims_runtime.errors import DeviceOutOfMemory
from prims_runtime.permute import PermutationDescriptor

logger = logging.getLogger(__name__)


class HostContext(ExecutionContext):
    """Ordering domain for the host backend (work runs at issue time)."""

    def synchronize(self) -> None:
        pass


class CPUBackend(Backend):
    """Backend implementation on the host CPU using numpy."""

    def __init__(self, config: BackendConfig | None = None):
        super().__init__(Device.cpu(), config)
        logger.debug("created cpu backend (memory limit: %s)", self.config.memory_limit_bytes)

    @property
    def name(self) -> str:
        return "cpu"

    @property
    def supported_dtypes(self) -> tuple[np.dtype, ...]:
        return dt.COMMON_DTYPES + (dt.BFLOAT16,)

    @property
    def gemm_dtypes(self) -> tuple[np.dtype, ...]:
        return dt.FLOAT_DTYPES

    def _new_context(self) -> HostContext:
        return HostContext(self)

    # ── memory ──

    def _allocate(self, size: int, dtype: np.dtype) -> HostBuffer:
        try:
            return HostBuffer(np.empty(size, dtype=dtype))
        except MemoryError as exc:
            raise DeviceOutOfMemory(f"Host allocation of {size} x {dtype.name} failed") from exc

    def _free(self, buf: HostBuffer) -> None:
        buf._release()

    # ── elementwise ──

    def _fill(self, ctx, x, a, n):
        x.native_handle[:n] = a

    def _copy(self, ctx, x, y, n):
        np.copyto(y.native_handle[:n], x.native_handle[:n])

    def _add(self, ctx, a, b, c, n):
        np.add(a.native_handle[:n], b.native_handle[:n], out=c.native_handle[:n])

    def _add_scalar(self, ctx, a, x, y, n):
        np.add(x.native_handle[:n], a, out=y.native_handle[:n])

    def _sub(self, ctx, a, b, c, n):
        np.subtract(a.native_handle[:n], b.native_handle[:n], out=c.native_handle[:n])

    def _mul(self, ctx, a, b, c, n):
        np.multiply(a.native_handle[:n], b.native_handle[:n], out=c.native_handle[:n])

    def _mul_scalar(self, ctx, a, x, y, n):
        np.multiply(x.native_handle[:n], a, out=y.native_handle[:n])

    def _exp(self, ctx, x, y, n):
        np.exp(x.native_handle[:n], out=y.native_handle[:n])

    def _pow(self, ctx, x, y, p, n):
        np.power(x.native_handle[:n], p, out=y.native_handle[:n])

    def _relu(self, ctx, x, y, n):
        np.maximum(x.native_handle[:n], x.dtype.type(0), out=y.native_handle[:n])

    # ── reductions ──

    def _sum(self, ctx, x, n):
        return np.add.reduce(x.native_handle[:n], dtype=x.dtype)

    def _max(self, ctx, x, n):
        return np.max(x.native_handle[:n])

    def _max_element(self, ctx, x, n):
        return np.argmax(x.native_handle[:n])

    # ── top-k ──

    def _topk(self, ctx, x, keys, order, values, indices, k, n):
        src = x.native_handle[:n]
        key_arr = keys.native_handle[:n]
        idx_arr = order.native_handle[:n]

        # Stable ascending sort of the reversed input, read back to front:
        # descending by value, ties in ascending original position.
        rev_rank = np.argsort(src[::-1], kind="stable")
        np.subtract(n - 1, rev_rank[::-1], out=idx_arr)
        np.take(src, idx_arr, out=key_arr)

        np.copyto(values.native_handle[:k], key_arr[:k])
        np.copyto(indices.native_handle[:k], idx_arr[:k])

    # ── transpose ──

    def _transpose(self, ctx, a, desc: PermutationDescriptor, b):
        size = desc.size
        np.take(a.native_handle[:size], desc.source_indices(), out=b.native_handle[:size])

    # ── GEMM ──

    def _gemm(self, ctx, call: GemmCall, a, b, alpha, beta, c):
        column_major_gemm(
            call.transa, call.transb, call.m, call.n, call.k,
            alpha, b.native_handle, call.lda,
            a.native_handle, call.ldb,
            beta, c.native_handle, call.ldc,
        )

    def _gemm_batch(self, ctx, call: GemmCall, a, b, alpha, beta, c, batch_size, table):
        # The BLAS view is swapped: call.m is the caller's n and call.n the caller's m.
        rows, cols, inner = call.n, call.m, call.k
        offsets = table.native_handle[:3 * batch_size]
        step = np.arange(batch_size, dtype=offsets.dtype)
        offsets[:batch_size] = step * (rows * inner)
        offsets[batch_size:2 * batch_size] = step * (inner * cols)
        offsets[2 * batch_size:] = step * (rows * cols)

        a_flat, b_flat, c_flat = a.native_handle, b.native_handle, c.native_handle
        for i in range(batch_size):
            a_off = int(offsets[i])
            b_off = int(offsets[batch_size + i])
            c_off = int(offsets[2 * batch_size + i])
            column_major_gemm(
                call.transa, call.transb, call.m, call.n, call.k,
                alpha, b_flat[b_off:], call.lda,
                a_flat[a_off:], call.ldb,
                beta, c_flat[c_off:], call.ldc,
            )

    # ── host transfer ──

    def _copy_to_device(self, ctx, host_x, device_y, n):
        np.copyto(device_y.native_handle[:n], host_x[:n])

    def _copy_to_host(self, ctx, device_x, host_y, n):
        np.copyto(host_y[:n], device_x.native_handle[:n])
