"""CUDA backend: CuPy-based Backend, DeviceBuffer and ExecutionContext.

Memory goes straight through cudaMalloc/cudaFree (no pool), every primitive
is enqueued on the non-blocking stream of its context, and GEMM calls
cuBLAS with the row-major -> column-major parameter swap. Reductions and
device -> host reads synchronize their context.
"""

from __future__ import annotations

import contextlib
import hashlib
import logging

import numpy as np

from cuda_runtime.cuda_templates import (
    BATCH_POINTER_TABLE_KERNEL,
    TRANSPOSE_MAX_DIMS,
    TRANSPOSE_ND,
)
from prims_runtime import dtypes as dt
from prims_runtime.backend import Backend, DeviceBuffer, ExecutionContext
from prims_runtime.blas import GemmCall
from prims_runtime.config import BackendConfig
from prims_runtime.device import Device
from prims_runtime.errors import DeviceError, DeviceOutOfMemory
from prims_runtime.permute import PermutationDescriptor

try:
    import cupy as cp
    from cupy_backends.cuda.libs import cublas

    HAS_CUPY = True
except ImportError:
    cp = None
    cublas = None
    HAS_CUPY = False

logger = logging.getLogger(__name__)

_CUDA_ERROR_MEMORY_ALLOCATION = 2  # cudaErrorMemoryAllocation

# Module-level compilation cache: source hash -> kernel
_KERNEL_CACHE: dict[str, object] = {}


def _get_or_compile_raw(source_code: str, kernel_name: str):
    key = hashlib.md5(source_code.encode()).hexdigest() + ":" + kernel_name
    cached = _KERNEL_CACHE.get(key)
    if cached is not None:
        return cached
    kernel = cp.RawKernel(source_code, kernel_name)
    _KERNEL_CACHE[key] = kernel
    return kernel


def _get_elementwise(spec: tuple[str, str, str, str]):
    in_params, out_params, operation, name = spec
    cached = _KERNEL_CACHE.get(name)
    if cached is not None:
        return cached
    kernel = cp.ElementwiseKernel(in_params, out_params, operation, name)
    _KERNEL_CACHE[name] = kernel
    return kernel


@contextlib.contextmanager
def _device_errors(op: str):
    """Translate CuPy/CUDA failures into the primitives error taxonomy."""
    try:
        yield
    except cp.cuda.memory.OutOfMemoryError as exc:
        raise DeviceOutOfMemory(f"{op}: {exc}") from exc
    except cp.cuda.runtime.CUDARuntimeError as exc:
        if exc.status == _CUDA_ERROR_MEMORY_ALLOCATION:
            raise DeviceOutOfMemory(f"{op}: {exc}") from exc
        raise DeviceError(f"{op}: {exc}") from exc
    except (cp.cuda.driver.CUDADriverError, cublas.CUBLASError, cp.cuda.compiler.CompileException) as exc:
        raise DeviceError(f"{op}: {exc}") from exc


class CUDABuffer(DeviceBuffer):
    """CUDA device buffer backed by a cupy.ndarray over a cudaMalloc block."""

    def __init__(self, data: cp.ndarray, device: Device, raw_ptr: int = 0):
        self._data = data
        self._device = device
        self._raw_ptr = raw_ptr
        self._size = int(data.size)
        self._dtype = data.dtype
        self._freed = False

    @property
    def device(self) -> Device:
        return self._device

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def size(self) -> int:
        return self._size

    @property
    def native_handle(self) -> cp.ndarray:
        """Return the underlying cupy.ndarray."""
        return self._data

    @property
    def ptr(self) -> int:
        return self._data.data.ptr

    @property
    def freed(self) -> bool:
        return self._freed

    def to_numpy(self) -> np.ndarray:
        """Wait for the device, then download to a host array."""
        with _device_errors("to_numpy"), cp.cuda.Device(self._device.index):
            cp.cuda.runtime.deviceSynchronize()
            return cp.asnumpy(self._data)


class CUDAContext(ExecutionContext):
    """Execution context bound to one non-blocking CUDA stream."""

    def __init__(self, backend: CUDABackend):
        super().__init__(backend)
        with _device_errors("create_context"), backend.cp_device:
            self._stream = cp.cuda.Stream(non_blocking=True)

    @property
    def stream(self) -> cp.cuda.Stream:
        return self._stream

    def synchronize(self) -> None:
        with _device_errors("synchronize"):
            self._stream.synchronize()


class CUDABackend(Backend):
    """CUDA GPU primitives backend using CuPy."""

    def __init__(self, device_id: int = 0, config: BackendConfig | None = None):
        if not HAS_CUPY:
            raise RuntimeError("CuPy is not installed. Install with: pip install 'tensor-prims[cuda]'")
        super().__init__(Device.cuda(device_id), config)
        self._device_id = device_id
        self._cp_device = cp.cuda.Device(device_id)
        logger.debug("created cuda backend on device %d", device_id)

    @property
    def name(self) -> str:
        return "cuda"

    @property
    def cp_device(self) -> cp.cuda.Device:
        """Return CuPy device object."""
        return self._cp_device

    @property
    def supported_dtypes(self) -> tuple[np.dtype, ...]:
        return dt.COMMON_DTYPES

    @property
    def gemm_dtypes(self) -> tuple[np.dtype, ...]:
        return (np.dtype(np.float32), np.dtype(np.float64))

    def synchronize(self) -> None:
        """Synchronize the whole CUDA device (every context)."""
        with _device_errors("synchronize"):
            self._cp_device.synchronize()

    def _new_context(self) -> CUDAContext:
        return CUDAContext(self)

    @contextlib.contextmanager
    def _on(self, ctx: CUDAContext, op: str):
        """Make this device and the context's stream current for `op`."""
        with _device_errors(op), self._cp_device, ctx.stream:
            yield

    # ── memory ──

    def _allocate(self, size: int, dtype: np.dtype) -> CUDABuffer:
        nbytes = size * dtype.itemsize
        with _device_errors("allocate"), self._cp_device:
            if nbytes == 0:
                return CUDABuffer(cp.empty(0, dtype=dtype), self._device)
            raw_ptr = cp.cuda.runtime.malloc(nbytes)
            mem = cp.cuda.UnownedMemory(raw_ptr, nbytes, self, self._device_id)
            data = cp.ndarray((size,), dtype=dtype, memptr=cp.cuda.MemoryPointer(mem, 0))
        return CUDABuffer(data, self._device, raw_ptr)

    def _free(self, buf: CUDABuffer) -> None:
        with _device_errors("free"), self._cp_device:
            if buf._raw_ptr:
                cp.cuda.runtime.free(buf._raw_ptr)
        buf._data = None
        buf._freed = True

    # ── elementwise ──

    def _fill(self, ctx, x, a, n):
        with self._on(ctx, "fill"):
            x.native_handle[:n].fill(a)

    def _copy(self, ctx, x, y, n):
        with self._on(ctx, "copy"):
            cp.copyto(y.native_handle[:n], x.native_handle[:n])

    def _add(self, ctx, a, b, c, n):
        with self._on(ctx, "add"):
            cp.add(a.native_handle[:n], b.native_handle[:n], out=c.native_handle[:n])

    def _add_scalar(self, ctx, a, x, y, n):
        with self._on(ctx, "add"):
            cp.add(x.native_handle[:n], a, out=y.native_handle[:n])

    def _sub(self, ctx, a, b, c, n):
        with self._on(ctx, "sub"):
            cp.subtract(a.native_handle[:n], b.native_handle[:n], out=c.native_handle[:n])

    def _mul(self, ctx, a, b, c, n):
        with self._on(ctx, "mul"):
            cp.multiply(a.native_handle[:n], b.native_handle[:n], out=c.native_handle[:n])

    def _mul_scalar(self, ctx, a, x, y, n):
        with self._on(ctx, "mul"):
            cp.multiply(x.native_handle[:n], a, out=y.native_handle[:n])

    def _exp(self, ctx, x, y, n):
        with self._on(ctx, "exp"):
            cp.exp(x.native_handle[:n], out=y.native_handle[:n])

    def _pow(self, ctx, x, y, p, n):
        with self._on(ctx, "pow"):
            cp.power(x.native_handle[:n], p, out=y.native_handle[:n])

    def _relu(self, ctx, x, y, n):
        with self._on(ctx, "relu"):
            cp.maximum(x.native_handle[:n], x.dtype.type(0), out=y.native_handle[:n])

    # ── reductions (read back to host) ──

    def _read_scalar(self, ctx, result: cp.ndarray):
        host = result.get(stream=ctx.stream)
        ctx.stream.synchronize()
        return host[()]

    def _sum(self, ctx, x, n):
        with self._on(ctx, "sum"):
            return self._read_scalar(ctx, cp.sum(x.native_handle[:n], dtype=x.dtype))

    def _max(self, ctx, x, n):
        with self._on(ctx, "max"):
            return self._read_scalar(ctx, cp.max(x.native_handle[:n]))

    def _max_element(self, ctx, x, n):
        with self._on(ctx, "max_element"):
            return self._read_scalar(ctx, cp.argmax(x.native_handle[:n]))

    # ── top-k ──

    def _topk(self, ctx, x, keys, order, values, indices, k, n):
        with self._on(ctx, "topk"):
            src = x.native_handle[:n]
            key_arr = keys.native_handle[:n]
            idx_arr = order.native_handle[:n]

            # Stable ascending sort of the reversed input, read back to front:
            # descending by value, ties in ascending original position.
            rev_rank = cp.argsort(src[::-1], kind="stable")
            cp.subtract(n - 1, rev_rank[::-1], out=idx_arr)
            cp.take(src, idx_arr, out=key_arr)

            cp.copyto(values.native_handle[:k], key_arr[:k])
            cp.copyto(indices.native_handle[:k], idx_arr[:k])

    # ── transpose ──

    def _transpose(self, ctx, a, desc: PermutationDescriptor, b):
        pad = TRANSPOSE_MAX_DIMS - desc.ndim
        out_strides = list(desc.out_strides) + [1] * pad
        src_strides = list(desc.src_strides) + [0] * pad
        with self._on(ctx, "transpose"):
            _get_elementwise(TRANSPOSE_ND)(
                a.native_handle, *out_strides, *src_strides, b.native_handle[:desc.size],
            )

    # ── GEMM ──

    def _blas_handle(self, ctx):
        handle = cp.cuda.device.get_cublas_handle()
        cublas.setStream(handle, ctx.stream.ptr)
        cublas.setPointerMode(handle, cublas.CUBLAS_POINTER_MODE_HOST)
        return handle

    @staticmethod
    def _blas_op(transpose: bool) -> int:
        return cublas.CUBLAS_OP_T if transpose else cublas.CUBLAS_OP_N

    def _gemm(self, ctx, call: GemmCall, a, b, alpha, beta, c):
        alpha_host = np.array(alpha, dtype=c.dtype)
        beta_host = np.array(beta, dtype=c.dtype)
        func = cublas.sgemm if c.dtype == np.float32 else cublas.dgemm
        with self._on(ctx, "gemm"):
            func(
                self._blas_handle(ctx),
                self._blas_op(call.transa), self._blas_op(call.transb),
                call.m, call.n, call.k,
                alpha_host.ctypes.data, b.ptr, call.lda,
                a.ptr, call.ldb,
                beta_host.ctypes.data, c.ptr, call.ldc,
            )

    def _gemm_batch(self, ctx, call: GemmCall, a, b, alpha, beta, c, batch_size, table):
        # The BLAS view is swapped: call.m is the caller's n and call.n the caller's m.
        rows, cols, inner = call.n, call.m, call.k
        item = c.dtype.itemsize
        alpha_host = np.array(alpha, dtype=c.dtype)
        beta_host = np.array(beta, dtype=c.dtype)
        func = cublas.sgemmBatched if c.dtype == np.float32 else cublas.dgemmBatched

        block = self.config.block_size
        grid = ((batch_size + block - 1) // block,)
        entry = table.dtype.itemsize
        a_table = table.ptr
        b_table = table.ptr + batch_size * entry
        c_table = table.ptr + 2 * batch_size * entry

        with self._on(ctx, "gemm_batch"):
            _get_or_compile_raw(BATCH_POINTER_TABLE_KERNEL, "batch_pointer_table")(
                grid, (block,),
                (table.native_handle,
                 np.int64(a.ptr), np.int64(b.ptr), np.int64(c.ptr),
                 np.int64(rows * inner * item), np.int64(inner * cols * item), np.int64(rows * cols * item),
                 np.int32(batch_size)),
            )
            func(
                self._blas_handle(ctx),
                self._blas_op(call.transa), self._blas_op(call.transb),
                call.m, call.n, call.k,
                alpha_host.ctypes.data, b_table, call.lda,
                a_table, call.ldb,
                beta_host.ctypes.data, c_table, call.ldc,
                batch_size,
            )

    # ── host transfer ──

    def _copy_to_device(self, ctx, host_x, device_y, n):
        with self._on(ctx, "copy_to_device"):
            device_y.native_handle[:n].set(host_x[:n], stream=ctx.stream)

    def _copy_to_host(self, ctx, device_x, host_y, n):
        with self._on(ctx, "copy_to_host"):
            device_x.native_handle[:n].get(stream=ctx.stream, out=host_y[:n])
