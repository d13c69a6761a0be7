"""Abstract interfaces for the primitives layer.

Backend is the one contract every device implements. Public methods validate
their arguments (dtype catalogue, buffer ownership, sizes, shapes) and only
then hand over to the device-specific `_op` hooks, so a failed precondition
never issues device work or writes a caller-visible output.
"""

from __future__ import annotations

import logging
import numbers
import threading
from abc import ABC, abstractmethod
from typing import Any

import numpy as np

from prims_runtime import dtypes as dt
from prims_runtime.blas import GemmCall, row_major_to_column_major
from prims_runtime.config import DEFAULT_CONFIG, BackendConfig
from prims_runtime.device import Device
from prims_runtime.errors import DeviceError, InvalidArgument, UnsupportedDType
from prims_runtime.memory import AllocationStats, AllocationTracker
from prims_runtime.permute import PermutationDescriptor
from prims_runtime.scratch import GEMM_BATCH_POINTERS, TOPK_INDICES, TOPK_KEYS, ScratchCache

logger = logging.getLogger(__name__)

POINTER_TABLE_DTYPE = np.dtype(np.int64)


class DeviceBuffer(ABC):
    """Fixed-size, device-resident block of homogeneous elements."""

    @property
    @abstractmethod
    def device(self) -> Device:
        ...

    @property
    @abstractmethod
    def dtype(self) -> np.dtype:
        ...

    @property
    @abstractmethod
    def size(self) -> int:
        """Number of elements."""
        ...

    @property
    @abstractmethod
    def native_handle(self) -> Any:
        """Backend-native storage (numpy.ndarray on host, cupy.ndarray on CUDA)."""
        ...

    @property
    @abstractmethod
    def ptr(self) -> int:
        """Address of element 0."""
        ...

    @property
    @abstractmethod
    def freed(self) -> bool:
        ...

    @abstractmethod
    def to_numpy(self) -> np.ndarray:
        """Copy the contents to a host array. Blocks until pending writes finish."""
        ...

    @property
    def nbytes(self) -> int:
        return self.size * self.dtype.itemsize

    def __repr__(self) -> str:
        state = " freed" if self.freed else ""
        return f"<{type(self).__name__} {self.device} {self.dtype.name}[{self.size}]{state}>"


class ExecutionContext(ABC):
    """Ordering domain for issued operations, plus the scratch it owns.

    Operations issued on one context complete in issue order. A context
    belongs to one worker thread; create one per worker with
    Backend.create_context(), or pass ctx=None to use the calling thread's
    default context.
    """

    def __init__(self, backend: Backend):
        self._backend = backend
        self._scratch = ScratchCache(backend)
        self._ops_issued = 0
        self._closed = False

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def scratch(self) -> ScratchCache:
        return self._scratch

    @property
    def ops_issued(self) -> int:
        return self._ops_issued

    @property
    def closed(self) -> bool:
        return self._closed

    def record_issue(self) -> None:
        self._ops_issued += 1

    @abstractmethod
    def synchronize(self) -> None:
        """Block until every operation issued on this context has completed."""
        ...

    def close(self) -> None:
        """Wait for pending work, then release the scratch buffers."""
        if self._closed:
            return
        self.synchronize()
        logger.debug("closing context on %s, releasing %d scratch bytes", self._backend.device, self._scratch.nbytes)
        self._scratch.release()
        self._closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class Backend(ABC):
    """Tensor primitives for one device.

    Asynchronous with respect to the caller except sum/max/max_element,
    which return host scalars, and the host side of transfers.
    """

    def __init__(self, device: Device, config: BackendConfig | None = None):
        self._device = device
        self._config = config or DEFAULT_CONFIG
        self._tracker = AllocationTracker(self._config.memory_limit_bytes)
        self._local = threading.local()
        self._default_contexts: list[ExecutionContext] = []
        self._contexts_lock = threading.Lock()

    # ── identity ──

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def supported_dtypes(self) -> tuple[np.dtype, ...]:
        ...

    @property
    @abstractmethod
    def gemm_dtypes(self) -> tuple[np.dtype, ...]:
        ...

    @property
    def device(self) -> Device:
        return self._device

    @property
    def config(self) -> BackendConfig:
        return self._config

    # ── memory ──

    @property
    def memory_stats(self) -> AllocationStats:
        return self._tracker.stats

    def allocate(self, size: int, dtype) -> DeviceBuffer:
        """Allocate `size` elements of `dtype` on this device."""
        dtype = dt.resolve_dtype(dtype)
        dt.check_supported(dtype, self.supported_dtypes, "allocate")
        if size < 0:
            raise InvalidArgument(f"allocate: negative size {size}")
        nbytes = int(size) * dtype.itemsize
        self._tracker.reserve(nbytes)
        try:
            return self._allocate(int(size), dtype)
        except Exception:
            self._tracker.rollback(nbytes)
            raise

    def free(self, buf: DeviceBuffer) -> None:
        if buf.device != self._device:
            raise DeviceError(f"free: {buf!r} does not belong to {self._device}")
        if buf.freed:
            raise DeviceError(f"free: {buf!r} was already freed")
        self._free(buf)
        self._tracker.release(buf.nbytes)

    def from_numpy(self, data: np.ndarray, ctx: ExecutionContext | None = None) -> DeviceBuffer:
        """Allocate a buffer and fill it from a host array (flattened)."""
        flat = np.ascontiguousarray(data).ravel()
        buf = self.allocate(flat.size, flat.dtype)
        self.copy_to_device(flat, buf, flat.size, ctx=ctx)
        return buf

    # ── contexts ──

    def create_context(self) -> ExecutionContext:
        return self._new_context()

    @property
    def default_context(self) -> ExecutionContext:
        """The calling thread's context for `ctx=None` calls, created on first use."""
        context = getattr(self._local, "context", None)
        if context is None or context.closed:
            context = self._new_context()
            self._local.context = context
            with self._contexts_lock:
                self._default_contexts = [c for c in self._default_contexts if not c.closed]
                self._default_contexts.append(context)
        return context

    def synchronize(self) -> None:
        """Block until work issued through every default context has completed."""
        with self._contexts_lock:
            contexts = [c for c in self._default_contexts if not c.closed]
        for context in contexts:
            context.synchronize()

    # ── elementwise ──

    def fill(self, x: DeviceBuffer, a, n: int, *, ctx: ExecutionContext | None = None) -> None:
        ctx = self._context(ctx)
        value = self._scalar("fill", a, self._check_buffers("fill", n, x))
        if n == 0:
            return
        ctx.record_issue()
        self._fill(ctx, x, value, n)

    def copy(self, x: DeviceBuffer, y: DeviceBuffer, n: int, *, ctx: ExecutionContext | None = None) -> None:
        ctx = self._context(ctx)
        self._check_buffers("copy", n, x, y)
        if n == 0 or x is y:
            return
        ctx.record_issue()
        self._copy(ctx, x, y, n)

    def add(self, a, x: DeviceBuffer, y: DeviceBuffer, n: int, *, ctx: ExecutionContext | None = None) -> None:
        """y = a + x. `a` is a scalar (broadcast) or a buffer (pairwise)."""
        ctx = self._context(ctx)
        if isinstance(a, DeviceBuffer):
            self._check_buffers("add", n, a, x, y)
            if n:
                ctx.record_issue()
                self._add(ctx, a, x, y, n)
            return
        dtype = self._check_buffers("add", n, x, y)
        scalar = self._scalar("add", a, dtype)
        if n:
            ctx.record_issue()
            self._add_scalar(ctx, scalar, x, y, n)

    def sub(self, a: DeviceBuffer, b: DeviceBuffer, c: DeviceBuffer, n: int, *,
            ctx: ExecutionContext | None = None) -> None:
        """c = a - b."""
        ctx = self._context(ctx)
        self._check_buffers("sub", n, a, b, c)
        if n:
            ctx.record_issue()
            self._sub(ctx, a, b, c, n)

    def mul(self, a, x: DeviceBuffer, y: DeviceBuffer, n: int, *, ctx: ExecutionContext | None = None) -> None:
        """y = a * x. `a` is a scalar (broadcast) or a buffer (pairwise)."""
        ctx = self._context(ctx)
        if isinstance(a, DeviceBuffer):
            self._check_buffers("mul", n, a, x, y)
            if n:
                ctx.record_issue()
                self._mul(ctx, a, x, y, n)
            return
        dtype = self._check_buffers("mul", n, x, y)
        scalar = self._scalar("mul", a, dtype)
        if n:
            ctx.record_issue()
            self._mul_scalar(ctx, scalar, x, y, n)

    def exp(self, x: DeviceBuffer, y: DeviceBuffer, n: int, *, ctx: ExecutionContext | None = None) -> None:
        ctx = self._context(ctx)
        dt.check_floating(self._check_buffers("exp", n, x, y), "exp")
        if n:
            ctx.record_issue()
            self._exp(ctx, x, y, n)

    def pow(self, x: DeviceBuffer, y: DeviceBuffer, p, n: int, *, ctx: ExecutionContext | None = None) -> None:
        """y = x ** p."""
        ctx = self._context(ctx)
        dtype = self._check_buffers("pow", n, x, y)
        dt.check_floating(dtype, "pow")
        power = self._scalar("pow", p, dtype)
        if n:
            ctx.record_issue()
            self._pow(ctx, x, y, power, n)

    def relu(self, x: DeviceBuffer, y: DeviceBuffer, n: int, *, ctx: ExecutionContext | None = None) -> None:
        ctx = self._context(ctx)
        dt.check_floating(self._check_buffers("relu", n, x, y), "relu")
        if n:
            ctx.record_issue()
            self._relu(ctx, x, y, n)

    # ── reductions (synchronous) ──

    def sum(self, x: DeviceBuffer, n: int, *, ctx: ExecutionContext | None = None):
        """Sum of x[:n], accumulated in the element type."""
        ctx = self._context(ctx)
        dtype = self._check_buffers("sum", n, x)
        if n == 0:
            return dtype.type(0)
        ctx.record_issue()
        return self._sum(ctx, x, n)

    def max(self, x: DeviceBuffer, n: int, *, ctx: ExecutionContext | None = None):
        ctx = self._context(ctx)
        self._check_buffers("max", n, x)
        if n == 0:
            raise InvalidArgument("max of an empty range")
        ctx.record_issue()
        return self._max(ctx, x, n)

    def max_element(self, x: DeviceBuffer, n: int, *, ctx: ExecutionContext | None = None) -> int:
        """Index of the first maximum under this backend's traversal order."""
        ctx = self._context(ctx)
        self._check_buffers("max_element", n, x)
        if n == 0:
            raise InvalidArgument("max_element of an empty range")
        ctx.record_issue()
        return int(self._max_element(ctx, x, n))

    # ── top-k ──

    def topk(self, x: DeviceBuffer, values: DeviceBuffer, indices: DeviceBuffer, k: int, n: int, *,
             ctx: ExecutionContext | None = None) -> None:
        """Write the k largest of x[:n] (descending) and their positions.

        Ties keep ascending original index. indices must be int32.
        """
        ctx = self._context(ctx)
        dtype = self._check_buffers("topk", n, x)
        if k < 0 or k > n:
            raise InvalidArgument(f"topk: k={k} must satisfy 0 <= k <= n={n}")
        self._check_buffers("topk", k, values)
        self._check_same_dtype("topk", dtype, values)
        self._check_buffers("topk", k, indices)
        if indices.dtype != dt.INDEX_DTYPE:
            raise UnsupportedDType(f"topk: indices must be {dt.INDEX_DTYPE.name}, got {indices.dtype.name}")
        if k == 0:
            return

        keys = ctx.scratch.get(TOPK_KEYS, n, dtype)
        order = ctx.scratch.get(TOPK_INDICES, n, dt.INDEX_DTYPE)
        ctx.record_issue()
        self._topk(ctx, x, keys, order, values, indices, k, n)

    # ── transpose ──

    def transpose(self, a: DeviceBuffer, dims, perm, b: DeviceBuffer, *,
                  ctx: ExecutionContext | None = None) -> None:
        """b = a with axes reordered: output axis i is source axis perm[i]."""
        ctx = self._context(ctx)
        desc = PermutationDescriptor.build(dims, perm)
        if not 1 <= desc.ndim <= 4:
            raise InvalidArgument(f"transpose supports 1 to 4 dimensions, got {desc.ndim}")
        self._check_buffers("transpose", desc.size, a, b)
        if desc.size == 0:
            return
        if a is b and desc.perm != tuple(range(desc.ndim)):
            raise InvalidArgument("transpose cannot run in place")
        ctx.record_issue()
        self._transpose(ctx, a, desc, b)

    def transpose_2d(self, a: DeviceBuffer, dims, b: DeviceBuffer, *, ctx: ExecutionContext | None = None) -> None:
        self._check_rank("transpose_2d", dims, 2)
        self.transpose(a, dims, (1, 0), b, ctx=ctx)

    def transpose_3d(self, a: DeviceBuffer, dims, perm, b: DeviceBuffer, *,
                     ctx: ExecutionContext | None = None) -> None:
        self._check_rank("transpose_3d", dims, 3)
        self.transpose(a, dims, perm, b, ctx=ctx)

    def transpose_4d(self, a: DeviceBuffer, dims, perm, b: DeviceBuffer, *,
                     ctx: ExecutionContext | None = None) -> None:
        self._check_rank("transpose_4d", dims, 4)
        self.transpose(a, dims, perm, b, ctx=ctx)

    # ── GEMM ──

    def gemm(self, a: DeviceBuffer, b: DeviceBuffer, transpose_a: bool, transpose_b: bool,
             m: int, n: int, k: int, alpha, beta, c: DeviceBuffer, *,
             ctx: ExecutionContext | None = None) -> None:
        """c = alpha * op(a) @ op(b) + beta * c, all row-major.

        op(a) is m x k, op(b) is k x n, c is m x n.
        """
        ctx = self._context(ctx)
        call = row_major_to_column_major(transpose_a, transpose_b, m, n, k)
        self._check_gemm_operands(a, b, c, m, n, k, 1)
        alpha = self._scalar("gemm", alpha, a.dtype)
        beta = self._scalar("gemm", beta, a.dtype)
        if m == 0 or n == 0:
            return
        ctx.record_issue()
        self._gemm(ctx, call, a, b, alpha, beta, c)

    def gemm_batch(self, a: DeviceBuffer, b: DeviceBuffer, transpose_a: bool, transpose_b: bool,
                   m: int, n: int, k: int, alpha, beta, c: DeviceBuffer, batch_size: int, *,
                   ctx: ExecutionContext | None = None) -> None:
        """gemm over batch_size operand triples at a + i*m*k, b + i*k*n, c + i*m*n."""
        ctx = self._context(ctx)
        call = row_major_to_column_major(transpose_a, transpose_b, m, n, k)
        if batch_size < 0:
            raise InvalidArgument(f"gemm_batch: negative batch_size {batch_size}")
        self._check_gemm_operands(a, b, c, m, n, k, batch_size)
        alpha = self._scalar("gemm_batch", alpha, a.dtype)
        beta = self._scalar("gemm_batch", beta, a.dtype)
        if batch_size == 0 or m == 0 or n == 0:
            return
        table = ctx.scratch.get(GEMM_BATCH_POINTERS, 3 * batch_size, POINTER_TABLE_DTYPE)
        ctx.record_issue()
        self._gemm_batch(ctx, call, a, b, alpha, beta, c, batch_size, table)

    # ── host transfer ──

    def copy_to_device(self, host_x: np.ndarray, device_y: DeviceBuffer, n: int, *,
                       ctx: ExecutionContext | None = None) -> None:
        """Stream-ordered host -> device copy of n elements.

        host_x must stay untouched until the context is synchronized.
        """
        ctx = self._context(ctx)
        self._check_buffers("copy_to_device", n, device_y)
        self._check_host("copy_to_device", host_x, device_y.dtype, n)
        if n:
            ctx.record_issue()
            self._copy_to_device(ctx, host_x, device_y, n)

    def copy_to_host(self, device_x: DeviceBuffer, host_y: np.ndarray, n: int, *,
                     ctx: ExecutionContext | None = None) -> None:
        """Stream-ordered device -> host copy of n elements.

        host_y holds the result once the context is synchronized.
        """
        ctx = self._context(ctx)
        self._check_buffers("copy_to_host", n, device_x)
        self._check_host("copy_to_host", host_y, device_x.dtype, n)
        if n:
            ctx.record_issue()
            self._copy_to_host(ctx, device_x, host_y, n)

    # ── validation helpers ──

    def _context(self, ctx: ExecutionContext | None) -> ExecutionContext:
        if ctx is None:
            return self.default_context
        if ctx.backend is not self:
            raise InvalidArgument(f"Context belongs to {ctx.backend.device}, not {self._device}")
        if ctx.closed:
            raise InvalidArgument("Context is closed")
        return ctx

    def _check_buffers(self, op: str, n: int, *bufs: DeviceBuffer) -> np.dtype:
        """Validate ownership, liveness, extent and a shared supported dtype."""
        if n < 0:
            raise InvalidArgument(f"{op}: negative element count {n}")
        for buf in bufs:
            if not isinstance(buf, DeviceBuffer):
                raise InvalidArgument(f"{op}: expected a DeviceBuffer, got {type(buf).__name__}")
        dtype = bufs[0].dtype
        for buf in bufs:
            if buf.device != self._device:
                raise InvalidArgument(f"{op}: {buf!r} is not on {self._device}")
            if buf.freed:
                raise InvalidArgument(f"{op}: {buf!r} was freed")
            if buf.size < n:
                raise InvalidArgument(f"{op}: {buf!r} holds fewer than {n} elements")
        self._check_same_dtype(op, dtype, *bufs)
        dt.check_supported(dtype, self.supported_dtypes, op)
        return dtype

    @staticmethod
    def _check_same_dtype(op: str, dtype: np.dtype, *bufs: DeviceBuffer) -> None:
        for buf in bufs:
            if buf.dtype != dtype:
                raise UnsupportedDType(f"{op}: mixed dtypes {dtype.name} and {buf.dtype.name}")

    @staticmethod
    def _scalar(op: str, value, dtype: np.dtype):
        if not isinstance(value, (numbers.Number, np.generic)):
            raise InvalidArgument(f"{op}: expected a scalar or DeviceBuffer, got {type(value).__name__}")
        try:
            return dtype.type(value)
        except (OverflowError, ValueError) as exc:
            raise InvalidArgument(f"{op}: {value!r} does not fit {dtype.name}") from exc

    @staticmethod
    def _check_rank(op: str, dims, rank: int) -> None:
        if len(dims) != rank:
            raise InvalidArgument(f"{op}: expected {rank} dims, got {len(dims)}")

    @staticmethod
    def _check_host(op: str, host: np.ndarray, dtype: np.dtype, n: int) -> None:
        if not isinstance(host, np.ndarray):
            raise InvalidArgument(f"{op}: host side must be a numpy.ndarray")
        if host.ndim != 1 or not host.flags.c_contiguous:
            raise InvalidArgument(f"{op}: host array must be 1-D and contiguous")
        if host.dtype != dtype:
            raise UnsupportedDType(f"{op}: host dtype {host.dtype.name} != buffer dtype {dtype.name}")
        if host.size < n:
            raise InvalidArgument(f"{op}: host array holds fewer than {n} elements")

    def _check_gemm_operands(self, a, b, c, m, n, k, batch) -> None:
        self._check_buffers("gemm", batch * m * k, a)
        self._check_buffers("gemm", batch * k * n, b)
        self._check_buffers("gemm", batch * m * n, c)
        self._check_same_dtype("gemm", a.dtype, b, c)
        dt.check_supported(a.dtype, self.gemm_dtypes, "gemm")

    # ── device hooks ──

    @abstractmethod
    def _new_context(self) -> ExecutionContext:
        ...

    @abstractmethod
    def _allocate(self, size: int, dtype: np.dtype) -> DeviceBuffer:
        ...

    @abstractmethod
    def _free(self, buf: DeviceBuffer) -> None:
        ...

    @abstractmethod
    def _fill(self, ctx, x, a, n): ...

    @abstractmethod
    def _copy(self, ctx, x, y, n): ...

    @abstractmethod
    def _add(self, ctx, a, b, c, n): ...

    @abstractmethod
    def _add_scalar(self, ctx, a, x, y, n): ...

    @abstractmethod
    def _sub(self, ctx, a, b, c, n): ...

    @abstractmethod
    def _mul(self, ctx, a, b, c, n): ...

    @abstractmethod
    def _mul_scalar(self, ctx, a, x, y, n): ...

    @abstractmethod
    def _exp(self, ctx, x, y, n): ...

    @abstractmethod
    def _pow(self, ctx, x, y, p, n): ...

    @abstractmethod
    def _relu(self, ctx, x, y, n): ...

    @abstractmethod
    def _sum(self, ctx, x, n): ...

    @abstractmethod
    def _max(self, ctx, x, n): ...

    @abstractmethod
    def _max_element(self, ctx, x, n): ...

    @abstractmethod
    def _topk(self, ctx, x, keys, order, values, indices, k, n): ...

    @abstractmethod
    def _transpose(self, ctx, a, desc: PermutationDescriptor, b): ...

    @abstractmethod
    def _gemm(self, ctx, call: GemmCall, a, b, alpha, beta, c): ...

    @abstractmethod
    def _gemm_batch(self, ctx, call: GemmCall, a, b, alpha, beta, c, batch_size, table): ...

    @abstractmethod
    def _copy_to_device(self, ctx, host_x, device_y, n): ...

    @abstractmethod
    def _copy_to_host(self, ctx, device_x, host_y, n): ...
