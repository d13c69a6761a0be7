"""CUDA kernel sources for primitives CuPy has no ready-made call for.

Elementwise kernels are (in_params, out_params, operation, name) tuples for
cupy.ElementwiseKernel, which instantiates them per element type. Raw
kernels are CUDA C sources compiled via NVRTC.
"""

from __future__ import annotations

# N-D transpose in one pass: output index i is split into coordinates with
# the output strides o*, and recombined with the source strides s*. Unused
# trailing axes carry o = 1, s = 0 and contribute nothing.
TRANSPOSE_ND = (
    "raw T a, int64 o0, int64 o1, int64 o2, int64 o3, "
    "int64 s0, int64 s1, int64 s2, int64 s3",
    "T b",
    r"""
    long long rem = i;
    long long src = (rem / o0) * s0;
    rem %= o0;
    src += (rem / o1) * s1;
    rem %= o1;
    src += (rem / o2) * s2;
    rem %= o2;
    src += (rem / o3) * s3;
    b = a[src];
    """,
    "prims_transpose_nd",
)

TRANSPOSE_MAX_DIMS = 4

BATCH_POINTER_TABLE_KERNEL = r"""
extern "C" {
// Fill three consecutive pointer arrays [A | B | C] of length `batch`
// with base + i * step (steps in bytes).
__global__ void batch_pointer_table(long long* table,
                                    long long a_base, long long b_base, long long c_base,
                                    long long a_step, long long b_step, long long c_step,
                                    int batch) {
    int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= batch) return;
    table[i] = a_base + i * a_step;
    table[batch + i] = b_base + i * b_step;
    table[2 * batch + i] = c_base + i * c_step;
}
}
"""
