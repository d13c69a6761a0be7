"""Permutation descriptor: N-D transpose as per-element index arithmetic.

For output axis j the descriptor stores:

    out_dims[j]    = dims[perm[j]]
    out_strides[j] = row-major stride of axis j in the permuted shape
    src_strides[j] = row-major stride of axis perm[j] in the original shape

so a linear output index i maps to the linear input index

    src(i) = sum_j ((i // out_strides[j]) % out_dims[j]) * src_strides[j]

Every term is added. Evaluating src(i) for all i at once replaces N nested
loops with a single parallel pass.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from prims_runtime.errors import InvalidArgument


def row_major_strides(dims) -> tuple[int, ...]:
    strides = [1] * len(dims)
    for axis in range(len(dims) - 2, -1, -1):
        strides[axis] = strides[axis + 1] * dims[axis + 1]
    return tuple(strides)


def inverse_permutation(perm) -> tuple[int, ...]:
    inv = [0] * len(perm)
    for out_axis, src_axis in enumerate(perm):
        inv[src_axis] = out_axis
    return tuple(inv)


@dataclass(frozen=True)
class PermutationDescriptor:
    dims: tuple[int, ...]
    perm: tuple[int, ...]
    out_dims: tuple[int, ...]
    out_strides: tuple[int, ...]
    src_strides: tuple[int, ...]

    @staticmethod
    def build(dims, perm) -> PermutationDescriptor:
        dims = tuple(int(d) for d in dims)
        perm = tuple(int(p) for p in perm)
        if len(dims) != len(perm):
            raise InvalidArgument(f"dims {dims} and perm {perm} differ in length")
        if sorted(perm) != list(range(len(perm))):
            raise InvalidArgument(f"{perm} is not a permutation of 0..{len(perm) - 1}")
        if any(d < 0 for d in dims):
            raise InvalidArgument(f"Negative dimension in {dims}")

        in_strides = row_major_strides(dims)
        out_dims = tuple(dims[p] for p in perm)
        return PermutationDescriptor(
            dims=dims,
            perm=perm,
            out_dims=out_dims,
            out_strides=row_major_strides(out_dims),
            src_strides=tuple(in_strides[p] for p in perm),
        )

    @property
    def ndim(self) -> int:
        return len(self.dims)

    @property
    def size(self) -> int:
        total = 1
        for d in self.dims:
            total *= d
        return total

    def source_index(self, i: int) -> int:
        src = 0
        for out_dim, out_stride, src_stride in zip(self.out_dims, self.out_strides, self.src_strides):
            src += ((i // out_stride) % out_dim) * src_stride
        return src

    def source_indices(self) -> np.ndarray:
        """Vectorized source_index over every output position (int64)."""
        out = np.arange(self.size, dtype=np.int64)
        src = np.zeros(self.size, dtype=np.int64)
        for out_dim, out_stride, src_stride in zip(self.out_dims, self.out_strides, self.src_strides):
            src += (out // out_stride) % out_dim * src_stride
        return src
