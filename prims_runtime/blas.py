"""Row-major GEMM on top of column-major BLAS.

A row-major matrix X (r x c) occupies the same memory as its transpose
stored column-major with leading dimension c. Hence

    C = op(A) @ op(B)          (row-major, m x n)
    C^T = op(B)^T @ op(A)^T    (column-major, n x m)

and a column-major BLAS computes the row-major product when it is handed
B as its first operand, A as its second, with the transpose flags swapped
and m/n swapped. This is parameter mapping only; no data moves.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.lib.stride_tricks import as_strided

from prims_runtime.errors import InvalidArgument


@dataclass(frozen=True)
class GemmCall:
    """Arguments for a column-major BLAS gemm.

    `swapped` is always True for calls produced by row_major_to_column_major:
    the BLAS first operand is the caller's b, the second is the caller's a.
    """
    transa: bool
    transb: bool
    m: int
    n: int
    k: int
    lda: int
    ldb: int
    ldc: int
    swapped: bool = True


def row_major_to_column_major(transpose_a: bool, transpose_b: bool, m: int, n: int, k: int) -> GemmCall:
    """Map a row-major `c = op(a) @ op(b)` request onto column-major BLAS arguments."""
    if m < 0 or n < 0 or k < 0:
        raise InvalidArgument(f"Negative GEMM dimension (m={m}, n={n}, k={k})")
    lda = m if transpose_a else k
    ldb = k if transpose_b else n
    return GemmCall(
        transa=transpose_b,
        transb=transpose_a,
        m=n,
        n=m,
        k=k,
        lda=max(ldb, 1),
        ldb=max(lda, 1),
        ldc=max(n, 1),
    )


def _col_major_view(flat: np.ndarray, rows: int, cols: int, ld: int) -> np.ndarray:
    item = flat.itemsize
    return as_strided(flat, shape=(rows, cols), strides=(item, ld * item))


def column_major_gemm(
    transa: bool,
    transb: bool,
    m: int,
    n: int,
    k: int,
    alpha,
    a: np.ndarray,
    lda: int,
    b: np.ndarray,
    ldb: int,
    beta,
    c: np.ndarray,
    ldc: int,
) -> None:
    """Reference column-major gemm with BLAS argument semantics.

    C (m x n, leading dimension ldc) = alpha * op(A) @ op(B) + beta * C,
    where op(A) is m x k and op(B) is k x n. a, b and c are flat contiguous
    1-D arrays; c is written in place. With beta == 0 prior contents of C are
    not read.
    """
    if m == 0 or n == 0:
        return
    a_rows, a_cols = (k, m) if transa else (m, k)
    b_rows, b_cols = (n, k) if transb else (k, n)
    _check_extent(a, a_rows, a_cols, lda, "A")
    _check_extent(b, b_rows, b_cols, ldb, "B")
    _check_extent(c, m, n, ldc, "C")

    c_view = _col_major_view(c, m, n, ldc)
    if k == 0:
        product = np.zeros((m, n), dtype=c.dtype)
    else:
        op_a = _col_major_view(a, a_rows, a_cols, lda)
        op_b = _col_major_view(b, b_rows, b_cols, ldb)
        if transa:
            op_a = op_a.T
        if transb:
            op_b = op_b.T
        product = op_a @ op_b

    if beta == 0:
        c_view[...] = alpha * product
    else:
        c_view[...] = alpha * product + beta * c_view


def _check_extent(flat: np.ndarray, rows: int, cols: int, ld: int, name: str) -> None:
    if rows == 0 or cols == 0:
        return
    if ld < rows:
        raise InvalidArgument(f"ld{name.lower()}={ld} is smaller than the {rows} rows of {name}")
    needed = ld * (cols - 1) + rows
    if flat.size < needed:
        raise InvalidArgument(f"{name} needs {needed} elements, buffer holds {flat.size}")
