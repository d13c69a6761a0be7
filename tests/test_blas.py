"""Tests for the row-major -> column-major GEMM mapping and the numpy reference."""

import numpy as np
import numpy.testing as npt
import pytest

from prims_runtime.blas import GemmCall, column_major_gemm, row_major_to_column_major
from prims_runtime.errors import InvalidArgument


class TestMapping:
    def test_no_transpose(self):
        call = row_major_to_column_major(False, False, 2, 3, 4)
        assert call == GemmCall(transa=False, transb=False, m=3, n=2, k=4, lda=3, ldb=4, ldc=3)
        assert call.swapped

    @pytest.mark.parametrize("ta", [False, True])
    @pytest.mark.parametrize("tb", [False, True])
    def test_flags_and_dims_swapped(self, ta, tb):
        m, n, k = 5, 7, 3
        call = row_major_to_column_major(ta, tb, m, n, k)
        assert (call.transa, call.transb) == (tb, ta)
        assert (call.m, call.n, call.k) == (n, m, k)
        assert call.ldc == n
        # Leading dimensions are the row-major row lengths of b and a.
        assert call.lda == (k if tb else n)
        assert call.ldb == (m if ta else k)

    def test_leading_dimension_floor(self):
        call = row_major_to_column_major(False, False, 0, 0, 0)
        assert (call.lda, call.ldb, call.ldc) == (1, 1, 1)

    def test_negative_dimension(self):
        with pytest.raises(InvalidArgument):
            row_major_to_column_major(False, False, 2, -1, 2)


def _row_major_via_mapping(a, b, ta, tb, alpha=1.0, beta=0.0, c=None):
    op_a = a.T if ta else a
    op_b = b.T if tb else b
    m, k = op_a.shape
    n = op_b.shape[1]
    out = np.zeros(m * n, dtype=a.dtype) if c is None else c.ravel().copy()
    call = row_major_to_column_major(ta, tb, m, n, k)
    column_major_gemm(call.transa, call.transb, call.m, call.n, call.k,
                      alpha, b.ravel(), call.lda, a.ravel(), call.ldb,
                      beta, out, call.ldc)
    return out.reshape(m, n)


class TestColumnMajorGemm:
    @pytest.mark.parametrize("ta", [False, True])
    @pytest.mark.parametrize("tb", [False, True])
    def test_row_major_product(self, ta, tb):
        rng = np.random.default_rng(11)
        m, n, k = 4, 6, 5
        a = rng.standard_normal((k, m) if ta else (m, k))
        b = rng.standard_normal((n, k) if tb else (k, n))
        expected = (a.T if ta else a) @ (b.T if tb else b)
        npt.assert_allclose(_row_major_via_mapping(a, b, ta, tb), expected, rtol=1e-12)

    def test_direct_column_major(self):
        # A = [[1, 3], [2, 4]] column-major, B = identity.
        a = np.array([1.0, 2.0, 3.0, 4.0])
        b = np.array([1.0, 0.0, 0.0, 1.0])
        c = np.zeros(4)
        column_major_gemm(False, False, 2, 2, 2, 1.0, a, 2, b, 2, 0.0, c, 2)
        npt.assert_array_equal(c, a)

    def test_padded_leading_dimension(self):
        # 2 x 2 column-major matrix stored with lda = 3; the pad rows are ignored.
        a = np.array([1.0, 2.0, -99.0, 3.0, 4.0, -99.0])
        b = np.array([1.0, 1.0])
        c = np.zeros(2)
        column_major_gemm(False, False, 2, 1, 2, 1.0, a, 3, b, 2, 0.0, c, 2)
        npt.assert_array_equal(c, [4.0, 6.0])

    def test_beta_zero_ignores_nan(self):
        a = np.eye(2).ravel()
        c = np.full(4, np.nan)
        column_major_gemm(False, False, 2, 2, 2, 1.0, a, 2, a, 2, 0.0, c, 2)
        npt.assert_array_equal(c, np.eye(2).ravel())

    def test_alpha_beta(self):
        a = np.eye(2).ravel()
        c = np.ones(4)
        column_major_gemm(False, False, 2, 2, 2, 2.0, a, 2, a, 2, 3.0, c, 2)
        npt.assert_array_equal(c, [5.0, 3.0, 3.0, 5.0])

    def test_k_zero_scales_c(self):
        c = np.ones(4)
        column_major_gemm(False, False, 2, 2, 0, 1.0, np.empty(0), 2, np.empty(0), 1, 0.5, c, 2)
        npt.assert_array_equal(c, np.full(4, 0.5))

    def test_leading_dimension_too_small(self):
        with pytest.raises(InvalidArgument):
            column_major_gemm(False, False, 3, 1, 1, 1.0, np.ones(3), 2, np.ones(1), 1, 0.0, np.zeros(3), 3)

    def test_buffer_too_small(self):
        with pytest.raises(InvalidArgument):
            column_major_gemm(False, False, 2, 2, 2, 1.0, np.ones(3), 2, np.ones(4), 2, 0.0, np.zeros(4), 2)
