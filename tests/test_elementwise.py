"""Tests for elementwise primitives against numpy references."""

import numpy as np
import numpy.testing as npt
import pytest

from prims_runtime import dtypes as dt
from prims_runtime.errors import InvalidArgument, UnsupportedDType
from tests.conftest import download, upload

SIZES = [0, 1, 17, 4096]


def _sample(dtype, n, seed=0):
    rng = np.random.default_rng(seed)
    if dt.is_integer(dtype):
        # small magnitudes so a + b stays in range for int8
        return rng.integers(-50, 50, size=n).astype(dtype)
    return rng.uniform(-4, 4, size=n).astype(dtype)


def _tolerance(dtype):
    if dt.is_integer(dtype):
        return 0
    return {2: 1e-2, 4: 1e-5, 8: 1e-12}[dtype.itemsize]


class TestAddSubRoundTrip:
    @pytest.mark.parametrize("dtype", dt.COMMON_DTYPES, ids=lambda d: d.name)
    @pytest.mark.parametrize("n", SIZES)
    def test_add_then_sub(self, backend, ctx, dtype, n):
        a_host = _sample(dtype, n, seed=1)
        b_host = _sample(dtype, n, seed=2)
        a = upload(backend, a_host, ctx)
        b = upload(backend, b_host, ctx)
        c = backend.allocate(n, dtype)
        c2 = backend.allocate(n, dtype)

        backend.add(a, b, c, n, ctx=ctx)
        backend.sub(c, b, c2, n, ctx=ctx)

        tol = _tolerance(dtype)
        npt.assert_allclose(download(backend, c2, ctx=ctx).astype(np.float64),
                            a_host.astype(np.float64), atol=tol * 8, rtol=tol)

    def test_bfloat16_host(self, cpu):
        a_host = np.array([1.0, 2.5, -3.0], dtype=dt.BFLOAT16)
        b_host = np.array([0.5, 0.5, 1.0], dtype=dt.BFLOAT16)
        a, b = upload(cpu, a_host), upload(cpu, b_host)
        c = cpu.allocate(3, dt.BFLOAT16)
        cpu.add(a, b, c, 3)
        cpu.sub(c, b, c, 3)
        npt.assert_array_equal(c.to_numpy().astype(np.float32), a_host.astype(np.float32))


class TestFillCopy:
    @pytest.mark.parametrize("dtype", dt.COMMON_DTYPES, ids=lambda d: d.name)
    def test_fill_copy_idempotent(self, backend, ctx, dtype):
        n = 33
        x = backend.allocate(n, dtype)
        y = backend.allocate(n, dtype)
        backend.fill(x, 7, n, ctx=ctx)
        before = download(backend, x, ctx=ctx)

        backend.copy(x, y, n, ctx=ctx)
        backend.copy(y, x, n, ctx=ctx)

        npt.assert_array_equal(download(backend, x, ctx=ctx), before)
        npt.assert_array_equal(before, np.full(n, 7, dtype=dtype))

    def test_fill_prefix_only(self, backend, ctx):
        x = upload(backend, np.zeros(8, dtype=np.float32), ctx)
        backend.fill(x, 2.5, 3, ctx=ctx)
        npt.assert_array_equal(download(backend, x, ctx=ctx), [2.5, 2.5, 2.5, 0, 0, 0, 0, 0])

    def test_copy_prefix_only(self, backend, ctx):
        x = upload(backend, np.arange(6, dtype=np.int32), ctx)
        y = upload(backend, np.full(6, -1, dtype=np.int32), ctx)
        backend.copy(x, y, 4, ctx=ctx)
        npt.assert_array_equal(download(backend, y, ctx=ctx), [0, 1, 2, 3, -1, -1])

    def test_fill_out_of_range_scalar(self, backend):
        x = backend.allocate(4, np.int8)
        with pytest.raises(InvalidArgument):
            backend.fill(x, 1000, 4)


class TestScalarOps:
    def test_add_scalar(self, backend, ctx):
        x = upload(backend, np.array([1, 2, 3], dtype=np.float32), ctx)
        y = backend.allocate(3, np.float32)
        backend.add(0.5, x, y, 3, ctx=ctx)
        npt.assert_allclose(download(backend, y, ctx=ctx), [1.5, 2.5, 3.5])

    def test_mul_scalar_int(self, backend, ctx):
        x = upload(backend, np.array([1, -2, 3], dtype=np.int16), ctx)
        y = backend.allocate(3, np.int16)
        backend.mul(3, x, y, 3, ctx=ctx)
        npt.assert_array_equal(download(backend, y, ctx=ctx), [3, -6, 9])

    def test_mul_pairwise(self, backend, ctx):
        a = upload(backend, np.array([1.0, 2.0, 3.0]), ctx)
        b = upload(backend, np.array([4.0, 5.0, 6.0]), ctx)
        c = backend.allocate(3, np.float64)
        backend.mul(a, b, c, 3, ctx=ctx)
        npt.assert_array_equal(download(backend, c, ctx=ctx), [4.0, 10.0, 18.0])

    def test_in_place_alias(self, backend, ctx):
        x = upload(backend, np.array([1.0, 2.0], dtype=np.float32), ctx)
        backend.mul(2.0, x, x, 2, ctx=ctx)
        backend.add(x, x, x, 2, ctx=ctx)
        npt.assert_array_equal(download(backend, x, ctx=ctx), [4.0, 8.0])

    def test_scalar_must_be_number(self, backend):
        x = backend.allocate(2, np.float32)
        with pytest.raises(InvalidArgument):
            backend.add("1", x, x, 2)


class TestUnaryFloat:
    @pytest.mark.parametrize("dtype", dt.FLOAT_DTYPES, ids=lambda d: d.name)
    def test_exp(self, backend, ctx, dtype):
        host = np.linspace(-2, 2, 9).astype(dtype)
        x = upload(backend, host, ctx)
        y = backend.allocate(9, dtype)
        backend.exp(x, y, 9, ctx=ctx)
        npt.assert_allclose(download(backend, y, ctx=ctx), np.exp(host), rtol=_tolerance(dtype) * 10)

    def test_pow(self, backend, ctx):
        host = np.array([1.0, 2.0, 3.0, 4.0], dtype=np.float32)
        x = upload(backend, host, ctx)
        y = backend.allocate(4, np.float32)
        backend.pow(x, y, 2, 4, ctx=ctx)
        npt.assert_allclose(download(backend, y, ctx=ctx), [1.0, 4.0, 9.0, 16.0])
        backend.pow(x, y, 0.5, 4, ctx=ctx)
        npt.assert_allclose(download(backend, y, ctx=ctx), np.sqrt(host), rtol=1e-6)

    def test_relu(self, backend, ctx):
        x = upload(backend, np.array([-1.5, 0.0, 2.0, -0.1], dtype=np.float32), ctx)
        y = backend.allocate(4, np.float32)
        backend.relu(x, y, 4, ctx=ctx)
        npt.assert_array_equal(download(backend, y, ctx=ctx), [0.0, 0.0, 2.0, 0.0])

    def test_relu_in_place(self, backend, ctx):
        x = upload(backend, np.array([-3.0, 3.0]), ctx)
        backend.relu(x, x, 2, ctx=ctx)
        npt.assert_array_equal(download(backend, x, ctx=ctx), [0.0, 3.0])

    def test_exp_bfloat16_host(self, cpu):
        x = upload(cpu, np.array([0.0, 1.0], dtype=dt.BFLOAT16))
        y = cpu.allocate(2, dt.BFLOAT16)
        cpu.exp(x, y, 2)
        npt.assert_allclose(y.to_numpy().astype(np.float32), [1.0, np.e], rtol=1e-2)

    @pytest.mark.parametrize("op", ["exp", "relu"])
    def test_integer_rejected(self, backend, op):
        x = backend.allocate(4, np.int32)
        with pytest.raises(UnsupportedDType):
            getattr(backend, op)(x, x, 4)

    def test_pow_integer_rejected(self, backend):
        x = backend.allocate(4, np.int64)
        with pytest.raises(UnsupportedDType):
            backend.pow(x, x, 2, 4)


class TestValidation:
    def test_mixed_dtypes(self, backend):
        a = backend.allocate(4, np.float32)
        b = backend.allocate(4, np.float64)
        with pytest.raises(UnsupportedDType):
            backend.add(a, a, b, 4)

    def test_count_exceeds_buffer(self, backend):
        a = backend.allocate(4, np.float32)
        with pytest.raises(InvalidArgument):
            backend.copy(a, a, 5)

    def test_negative_count(self, backend):
        a = backend.allocate(4, np.float32)
        with pytest.raises(InvalidArgument):
            backend.fill(a, 0, -1)

    def test_not_a_buffer(self, backend):
        a = backend.allocate(4, np.float32)
        with pytest.raises(InvalidArgument):
            backend.copy(np.zeros(4, dtype=np.float32), a, 4)

    def test_zero_count_issues_nothing(self, backend, ctx):
        a = backend.allocate(4, np.float32)
        backend.add(1.0, a, a, 0, ctx=ctx)
        backend.exp(a, a, 0, ctx=ctx)
        assert ctx.ops_issued == 0

    def test_ops_counted(self, backend, ctx):
        a = backend.allocate(4, np.float32)
        backend.fill(a, 1.0, 4, ctx=ctx)
        backend.add(1.0, a, a, 4, ctx=ctx)
        assert ctx.ops_issued == 2
