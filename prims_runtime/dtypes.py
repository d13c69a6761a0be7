"""Numeric type catalogue.

The primitive set is instantiated over a fixed list of element types. Calls
are checked against the catalogue at the call boundary, before any device
work is issued.
"""

from __future__ import annotations

import ml_dtypes
import numpy as np

from prims_runtime.errors import UnsupportedDType

INTEGER_DTYPES: tuple[np.dtype, ...] = (
    np.dtype(np.int8),
    np.dtype(np.int16),
    np.dtype(np.int32),
    np.dtype(np.int64),
)

FLOAT_DTYPES: tuple[np.dtype, ...] = (
    np.dtype(np.float16),
    np.dtype(np.float32),
    np.dtype(np.float64),
)

# Supported by every backend.
COMMON_DTYPES: tuple[np.dtype, ...] = INTEGER_DTYPES + FLOAT_DTYPES

# numpy has no native bfloat16; ml_dtypes registers one (host only).
BFLOAT16 = np.dtype(ml_dtypes.bfloat16)

INDEX_DTYPE = np.dtype(np.int32)

_DTYPE_MAP = {
    "int8": np.dtype(np.int8),
    "int16": np.dtype(np.int16),
    "int32": np.dtype(np.int32),
    "int64": np.dtype(np.int64),
    "float16": np.dtype(np.float16),
    "float32": np.dtype(np.float32),
    "float64": np.dtype(np.float64),
    "bfloat16": BFLOAT16,
}


def resolve_dtype(dtype) -> np.dtype:
    """Normalize a dtype name, numpy type or np.dtype to np.dtype."""
    if isinstance(dtype, str):
        if dtype not in _DTYPE_MAP:
            raise UnsupportedDType(f"Unknown dtype '{dtype}'")
        return _DTYPE_MAP[dtype]
    try:
        return np.dtype(dtype)
    except TypeError as exc:
        raise UnsupportedDType(f"Not a dtype: {dtype!r}") from exc


def is_floating(dtype: np.dtype) -> bool:
    return dtype in FLOAT_DTYPES or dtype == BFLOAT16


def is_integer(dtype: np.dtype) -> bool:
    return dtype in INTEGER_DTYPES


def check_supported(dtype: np.dtype, supported, op: str) -> None:
    if dtype not in supported:
        names = ", ".join(d.name for d in supported)
        raise UnsupportedDType(f"{op}: dtype {dtype.name} not supported (expected one of: {names})")


def check_floating(dtype: np.dtype, op: str) -> None:
    if not is_floating(dtype):
        raise UnsupportedDType(f"{op} is defined only for floating-point buffers, got {dtype.name}")
