"""Growth-only scratch buffer cache.

Operations that need temporary device storage (top-k working arrays, batched
GEMM pointer tables) borrow it from the cache of the execution context they
run on, instead of allocating per call. Each entry is keyed by purpose and
element type; its capacity only grows:

    request <= capacity  ->  reuse the cached buffer
    request >  capacity  ->  free the old buffer, allocate exactly `request`

Buffers are released only by release() (context teardown).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from prims_runtime.backend import Backend, DeviceBuffer

logger = logging.getLogger(__name__)

TOPK_KEYS = "topk_keys"
TOPK_INDICES = "topk_indices"
GEMM_BATCH_POINTERS = "gemm_batch_pointers"


class ScratchCache:
    """Per-context scratch buffers. Not thread-safe: one owner thread."""

    def __init__(self, backend: Backend):
        self._backend = backend
        self._entries: dict[tuple[str, np.dtype], DeviceBuffer] = {}

    def get(self, purpose: str, size: int, dtype) -> DeviceBuffer:
        """Return a buffer of at least `size` elements for `purpose`.

        Growth frees the old buffer before allocating the new one. If that
        allocation fails the entry is gone and its capacity reads 0.
        """
        key = (purpose, np.dtype(dtype))
        buf = self._entries.get(key)
        if buf is not None and buf.size >= size:
            return buf
        if buf is not None:
            self._backend.free(buf)
            del self._entries[key]
        new_buf = self._backend.allocate(size, key[1])
        self._entries[key] = new_buf
        logger.debug("scratch %s[%s] grown to %d elements", purpose, key[1].name, size)
        return new_buf

    def capacity(self, purpose: str, dtype) -> int:
        """Current capacity in elements (0 if never requested)."""
        buf = self._entries.get((purpose, np.dtype(dtype)))
        return buf.size if buf is not None else 0

    @property
    def nbytes(self) -> int:
        return sum(buf.nbytes for buf in self._entries.values())

    def release(self) -> None:
        for buf in self._entries.values():
            self._backend.free(buf)
        self._entries.clear()
