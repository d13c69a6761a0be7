"""Allocation accounting shared by the device memory managers."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace

from prims_runtime.errors import DeviceOutOfMemory


@dataclass(frozen=True)
class AllocationStats:
    allocations: int = 0
    frees: int = 0
    bytes_in_use: int = 0
    peak_bytes: int = 0


class AllocationTracker:
    """Process-wide counters for one backend.

    Several worker contexts allocate through the same backend, so updates
    take a lock. Reads return an immutable snapshot.
    """

    def __init__(self, limit_bytes: int | None = None):
        self._limit = limit_bytes
        self._lock = threading.Lock()
        self._stats = AllocationStats()

    @property
    def stats(self) -> AllocationStats:
        with self._lock:
            return self._stats

    def reserve(self, nbytes: int) -> None:
        """Account for an allocation of nbytes, enforcing the configured limit."""
        with self._lock:
            in_use = self._stats.bytes_in_use + nbytes
            if self._limit is not None and in_use > self._limit:
                raise DeviceOutOfMemory(
                    f"Cannot allocate {nbytes} bytes: {self._stats.bytes_in_use} of "
                    f"{self._limit} bytes already in use"
                )
            self._stats = replace(
                self._stats,
                allocations=self._stats.allocations + 1,
                bytes_in_use=in_use,
                peak_bytes=max(self._stats.peak_bytes, in_use),
            )

    def rollback(self, nbytes: int) -> None:
        """Undo a reserve() whose device allocation then failed."""
        with self._lock:
            self._stats = replace(
                self._stats,
                allocations=self._stats.allocations - 1,
                bytes_in_use=self._stats.bytes_in_use - nbytes,
            )

    def release(self, nbytes: int) -> None:
        with self._lock:
            self._stats = replace(
                self._stats,
                frees=self._stats.frees + 1,
                bytes_in_use=self._stats.bytes_in_use - nbytes,
            )
