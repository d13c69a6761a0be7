"""Profiler: measure primitive execution time."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from prims_runtime.backend import Backend, ExecutionContext


@dataclass
class ProfileResult:
    """Average wall time per iteration, including device completion."""
    total_ms: float
    iterations: int


def profile(
    fn: Callable[[], object],
    backend: Backend,
    ctx: ExecutionContext | None = None,
    warmup: int = 3,
    iterations: int = 10,
) -> ProfileResult:
    """Profile a primitive call issued by `fn` on `ctx`.

    Runs warmup iterations, then measures the average time. The context is
    synchronized before each clock read so asynchronous work is counted.
    """
    ctx = ctx or backend.default_context

    for _ in range(warmup):
        fn()
    ctx.synchronize()

    start = time.perf_counter()
    for _ in range(iterations):
        fn()
    ctx.synchronize()
    end = time.perf_counter()

    total_ms = (end - start) / max(iterations, 1) * 1000

    return ProfileResult(
        total_ms=total_ms,
        iterations=iterations,
    )
