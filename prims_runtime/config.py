"""Backend configuration constants."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackendConfig:
    """Backend-specific constants.

    memory_limit_bytes caps live allocations made through Backend.allocate
    (scratch buffers included). None means no ceiling beyond the device's.
    """
    name: str = "default"
    block_size: int = 256
    memory_limit_bytes: int | None = None
    default_device: str = "cpu"


DEFAULT_CONFIG = BackendConfig()
