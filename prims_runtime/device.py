"""Device identity: selects which backend services a call."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from prims_runtime.errors import InvalidArgument


class DeviceKind(Enum):
    CPU = "cpu"
    CUDA = "cuda"


@dataclass(frozen=True)
class Device:
    """Enumerable device identity (host CPU, accelerator 0..N).

    Carries no state; all real state lives in the backend for the device.
    """
    kind: DeviceKind
    index: int = 0

    @staticmethod
    def cpu() -> Device:
        return Device(DeviceKind.CPU, 0)

    @staticmethod
    def cuda(index: int = 0) -> Device:
        return Device(DeviceKind.CUDA, index)

    @staticmethod
    def parse(spec: str | Device) -> Device:
        """Parse "cpu", "cuda" or "cuda:N"."""
        if isinstance(spec, Device):
            return spec
        name, _, idx = spec.strip().lower().partition(":")
        try:
            kind = DeviceKind(name)
        except ValueError:
            raise InvalidArgument(f"Unknown device kind '{spec}'") from None
        if not idx:
            return Device(kind, 0)
        if not idx.isdigit():
            raise InvalidArgument(f"Bad device index in '{spec}'")
        if kind is DeviceKind.CPU and int(idx) != 0:
            raise InvalidArgument(f"Only cpu:0 exists, got '{spec}'")
        return Device(kind, int(idx))

    @property
    def is_cuda(self) -> bool:
        return self.kind is DeviceKind.CUDA

    def __str__(self) -> str:
        if self.kind is DeviceKind.CPU:
            return "cpu"
        return f"cuda:{self.index}"
