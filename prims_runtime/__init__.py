from prims_runtime.backend import Backend, DeviceBuffer, ExecutionContext
from prims_runtime.config import DEFAULT_CONFIG, BackendConfig
from prims_runtime.cpu_backend import CPUBackend, HostContext
from prims_runtime.device import Device, DeviceKind
from prims_runtime.errors import (
    DeviceError,
    DeviceOutOfMemory,
    InvalidArgument,
    PrimitivesError,
    UnsupportedDType,
)
from prims_runtime.permute import PermutationDescriptor, inverse_permutation
from prims_runtime.profiler import profile
from prims_runtime.registry import available_devices, get_backend

__all__ = [
    "Backend",
    "DeviceBuffer",
    "ExecutionContext",
    "BackendConfig",
    "DEFAULT_CONFIG",
    "CPUBackend",
    "HostContext",
    "Device",
    "DeviceKind",
    "PrimitivesError",
    "DeviceError",
    "DeviceOutOfMemory",
    "InvalidArgument",
    "UnsupportedDType",
    "PermutationDescriptor",
    "inverse_permutation",
    "profile",
    "available_devices",
    "get_backend",
]
