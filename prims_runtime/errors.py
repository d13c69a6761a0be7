"""Error taxonomy shared by every backend."""

from __future__ import annotations


class PrimitivesError(RuntimeError):
    """Base class for all errors raised by the primitives layer."""


class DeviceOutOfMemory(PrimitivesError, MemoryError):
    """Allocation could not be satisfied. Recoverable by the caller."""


class DeviceError(PrimitivesError):
    """The device runtime or its BLAS library reported a failure.

    Usually fatal to the current operation; an accelerator context may be
    unusable afterwards.
    """


class InvalidArgument(PrimitivesError, ValueError):
    """A documented precondition was violated. Raised before any device work."""


class UnsupportedDType(InvalidArgument, TypeError):
    """Element type outside the backend catalogue or the operation's family."""
