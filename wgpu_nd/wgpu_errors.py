"""Error types for wgpu_nd.

Validation errors are raised host-side before any device work is scheduled.
Device errors come from the compute backend and are never retried here.
"""


class WgpuNdError(Exception):
    """Base class for all wgpu_nd errors."""


# ============================================================================
# Validation (recoverable, detected before dispatch)
# ============================================================================

class ValidationError(WgpuNdError, ValueError):
    """Invalid operands for an operation."""


class CategoryError(ValidationError):
    """Element kind is not in the category an operation requires."""

    def __init__(self, op, required, got):
        self.op = op
        self.required = required
        self.got = got
        super().__init__(f"{op} requires {required}, got {got}")


class ShapeMismatchError(ValidationError):
    """Shapes cannot be broadcast together."""

    def __init__(self, dim, size_a, size_b, shapes=None):
        self.dim = dim
        self.sizes = (size_a, size_b)
        self.shapes = shapes
        msg = f"shape mismatch at dimension {dim}: {size_a} vs {size_b}"
        if shapes:
            msg += " (shapes " + ", ".join(str(tuple(s)) for s in shapes) + ")"
        super().__init__(msg)


class DimensionMismatchError(ValidationError):
    """Contracted dimensions of a matrix product differ."""

    def __init__(self, op, size_a, size_b):
        self.op = op
        self.sizes = (size_a, size_b)
        super().__init__(
            f"{op}: inner dimension mismatch, {size_a} != {size_b}"
        )


class AxisError(ValidationError):
    """Axis out of range, duplicated, or reducing an empty dimension."""


# ============================================================================
# Device (non-retriable by the engine)
# ============================================================================

class DeviceError(WgpuNdError, RuntimeError):
    """Failure reported by the compute backend."""


class OutOfMemoryError(DeviceError):
    """Device allocation failed."""


class ProgramBuildError(DeviceError):
    """Compute program translation or compilation failed."""

    def __init__(self, label, reason):
        self.label = label
        super().__init__(f"failed to build program '{label}': {reason}")


class DeviceLostError(DeviceError):
    """The device is gone; every later call fails."""
