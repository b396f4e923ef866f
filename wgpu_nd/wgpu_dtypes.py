"""Element kinds and the capability categories that gate operations.

Every kind is 4 bytes on the device. Bool is stored as a u32 word holding
0 or 1, so it can live in a WGSL storage array.
"""

import enum
from collections import namedtuple

import numpy as np

from wgpu_nd.wgpu_errors import CategoryError, ValidationError


class Category(enum.Flag):
    """Capability tags used to validate operands."""

    NUMERIC = enum.auto()
    SIGNED = enum.auto()
    INTEGER = enum.auto()
    FLOAT = enum.auto()
    LOGICAL = enum.auto()

    @property
    def label(self):
        return self.name.capitalize()


_Info = namedtuple(
    "_Info", ["label", "itemsize", "np", "wgsl", "categories", "zero", "one"]
)


class DType(enum.Enum):
    """Supported element kinds."""

    FLOAT32 = "float32"
    INT32 = "int32"
    UINT32 = "uint32"
    BOOL = "bool"

    @property
    def _info(self):
        return _DTYPE_INFO[self]

    @property
    def label(self):
        return self._info.label

    @property
    def itemsize(self):
        return self._info.itemsize

    @property
    def np(self):
        """numpy dtype of the device storage words."""
        return self._info.np

    @property
    def wgsl(self):
        """WGSL scalar type of the device storage words."""
        return self._info.wgsl

    @property
    def categories(self):
        return self._info.categories

    def literal(self, which):
        """WGSL literal for ``zero`` or ``one``."""
        return getattr(self._info, which)

    def __str__(self):
        return self.value

    def __repr__(self):
        return f"DType.{self.name}"


_DTYPE_INFO = {
    DType.FLOAT32: _Info(
        "Float32", 4, np.dtype(np.float32), "f32",
        Category.NUMERIC | Category.SIGNED | Category.FLOAT,
        "0.0", "1.0",
    ),
    DType.INT32: _Info(
        "Int32", 4, np.dtype(np.int32), "i32",
        Category.NUMERIC | Category.SIGNED | Category.INTEGER,
        "0i", "1i",
    ),
    DType.UINT32: _Info(
        "UInt32", 4, np.dtype(np.uint32), "u32",
        Category.NUMERIC | Category.INTEGER,
        "0u", "1u",
    ),
    DType.BOOL: _Info(
        "Bool", 4, np.dtype(np.uint32), "u32",
        Category.LOGICAL,
        "0u", "1u",
    ),
}

float32 = DType.FLOAT32
int32 = DType.INT32
uint32 = DType.UINT32
bool_ = DType.BOOL

_NUMPY_KINDS = {
    np.dtype(np.float32): DType.FLOAT32,
    np.dtype(np.float64): DType.FLOAT32,
    np.dtype(np.float16): DType.FLOAT32,
    np.dtype(np.int32): DType.INT32,
    np.dtype(np.int64): DType.INT32,
    np.dtype(np.int16): DType.INT32,
    np.dtype(np.int8): DType.INT32,
    np.dtype(np.uint32): DType.UINT32,
    np.dtype(np.uint64): DType.UINT32,
    np.dtype(np.uint16): DType.UINT32,
    np.dtype(np.uint8): DType.UINT32,
    np.dtype(np.bool_): DType.BOOL,
}


def as_dtype(obj):
    """Resolve a DType from a DType, a name, or a numpy dtype."""
    if isinstance(obj, DType):
        return obj
    if isinstance(obj, str):
        try:
            return DType(obj.lower())
        except ValueError:
            pass
    try:
        return _NUMPY_KINDS[np.dtype(obj)]
    except (TypeError, KeyError):
        pass
    raise ValidationError(f"unsupported element kind: {obj!r}")


def has_category(dtype, category):
    return bool(as_dtype(dtype).categories & category)


def check_category(op, dtype, category):
    """Raise CategoryError unless ``dtype`` belongs to ``category``."""
    dtype = as_dtype(dtype)
    if not dtype.categories & category:
        raise CategoryError(op, category.label, dtype.label)
    return dtype


def to_storage(values, dtype):
    """Convert host values to the contiguous storage words of ``dtype``."""
    dtype = as_dtype(dtype)
    arr = np.asarray(values)
    if dtype is DType.BOOL:
        arr = arr.astype(bool)
    return np.ascontiguousarray(arr, dtype=dtype.np)


def from_storage(words, dtype):
    """Interpret storage words as host values of ``dtype``."""
    dtype = as_dtype(dtype)
    if dtype is DType.BOOL:
        return words != 0
    return words
