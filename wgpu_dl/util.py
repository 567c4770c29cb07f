"""Shape, dtype and axis helpers shared by ops, backends and gradient rules."""

from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from wgpu_dl.errors import ShapeError

DTYPES = ("float32", "int32", "bool")

_NP_DTYPES = {
    "float32": np.float32,
    "int32": np.int32,
    "bool": np.bool_,
}

_DTYPE_BYTES = {
    "float32": 4,
    "int32": 4,
    "bool": 1,
}

_UPCAST_ORDER = {"bool": 0, "int32": 1, "float32": 2}


def size_from_shape(shape: Sequence[int]) -> int:
    """Number of elements implied by a shape (1 for scalars)."""
    size = 1
    for dim in shape:
        size *= dim
    return size


def np_dtype(dtype: str):
    """numpy dtype for a tensor dtype name."""
    try:
        return _NP_DTYPES[dtype]
    except KeyError:
        raise TypeError(f"Unsupported dtype '{dtype}', expected one of {DTYPES}")


def bytes_per_element(dtype: str) -> int:
    return _DTYPE_BYTES[dtype]


def infer_dtype(values) -> str:
    """Pick a tensor dtype for raw python / numpy values."""
    arr = np.asarray(values)
    if arr.dtype == np.bool_:
        return "bool"
    if np.issubdtype(arr.dtype, np.integer):
        return "int32"
    return "float32"


def upcast_type(a: str, b: str) -> str:
    return a if _UPCAST_ORDER[a] >= _UPCAST_ORDER[b] else b


def has_encoding_loss(old_type: str, new_type: str) -> bool:
    """Whether casting old_type to new_type can change stored values."""
    if new_type == "float32":
        return False
    if new_type == "int32" and old_type != "float32":
        return False
    if new_type == "bool" and old_type == "bool":
        return False
    return True


def parse_axis_param(axis: Optional[Union[int, Sequence[int]]], shape: Sequence[int]) -> List[int]:
    """Normalize an axis argument (None, int or sequence) to sorted positive axes."""
    rank = len(shape)
    if axis is None:
        return list(range(rank))
    if isinstance(axis, (int, np.integer)):
        axis = [axis]
    axes = []
    for ax in axis:
        if not -rank <= ax < max(rank, 1):
            raise ValueError(f"Axis {ax} is out of range for a rank {rank} tensor")
        axes.append(ax + rank if ax < 0 else ax)
    return sorted(set(axes))


def compute_out_shape(shape: Sequence[int], axes: Sequence[int]) -> Tuple[int, ...]:
    """Shape left after reducing over axes."""
    return tuple(dim for i, dim in enumerate(shape) if i not in axes)


def expand_shape_to_keep_dim(shape: Sequence[int], axes: Sequence[int]) -> Tuple[int, ...]:
    """Re-insert reduced axes as size-1 dims so a reduced tensor broadcasts back."""
    out = list(shape)
    for ax in sorted(axes):
        out.insert(ax, 1)
    return tuple(out)


def get_undo_axes_permutation(perm: Sequence[int]) -> List[int]:
    """Permutation that inverts perm."""
    undo = [0] * len(perm)
    for i, p in enumerate(perm):
        undo[p] = i
    return undo


def assert_and_get_broadcast_shape(shape_a: Sequence[int], shape_b: Sequence[int]) -> Tuple[int, ...]:
    """numpy-style broadcast of two shapes, raising ShapeError when incompatible."""
    result = []
    length = max(len(shape_a), len(shape_b))
    for i in range(length):
        a = shape_a[len(shape_a) - 1 - i] if i < len(shape_a) else 1
        b = shape_b[len(shape_b) - 1 - i] if i < len(shape_b) else 1
        if a != b and a != 1 and b != 1:
            raise ShapeError(
                f"Operands could not be broadcast together with shapes "
                f"{tuple(shape_a)} and {tuple(shape_b)}."
            )
        result.insert(0, max(a, b) if a != 0 and b != 0 else 0)
    return tuple(result)


def get_reduction_axes(in_shape: Sequence[int], out_shape: Sequence[int]) -> List[int]:
    """Axes of out_shape along which in_shape was broadcast."""
    axes = []
    offset = len(out_shape) - len(in_shape)
    for i in range(len(out_shape)):
        in_dim = in_shape[i - offset] if i >= offset else 1
        if in_dim == 1 and out_shape[i] > 1:
            axes.append(i)
        elif i < offset:
            axes.append(i)
    return axes


def arrays_equal(a: Sequence, b: Sequence) -> bool:
    return tuple(a) == tuple(b)


def normalize_shape(shape) -> Tuple[int, ...]:
    if isinstance(shape, (int, np.integer)):
        return (int(shape),)
    return tuple(int(dim) for dim in shape)
