"""
Tensor handles.

A Tensor is an immutable view (shape + dtype) onto a backend buffer named by
a DataId. Several handles may share one buffer (reshape, lossless cast); the
engine reference-counts DataIds and frees the buffer with the last handle.

A Variable is a named, mutable Tensor that survives scopes and can be
assigned new values by optimizers.
"""

import itertools
from typing import Optional, Sequence

import numpy as np

from wgpu_dl import environment
from wgpu_dl import util
from wgpu_dl.errors import ShapeError

_tensor_ids = itertools.count()
_variable_ids = itertools.count()


class DataId:
    """Opaque identity of one backend buffer."""

    __slots__ = ("_n",)
    _counter = itertools.count()

    def __init__(self):
        self._n = next(DataId._counter)

    def __repr__(self):
        return f"DataId({self._n})"


class Tensor:
    """N-dimensional array handle owned by the active engine."""

    def __init__(self, shape: Sequence[int], dtype: str = "float32",
                 values=None, data_id: Optional[DataId] = None):
        """Register a new handle.

        Args:
            shape: tuple of dimensions
            dtype: "float32", "int32" or "bool"
            values: optional array-like written into a fresh buffer
            data_id: existing buffer to share instead of allocating one
        """
        self.shape = util.normalize_shape(shape)
        util.np_dtype(dtype)
        self.dtype = dtype
        self.size = util.size_from_shape(self.shape)
        if values is not None:
            values = np.asarray(values)
            if values.size != self.size:
                raise ShapeError(
                    f"Based on the provided shape, {self.shape}, the tensor should have "
                    f"{self.size} values but has {values.size}"
                )
        self.data_id = data_id if data_id is not None else DataId()
        self.id = next(_tensor_ids)
        self.is_disposed = False

        engine = environment.ENV.engine
        engine.register_tensor(self)
        if values is not None:
            engine.backend.write(self.data_id, values.astype(util.np_dtype(dtype)).reshape(-1))

    @classmethod
    def make(cls, shape, values=None, dtype: Optional[str] = None, data_id: Optional[DataId] = None):
        """Build a tensor from values (dtype inferred when omitted) or a shared buffer."""
        if dtype is None:
            dtype = util.infer_dtype(values) if values is not None else "float32"
        return Tensor(shape, dtype, values=values, data_id=data_id)

    @property
    def rank(self) -> int:
        return len(self.shape)

    def __repr__(self):
        if self.is_disposed:
            return f"Tensor(shape={self.shape}, dtype={self.dtype}, disposed)"
        return f"Tensor({self.data_sync()!r}, dtype={self.dtype})"

    def __len__(self):
        if self.rank == 0:
            raise TypeError("len() of a scalar tensor")
        return self.shape[0]

    __hash__ = object.__hash__

    # ---- Data Transfer ----
    def throw_if_disposed(self):
        if self.is_disposed:
            raise ValueError(f"Tensor {self.id} is disposed.")

    def data_sync(self) -> np.ndarray:
        """Read the buffer back to host memory, blocking until it is ready."""
        self.throw_if_disposed()
        values = environment.ENV.engine.backend.read_sync(self.data_id)
        return np.array(values, dtype=util.np_dtype(self.dtype)).reshape(self.shape)

    async def data(self) -> np.ndarray:
        """Asynchronous read of the buffer to host memory."""
        self.throw_if_disposed()
        values = await environment.ENV.engine.backend.read(self.data_id)
        return np.array(values, dtype=util.np_dtype(self.dtype)).reshape(self.shape)

    def numpy(self) -> np.ndarray:
        return self.data_sync()

    def item(self):
        return self.data_sync().item()

    def dispose(self):
        if self.is_disposed:
            return
        environment.ENV.engine.dispose_tensor(self)
        self.is_disposed = True

    # ---- Shape Manipulation ----
    def reshape(self, *shape):
        new_shape = shape[0] if len(shape) == 1 and isinstance(shape[0], (tuple, list)) else shape
        return ops.reshape(self, new_shape)

    def as_1d(self):
        return ops.reshape(self, (self.size,))

    def as_scalar(self):
        if self.size != 1:
            raise ShapeError("The array must have only 1 element.")
        return ops.reshape(self, ())

    def flatten(self):
        return ops.flatten(self)

    def expand_dims(self, axis: int = 0):
        return ops.expand_dims(self, axis)

    def squeeze(self, axis=None):
        return ops.squeeze(self, axis)

    def transpose(self, perm=None):
        return ops.transpose(self, perm)

    @property
    def T(self):
        return ops.transpose(self)

    def as_type(self, dtype: str):
        return ops.cast(self, dtype)

    def to_float(self):
        return ops.cast(self, "float32")

    def to_int(self):
        return ops.cast(self, "int32")

    def to_bool(self):
        return ops.cast(self, "bool")

    def clone(self):
        return ops.clone(self)

    # ---- Operators ----
    def __add__(self, other):
        return ops.add(self, other)

    def __radd__(self, other):
        return ops.add(other, self)

    def __sub__(self, other):
        return ops.sub(self, other)

    def __rsub__(self, other):
        return ops.sub(other, self)

    def __mul__(self, other):
        return ops.mul(self, other)

    def __rmul__(self, other):
        return ops.mul(other, self)

    def __truediv__(self, other):
        return ops.div(self, other)

    def __rtruediv__(self, other):
        return ops.div(other, self)

    def __pow__(self, other):
        return ops.pow(self, other)

    def __neg__(self):
        return ops.neg(self)

    def __abs__(self):
        return ops.abs(self)

    def __matmul__(self, other):
        return ops.matmul(self, other)

    # ---- Named Operations ----
    def add(self, other):
        return ops.add(self, other)

    def sub(self, other):
        return ops.sub(self, other)

    def mul(self, other):
        return ops.mul(self, other)

    def div(self, other):
        return ops.div(self, other)

    def pow(self, exp):
        return ops.pow(self, exp)

    def matmul(self, other, transpose_a: bool = False, transpose_b: bool = False):
        return ops.matmul(self, other, transpose_a, transpose_b)

    def maximum(self, other):
        return ops.maximum(self, other)

    def minimum(self, other):
        return ops.minimum(self, other)

    def squared_difference(self, other):
        return ops.squared_difference(self, other)

    def neg(self):
        return ops.neg(self)

    def square(self):
        return ops.square(self)

    def sqrt(self):
        return ops.sqrt(self)

    def exp(self):
        return ops.exp(self)

    def log(self):
        return ops.log(self)

    def abs(self):
        return ops.abs(self)

    def relu(self):
        return ops.relu(self)

    def sigmoid(self):
        return ops.sigmoid(self)

    def tanh(self):
        return ops.tanh(self)

    def softmax(self, dim: int = -1):
        return ops.softmax(self, dim)

    def sum(self, axis=None, keep_dims: bool = False):
        return ops.sum(self, axis, keep_dims)

    def mean(self, axis=None, keep_dims: bool = False):
        return ops.mean(self, axis, keep_dims)

    def max(self, axis=None, keep_dims: bool = False):
        return ops.max(self, axis, keep_dims)

    def min(self, axis=None, keep_dims: bool = False):
        return ops.min(self, axis, keep_dims)

    def arg_max(self, axis=None):
        return ops.arg_max(self, axis)

    def arg_min(self, axis=None):
        return ops.arg_min(self, axis)

    def log_sum_exp(self, axis=None, keep_dims: bool = False):
        return ops.log_sum_exp(self, axis, keep_dims)

    def equal(self, other):
        return ops.equal(self, other)

    def greater(self, other):
        return ops.greater(self, other)

    def less(self, other):
        return ops.less(self, other)


class Variable(Tensor):
    """A named, mutable tensor registered with the engine's variable registry."""

    def __init__(self, initial_value: Tensor, trainable: bool = True, name: Optional[str] = None):
        initial_value.throw_if_disposed()
        self.name = name if name is not None else str(next(_variable_ids))
        self.trainable = trainable
        registry = environment.ENV.engine.registered_variables
        if self.name in registry:
            raise ValueError(f"Variable with name {self.name} was already registered")
        super().__init__(initial_value.shape, initial_value.dtype, data_id=initial_value.data_id)
        registry.register(self)

    @staticmethod
    def variable(initial_value: Tensor, trainable: bool = True, name: Optional[str] = None,
                 dtype: Optional[str] = None) -> "Variable":
        """Create a variable sharing the initial value's buffer.

        Args:
            initial_value: tensor providing the shape, dtype and starting data
            trainable: whether default variable gradients include it
            name: registry name; a fresh numeric name when omitted
            dtype: cast the initial value first when given
        """
        if dtype is not None and dtype != initial_value.dtype:
            initial_value = initial_value.as_type(dtype)
        return Variable(initial_value, trainable, name)

    def assign(self, new_value: Tensor):
        """Point this variable at new_value's buffer, releasing the old one."""
        new_value.throw_if_disposed()
        if new_value.dtype != self.dtype:
            raise ShapeError(
                f"dtype of the new value ({new_value.dtype}) and previous value "
                f"({self.dtype}) must match"
            )
        if not util.arrays_equal(new_value.shape, self.shape):
            raise ShapeError(
                f"shape of the new value {new_value.shape} and previous value "
                f"{self.shape} must match"
            )
        engine = environment.ENV.engine
        engine.dispose_tensor(self)
        self.data_id = new_value.data_id
        engine.register_tensor(self)

    def dispose(self):
        if self.is_disposed:
            return
        environment.ENV.engine.registered_variables.unregister(self.name)
        super().dispose()

    def __repr__(self):
        return f"Variable(name={self.name!r}, shape={self.shape}, trainable={self.trainable})"


# ops builds on Tensor, so it is bound after the classes exist.
from wgpu_dl import ops  # noqa: E402
