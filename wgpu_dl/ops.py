"""
Operation layer.

Every public op validates its arguments, then runs one kernel (or a short
composition of ops) through the engine so it lands on the tape when
recording. Tensor factories create tensors directly from host values.

softmax and softmax_cross_entropy define their own gradients through
custom_gradient instead of differentiating their internals op by op.
"""

import builtins
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from wgpu_dl import conv_util
from wgpu_dl import environment
from wgpu_dl import util
from wgpu_dl.errors import ShapeError
from wgpu_dl.tensor import Tensor, Variable

TensorLike = Union[Tensor, float, int, bool, Sequence, np.ndarray]
Axis = Optional[Union[int, Sequence[int]]]


def _run(kernel_name: str, inputs, args=None) -> Tensor:
    return environment.ENV.engine.run_kernel(kernel_name, inputs, args)


def _convert(x: TensorLike, arg_name: str, dtype: Optional[str] = None) -> Tensor:
    if isinstance(x, Tensor):
        return x
    if isinstance(x, (int, float, bool, list, tuple, np.ndarray, np.number, np.bool_)):
        return tensor(x, dtype=dtype)
    raise TypeError(f"Argument '{arg_name}' must be a Tensor or array-like, got {type(x).__name__}")


def _convert_pair(a: TensorLike, b: TensorLike, op_name: str) -> Tuple[Tensor, Tensor]:
    if isinstance(a, Tensor) and not isinstance(b, Tensor):
        b = _convert(b, "b", util.upcast_type(a.dtype, util.infer_dtype(b)))
    elif isinstance(b, Tensor) and not isinstance(a, Tensor):
        a = _convert(a, "a", util.upcast_type(b.dtype, util.infer_dtype(a)))
    else:
        a = _convert(a, "a")
        b = _convert(b, "b")
    util.assert_and_get_broadcast_shape(a.shape, b.shape)
    return a, b


# ============================================================================
# Factories
# ============================================================================

def tensor(values, shape: Optional[Sequence[int]] = None, dtype: Optional[str] = None) -> Tensor:
    """Create a tensor from (nested) values; shape defaults to the values' shape."""
    arr = np.asarray(values)
    if dtype is None:
        dtype = util.infer_dtype(arr)
    if shape is None:
        shape = arr.shape
    shape = util.normalize_shape(shape)
    if arr.size == 1 and util.size_from_shape(shape) != 1:
        arr = np.full(shape, arr.reshape(()).item())
    return Tensor.make(shape, values=arr, dtype=dtype)


def scalar(value, dtype: Optional[str] = None) -> Tensor:
    if np.ndim(value) != 0:
        raise ShapeError("scalar() requires a single number, use tensor() for arrays")
    return tensor(value, (), dtype)


def _tensor_nd(rank: int):
    def factory(values, shape=None, dtype=None):
        if shape is None and np.ndim(values) != rank:
            raise ShapeError(f"tensor{rank}d() requires values of rank {rank}")
        if shape is not None and len(shape) != rank:
            raise ShapeError(f"tensor{rank}d() requires a shape of rank {rank}")
        return tensor(values, shape, dtype)
    factory.__name__ = f"tensor{rank}d"
    factory.__doc__ = f"Create a rank-{rank} tensor."
    return factory


tensor1d = _tensor_nd(1)
tensor2d = _tensor_nd(2)
tensor3d = _tensor_nd(3)
tensor4d = _tensor_nd(4)


def zeros(shape, dtype: str = "float32") -> Tensor:
    shape = util.normalize_shape(shape)
    return Tensor.make(shape, values=np.zeros(shape, dtype=util.np_dtype(dtype)), dtype=dtype)


def ones(shape, dtype: str = "float32") -> Tensor:
    shape = util.normalize_shape(shape)
    return Tensor.make(shape, values=np.ones(shape, dtype=util.np_dtype(dtype)), dtype=dtype)


def fill(shape, value, dtype: Optional[str] = None) -> Tensor:
    shape = util.normalize_shape(shape)
    if dtype is None:
        dtype = util.infer_dtype(value)
    return Tensor.make(shape, values=np.full(shape, value, dtype=util.np_dtype(dtype)), dtype=dtype)


def zeros_like(x: Tensor) -> Tensor:
    return zeros(x.shape, x.dtype)


def ones_like(x: Tensor) -> Tensor:
    return ones(x.shape, x.dtype)


def random_normal(shape, mean: float = 0.0, stddev: float = 1.0, dtype: str = "float32",
                  seed: Optional[int] = None) -> Tensor:
    rng = np.random.default_rng(seed)
    shape = util.normalize_shape(shape)
    return Tensor.make(shape, values=rng.normal(mean, stddev, shape), dtype=dtype)


def random_uniform(shape, minval: float = 0.0, maxval: float = 1.0, dtype: str = "float32",
                   seed: Optional[int] = None) -> Tensor:
    rng = np.random.default_rng(seed)
    shape = util.normalize_shape(shape)
    return Tensor.make(shape, values=rng.uniform(minval, maxval, shape), dtype=dtype)


def linspace(start: float, stop: float, num: int) -> Tensor:
    if num == 0:
        raise ValueError("Cannot request zero samples")
    return tensor(np.linspace(start, stop, num), dtype="float32")


def range(start, stop=None, step=1, dtype: str = "float32") -> Tensor:
    if step == 0:
        raise ValueError("Cannot have a step of zero")
    if stop is None:
        start, stop = 0, start
    return tensor(np.arange(start, stop, step), dtype=dtype)


def variable(initial_value: Tensor, trainable: bool = True, name: Optional[str] = None,
             dtype: Optional[str] = None) -> Variable:
    """Create a named, trainable-by-default variable from an initial value."""
    return Variable.variable(_convert(initial_value, "initial_value"), trainable, name, dtype)


def clone(x: TensorLike) -> Tensor:
    """New handle on the same buffer; recorded like an identity reshape."""
    x = _convert(x, "x")
    return _run("Reshape", {"x": x}, {"new_shape": x.shape})


# ============================================================================
# Shape & dtype
# ============================================================================

def _infer_shape(shape: Sequence[int], size: int) -> Tuple[int, ...]:
    shape = list(util.normalize_shape(shape))
    if shape.count(-1) > 1:
        raise ShapeError("Shapes can only have 1 implicit size. Found -1 more than once")
    if -1 in shape:
        known = util.size_from_shape([d for d in shape if d != -1])
        if known == 0 or size % known != 0:
            raise ShapeError(f"Cannot infer the missing size in {tuple(shape)} for {size} elements")
        shape[shape.index(-1)] = size // known
    return tuple(shape)


def reshape(x: TensorLike, shape: Sequence[int]) -> Tensor:
    """Same buffer viewed with a new shape of equal size."""
    x = _convert(x, "x")
    new_shape = _infer_shape(shape, x.size)
    if util.size_from_shape(new_shape) != x.size:
        raise ShapeError(f"new shape {new_shape} and old shape {x.shape} must have the same "
                         f"number of elements")
    return _run("Reshape", {"x": x}, {"new_shape": new_shape})


def flatten(x: TensorLike) -> Tensor:
    x = _convert(x, "x")
    return reshape(x, (x.size,))


def expand_dims(x: TensorLike, axis: int = 0) -> Tensor:
    x = _convert(x, "x")
    if not -(x.rank + 1) <= axis <= x.rank:
        raise ValueError(f"Axis {axis} is out of range for expand_dims of a rank {x.rank} tensor")
    if axis < 0:
        axis += x.rank + 1
    new_shape = list(x.shape)
    new_shape.insert(axis, 1)
    return reshape(x, new_shape)


def squeeze(x: TensorLike, axis: Axis = None) -> Tensor:
    x = _convert(x, "x")
    if axis is None:
        axes = [i for i, d in enumerate(x.shape) if d == 1]
    else:
        axes = util.parse_axis_param(axis, x.shape)
        for ax in axes:
            if x.shape[ax] != 1:
                raise ShapeError(f"Can't squeeze axis {ax} of size {x.shape[ax]}")
    return reshape(x, [d for i, d in enumerate(x.shape) if i not in axes])


def cast(x: TensorLike, dtype: str) -> Tensor:
    """Convert dtype; float32 targets and int-from-int/bool share the buffer."""
    x = _convert(x, "x")
    util.np_dtype(dtype)
    return _run("Cast", {"x": x}, {"dtype": dtype})


def transpose(x: TensorLike, perm: Optional[Sequence[int]] = None) -> Tensor:
    """Permute dimensions; perm defaults to reversing them."""
    x = _convert(x, "x")
    if perm is None:
        perm = list(builtins.range(x.rank))[::-1]
    perm = [int(p) for p in perm]
    if len(perm) != x.rank:
        raise ShapeError(
            f"Error in transpose: rank of input {x.rank} must match length of perm {perm}."
        )
    if sorted(perm) != list(builtins.range(x.rank)):
        raise ShapeError(f"Error in transpose: perm {perm} is not a permutation of the axes")
    return _run("Transpose", {"x": x}, {"perm": perm})


# ============================================================================
# Linear algebra & layout
# ============================================================================

def matmul(a: TensorLike, b: TensorLike, transpose_a: bool = False,
           transpose_b: bool = False) -> Tensor:
    """Rank-2 matrix product, optionally transposing either operand."""
    a = _convert(a, "a")
    b = _convert(b, "b")
    if a.rank != 2 or b.rank != 2:
        raise ShapeError(f"Error in matmul: inputs must be rank 2, got ranks {a.rank} and {b.rank}")
    inner_a = a.shape[0] if transpose_a else a.shape[1]
    inner_b = b.shape[1] if transpose_b else b.shape[0]
    if inner_a != inner_b:
        raise ShapeError(
            f"Error in matmul: inner shapes ({inner_a}) and ({inner_b}) of tensors with shapes "
            f"{a.shape} and {b.shape} and transpose_a={transpose_a} transpose_b={transpose_b} "
            f"must match."
        )
    return _run("MatMul", {"a": a, "b": b}, {"transpose_a": transpose_a, "transpose_b": transpose_b})


def slice(x: TensorLike, begin, size=None) -> Tensor:
    """Extract the block starting at begin; a size of -1 runs to the end of that axis."""
    x = _convert(x, "x")
    if isinstance(begin, int):
        begin = [begin] + [0] * (x.rank - 1)
    begin = list(begin) + [0] * (x.rank - len(begin))
    if size is None:
        size = [-1] * x.rank
    elif isinstance(size, int):
        size = [size] + [-1] * (x.rank - 1)
    size = list(size) + [-1] * (x.rank - len(size))
    size = [x.shape[i] - begin[i] if s == -1 else s for i, s in enumerate(size)]
    for i in builtins.range(x.rank):
        if begin[i] < 0 or size[i] < 0 or begin[i] + size[i] > x.shape[i]:
            raise ShapeError(
                f"Error in slice: begin {begin} and size {size} are out of bounds for shape "
                f"{x.shape}"
            )
    return _run("Slice", {"x": x}, {"begin": begin, "size": size})


def reverse(x: TensorLike, axis: Axis = None) -> Tensor:
    x = _convert(x, "x")
    return _run("Reverse", {"x": x}, {"axes": util.parse_axis_param(axis, x.shape)})


def concat(tensors: Sequence[TensorLike], axis: int = 0) -> Tensor:
    """Join tensors along an existing axis."""
    if not tensors:
        raise ValueError("Pass at least one tensor to concat")
    tensors = [_convert(t, f"tensors[{i}]") for i, t in enumerate(tensors)]
    result = tensors[0]
    axis = util.parse_axis_param(axis, result.shape)[0]
    for other in tensors[1:]:
        if other.rank != result.rank:
            raise ShapeError(f"Error in concat: rank of tensors must match, got {result.rank} "
                             f"and {other.rank}")
        for i in builtins.range(result.rank):
            if i != axis and result.shape[i] != other.shape[i]:
                raise ShapeError(
                    f"Error in concat: shape {result.shape} does not match {other.shape} "
                    f"along non-concatenated axis {i}"
                )
        result = _run("Concat", {"a": result, "b": other}, {"axis": axis})
    return result


def stack(tensors: Sequence[TensorLike], axis: int = 0) -> Tensor:
    tensors = [_convert(t, f"tensors[{i}]") for i, t in enumerate(tensors)]
    if not tensors:
        raise ValueError("Pass at least one tensor to stack")
    shape = tensors[0].shape
    for t in tensors[1:]:
        if t.shape != shape:
            raise ShapeError(f"All tensors passed to stack must have matching shapes, "
                             f"got {shape} and {t.shape}")
    return concat([expand_dims(t, axis) for t in tensors], axis)


def pad(x: TensorLike, paddings: Sequence[Sequence[int]], constant_value: float = 0) -> Tensor:
    """Pad each axis with (before, after) copies of constant_value."""
    x = _convert(x, "x")
    paddings = [list(p) for p in paddings]
    if len(paddings) != x.rank:
        raise ValueError(f"Error in pad: paddings {paddings} must have one pair per axis of a "
                         f"rank {x.rank} tensor")
    for p in paddings:
        if len(p) != 2 or any(not isinstance(v, (int, np.integer)) or v < 0 for v in p):
            raise ValueError(f"Error in pad: invalid paddings {paddings}")
    return _run("Pad", {"x": x}, {"paddings": paddings, "constant_value": constant_value})


def pad1d(x: TensorLike, paddings: Sequence[int], constant_value: float = 0) -> Tensor:
    if len(paddings) != 2:
        raise ValueError("Invalid number of paddings. Must be length of 2.")
    return pad(x, [paddings], constant_value)


def pad2d(x: TensorLike, paddings: Sequence[Sequence[int]], constant_value: float = 0) -> Tensor:
    if len(paddings) != 2 or any(len(p) != 2 for p in paddings):
        raise ValueError("Invalid number of paddings. Must be length of 2 each.")
    return pad(x, paddings, constant_value)


def tile(x: TensorLike, reps: Sequence[int]) -> Tensor:
    x = _convert(x, "x")
    reps = [int(r) for r in reps]
    if len(reps) != x.rank:
        raise ShapeError(f"Error in tile: rank of input {x.rank} must match length of reps {reps}.")
    return _run("Tile", {"x": x}, {"reps": reps})


def gather(x: TensorLike, indices: TensorLike, axis: int = 0) -> Tensor:
    """Select slices of x along axis at the given int32 indices."""
    x = _convert(x, "x")
    indices = _convert(indices, "indices", "int32")
    if indices.dtype != "int32":
        raise TypeError("Error in gather: indices must be int32")
    if indices.rank != 1:
        raise ShapeError(f"Error in gather: indices must be rank 1, got rank {indices.rank}")
    axis = util.parse_axis_param(axis, x.shape)[0]
    return _run("Gather", {"x": x, "indices": indices}, {"axis": axis})


# ============================================================================
# Arithmetic
# ============================================================================

def add(a: TensorLike, b: TensorLike) -> Tensor:
    a, b = _convert_pair(a, b, "add")
    return _run("Add", {"a": a, "b": b})


def sub(a: TensorLike, b: TensorLike) -> Tensor:
    a, b = _convert_pair(a, b, "sub")
    return _run("Sub", {"a": a, "b": b})


def mul(a: TensorLike, b: TensorLike) -> Tensor:
    a, b = _convert_pair(a, b, "mul")
    return _run("Mul", {"a": a, "b": b})


def div(a: TensorLike, b: TensorLike) -> Tensor:
    a, b = _convert_pair(a, b, "div")
    return _run("Div", {"a": a, "b": b})


def minimum(a: TensorLike, b: TensorLike) -> Tensor:
    a, b = _convert_pair(a, b, "minimum")
    return _run("Minimum", {"a": a, "b": b})


def maximum(a: TensorLike, b: TensorLike) -> Tensor:
    a, b = _convert_pair(a, b, "maximum")
    return _run("Maximum", {"a": a, "b": b})


def pow(base: TensorLike, exp: TensorLike) -> Tensor:
    base, exp = _convert_pair(base, exp, "pow")
    return _run("Pow", {"base": base, "exp": exp})


def squared_difference(a: TensorLike, b: TensorLike) -> Tensor:
    return square(sub(a, b))


def neg(x: TensorLike) -> Tensor:
    return _run("Neg", {"x": _convert(x, "x")})


# ============================================================================
# Unary math & activations
# ============================================================================

def _unary_op(kernel_name: str, doc: str):
    def op(x: TensorLike) -> Tensor:
        return _run(kernel_name, {"x": _convert(x, "x")})
    op.__doc__ = doc
    return op


ceil = _unary_op("Ceil", "Elementwise ceiling.")
floor = _unary_op("Floor", "Elementwise floor.")
exp = _unary_op("Exp", "Elementwise e**x.")
log = _unary_op("Log", "Elementwise natural logarithm.")
sqrt = _unary_op("Sqrt", "Elementwise square root.")
square = _unary_op("Square", "Elementwise x*x.")
abs = _unary_op("Abs", "Elementwise absolute value.")
relu = _unary_op("Relu", "max(x, 0); NaN passes through.")
elu = _unary_op("Elu", "x for x >= 0, exp(x) - 1 otherwise.")
selu = _unary_op("Selu", "Scaled exponential linear unit.")
sigmoid = _unary_op("Sigmoid", "1 / (1 + exp(-x)).")
sin = _unary_op("Sin", "Elementwise sine.")
cos = _unary_op("Cos", "Elementwise cosine.")
tan = _unary_op("Tan", "Elementwise tangent.")
asin = _unary_op("Asin", "Elementwise arcsine.")
acos = _unary_op("Acos", "Elementwise arccosine.")
atan = _unary_op("Atan", "Elementwise arctangent.")
sinh = _unary_op("Sinh", "Elementwise hyperbolic sine.")
cosh = _unary_op("Cosh", "Elementwise hyperbolic cosine.")
tanh = _unary_op("Tanh", "Elementwise hyperbolic tangent.")


def leaky_relu(x: TensorLike, alpha: float = 0.2) -> Tensor:
    return _run("LeakyRelu", {"x": _convert(x, "x")}, {"alpha": alpha})


def prelu(x: TensorLike, alpha: TensorLike) -> Tensor:
    """Leaky relu with a learned, broadcastable slope tensor."""
    x, alpha = _convert_pair(x, alpha, "prelu")
    return _run("PReLU", {"x": x, "alpha": alpha})


def step(x: TensorLike, alpha: float = 0.0) -> Tensor:
    """1 for x > 0, alpha otherwise; NaN passes through."""
    return _run("Step", {"x": _convert(x, "x")}, {"alpha": alpha})


def clip_by_value(x: TensorLike, clip_value_min: float, clip_value_max: float) -> Tensor:
    if clip_value_min > clip_value_max:
        raise ValueError(f"Error in clip: min ({clip_value_min}) must be less than or equal to "
                         f"max ({clip_value_max}).")
    return _run("Clip", {"x": _convert(x, "x")}, {"min": clip_value_min, "max": clip_value_max})


# ============================================================================
# Reductions
# ============================================================================

def _reduce(kernel_name: str, x: Tensor, axis: Axis, keep_dims: bool) -> Tensor:
    axes = util.parse_axis_param(axis, x.shape)
    result = _run(kernel_name, {"x": x}, {"axes": axes})
    if keep_dims:
        return reshape(result, util.expand_shape_to_keep_dim(result.shape, axes))
    return result


def sum(x: TensorLike, axis: Axis = None, keep_dims: bool = False) -> Tensor:
    """Sum over axis (all axes by default); bool and int32 sum to int32."""
    return _reduce("Sum", _convert(x, "x"), axis, keep_dims)


def max(x: TensorLike, axis: Axis = None, keep_dims: bool = False) -> Tensor:
    return _reduce("Max", _convert(x, "x"), axis, keep_dims)


def min(x: TensorLike, axis: Axis = None, keep_dims: bool = False) -> Tensor:
    return _reduce("Min", _convert(x, "x"), axis, keep_dims)


def mean(x: TensorLike, axis: Axis = None, keep_dims: bool = False) -> Tensor:
    x = _convert(x, "x")
    axes = util.parse_axis_param(axis, x.shape)
    reduce_size = util.size_from_shape([x.shape[ax] for ax in axes])
    return div(sum(cast(x, "float32"), axes, keep_dims), scalar(float(reduce_size)))


def moments(x: TensorLike, axis: Axis = None, keep_dims: bool = False) -> Tuple[Tensor, Tensor]:
    """(mean, variance) over axis."""
    x = _convert(x, "x")
    axes = util.parse_axis_param(axis, x.shape)
    mu = mean(x, axes, keep_dims=True)
    variance = mean(squared_difference(x, mu), axes, keep_dims)
    if not keep_dims:
        mu = reshape(mu, util.compute_out_shape(x.shape, axes))
    return mu, variance


def log_sum_exp(x: TensorLike, axis: Axis = None, keep_dims: bool = False) -> Tensor:
    """log(sum(exp(x))) computed with the max subtracted for stability."""
    x = _convert(x, "x")
    axes = util.parse_axis_param(axis, x.shape)
    x_max = max(x, axes, keep_dims=True)
    summed = sum(exp(sub(x, x_max)), axes, keep_dims)
    result = add(reshape(x_max, summed.shape), log(summed))
    return result


def arg_max(x: TensorLike, axis: Optional[int] = None) -> Tensor:
    """int32 index of the maximum along axis (0 by default)."""
    x = _convert(x, "x")
    axis = util.parse_axis_param(0 if axis is None else axis, x.shape)[0]
    return _run("ArgMax", {"x": x}, {"axis": axis})


def arg_min(x: TensorLike, axis: Optional[int] = None) -> Tensor:
    x = _convert(x, "x")
    axis = util.parse_axis_param(0 if axis is None else axis, x.shape)[0]
    return _run("ArgMin", {"x": x}, {"axis": axis})


def top_k(x: TensorLike, k: int = 1) -> Tuple[Tensor, Tensor]:
    """Largest k entries along the last axis: (values, int32 indices), descending."""
    x = _convert(x, "x")
    if x.rank == 0:
        raise ShapeError("top_k() expects the input to be of rank 1 or higher")
    if k > x.shape[-1]:
        raise ValueError(f"'k' passed to top_k() must be <= the last dimension "
                         f"({x.shape[-1]}) but got {k}")
    return (_run("TopKValues", {"x": x}, {"k": k}),
            _run("TopKIndices", {"x": x}, {"k": k}))


# ============================================================================
# Comparison & logical
# ============================================================================

def _binary_op(kernel_name: str, doc: str):
    def op(a: TensorLike, b: TensorLike) -> Tensor:
        a, b = _convert_pair(a, b, kernel_name)
        return _run(kernel_name, {"a": a, "b": b})
    op.__doc__ = doc
    return op


equal = _binary_op("Equal", "Elementwise a == b as bool.")
not_equal = _binary_op("NotEqual", "Elementwise a != b as bool.")
less = _binary_op("Less", "Elementwise a < b as bool.")
less_equal = _binary_op("LessEqual", "Elementwise a <= b as bool.")
greater = _binary_op("Greater", "Elementwise a > b as bool.")
greater_equal = _binary_op("GreaterEqual", "Elementwise a >= b as bool.")


def _assert_bool(*tensors: Tensor) -> None:
    for t in tensors:
        if t.dtype != "bool":
            raise TypeError(f"Logical ops require bool tensors, got {t.dtype}")


def logical_not(x: TensorLike) -> Tensor:
    x = _convert(x, "x", "bool")
    _assert_bool(x)
    return _run("LogicalNot", {"x": x})


def _logical(kernel_name: str):
    def op(a: TensorLike, b: TensorLike) -> Tensor:
        a, b = _convert_pair(a, b, kernel_name)
        _assert_bool(a, b)
        return _run(kernel_name, {"a": a, "b": b})
    return op


logical_and = _logical("LogicalAnd")
logical_or = _logical("LogicalOr")
logical_xor = _logical("LogicalXor")


def where(condition: TensorLike, a: TensorLike, b: TensorLike) -> Tensor:
    """a where condition is true, b elsewhere."""
    condition = _convert(condition, "condition", "bool")
    a, b = _convert_pair(a, b, "where")
    _assert_bool(condition)
    if a.shape != b.shape or condition.shape != a.shape:
        raise ShapeError(f"Error in where: condition {condition.shape}, a {a.shape} and "
                         f"b {b.shape} must have the same shape")
    return _run("Where", {"condition": condition, "a": a, "b": b},
                {"dtype": util.upcast_type(a.dtype, b.dtype)})


# ============================================================================
# Convolution & pooling
# ============================================================================

def _as_batch(x: Tensor, op_name: str) -> Tuple[Tensor, bool]:
    if x.rank == 3:
        return reshape(x, (1,) + x.shape), True
    if x.rank != 4:
        raise ShapeError(f"Error in {op_name}: input must be rank 3 or 4, got rank {x.rank}")
    return x, False


def _check_strides_and_dilations(strides, dilations, op_name: str) -> None:
    if not (conv_util.strides_or_dilations_are_one(strides)
            or conv_util.strides_or_dilations_are_one(dilations)):
        raise ValueError(f"Error in {op_name}: either strides or dilations must be 1. "
                         f"Got strides {strides} and dilations {dilations}")


def conv2d(x: TensorLike, filter: TensorLike, strides=1, pad="valid", dilations=1) -> Tensor:
    """2D convolution, NHWC input and [fh, fw, in, out] filter."""
    x4, reshaped = _as_batch(_convert(x, "x"), "conv2d")
    filter = _convert(filter, "filter")
    if filter.rank != 4:
        raise ShapeError(f"Error in conv2d: filter must be rank 4, got rank {filter.rank}")
    if x4.shape[3] != filter.shape[2]:
        raise ShapeError(f"Error in conv2d: depth of input ({x4.shape[3]}) must match input depth "
                         f"for filter {filter.shape[2]}")
    _check_strides_and_dilations(strides, dilations, "conv2d")
    info = conv_util.compute_conv2d_info(x4.shape, filter.shape, strides, pad, dilations)
    result = _run("Conv2D", {"x": x4, "filter": filter}, {"conv_info": info})
    return reshape(result, result.shape[1:]) if reshaped else result


def conv2d_der_input(x_shape: Sequence[int], dy: Tensor, filter: Tensor, strides, pad,
                     dilations=1) -> Tensor:
    """Gradient of conv2d with respect to its input."""
    info = conv_util.compute_conv2d_info(x_shape, filter.shape, strides, pad, dilations)
    return _run("Conv2DDerInput", {"dy": dy, "filter": filter}, {"conv_info": info})


def conv2d_der_filter(x: Tensor, dy: Tensor, filter_shape: Sequence[int], strides, pad,
                      dilations=1) -> Tensor:
    """Gradient of conv2d with respect to its filter."""
    info = conv_util.compute_conv2d_info(x.shape, filter_shape, strides, pad, dilations)
    return _run("Conv2DDerFilter", {"x": x, "dy": dy}, {"conv_info": info})


def conv2d_der_bias(dy: Tensor) -> Tensor:
    return _run("Conv2DDerBias", {"dy": dy})


def conv2d_transpose(x: TensorLike, filter: TensorLike, output_shape: Sequence[int], strides,
                     pad) -> Tensor:
    """Transposed convolution; filter is [fh, fw, out_channels, in_channels]."""
    x4, reshaped = _as_batch(_convert(x, "x"), "conv2d_transpose")
    output_shape = tuple(output_shape)
    if len(output_shape) == 3:
        output_shape = (1,) + output_shape
    result = conv2d_der_input(output_shape, x4, _convert(filter, "filter"), strides, pad)
    return reshape(result, result.shape[1:]) if reshaped else result


def depthwise_conv2d(x: TensorLike, filter: TensorLike, strides=1, pad="valid",
                     dilations=1) -> Tensor:
    """Per-channel convolution; filter is [fh, fw, in, channel_multiplier]."""
    x4, reshaped = _as_batch(_convert(x, "x"), "depthwise_conv2d")
    filter = _convert(filter, "filter")
    if filter.rank != 4:
        raise ShapeError(f"Error in depthwise_conv2d: filter must be rank 4, got {filter.rank}")
    if x4.shape[3] != filter.shape[2]:
        raise ShapeError(f"Error in depthwise_conv2d: number of input channels ({x4.shape[3]}) "
                         f"must match the in_channels dimension in filter {filter.shape[2]}")
    _check_strides_and_dilations(strides, dilations, "depthwise_conv2d")
    info = conv_util.compute_conv2d_info(x4.shape, filter.shape, strides, pad, dilations,
                                         depthwise=True)
    result = _run("DepthwiseConv2D", {"x": x4, "filter": filter}, {"conv_info": info})
    return reshape(result, result.shape[1:]) if reshaped else result


def _pool(kernel_name: str, x: TensorLike, filter_size, strides, pad) -> Tensor:
    x4, reshaped = _as_batch(_convert(x, "x"), kernel_name)
    info = conv_util.compute_pool2d_info(x4.shape, filter_size, strides, pad)
    result = _run(kernel_name, {"x": x4}, {"conv_info": info})
    return reshape(result, result.shape[1:]) if reshaped else result


def max_pool(x: TensorLike, filter_size, strides, pad="valid") -> Tensor:
    return _pool("MaxPool", x, filter_size, strides, pad)


def avg_pool(x: TensorLike, filter_size, strides, pad="valid") -> Tensor:
    """Average over each window, counting only positions inside the input."""
    return _pool("AvgPool", cast(x, "float32"), filter_size, strides, pad)


def min_pool(x: TensorLike, filter_size, strides, pad="valid") -> Tensor:
    return _pool("MinPool", x, filter_size, strides, pad)


def max_pool_backprop(dy: Tensor, x: Tensor, conv_info) -> Tensor:
    return _run("MaxPoolBackprop", {"dy": dy, "x": x}, {"conv_info": conv_info})


def avg_pool_backprop(dy: Tensor, x: Tensor, conv_info) -> Tensor:
    return _run("AvgPoolBackprop", {"dy": dy, "x": x}, {"conv_info": conv_info})


# ============================================================================
# Image, normalization, sampling
# ============================================================================

def resize_bilinear(images: TensorLike, size: Tuple[int, int], align_corners: bool = False) -> Tensor:
    x4, reshaped = _as_batch(_convert(images, "images"), "resize_bilinear")
    new_height, new_width = size
    result = _run("ResizeBilinear", {"x": x4}, {"new_height": int(new_height),
                                                "new_width": int(new_width),
                                                "align_corners": align_corners})
    return reshape(result, result.shape[1:]) if reshaped else result


def batch_normalization(x: TensorLike, mean: TensorLike, variance: TensorLike,
                        variance_epsilon: float = 0.001, scale: Optional[TensorLike] = None,
                        offset: Optional[TensorLike] = None) -> Tensor:
    """(x - mean) * scale / sqrt(variance + eps) + offset with broadcasting."""
    x = _convert(x, "x")
    mean = _convert(mean, "mean")
    variance = _convert(variance, "variance")
    scale = scalar(1.0) if scale is None else _convert(scale, "scale")
    offset = scalar(0.0) if offset is None else _convert(offset, "offset")
    for name, t in (("mean", mean), ("variance", variance), ("scale", scale), ("offset", offset)):
        try:
            broadcast = util.assert_and_get_broadcast_shape(x.shape, t.shape)
        except ShapeError:
            raise ShapeError(f"Batch normalization {name} of shape {t.shape} does not broadcast "
                             f"against x of shape {x.shape}") from None
        if broadcast != x.shape:
            raise ShapeError(f"Batch normalization {name} of shape {t.shape} would change the "
                             f"shape of x {x.shape}")
    return _run("BatchNorm", {"x": x, "mean": mean, "variance": variance,
                              "scale": scale, "offset": offset},
                {"variance_epsilon": variance_epsilon})


def local_response_normalization(x: TensorLike, radius: int = 5, bias: float = 1.0,
                                 alpha: float = 1.0, beta: float = 0.5,
                                 norm_region: str = "acrossChannels") -> Tensor:
    x4, reshaped = _as_batch(_convert(x, "x"), "local_response_normalization")
    if norm_region not in ("acrossChannels", "withinChannel"):
        raise ValueError(f"Unknown norm_region {norm_region}")
    if radius < 0 or int(radius) != radius:
        raise ValueError(f"Error in local_response_normalization: radius must be a "
                         f"non-negative integer but got {radius}")
    result = _run("LRN", {"x": x4}, {"radius": int(radius), "bias": bias, "alpha": alpha,
                                     "beta": beta, "norm_region": norm_region})
    return reshape(result, result.shape[1:]) if reshaped else result


def multinomial(probabilities: TensorLike, num_samples: int, seed: Optional[int] = None) -> Tensor:
    """Draw int32 outcome indices from one or a batch of probability vectors."""
    probs = _convert(probabilities, "probabilities")
    if probs.rank > 2:
        raise ValueError(f"Rank of probabilities must be 1 or 2, but is {probs.rank}")
    num_outcomes = probs.shape[-1] if probs.rank > 0 else 1
    if num_outcomes < 2:
        raise ValueError(f"Error in multinomial: you need at least 2 outcomes, but got "
                         f"{num_outcomes}.")
    probs2d = reshape(probs, (1, -1)) if probs.rank == 1 else probs
    result = _run("Multinomial", {"probs": probs2d}, {"num_samples": num_samples, "seed": seed})
    return reshape(result, (num_samples,)) if probs.rank == 1 else result


def one_hot(indices: TensorLike, depth: int, on_value: float = 1.0,
            off_value: float = 0.0) -> Tensor:
    indices = _convert(indices, "indices", "int32")
    if depth < 2:
        raise ValueError(f"Error in one_hot: depth must be >= 2, but it is {depth}")
    if indices.rank != 1:
        raise ShapeError(f"Error in one_hot: indices must be rank 1, got rank {indices.rank}")
    return _run("OneHot", {"indices": indices}, {"depth": depth, "on_value": on_value,
                                                 "off_value": off_value})


# ============================================================================
# Softmax (custom gradients)
# ============================================================================

def _last_dim(x: Tensor, dim: int, op_name: str) -> int:
    if dim == -1:
        dim = x.rank - 1
    if dim != x.rank - 1:
        raise ShapeError(f"{op_name} along a non-last dimension is not supported. "
                         f"Logits was rank {x.rank} and dim was {dim}")
    return dim


def softmax(logits: TensorLike, dim: int = -1) -> Tensor:
    """exp(logits - log_sum_exp(logits)) with the analytic softmax gradient."""
    logits = _convert(logits, "logits")
    dim = _last_dim(logits, dim, "Softmax")

    def forward():
        lse = log_sum_exp(logits, [dim], keep_dims=True)
        y = exp(sub(logits, lse))

        def gradient(dy, y):
            dy_times_y = mul(dy, y)
            return {"logits": lambda: sub(dy_times_y, mul(sum(dy_times_y, [dim], keep_dims=True), y))}

        return y, gradient

    return environment.ENV.engine.custom_gradient("softmax", forward, {"logits": logits})


def softmax_cross_entropy(labels: TensorLike, logits: TensorLike, dim: int = -1) -> Tensor:
    """-sum(labels * log(softmax(logits))) over dim, with gradient softmax - labels."""
    labels = _convert(labels, "labels")
    logits = _convert(logits, "logits")
    if labels.shape != logits.shape:
        raise ShapeError(
            f"Error in softmax_cross_entropy: labels and logits must have the same shape, "
            f"but got shapes {labels.shape} and {logits.shape}"
        )
    dim = _last_dim(logits, dim, "Softmax cross entropy")

    def forward():
        softmax_logits = softmax(logits, dim)
        cost = neg(sum(mul(labels, log(add(scalar(1e-5), softmax_logits))), [dim]))

        def gradient(dy, y):
            dy_shape = util.expand_shape_to_keep_dim(dy.shape, [dim])
            return {
                "logits": lambda: mul(reshape(dy, dy_shape),
                                      sub(softmax_logits, cast(labels, "float32"))),
                "labels": lambda: mul(reshape(dy, dy_shape), sub(labels, softmax_logits)),
            }

        return cost, gradient

    return environment.ENV.engine.custom_gradient(
        "softmax_cross_entropy", forward, {"labels": labels, "logits": logits})
