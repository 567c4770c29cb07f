"""
Per-kernel gradient rules.

GRADIENT_RULES maps a kernel name to a rule ``rule(dy, y, inputs, args)``
returning ``{input_name: () -> gradient}``. The engine binds inputs and args
when it records a node. Each gradient has the shape of its input; broadcast
operands are summed back down to their own shape.

Kernels without an entry are non-differentiable. Those with integer or bool
outputs never sit on a gradient path; the rest raise NonDifferentiableError
if a gradient is requested through them.
"""

from wgpu_dl import environment
from wgpu_dl import kernel_registry
from wgpu_dl import ops
from wgpu_dl import util
from wgpu_dl.backends.backend_cpu import SELU_SCALE, SELU_SCALEALPHA


def _kernel(name, inputs, args=None):
    return environment.ENV.engine.run_kernel(name, inputs, args)


def _float(x):
    return ops.cast(x, "float32")


def _unbroadcast(grad, shape):
    """Sum grad over the axes along which an operand of `shape` was broadcast."""
    axes = util.get_reduction_axes(shape, grad.shape)
    if axes:
        grad = ops.sum(grad, axes)
    return ops.reshape(grad, shape)


# ============================================================================
# Linear algebra & layout
# ============================================================================

def _matmul_grad(dy, y, inputs, args):
    a, b = inputs["a"], inputs["b"]
    transpose_a, transpose_b = args["transpose_a"], args["transpose_b"]
    if not transpose_a and not transpose_b:
        return {"a": lambda: ops.matmul(dy, b, False, True),
                "b": lambda: ops.matmul(a, dy, True, False)}
    if not transpose_a and transpose_b:
        return {"a": lambda: ops.matmul(dy, b, False, False),
                "b": lambda: ops.matmul(dy, a, True, False)}
    if transpose_a and not transpose_b:
        return {"a": lambda: ops.matmul(b, dy, False, True),
                "b": lambda: ops.matmul(a, dy, False, False)}
    return {"a": lambda: ops.matmul(b, dy, True, True),
            "b": lambda: ops.matmul(dy, a, True, True)}


def _slice_grad(dy, y, inputs, args):
    x = inputs["x"]
    paddings = [[b, dim - b - s] for b, s, dim in zip(args["begin"], args["size"], x.shape)]
    return {"x": lambda: ops.pad(dy, paddings)}


def _reverse_grad(dy, y, inputs, args):
    return {"x": lambda: ops.reverse(dy, args["axes"])}


def _concat_grad(dy, y, inputs, args):
    a, b = inputs["a"], inputs["b"]
    axis = args["axis"]
    b_begin = [0] * a.rank
    b_begin[axis] = a.shape[axis]
    return {"a": lambda: ops.slice(dy, [0] * a.rank, a.shape),
            "b": lambda: ops.slice(dy, b_begin, b.shape)}


# ============================================================================
# Arithmetic
# ============================================================================

def _neg_grad(dy, y, inputs, args):
    return {"x": lambda: ops.neg(dy)}


def _add_grad(dy, y, inputs, args):
    a, b = inputs["a"], inputs["b"]
    return {"a": lambda: _unbroadcast(dy, a.shape),
            "b": lambda: _unbroadcast(dy, b.shape)}


def _sub_grad(dy, y, inputs, args):
    a, b = inputs["a"], inputs["b"]
    return {"a": lambda: _unbroadcast(dy, a.shape),
            "b": lambda: _unbroadcast(ops.neg(dy), b.shape)}


def _mul_grad(dy, y, inputs, args):
    a, b = inputs["a"], inputs["b"]
    return {"a": lambda: _unbroadcast(ops.mul(dy, _float(b)), a.shape),
            "b": lambda: _unbroadcast(ops.mul(dy, _float(a)), b.shape)}


def _div_grad(dy, y, inputs, args):
    a, b = _float(inputs["a"]), _float(inputs["b"])
    return {"a": lambda: _unbroadcast(ops.div(dy, b), a.shape),
            "b": lambda: _unbroadcast(ops.neg(ops.div(ops.mul(dy, a), ops.square(b))), b.shape)}


def _minimum_grad(dy, y, inputs, args):
    a, b = inputs["a"], inputs["b"]
    return {"a": lambda: _unbroadcast(ops.mul(dy, _float(ops.less_equal(a, b))), a.shape),
            "b": lambda: _unbroadcast(ops.mul(dy, _float(ops.greater(a, b))), b.shape)}


def _maximum_grad(dy, y, inputs, args):
    a, b = inputs["a"], inputs["b"]
    return {"a": lambda: _unbroadcast(ops.mul(dy, _float(ops.greater_equal(a, b))), a.shape),
            "b": lambda: _unbroadcast(ops.mul(dy, _float(ops.less(a, b))), b.shape)}


def _pow_grad(dy, y, inputs, args):
    base, exp = _float(inputs["base"]), _float(inputs["exp"])

    def d_base():
        return _unbroadcast(ops.mul(dy, ops.mul(exp, ops.pow(base, ops.sub(exp, 1.0)))), base.shape)

    def d_exp():
        log_base = ops.where(ops.greater(base, 0.0), ops.log(base), ops.zeros_like(base))
        return _unbroadcast(ops.mul(dy, ops.mul(y, log_base)), exp.shape)

    return {"base": d_base, "exp": d_exp}


# ============================================================================
# Reductions
# ============================================================================

def _sum_grad(dy, y, inputs, args):
    x = inputs["x"]
    expanded_shape = util.expand_shape_to_keep_dim(y.shape, args["axes"])
    return {"x": lambda: ops.mul(ops.reshape(dy, expanded_shape), ops.ones(x.shape))}


def _min_max_grad(dy, y, inputs, args):
    x = inputs["x"]
    expanded_shape = util.expand_shape_to_keep_dim(y.shape, args["axes"])

    def d_x():
        mask = _float(ops.equal(x, ops.reshape(y, expanded_shape)))
        return ops.mul(mask, ops.reshape(dy, expanded_shape))

    return {"x": d_x}


# ============================================================================
# Unary math & activations
# ============================================================================

def _zeros_grad(dy, y, inputs, args):
    x = inputs["x"]
    return {"x": lambda: ops.zeros(x.shape)}


def _exp_grad(dy, y, inputs, args):
    return {"x": lambda: ops.mul(dy, y)}


def _log_grad(dy, y, inputs, args):
    return {"x": lambda: ops.div(dy, _float(inputs["x"]))}


def _sqrt_grad(dy, y, inputs, args):
    return {"x": lambda: ops.div(dy, ops.mul(y, 2.0))}


def _square_grad(dy, y, inputs, args):
    return {"x": lambda: ops.mul(dy, ops.mul(_float(inputs["x"]), 2.0))}


def _relu_grad(dy, y, inputs, args):
    return {"x": lambda: ops.mul(dy, ops.step(inputs["x"]))}


def _leaky_relu_grad(dy, y, inputs, args):
    return {"x": lambda: ops.mul(dy, ops.step(inputs["x"], args["alpha"]))}


def _prelu_grad(dy, y, inputs, args):
    x, alpha = inputs["x"], inputs["alpha"]

    def d_alpha():
        negative_part = ops.where(ops.greater(x, 0.0), ops.zeros_like(x), x)
        return _unbroadcast(ops.mul(dy, negative_part), alpha.shape)

    return {"x": lambda: ops.mul(dy, _kernel("PReLUDer", {"x": x, "alpha": alpha})),
            "alpha": d_alpha}


def _elu_grad(dy, y, inputs, args):
    return {"x": lambda: ops.mul(dy, _kernel("EluDer", {"y": y}))}


def _selu_grad(dy, y, inputs, args):
    x = inputs["x"]

    def d_x():
        positive = ops.mul(dy, SELU_SCALE)
        negative = ops.mul(dy, ops.mul(ops.exp(x), SELU_SCALEALPHA))
        return ops.where(ops.greater(x, 0.0), positive, negative)

    return {"x": d_x}


def _abs_grad(dy, y, inputs, args):
    return {"x": lambda: ops.mul(dy, ops.step(inputs["x"], -1.0))}


def _sigmoid_grad(dy, y, inputs, args):
    return {"x": lambda: ops.mul(dy, ops.mul(y, ops.sub(1.0, y)))}


def _sin_grad(dy, y, inputs, args):
    return {"x": lambda: ops.mul(dy, ops.cos(inputs["x"]))}


def _cos_grad(dy, y, inputs, args):
    return {"x": lambda: ops.neg(ops.mul(dy, ops.sin(inputs["x"])))}


def _tan_grad(dy, y, inputs, args):
    return {"x": lambda: ops.div(dy, ops.square(ops.cos(inputs["x"])))}


def _asin_grad(dy, y, inputs, args):
    return {"x": lambda: ops.div(dy, ops.sqrt(ops.sub(1.0, ops.square(inputs["x"]))))}


def _acos_grad(dy, y, inputs, args):
    return {"x": lambda: ops.neg(ops.div(dy, ops.sqrt(ops.sub(1.0, ops.square(inputs["x"])))))}


def _atan_grad(dy, y, inputs, args):
    return {"x": lambda: ops.div(dy, ops.add(1.0, ops.square(inputs["x"])))}


def _sinh_grad(dy, y, inputs, args):
    return {"x": lambda: ops.mul(dy, ops.cosh(inputs["x"]))}


def _cosh_grad(dy, y, inputs, args):
    return {"x": lambda: ops.mul(dy, ops.sinh(inputs["x"]))}


def _tanh_grad(dy, y, inputs, args):
    return {"x": lambda: ops.mul(dy, ops.sub(1.0, ops.square(y)))}


# ============================================================================
# Shape, dtype & indexing
# ============================================================================

def _reshape_grad(dy, y, inputs, args):
    return {"x": lambda: ops.reshape(dy, inputs["x"].shape)}


def _clip_grad(dy, y, inputs, args):
    x = inputs["x"]

    def d_x():
        inside = ops.logical_and(ops.greater_equal(x, args["min"]), ops.less_equal(x, args["max"]))
        return ops.where(inside, dy, ops.zeros_like(dy))

    return {"x": d_x}


def _transpose_grad(dy, y, inputs, args):
    undo = util.get_undo_axes_permutation(args["perm"])
    return {"x": lambda: ops.transpose(dy, undo)}


def _pad_grad(dy, y, inputs, args):
    x = inputs["x"]
    return {"x": lambda: ops.slice(dy, [p[0] for p in args["paddings"]], x.shape)}


def _tile_grad(dy, y, inputs, args):
    x = inputs["x"]

    def d_x():
        interleaved = []
        for rep, dim in zip(args["reps"], x.shape):
            interleaved.extend([rep, dim])
        summed = ops.sum(ops.reshape(dy, interleaved), list(range(0, 2 * x.rank, 2)))
        return ops.reshape(summed, x.shape)

    return {"x": d_x}


def _gather_grad(dy, y, inputs, args):
    x, indices = inputs["x"], inputs["indices"]
    axis = args["axis"]

    def d_x():
        perm = [axis] + [i for i in range(dy.rank) if i != axis]
        rows = ops.reshape(ops.transpose(dy, perm), (indices.size, -1))
        selector = _float(ops.equal(ops.reshape(indices, (indices.size, 1)),
                                    ops.reshape(ops.range(x.shape[axis], dtype="int32"),
                                                (1, x.shape[axis]))))
        scattered = ops.matmul(selector, rows, True, False)
        moved_shape = [x.shape[axis]] + [d for i, d in enumerate(x.shape) if i != axis]
        return ops.transpose(ops.reshape(scattered, moved_shape),
                             util.get_undo_axes_permutation(perm))

    return {"x": d_x}


# ============================================================================
# Convolution & pooling
# ============================================================================

def _conv2d_grad(dy, y, inputs, args):
    x, filter = inputs["x"], inputs["filter"]
    info = args["conv_info"]
    return {"x": lambda: _kernel("Conv2DDerInput", {"dy": dy, "filter": filter}, {"conv_info": info}),
            "filter": lambda: _kernel("Conv2DDerFilter", {"x": x, "dy": dy}, {"conv_info": info})}


def _max_pool_grad(dy, y, inputs, args):
    return {"x": lambda: ops.max_pool_backprop(dy, inputs["x"], args["conv_info"])}


def _avg_pool_grad(dy, y, inputs, args):
    return {"x": lambda: ops.avg_pool_backprop(dy, inputs["x"], args["conv_info"])}


# ============================================================================
# Normalization
# ============================================================================

def _batch_norm_grad(dy, y, inputs, args):
    x, mean, variance = inputs["x"], inputs["mean"], inputs["variance"]
    scale, offset = inputs["scale"], inputs["offset"]
    epsilon = args["variance_epsilon"]

    def inv_std():
        return ops.div(1.0, ops.sqrt(ops.add(variance, epsilon)))

    def d_variance():
        centered = ops.sub(x, mean)
        inv_std_cubed = ops.pow(inv_std(), 3.0)
        grad = ops.mul(ops.mul(ops.mul(dy, centered), scale), ops.mul(inv_std_cubed, -0.5))
        return _unbroadcast(grad, variance.shape)

    return {
        "x": lambda: ops.mul(ops.mul(dy, scale), inv_std()),
        "mean": lambda: _unbroadcast(ops.neg(ops.mul(ops.mul(dy, scale), inv_std())), mean.shape),
        "variance": d_variance,
        "scale": lambda: _unbroadcast(ops.mul(ops.mul(dy, ops.sub(x, mean)), inv_std()), scale.shape),
        "offset": lambda: _unbroadcast(dy, offset.shape),
    }


GRADIENT_RULES = {
    "MatMul": _matmul_grad,
    "Slice": _slice_grad,
    "Reverse": _reverse_grad,
    "Concat": _concat_grad,
    "Neg": _neg_grad,
    "Add": _add_grad,
    "Sub": _sub_grad,
    "Mul": _mul_grad,
    "Div": _div_grad,
    "Sum": _sum_grad,
    "Min": _min_max_grad,
    "Max": _min_max_grad,
    "Where": lambda dy, y, inputs, args: {
        "a": lambda: ops.where(inputs["condition"], dy, ops.zeros_like(dy)),
        "b": lambda: ops.where(inputs["condition"], ops.zeros_like(dy), dy),
    },
    "Minimum": _minimum_grad,
    "Maximum": _maximum_grad,
    "Pow": _pow_grad,
    "Ceil": _zeros_grad,
    "Floor": _zeros_grad,
    "Exp": _exp_grad,
    "Log": _log_grad,
    "Sqrt": _sqrt_grad,
    "Square": _square_grad,
    "Relu": _relu_grad,
    "LeakyRelu": _leaky_relu_grad,
    "PReLU": _prelu_grad,
    "Elu": _elu_grad,
    "Selu": _selu_grad,
    "Abs": _abs_grad,
    "Sigmoid": _sigmoid_grad,
    "Step": _zeros_grad,
    "Sin": _sin_grad,
    "Cos": _cos_grad,
    "Tan": _tan_grad,
    "Asin": _asin_grad,
    "Acos": _acos_grad,
    "Atan": _atan_grad,
    "Sinh": _sinh_grad,
    "Cosh": _cosh_grad,
    "Tanh": _tanh_grad,
    "Reshape": _reshape_grad,
    "Cast": _reshape_grad,
    "Clip": _clip_grad,
    "Transpose": _transpose_grad,
    "Pad": _pad_grad,
    "Tile": _tile_grad,
    "Gather": _gather_grad,
    "Conv2D": _conv2d_grad,
    "MaxPool": _max_pool_grad,
    "AvgPool": _avg_pool_grad,
    "BatchNorm": _batch_norm_grad,
}

_unknown = set(GRADIENT_RULES) - kernel_registry.KERNEL_NAMES
if _unknown:
    raise RuntimeError(f"Gradient rules registered for unknown kernels: {sorted(_unknown)}")
