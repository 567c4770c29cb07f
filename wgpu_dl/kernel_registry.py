"""
Kernel dispatcher.

Maps every kernel name in the closed kernel set to the backend call that
implements it. The table is static; a name outside it is a configuration
error. The dispatcher does no validation and never touches the tape.
"""

from typing import Any, Callable, Dict

from wgpu_dl import util
from wgpu_dl.errors import UnknownKernelError
from wgpu_dl.tensor import Tensor

KernelFn = Callable[[Any, Dict[str, Tensor], Dict[str, Any]], Tensor]


def _unary(method: str) -> KernelFn:
    return lambda backend, inputs, args: getattr(backend, method)(inputs["x"])


def _binary(method: str) -> KernelFn:
    return lambda backend, inputs, args: getattr(backend, method)(inputs["a"], inputs["b"])


def _reshape(backend, inputs, args):
    x = inputs["x"]
    return Tensor.make(args["new_shape"], dtype=x.dtype, data_id=x.data_id)


def _cast(backend, inputs, args):
    x = inputs["x"]
    dtype = args["dtype"]
    if not util.has_encoding_loss(x.dtype, dtype):
        return Tensor.make(x.shape, dtype=dtype, data_id=x.data_id)
    if dtype in ("int32", "bool"):
        return backend.cast(x, dtype)
    raise TypeError(f"Error in Cast: unknown dtype argument ({dtype})")


def _conv(method: str, first: str, second: str) -> KernelFn:
    return lambda backend, inputs, args: getattr(backend, method)(
        inputs[first], inputs[second], args["conv_info"])


def _pool(method: str) -> KernelFn:
    return lambda backend, inputs, args: getattr(backend, method)(inputs["x"], args["conv_info"])


_FORWARD: Dict[str, KernelFn] = {
    # ---- linear algebra & layout ----
    "MatMul": lambda backend, inputs, args: backend.matmul(
        inputs["a"], inputs["b"], args["transpose_a"], args["transpose_b"]),
    "Slice": lambda backend, inputs, args: backend.slice(inputs["x"], args["begin"], args["size"]),
    "Reverse": lambda backend, inputs, args: backend.reverse(inputs["x"], args["axes"]),
    "Concat": lambda backend, inputs, args: backend.concat(inputs["a"], inputs["b"], args["axis"]),
    # ---- arithmetic ----
    "Neg": _unary("neg"),
    "Add": _binary("add"),
    "Sub": _binary("sub"),
    "Mul": _binary("mul"),
    "Div": _binary("div"),
    # ---- reductions ----
    "Sum": lambda backend, inputs, args: backend.sum(inputs["x"], args["axes"]),
    "ArgMax": lambda backend, inputs, args: backend.arg_max(inputs["x"], args["axis"]),
    "ArgMin": lambda backend, inputs, args: backend.arg_min(inputs["x"], args["axis"]),
    "Min": lambda backend, inputs, args: backend.min(inputs["x"], args["axes"]),
    "Max": lambda backend, inputs, args: backend.max(inputs["x"], args["axes"]),
    # ---- comparison & logical ----
    "Equal": _binary("equal"),
    "NotEqual": _binary("not_equal"),
    "Less": _binary("less"),
    "LessEqual": _binary("less_equal"),
    "Greater": _binary("greater"),
    "GreaterEqual": _binary("greater_equal"),
    "LogicalNot": _unary("logical_not"),
    "LogicalAnd": _binary("logical_and"),
    "LogicalOr": _binary("logical_or"),
    "LogicalXor": _binary("logical_xor"),
    "Where": lambda backend, inputs, args: backend.where(
        inputs["condition"], inputs["a"], inputs["b"], args["dtype"]),
    "TopKValues": lambda backend, inputs, args: backend.top_k_values(inputs["x"], args["k"]),
    "TopKIndices": lambda backend, inputs, args: backend.top_k_indices(inputs["x"], args["k"]),
    # ---- elementwise binary ----
    "Minimum": _binary("minimum"),
    "Maximum": _binary("maximum"),
    "Pow": lambda backend, inputs, args: backend.pow(inputs["base"], inputs["exp"]),
    # ---- unary math ----
    "Ceil": _unary("ceil"),
    "Floor": _unary("floor"),
    "Exp": _unary("exp"),
    "Log": _unary("log"),
    "Sqrt": _unary("sqrt"),
    "Square": _unary("square"),
    # ---- activations ----
    "Relu": _unary("relu"),
    "LeakyRelu": lambda backend, inputs, args: backend.leaky_relu(inputs["x"], args["alpha"]),
    "PReLU": lambda backend, inputs, args: backend.prelu(inputs["x"], inputs["alpha"]),
    "PReLUDer": lambda backend, inputs, args: backend.prelu_der(inputs["x"], inputs["alpha"]),
    "Elu": _unary("elu"),
    "EluDer": lambda backend, inputs, args: backend.elu_der(inputs["y"]),
    "Selu": _unary("selu"),
    "Abs": _unary("abs"),
    "Sigmoid": _unary("sigmoid"),
    "Step": lambda backend, inputs, args: backend.step(inputs["x"], args["alpha"]),
    # ---- trigonometric ----
    "Sin": _unary("sin"),
    "Cos": _unary("cos"),
    "Tan": _unary("tan"),
    "Asin": _unary("asin"),
    "Acos": _unary("acos"),
    "Atan": _unary("atan"),
    "Sinh": _unary("sinh"),
    "Cosh": _unary("cosh"),
    "Tanh": _unary("tanh"),
    # ---- shape, dtype & indexing ----
    "Reshape": _reshape,
    "Cast": _cast,
    "Clip": lambda backend, inputs, args: backend.clip(inputs["x"], args["min"], args["max"]),
    "Transpose": lambda backend, inputs, args: backend.transpose(inputs["x"], args["perm"]),
    "Pad": lambda backend, inputs, args: backend.pad(
        inputs["x"], args["paddings"], args["constant_value"]),
    "Tile": lambda backend, inputs, args: backend.tile(inputs["x"], args["reps"]),
    "Gather": lambda backend, inputs, args: backend.gather(
        inputs["x"], inputs["indices"], args["axis"]),
    # ---- convolution ----
    "Conv2D": _conv("conv2d", "x", "filter"),
    "Conv2DDerInput": _conv("conv2d_der_input", "dy", "filter"),
    "Conv2DDerFilter": _conv("conv2d_der_filter", "x", "dy"),
    "Conv2DDerBias": lambda backend, inputs, args: backend.conv2d_der_bias(inputs["dy"]),
    "DepthwiseConv2D": _conv("depthwise_conv2d", "x", "filter"),
    # ---- pooling ----
    "MaxPool": _pool("max_pool"),
    "MaxPoolBackprop": _conv("max_pool_backprop", "dy", "x"),
    "AvgPool": _pool("avg_pool"),
    "AvgPoolBackprop": _conv("avg_pool_backprop", "dy", "x"),
    "MinPool": _pool("min_pool"),
    # ---- image, normalization, sampling ----
    "ResizeBilinear": lambda backend, inputs, args: backend.resize_bilinear(
        inputs["x"], args["new_height"], args["new_width"], args["align_corners"]),
    "BatchNorm": lambda backend, inputs, args: backend.batch_norm(
        inputs["x"], inputs["mean"], inputs["variance"], args["variance_epsilon"],
        inputs["scale"], inputs["offset"]),
    "LRN": lambda backend, inputs, args: backend.lrn(
        inputs["x"], args["radius"], args["bias"], args["alpha"], args["beta"],
        args["norm_region"]),
    "Multinomial": lambda backend, inputs, args: backend.multinomial(
        inputs["probs"], args["num_samples"], args["seed"]),
    "OneHot": lambda backend, inputs, args: backend.one_hot(
        inputs["indices"], args["depth"], args["on_value"], args["off_value"]),
}

KERNEL_NAMES = frozenset(_FORWARD)


def execute_kernel(backend, kernel_name: str, inputs: Dict[str, Tensor],
                   args: Dict[str, Any]) -> Tensor:
    """Run one kernel on the backend and return its output tensor.

    Raises:
        UnknownKernelError: kernel_name is not in the kernel set.
    """
    try:
        forward = _FORWARD[kernel_name]
    except KeyError:
        raise UnknownKernelError(kernel_name) from None
    return forward(backend, inputs, args)
