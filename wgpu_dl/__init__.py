"""
wgpu_dl: tape-based automatic differentiation over a pluggable kernel backend.

Provides eager tensors whose every kernel is dispatched through a global
engine that records a tape while gradients are being computed, memory scopes
(tidy/keep) with reference-counted buffers, named Variables and optimizers.
Kernels run on a numpy backend or on the GPU through WebGPU compute shaders.

Modules:
    environment  - feature flags, backend registry and the global engine (ENV)
    engine       - scopes, reference counting, kernel execution, gradients
    ops          - tensor factories and validated operations
    gradients    - value_and_gradients / variable_gradients / custom_gradient
    optimizers   - SGD, Momentum, Adagrad, Adadelta, Adam
    nn           - Module, Dense, Sequential over Variables
"""

# The environment module must load first: it pulls in the engine, which in
# turn binds tensor and ops.
from wgpu_dl.environment import ENV, Environment

from wgpu_dl.errors import (
    ConfigurationError, UnknownKernelError, ScopeError,
    ShapeError, DisconnectedGraphError, NonDifferentiableError,
)

from wgpu_dl.tensor import DataId, Tensor, Variable

from wgpu_dl.ops import (
    tensor, scalar, tensor1d, tensor2d, tensor3d, tensor4d,
    zeros, ones, fill, zeros_like, ones_like,
    random_normal, random_uniform, linspace, range, variable, clone,
    reshape, flatten, expand_dims, squeeze, cast, transpose,
    matmul, slice, reverse, concat, stack, pad, pad1d, pad2d, tile, gather,
    add, sub, mul, div, minimum, maximum, pow, squared_difference, neg,
    ceil, floor, exp, log, sqrt, square, abs,
    relu, elu, selu, sigmoid, leaky_relu, prelu, step, clip_by_value,
    sin, cos, tan, asin, acos, atan, sinh, cosh, tanh,
    sum, max, min, mean, moments, log_sum_exp, arg_max, arg_min, top_k,
    equal, not_equal, less, less_equal, greater, greater_equal,
    logical_not, logical_and, logical_or, logical_xor, where,
    conv2d, conv2d_der_input, conv2d_der_filter, conv2d_der_bias,
    conv2d_transpose, depthwise_conv2d,
    max_pool, avg_pool, min_pool,
    resize_bilinear, batch_normalization, local_response_normalization,
    multinomial, one_hot,
    softmax, softmax_cross_entropy,
)

from wgpu_dl.scope import tidy, keep, dispose, memory, gradients_scope

from wgpu_dl.gradients import (
    value_and_gradients, gradients, vjp, variable_gradients,
    custom_gradient, grad, value_and_grad, VariableGradients,
)

from wgpu_dl.optimizers import (
    Optimizer, SGDOptimizer, MomentumOptimizer,
    AdagradOptimizer, AdadeltaOptimizer, AdamOptimizer,
)

from wgpu_dl import nn, train

__all__ = [
    # Environment
    "ENV", "Environment",
    # Errors
    "ConfigurationError", "UnknownKernelError", "ScopeError",
    "ShapeError", "DisconnectedGraphError", "NonDifferentiableError",
    # Tensor
    "DataId", "Tensor", "Variable",
    # Ops
    "tensor", "scalar", "tensor1d", "tensor2d", "tensor3d", "tensor4d",
    "zeros", "ones", "fill", "zeros_like", "ones_like",
    "random_normal", "random_uniform", "linspace", "range", "variable", "clone",
    "reshape", "flatten", "expand_dims", "squeeze", "cast", "transpose",
    "matmul", "slice", "reverse", "concat", "stack", "pad", "pad1d", "pad2d", "tile", "gather",
    "add", "sub", "mul", "div", "minimum", "maximum", "pow", "squared_difference", "neg",
    "ceil", "floor", "exp", "log", "sqrt", "square", "abs",
    "relu", "elu", "selu", "sigmoid", "leaky_relu", "prelu", "step", "clip_by_value",
    "sin", "cos", "tan", "asin", "acos", "atan", "sinh", "cosh", "tanh",
    "sum", "max", "min", "mean", "moments", "log_sum_exp", "arg_max", "arg_min", "top_k",
    "equal", "not_equal", "less", "less_equal", "greater", "greater_equal",
    "logical_not", "logical_and", "logical_or", "logical_xor", "where",
    "conv2d", "conv2d_der_input", "conv2d_der_filter", "conv2d_der_bias",
    "conv2d_transpose", "depthwise_conv2d",
    "max_pool", "avg_pool", "min_pool",
    "resize_bilinear", "batch_normalization", "local_response_normalization",
    "multinomial", "one_hot",
    "softmax", "softmax_cross_entropy",
    # Scopes
    "tidy", "keep", "dispose", "memory", "gradients_scope",
    # Gradients
    "value_and_gradients", "gradients", "vjp", "variable_gradients",
    "custom_gradient", "grad", "value_and_grad", "VariableGradients",
    # Optimizers
    "Optimizer", "SGDOptimizer", "MomentumOptimizer",
    "AdagradOptimizer", "AdadeltaOptimizer", "AdamOptimizer",
    "nn", "train",
]
