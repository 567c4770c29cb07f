"""
Backend contract.

A backend owns the numeric buffers named by DataIds and implements one method
per kernel in the closed kernel set. Kernel methods receive input Tensors plus
plain arguments and return a new output Tensor created through Tensor.make so
the engine registers it. Validation happens before dispatch; kernels assume
well-formed inputs.
"""

import abc


class KernelBackend(abc.ABC):
    """Storage and numeric kernels behind the engine."""

    # ---- Storage ----
    @abc.abstractmethod
    def register(self, data_id, shape, dtype):
        """Reserve storage for a new buffer."""

    @abc.abstractmethod
    def write(self, data_id, values):
        """Fill a registered buffer with flat values."""

    @abc.abstractmethod
    def read_sync(self, data_id):
        """Flat numpy copy of a buffer."""

    async def read(self, data_id):
        return self.read_sync(data_id)

    @abc.abstractmethod
    def dispose_data(self, data_id):
        """Release one buffer."""

    def memory(self):
        return {"unreliable": False}

    def dispose(self):
        """Release every buffer and device resource held by the backend."""

    # ---- Kernels ----
    def matmul(self, a, b, transpose_a, transpose_b): raise NotImplementedError
    def slice(self, x, begin, size): raise NotImplementedError
    def reverse(self, x, axes): raise NotImplementedError
    def concat(self, a, b, axis): raise NotImplementedError
    def neg(self, x): raise NotImplementedError
    def add(self, a, b): raise NotImplementedError
    def sub(self, a, b): raise NotImplementedError
    def mul(self, a, b): raise NotImplementedError
    def div(self, a, b): raise NotImplementedError
    def sum(self, x, axes): raise NotImplementedError
    def arg_max(self, x, axis): raise NotImplementedError
    def arg_min(self, x, axis): raise NotImplementedError
    def min(self, x, axes): raise NotImplementedError
    def max(self, x, axes): raise NotImplementedError
    def equal(self, a, b): raise NotImplementedError
    def not_equal(self, a, b): raise NotImplementedError
    def less(self, a, b): raise NotImplementedError
    def less_equal(self, a, b): raise NotImplementedError
    def greater(self, a, b): raise NotImplementedError
    def greater_equal(self, a, b): raise NotImplementedError
    def logical_not(self, x): raise NotImplementedError
    def logical_and(self, a, b): raise NotImplementedError
    def logical_or(self, a, b): raise NotImplementedError
    def logical_xor(self, a, b): raise NotImplementedError
    def where(self, condition, a, b, dtype): raise NotImplementedError
    def top_k_values(self, x, k): raise NotImplementedError
    def top_k_indices(self, x, k): raise NotImplementedError
    def minimum(self, a, b): raise NotImplementedError
    def maximum(self, a, b): raise NotImplementedError
    def pow(self, base, exp): raise NotImplementedError
    def ceil(self, x): raise NotImplementedError
    def floor(self, x): raise NotImplementedError
    def exp(self, x): raise NotImplementedError
    def log(self, x): raise NotImplementedError
    def sqrt(self, x): raise NotImplementedError
    def square(self, x): raise NotImplementedError
    def relu(self, x): raise NotImplementedError
    def leaky_relu(self, x, alpha): raise NotImplementedError
    def prelu(self, x, alpha): raise NotImplementedError
    def prelu_der(self, x, alpha): raise NotImplementedError
    def elu(self, x): raise NotImplementedError
    def elu_der(self, y): raise NotImplementedError
    def selu(self, x): raise NotImplementedError
    def abs(self, x): raise NotImplementedError
    def sigmoid(self, x): raise NotImplementedError
    def step(self, x, alpha): raise NotImplementedError
    def sin(self, x): raise NotImplementedError
    def cos(self, x): raise NotImplementedError
    def tan(self, x): raise NotImplementedError
    def asin(self, x): raise NotImplementedError
    def acos(self, x): raise NotImplementedError
    def atan(self, x): raise NotImplementedError
    def sinh(self, x): raise NotImplementedError
    def cosh(self, x): raise NotImplementedError
    def tanh(self, x): raise NotImplementedError
    def cast(self, x, dtype): raise NotImplementedError
    def clip(self, x, min_value, max_value): raise NotImplementedError
    def transpose(self, x, perm): raise NotImplementedError
    def pad(self, x, paddings, constant_value): raise NotImplementedError
    def tile(self, x, reps): raise NotImplementedError
    def gather(self, x, indices, axis): raise NotImplementedError
    def conv2d(self, x, filter, conv_info): raise NotImplementedError
    def conv2d_der_input(self, dy, filter, conv_info): raise NotImplementedError
    def conv2d_der_filter(self, x, dy, conv_info): raise NotImplementedError
    def conv2d_der_bias(self, dy): raise NotImplementedError
    def depthwise_conv2d(self, x, filter, conv_info): raise NotImplementedError
    def max_pool(self, x, conv_info): raise NotImplementedError
    def max_pool_backprop(self, dy, x, conv_info): raise NotImplementedError
    def avg_pool(self, x, conv_info): raise NotImplementedError
    def avg_pool_backprop(self, dy, x, conv_info): raise NotImplementedError
    def min_pool(self, x, conv_info): raise NotImplementedError
    def resize_bilinear(self, x, new_height, new_width, align_corners): raise NotImplementedError
    def batch_norm(self, x, mean, variance, variance_epsilon, scale, offset): raise NotImplementedError
    def lrn(self, x, radius, bias, alpha, beta, norm_region): raise NotImplementedError
    def multinomial(self, probs, num_samples, seed): raise NotImplementedError
    def one_hot(self, indices, depth, on_value, off_value): raise NotImplementedError
