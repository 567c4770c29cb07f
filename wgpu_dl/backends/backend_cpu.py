"""
Host backend: every kernel implemented with numpy on flat host buffers.

This is the reference implementation of the kernel set; the WebGPU backend
subclasses it and moves the hot kernels onto compute shaders.
"""

import logging

import numpy as np

from wgpu_dl import util
from wgpu_dl.backends.backend import KernelBackend
from wgpu_dl.tensor import Tensor

logger = logging.getLogger(__name__)

SELU_SCALE = 1.0507009873554804934193349852946
SELU_SCALEALPHA = 1.7580993408473768599402175208123


class MathBackendCPU(KernelBackend):
    """numpy kernels over host memory."""

    def __init__(self):
        self._data = {}
        logger.debug("numpy backend initialized")

    # ========================================================================
    # Storage
    # ========================================================================

    def register(self, data_id, shape, dtype):
        if data_id in self._data:
            raise ValueError(f"Data buffer {data_id} is already registered")
        self._data[data_id] = None

    def write(self, data_id, values):
        self._data[data_id] = np.array(values, copy=True).reshape(-1)

    def read_sync(self, data_id):
        values = self._data.get(data_id)
        if values is None:
            raise ValueError(f"No values were written for {data_id}")
        return values

    def dispose_data(self, data_id):
        self._data.pop(data_id, None)

    def dispose(self):
        self._data.clear()

    def num_data_ids(self) -> int:
        return len(self._data)

    # ---- helpers ----
    def _values(self, x):
        return self._data[x.data_id].astype(util.np_dtype(x.dtype), copy=False).reshape(x.shape)

    @staticmethod
    def _make(values, dtype="float32"):
        values = np.asarray(values)
        return Tensor.make(values.shape, values=values, dtype=dtype)

    def _unary(self, x, fn):
        with np.errstate(all="ignore"):
            return self._make(fn(self._values(x).astype(np.float32)), "float32")

    def _binary(self, a, b, fn, dtype=None):
        if dtype is None:
            dtype = util.upcast_type(a.dtype, b.dtype)
        with np.errstate(all="ignore"):
            out = fn(self._values(a), self._values(b))
        return self._make(np.asarray(out).astype(util.np_dtype(dtype)), dtype)

    # ========================================================================
    # Linear algebra & layout
    # ========================================================================

    def matmul(self, a, b, transpose_a, transpose_b):
        a_vals = self._values(a).astype(np.float32)
        b_vals = self._values(b).astype(np.float32)
        if transpose_a:
            a_vals = np.swapaxes(a_vals, -1, -2)
        if transpose_b:
            b_vals = np.swapaxes(b_vals, -1, -2)
        return self._make(np.matmul(a_vals, b_vals), "float32")

    def slice(self, x, begin, size):
        index = tuple(slice(b, b + s) for b, s in zip(begin, size))
        return self._make(self._values(x)[index], x.dtype)

    def reverse(self, x, axes):
        return self._make(np.flip(self._values(x), axis=tuple(axes)), x.dtype)

    def concat(self, a, b, axis):
        return self._make(np.concatenate([self._values(a), self._values(b)], axis=axis), a.dtype)

    # ========================================================================
    # Arithmetic
    # ========================================================================

    def neg(self, x):
        values = self._values(x)
        if x.dtype == "bool":
            values = values.astype(np.int32)
        return self._make(-values, "int32" if x.dtype == "bool" else x.dtype)

    def add(self, a, b):
        return self._binary(a, b, np.add)

    def sub(self, a, b):
        return self._binary(a, b, np.subtract)

    def mul(self, a, b):
        return self._binary(a, b, np.multiply)

    def div(self, a, b):
        return self._binary(a, b, lambda x, y: np.true_divide(x, y, dtype=np.float32), "float32")

    def minimum(self, a, b):
        return self._binary(a, b, np.minimum)

    def maximum(self, a, b):
        return self._binary(a, b, np.maximum)

    def pow(self, base, exp):
        return self._binary(base, exp, lambda x, y: np.power(x.astype(np.float64), y), base.dtype)

    # ========================================================================
    # Reductions
    # ========================================================================

    def sum(self, x, axes):
        dtype = "float32" if x.dtype == "float32" else "int32"
        out = np.sum(self._values(x), axis=tuple(axes), dtype=util.np_dtype(dtype))
        return self._make(out, dtype)

    def arg_max(self, x, axis):
        return self._make(np.argmax(self._values(x), axis=axis).astype(np.int32), "int32")

    def arg_min(self, x, axis):
        return self._make(np.argmin(self._values(x), axis=axis).astype(np.int32), "int32")

    def min(self, x, axes):
        return self._make(np.min(self._values(x), axis=tuple(axes)), x.dtype)

    def max(self, x, axes):
        return self._make(np.max(self._values(x), axis=tuple(axes)), x.dtype)

    # ========================================================================
    # Comparison & logical
    # ========================================================================

    def equal(self, a, b):
        return self._binary(a, b, np.equal, "bool")

    def not_equal(self, a, b):
        return self._binary(a, b, np.not_equal, "bool")

    def less(self, a, b):
        return self._binary(a, b, np.less, "bool")

    def less_equal(self, a, b):
        return self._binary(a, b, np.less_equal, "bool")

    def greater(self, a, b):
        return self._binary(a, b, np.greater, "bool")

    def greater_equal(self, a, b):
        return self._binary(a, b, np.greater_equal, "bool")

    def logical_not(self, x):
        return self._make(np.logical_not(self._values(x)), "bool")

    def logical_and(self, a, b):
        return self._binary(a, b, np.logical_and, "bool")

    def logical_or(self, a, b):
        return self._binary(a, b, np.logical_or, "bool")

    def logical_xor(self, a, b):
        return self._binary(a, b, np.logical_xor, "bool")

    def where(self, condition, a, b, dtype):
        out = np.where(self._values(condition), self._values(a), self._values(b))
        return self._make(out.astype(util.np_dtype(dtype)), dtype)

    def top_k_values(self, x, k):
        values = self._values(x)
        indices = self._top_k(values, k)
        return self._make(np.take_along_axis(values, indices, axis=-1), x.dtype)

    def top_k_indices(self, x, k):
        return self._make(self._top_k(self._values(x), k).astype(np.int32), "int32")

    @staticmethod
    def _top_k(values, k):
        return np.argsort(-values.astype(np.float64), axis=-1, kind="stable")[..., :k]

    # ========================================================================
    # Unary math & activations
    # ========================================================================

    def ceil(self, x):
        return self._unary(x, np.ceil)

    def floor(self, x):
        return self._unary(x, np.floor)

    def exp(self, x):
        return self._unary(x, np.exp)

    def log(self, x):
        return self._unary(x, np.log)

    def sqrt(self, x):
        return self._unary(x, np.sqrt)

    def square(self, x):
        values = self._values(x)
        return self._make(values * values, x.dtype if x.dtype != "bool" else "int32")

    def abs(self, x):
        values = self._values(x)
        if x.dtype == "float32":
            return self._make(np.abs(values), "float32")
        return self._make(np.abs(values.astype(np.int32)), "int32")

    def relu(self, x):
        return self._unary(x, lambda v: np.where(v < 0, 0.0, v))

    def leaky_relu(self, x, alpha):
        return self._unary(x, lambda v: np.where(v < 0, alpha * v, v))

    def prelu(self, x, alpha):
        alpha_vals = self._values(alpha)
        return self._unary(x, lambda v: np.where(v < 0, alpha_vals * v, v))

    def prelu_der(self, x, alpha):
        alpha_vals = self._values(alpha)
        return self._unary(x, lambda v: np.where(v > 0, 1.0, alpha_vals))

    def elu(self, x):
        return self._unary(x, lambda v: np.where(v >= 0, v, np.exp(v) - 1))

    def elu_der(self, y):
        return self._unary(y, lambda v: np.where(v >= 0, 1.0, v + 1))

    def selu(self, x):
        return self._unary(x, lambda v: np.where(
            v >= 0, SELU_SCALE * v, SELU_SCALEALPHA * (np.exp(v) - 1)))

    def sigmoid(self, x):
        return self._unary(x, lambda v: 1 / (1 + np.exp(-v)))

    def step(self, x, alpha):
        return self._unary(x, lambda v: np.where(np.isnan(v), v, np.where(v > 0, 1.0, alpha)))

    def sin(self, x):
        return self._unary(x, np.sin)

    def cos(self, x):
        return self._unary(x, np.cos)

    def tan(self, x):
        return self._unary(x, np.tan)

    def asin(self, x):
        return self._unary(x, np.arcsin)

    def acos(self, x):
        return self._unary(x, np.arccos)

    def atan(self, x):
        return self._unary(x, np.arctan)

    def sinh(self, x):
        return self._unary(x, np.sinh)

    def cosh(self, x):
        return self._unary(x, np.cosh)

    def tanh(self, x):
        return self._unary(x, np.tanh)

    # ========================================================================
    # Shape, dtype & indexing
    # ========================================================================

    def cast(self, x, dtype):
        values = self._values(x)
        if dtype == "bool":
            return self._make(values != 0, "bool")
        with np.errstate(invalid="ignore"):
            return self._make(values.astype(util.np_dtype(dtype)), dtype)

    def clip(self, x, min_value, max_value):
        return self._make(np.clip(self._values(x), min_value, max_value), x.dtype)

    def transpose(self, x, perm):
        return self._make(np.transpose(self._values(x), perm), x.dtype)

    def pad(self, x, paddings, constant_value):
        out = np.pad(self._values(x), [tuple(p) for p in paddings], mode="constant",
                     constant_values=constant_value)
        return self._make(out, x.dtype)

    def tile(self, x, reps):
        return self._make(np.tile(self._values(x), reps), x.dtype)

    def gather(self, x, indices, axis):
        return self._make(np.take(self._values(x), self._values(indices), axis=axis), x.dtype)

    # ========================================================================
    # Convolution
    # ========================================================================

    @staticmethod
    def _window_slices(info):
        """(fi, fj, rows, cols) for each filter tap over the padded input."""
        row_span = info.stride_height * (info.out_height - 1) + 1
        col_span = info.stride_width * (info.out_width - 1) + 1
        for fi in range(info.filter_height):
            for fj in range(info.filter_width):
                r0 = fi * info.dilation_height
                c0 = fj * info.dilation_width
                yield (fi, fj, slice(r0, r0 + row_span, info.stride_height),
                       slice(c0, c0 + col_span, info.stride_width))

    @staticmethod
    def _pad_spatial(values, info, fill):
        pad = info.pad_info
        return np.pad(values, ((0, 0), (pad.top, pad.bottom), (pad.left, pad.right), (0, 0)),
                      mode="constant", constant_values=fill)

    @staticmethod
    def _crop_spatial(values, info):
        pad = info.pad_info
        return values[:, pad.top:pad.top + info.in_height, pad.left:pad.left + info.in_width, :]

    def conv2d(self, x, filter, conv_info):
        info = conv_info
        xp = self._pad_spatial(self._values(x).astype(np.float32), info, 0.0)
        w = self._values(filter).astype(np.float32)
        cols = np.stack([xp[:, r, c, :] for _, _, r, c in self._window_slices(info)], axis=3)
        n, oh, ow = info.batch_size, info.out_height, info.out_width
        k = info.filter_height * info.filter_width * info.in_channels
        out = cols.reshape(n * oh * ow, k) @ w.reshape(k, info.out_channels)
        return self._make(out.reshape(info.out_shape), "float32")

    def conv2d_der_input(self, dy, filter, conv_info):
        info = conv_info
        pad = info.pad_info
        dy_vals = self._values(dy).astype(np.float32)
        w = self._values(filter).astype(np.float32)
        dxp = np.zeros((info.batch_size, info.in_height + pad.top + pad.bottom,
                        info.in_width + pad.left + pad.right, info.in_channels), dtype=np.float32)
        for fi, fj, r, c in self._window_slices(info):
            dxp[:, r, c, :] += dy_vals @ w[fi, fj].T
        return self._make(self._crop_spatial(dxp, info), "float32")

    def conv2d_der_filter(self, x, dy, conv_info):
        info = conv_info
        xp = self._pad_spatial(self._values(x).astype(np.float32), info, 0.0)
        dy_vals = self._values(dy).astype(np.float32)
        dw = np.zeros(info.filter_shape, dtype=np.float32)
        for fi, fj, r, c in self._window_slices(info):
            dw[fi, fj] = np.einsum("nhwc,nhwo->co", xp[:, r, c, :], dy_vals)
        return self._make(dw, "float32")

    def conv2d_der_bias(self, dy):
        return self._make(self._values(dy).sum(axis=(0, 1, 2)), "float32")

    def depthwise_conv2d(self, x, filter, conv_info):
        info = conv_info
        xp = self._pad_spatial(self._values(x).astype(np.float32), info, 0.0)
        w = self._values(filter).astype(np.float32)
        multiplier = w.shape[3]
        out = np.zeros((info.batch_size, info.out_height, info.out_width,
                        info.in_channels, multiplier), dtype=np.float32)
        for fi, fj, r, c in self._window_slices(info):
            out += xp[:, r, c, :, None] * w[fi, fj]
        return self._make(out.reshape(info.out_shape), "float32")

    # ========================================================================
    # Pooling
    # ========================================================================

    def _windows(self, values, info, fill):
        """Stack every pooling tap: (batch, out_h, out_w, taps, channels)."""
        xp = self._pad_spatial(values, info, fill)
        return np.stack([xp[:, r, c, :] for _, _, r, c in self._window_slices(info)], axis=3)

    def _valid_counts(self, info):
        mask = np.ones((1, info.in_height, info.in_width, 1), dtype=np.float32)
        return self._windows(mask, info, 0.0).sum(axis=3)

    def max_pool(self, x, conv_info):
        windows = self._windows(self._values(x).astype(np.float32), conv_info, -np.inf)
        return self._make(windows.max(axis=3), "float32")

    def min_pool(self, x, conv_info):
        windows = self._windows(self._values(x).astype(np.float32), conv_info, np.inf)
        return self._make(windows.min(axis=3), "float32")

    def avg_pool(self, x, conv_info):
        windows = self._windows(self._values(x).astype(np.float32), conv_info, 0.0)
        return self._make(windows.sum(axis=3) / self._valid_counts(conv_info), "float32")

    def max_pool_backprop(self, dy, x, conv_info):
        info = conv_info
        x_vals = self._values(x).astype(np.float32)
        dy_vals = self._values(dy).astype(np.float32)
        arg = self._windows(x_vals, info, -np.inf).argmax(axis=3)
        dxp = np.zeros(self._pad_spatial(x_vals, info, 0.0).shape, dtype=np.float32)
        for tap, (_, _, r, c) in enumerate(self._window_slices(info)):
            dxp[:, r, c, :] += np.where(arg == tap, dy_vals, 0.0)
        return self._make(self._crop_spatial(dxp, info), "float32")

    def avg_pool_backprop(self, dy, x, conv_info):
        info = conv_info
        scaled = self._values(dy).astype(np.float32) / self._valid_counts(info)
        dxp = np.zeros(self._pad_spatial(self._values(x), info, 0.0).shape, dtype=np.float32)
        for _, _, r, c in self._window_slices(info):
            dxp[:, r, c, :] += scaled
        return self._make(self._crop_spatial(dxp, info), "float32")

    # ========================================================================
    # Image, normalization, sampling
    # ========================================================================

    @staticmethod
    def _source_coords(in_size, out_size, align_corners):
        if align_corners and out_size > 1:
            scale = (in_size - 1) / (out_size - 1)
        else:
            scale = in_size / out_size
        src = np.arange(out_size, dtype=np.float64) * scale
        lo = np.minimum(np.floor(src).astype(np.int64), in_size - 1)
        hi = np.minimum(lo + 1, in_size - 1)
        return lo, hi, (src - lo).astype(np.float32)

    def resize_bilinear(self, x, new_height, new_width, align_corners):
        values = self._values(x).astype(np.float32)
        top, bottom, dy = self._source_coords(values.shape[1], new_height, align_corners)
        left, right, dx = self._source_coords(values.shape[2], new_width, align_corners)
        dy = dy[None, :, None, None]
        dx = dx[None, None, :, None]
        top_rows = values[:, top]
        bottom_rows = values[:, bottom]
        top_interp = top_rows[:, :, left] + (top_rows[:, :, right] - top_rows[:, :, left]) * dx
        bottom_interp = (bottom_rows[:, :, left]
                         + (bottom_rows[:, :, right] - bottom_rows[:, :, left]) * dx)
        return self._make(top_interp + (bottom_interp - top_interp) * dy, "float32")

    def batch_norm(self, x, mean, variance, variance_epsilon, scale, offset):
        out = ((self._values(x) - self._values(mean)) * self._values(scale)
               / np.sqrt(self._values(variance) + variance_epsilon) + self._values(offset))
        return self._make(out.astype(np.float32), "float32")

    def lrn(self, x, radius, bias, alpha, beta, norm_region):
        values = self._values(x).astype(np.float32)
        squared = values * values
        if norm_region == "acrossChannels":
            padded = np.pad(squared, ((0, 0), (0, 0), (0, 0), (radius, radius)))
            channels = values.shape[3]
            total = sum(padded[..., d:d + channels] for d in range(2 * radius + 1))
        else:
            padded = np.pad(squared, ((0, 0), (radius, radius), (radius, radius), (0, 0)))
            height, width = values.shape[1], values.shape[2]
            total = sum(padded[:, i:i + height, j:j + width, :]
                        for i in range(2 * radius + 1) for j in range(2 * radius + 1))
        return self._make(values * np.power(bias + alpha * total, -beta), "float32")

    def multinomial(self, probs, num_samples, seed):
        probabilities = self._values(probs).astype(np.float64)
        rng = np.random.default_rng(seed)
        cdf = np.cumsum(probabilities / probabilities.sum(axis=1, keepdims=True), axis=1)
        num_outcomes = probabilities.shape[1]
        out = np.empty((probabilities.shape[0], num_samples), dtype=np.int32)
        for b in range(probabilities.shape[0]):
            draws = rng.random(num_samples)
            out[b] = np.minimum(np.searchsorted(cdf[b], draws, side="right"), num_outcomes - 1)
        return self._make(out, "int32")

    def one_hot(self, indices, depth, on_value, off_value):
        idx = self._values(indices).astype(np.int64)
        out = np.full((idx.shape[0], depth), off_value, dtype=np.float32)
        valid = (idx >= 0) & (idx < depth)
        out[np.arange(idx.shape[0])[valid], idx[valid]] = on_value
        return self._make(out, "float32")
