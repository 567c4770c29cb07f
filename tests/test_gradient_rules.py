"""Every gradient rule checked against central finite differences."""

import numpy as np
import pytest

import wgpu_dl as dl

EPS = 1e-2
rng = np.random.RandomState(0)


def _away_from_zero(shape, low=0.3, high=1.5):
    signs = np.where(rng.rand(*shape) < 0.5, -1.0, 1.0)
    return signs * rng.uniform(low, high, size=shape)


def _positive(shape, low=0.5, high=2.0):
    return rng.uniform(low, high, size=shape)


def _distinct(shape, spacing=0.1):
    return rng.permutation(np.prod(shape)).reshape(shape) * spacing - 0.5


def _weights(shape):
    size = int(np.prod(shape))
    return np.linspace(0.5, 1.5, size).reshape(shape) if size else np.zeros(shape)


def _loss(fn, tensors):
    out = fn(**tensors)
    return dl.sum(dl.mul(out, dl.tensor(_weights(out.shape), dtype="float32")))


def _evaluate(fn, arrays):
    value = dl.tidy(lambda: _loss(fn, {k: dl.tensor(v, dtype="float32") for k, v in arrays.items()}))
    result = float(value.item())
    value.dispose()
    return result


def _numeric_gradient(fn, arrays, name):
    base = np.asarray(arrays[name], dtype=np.float64)
    grad = np.zeros_like(base)
    for idx in np.ndindex(*base.shape):
        values = []
        for sign in (1.0, -1.0):
            shifted = base.copy()
            shifted[idx] += sign * EPS
            values.append(_evaluate(fn, dict(arrays, **{name: shifted})))
        grad[idx] = (values[0] - values[1]) / (2 * EPS)
    return grad


def _check(fn, arrays, rtol=2e-2, atol=2e-2):
    tensors = {k: dl.tensor(v, dtype="float32") for k, v in arrays.items()}
    grads = dl.gradients(lambda: _loss(fn, tensors), tensors)
    for name in arrays:
        assert grads[name].shape == tensors[name].shape
        np.testing.assert_allclose(grads[name].data_sync(), _numeric_gradient(fn, arrays, name),
                                   rtol=rtol, atol=atol, err_msg=f"gradient of input '{name}'")


UNARY = [
    ("neg", dl.neg, _away_from_zero),
    ("exp", dl.exp, _away_from_zero),
    ("log", dl.log, _positive),
    ("sqrt", dl.sqrt, _positive),
    ("square", dl.square, _away_from_zero),
    ("abs", dl.abs, _away_from_zero),
    ("relu", dl.relu, _away_from_zero),
    ("leaky_relu", lambda x: dl.leaky_relu(x, 0.3), _away_from_zero),
    ("elu", dl.elu, _away_from_zero),
    ("selu", dl.selu, _away_from_zero),
    ("sigmoid", dl.sigmoid, _away_from_zero),
    ("tanh", dl.tanh, _away_from_zero),
    ("sin", dl.sin, _away_from_zero),
    ("cos", dl.cos, _away_from_zero),
    ("tan", dl.tan, lambda shape: rng.uniform(-1.0, 1.0, size=shape)),
    ("asin", dl.asin, lambda shape: rng.uniform(-0.8, 0.8, size=shape)),
    ("acos", dl.acos, lambda shape: rng.uniform(-0.8, 0.8, size=shape)),
    ("atan", dl.atan, _away_from_zero),
    ("sinh", dl.sinh, _away_from_zero),
    ("cosh", dl.cosh, _away_from_zero),
    ("clip", lambda x: dl.clip_by_value(x, -1.0, 1.0),
     lambda shape: np.array([-1.2, -0.5, 0.1, 0.4, 0.9, 1.3]).reshape(shape)),
    ("ceil", dl.ceil, lambda shape: rng.uniform(0.1, 0.9, size=shape)),
    ("step", dl.step, _away_from_zero),
]


@pytest.mark.parametrize("name, fn, init", UNARY, ids=[c[0] for c in UNARY])
def test_unary(name, fn, init):
    _check(lambda x: fn(x), {"x": init((2, 3))})


BINARY = [
    ("add", dl.add, (2, 3), (2, 3)),
    ("add_broadcast", dl.add, (2, 3), (3,)),
    ("sub_broadcast", dl.sub, (2, 1), (2, 3)),
    ("mul_broadcast", dl.mul, (2, 3), (1, 3)),
    ("div", dl.div, (2, 3), (2, 3)),
    ("squared_difference", dl.squared_difference, (2, 3), (2, 3)),
]


@pytest.mark.parametrize("name, fn, a_shape, b_shape", BINARY, ids=[c[0] for c in BINARY])
def test_binary(name, fn, a_shape, b_shape):
    _check(lambda a, b: fn(a, b), {"a": _away_from_zero(a_shape), "b": _away_from_zero(b_shape)})


def test_pow():
    _check(lambda base, exp: dl.pow(base, exp),
           {"base": _positive((2, 3)), "exp": rng.uniform(-1.0, 2.0, size=(2, 3))})


def test_minimum_maximum():
    a = _distinct((2, 3))
    b = _distinct((2, 3)) + 0.05
    _check(lambda a, b: dl.minimum(a, b), {"a": a, "b": b})
    _check(lambda a, b: dl.maximum(a, b), {"a": a, "b": b})


@pytest.mark.parametrize("transpose_a, transpose_b",
                         [(False, False), (False, True), (True, False), (True, True)])
def test_matmul(transpose_a, transpose_b):
    a_shape = (3, 2) if transpose_a else (2, 3)
    b_shape = (4, 3) if transpose_b else (3, 4)
    _check(lambda a, b: dl.matmul(a, b, transpose_a, transpose_b),
           {"a": _away_from_zero(a_shape), "b": _away_from_zero(b_shape)})


def test_reductions():
    _check(lambda x: dl.sum(x, 1), {"x": _away_from_zero((2, 3))})
    _check(lambda x: dl.sum(x, 0, keep_dims=True), {"x": _away_from_zero((2, 3))})
    _check(lambda x: dl.mean(x), {"x": _away_from_zero((2, 3))})
    _check(lambda x: dl.max(x, 1), {"x": _distinct((2, 3))})
    _check(lambda x: dl.min(x, 0), {"x": _distinct((2, 3))})
    _check(lambda x: dl.log_sum_exp(x, 1), {"x": _away_from_zero((2, 3))})


def test_layout():
    x = {"x": _away_from_zero((2, 3, 2))}
    _check(lambda x: dl.reshape(x, (3, 4)), x)
    _check(lambda x: dl.transpose(x, [2, 0, 1]), x)
    _check(lambda x: dl.slice(x, [0, 1, 0], [2, 2, 1]), x)
    _check(lambda x: dl.reverse(x, [0, 2]), x)
    _check(lambda x: dl.pad(x, [[1, 0], [0, 2], [1, 1]], 3.0), x)
    _check(lambda x: dl.tile(x, [2, 1, 3]), x)
    _check(lambda x: dl.cast(x, "float32"), x)


def test_concat():
    _check(lambda a, b: dl.concat([a, b], 1),
           {"a": _away_from_zero((2, 2)), "b": _away_from_zero((2, 3))})


def test_gather():
    indices = np.array([2, 0, 2], dtype=np.int32)
    _check(lambda x: dl.gather(x, dl.tensor(indices, dtype="int32"), 0), {"x": _away_from_zero((3, 2))})
    _check(lambda x: dl.gather(x, dl.tensor(indices, dtype="int32"), 1), {"x": _away_from_zero((2, 3))})


def test_where():
    condition = np.array([[True, False, True], [False, False, True]])
    _check(lambda a, b: dl.where(dl.tensor(condition), a, b),
           {"a": _away_from_zero((2, 3)), "b": _away_from_zero((2, 3))})


def test_prelu():
    _check(lambda x, alpha: dl.prelu(x, alpha),
           {"x": _away_from_zero((2, 3)), "alpha": _positive((2, 3), 0.1, 0.5)})


@pytest.mark.parametrize("strides, pad", [(1, "same"), (2, "valid"), (1, 1)])
def test_conv2d(strides, pad):
    _check(lambda x, filter: dl.conv2d(x, filter, strides, pad),
           {"x": _away_from_zero((1, 4, 4, 2)), "filter": _away_from_zero((2, 2, 2, 3))})


@pytest.mark.parametrize("filter_size, strides, pad", [(2, 2, "valid"), (3, 1, "same")])
def test_max_pool(filter_size, strides, pad):
    _check(lambda x: dl.max_pool(x, filter_size, strides, pad), {"x": _distinct((1, 4, 4, 2), 0.05)})


@pytest.mark.parametrize("filter_size, strides, pad", [(2, 1, "valid"), (3, 2, "same")])
def test_avg_pool(filter_size, strides, pad):
    _check(lambda x: dl.avg_pool(x, filter_size, strides, pad), {"x": _away_from_zero((1, 4, 4, 2))})


def test_batch_normalization():
    _check(
        lambda x, mean, variance, scale, offset: dl.batch_normalization(
            x, mean, variance, 0.001, scale, offset),
        {
            "x": _away_from_zero((2, 3)),
            "mean": _away_from_zero((3,)),
            "variance": _positive((3,)),
            "scale": _positive((3,)),
            "offset": _away_from_zero((3,)),
        },
    )


def test_softmax():
    _check(lambda x: dl.softmax(x), {"x": _away_from_zero((2, 3))})


def test_softmax_cross_entropy_logits():
    labels = np.array([[0.0, 1.0, 0.0], [1.0, 0.0, 0.0]])
    _check(lambda logits: dl.softmax_cross_entropy(dl.tensor(labels, dtype="float32"), logits),
           {"logits": _away_from_zero((2, 3))})
