"""Dispatcher table: every kernel routes to its backend method."""

import numpy as np
import pytest

import wgpu_dl as dl
from wgpu_dl import ENV
from wgpu_dl.gradient_rules import GRADIENT_RULES
from wgpu_dl.kernel_registry import KERNEL_NAMES, execute_kernel
from wgpu_dl.errors import ConfigurationError, UnknownKernelError


def test_unknown_kernel_raises():
    x = dl.tensor([1.0, 2.0])
    with pytest.raises(UnknownKernelError, match="No backend method found for kernel Foo") as err:
        execute_kernel(ENV.backend, "Foo", {"x": x}, {})
    assert err.value.kernel_name == "Foo"
    assert isinstance(err.value, ConfigurationError)


def test_unknown_kernel_through_engine():
    x = dl.tensor([1.0])
    with pytest.raises(UnknownKernelError):
        ENV.engine.run_kernel("NotAKernel", {"x": x})


def test_every_gradient_rule_names_a_kernel():
    assert set(GRADIENT_RULES) <= KERNEL_NAMES


def test_kernel_set_covers_core_ops():
    for name in ("MatMul", "Add", "Sum", "Reshape", "Cast", "Conv2D", "MaxPool",
                 "BatchNorm", "Multinomial", "OneHot", "TopKValues", "TopKIndices"):
        assert name in KERNEL_NAMES


def test_reshape_shares_buffer():
    x = dl.tensor([[1.0, 2.0], [3.0, 4.0]])
    y = execute_kernel(ENV.backend, "Reshape", {"x": x}, {"new_shape": (4,)})
    assert y.data_id is x.data_id
    assert y.shape == (4,)
    np.testing.assert_array_equal(y.data_sync(), [1, 2, 3, 4])


def test_lossless_cast_shares_buffer():
    x = dl.tensor([1, 2, 3], dtype="int32")
    y = execute_kernel(ENV.backend, "Cast", {"x": x}, {"dtype": "float32"})
    assert y.data_id is x.data_id
    assert y.dtype == "float32"


def test_lossy_cast_allocates():
    x = dl.tensor([1.5, -2.7, 0.0])
    y = execute_kernel(ENV.backend, "Cast", {"x": x}, {"dtype": "int32"})
    assert y.data_id is not x.data_id
    np.testing.assert_array_equal(y.data_sync(), [1, -2, 0])
    b = execute_kernel(ENV.backend, "Cast", {"x": x}, {"dtype": "bool"})
    np.testing.assert_array_equal(b.data_sync(), [True, True, False])


def test_matmul_transposes():
    a = dl.tensor([[1.0, 2.0], [3.0, 4.0]])
    b = dl.tensor([[5.0, 6.0], [7.0, 8.0]])
    out = execute_kernel(ENV.backend, "MatMul", {"a": a, "b": b},
                         {"transpose_a": True, "transpose_b": False})
    np.testing.assert_allclose(out.data_sync(), np.array([[1, 3], [2, 4]]) @ np.array([[5, 6], [7, 8]]))
