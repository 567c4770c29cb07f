"""Scopes, reference counting, safe mode and debug mode."""

import numpy as np
import pytest

import wgpu_dl as dl
from wgpu_dl import ENV
from wgpu_dl.errors import ConfigurationError, ScopeError


def test_memory_counts_tensors_and_buffers():
    before = dl.memory()
    x = dl.tensor([1.0, 2.0, 3.0])
    y = x.reshape((3, 1))
    after = dl.memory()
    assert after.num_tensors == before.num_tensors + 2
    assert after.num_data_buffers == before.num_data_buffers + 1
    assert after.num_bytes == before.num_bytes + 12

    x.dispose()
    assert dl.memory().num_data_buffers == before.num_data_buffers + 1
    np.testing.assert_array_equal(y.data_sync(), [[1], [2], [3]])
    y.dispose()
    assert dl.memory() == before


def test_dispose_is_idempotent():
    x = dl.tensor([1.0])
    x.dispose()
    x.dispose()
    assert x.is_disposed
    assert dl.memory().num_tensors == 0


def test_disposed_tensor_rejected():
    x = dl.tensor([1.0])
    x.dispose()
    with pytest.raises(ValueError, match="disposed"):
        dl.square(x)
    with pytest.raises(ValueError, match="disposed"):
        x.data_sync()


def test_tidy_disposes_intermediates():
    x = dl.tensor([1.0, 2.0])
    before = dl.memory().num_tensors

    result = dl.tidy(lambda: dl.add(dl.square(x), dl.exp(x)))

    assert dl.memory().num_tensors == before + 1
    np.testing.assert_allclose(result.data_sync(), [1 + np.e, 4 + np.e ** 2], rtol=1e-6)


def test_tidy_with_name_and_nested_results():
    x = dl.tensor([1.0, 2.0])

    def body():
        a = dl.square(x)
        b = dl.neg(x)
        dl.exp(x)
        return {"a": a, "pair": [b]}

    result = dl.tidy("named", body)
    assert not result["a"].is_disposed
    assert not result["pair"][0].is_disposed
    assert dl.memory().num_tensors == 3


def test_nested_tidy_hands_result_to_parent():
    x = dl.tensor([1.0])

    def outer():
        inner = dl.tidy(lambda: dl.square(dl.add(x, 1.0)))
        assert dl.memory().num_tensors == 2
        return dl.neg(inner)

    out = dl.tidy(outer)
    np.testing.assert_allclose(out.data_sync(), [-4.0])
    assert dl.memory().num_tensors == 2


def test_keep_survives_tidy():
    kept = {}

    def body():
        kept["t"] = dl.keep(dl.tensor([1.0]))
        dl.tensor([2.0])
        return None

    dl.tidy(body)
    assert not kept["t"].is_disposed
    assert dl.memory().num_tensors == 1


def test_tidy_cleans_up_on_exception():
    engine = ENV.engine

    def body():
        dl.tensor([1.0])
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        dl.tidy(body)
    assert engine.active_scope is None
    assert dl.memory().num_tensors == 0


def test_end_scope_underflow():
    with pytest.raises(ScopeError):
        ENV.engine.end_scope()


def test_gradients_scope_hands_intermediates_up():
    engine = ENV.engine
    x = dl.tensor([2.0])
    seen = {}

    def outer():
        def inner():
            seen["square"] = dl.square(x)
            return dl.exp(seen["square"])
        result = dl.tidy(inner)
        # Still recording: the intermediate is kept for the backward pass.
        assert not seen["square"].is_disposed
        return result

    dl.gradients_scope(outer)
    assert seen["square"].is_disposed
    assert engine.active_tape is None


def test_safe_mode_requires_scope():
    ENV.set_backend("cpu", safe_mode=True)
    before = dl.memory()
    with pytest.raises(ConfigurationError, match="Safe mode is ON"):
        dl.tensor([1.0, 2.0])
    assert dl.memory() == before
    result = dl.tidy(lambda: dl.square(dl.tensor([3.0])))
    np.testing.assert_allclose(result.data_sync(), [9.0])


def test_debug_mode_raises_on_nan():
    ENV.set("DEBUG", True)
    ENV.set_backend("cpu")
    x = dl.tensor([-1.0])
    with pytest.raises(ValueError, match="'Sqrt' kernel has NaN values"):
        dl.sqrt(x)


def test_debug_mode_logs_kernel_timings(caplog):
    ENV.set("DEBUG", True)
    ENV.set_backend("cpu")
    with caplog.at_level("DEBUG", logger="wgpu_dl.engine"):
        dl.square(dl.tensor([2.0]))
    assert any("Square" in record.getMessage() for record in caplog.records)


def test_engine_dispose_releases_variables():
    v = dl.variable(dl.tensor([1.0, 2.0]), name="weights")
    assert "weights" in ENV.engine.registered_variables
    ENV.engine.dispose()
    assert v.is_disposed
    assert len(ENV.engine.registered_variables) == 0


def test_data_is_awaitable():
    import asyncio

    x = dl.tensor([[1.0, 2.0]])
    values = asyncio.run(x.data())
    np.testing.assert_array_equal(values, [[1.0, 2.0]])
