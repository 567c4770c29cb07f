"""Forward behaviour and validation of the operation layer on the numpy backend."""

import numpy as np
import pytest

import wgpu_dl as dl
from wgpu_dl.errors import ShapeError


# ============================================================================
# Factories & dtypes
# ============================================================================

def test_tensor_infers_dtype():
    assert dl.tensor([1.0, 2.0]).dtype == "float32"
    assert dl.tensor([1, 2]).dtype == "int32"
    assert dl.tensor([True, False]).dtype == "bool"


def test_tensor_value_count_must_match_shape():
    with pytest.raises(ShapeError):
        dl.tensor([1.0, 2.0, 3.0], shape=(2, 2))


def test_tensor_nd_factories_check_rank():
    assert dl.tensor2d([[1, 2], [3, 4]]).shape == (2, 2)
    with pytest.raises(ShapeError):
        dl.tensor2d([1, 2, 3])


def test_fill_zeros_ones():
    np.testing.assert_array_equal(dl.fill((2, 2), 7.0).data_sync(), np.full((2, 2), 7.0))
    np.testing.assert_array_equal(dl.zeros((3,)).data_sync(), [0, 0, 0])
    np.testing.assert_array_equal(dl.ones_like(dl.tensor([[1, 2]])).data_sync(), [[1, 1]])


def test_random_is_seeded():
    a = dl.random_normal((5,), seed=3).data_sync()
    b = dl.random_normal((5,), seed=3).data_sync()
    np.testing.assert_array_equal(a, b)
    u = dl.random_uniform((100,), -1.0, 1.0, seed=1).data_sync()
    assert u.min() >= -1.0 and u.max() < 1.0


def test_linspace_and_range():
    np.testing.assert_allclose(dl.linspace(0, 1, 5).data_sync(), [0, 0.25, 0.5, 0.75, 1.0])
    np.testing.assert_array_equal(dl.range(1, 7, 2).data_sync(), [1, 3, 5])


def test_scalar_promotion_keeps_int():
    result = dl.add(dl.tensor([1, 2], dtype="int32"), 3)
    assert result.dtype == "int32"
    np.testing.assert_array_equal(result.data_sync(), [4, 5])
    assert dl.add(dl.tensor([1, 2], dtype="int32"), 0.5).dtype == "float32"


def test_operators():
    a = dl.tensor([1.0, 2.0])
    b = dl.tensor([3.0, 4.0])
    np.testing.assert_allclose((a + b).data_sync(), [4, 6])
    np.testing.assert_allclose((2 - a).data_sync(), [1, 0])
    np.testing.assert_allclose((a * b / 2).data_sync(), [1.5, 4])
    np.testing.assert_allclose((-a).data_sync(), [-1, -2])
    np.testing.assert_allclose((a ** 2).data_sync(), [1, 4])


def test_cast():
    x = dl.tensor([0.0, 1.5, -2.0])
    np.testing.assert_array_equal(dl.cast(x, "bool").data_sync(), [False, True, True])
    np.testing.assert_array_equal(dl.cast(x, "int32").data_sync(), [0, 1, -2])
    b = dl.tensor([True, False])
    assert dl.cast(b, "int32").data_id is b.data_id

    mask = dl.cast(dl.greater(dl.tensor([1.0, -2.0]), 0.0), "float32")
    assert mask.dtype == "float32"
    np.testing.assert_array_equal(dl.add(mask, mask).data_sync(), [2.0, 0.0])
    np.testing.assert_array_equal(dl.sub(mask, dl.mul(mask, mask)).data_sync(), [0.0, 0.0])
    counts = dl.cast(dl.tensor([3, 4]), "float32")
    np.testing.assert_allclose(dl.div(counts, 2).data_sync(), [1.5, 2.0])
    np.testing.assert_allclose(dl.sub(mask, counts).data_sync(), [-2.0, -4.0])


def test_clone_shares_buffer():
    x = dl.tensor([1.0, 2.0])
    before = dl.memory()
    y = dl.clone(x)
    assert y.data_id is x.data_id
    assert y.id != x.id
    assert dl.memory().num_tensors == before.num_tensors + 1
    assert dl.memory().num_data_buffers == before.num_data_buffers
    x.dispose()
    np.testing.assert_array_equal(y.data_sync(), [1.0, 2.0])


# ============================================================================
# Shapes
# ============================================================================

def test_reshape_infers_dimension():
    x = dl.tensor(np.arange(6.0))
    assert dl.reshape(x, (2, -1)).shape == (2, 3)
    with pytest.raises(ShapeError):
        dl.reshape(x, (4, -1))
    with pytest.raises(ShapeError):
        dl.reshape(x, (-1, -1))


def test_expand_dims_and_squeeze():
    x = dl.tensor([1.0, 2.0])
    assert dl.expand_dims(x, 1).shape == (2, 1)
    assert dl.squeeze(dl.reshape(x, (1, 2, 1))).shape == (2,)
    with pytest.raises(ShapeError):
        dl.squeeze(dl.reshape(x, (1, 2)), 1)


def test_transpose_rank_mismatch():
    x = dl.tensor([[1.0, 2.0], [3.0, 4.0]])
    with pytest.raises(ShapeError, match="rank of input 2 must match length of perm"):
        dl.transpose(x, [1, 0, 2])
    np.testing.assert_array_equal(x.T.data_sync(), [[1, 3], [2, 4]])


def test_matmul_inner_dimension_mismatch():
    with pytest.raises(ShapeError):
        dl.matmul(dl.zeros((2, 3)), dl.zeros((2, 3)))


def test_broadcast_mismatch():
    with pytest.raises(ShapeError):
        dl.add(dl.zeros((2, 3)), dl.zeros((4,)))


def test_slice():
    x = dl.tensor(np.arange(12.0).reshape(3, 4))
    np.testing.assert_array_equal(dl.slice(x, [1, 1], [2, -1]).data_sync(), [[5, 6, 7], [9, 10, 11]])
    with pytest.raises(ShapeError):
        dl.slice(x, [2, 0], [2, 1])


def test_concat_and_stack():
    a = dl.tensor([[1.0, 2.0]])
    b = dl.tensor([[3.0, 4.0]])
    c = dl.tensor([[5.0, 6.0]])
    np.testing.assert_array_equal(dl.concat([a, b, c], 0).data_sync(), [[1, 2], [3, 4], [5, 6]])
    np.testing.assert_array_equal(dl.concat([a, b], 1).data_sync(), [[1, 2, 3, 4]])
    assert dl.stack([a, b], 0).shape == (2, 1, 2)
    with pytest.raises(ShapeError):
        dl.concat([a, dl.tensor([[1.0, 2.0, 3.0]])], 0)


def test_pad():
    x = dl.tensor([[1.0, 2.0], [3.0, 4.0]])
    np.testing.assert_array_equal(
        dl.pad(x, [[1, 0], [0, 1]], 9.0).data_sync(),
        [[9, 9, 9], [1, 2, 9], [3, 4, 9]],
    )
    np.testing.assert_array_equal(dl.pad1d(dl.tensor([1, 2]), [1, 2]).data_sync(), [0, 1, 2, 0, 0])
    with pytest.raises(ValueError):
        dl.pad(x, [[1, 0]])
    with pytest.raises(ValueError):
        dl.pad(x, [[1, 0], [-1, 0]])


def test_tile_and_gather():
    x = dl.tensor([[1.0, 2.0]])
    np.testing.assert_array_equal(dl.tile(x, [2, 2]).data_sync(), [[1, 2, 1, 2], [1, 2, 1, 2]])
    y = dl.tensor([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]])
    np.testing.assert_array_equal(dl.gather(y, [2, 0]).data_sync(), [[5, 6], [1, 2]])
    np.testing.assert_array_equal(dl.gather(y, [1], 1).data_sync(), [[2], [4], [6]])


def test_reverse():
    x = dl.tensor([[1, 2], [3, 4]])
    np.testing.assert_array_equal(dl.reverse(x, 1).data_sync(), [[2, 1], [4, 3]])


# ============================================================================
# Math, reductions, comparisons
# ============================================================================

def test_reductions():
    x = dl.tensor([[1.0, 5.0, 3.0], [4.0, 2.0, 6.0]])
    np.testing.assert_allclose(dl.sum(x).data_sync(), 21.0)
    np.testing.assert_allclose(dl.sum(x, 1, keep_dims=True).data_sync(), [[9.0], [12.0]])
    np.testing.assert_allclose(dl.mean(x, 0).data_sync(), [2.5, 3.5, 4.5])
    np.testing.assert_allclose(dl.max(x, 1).data_sync(), [5.0, 6.0])
    np.testing.assert_allclose(dl.min(x).data_sync(), 1.0)
    np.testing.assert_array_equal(dl.arg_max(x, 1).data_sync(), [1, 2])
    np.testing.assert_array_equal(dl.arg_min(x).data_sync(), [0, 1, 0])
    with pytest.raises(ValueError):
        dl.sum(x, 2)


def test_moments_and_log_sum_exp():
    x = dl.tensor([[1.0, 2.0, 3.0, 4.0]])
    mean, variance = dl.moments(x, 1)
    np.testing.assert_allclose(mean.data_sync(), [2.5])
    np.testing.assert_allclose(variance.data_sync(), [1.25])
    big = dl.tensor([1000.0, 1000.0])
    np.testing.assert_allclose(dl.log_sum_exp(big).data_sync(), 1000.0 + np.log(2.0), rtol=1e-6)


def test_top_k():
    values, indices = dl.top_k(dl.tensor([[1.0, 5.0, 3.0, 4.0]]), 2)
    np.testing.assert_array_equal(values.data_sync(), [[5.0, 4.0]])
    np.testing.assert_array_equal(indices.data_sync(), [[1, 3]])
    assert indices.dtype == "int32"


def test_activations():
    x = dl.tensor([-2.0, 0.0, 3.0])
    np.testing.assert_allclose(dl.relu(x).data_sync(), [0, 0, 3])
    np.testing.assert_allclose(dl.leaky_relu(x).data_sync(), [-0.4, 0, 3], rtol=1e-6)
    np.testing.assert_allclose(dl.elu(x).data_sync(), [np.exp(-2.0) - 1, 0, 3], rtol=1e-6)
    np.testing.assert_allclose(dl.step(x).data_sync(), [0, 0, 1])
    np.testing.assert_allclose(dl.clip_by_value(x, -1, 1).data_sync(), [-1, 0, 1])
    with pytest.raises(ValueError):
        dl.clip_by_value(x, 1, -1)


def test_comparisons_and_logical():
    a = dl.tensor([1, 2, 3])
    b = dl.tensor([3, 2, 1])
    np.testing.assert_array_equal(dl.equal(a, b).data_sync(), [False, True, False])
    np.testing.assert_array_equal(dl.greater_equal(a, b).data_sync(), [False, True, True])
    t = dl.tensor([True, True, False])
    f = dl.tensor([True, False, False])
    np.testing.assert_array_equal(dl.logical_xor(t, f).data_sync(), [False, True, False])
    np.testing.assert_array_equal(dl.logical_not(f).data_sync(), [False, True, True])
    with pytest.raises(TypeError):
        dl.logical_and(a, b)


def test_where():
    condition = dl.tensor([True, False, True])
    np.testing.assert_array_equal(
        dl.where(condition, dl.tensor([1.0, 2.0, 3.0]), dl.tensor([-1.0, -2.0, -3.0])).data_sync(),
        [1.0, -2.0, 3.0],
    )
    with pytest.raises(ShapeError):
        dl.where(condition, dl.zeros((2,)), dl.zeros((2,)))


def test_one_hot():
    np.testing.assert_array_equal(
        dl.one_hot(dl.tensor([0, 2], dtype="int32"), 3).data_sync(), [[1, 0, 0], [0, 0, 1]])
    with pytest.raises(ValueError):
        dl.one_hot(dl.tensor([0], dtype="int32"), 1)


def test_multinomial():
    samples = dl.multinomial(dl.tensor([0.0, 1.0, 0.0]), 50, seed=7).data_sync()
    assert samples.shape == (50,)
    assert (samples == 1).all()

    batch = dl.multinomial(dl.tensor([[1.0, 0.0], [0.0, 1.0]]), 10, seed=7).data_sync()
    assert batch.shape == (2, 10)
    assert (batch[0] == 0).all() and (batch[1] == 1).all()

    with pytest.raises(ValueError, match="at least 2 outcomes"):
        dl.multinomial(dl.tensor([1.0]), 3)
    with pytest.raises(ValueError, match="Rank of probabilities"):
        dl.multinomial(dl.zeros((1, 2, 2)), 3)


# ============================================================================
# Convolution, pooling, image and normalization
# ============================================================================

def _naive_conv2d(x, w, stride, pad):
    x = np.pad(x, ((0, 0), (pad, pad), (pad, pad), (0, 0)))
    n, h, wd, _ = x.shape
    fh, fw, _, out_c = w.shape
    out_h = (h - fh) // stride + 1
    out_w = (wd - fw) // stride + 1
    out = np.zeros((n, out_h, out_w, out_c))
    for i in range(out_h):
        for j in range(out_w):
            patch = x[:, i * stride:i * stride + fh, j * stride:j * stride + fw, :]
            out[:, i, j, :] = np.tensordot(patch, w, axes=([1, 2, 3], [0, 1, 2]))
    return out


@pytest.mark.parametrize("stride, pad", [(1, 0), (2, 1), (1, 1)])
def test_conv2d_matches_naive(stride, pad):
    rng = np.random.RandomState(0)
    x = rng.randn(2, 5, 5, 3).astype(np.float32)
    w = rng.randn(3, 3, 3, 4).astype(np.float32)
    result = dl.conv2d(dl.tensor(x), dl.tensor(w), stride, pad)
    np.testing.assert_allclose(result.data_sync(), _naive_conv2d(x, w, stride, pad),
                               rtol=1e-4, atol=1e-4)


def test_conv2d_rank3_and_depth_check():
    x = dl.zeros((4, 4, 2))
    assert dl.conv2d(x, dl.zeros((2, 2, 2, 3)), 1, "valid").shape == (3, 3, 3)
    with pytest.raises(ShapeError):
        dl.conv2d(x, dl.zeros((2, 2, 3, 1)), 1, "valid")


def test_depthwise_conv2d():
    x = np.arange(16.0, dtype=np.float32).reshape(1, 2, 2, 4) / 10
    w = np.ones((1, 1, 4, 2), dtype=np.float32)
    w[..., 1] = 2.0
    result = dl.depthwise_conv2d(dl.tensor(x), dl.tensor(w), 1, "valid").data_sync()
    assert result.shape == (1, 2, 2, 8)
    np.testing.assert_allclose(result[..., 0::2], x, rtol=1e-6)
    np.testing.assert_allclose(result[..., 1::2], 2 * x, rtol=1e-6)


def test_pooling():
    x = dl.tensor(np.arange(16.0).reshape(1, 4, 4, 1))
    np.testing.assert_array_equal(dl.max_pool(x, 2, 2).data_sync().ravel(), [5, 7, 13, 15])
    np.testing.assert_array_equal(dl.min_pool(x, 2, 2).data_sync().ravel(), [0, 2, 8, 10])
    np.testing.assert_allclose(dl.avg_pool(x, 2, 2).data_sync().ravel(), [2.5, 4.5, 10.5, 12.5])


def test_avg_pool_same_counts_only_valid_positions():
    x = dl.ones((1, 3, 3, 1))
    np.testing.assert_allclose(dl.avg_pool(x, 3, 1, "same").data_sync(), np.ones((1, 3, 3, 1)))


def test_resize_bilinear():
    x = dl.tensor(np.array([[1.0, 2.0], [3.0, 4.0]]).reshape(2, 2, 1))
    aligned = dl.resize_bilinear(x, (3, 3), align_corners=True).data_sync()[..., 0]
    np.testing.assert_allclose(aligned, [[1, 1.5, 2], [2, 2.5, 3], [3, 3.5, 4]])
    plain = dl.resize_bilinear(x, (4, 4)).data_sync()[..., 0]
    np.testing.assert_allclose(plain[0], [1, 1.5, 2, 2])


def test_batch_normalization():
    x = dl.tensor([[1.0, 2.0], [3.0, 4.0]])
    result = dl.batch_normalization(x, dl.tensor([2.0, 3.0]), dl.tensor([1.0, 4.0]), 0.0,
                                    dl.tensor([1.0, 2.0]), dl.tensor([0.5, 0.0]))
    np.testing.assert_allclose(result.data_sync(), [[-0.5, -1.0], [1.5, 1.0]])
    with pytest.raises(ShapeError):
        dl.batch_normalization(x, dl.zeros((3,)), dl.ones((2,)))


def test_local_response_normalization():
    x = np.array([1.0, 2.0, 3.0], dtype=np.float32).reshape(1, 1, 1, 3)
    result = dl.local_response_normalization(dl.tensor(x), radius=1, bias=1.0, alpha=1.0,
                                             beta=0.5).data_sync().ravel()
    squares = x.ravel() ** 2
    windows = [squares[0] + squares[1], squares.sum(), squares[1] + squares[2]]
    np.testing.assert_allclose(result, x.ravel() / np.sqrt(1.0 + np.array(windows)), rtol=1e-6)


# ============================================================================
# Softmax
# ============================================================================

def test_softmax_forward():
    result = dl.softmax(dl.tensor([[1.0, 2.0, 3.0], [0.0, 0.0, 0.0]])).data_sync()
    np.testing.assert_allclose(result.sum(axis=1), [1.0, 1.0], rtol=1e-6)
    np.testing.assert_allclose(result[1], [1 / 3] * 3, rtol=1e-6)


def test_softmax_requires_last_dim():
    with pytest.raises(ShapeError, match="non-last dimension"):
        dl.softmax(dl.zeros((2, 3)), 0)


def test_softmax_cross_entropy_shape_mismatch():
    with pytest.raises(ShapeError, match="same shape"):
        dl.softmax_cross_entropy(dl.zeros((2, 3)), dl.zeros((2, 4)))
