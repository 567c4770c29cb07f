"""WebGPU backend: hot float32 kernels as WGSL compute shaders via wgpu-native.

Buffers live on the device once a shader has produced or consumed them and
are mirrored to host memory lazily on read. Kernels without a shader, and
inputs the shaders do not cover (broadcasting, non-float dtypes, transposed
or batched matmul), run on the inherited numpy implementation.
"""

import logging
import struct

import numpy as np
import wgpu
import wgpu.backends.wgpu_native  # noqa: F401

from wgpu_dl import util
from wgpu_dl.backends.backend_cpu import MathBackendCPU
from wgpu_dl.tensor import Tensor

logger = logging.getLogger(__name__)

WORKGROUP_SIZE = 256
TILE = 16

_STORAGE_USAGE = wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.COPY_SRC


# ============================================================================
# WGSL Compute Shader Sources
# ============================================================================

def _elementwise_shader(num_inputs, expr):
    """One-thread-per-element shader over `num_inputs` f32 arrays named a, b."""
    names = "ab"[:num_inputs]
    bindings = "".join(
        f"@group(0) @binding({i})\nvar<storage, read> {name}: array<f32>;\n"
        for i, name in enumerate(names)
    )
    return (
        bindings
        + f"@group(0) @binding({num_inputs})\nvar<storage, read_write> out: array<f32>;\n"
        + f"""
@compute @workgroup_size({WORKGROUP_SIZE})
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {{
    let idx = gid.x;
    if (idx < arrayLength(&out)) {{
        out[idx] = {expr};
    }}
}}
"""
    )


WGSL_ADD = _elementwise_shader(2, "a[idx] + b[idx]")
WGSL_SUB = _elementwise_shader(2, "a[idx] - b[idx]")
WGSL_MUL = _elementwise_shader(2, "a[idx] * b[idx]")
WGSL_DIV = _elementwise_shader(2, "a[idx] / b[idx]")
WGSL_NEG = _elementwise_shader(1, "-a[idx]")
WGSL_RELU = _elementwise_shader(1, "max(0.0, a[idx])")
WGSL_SIGMOID = _elementwise_shader(1, "1.0 / (1.0 + exp(-a[idx]))")
WGSL_TANH = _elementwise_shader(1, "tanh(a[idx])")
WGSL_EXP = _elementwise_shader(1, "exp(a[idx])")

WGSL_MATMUL = """
@group(0) @binding(0)
var<storage, read> a: array<f32>;
@group(0) @binding(1)
var<storage, read> b: array<f32>;
@group(0) @binding(2)
var<storage, read_write> out: array<f32>;
@group(0) @binding(3)
var<uniform> params: vec4<u32>;

var<workgroup> tile_a: array<f32, 256>;
var<workgroup> tile_b: array<f32, 256>;

@compute @workgroup_size(16, 16)
fn main(
    @builtin(global_invocation_id) gid: vec3<u32>,
    @builtin(local_invocation_id) lid: vec3<u32>,
    @builtin(workgroup_id) wid: vec3<u32>,
) {
    let m = params.x;
    let n = params.y;
    let k = params.z;
    let lx = lid.x;
    let ly = lid.y;

    let row = wid.y * 16u + ly;
    let col = wid.x * 16u + lx;

    var result = 0.0;

    var tile_idx = 0u;
    loop {
        if (tile_idx >= k) { break; }

        let a_col = tile_idx + lx;
        tile_a[ly * 16u + lx] = select(0.0, a[min(row * k + a_col, arrayLength(&a) - 1u)],
                                       row < m && a_col < k);

        let b_row = tile_idx + ly;
        tile_b[ly * 16u + lx] = select(0.0, b[min(b_row * n + col, arrayLength(&b) - 1u)],
                                       b_row < k && col < n);

        workgroupBarrier();

        for (var i = 0u; i < 16u; i = i + 1u) {
            result = result + tile_a[ly * 16u + i] * tile_b[i * 16u + lx];
        }

        workgroupBarrier();
        tile_idx = tile_idx + 16u;
    }

    if (row < m && col < n) {
        out[row * n + col] = result;
    }
}
"""


def _create_device(power_preference):
    adapter = wgpu.gpu.request_adapter_sync(power_preference=power_preference)
    if adapter is None:
        raise RuntimeError("No WebGPU adapter found")
    logger.info(f"WebGPU adapter: {adapter.info.get('device', 'unknown')} "
                f"({adapter.info.get('backend_type', '?')})")
    return adapter.request_device_sync()


class MathBackendWebGPU(MathBackendCPU):
    """numpy backend with device-resident buffers and WGSL kernels for the hot path."""

    def __init__(self, power_preference="high-performance", device=None):
        """
        Args:
            power_preference: "high-performance" or "low-power" adapter hint
            device: an existing GPUDevice to share instead of requesting one
        """
        super().__init__()
        self.device = device if device is not None else _create_device(power_preference)
        self._buffers = {}
        self._dtypes = {}
        self._pipeline_cache = {}

    # ========================================================================
    # Storage
    # ========================================================================

    def register(self, data_id, shape, dtype):
        super().register(data_id, shape, dtype)
        self._dtypes[data_id] = dtype

    def write(self, data_id, values):
        super().write(data_id, values)
        stale = self._buffers.pop(data_id, None)
        if stale is not None:
            stale.destroy()

    def read_sync(self, data_id):
        values = self._data.get(data_id)
        if values is None and data_id in self._buffers:
            raw = self.device.queue.read_buffer(self._buffers[data_id])
            values = np.frombuffer(raw, dtype=util.np_dtype(self._dtypes[data_id])).copy()
            self._data[data_id] = values
        if values is None:
            raise ValueError(f"No values were written for {data_id}")
        return values

    def dispose_data(self, data_id):
        super().dispose_data(data_id)
        self._dtypes.pop(data_id, None)
        buffer = self._buffers.pop(data_id, None)
        if buffer is not None:
            buffer.destroy()

    def dispose(self):
        for buffer in self._buffers.values():
            buffer.destroy()
        self._buffers.clear()
        self._dtypes.clear()
        self._pipeline_cache.clear()
        super().dispose()

    def num_gpu_buffers(self) -> int:
        return len(self._buffers)

    def _values(self, x):
        return self.read_sync(x.data_id).astype(util.np_dtype(x.dtype), copy=False).reshape(x.shape)

    def _buffer(self, x):
        """Device buffer for x, uploading the host copy on first use."""
        buffer = self._buffers.get(x.data_id)
        if buffer is None:
            host = np.ascontiguousarray(self.read_sync(x.data_id), dtype=np.float32)
            buffer = self.device.create_buffer_with_data(data=host.tobytes(), usage=_STORAGE_USAGE)
            self._buffers[x.data_id] = buffer
        return buffer

    def _empty(self, shape):
        """Fresh float32 tensor whose only copy is a device buffer."""
        out = Tensor.make(shape, dtype="float32")
        buffer = self.device.create_buffer(size=out.size * 4, usage=_STORAGE_USAGE)
        self._buffers[out.data_id] = buffer
        return out, buffer

    # ========================================================================
    # Shader dispatch
    # ========================================================================

    def _pipeline(self, wgsl_code, buffers):
        pipeline = self._pipeline_cache.get(wgsl_code)
        if pipeline is not None:
            return pipeline

        shader_module = self.device.create_shader_module(code=wgsl_code)
        entries = []
        for i, (_, access) in enumerate(buffers):
            if access == "read":
                buffer_type = "read-only-storage"
            elif access == "uniform":
                buffer_type = "uniform"
            else:
                buffer_type = "storage"
            entries.append({
                "binding": i,
                "visibility": wgpu.ShaderStage.COMPUTE,
                "buffer": {"type": buffer_type, "has_dynamic_offset": False},
            })

        bind_group_layout = self.device.create_bind_group_layout(entries=entries)
        pipeline_layout = self.device.create_pipeline_layout(bind_group_layouts=[bind_group_layout])
        pipeline = self.device.create_compute_pipeline(
            layout=pipeline_layout,
            compute={"module": shader_module, "entry_point": "main"},
        )
        self._pipeline_cache[wgsl_code] = pipeline
        return pipeline

    def _dispatch_shader(self, wgsl_code, buffers, workgroups):
        """Execute a compute shader.

        Args:
            wgsl_code: WGSL source, also the pipeline cache key
            buffers: list of (GPUBuffer, access) with access one of
                "read", "read_write" or "uniform"
            workgroups: tuple (x,), (x, y) or (x, y, z)
        """
        pipeline = self._pipeline(wgsl_code, buffers)
        bind_group = self.device.create_bind_group(
            layout=pipeline.get_bind_group_layout(0),
            entries=[
                {"binding": i, "resource": {"buffer": buf, "offset": 0, "size": buf.size}}
                for i, (buf, _) in enumerate(buffers)
            ],
        )

        command_encoder = self.device.create_command_encoder()
        compute_pass = command_encoder.begin_compute_pass()
        compute_pass.set_pipeline(pipeline)
        compute_pass.set_bind_group(0, bind_group)
        compute_pass.dispatch_workgroups(*workgroups)
        compute_pass.end()
        self.device.queue.submit([command_encoder.finish()])
        self.device.queue.on_submitted_work_done_sync()

    # ---- helpers ----
    @staticmethod
    def _on_gpu(*tensors):
        first = tensors[0]
        return first.size > 0 and all(
            t.dtype == "float32" and t.shape == first.shape for t in tensors
        )

    def _elementwise(self, wgsl_code, *inputs):
        out, out_buffer = self._empty(inputs[0].shape)
        buffers = [(self._buffer(x), "read") for x in inputs] + [(out_buffer, "read_write")]
        self._dispatch_shader(wgsl_code, buffers, ((out.size + WORKGROUP_SIZE - 1) // WORKGROUP_SIZE,))
        return out

    # ========================================================================
    # Kernels
    # ========================================================================

    def matmul(self, a, b, transpose_a, transpose_b):
        if (transpose_a or transpose_b or a.rank != 2 or b.rank != 2
                or a.dtype != "float32" or b.dtype != "float32" or 0 in a.shape + b.shape):
            return super().matmul(a, b, transpose_a, transpose_b)
        m, k = a.shape
        n = b.shape[1]
        out, out_buffer = self._empty((m, n))
        params_buffer = self.device.create_buffer_with_data(
            data=struct.pack("4I", m, n, k, 0),
            usage=wgpu.BufferUsage.UNIFORM | wgpu.BufferUsage.COPY_DST,
        )
        self._dispatch_shader(
            WGSL_MATMUL,
            [
                (self._buffer(a), "read"),
                (self._buffer(b), "read"),
                (out_buffer, "read_write"),
                (params_buffer, "uniform"),
            ],
            ((n + TILE - 1) // TILE, (m + TILE - 1) // TILE),
        )
        params_buffer.destroy()
        return out

    def add(self, a, b):
        if self._on_gpu(a, b):
            return self._elementwise(WGSL_ADD, a, b)
        return super().add(a, b)

    def sub(self, a, b):
        if self._on_gpu(a, b):
            return self._elementwise(WGSL_SUB, a, b)
        return super().sub(a, b)

    def mul(self, a, b):
        if self._on_gpu(a, b):
            return self._elementwise(WGSL_MUL, a, b)
        return super().mul(a, b)

    def div(self, a, b):
        if self._on_gpu(a, b):
            return self._elementwise(WGSL_DIV, a, b)
        return super().div(a, b)

    def neg(self, x):
        if self._on_gpu(x):
            return self._elementwise(WGSL_NEG, x)
        return super().neg(x)

    def relu(self, x):
        if self._on_gpu(x):
            return self._elementwise(WGSL_RELU, x)
        return super().relu(x)

    def sigmoid(self, x):
        if self._on_gpu(x):
            return self._elementwise(WGSL_SIGMOID, x)
        return super().sigmoid(x)

    def tanh(self, x):
        if self._on_gpu(x):
            return self._elementwise(WGSL_TANH, x)
        return super().tanh(x)

    def exp(self, x):
        if self._on_gpu(x):
            return self._elementwise(WGSL_EXP, x)
        return super().exp(x)
