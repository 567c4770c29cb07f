"""
Kernel backends.

    backend      - KernelBackend contract: buffer storage plus one method per kernel
    backend_cpu  - numpy reference implementation of every kernel
    backend_wgpu - WGSL compute shaders via wgpu-native, numpy for the rest
"""
