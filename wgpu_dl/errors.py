"""
Error taxonomy for wgpu_dl.

All failures are usage or programming errors raised synchronously to the
caller; nothing in the library retries.
"""


class ConfigurationError(RuntimeError):
    """The library was wired or driven incorrectly (unknown backend, safe mode)."""


class UnknownKernelError(ConfigurationError):
    """A kernel name outside the closed kernel set reached the dispatcher."""

    def __init__(self, kernel_name: str):
        super().__init__(f"No backend method found for kernel {kernel_name}")
        self.kernel_name = kernel_name


class ScopeError(ConfigurationError):
    """A scope was ended without a matching start."""


class ShapeError(ValueError):
    """Shape or dtype contract violated by the caller's tensors."""


class DisconnectedGraphError(ValueError):
    """Some requested inputs have no path to the differentiated value."""

    def __init__(self, num_disconnected: int, num_inputs: int):
        super().__init__(
            f"Cannot compute gradient: y is not a function of xs. "
            f"{num_disconnected} of {num_inputs} inputs are disconnected "
            f"from the computed value."
        )
        self.num_disconnected = num_disconnected
        self.num_inputs = num_inputs


class NonDifferentiableError(RuntimeError):
    """A gradient was requested through an operation without a gradient rule."""
