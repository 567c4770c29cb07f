"""Memory scoping helpers bound to the global engine."""

from typing import Any, Callable, Optional

from wgpu_dl import environment
from wgpu_dl.engine import MemoryInfo, extract_tensors


def tidy(name_or_fn, fn: Optional[Callable] = None) -> Any:
    """Run fn and dispose every tensor it created except those it returns.

        result = tidy(lambda: a.square().add(b))
        result = tidy("layer1", lambda: ...)
    """
    return environment.ENV.engine.tidy(name_or_fn, fn)


def gradients_scope(name_or_fn, fn: Optional[Callable] = None) -> Any:
    """tidy() that records a tape and hands intermediates up instead of disposing them."""
    return environment.ENV.engine.tidy(name_or_fn, fn, gradients_mode=True)


def keep(tensor):
    """Protect tensor from disposal by enclosing tidy() scopes."""
    return environment.ENV.engine.keep(tensor)


def dispose(container) -> None:
    """Dispose every tensor in a tensor, list, tuple or dict."""
    for tensor in extract_tensors(container):
        tensor.dispose()


def memory() -> MemoryInfo:
    return environment.ENV.engine.memory()
