"""
Autodiff engine.

Owns the scope stack, the active tape, tensor reference counts and the
variable registry. Every kernel runs through Engine.run_kernel, which
dispatches to the backend and, while a gradients scope is active, records a
tape node whose gradient closure comes from the per-op rules table.

State machine:
  Idle      -- no scope; tensors created here are untracked
  Recording -- inside a gradients scope; the tape accumulates nodes and
               intermediates of nested scopes are handed up, not disposed
  Scoped    -- inside a plain tidy(); intermediates are disposed on exit
"""

import logging
import time
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from wgpu_dl import gradient_rules
from wgpu_dl import kernel_registry
from wgpu_dl import ops
from wgpu_dl import util
from wgpu_dl.errors import ConfigurationError, ScopeError, ShapeError
from wgpu_dl.tape import Tape, TapeNode, backpropagate_gradients, get_filtered_nodes_x_to_y
from wgpu_dl.tensor import Tensor, Variable
from wgpu_dl.variables import VariableRegistry

logger = logging.getLogger(__name__)


class MemoryInfo(NamedTuple):
    num_tensors: int
    num_data_buffers: int
    num_bytes: int


class Scope:
    """One frame of the scope stack."""

    def __init__(self, name: str, gradients_mode: bool = False):
        self.name = name
        self.gradients_mode = gradients_mode
        self.track: List[Tensor] = []

    def __repr__(self):
        return f"Scope({self.name!r}, tracked={len(self.track)})"


def extract_tensors(result) -> List[Tensor]:
    """Tensors reachable from a scope's return value (nested lists, tuples and dicts)."""
    found = []
    if isinstance(result, Tensor):
        found.append(result)
    elif isinstance(result, dict):
        for value in result.values():
            found.extend(extract_tensors(value))
    elif isinstance(result, (list, tuple)):
        for value in result:
            found.extend(extract_tensors(value))
    return found


def _bind_gradient(rule, inputs: Dict[str, Tensor], args: Dict[str, Any]):
    def gradient(dy, y):
        return rule(dy, y, inputs, args)
    return gradient


class Engine:
    """Scoping, reference counting, kernel execution and reverse-mode gradients."""

    def __init__(self, backend, safe_mode: bool = False, debug: bool = False):
        """
        Args:
            backend: KernelBackend that stores buffers and runs kernels
            safe_mode: raise when a tensor is created outside any scope
            debug: log per-kernel timing and fail on NaN outputs
        """
        self.backend = backend
        self.safe_mode = safe_mode
        self.debug = debug
        self.registered_variables = VariableRegistry()

        self._ref_count: Dict[Any, int] = {}
        self.num_tensors = 0
        self.num_data_buffers = 0
        self.num_bytes = 0

        self._scope_stack: List[Scope] = []
        self._keep_tensors = set()
        self._active_tape: Optional[Tape] = None
        self._gradient_scope_count = 0
        self._custom_gradient_depth = 0
        self._next_node_id = 0

        logger.debug(f"Engine created: backend={type(backend).__name__} "
                     f"safe_mode={safe_mode} debug={debug}")

    # ========================================================================
    # Tensor bookkeeping
    # ========================================================================

    def register_tensor(self, tensor: Tensor) -> None:
        if not isinstance(tensor, Variable):
            self.track(tensor)
        ref_count = self._ref_count.get(tensor.data_id, 0)
        self.num_tensors += 1
        if ref_count == 0:
            self.num_data_buffers += 1
            self.num_bytes += tensor.size * util.bytes_per_element(tensor.dtype)
            self.backend.register(tensor.data_id, tensor.shape, tensor.dtype)
        self._ref_count[tensor.data_id] = ref_count + 1

    def dispose_tensor(self, tensor: Tensor) -> None:
        self._keep_tensors.discard(tensor.id)
        self.num_tensors -= 1
        ref_count = self._ref_count.get(tensor.data_id, 0)
        if ref_count <= 1:
            self._ref_count.pop(tensor.data_id, None)
            self.backend.dispose_data(tensor.data_id)
            self.num_data_buffers -= 1
            self.num_bytes -= tensor.size * util.bytes_per_element(tensor.dtype)
        else:
            self._ref_count[tensor.data_id] = ref_count - 1

    def memory(self) -> MemoryInfo:
        return MemoryInfo(self.num_tensors, self.num_data_buffers, self.num_bytes)

    def keep(self, tensor: Tensor) -> Tensor:
        """Exclude tensor from automatic disposal by every enclosing scope."""
        self._keep_tensors.add(tensor.id)
        return tensor

    def track(self, tensor: Tensor) -> Tensor:
        scope = self.active_scope
        if scope is None:
            if self.safe_mode:
                raise ConfigurationError(
                    "Safe mode is ON. Enclose all tensor operations inside tidy(): "
                    "tidy(lambda: ...) to avoid memory leaks."
                )
            return tensor
        scope.track.append(tensor)
        return tensor

    # ========================================================================
    # Scopes
    # ========================================================================

    @property
    def active_scope(self) -> Optional[Scope]:
        return self._scope_stack[-1] if self._scope_stack else None

    @property
    def active_tape(self) -> Optional[Tape]:
        return self._active_tape

    def should_record(self) -> bool:
        return self._active_tape is not None and self._custom_gradient_depth == 0

    def start_scope(self, name: Optional[str] = None, gradients_mode: bool = False) -> None:
        if gradients_mode:
            if self._gradient_scope_count == 0:
                self._active_tape = Tape()
            self._gradient_scope_count += 1
        self._scope_stack.append(Scope(name or "unnamed scope", gradients_mode))

    def end_scope(self, result: Any = None, gradients_mode: bool = False) -> None:
        """Pop a scope, disposing what it tracked unless kept, returned or still recording."""
        if not self._scope_stack:
            raise ScopeError("end_scope() called without a matching start_scope()")
        if gradients_mode:
            self._gradient_scope_count -= 1
            if self._gradient_scope_count == 0:
                self._active_tape = None

        scope = self._scope_stack.pop()
        returned = extract_tensors(result)
        returned_ids = {t.id for t in returned}
        tracked_ids = {t.id for t in scope.track}

        to_track_in_parent = [t for t in returned if t.id in tracked_ids]
        for tensor in scope.track:
            if tensor.is_disposed or tensor.id in self._keep_tensors or tensor.id in returned_ids:
                continue
            if self._active_tape is not None:
                to_track_in_parent.append(tensor)
            else:
                tensor.dispose()

        if self.active_scope is None:
            return
        for tensor in to_track_in_parent:
            if not tensor.is_disposed and tensor.id not in self._keep_tensors:
                self.track(tensor)

    def tidy(self, name_or_fn, fn: Optional[Callable] = None, gradients_mode: bool = False):
        """Run fn in a new scope; whatever fn creates and does not return is disposed.

        The scope is ended on every exit path, including exceptions.
        """
        if fn is None:
            name, fn = None, name_or_fn
        else:
            name = name_or_fn
        self.start_scope(name, gradients_mode)
        try:
            result = fn()
        except Exception:
            self.end_scope(None, gradients_mode)
            raise
        self.end_scope(result, gradients_mode)
        return result

    # ========================================================================
    # Kernel execution
    # ========================================================================

    def run_kernel(self, kernel_name: str, inputs: Dict[str, Tensor],
                   args: Optional[Dict[str, Any]] = None) -> Tensor:
        """Dispatch a kernel and record it on the tape when recording."""
        args = args or {}
        for tensor in inputs.values():
            tensor.throw_if_disposed()

        if self.debug:
            start = time.perf_counter()
            result = kernel_registry.execute_kernel(self.backend, kernel_name, inputs, args)
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.debug(f"{kernel_name:<16s} {elapsed_ms:8.3f} ms  shape={result.shape}")
            if result.dtype == "float32" and np.isnan(result.data_sync()).any():
                raise ValueError(f"The result of the '{kernel_name}' kernel has NaN values")
        else:
            result = kernel_registry.execute_kernel(self.backend, kernel_name, inputs, args)

        if self.should_record():
            rule = gradient_rules.GRADIENT_RULES.get(kernel_name)
            self._record(TapeNode(
                id=self._new_node_id(), kind="kernel", name=kernel_name,
                inputs=dict(inputs), output=result, args=args,
                gradient=None if rule is None else _bind_gradient(rule, inputs, args),
            ))
        return result

    def _new_node_id(self) -> int:
        self._next_node_id += 1
        return self._next_node_id

    def _record(self, node: TapeNode) -> None:
        self._active_tape.record(node)

    # ========================================================================
    # Gradients
    # ========================================================================

    def gradients(self, f: Callable[[], Tensor], xs: Sequence[Tensor],
                  dy: Optional[Tensor] = None) -> Tuple[Tensor, List[Optional[Tensor]]]:
        """Value of f() and the gradient of it with respect to each of xs.

        A missing gradient comes back as None; callers decide whether that is
        an error. When dy is omitted the seed is ones shaped like the value.
        """

        def compute():
            y = f()
            if not isinstance(y, Tensor):
                raise TypeError("The function passed to gradients() must return a Tensor")
            if dy is not None and not util.arrays_equal(dy.shape, y.shape):
                raise ShapeError(
                    f"The shape of dy {dy.shape} must match the shape {y.shape} "
                    f"returned by f()"
                )
            filtered = get_filtered_nodes_x_to_y(self._active_tape.nodes(), xs, y)
            accumulated = {y.id: ops.ones_like(y) if dy is None else dy}
            backpropagate_gradients(accumulated, filtered)
            return y, [accumulated.get(x.id) for x in xs]

        return self.tidy("gradients", compute, gradients_mode=True)

    def custom_gradient(self, name: str, f: Callable[[], Tuple[Tensor, Callable]],
                        inputs: Dict[str, Tensor]) -> Tensor:
        """Run f() unrecorded and splice one node carrying f's own gradient function."""
        for input_name, tensor in inputs.items():
            if not isinstance(tensor, Tensor):
                raise TypeError(
                    f"Input '{input_name}' passed to custom_gradient() must be a Tensor"
                )

        captured = {}

        def forward():
            value, gradient_fn = f()
            captured["gradient"] = gradient_fn
            return value

        self._custom_gradient_depth += 1
        try:
            value = self.tidy(name, forward, gradients_mode=True)
        finally:
            self._custom_gradient_depth -= 1

        if self.should_record():
            self._record(TapeNode(
                id=self._new_node_id(), kind="custom_gradient", name=name,
                inputs=dict(inputs), output=value, gradient=captured["gradient"],
            ))
        return value

    # ========================================================================
    # Teardown
    # ========================================================================

    def dispose(self) -> None:
        """Release every variable and the backend's buffers."""
        for variable in self.registered_variables.values():
            variable.dispose()
        self.registered_variables.clear()
        self.backend.dispose()
