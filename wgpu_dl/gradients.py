"""
Public gradient API.

value_and_gradients / gradients / vjp treat an input with no path to the
value as an error; variable_gradients silently leaves such variables out,
since a training step often does not touch every parameter.

When dy is omitted the seed is a tensor of ones shaped like the value. For a
scalar loss that is the ordinary gradient; for a non-scalar value it is the
vector-Jacobian product with every output element weighted equally.
"""

import logging
from typing import Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

from wgpu_dl import environment
from wgpu_dl.errors import DisconnectedGraphError, ShapeError
from wgpu_dl.tensor import Tensor, Variable

logger = logging.getLogger(__name__)

TensorOrMap = Union[Tensor, Dict[str, Tensor]]


class VariableGradients(NamedTuple):
    value: Tensor
    gradients: Dict[str, Tensor]


def _flatten(x: TensorOrMap) -> Tuple[Optional[List[str]], List[Tensor]]:
    if isinstance(x, Tensor):
        return None, [x]
    if isinstance(x, dict):
        keys = list(x)
        for key in keys:
            if not isinstance(x[key], Tensor):
                raise TypeError(f"Input '{key}' passed to value_and_gradients() must be a Tensor")
        return keys, [x[key] for key in keys]
    raise TypeError("x must be a Tensor or a dict of name -> Tensor")


def _release(tensors, xs, dy) -> None:
    """Dispose results, skipping inputs and dy that f or the seed passed through unchanged."""
    owned = list(xs)
    if dy is not None:
        owned.append(dy)
    for t in tensors:
        if t is not None and all(t is not o for o in owned):
            t.dispose()


def value_and_gradients(f: Callable[[], Tensor], x: TensorOrMap,
                        dy: Optional[Tensor] = None) -> Tuple[Tensor, TensorOrMap]:
    """Compute f() and d f() / d x, where x is a tensor or a dict of tensors.

    Returns:
        (value, gradients) with gradients shaped like x: one tensor for a
        tensor, a dict with the same keys for a dict.

    Raises:
        DisconnectedGraphError: some input has no path to the value.
    """
    keys, xs = _flatten(x)
    value, grads = environment.ENV.engine.gradients(f, xs, dy)
    num_disconnected = sum(1 for g in grads if g is None)
    if num_disconnected:
        _release([value] + grads, xs, dy)
        raise DisconnectedGraphError(num_disconnected, len(xs))
    if keys is None:
        return value, grads[0]
    return value, dict(zip(keys, grads))


def gradients(f: Callable[[], Tensor], x: TensorOrMap, dy: Optional[Tensor] = None) -> TensorOrMap:
    """Like value_and_gradients but the value is released."""
    value, grads = value_and_gradients(f, x, dy)
    _release([value], _flatten(x)[1], dy)
    return grads


def vjp(f: Callable[[], Tensor], x: TensorOrMap, dy: Tensor) -> TensorOrMap:
    """Vector-Jacobian product of f at x with cotangent dy."""
    return gradients(f, x, dy)


def variable_gradients(f: Callable[[], Tensor],
                       var_list: Optional[Sequence[Variable]] = None) -> VariableGradients:
    """Gradients of a scalar f() with respect to trainable variables.

    Args:
        f: returns a rank-0 tensor
        var_list: variables to differentiate; defaults to every registered
            variable. Non-trainable variables are always skipped.

    Returns:
        VariableGradients(value, {name: gradient}); disconnected variables
        are omitted.
    """
    engine = environment.ENV.engine
    if var_list is None:
        var_list = engine.registered_variables.values()
    var_list = [v for v in var_list if v.trainable]

    value, grads = engine.gradients(f, var_list)
    if value.rank > 0:
        _release([value] + grads, var_list, None)
        raise ShapeError(
            f"The user-provided function must return a scalar, but it returned a "
            f"rank-{value.rank} tensor"
        )

    named = {}
    for variable, grad in zip(var_list, grads):
        if grad is None:
            logger.debug(f"Variable {variable.name} is not connected to the value")
            continue
        named[variable.name] = grad
    return VariableGradients(value, named)


def custom_gradient(name: str, f: Callable[[], Tuple[Tensor, Callable]],
                    inputs: Dict[str, Tensor]) -> Tensor:
    """Run f, which returns (value, gradient_fn), and record it as one tape node.

    gradient_fn(dy, y) must return {input_name: () -> gradient} for the
    entries of inputs that depend on the differentiated tensors.
    """
    return environment.ENV.engine.custom_gradient(name, f, inputs)


def grad(f: Callable[[Tensor], Tensor]) -> Callable:
    """Functional form: grad(f)(x, dy=None) -> d f(x) / d x."""

    def gradient_fn(x: Tensor, dy: Optional[Tensor] = None) -> Tensor:
        return gradients(lambda: f(x), x, dy)

    return gradient_fn


def value_and_grad(f: Callable[[Tensor], Tensor]) -> Callable:
    """Functional form: value_and_grad(f)(x, dy=None) -> (f(x), d f(x) / d x)."""

    def value_and_gradient_fn(x: Tensor, dy: Optional[Tensor] = None):
        return value_and_gradients(lambda: f(x), x, dy)

    return value_and_gradient_fn
