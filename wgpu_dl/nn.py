"""
Small layer library over Variables.

Layers hold their parameters as trainable Variables, so any optimizer's
minimize() picks them up; pass module.parameters() as var_list to train one
model in isolation.
"""

import math
from typing import Any, Callable, Dict, Optional, Union

import numpy as np

from wgpu_dl import ops
from wgpu_dl import scope
from wgpu_dl.tensor import Tensor, Variable


# ============================================================================
# Base Module Class
# ============================================================================

class Module:
    """Base class for all layers."""

    def __init__(self):
        self._parameters: Dict[str, Variable] = {}
        self._modules: Dict[str, "Module"] = {}

    def __setattr__(self, name: str, value: Any) -> None:
        """Register parameters and submodules."""
        if isinstance(value, Variable):
            if not hasattr(self, "_parameters"):
                super().__setattr__("_parameters", {})
            self._parameters[name] = value
        elif isinstance(value, Module):
            if not hasattr(self, "_modules"):
                super().__setattr__("_modules", {})
            self._modules[name] = value
        super().__setattr__(name, value)

    def parameters(self):
        """All parameters, recursively."""
        params = list(self._parameters.values())
        for m in self._modules.values():
            params.extend(m.parameters())
        return params

    def named_parameters(self, prefix: str = ""):
        """Yield (name, variable) tuples recursively."""
        for name, p in self._parameters.items():
            full_name = f"{prefix}.{name}" if prefix else name
            yield full_name, p
        for name, m in self._modules.items():
            subprefix = f"{prefix}.{name}" if prefix else name
            yield from m.named_parameters(prefix=subprefix)

    def load_numpy(self, state_dict: Dict[str, np.ndarray]) -> None:
        """Assign parameters from a {dotted name: array} dict."""
        named = dict(self.named_parameters())
        for name, array in state_dict.items():
            if name not in named:
                raise KeyError(f"{name} not found in module")
            variable = named[name]
            scope.tidy(lambda: variable.assign(ops.tensor(array, variable.shape, variable.dtype)))

    def dispose(self) -> None:
        for p in self.parameters():
            p.dispose()

    def __call__(self, *args, **kwargs):
        return self.forward(*args, **kwargs)

    def forward(self, *args, **kwargs):
        raise NotImplementedError


def _parameter(values: np.ndarray, name: Optional[str] = None) -> Variable:
    return scope.tidy(lambda: Variable.variable(ops.tensor(values, dtype="float32"), name=name))


_ACTIVATIONS = {
    "relu": ops.relu,
    "sigmoid": ops.sigmoid,
    "tanh": ops.tanh,
    "elu": ops.elu,
    "selu": ops.selu,
    "softmax": ops.softmax,
}


# ============================================================================
# Dense Layer
# ============================================================================

class Dense(Module):
    """Fully connected layer: y = activation(x @ W + b), W of shape (in, out)."""

    def __init__(self, in_features: int, out_features: int, activation: Union[str, Callable, None] = None,
                 bias: bool = True, name: Optional[str] = None, seed: Optional[int] = None):
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features
        if isinstance(activation, str):
            if activation not in _ACTIVATIONS:
                raise ValueError(f"Unknown activation '{activation}', expected one of {sorted(_ACTIVATIONS)}")
            activation = _ACTIVATIONS[activation]
        self.activation = activation

        # Xavier uniform initialization
        rng = np.random.default_rng(seed)
        limit = math.sqrt(6.0 / (in_features + out_features))
        weight = rng.uniform(-limit, limit, size=(in_features, out_features)).astype(np.float32)
        self.weight = _parameter(weight, f"{name}/weight" if name else None)
        if bias:
            self.bias = _parameter(np.zeros(out_features, dtype=np.float32),
                                   f"{name}/bias" if name else None)
        else:
            self.bias = None

    def forward(self, x: Tensor) -> Tensor:
        """
        Args:
            x: (batch, in_features)
        Returns:
            (batch, out_features)
        """
        out = ops.matmul(x, self.weight)
        if self.bias is not None:
            out = ops.add(out, self.bias)
        if self.activation is not None:
            out = self.activation(out)
        return out


# ============================================================================
# Sequential Container
# ============================================================================

class Sequential(Module):
    """Applies modules in order."""

    def __init__(self, *modules: Module):
        super().__init__()
        for i, m in enumerate(modules):
            self._modules[str(i)] = m

    def __getitem__(self, idx: int) -> Module:
        return self._modules[str(idx)]

    def __len__(self) -> int:
        return len(self._modules)

    def forward(self, x: Tensor) -> Tensor:
        for m in self._modules.values():
            x = m(x)
        return x
