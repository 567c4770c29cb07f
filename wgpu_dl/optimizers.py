"""
Optimizers over registered Variables.

minimize(f) computes the gradients of a scalar loss with respect to the
trainable variables, applies one update step and releases the gradients.
Every update is computed inside tidy() and written back with
Variable.assign, so a step leaves no tensors behind. Constants and slot
variables (accumulators, moments) belong to the optimizer and are released
by dispose().
"""

import logging
from typing import Callable, Dict, Optional, Sequence

from wgpu_dl import environment
from wgpu_dl import ops
from wgpu_dl import scope
from wgpu_dl.gradients import variable_gradients
from wgpu_dl.tensor import Tensor, Variable

logger = logging.getLogger(__name__)


def _constant(value: float) -> Tensor:
    """Scalar owned by an optimizer: kept out of every enclosing tidy()."""
    return scope.tidy(lambda: scope.keep(ops.scalar(value)))


# ============================================================================
# Base Optimizer
# ============================================================================

class Optimizer:
    """Base class: subclasses implement apply_gradients."""

    def __init__(self, learning_rate: float):
        self.learning_rate = learning_rate
        self._slots: Dict[str, Dict[str, Variable]] = {}

    def minimize(self, f: Callable[[], Tensor], return_cost: bool = False,
                 var_list: Optional[Sequence[Variable]] = None) -> Optional[Tensor]:
        """Run one optimization step on the scalar returned by f.

        Args:
            f: returns the scalar cost
            return_cost: keep and return the cost instead of disposing it
            var_list: variables to update; defaults to every trainable variable

        Returns:
            The cost tensor when return_cost is set, otherwise None.
        """
        cost, grads = variable_gradients(f, var_list)
        self.apply_gradients(grads)
        scope.dispose(grads)
        if return_cost:
            return cost
        cost.dispose()
        return None

    def apply_gradients(self, variable_gradients: Dict[str, Tensor]) -> None:
        raise NotImplementedError

    def _slot(self, variable_name: str, slot_name: str, initial_value: float = 0.0) -> Variable:
        """Per-variable state tensor, created on first use."""
        slots = self._slots.setdefault(variable_name, {})
        if slot_name not in slots:
            value = self._registry()[variable_name]
            slots[slot_name] = scope.tidy(lambda: Variable.variable(
                ops.fill(value.shape, initial_value, "float32"), trainable=False,
            ))
        return slots[slot_name]

    @staticmethod
    def _registry():
        return environment.ENV.engine.registered_variables

    def dispose(self) -> None:
        """Release optimizer-owned tensors."""
        for slots in self._slots.values():
            for slot in slots.values():
                slot.dispose()
        self._slots = {}


# ============================================================================
# SGD
# ============================================================================

class SGDOptimizer(Optimizer):
    """value += -learning_rate * gradient"""

    def __init__(self, learning_rate: float):
        super().__init__(learning_rate)
        self.c = _constant(-learning_rate)

    def apply_gradients(self, variable_gradients: Dict[str, Tensor]) -> None:
        registry = self._registry()
        for name, gradient in variable_gradients.items():
            value = registry[name]
            scope.tidy(lambda: value.assign(ops.add(ops.mul(self.c, gradient), value)))

    def set_learning_rate(self, learning_rate: float) -> None:
        if learning_rate == self.learning_rate:
            return
        self.learning_rate = learning_rate
        self.c.dispose()
        self.c = _constant(-learning_rate)

    def dispose(self) -> None:
        self.c.dispose()
        super().dispose()


# ============================================================================
# Momentum
# ============================================================================

class MomentumOptimizer(SGDOptimizer):
    """accumulation = momentum * accumulation + gradient; value += -lr * accumulation"""

    def __init__(self, learning_rate: float, momentum: float, use_nesterov: bool = False):
        super().__init__(learning_rate)
        self.momentum = momentum
        self.use_nesterov = use_nesterov
        self.m = _constant(momentum)

    def apply_gradients(self, variable_gradients: Dict[str, Tensor]) -> None:
        registry = self._registry()
        for name, gradient in variable_gradients.items():
            value = registry[name]
            accumulation = self._slot(name, "accumulation")

            def update():
                new_accumulation = ops.add(ops.mul(self.m, accumulation), gradient)
                if self.use_nesterov:
                    step = ops.add(ops.mul(self.m, new_accumulation), gradient)
                else:
                    step = new_accumulation
                accumulation.assign(new_accumulation)
                value.assign(ops.add(ops.mul(self.c, step), value))

            scope.tidy(update)

    def dispose(self) -> None:
        self.m.dispose()
        super().dispose()


# ============================================================================
# Adagrad
# ============================================================================

class AdagradOptimizer(Optimizer):
    """accumulator += g^2; value += -lr * g / sqrt(accumulator + epsilon)"""

    def __init__(self, learning_rate: float, initial_accumulator_value: float = 0.1,
                 epsilon: float = 1e-8):
        super().__init__(learning_rate)
        self.initial_accumulator_value = initial_accumulator_value
        self.epsilon = epsilon
        self.c = _constant(-learning_rate)

    def apply_gradients(self, variable_gradients: Dict[str, Tensor]) -> None:
        registry = self._registry()
        for name, gradient in variable_gradients.items():
            value = registry[name]
            accumulator = self._slot(name, "accumulator", self.initial_accumulator_value)

            def update():
                new_accumulator = ops.add(accumulator, ops.square(gradient))
                accumulator.assign(new_accumulator)
                scaled = ops.div(gradient, ops.sqrt(ops.add(new_accumulator, self.epsilon)))
                value.assign(ops.add(ops.mul(self.c, scaled), value))

            scope.tidy(update)

    def dispose(self) -> None:
        self.c.dispose()
        super().dispose()


# ============================================================================
# Adadelta
# ============================================================================

class AdadeltaOptimizer(Optimizer):
    """Adadelta: step sizes from running averages of squared gradients and updates."""

    def __init__(self, learning_rate: float = 0.001, rho: float = 0.95, epsilon: float = 1e-8):
        super().__init__(learning_rate)
        self.rho = rho
        self.epsilon = epsilon
        self.c = _constant(-learning_rate)

    def apply_gradients(self, variable_gradients: Dict[str, Tensor]) -> None:
        registry = self._registry()
        rho, eps = self.rho, self.epsilon
        for name, gradient in variable_gradients.items():
            value = registry[name]
            accumulated_grad = self._slot(name, "accumulated_grad")
            accumulated_update = self._slot(name, "accumulated_update")

            def update():
                new_grad = ops.add(ops.mul(rho, accumulated_grad),
                                   ops.mul(1 - rho, ops.square(gradient)))
                step = ops.mul(
                    ops.div(ops.sqrt(ops.add(accumulated_update, eps)),
                            ops.sqrt(ops.add(new_grad, eps))),
                    gradient,
                )
                new_update = ops.add(ops.mul(rho, accumulated_update),
                                     ops.mul(1 - rho, ops.square(step)))
                accumulated_grad.assign(new_grad)
                accumulated_update.assign(new_update)
                value.assign(ops.add(ops.mul(self.c, step), value))

            scope.tidy(update)

    def dispose(self) -> None:
        self.c.dispose()
        super().dispose()


# ============================================================================
# Adam
# ============================================================================

class AdamOptimizer(Optimizer):
    """Adam with bias correction and optional decoupled weight decay (AdamW)."""

    def __init__(self, learning_rate: float = 0.001, beta1: float = 0.9, beta2: float = 0.999,
                 epsilon: float = 1e-8, weight_decay: float = 0.0):
        super().__init__(learning_rate)
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon
        self.weight_decay = weight_decay
        self.step_count = 0

    def apply_gradients(self, variable_gradients: Dict[str, Tensor]) -> None:
        self.step_count += 1
        beta1, beta2 = self.beta1, self.beta2
        # Bias correction
        m_correction = 1 - beta1 ** self.step_count
        v_correction = 1 - beta2 ** self.step_count

        registry = self._registry()
        for name, gradient in variable_gradients.items():
            value = registry[name]
            m = self._slot(name, "m")
            v = self._slot(name, "v")

            def update():
                new_m = ops.add(ops.mul(beta1, m), ops.mul(1 - beta1, gradient))
                new_v = ops.add(ops.mul(beta2, v), ops.mul(1 - beta2, ops.square(gradient)))
                m.assign(new_m)
                v.assign(new_v)
                m_hat = ops.div(new_m, m_correction)
                v_hat = ops.div(new_v, v_correction)
                step = ops.div(m_hat, ops.add(ops.sqrt(v_hat), self.epsilon))
                if self.weight_decay:
                    step = ops.add(step, ops.mul(self.weight_decay, value))
                value.assign(ops.sub(value, ops.mul(self.learning_rate, step)))

            scope.tidy(update)
        logger.debug(f"Adam step {self.step_count} updated {len(variable_gradients)} variables")
