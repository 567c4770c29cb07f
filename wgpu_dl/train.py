"""Optimizer factories: train.sgd(0.1), train.adam(), ..."""

from wgpu_dl.optimizers import (
    AdadeltaOptimizer,
    AdagradOptimizer,
    AdamOptimizer,
    MomentumOptimizer,
    SGDOptimizer,
)


def sgd(learning_rate: float) -> SGDOptimizer:
    return SGDOptimizer(learning_rate)


def momentum(learning_rate: float, momentum: float, use_nesterov: bool = False) -> MomentumOptimizer:
    return MomentumOptimizer(learning_rate, momentum, use_nesterov)


def adagrad(learning_rate: float, initial_accumulator_value: float = 0.1) -> AdagradOptimizer:
    return AdagradOptimizer(learning_rate, initial_accumulator_value)


def adadelta(learning_rate: float = 0.001, rho: float = 0.95,
             epsilon: float = 1e-8) -> AdadeltaOptimizer:
    return AdadeltaOptimizer(learning_rate, rho, epsilon)


def adam(learning_rate: float = 0.001, beta1: float = 0.9, beta2: float = 0.999,
         epsilon: float = 1e-8, weight_decay: float = 0.0) -> AdamOptimizer:
    return AdamOptimizer(learning_rate, beta1, beta2, epsilon, weight_decay)
