#!/usr/bin/env python3
"""
Minimal training demo for wgpu_dl.

Trains a 2-layer MLP on synthetic classification data with the best
available backend (WebGPU when an adapter is found, numpy otherwise).
Demonstrates: tensor creation, forward pass, softmax cross entropy,
gradients through the tape, and Adam updates via minimize().

Usage:
    python -m wgpu_dl.examples.train_demo
"""

import numpy as np

import wgpu_dl as dl
from wgpu_dl.nn import Dense, Sequential


def generate_data(n_samples: int, input_dim: int, n_classes: int, seed: int = 42):
    """Generate synthetic linearly-separable classification data."""
    rng = np.random.RandomState(seed)
    X = rng.randn(n_samples, input_dim).astype(np.float32)
    # Simple linear boundary
    w_true = rng.randn(input_dim).astype(np.float32)
    scores = X @ w_true
    if n_classes == 2:
        y = (scores > 0).astype(np.int32)
    else:
        thresholds = np.quantile(scores, np.linspace(0, 1, n_classes + 1)[1:-1])
        y = np.digitize(scores, thresholds).astype(np.int32)
    return X, y


def train(n_epochs: int = 20, input_dim: int = 16, hidden_dim: int = 32, n_classes: int = 4,
          n_samples: int = 256, batch_size: int = 64, lr: float = 1e-2, verbose: bool = True):
    """Train the MLP; returns (mean loss of the last epoch, accuracy in percent)."""
    X_all, y_all = generate_data(n_samples, input_dim, n_classes)
    if verbose:
        print(f"Data: {n_samples} samples, {input_dim} features, {n_classes} classes")

    model = Sequential(
        Dense(input_dim, hidden_dim, activation="relu", seed=0),
        Dense(hidden_dim, n_classes, seed=1),
    )
    params = model.parameters()
    optimizer = dl.train.adam(lr)
    if verbose:
        print(f"Model: {sum(p.size for p in params)} parameters")
        print()

    avg_loss, accuracy = float("nan"), 0.0
    for epoch in range(n_epochs):
        epoch_loss = 0.0
        n_correct = 0
        n_total = 0

        for i in range(0, n_samples, batch_size):
            x_batch = X_all[i:i + batch_size]
            y_batch = y_all[i:i + batch_size]
            bs = x_batch.shape[0]

            def loss_fn():
                x = dl.tensor(x_batch)
                labels = dl.one_hot(dl.tensor(y_batch, dtype="int32"), n_classes)
                return dl.mean(dl.softmax_cross_entropy(labels, model(x)))

            cost = optimizer.minimize(loss_fn, return_cost=True, var_list=params)
            epoch_loss += cost.item() * bs
            cost.dispose()

            pred = dl.tidy(lambda: dl.arg_max(model(dl.tensor(x_batch)), 1))
            n_correct += int((pred.data_sync() == y_batch).sum())
            pred.dispose()
            n_total += bs

        avg_loss = epoch_loss / n_total
        accuracy = n_correct / n_total * 100
        if verbose:
            print(f"Epoch {epoch + 1:3d}/{n_epochs}  loss={avg_loss:.4f}  acc={accuracy:.1f}%")

    optimizer.dispose()
    model.dispose()
    return avg_loss, accuracy


def main():
    print("wgpu_dl Training Demo")
    print("=" * 50)
    print(f"Backend: {dl.ENV.current_backend or dl.ENV.get_best_backend_type()}")

    _, accuracy = train()

    print()
    print("Training complete!")
    print(f"Final accuracy: {accuracy:.1f}%")


if __name__ == "__main__":
    main()
