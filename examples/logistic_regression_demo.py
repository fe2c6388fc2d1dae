"""
Example: Training a logistic-regression model with Newton-CG

Generates a linearly separable binary classification problem, fits an
L2-regularised logistic model with the Newton-CG solver and reports the
solver statistics together with train/test accuracy.
"""

import logging

import numpy as np
import torch

from newtoncg import (
    ExecutionQueue,
    LogLossFunction,
    NewtonCGConfig,
    configure_logging,
    device,
    minimize,
)
from newtoncg.optimize import accuracy


def make_data(n=1000, p=20, seed=2007):
    """Uniform features in [-10, 10] labelled by a random logistic model."""
    gen = np.random.default_rng(seed)
    X = gen.uniform(-10.0, 10.0, size=(n, p))
    params = gen.uniform(-3.0, 3.0, size=p + 1)
    y = (X @ params[1:] + params[0] >= 0.0).astype(float)
    train_size = int(0.7 * n)
    return X[:train_size], y[:train_size], X[train_size:], y[train_size:]


def main():
    configure_logging(level=logging.WARNING)
    name = "cuda" if torch.cuda.is_available() else "cpu"
    queue = ExecutionQueue(device(name))

    X_train, y_train, X_test, y_test = make_data()
    f = LogLossFunction(queue, X_train, y_train, l2=1e-3, fit_intercept=True)
    config = NewtonCGConfig(tol=1e-6, maxiter=100, maxinner=100, record_history=True)

    result = minimize(f, np.zeros(f.dimension), config)

    print("=" * 60)
    print("Newton-CG logistic regression")
    print("=" * 60)
    print(f"Device: {queue.device}")
    print(f"Status: {result.status.value} ({result.message})")
    print(f"Outer iterations: {result.nit}, inner CG iterations: {result.n_inner}")
    print(f"Final loss: {result.fun:.6e}, max |grad|: {result.grad_max_abs:.3e}")
    for record in result.history:
        print(
            f"  iter {record.iteration:3d}  loss {record.fun:.6e}  "
            f"alpha {record.alpha:.3g}  step {record.update_norm:.3e}"
        )
    print(f"Train accuracy: {accuracy(X_train, y_train, result.x):.3f}")
    print(f"Test accuracy: {accuracy(X_test, y_test, result.x):.3f}")


if __name__ == "__main__":
    main()
