"""Pytest configuration and shared fixtures for newtoncg tests.

This module provides:
- Deterministic RNG fixtures for numpy and torch
- A CPU execution queue
- A synthetic binary classification generator for logistic-loss tests
"""

import os
from typing import Callable, NamedTuple

import numpy as np
import pytest
import torch

from newtoncg.backend import ExecutionQueue
from newtoncg.core import default_device


def _seed() -> int:
    return int(os.environ.get("TEST_RNG_SEED", "0"))


@pytest.fixture(scope="function")
def rng() -> np.random.Generator:
    """Provide a deterministic numpy RNG for tests.

    Uses seed from TEST_RNG_SEED environment variable (default: 0).
    """
    return np.random.default_rng(_seed())


@pytest.fixture(scope="function")
def torch_rng() -> torch.Generator:
    """Provide a deterministic torch RNG on the default device."""
    generator = torch.Generator(device=default_device().as_torch_device())
    generator.manual_seed(_seed())
    return generator


@pytest.fixture(scope="function", autouse=True)
def set_random_seeds(rng: np.random.Generator, torch_rng: torch.Generator) -> None:
    """Seed numpy and torch globals for every test."""
    np.random.seed(_seed())
    torch.manual_seed(_seed())
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(_seed())


@pytest.fixture
def queue() -> ExecutionQueue:
    """CPU, double precision execution queue."""
    return ExecutionQueue(default_device())


class ClassificationData(NamedTuple):
    X_train: np.ndarray
    y_train: np.ndarray
    X_test: np.ndarray
    y_test: np.ndarray
    params: np.ndarray


def _make_classification(
    n: int, p: int, fit_intercept: bool = True, seed: int = 2007
) -> ClassificationData:
    """Separable data labelled by a random logistic model.

    Features are uniform in [-10, 10], true parameters uniform in [-3, 3]
    (intercept first), labels are the thresholded model probability, and
    the first 70% of the rows form the training split.
    """
    gen = np.random.default_rng(seed + n + p)
    X = gen.uniform(-10.0, 10.0, size=(n, p))
    dim = p + 1 if fit_intercept else p
    params = gen.uniform(-3.0, 3.0, size=dim)
    if fit_intercept:
        z = X @ params[1:] + params[0]
    else:
        z = X @ params
    y = (1.0 / (1.0 + np.exp(-z)) >= 0.5).astype(float)
    train_size = int(n * 0.7)
    return ClassificationData(
        X_train=X[:train_size],
        y_train=y[:train_size],
        X_test=X[train_size:],
        y_test=y[train_size:],
        params=params,
    )


@pytest.fixture
def logistic_data() -> Callable[..., ClassificationData]:
    """Factory for seeded synthetic classification problems."""
    return _make_classification
