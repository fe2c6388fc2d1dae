import importlib
import logging
from io import StringIO

import numpy as np
import pytest
import torch

from newtoncg.backend import Event, ExecutionQueue
from newtoncg.core import device
from newtoncg.logging import configure_logging
from newtoncg.optimize import (
    C1,
    BaseFunction,
    CGResult,
    LogLossFunction,
    NewtonCGConfig,
    QuadraticFunction,
    Status,
    accuracy,
    minimize,
    newton_cg,
    solve,
)

newton_module = importlib.import_module("newtoncg.optimize.newton")


class Rosenbrock(BaseFunction):
    """Two-dimensional Rosenbrock function with an explicit Hessian."""

    def __init__(self, queue):
        super().__init__(queue, 2)
        self._hess = torch.zeros(2, 2, dtype=queue.dtype)

    def _evaluate(self, x, need_hessian):
        a, b = x[0], x[1]
        self._value.copy_((1 - a) ** 2 + 100 * (b - a**2) ** 2)
        self._gradient.copy_(
            torch.stack([-2 * (1 - a) - 400 * a * (b - a**2), 200 * (b - a**2)])
        )
        if need_hessian:
            self._hess.copy_(
                torch.stack(
                    [
                        torch.stack([1200 * a**2 - 400 * b + 2, -400 * a]),
                        torch.stack([-400 * a, torch.full_like(a, 200.0)]),
                    ]
                )
            )

    def _hessian_product(self, vec, out):
        torch.mv(self._hess, vec, out=out)


def _sum_of_squares(queue, n=4):
    return QuadraticFunction(queue, 2.0 * np.eye(n), np.zeros(n))


def _final_values(res):
    """Objective value after each committed step (requires convergence)."""
    return [rec.fun for rec in res.history[1:]] + [res.fun]


def test_separable_quadratic_converges_in_one_step(queue):
    f = _sum_of_squares(queue)
    x = torch.ones(4, dtype=torch.float64)
    res = newton_cg(queue, f, x, tol=1e-6, maxiter=10, maxinner=10)
    res.event.wait()

    assert res.status is Status.CONVERGED
    assert res.success
    assert res.nsteps == 1
    assert res.nit == 2
    assert res.n_inner == 1
    assert res.grad_max_abs < 1e-6
    assert torch.allclose(x, torch.zeros(4, dtype=torch.float64), atol=1e-12)
    assert res.update_norm == pytest.approx(2.0)


def test_spd_quadratic_one_step_with_exact_inner_solve(queue, rng):
    n = 5
    M = rng.normal(size=(n, n))
    A = M @ M.T + n * np.eye(n)
    b = rng.normal(size=n)
    f = QuadraticFunction(queue, A, b)
    config = NewtonCGConfig(tol=1e-8, maxiter=10, maxinner=50, forcing_cap=1e-14)

    res = minimize(f, np.zeros(n), config)
    assert res.status is Status.CONVERGED
    assert res.nsteps == 1
    assert np.allclose(res.x.numpy(), np.linalg.solve(A, b), atol=1e-10)


def test_spd_quadratic_with_forcing_sequence(queue, rng):
    n = 12
    M = rng.normal(size=(n, n))
    A = M @ M.T + np.eye(n)
    b = rng.normal(size=n)
    f = QuadraticFunction(queue, A, b)

    res = minimize(f, np.zeros(n), NewtonCGConfig(tol=1e-9, maxiter=50, maxinner=100))
    assert res.status is Status.CONVERGED
    assert np.allclose(res.x.numpy(), np.linalg.solve(A, b), atol=1e-7)


def test_tolerance_above_initial_gradient_stops_immediately(queue):
    f = _sum_of_squares(queue)
    x = torch.ones(4, dtype=torch.float64)
    res = newton_cg(queue, f, x, tol=10.0, maxiter=10, maxinner=10)

    assert res.status is Status.CONVERGED
    assert res.nit == 1
    assert res.n_inner == 0
    assert res.nsteps == 0
    assert torch.equal(x, torch.ones(4, dtype=torch.float64))


def test_zero_iteration_budget_leaves_x_untouched(queue):
    f = _sum_of_squares(queue)
    x = torch.ones(4, dtype=torch.float64)
    res = newton_cg(queue, f, x, tol=1e-6, maxiter=0, maxinner=10)

    assert res.status is Status.MAX_ITERATIONS_REACHED
    assert not res.success
    assert res.nit == 0
    assert res.n_inner == 0
    assert torch.equal(x, torch.ones(4, dtype=torch.float64))


def test_iteration_budget_exhausted(queue):
    f = Rosenbrock(queue)
    x = torch.tensor([-1.2, 1.0], dtype=torch.float64)
    res = newton_cg(queue, f, x, tol=1e-10, maxiter=2, maxinner=10)

    assert res.status is Status.MAX_ITERATIONS_REACHED
    assert res.message == "Maximum iterations reached."
    assert res.nit == 2
    assert res.nsteps == 2


def test_rosenbrock_converges(queue):
    f = Rosenbrock(queue)
    config = NewtonCGConfig(tol=1e-6, maxiter=500, maxinner=10, record_history=True)
    res = minimize(f, [-1.2, 1.0], config)

    assert res.status is Status.CONVERGED
    assert torch.allclose(res.x, torch.ones(2, dtype=torch.float64), atol=1e-4)
    assert res.fun < 1e-8


@pytest.mark.parametrize("start", [[-1.2, 1.0], [0.0, 1.0], [2.0, -1.0]])
def test_committed_steps_are_descent_and_satisfy_armijo(queue, start):
    f = Rosenbrock(queue)
    config = NewtonCGConfig(tol=1e-6, maxiter=500, maxinner=10, record_history=True)
    res = minimize(f, start, config)
    assert res.status is Status.CONVERGED
    assert len(res.history) == res.nsteps

    for record, new_fun in zip(res.history, _final_values(res)):
        # desc = -gᵀd
        assert record.desc > 0
        assert record.line_search_success
        assert new_fun <= record.fun + C1 * record.alpha * (-record.desc) + 1e-12


def test_forcing_sequence_tolerance_is_capped(queue):
    f = Rosenbrock(queue)
    config = NewtonCGConfig(tol=1e-6, maxiter=500, maxinner=10, record_history=True)
    res = minimize(f, [-1.2, 1.0], config)
    assert all(rec.inner_tol <= 0.5 for rec in res.history)
    assert res.history[-1].inner_tol < res.history[0].inner_tol


def test_no_descent_direction_after_ten_attempts(queue, monkeypatch):
    tolerances = []

    def ascent_cg(queue, hessp, b, x, r, p, hp, tol, atol, maxiter, deps=(), workspace=None):
        tolerances.append(tol)
        # b holds -g, so x = g points uphill
        x.copy_(-b)
        return CGResult(event=Event(), iterations=3, residual_norm=0.0)

    monkeypatch.setattr(newton_module, "cg_solve", ascent_cg)

    f = _sum_of_squares(queue)
    x = torch.ones(4, dtype=torch.float64)
    res = newton_cg(queue, f, x, tol=1e-6, maxiter=10, maxinner=10)

    assert res.status is Status.NO_DESCENT_DIRECTION
    assert res.nit == 1
    assert res.n_inner == 30
    assert res.nsteps == 0
    assert tolerances == pytest.approx([0.5 * 10.0**-k for k in range(10)])
    assert torch.equal(x, torch.ones(4, dtype=torch.float64))
    # gradient sign is restored
    assert torch.equal(f.get_gradient(), 2.0 * torch.ones(4, dtype=torch.float64))


def test_descent_retry_recovers(queue, monkeypatch):
    calls = {"count": 0}
    real_cg = newton_module.cg_solve

    def flaky_cg(queue, hessp, b, x, r, p, hp, tol, atol, maxiter, deps=(), workspace=None):
        calls["count"] += 1
        if calls["count"] == 1:
            x.copy_(-b)
            return CGResult(event=Event(), iterations=1, residual_norm=0.0)
        return real_cg(queue, hessp, b, x, r, p, hp, tol, atol, maxiter, deps, workspace)

    monkeypatch.setattr(newton_module, "cg_solve", flaky_cg)

    f = _sum_of_squares(queue)
    x = torch.ones(4, dtype=torch.float64)
    res = newton_cg(queue, f, x, tol=1e-6, maxiter=10, maxinner=10)
    assert res.status is Status.CONVERGED
    assert torch.allclose(x, torch.zeros(4, dtype=torch.float64), atol=1e-12)


def test_solve_returns_tuple_and_result_unpacks(queue):
    f = _sum_of_squares(queue)
    x = torch.ones(4, dtype=torch.float64)
    event, nit, n_inner = solve(queue, f, x, 1e-6, 10, 10)
    event.wait()
    assert (nit, n_inner) == (2, 1)

    x = torch.ones(4, dtype=torch.float64)
    event, nit, n_inner = newton_cg(queue, f, x, 1e-6, 10, 10)
    assert isinstance(event, Event)
    assert nit == 2


def test_single_precision_solve():
    queue = ExecutionQueue(device("cpu", dtype=torch.float32))
    f = QuadraticFunction(queue, np.diag([1.0, 2.0, 3.0]), np.array([1.0, 1.0, 1.0]))
    res = minimize(f, [0.0, 0.0, 0.0], NewtonCGConfig(tol=1e-4, maxiter=20, maxinner=10))
    assert res.x.dtype == torch.float32
    assert res.status is Status.CONVERGED
    assert np.allclose(res.x.numpy(), [1.0, 0.5, 1.0 / 3.0], atol=1e-4)


def test_minimize_does_not_modify_start(queue):
    f = _sum_of_squares(queue)
    x0 = torch.ones(4, dtype=torch.float64)
    res = minimize(f, x0)
    assert torch.equal(x0, torch.ones(4, dtype=torch.float64))
    assert res.x is not x0


def test_invalid_arguments(queue):
    f = _sum_of_squares(queue)
    with pytest.raises(ValueError):
        newton_cg(queue, f, torch.ones(3, dtype=torch.float64), 1e-6, 10, 10)
    with pytest.raises(ValueError):
        newton_cg(queue, f, torch.ones(4, dtype=torch.float64), 0.0, 10, 10)
    with pytest.raises(ValueError):
        newton_cg(queue, f, torch.ones(4, dtype=torch.float64), 1e-6, -1, 10)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"c1": 0.0},
        {"backtracking_factor": 1.0},
        {"alpha0": 0.0},
        {"max_backtracking": 0},
        {"forcing_cap": 0.0},
        {"max_descent_attempts": 0},
        {"tolerance_shrink": 1.0},
    ],
)
def test_config_validation(kwargs):
    with pytest.raises(ValueError):
        NewtonCGConfig(**kwargs).validate()


def test_config_overrides_are_respected(queue, monkeypatch):
    tolerances = []

    def ascent_cg(queue, hessp, b, x, r, p, hp, tol, atol, maxiter, deps=(), workspace=None):
        tolerances.append(tol)
        x.copy_(-b)
        return CGResult(event=Event(), iterations=0, residual_norm=0.0)

    monkeypatch.setattr(newton_module, "cg_solve", ascent_cg)
    f = _sum_of_squares(queue)
    config = NewtonCGConfig(max_descent_attempts=3, tolerance_shrink=2.0, forcing_cap=0.25)
    res = newton_cg(queue, f, torch.ones(4, dtype=torch.float64), 1e-6, 5, 5, config=config)
    assert res.status is Status.NO_DESCENT_DIRECTION
    assert tolerances == pytest.approx([0.25, 0.125, 0.0625])


def test_logistic_regression_converges_on_noisy_data(queue, rng):
    n, p = 300, 3
    X = rng.normal(size=(n, p))
    w = np.array([0.5, 1.0, -2.0, 0.75])
    prob = 1.0 / (1.0 + np.exp(-(X @ w[1:] + w[0])))
    y = (rng.uniform(size=n) < prob).astype(float)

    f = LogLossFunction(queue, X, y)
    res = minimize(f, np.zeros(p + 1), NewtonCGConfig(tol=1e-8, maxiter=50, maxinner=20))
    assert res.status is Status.CONVERGED
    assert res.nit < 20

    f.update(res.x)
    assert torch.max(torch.abs(f.get_gradient())).item() < 1e-8


def test_logistic_regression_is_deterministic(logistic_data):
    data = logistic_data(200, 10)
    config = NewtonCGConfig(tol=1e-6, maxiter=50, maxinner=100)

    solutions = []
    for _ in range(2):
        queue = ExecutionQueue()
        f = LogLossFunction(queue, data.X_train, data.y_train, l2=1e-2)
        res = minimize(f, np.zeros(11), config)
        solutions.append(res)

    first, second = solutions
    assert first.nit == second.nit
    assert first.n_inner == second.n_inner
    assert torch.allclose(first.x, second.x, rtol=0.0, atol=1e-12)

    train_acc = accuracy(data.X_train, data.y_train, first.x)
    test_acc = accuracy(data.X_test, data.y_test, first.x)
    assert train_acc == accuracy(data.X_train, data.y_train, second.x)
    assert test_acc == accuracy(data.X_test, data.y_test, second.x)
    assert train_acc >= 0.9
    assert test_acc >= 0.8


@pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")
def test_cuda_solve_matches_cpu():
    A = np.diag([1.0, 2.0, 4.0])
    b = np.array([1.0, -1.0, 2.0])
    results = []
    for name in ("cpu", "cuda"):
        queue = ExecutionQueue(device(name))
        f = QuadraticFunction(queue, A, b)
        res = minimize(f, np.zeros(3), NewtonCGConfig(tol=1e-10, maxiter=20, maxinner=10))
        assert res.status is Status.CONVERGED
        results.append(res.x.cpu())
    assert torch.allclose(results[0], results[1], atol=1e-10)


class WrongSignGradient(BaseFunction):
    """``sum(x**2)`` reporting ``-grad``, so no trial step ever decreases it."""

    def _evaluate(self, x, need_hessian):
        self._value.copy_(torch.dot(x, x))
        torch.mul(x, -2.0, out=self._gradient)

    def _hessian_product(self, vec, out):
        torch.mul(vec, 2.0, out=out)


def test_failed_line_search_step_is_committed(queue):
    captured = StringIO()
    f = WrongSignGradient(queue, 2)
    x = torch.ones(2, dtype=torch.float64)
    config = NewtonCGConfig(max_backtracking=5, record_history=True)
    try:
        configure_logging(level=logging.WARNING, stream=captured)
        res = newton_cg(queue, f, x, tol=1e-6, maxiter=2, maxinner=10, config=config)
        res.event.wait()
    finally:
        configure_logging(level=logging.WARNING)

    assert res.status is Status.MAX_ITERATIONS_REACHED
    assert res.nsteps == 2
    assert [rec.line_search_success for rec in res.history] == [False, False]
    assert [rec.alpha for rec in res.history] == [0.0625, 0.0625]
    # d = [x, x] each step, so x grows by a factor 1 + 0.0625
    expected = torch.full((2,), 1.0625**2, dtype=torch.float64)
    assert torch.allclose(x, expected, rtol=0.0, atol=1e-14)
    assert "Line search found no sufficient decrease" in captured.getvalue()


def test_nan_direction_is_not_a_descent_direction(queue, monkeypatch):
    def nan_cg(queue, hessp, b, x, r, p, hp, tol, atol, maxiter, deps=(), workspace=None):
        x.fill_(float("nan"))
        return CGResult(event=Event(), iterations=1, residual_norm=float("nan"))

    monkeypatch.setattr(newton_module, "cg_solve", nan_cg)

    f = _sum_of_squares(queue)
    x = torch.ones(4, dtype=torch.float64)
    res = newton_cg(queue, f, x, tol=1e-6, maxiter=10, maxinner=10)

    assert res.status is Status.NO_DESCENT_DIRECTION
    assert res.n_inner == 10
    assert res.nsteps == 0
    assert torch.equal(x, torch.ones(4, dtype=torch.float64))


@pytest.mark.skipif(not torch.cuda.is_available(), reason="CUDA not available")
def test_cuda_result_survives_scratch_reuse():
    queue = ExecutionQueue(device("cuda"))
    n = 2048
    diag = torch.linspace(1.0, 4.0, n, dtype=torch.float64)
    f = QuadraticFunction(queue, torch.diag(diag), torch.ones(n, dtype=torch.float64))
    x = torch.zeros(n, dtype=torch.float64, device="cuda")

    res = newton_cg(queue, f, x, tol=1e-10, maxiter=20, maxinner=50)
    # the solver's scratch is freed here while its last copy may still be queued
    for _ in range(8):
        torch.full((4 * n + 1,), 1e6, dtype=torch.float64, device="cuda")
    res.event.wait()

    assert res.status is Status.CONVERGED
    assert torch.allclose(x.cpu(), 1.0 / diag, atol=1e-8)
