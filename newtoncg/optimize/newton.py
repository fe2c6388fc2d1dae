"""Inexact Newton method with a truncated CG inner solver.

Each outer iteration evaluates the gradient, picks the inner tolerance from the
forcing sequence ``min(sqrt(|g|_1), 0.5)``, solves ``H d = -g`` with CG,
retries with a tighter tolerance while ``d`` is not a descent direction, and
takes an Armijo backtracking step along ``d``.

Work is submitted to an :class:`~newtoncg.backend.queue.ExecutionQueue` and
chained through events. The host only blocks to read back the gradient norms,
the descent test ``gᵀd`` and the scalars consumed by CG and the line search.
"""

from __future__ import annotations

import dataclasses
import math
from typing import Optional, Sequence

import torch

from ..backend.primitives import (
    copy,
    dot_product,
    element_wise,
    empty,
    fill,
    l1_norm,
    max_abs,
    partition,
    read_scalar,
)
from ..backend.queue import Event, ExecutionQueue
from ..logging import get_logger
from .cg import cg_solve
from .core import IterationRecord, NewtonCGConfig, NewtonCGResult, Status
from .line_search import backtracking
from .objective import BaseFunction

logger = get_logger(__name__)

_MESSAGES = {
    Status.CONVERGED: "Gradient tolerance satisfied.",
    Status.NO_DESCENT_DIRECTION: "Failed to find a descent direction.",
    Status.MAX_ITERATIONS_REACHED: "Maximum iterations reached.",
}


def newton_cg(
    queue: ExecutionQueue,
    f: BaseFunction,
    x: torch.Tensor,
    tol: float,
    maxiter: int,
    maxinner: int,
    deps: Sequence[Event] = (),
    *,
    config: Optional[NewtonCGConfig] = None,
) -> NewtonCGResult:
    """Minimize ``f`` starting from ``x``, updating ``x`` in place.

    Args:
        queue: Execution queue for all primitives.
        f: Objective providing value, gradient and Hessian-vector products.
        x: Starting point; holds the last committed iterate on return.
        tol: Stop once the max-abs gradient component drops below ``tol``.
        maxiter: Outer iteration budget.
        maxinner: Inner CG iteration budget per attempt.
        deps: Events the first read of ``x`` must follow.
        config: Remaining tuning constants; ``tol``, ``maxiter`` and
            ``maxinner`` given as arguments take precedence.

    Returns:
        NewtonCGResult. Wait on ``result.event`` before reading ``x``.

    Raises:
        ValueError: If ``x`` does not match the objective or a setting is
            out of range.
    """
    if config is None:
        config = NewtonCGConfig(tol=tol, maxiter=maxiter, maxinner=maxinner)
    else:
        config = dataclasses.replace(config, tol=tol, maxiter=maxiter, maxinner=maxinner)
    config.validate()

    if x.dim() != 1 or x.shape[0] != f.dimension:
        raise ValueError(
            f"x must be a vector of length {f.dimension}, got shape {tuple(x.shape)}"
        )
    n = x.shape[0]

    buffer = empty(queue, 4 * n + 1, dtype=x.dtype)
    (buffer1, buffer2, buffer3, direction), tail = partition(buffer, n, 4)
    scalar = tail[0]

    last_iter_deps = list(deps)
    last = Event()
    status = Status.ITERATING
    result = NewtonCGResult(
        event=last, nit=0, n_inner=0, status=status, message=""
    )

    while result.nit < config.maxiter:
        result.nit += 1

        update_events = f.update(x, need_hessian=True, deps=last_iter_deps)
        gradient = f.get_gradient()

        last = l1_norm(queue, gradient, scalar, update_events)
        last.wait()
        result.grad_norm = read_scalar(scalar)
        last = max_abs(queue, gradient, scalar, [last])
        last.wait()
        result.grad_max_abs = read_scalar(scalar)
        result.fun = f.get_value()

        logger.debug(
            "Newton-CG iter: %d, grad_norm: %g, max_abs: %g, loss: %g",
            result.nit,
            result.grad_norm,
            result.grad_max_abs,
            result.fun,
        )

        if result.grad_max_abs < config.tol:
            status = Status.CONVERGED
            break

        tol_k = min(math.sqrt(result.grad_norm), config.forcing_cap)

        # CG right-hand side is -g
        last = element_wise(queue, torch.neg, gradient, gradient, [last])
        last = fill(queue, direction, 0.0, [last])

        # a NaN direction counts as a failed attempt
        desc = math.nan
        attempt = 0
        while not desc >= 0 and attempt < config.max_descent_attempts:
            if attempt > 0:
                tol_k /= config.tolerance_shrink
                last = fill(queue, direction, 0.0, [last])
                logger.info(
                    "Direction is not a descent direction (desc=%g); retrying CG with tol %g",
                    desc,
                    tol_k,
                )
            attempt += 1

            solved = cg_solve(
                queue,
                f.get_hessian_product(),
                gradient,
                direction,
                buffer1,
                buffer2,
                buffer3,
                tol_k,
                0.0,
                config.maxinner,
                [last],
                workspace=scalar,
            )
            result.n_inner += solved.iterations

            # (-g)ᵀd > 0 for a descent direction
            last = dot_product(queue, gradient, direction, scalar, [solved.event])
            last.wait()
            desc = read_scalar(scalar)

        last = element_wise(queue, torch.neg, gradient, gradient, [last])

        if not desc >= 0:
            status = Status.NO_DESCENT_DIRECTION
            logger.warning(
                "No descent direction after %d CG attempts at iteration %d",
                attempt,
                result.nit,
            )
            break

        step = backtracking(
            queue,
            f,
            x,
            direction,
            buffer2,
            alpha0=config.alpha0,
            c1=config.c1,
            x_updated=True,
            deps=[last],
            max_iter=config.max_backtracking,
            factor=config.backtracking_factor,
            workspace=scalar,
        )

        last = dot_product(queue, direction, direction, scalar, [step.event])
        last.wait()
        result.update_norm = math.sqrt(read_scalar(scalar)) * step.alpha

        if config.record_history:
            result.history.append(
                IterationRecord(
                    iteration=result.nit,
                    fun=result.fun,
                    grad_max_abs=result.grad_max_abs,
                    inner_tol=tol_k,
                    desc=desc,
                    alpha=step.alpha,
                    update_norm=result.update_norm,
                    line_search_success=step.success,
                )
            )

        # the accepted trial point is in buffer2
        last = copy(queue, x, buffer2, [last])
        last_iter_deps = [last]
        result.nsteps += 1

    if status is Status.ITERATING:
        status = Status.MAX_ITERATIONS_REACHED

    result.event = last
    result.status = status
    result.message = _MESSAGES[status]
    logger.info(
        "Newton-CG finished: %s after %d iterations (%d inner)",
        status.value,
        result.nit,
        result.n_inner,
    )
    return result


def solve(
    queue: ExecutionQueue,
    f: BaseFunction,
    x: torch.Tensor,
    tol: float,
    maxiter: int,
    maxinner: int,
    deps: Sequence[Event] = (),
) -> tuple[Event, int, int]:
    """Run :func:`newton_cg` and return ``(event, outer_iterations, inner_iterations)``."""
    event, nit, n_inner = newton_cg(queue, f, x, tol, maxiter, maxinner, deps)
    return event, nit, n_inner


def minimize(
    f: BaseFunction,
    x0,
    config: Optional[NewtonCGConfig] = None,
    queue: Optional[ExecutionQueue] = None,
) -> NewtonCGResult:
    """Minimize ``f`` from a copy of ``x0`` and attach the solution as ``result.x``.

    Args:
        f: Objective to minimize.
        x0: Starting point (tensor, array or sequence); never modified.
        config: Solver settings; defaults to :class:`NewtonCGConfig()`.
        queue: Execution queue; defaults to the objective's queue.

    Returns:
        Completed NewtonCGResult with ``x`` set.
    """
    if config is None:
        config = NewtonCGConfig()
    if queue is None:
        queue = f.queue
    x = queue.device.tensor(x0).clone()
    result = newton_cg(
        queue, f, x, config.tol, config.maxiter, config.maxinner, config=config
    )
    result.event.wait()
    result.x = x
    return result


__all__ = ["minimize", "newton_cg", "solve"]
