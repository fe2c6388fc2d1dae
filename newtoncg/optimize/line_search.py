"""Backtracking line search on device-resident vectors."""

from __future__ import annotations

from typing import Optional, Sequence

import torch

from ..backend.primitives import axpy, dot_product, empty, read_scalar
from ..backend.queue import Event, ExecutionQueue
from ..logging import get_logger
from .core import C1, LineSearchResult
from .objective import BaseFunction

logger = get_logger(__name__)


def backtracking(
    queue: ExecutionQueue,
    f: BaseFunction,
    x: torch.Tensor,
    direction: torch.Tensor,
    result: torch.Tensor,
    alpha0: float = 1.0,
    c1: float = C1,
    x_updated: bool = True,
    deps: Sequence[Event] = (),
    max_iter: int = 100,
    factor: float = 0.5,
    workspace: Optional[torch.Tensor] = None,
) -> LineSearchResult:
    """Armijo backtracking from ``x`` along ``direction``.

    Accepts the first ``alpha = alpha0 * factor**k`` with
    ``f(x + alpha d) <= f(x) + c1 * alpha * gᵀd``. The accepted trial point is
    left in ``result``.

    If every trial is rejected, the last (smallest) tried step is returned
    with ``success=False`` and ``result`` still holds ``x + alpha d``; the
    caller decides whether to commit it.

    Args:
        queue: Execution queue for all primitives.
        f: Objective. With ``x_updated`` its cache must describe ``x``.
        x: Starting point (not modified).
        direction: Search direction.
        result: Output buffer for the trial point.
        alpha0: Initial step length.
        c1: Sufficient-decrease constant in (0, 1).
        x_updated: Whether ``f`` was already updated at ``x``.
        deps: Events reads of ``x`` and ``direction`` must follow.
        max_iter: Number of trial points.
        factor: Shrink factor in (0, 1) between trials.
        workspace: Zero-dimensional tensor for reductions; allocated if None.

    Returns:
        LineSearchResult describing the step. The objective cache is left at
        the last trial point.
    """
    if not (0 < c1 < 1):
        raise ValueError("Armijo constant c1 must lie in (0, 1)")
    if not (0 < factor < 1):
        raise ValueError("factor must lie in (0, 1)")
    if max_iter < 1:
        raise ValueError("max_iter must be at least 1")
    if workspace is None:
        workspace = empty(queue, 1, dtype=x.dtype)[0]

    last: Sequence[Event] = list(deps)
    if not x_updated:
        last = f.update(x, need_hessian=False, deps=last)
    fun0 = f.get_value()

    event = dot_product(queue, f.get_gradient(), direction, workspace, last)
    event.wait()
    slope = read_scalar(workspace)

    alpha = float(alpha0)
    fun = fun0
    nfev = 0
    for trial in range(max_iter):
        event = axpy(queue, alpha, direction, x, result, [event])
        event = f.update(result, need_hessian=False, deps=[event])[-1]
        fun = f.get_value()
        nfev += 1
        if fun <= fun0 + c1 * alpha * slope:
            return LineSearchResult(
                event=event,
                alpha=alpha,
                success=True,
                nfev=nfev,
                fun=fun,
                slope=slope,
                fun0=fun0,
            )
        if trial + 1 < max_iter:
            alpha *= factor

    logger.warning(
        "Line search found no sufficient decrease in %d trials; returning alpha=%.3e",
        max_iter,
        alpha,
    )
    return LineSearchResult(
        event=event,
        alpha=alpha,
        success=False,
        nfev=nfev,
        fun=fun,
        slope=slope,
        fun0=fun0,
    )


__all__ = ["backtracking"]
