"""Truncated conjugate gradient for the Newton system.

Solves ``H x = b`` for a symmetric operator given only through Hessian-vector
products, stopping on a relative residual tolerance (inexact Newton step) or
on non-positive curvature (Steihaug truncation).

References:
    - Nocedal & Wright, *Numerical Optimization*, Algorithm 7.1 (2006)
    - Steihaug, "The conjugate gradient method and trust regions in large
      scale optimization", SIAM J. Numer. Anal. 20 (1983)
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import torch

from ..backend.primitives import axpy, copy, dot_product, empty, read_scalar
from ..backend.queue import Event, ExecutionQueue
from ..logging import get_logger
from .core import CGResult
from .objective import HessianProduct

logger = get_logger(__name__)


def cg_solve(
    queue: ExecutionQueue,
    hessp: HessianProduct,
    b: torch.Tensor,
    x: torch.Tensor,
    r: torch.Tensor,
    p: torch.Tensor,
    hp: torch.Tensor,
    tol: float,
    atol: float,
    maxiter: int,
    deps: Sequence[Event] = (),
    workspace: Optional[torch.Tensor] = None,
) -> CGResult:
    """Approximately solve ``H x = b`` in place, starting from ``x``.

    The caller chooses the right-hand side; the Newton driver passes the
    negated gradient so that ``x`` becomes the Newton direction.

    Args:
        queue: Execution queue for all primitives.
        hessp: Hessian-vector operator.
        b: Right-hand side.
        x: Initial guess on entry, solution on exit.
        r: Scratch vector holding the residual ``b - H x``.
        p: Scratch vector holding the search direction.
        hp: Scratch vector holding ``H p``.
        tol: Relative tolerance; stop once ``|r| <= tol * |r0|``.
        atol: Absolute floor on the residual threshold.
        maxiter: Maximum number of inner steps.
        deps: Events the first read of ``b`` and ``x`` must follow.
        workspace: Zero-dimensional tensor for reductions; allocated if None.

    Returns:
        CGResult with the completion event of the last write to ``x``.
    """
    if maxiter < 0:
        raise ValueError("maxiter must be non-negative")
    if workspace is None:
        workspace = empty(queue, 1, dtype=b.dtype)[0]

    last = hessp(x, hp, deps)
    last = axpy(queue, -1.0, hp, b, r, [last])
    last = copy(queue, p, r, [last])
    last = dot_product(queue, r, r, workspace, [last])
    last.wait()
    rr = read_scalar(workspace)

    r0_norm = math.sqrt(rr)
    threshold = max(tol * r0_norm, atol)
    if r0_norm <= threshold:
        return CGResult(event=last, iterations=0, residual_norm=r0_norm)

    for it in range(maxiter):
        last = hessp(p, hp, [last])
        last = dot_product(queue, p, hp, workspace, [last])
        last.wait()
        curvature = read_scalar(workspace)

        if curvature <= 0:
            if it == 0:
                # fall back to the steepest descent direction of the model
                last = copy(queue, x, p, [last])
            logger.debug(
                "CG truncated on non-positive curvature %.3e at inner step %d",
                curvature,
                it + 1,
            )
            return CGResult(
                event=last,
                iterations=it + 1,
                residual_norm=math.sqrt(rr),
                negative_curvature=True,
            )

        alpha = rr / curvature
        last = axpy(queue, alpha, p, x, x, [last])
        last = axpy(queue, -alpha, hp, r, r, [last])
        last = dot_product(queue, r, r, workspace, [last])
        last.wait()
        rr_new = read_scalar(workspace)

        if math.sqrt(rr_new) <= threshold:
            return CGResult(
                event=last, iterations=it + 1, residual_norm=math.sqrt(rr_new)
            )

        beta = rr_new / rr
        last = axpy(queue, beta, p, r, p, [last])
        rr = rr_new

    return CGResult(event=last, iterations=maxiter, residual_norm=math.sqrt(rr))


__all__ = ["cg_solve"]
