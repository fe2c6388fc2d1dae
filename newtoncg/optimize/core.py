"""Status, configuration and result containers shared by the Newton-CG pieces."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional

from ..backend.queue import Event

C1 = 1e-4
FORCING_CAP = 0.5
MAX_DESCENT_ATTEMPTS = 10


class Status(Enum):
    """Termination state of a Newton-CG solve."""

    ITERATING = "iterating"
    CONVERGED = "converged"
    NO_DESCENT_DIRECTION = "no_descent_direction"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


@dataclass(frozen=True)
class NewtonCGConfig:
    """
    Configuration of a Newton-CG solve.

    Args:
        tol: Convergence threshold on the max-abs gradient component.
        maxiter: Outer iteration budget.
        maxinner: Inner CG iteration budget per solve attempt.
        c1: Sufficient-decrease constant of the backtracking line search.
        alpha0: Initial trial step.
        backtracking_factor: Step shrink factor between rejected trials.
        max_backtracking: Trial budget of the line search.
        forcing_cap: Upper bound of the forcing sequence ``min(sqrt(|g|_1), cap)``.
        max_descent_attempts: CG attempts before giving up on a descent direction.
        tolerance_shrink: Division applied to the inner tolerance on each retry.
        record_history: Keep one :class:`IterationRecord` per committed step.
    """

    tol: float = 1e-6
    maxiter: int = 100
    maxinner: int = 100
    c1: float = C1
    alpha0: float = 1.0
    backtracking_factor: float = 0.5
    max_backtracking: int = 100
    forcing_cap: float = FORCING_CAP
    max_descent_attempts: int = MAX_DESCENT_ATTEMPTS
    tolerance_shrink: float = 10.0
    record_history: bool = False

    def validate(self) -> None:
        """Raise ValueError if any field is out of range."""
        if not self.tol > 0:
            raise ValueError("tol must be positive")
        if self.maxiter < 0 or self.maxinner < 0:
            raise ValueError("Iteration budgets must be non-negative")
        if not (0 < self.c1 < 1):
            raise ValueError("Armijo constant c1 must lie in (0, 1)")
        if not (0 < self.backtracking_factor < 1):
            raise ValueError("backtracking_factor must lie in (0, 1)")
        if not self.alpha0 > 0:
            raise ValueError("alpha0 must be positive")
        if self.max_backtracking < 1:
            raise ValueError("max_backtracking must be at least 1")
        if not self.forcing_cap > 0:
            raise ValueError("forcing_cap must be positive")
        if self.max_descent_attempts < 1:
            raise ValueError("max_descent_attempts must be at least 1")
        if not self.tolerance_shrink > 1:
            raise ValueError("tolerance_shrink must be greater than 1")


@dataclass
class CGResult:
    """Outcome of one inner CG solve.

    Attributes:
        event: Completion of the last write to the solution vector.
        iterations: Inner steps performed.
        residual_norm: Euclidean norm of the final residual.
        negative_curvature: True if the solve was truncated on ``pᵀHp <= 0``.
    """

    event: Event
    iterations: int
    residual_norm: float
    negative_curvature: bool = False


@dataclass
class LineSearchResult:
    """Outcome of a backtracking line search.

    Attributes:
        event: Completion of the write of the accepted trial point.
        alpha: Accepted (or, on failure, smallest tried) step length.
        success: Whether the sufficient-decrease condition was met.
        nfev: Objective evaluations performed at trial points.
        fun: Objective value at the returned trial point.
        slope: Directional derivative ``gᵀd`` at the starting point.
        fun0: Objective value at the starting point.
    """

    event: Event
    alpha: float
    success: bool
    nfev: int
    fun: float
    slope: float
    fun0: float


@dataclass
class IterationRecord:
    """Diagnostics of one committed outer step."""

    iteration: int
    fun: float
    grad_max_abs: float
    inner_tol: float
    desc: float
    alpha: float
    update_norm: float
    line_search_success: bool


@dataclass
class NewtonCGResult:
    """
    Result of a Newton-CG solve.

    Iterating a result yields ``(event, nit, n_inner)``, so it unpacks like
    the plain tuple contract of :func:`~newtoncg.optimize.newton.solve`.

    Attributes:
        event: Completion of the last write to ``x``; wait on it before reading.
        nit: Outer iterations started, including the one detecting convergence.
        n_inner: Inner CG iterations summed over all attempts.
        status: Termination state.
        message: Human-readable explanation of ``status``.
        nsteps: Steps committed to ``x``.
        grad_norm: L1 norm of the last evaluated gradient.
        grad_max_abs: Max-abs component of the last evaluated gradient.
        update_norm: ``alpha * |d|`` of the last committed step.
        fun: Objective value at the last evaluated point.
        x: Optimized vector, set by :func:`~newtoncg.optimize.newton.minimize`.
        history: Per-step records when requested.
    """

    event: Event
    nit: int
    n_inner: int
    status: Status
    message: str
    nsteps: int = 0
    grad_norm: float = float("nan")
    grad_max_abs: float = float("nan")
    update_norm: float = float("nan")
    fun: float = float("nan")
    x: Optional[object] = None
    history: List[IterationRecord] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status is Status.CONVERGED

    def __iter__(self) -> Iterator:
        return iter((self.event, self.nit, self.n_inner))


__all__ = [
    "C1",
    "FORCING_CAP",
    "MAX_DESCENT_ATTEMPTS",
    "CGResult",
    "IterationRecord",
    "LineSearchResult",
    "NewtonCGConfig",
    "NewtonCGResult",
    "Status",
]
