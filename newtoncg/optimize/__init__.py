"""Inexact Newton optimization with a truncated CG inner solver.

Example
-------
>>> import torch
>>> from newtoncg.backend import ExecutionQueue
>>> from newtoncg.optimize import QuadraticFunction, newton_cg
>>> queue = ExecutionQueue()
>>> f = QuadraticFunction(queue, 2.0 * torch.eye(4, dtype=torch.float64), torch.zeros(4))
>>> x = torch.ones(4, dtype=torch.float64)
>>> res = newton_cg(queue, f, x, tol=1e-6, maxiter=10, maxinner=10)
>>> res.status.value
'converged'
"""

from .cg import cg_solve
from .core import (
    C1,
    FORCING_CAP,
    MAX_DESCENT_ATTEMPTS,
    CGResult,
    IterationRecord,
    LineSearchResult,
    NewtonCGConfig,
    NewtonCGResult,
    Status,
)
from .line_search import backtracking
from .newton import minimize, newton_cg, solve
from .objective import (
    BaseFunction,
    HessianProduct,
    LogLossFunction,
    QuadraticFunction,
    accuracy,
    predict_proba,
)

__all__ = [
    "C1",
    "FORCING_CAP",
    "MAX_DESCENT_ATTEMPTS",
    "BaseFunction",
    "CGResult",
    "HessianProduct",
    "IterationRecord",
    "LineSearchResult",
    "LogLossFunction",
    "NewtonCGConfig",
    "NewtonCGResult",
    "QuadraticFunction",
    "Status",
    "accuracy",
    "backtracking",
    "cg_solve",
    "minimize",
    "newton_cg",
    "predict_proba",
    "solve",
]
