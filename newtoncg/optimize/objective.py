"""Objective functions consumed by the Newton-CG solver.

An objective is a stateful evaluator. ``update(x)`` recomputes the loss and
gradient at ``x`` (and, on request, the curvature data behind the
Hessian-vector product); the getters then expose the cached quantities until
the next ``update``. The gradient tensor is owned by the objective and is
overwritten in place by every update, so callers must not keep it across
updates.

All buffers are allocated in the constructor. Evaluations are submitted to
the objective's :class:`~newtoncg.backend.queue.ExecutionQueue` and ordered
after the dependencies passed to ``update``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

import numpy as np
import torch

from ..backend.primitives import read_scalar
from ..backend.queue import Event, EventList, ExecutionQueue, wait_all


class HessianProduct(ABC):
    """Operator ``v -> H v`` at the point of the last objective update."""

    @abstractmethod
    def __call__(
        self, vec: torch.Tensor, out: torch.Tensor, deps: Sequence[Event] = ()
    ) -> Event:
        """Write ``H @ vec`` into ``out`` and return the completion event."""


class _BoundHessianProduct(HessianProduct):
    def __init__(self, function: "BaseFunction") -> None:
        self._function = function

    def __call__(
        self, vec: torch.Tensor, out: torch.Tensor, deps: Sequence[Event] = ()
    ) -> Event:
        function = self._function
        if not function._hessian_ready:
            raise RuntimeError(
                "Hessian product used after an update without need_hessian=True"
            )
        return function.queue.submit(
            lambda: function._hessian_product(vec, out),
            [*function._events, *deps],
        )


class BaseFunction(ABC):
    """Base class for twice-differentiable objectives.

    Subclasses allocate ``self._gradient`` (length ``dimension``) and
    ``self._value`` (zero-dimensional) and implement :meth:`_evaluate` and
    :meth:`_hessian_product` as torch kernels writing into their buffers.
    """

    def __init__(self, queue: ExecutionQueue, dimension: int) -> None:
        self.queue = queue
        self._dimension = int(dimension)
        self._events: EventList = []
        self._updated = False
        self._hessian_ready = False
        self._hessp = _BoundHessianProduct(self)
        self._value = torch.zeros((), dtype=queue.dtype, device=queue.device.torch_device)
        self._gradient = torch.zeros(
            self._dimension, dtype=queue.dtype, device=queue.device.torch_device
        )

    @property
    def dimension(self) -> int:
        return self._dimension

    def update(
        self, x: torch.Tensor, need_hessian: bool = True, deps: Sequence[Event] = ()
    ) -> EventList:
        """Recompute value and gradient at ``x``.

        Args:
            x: Point of evaluation, shape ``(dimension,)``.
            need_hessian: Also prepare the Hessian-vector product for ``x``.
            deps: Events the evaluation must be ordered after.

        Returns:
            Events completing the evaluation; order reads of the gradient
            after them.
        """
        self._check_point(x)
        event = self.queue.submit(lambda: self._evaluate(x, need_hessian), deps)
        self._events = [event]
        self._updated = True
        self._hessian_ready = need_hessian
        return list(self._events)

    def get_value(self) -> float:
        """Loss at the last updated point (blocks until the update finished)."""
        self._require_update()
        wait_all(self._events)
        return read_scalar(self._value)

    def get_gradient(self) -> torch.Tensor:
        """Gradient buffer at the last updated point."""
        self._require_update()
        return self._gradient

    def get_hessian_product(self) -> HessianProduct:
        """Hessian-vector operator valid until the next update."""
        self._require_update()
        if not self._hessian_ready:
            raise RuntimeError("Objective was updated without need_hessian=True")
        return self._hessp

    @abstractmethod
    def _evaluate(self, x: torch.Tensor, need_hessian: bool) -> None:
        """Write loss into ``self._value`` and gradient into ``self._gradient``."""

    @abstractmethod
    def _hessian_product(self, vec: torch.Tensor, out: torch.Tensor) -> None:
        """Write ``H @ vec`` at the last updated point into ``out``."""

    def _require_update(self) -> None:
        if not self._updated:
            raise RuntimeError("Objective has not been updated at any point yet")

    def _check_point(self, x: torch.Tensor) -> None:
        if x.dim() != 1 or x.shape[0] != self._dimension:
            raise ValueError(
                f"Expected a vector of length {self._dimension}, got shape {tuple(x.shape)}"
            )
        if x.dtype != self.queue.dtype:
            raise ValueError(f"Expected dtype {self.queue.dtype}, got {x.dtype}")


class QuadraticFunction(BaseFunction):
    """``f(x) = 0.5 xᵀAx - bᵀx`` with constant Hessian ``A``.

    ``A`` should be symmetric; the solver additionally needs it positive
    definite to converge to ``A⁻¹b``.
    """

    def __init__(self, queue: ExecutionQueue, A, b) -> None:
        A = queue.device.tensor(A)
        b = queue.device.tensor(b)
        if A.dim() != 2 or A.shape[0] != A.shape[1]:
            raise ValueError(f"A must be a square matrix, got shape {tuple(A.shape)}")
        if b.shape != (A.shape[0],):
            raise ValueError(
                f"b must have shape ({A.shape[0]},), got {tuple(b.shape)}"
            )
        super().__init__(queue, A.shape[0])
        self.A = A
        self.b = b
        self._work = torch.empty_like(b)

    def _evaluate(self, x: torch.Tensor, need_hessian: bool) -> None:
        torch.mv(self.A, x, out=self._gradient)
        self._gradient.sub_(self.b)
        # f = 0.5 xᵀ(Ax - b) - 0.5 bᵀx = 0.5 xᵀ(g - b)
        torch.sub(self._gradient, self.b, out=self._work)
        torch.dot(x, self._work, out=self._value)
        self._value.mul_(0.5)

    def _hessian_product(self, vec: torch.Tensor, out: torch.Tensor) -> None:
        torch.mv(self.A, vec, out=out)


class LogLossFunction(BaseFunction):
    """Mean logistic loss with optional L2 penalty and intercept.

    With ``z = X w + w0`` and ``p = sigmoid(z)``::

        f(w) = -(1/n) Σ [y log p + (1 - y) log(1 - p)] + l2 Σ_j w_j²
        g(w) = (1/n) X̃ᵀ (p - y) + 2 l2 w
        H v  = (1/n) X̃ᵀ (p (1 - p) ⊙ X̃ v) + 2 l2 v

    where ``X̃`` is ``X`` with a leading column of ones when the intercept is
    fitted. The intercept is stored first in the parameter vector and is not
    penalised. The per-sample loss is evaluated as ``softplus(z) - y z``.
    """

    def __init__(
        self,
        queue: ExecutionQueue,
        X,
        y,
        l2: float = 0.0,
        fit_intercept: bool = True,
    ) -> None:
        X = queue.device.tensor(X)
        y = queue.device.tensor(y)
        if X.dim() != 2:
            raise ValueError(f"X must be 2-D, got shape {tuple(X.shape)}")
        if y.shape != (X.shape[0],):
            raise ValueError(
                f"y must have shape ({X.shape[0]},), got {tuple(y.shape)}"
            )
        if X.shape[0] == 0:
            raise ValueError("X must contain at least one sample")
        if l2 < 0:
            raise ValueError("l2 must be non-negative")
        if torch.any((y != 0) & (y != 1)):
            raise ValueError("y must contain only 0/1 labels")

        n_samples, n_features = X.shape
        if fit_intercept:
            ones = torch.ones(n_samples, 1, dtype=X.dtype, device=X.device)
            X = torch.cat([ones, X], dim=1)
        super().__init__(queue, X.shape[1])

        self.X = X
        self.y = y
        self.l2 = float(l2)
        self.fit_intercept = fit_intercept
        self.n_samples = n_samples
        self.n_features = n_features

        self._mask = torch.ones_like(self._gradient)
        if fit_intercept:
            self._mask[0] = 0.0
        self._z = torch.empty_like(y)
        self._prob = torch.empty_like(y)
        self._curvature = torch.empty_like(y)
        self._work = torch.empty_like(y)
        self._hess_work = torch.empty_like(y)
        self._zeros = torch.zeros_like(y)
        self._penalised = torch.empty_like(self._gradient)
        self._scalar = torch.empty_like(self._value)

    def _evaluate(self, x: torch.Tensor, need_hessian: bool) -> None:
        torch.mv(self.X, x, out=self._z)
        torch.sigmoid(self._z, out=self._prob)

        torch.logaddexp(self._z, self._zeros, out=self._work)
        self._work.addcmul_(self.y, self._z, value=-1.0)
        torch.sum(self._work, dim=0, out=self._value)
        self._value.div_(self.n_samples)

        torch.sub(self._prob, self.y, out=self._work)
        torch.mv(self.X.t(), self._work, out=self._gradient)
        self._gradient.div_(self.n_samples)

        if self.l2 > 0:
            torch.mul(x, self._mask, out=self._penalised)
            torch.dot(self._penalised, x, out=self._scalar)
            self._value.add_(self._scalar, alpha=self.l2)
            self._gradient.add_(self._penalised, alpha=2.0 * self.l2)

        if need_hessian:
            torch.mul(self._prob, self._prob, out=self._curvature)
            torch.sub(self._prob, self._curvature, out=self._curvature)
            self._curvature.div_(self.n_samples)

    def _hessian_product(self, vec: torch.Tensor, out: torch.Tensor) -> None:
        torch.mv(self.X, vec, out=self._hess_work)
        self._hess_work.mul_(self._curvature)
        torch.mv(self.X.t(), self._hess_work, out=out)
        if self.l2 > 0:
            out.addcmul_(self._mask, vec, value=2.0 * self.l2)


def predict_proba(X, params, fit_intercept: bool = True) -> np.ndarray:
    """Class-1 probabilities of a logistic model with parameters ``params``.

    Args:
        X: Samples, shape ``(n, p)``.
        params: Parameter vector, intercept first when ``fit_intercept``.
        fit_intercept: Whether ``params`` carries an intercept.
    """
    X = np.asarray(X, dtype=float)
    params = np.asarray(
        params.detach().cpu() if isinstance(params, torch.Tensor) else params,
        dtype=float,
    )
    if fit_intercept:
        z = X @ params[1:] + params[0]
    else:
        z = X @ params
    return 1.0 / (1.0 + np.exp(-z))


def accuracy(X, y, params, fit_intercept: bool = True) -> float:
    """Fraction of samples whose thresholded probability matches ``y``."""
    labels = (predict_proba(X, params, fit_intercept) >= 0.5).astype(int)
    return float(np.mean(labels == np.asarray(y, dtype=int)))


__all__ = [
    "BaseFunction",
    "HessianProduct",
    "LogLossFunction",
    "QuadraticFunction",
    "accuracy",
    "predict_proba",
]
