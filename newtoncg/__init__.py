"""newtoncg - a Newton-CG optimizer for smooth objectives on torch devices."""

__version__ = "0.1.0"

from .backend import Event, ExecutionQueue, wait_all
from .core import Device, default_device, device
from .logging import configure_logging, get_logger, set_log_level
from .optimize import (
    BaseFunction,
    HessianProduct,
    LogLossFunction,
    NewtonCGConfig,
    NewtonCGResult,
    QuadraticFunction,
    Status,
    backtracking,
    cg_solve,
    minimize,
    newton_cg,
    solve,
)

__all__ = [
    "__version__",
    "BaseFunction",
    "Device",
    "Event",
    "ExecutionQueue",
    "HessianProduct",
    "LogLossFunction",
    "NewtonCGConfig",
    "NewtonCGResult",
    "QuadraticFunction",
    "Status",
    "backtracking",
    "cg_solve",
    "configure_logging",
    "default_device",
    "device",
    "get_logger",
    "minimize",
    "newton_cg",
    "set_log_level",
    "solve",
    "wait_all",
]
