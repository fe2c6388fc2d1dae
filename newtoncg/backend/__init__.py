"""Asynchronous execution queue and dense vector primitives."""

from .primitives import (
    axpy,
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
from .queue import Event, EventList, ExecutionQueue, wait_all

__all__ = [
    "Event",
    "EventList",
    "ExecutionQueue",
    "wait_all",
    "axpy",
    "copy",
    "dot_product",
    "element_wise",
    "empty",
    "fill",
    "l1_norm",
    "max_abs",
    "partition",
    "read_scalar",
]
