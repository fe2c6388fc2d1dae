"""Dense vector primitives submitted through an execution queue.

All primitives write into preallocated tensors and return the completion
:class:`~newtoncg.backend.queue.Event`. Reductions store their result in a
zero-dimensional workspace slot; read it on the host with :func:`read_scalar`
only after waiting on the returned event.
"""

from __future__ import annotations

import math
from typing import Callable, List, Optional, Sequence, Tuple

import torch

from .queue import Event, ExecutionQueue

UnaryKernel = Callable[..., torch.Tensor]


def empty(
    queue: ExecutionQueue, n: int, dtype: Optional[torch.dtype] = None
) -> torch.Tensor:
    """Allocate an uninitialised vector of length ``n`` on the queue's device.

    On CUDA the block comes from the queue stream's allocator pool, so once
    the tensor is dropped it is only handed out again to work ordered after
    everything already submitted to the queue.
    """
    if n < 0:
        raise ValueError(f"Vector length must be non-negative, got {n}")
    if queue.stream is None:
        return torch.empty(n, dtype=dtype or queue.dtype, device=queue.device.torch_device)
    with torch.cuda.stream(queue.stream):
        return torch.empty(
            n, dtype=dtype or queue.dtype, device=queue.device.torch_device
        )


def partition(
    buffer: torch.Tensor, n: int, parts: int
) -> Tuple[List[torch.Tensor], torch.Tensor]:
    """Split ``buffer`` into ``parts`` length-``n`` views plus the remaining tail.

    Raises:
        ValueError: If the buffer is shorter than ``parts * n``.
    """
    if buffer.dim() != 1 or buffer.shape[0] < parts * n:
        raise ValueError(
            f"Buffer of shape {tuple(buffer.shape)} cannot hold {parts} slices of length {n}"
        )
    slices = [buffer[i * n : (i + 1) * n] for i in range(parts)]
    return slices, buffer[parts * n :]


def fill(
    queue: ExecutionQueue, dst: torch.Tensor, value: float, deps: Sequence[Event] = ()
) -> Event:
    return queue.submit(lambda: dst.fill_(value), deps)


def copy(
    queue: ExecutionQueue,
    dst: torch.Tensor,
    src: torch.Tensor,
    deps: Sequence[Event] = (),
) -> Event:
    """Copy ``src`` into ``dst`` (same length)."""
    _check_same_shape(dst, src)
    return queue.submit(lambda: dst.copy_(src), deps)


def element_wise(
    queue: ExecutionQueue,
    op: UnaryKernel,
    src: torch.Tensor,
    dst: torch.Tensor,
    deps: Sequence[Event] = (),
) -> Event:
    """Apply the unary torch kernel ``op`` as ``op(src, out=dst)``.

    ``src`` and ``dst`` may be the same tensor.
    """
    _check_same_shape(dst, src)
    return queue.submit(lambda: op(src, out=dst), deps)


def axpy(
    queue: ExecutionQueue,
    alpha: float,
    x: torch.Tensor,
    y: torch.Tensor,
    dst: torch.Tensor,
    deps: Sequence[Event] = (),
) -> Event:
    """Compute ``dst = y + alpha * x``; ``dst`` may alias ``y``."""
    _check_same_shape(x, y)
    _check_same_shape(dst, y)
    return queue.submit(lambda: torch.add(y, x, alpha=alpha, out=dst), deps)


def dot_product(
    queue: ExecutionQueue,
    a: torch.Tensor,
    b: torch.Tensor,
    out: torch.Tensor,
    deps: Sequence[Event] = (),
) -> Event:
    _check_same_shape(a, b)
    return queue.submit(lambda: torch.dot(a, b, out=out), deps)


def l1_norm(
    queue: ExecutionQueue,
    v: torch.Tensor,
    out: torch.Tensor,
    deps: Sequence[Event] = (),
) -> Event:
    return queue.submit(
        lambda: torch.linalg.vector_norm(v, ord=1, out=out), deps
    )


def max_abs(
    queue: ExecutionQueue,
    v: torch.Tensor,
    out: torch.Tensor,
    deps: Sequence[Event] = (),
) -> Event:
    """Largest absolute component of ``v`` (0 for an empty vector)."""
    if v.numel() == 0:
        return fill(queue, out, 0.0, deps)
    return queue.submit(
        lambda: torch.linalg.vector_norm(v, ord=math.inf, out=out), deps
    )


def read_scalar(out: torch.Tensor) -> float:
    """Read a reduction result back to the host (blocks on CUDA)."""
    return float(out.item())


def _check_same_shape(a: torch.Tensor, b: torch.Tensor) -> None:
    if a.shape != b.shape:
        raise ValueError(f"Shape mismatch: {tuple(a.shape)} vs {tuple(b.shape)}")


__all__ = [
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
