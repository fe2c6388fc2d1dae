"""Execution queue and completion events.

Every primitive is submitted to an :class:`ExecutionQueue` together with the
events it depends on and returns an :class:`Event` for the work it enqueued.
On CUDA devices the queue owns a dedicated stream, dependencies become
``stream.wait_event`` calls and nothing blocks the host until a caller waits
on an event. On the CPU torch executes kernels eagerly, so submitted work is
already complete when ``submit`` returns and events are trivially satisfied.
"""

from __future__ import annotations

from typing import Callable, Iterable, List, Optional, Sequence

import torch

from ..core.device import Device, default_device


class Event:
    """Completion handle for work submitted to an :class:`ExecutionQueue`."""

    __slots__ = ("_cuda_event",)

    def __init__(self, cuda_event: Optional[torch.cuda.Event] = None) -> None:
        self._cuda_event = cuda_event

    @property
    def cuda_event(self) -> Optional[torch.cuda.Event]:
        return self._cuda_event

    def query(self) -> bool:
        """Return True if the work has finished, without blocking."""
        if self._cuda_event is None:
            return True
        return self._cuda_event.query()

    def wait(self) -> None:
        """Block until the work has finished.

        Asynchronous device errors raised by torch surface here.
        """
        if self._cuda_event is not None:
            self._cuda_event.synchronize()

    def __repr__(self) -> str:
        kind = "cuda" if self._cuda_event is not None else "host"
        return f"Event({kind}, done={self.query()})"


EventList = List[Event]


def wait_all(events: Iterable[Event]) -> None:
    """Block until every event in ``events`` has finished."""
    for event in events:
        event.wait()


class ExecutionQueue:
    """Ordered submission target for solver primitives.

    A queue is owned by one solve at a time; it is not a synchronisation
    primitive between concurrent solves.
    """

    def __init__(self, device: Optional[Device] = None) -> None:
        self.device = device if device is not None else default_device()
        if self.device.is_cuda:
            self._stream: Optional[torch.cuda.Stream] = torch.cuda.Stream(
                device=self.device.torch_device
            )
        else:
            self._stream = None

    def __repr__(self) -> str:
        return f"ExecutionQueue(device={self.device!r})"

    @property
    def dtype(self) -> torch.dtype:
        return self.device.dtype

    @property
    def stream(self) -> Optional[torch.cuda.Stream]:
        return self._stream

    def submit(self, kernel: Callable[[], None], deps: Sequence[Event] = ()) -> Event:
        """Run ``kernel`` after every event in ``deps`` and return its event.

        Args:
            kernel: Zero-argument callable enqueueing torch operations.
            deps: Events the kernel must be ordered after.

        Returns:
            Event that completes once the kernel's work has finished.
        """
        if self._stream is None:
            kernel()
            return Event()

        if not deps:
            # order after tensors produced outside the queue (e.g. allocation)
            self._stream.wait_stream(torch.cuda.current_stream(self.device.torch_device))
        for dep in deps:
            if dep.cuda_event is not None:
                self._stream.wait_event(dep.cuda_event)

        with torch.cuda.stream(self._stream):
            kernel()
            done = torch.cuda.Event()
            done.record(self._stream)
        return Event(done)

    def wait(self) -> None:
        """Block until everything submitted to the queue has finished."""
        if self._stream is not None:
            self._stream.synchronize()


__all__ = ["Event", "EventList", "ExecutionQueue", "wait_all"]
