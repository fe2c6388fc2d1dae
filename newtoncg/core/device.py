"""Device abstraction for solver vectors."""

from __future__ import annotations

import torch

_FLOAT_DTYPES = (torch.float32, torch.float64)


class Device:
    """
    Describes where solver vectors live and the floating type of a solve.

    The dtype is the working precision: every norm, dot product and
    element-wise map of a solve runs in it. Attributes should not be modified
    after construction.
    """

    def __init__(
        self,
        name: str,
        torch_device: torch.device,
        dtype: torch.dtype = torch.float64,
    ) -> None:
        """
        Initialize a Device.

        Args:
            name: Logical device name ("cpu" or "cuda").
            torch_device: Underlying PyTorch device.
            dtype: Working floating-point dtype, float32 or float64.

        Raises:
            ValueError: If dtype is not a supported floating type.
        """
        if dtype not in _FLOAT_DTYPES:
            raise ValueError(
                f"Unsupported dtype {dtype}; expected one of {list(_FLOAT_DTYPES)}"
            )
        self.name = name
        self.torch_device = torch_device
        self.dtype = dtype

    def __repr__(self) -> str:
        return (
            f"Device(name={self.name!r}, torch_device={self.torch_device}, "
            f"dtype={self.dtype})"
        )

    @property
    def is_cuda(self) -> bool:
        return self.torch_device.type == "cuda"

    def as_torch_device(self) -> torch.device:
        """Return the underlying PyTorch device."""
        return self.torch_device

    def tensor(self, data) -> torch.Tensor:
        """Move host data onto this device in the working dtype."""
        return torch.as_tensor(data, dtype=self.dtype, device=self.torch_device)


def device(name: str, dtype: torch.dtype = torch.float64) -> Device:
    """
    Create a Device instance from a device name.

    Supported device names:
        - "cpu": host execution, eager kernels
        - "cuda": CUDA execution on a dedicated stream (only if CUDA is available)

    Args:
        name: Device name string.
        dtype: Working floating-point dtype.

    Returns:
        A Device instance.

    Raises:
        RuntimeError: If "cuda" is requested but CUDA is not available.
        ValueError: If the device name is not supported.
    """
    if name == "cpu":
        return Device(name="cpu", torch_device=torch.device("cpu"), dtype=dtype)
    elif name == "cuda":
        if not torch.cuda.is_available():
            raise RuntimeError(
                "CUDA device requested but torch.cuda.is_available() is False"
            )
        return Device(name="cuda", torch_device=torch.device("cuda"), dtype=dtype)
    else:
        supported = ["cpu", "cuda"]
        raise ValueError(
            f"Unsupported device name: {name!r}. Supported devices: {supported}"
        )


def default_device() -> Device:
    """Return the default device (CPU, double precision)."""
    return device("cpu")
