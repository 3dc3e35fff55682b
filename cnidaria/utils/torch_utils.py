"""PyTorch ergonomics: device resolution and dtype policy.

Provides:
    - resolve_device(): pick CUDA, then MPS, or an explicit device string
    - dtype_for_device(): float64 everywhere except MPS (no float64 support)
    - to_numpy(): detached host copy of any tensor

The coordinate pipeline is specified in double precision; MPS is the one
backend that forces float32, and CPU/GPU parity tolerances account for it.
"""

from typing import Optional, Union

import numpy as np
import torch


def accelerator_available() -> bool:
    """True if a CUDA or MPS device is usable in this process."""
    if torch.cuda.is_available():
        return True
    mps = getattr(torch.backends, "mps", None)
    return bool(mps is not None and mps.is_available())


def resolve_device(device: Optional[Union[str, torch.device]] = None) -> Optional[torch.device]:
    """Resolve a device request.

    Parameters
    ----------
    device : str or torch.device, optional
        Explicit device ("cuda", "cuda:1", "mps", "cpu"). None auto-selects
        CUDA, then MPS.

    Returns
    -------
    torch.device or None
        None when auto-selection finds no accelerator.
    """
    if device is not None:
        return torch.device(device)
    if torch.cuda.is_available():
        return torch.device("cuda", torch.cuda.current_device())
    mps = getattr(torch.backends, "mps", None)
    if mps is not None and mps.is_available():
        return torch.device("mps")
    return None


def dtype_for_device(device: torch.device) -> torch.dtype:
    """Working float dtype for ``device``."""
    return torch.float32 if device.type == "mps" else torch.float64


def to_numpy(t: torch.Tensor) -> np.ndarray:
    """Detached host copy as numpy array."""
    return t.detach().cpu().numpy()
