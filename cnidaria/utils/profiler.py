"""Lightweight profiling: wall-clock timers and NVTX markers.

Provides:
    - timer(): Context manager for wall-clock timing with optional sink
    - nvtx_range(): NVIDIA Nsight markers around kernel dispatches
    - TimerAccumulator: averaged timings across tiles
    - synchronize_and_time(): device-synchronized timing (self-test)

Used to measure:
    - Coordinate kernel dispatch per tile group
    - Compositing and readback
    - Bitonic sort stages
    - Capability self-test kernel

No heavy dependencies (no line_profiler, no cProfile overhead during renders).
"""

import logging
import time
from contextlib import contextmanager
from typing import Callable, Optional

import torch

logger = logging.getLogger(__name__)


@contextmanager
def timer(name: str, sink: Optional[Callable[[str, float], None]] = None):
    """Context manager for wall-clock timing.

    Parameters
    ----------
    name : str
        Timer name (for logging/display)
    sink : Optional[Callable[[str, float], None]]
        Optional callback(name, elapsed_seconds). If None, logs at DEBUG.

    Examples
    --------
    >>> timings = {}
    >>> with timer("composite", sink=timings.__setitem__):
    ...     packed = composite_packed(values, palette)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        if sink is not None:
            sink(name, elapsed)
        else:
            logger.debug("%s: %.3f s", name, elapsed)


@contextmanager
def nvtx_range(msg: str):
    """Context manager for NVIDIA NVTX range markers.

    Notes
    -----
    No-op unless CUDA is available. Visible in Nsight Systems timelines.
    """
    active = torch.cuda.is_available()
    if active:
        torch.cuda.nvtx.range_push(msg)
    try:
        yield
    finally:
        if active:
            torch.cuda.nvtx.range_pop()


class TimerAccumulator:
    """Accumulate multiple timing measurements for averaging.

    Examples
    --------
    >>> tile_timer = TimerAccumulator("tile")
    >>> for tile in tiles:
    ...     with tile_timer.measure():
    ...         kernel.dispatch(xs, ys)
    >>> tile_timer.mean()
    """

    def __init__(self, name: str):
        self.name = name
        self.total_time = 0.0
        self.count = 0

    @contextmanager
    def measure(self):
        """Context manager to measure and accumulate time."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.total_time += time.perf_counter() - start
            self.count += 1

    def mean(self) -> float:
        """Mean time per measurement in seconds, 0.0 if none recorded."""
        return self.total_time / self.count if self.count > 0 else 0.0

    def reset(self) -> None:
        self.total_time = 0.0
        self.count = 0

    def __repr__(self) -> str:
        return f"TimerAccumulator({self.name}, mean={self.mean():.4f}s, count={self.count})"


def synchronize_device(device: torch.device) -> None:
    """Block until all queued work on ``device`` has completed."""
    if device.type == "cuda":
        torch.cuda.synchronize(device)
    elif device.type == "mps":
        torch.mps.synchronize()


def synchronize_and_time(fn: Callable, *args, device: Optional[torch.device] = None, **kwargs) -> tuple:
    """Execute function with device synchronization for accurate timing.

    Parameters
    ----------
    fn : Callable
        Function to time
    *args, **kwargs
        Arguments to fn
    device : torch.device, optional
        Device to synchronize before and after; None times host-side only

    Returns
    -------
    tuple
        (result, elapsed_seconds)
    """
    if device is not None:
        synchronize_device(device)

    start = time.perf_counter()
    result = fn(*args, **kwargs)

    if device is not None:
        synchronize_device(device)

    return result, time.perf_counter() - start
