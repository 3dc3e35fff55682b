"""Per-job ownership of device tensors.

Every device tensor a job creates goes through one ``BufferArena``. The
arena checks each request against the device's ``max_buffer_size``, turns
allocator failures into ``ResourceExhausted``, and drops every reference
when the job ends, whether it finished or failed. Results must be copied to
the host before the arena closes.

Usage:
    with BufferArena(ctx, job_id="job-1") as arena:
        arena.reserve(estimate_job_bytes(w, h, ctx.profile.tile_px))
        values = arena.zeros("value_plane", (h, w), torch.uint8)
        ...
        host = values.cpu().numpy()
    # all device tensors released here
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence

import torch

from cnidaria.errors import ResourceExhausted
from cnidaria.utils.compute import is_out_of_memory

logger = logging.getLogger(__name__)


def tensor_nbytes(shape: Sequence[int], dtype: torch.dtype) -> int:
    numel = 1
    for dim in shape:
        numel *= int(dim)
    return numel * torch.empty((), dtype=dtype).element_size()


class BufferArena:
    """Owns the device tensors of a single job.

    Parameters
    ----------
    ctx : GPUContext
        Device context; ``ctx.limits.max_buffer_size`` bounds both each
        buffer and the reserved job total
    job_id : str, optional
        Used in log and error messages

    Attributes
    ----------
    live_bytes : int
        Bytes currently held by named buffers
    peak_bytes : int
        High-water mark of ``live_bytes``
    """

    def __init__(self, ctx, job_id: Optional[str] = None):
        self.ctx = ctx
        self.job_id = job_id or "job"
        self.limit = int(ctx.limits.max_buffer_size)
        self._buffers: Dict[str, torch.Tensor] = {}
        self.live_bytes = 0
        self.peak_bytes = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def reserve(self, nbytes: int) -> None:
        """Fail fast if a job's estimated footprint cannot fit the device."""
        if nbytes > self.limit:
            raise ResourceExhausted(
                f"{self.job_id}: estimated {nbytes} bytes exceeds device limit {self.limit}",
                requested_bytes=nbytes,
                limit_bytes=self.limit,
            )

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"{self.job_id}: buffer arena already released")

    def _track(self, name: str, tensor: torch.Tensor) -> torch.Tensor:
        previous = self._buffers.pop(name, None)
        if previous is not None:
            self.live_bytes -= previous.numel() * previous.element_size()
        self._buffers[name] = tensor
        self.live_bytes += tensor.numel() * tensor.element_size()
        self.peak_bytes = max(self.peak_bytes, self.live_bytes)
        return tensor

    def allocate(
        self,
        name: str,
        shape: Sequence[int],
        dtype: torch.dtype,
        fill: Optional[float] = None,
    ) -> torch.Tensor:
        """Allocate a named device tensor.

        Parameters
        ----------
        name : str
            Buffer name (re-using a name replaces the old buffer)
        shape : sequence of int
            Tensor shape
        dtype : torch.dtype
            Element type
        fill : float, optional
            Initial value; None leaves the memory uninitialized

        Raises
        ------
        ResourceExhausted
            If the buffer exceeds the device limit or the allocator fails
        """
        self._check_open()
        nbytes = tensor_nbytes(shape, dtype)
        if nbytes > self.limit:
            raise ResourceExhausted(
                f"{self.job_id}: buffer '{name}' needs {nbytes} bytes, device limit is {self.limit}",
                requested_bytes=nbytes,
                limit_bytes=self.limit,
            )
        try:
            if fill is None:
                tensor = torch.empty(tuple(shape), dtype=dtype, device=self.ctx.device)
            else:
                tensor = torch.full(tuple(shape), fill, dtype=dtype, device=self.ctx.device)
        except RuntimeError as e:
            if is_out_of_memory(e):
                raise ResourceExhausted(
                    f"{self.job_id}: device out of memory allocating '{name}' ({nbytes} bytes)",
                    requested_bytes=nbytes,
                    limit_bytes=self.limit,
                ) from e
            raise
        return self._track(name, tensor)

    def zeros(self, name: str, shape: Sequence[int], dtype: torch.dtype) -> torch.Tensor:
        return self.allocate(name, shape, dtype, fill=0)

    def adopt(self, name: str, tensor: torch.Tensor) -> torch.Tensor:
        """Take ownership of a tensor produced by a kernel."""
        self._check_open()
        nbytes = tensor.numel() * tensor.element_size()
        if nbytes > self.limit:
            raise ResourceExhausted(
                f"{self.job_id}: buffer '{name}' holds {nbytes} bytes, device limit is {self.limit}",
                requested_bytes=nbytes,
                limit_bytes=self.limit,
            )
        return self._track(name, tensor)

    def get(self, name: str) -> torch.Tensor:
        self._check_open()
        return self._buffers[name]

    def __contains__(self, name: str) -> bool:
        return name in self._buffers

    def names(self) -> list:
        return list(self._buffers)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def release(self) -> None:
        """Drop every buffer and return cached blocks to the driver."""
        if self._closed:
            return
        count = len(self._buffers)
        self._buffers.clear()
        self.live_bytes = 0
        self._closed = True
        self.ctx.empty_cache()
        logger.debug("%s: released %d buffers (peak %d bytes)", self.job_id, count, self.peak_bytes)

    def __enter__(self) -> "BufferArena":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
        if exc is not None and is_out_of_memory(exc) and not isinstance(exc, ResourceExhausted):
            raise ResourceExhausted(
                f"{self.job_id}: device out of memory during dispatch",
                limit_bytes=self.limit,
            ) from exc
