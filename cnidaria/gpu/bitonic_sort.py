"""Bitonic sort of distance keys on a torch device.

The sorting network runs log2(N) stages; stage ``s`` runs steps ``s`` down to
0 with stride ``2**step``. Element ``i`` is active when
``i % (2 * stride) < stride`` and compares with ``i + stride``. The block of
``2**(s + 1)`` elements containing ``i`` sorts forward when
``(i // block) % 2 == 0`` and in reverse otherwise, so every stage leaves
bitonic runs for the next one and the last stage (one block) sorts the
whole array forward. Each step is one vectorized compare-and-swap over all
active pairs.

Ties are broken by the original index, which makes the order total and the
sort stable. Inputs are padded to a power of two with +inf (ascending) or
-inf (descending); the index tie-break keeps padding behind any real value
equal to the sentinel, so trimming to ``n`` returns exactly the inputs. NaN
keys sort as the sentinel (after every finite key); the returned values are
gathered from the input through the carried indices, so a NaN key comes back
as NaN.

Usage:
    sorter = BitonicSorter(ctx)
    result = sorter.sort_by_distance(points, center=(0.0, 0.0))
    nearest = result.sorted_indices[0]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np
import torch

from cnidaria.utils.compute import next_power_of_two

logger = logging.getLogger(__name__)

ArrayLike = Union[np.ndarray, torch.Tensor]


@dataclass
class SortResult:
    """Sorted keys, the original position of each key, and the input length.

    ``sorted_values[k]`` is the input key at ``sorted_indices[k]``, NaN included.
    """

    sorted_values: torch.Tensor
    sorted_indices: torch.Tensor
    length: int


def _comes_before(
    va: torch.Tensor, ia: torch.Tensor, vb: torch.Tensor, ib: torch.Tensor, ascending: bool
) -> torch.Tensor:
    ahead = va < vb if ascending else va > vb
    return ahead | ((va == vb) & (ia < ib))


def bitonic_sort_(values: torch.Tensor, indices: torch.Tensor, ascending: bool = True) -> None:
    """Sort a power-of-two length 1-D tensor in place, carrying ``indices``.

    Parameters
    ----------
    values : torch.Tensor
        Keys, no NaN, length a power of two
    indices : torch.Tensor
        Tags swapped together with ``values`` (int64, same length)
    ascending : bool
        Sort direction
    """
    n = values.shape[0]
    if n & (n - 1):
        raise ValueError(f"bitonic network needs a power-of-two length, got {n}")
    if n < 2:
        return

    positions = torch.arange(n, device=values.device)
    stages = n.bit_length() - 1
    for stage in range(stages):
        block = 1 << (stage + 1)
        for step in range(stage, -1, -1):
            stride = 1 << step
            lower = positions[(positions % (2 * stride)) < stride]
            upper = lower + stride
            forward = ((lower // block) % 2) == 0

            va, vb = values[lower], values[upper]
            ia, ib = indices[lower], indices[upper]
            b_first = _comes_before(vb, ib, va, ia, ascending)
            a_first = _comes_before(va, ia, vb, ib, ascending)
            swap = torch.where(forward, b_first, a_first)

            values[lower] = torch.where(swap, vb, va)
            values[upper] = torch.where(swap, va, vb)
            indices[lower] = torch.where(swap, ib, ia)
            indices[upper] = torch.where(swap, ia, ib)


class BitonicSorter:
    """Distance sort engine bound to a device context.

    Parameters
    ----------
    ctx : GPUContext
        Device and working dtype
    arena : BufferArena, optional
        When given, the padded work buffers are owned by the arena
    """

    def __init__(self, ctx, arena=None):
        self.device = ctx.device
        self.dtype = ctx.dtype
        self.arena = arena

    def _as_tensor(self, data: ArrayLike) -> torch.Tensor:
        if isinstance(data, torch.Tensor):
            return data.to(device=self.device, dtype=self.dtype)
        return torch.as_tensor(np.asarray(data), device=self.device, dtype=self.dtype)

    def sort_values(self, values: ArrayLike, ascending: bool = True) -> SortResult:
        """Sort 1-D keys.

        Returns
        -------
        SortResult
            ``sorted_values[k]`` is ``values[sorted_indices[k]]`` for every
            key (NaN stays NaN); ``sorted_indices`` is a permutation of [0, n)
        """
        keys = self._as_tensor(values).reshape(-1)
        n = int(keys.shape[0])
        if n == 0:
            empty = torch.empty(0, dtype=self.dtype, device=self.device)
            return SortResult(empty, torch.empty(0, dtype=torch.int64, device=self.device), 0)

        sentinel = float("inf") if ascending else float("-inf")
        padded_len = next_power_of_two(n)

        work = torch.full((padded_len,), sentinel, dtype=self.dtype, device=self.device)
        work[:n] = torch.where(torch.isnan(keys), torch.full_like(keys, sentinel), keys)
        tags = torch.arange(padded_len, dtype=torch.int64, device=self.device)
        if self.arena is not None:
            self.arena.adopt("sort_values", work)
            self.arena.adopt("sort_indices", tags)

        logger.debug("Bitonic sort of %d keys (padded to %d), ascending=%s", n, padded_len, ascending)
        bitonic_sort_(work, tags, ascending=ascending)
        order = tags[:n].clone()
        return SortResult(keys[order], order, n)

    def sort_by_distance(
        self,
        points: ArrayLike,
        center: Tuple[float, float] = (0.0, 0.0),
        ascending: bool = True,
    ) -> SortResult:
        """Sort points by Euclidean distance from ``center``.

        Parameters
        ----------
        points : array-like
            (N, 2) world coordinates
        center : tuple of float
            Reference point
        ascending : bool
            Nearest first when True
        """
        pts = self._as_tensor(points).reshape(-1, 2)
        distances = torch.hypot(pts[:, 0] - center[0], pts[:, 1] - center[1])
        return self.sort_values(distances, ascending=ascending)


@dataclass(frozen=True)
class _HostContext:
    device: torch.device = torch.device("cpu")
    dtype: torch.dtype = torch.float64


def sort_values(values: ArrayLike, ctx=None, ascending: bool = True) -> SortResult:
    """Convenience wrapper; without a context sorts on the CPU in float64."""
    if ctx is None:
        ctx = _HostContext()
    return BitonicSorter(ctx).sort_values(values, ascending=ascending)
