"""Value plane → RGBA image through a palette lookup.

Each value selects one palette entry (clamped to the last entry) and the
entry's four bytes are copied verbatim: no interpolation, no gamma.

On a device the lookup works on packed 32-bit pixels, ``0xAABBGGRR``, so a
frame is one int32 tensor; ``unpack_rgba`` restores R, G, B, A bytes on the
host (little-endian byte order, independent of the host's own).
"""

from __future__ import annotations

import logging
from typing import Union

import numpy as np
import torch

logger = logging.getLogger(__name__)

ArrayLike = Union[np.ndarray, torch.Tensor]

_WRAP = 1 << 32
_SIGN = 1 << 31


def composite(values: ArrayLike, palette: ArrayLike) -> np.ndarray:
    """Map values through ``palette`` on the host.

    Parameters
    ----------
    values : array-like
        Integer values, any shape (a flat (N,) plane or (H, W))
    palette : array-like
        (P, 4) uint8 RGBA entries, P >= 1

    Returns
    -------
    np.ndarray
        ``values.shape + (4,)`` uint8

    Examples
    --------
    >>> composite(np.array([200]), np.array([[255, 0, 0, 255], [0, 255, 0, 255], [0, 0, 255, 255]]))
    array([[  0,   0, 255, 255]], dtype=uint8)
    """
    if isinstance(values, torch.Tensor):
        values = values.detach().cpu().numpy()
    if isinstance(palette, torch.Tensor):
        palette = palette.detach().cpu().numpy()
    pal = np.asarray(palette, dtype=np.uint8)
    if pal.ndim != 2 or pal.shape[1] != 4 or pal.shape[0] == 0:
        raise ValueError(f"Palette must be a non-empty (P, 4) array, got {pal.shape}")
    idx = np.clip(np.asarray(values).astype(np.int64), 0, pal.shape[0] - 1)
    return pal[idx]


def pack_palette(palette: torch.Tensor) -> torch.Tensor:
    """(P, 4) uint8 palette → (P,) int32 ``0xAABBGGRR`` words."""
    p = palette.to(torch.int64)
    word = p[:, 0] | (p[:, 1] << 8) | (p[:, 2] << 16) | (p[:, 3] << 24)
    word = torch.where(word >= _SIGN, word - _WRAP, word)
    return word.to(torch.int32)


def composite_packed(values_t: torch.Tensor, palette_t: torch.Tensor) -> torch.Tensor:
    """Device lookup producing packed pixels.

    Parameters
    ----------
    values_t : torch.Tensor
        Integer values, any shape
    palette_t : torch.Tensor
        (P, 4) uint8 palette on the same device

    Returns
    -------
    torch.Tensor
        int32, shaped like ``values_t``
    """
    if palette_t.ndim != 2 or palette_t.shape[1] != 4 or palette_t.shape[0] == 0:
        raise ValueError(f"Palette must be a non-empty (P, 4) tensor, got {tuple(palette_t.shape)}")
    packed_palette = pack_palette(palette_t)
    idx = values_t.to(torch.int64).clamp(0, palette_t.shape[0] - 1)
    return packed_palette[idx]


def unpack_rgba(packed: ArrayLike, height: int, width: int) -> np.ndarray:
    """Packed int32 pixels → (height, width, 4) uint8 RGBA on the host."""
    if isinstance(packed, torch.Tensor):
        packed = packed.detach().cpu().numpy()
    words = np.ascontiguousarray(np.asarray(packed).reshape(-1).astype("<i4"))
    if words.size != height * width:
        raise ValueError(f"Expected {height * width} packed pixels, got {words.size}")
    return words.view(np.uint8).reshape(height, width, 4).copy()
