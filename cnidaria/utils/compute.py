"""Numerics, grid mapping, tiling, and memory guards.

Core utilities:
    - Grid mapping: grid_to_world() (scalar) and world_grid() (tensor) share
      one pixel → world convention
    - Tiling: tile_slices() covering an image with square tiles
    - Finite guards: nonfinite_to_zero(), assert_finite()
    - Memory guards: estimate_job_bytes(), is_out_of_memory()

Invariants:
    - Pixel (ix, iy) maps to ((ix - W // 2) * scale + cx, (iy - H // 2) * scale + cy)
    - The scalar and tensor mappings are bit-identical in float64
    - Tiles never overlap; the last row/column of tiles may be smaller
"""

from typing import Optional, Tuple

import torch


def grid_to_world(
    ix: int,
    iy: int,
    width: int,
    height: int,
    scale: float = 1.0,
    center: Tuple[float, float] = (0.0, 0.0),
) -> Tuple[float, float]:
    """Map a pixel index to world coordinates.

    Parameters
    ----------
    ix, iy : int
        Pixel column and row
    width, height : int
        Image size in pixels
    scale : float
        World units per pixel
    center : tuple of float
        World coordinate at the image center pixel

    Returns
    -------
    tuple of float
        (x, y) world coordinate
    """
    return (
        (ix - width // 2) * scale + center[0],
        (iy - height // 2) * scale + center[1],
    )


def world_grid(
    rows: slice,
    cols: slice,
    width: int,
    height: int,
    scale: float = 1.0,
    center: Tuple[float, float] = (0.0, 0.0),
    *,
    device: Optional[torch.device] = None,
    dtype: torch.dtype = torch.float64,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """World coordinates for a rectangular block of pixels.

    Parameters
    ----------
    rows, cols : slice
        Pixel row/column ranges (step 1), as produced by tile_slices()
    width, height : int
        Full image size (defines the center pixel)
    scale, center
        Same meaning as in grid_to_world()
    device, dtype
        Placement of the returned tensors

    Returns
    -------
    tuple of torch.Tensor
        (xs, ys), each shaped (rows, cols)
    """
    iy = torch.arange(rows.start, rows.stop, device=device, dtype=dtype)
    ix = torch.arange(cols.start, cols.stop, device=device, dtype=dtype)
    ys = (iy - (height // 2)) * scale + center[1]
    xs = (ix - (width // 2)) * scale + center[0]
    grid_y, grid_x = torch.meshgrid(ys, xs, indexing="ij")
    return grid_x, grid_y


def tile_slices(H: int, W: int, tile: int, overlap: int = 0) -> list:
    """Generate tile slice indices for tiled processing.

    Parameters
    ----------
    H : int
        Image height
    W : int
        Image width
    tile : int
        Tile size (square)
    overlap : int
        Overlap between adjacent tiles, default 0

    Returns
    -------
    list[tuple[slice, slice]]
        List of (slice_h, slice_w) tuples covering the image in row-major order
    """
    if tile <= 0:
        raise ValueError(f"tile must be positive, got {tile}")
    if not 0 <= overlap < tile:
        raise ValueError(f"overlap must be in [0, tile), got {overlap}")

    stride = tile - overlap
    slices = []

    for y_start in range(0, H, stride):
        for x_start in range(0, W, stride):
            y_end = min(y_start + tile, H)
            x_end = min(x_start + tile, W)
            slices.append((slice(y_start, y_end), slice(x_start, x_end)))

    return slices


def nonfinite_to_zero(x: torch.Tensor) -> torch.Tensor:
    """Replace NaN and ±Inf with 0.0 (unlike torch.nan_to_num, which keeps Inf finite-large)."""
    return torch.where(torch.isfinite(x), x, torch.zeros_like(x))


def assert_finite(x: torch.Tensor, name: str = "tensor") -> None:
    """Assert tensor contains no NaN or Inf values.

    Raises
    ------
    ValueError
        If tensor contains NaN or Inf
    """
    if not torch.isfinite(x).all():
        nan_count = torch.isnan(x).sum().item()
        inf_count = torch.isinf(x).sum().item()
        raise ValueError(
            f"{name} contains non-finite values: {nan_count} NaNs, {inf_count} Infs. "
            f"Shape: {tuple(x.shape)}, dtype: {x.dtype}, device: {x.device}"
        )


def next_power_of_two(n: int) -> int:
    """Smallest power of two >= n (1 for n <= 1)."""
    if n <= 1:
        return 1
    return 1 << (n - 1).bit_length()


def estimate_job_bytes(
    width: int,
    height: int,
    tile_px: int,
    float_bytes: int = 8,
    sort_points: bool = False,
) -> int:
    """Peak device bytes for one job.

    Full-frame outputs (value plane u8, index plane i64, packed RGBA i32)
    plus one tile of float working set (about 12 live temporaries), plus
    the padded sort arrays when distance sorting is requested.
    """
    pixels = width * height
    outputs = pixels * (1 + 8 + 4)
    tile = min(tile_px, max(width, height))
    working = tile * tile * float_bytes * 12
    sort_bytes = 0
    if sort_points:
        padded = next_power_of_two(pixels)
        sort_bytes = padded * (float_bytes + 8) + pixels * float_bytes * 2
    return outputs + working + sort_bytes


def is_out_of_memory(exc: BaseException) -> bool:
    """True if ``exc`` is a device allocation failure."""
    oom_type = getattr(torch.cuda, "OutOfMemoryError", None)
    if oom_type is not None and isinstance(exc, oom_type):
        return True
    return isinstance(exc, RuntimeError) and "out of memory" in str(exc).lower()


def ceil_div(a: int, b: int) -> int:
    """Integer ceiling division for positive divisors."""
    if b <= 0:
        raise ValueError(f"divisor must be positive, got {b}")
    return -(-a // b)
