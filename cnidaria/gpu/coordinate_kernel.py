"""Batched coordinate pipeline on a torch device.

One parameterized kernel covers every metric and distortion setting: the
profile is read once at construction, and each dispatch evaluates a whole
tile of coordinates with tensor ops. Stage order and formulas mirror
``cnidaria.pipeline_f.cpu_reference.process`` exactly; the CPU reference is
the ground truth and ``tests/test_parity_cpu_vs_gpu.py`` holds the two
together.

Degenerate samples (non-finite noise or non-finite scaled distance) take
curve index 0, as on the CPU path. They are counted on the device so a
dispatch never forces a host sync.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Optional, Tuple

import torch

from cnidaria.pipeline_f.cpu_reference import FRACTAL_WEIGHTS
from cnidaria.pipeline_f.distance import distance_tensor, resolve_metric
from cnidaria.pipeline_f.expression import CompiledExpression
from cnidaria.utils.compute import world_grid
from cnidaria.utils.validators import CurveV1, DistortionProfileV1

logger = logging.getLogger(__name__)

TensorNoiseFn = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]


# ---------------------------------------------------------------------------
# Tensor stages
# ---------------------------------------------------------------------------

def warp_scalar_radius(
    xs: torch.Tensor, ys: torch.Tensor, n: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor]:
    r = torch.hypot(xs, ys)
    positive = r > 0
    s = torch.where(positive, n / torch.where(positive, r, torch.ones_like(r)), torch.zeros_like(r))
    return xs * s, ys * s


def fold_modulus(v: torch.Tensor, modulus: float) -> torch.Tensor:
    """Floor-mod fold into [-m/2, m/2); identity for modulus <= 0."""
    if modulus <= 0:
        return v
    half = modulus / 2.0
    return torch.remainder(v + half, modulus) - half


def fractal(xs: torch.Tensor, ys: torch.Tensor, profile: DistortionProfileV1) -> Tuple[torch.Tensor, torch.Tensor]:
    cfg = profile.fractal
    if not cfg.enabled:
        return xs, ys
    k = cfg.strength
    for scale, weight in zip((cfg.scale1, cfg.scale2, cfg.scale3), FRACTAL_WEIGHTS):
        xs = xs + torch.sin(ys * scale) * k * weight
        ys = ys + torch.cos(xs * scale) * k * weight
    return xs, ys


def angular(xs: torch.Tensor, ys: torch.Tensor, profile: DistortionProfileV1) -> Tuple[torch.Tensor, torch.Tensor]:
    cfg = profile.angular
    if not cfg.effective:
        return xs, ys
    angle = torch.atan2(ys, xs) + cfg.offset_deg * math.pi / 180.0
    angle = angle + torch.sin(angle * cfg.frequency) * cfg.amplitude * 0.01
    r = torch.hypot(xs, ys)
    return r * torch.cos(angle), r * torch.sin(angle)


def curve_indices(d_scaled: torch.Tensor, width: int) -> Tuple[torch.Tensor, torch.Tensor]:
    """Wrap scaled distances onto [0, width).

    Returns
    -------
    tuple of torch.Tensor
        (indices int64, degenerate bool mask); degenerate entries are 0
    """
    width = max(1, int(width))
    finite = torch.isfinite(d_scaled)
    safe = torch.where(finite, d_scaled, torch.zeros_like(d_scaled))
    idx = torch.floor(torch.fmod(safe, float(width)))
    idx = torch.where(idx < 0, idx + width, idx)
    idx = idx.clamp(max=width - 1).to(torch.int64)
    idx = torch.where(finite, idx, torch.zeros_like(idx))
    return idx, ~finite


def checkerboard_mask(d0: torch.Tensor, step_size: float) -> torch.Tensor:
    """True where floor(d0 / step_size) is odd; non-finite d0 counts as even."""
    step = torch.floor(d0 / step_size)
    odd = torch.remainder(step, 2.0) == 1.0
    return odd & torch.isfinite(step)


# ---------------------------------------------------------------------------
# Kernel
# ---------------------------------------------------------------------------

class CoordinateKernel:
    """Coordinate pipeline bound to one curve, profile and noise expression.

    Parameters
    ----------
    ctx : GPUContext
        Device context (device and working dtype)
    curve : CurveV1
        Curve record, uploaded once
    profile : DistortionProfileV1
        Distortion settings
    noise : CompiledExpression
        Compiled noise expression
    noise_fn : callable, optional
        Pre-lowered tensor function for ``noise`` (from a kernel cache); must
        pass non-finite results through so they are flagged as degenerate
    """

    def __init__(
        self,
        ctx,
        curve: CurveV1,
        profile: DistortionProfileV1,
        noise: CompiledExpression,
        noise_fn: Optional[TensorNoiseFn] = None,
    ):
        self.device = ctx.device
        self.dtype = ctx.dtype
        self.curve = curve
        self.profile = profile
        self.metric = resolve_metric(profile.distance_metric)
        self.noise = noise
        self.noise_fn = noise_fn if noise_fn is not None else noise.lower_to_torch(coerce_nonfinite=False)
        self.curve_t = torch.as_tensor(curve.as_array(), device=self.device).to(torch.int64)
        self.degenerate_total = torch.zeros((), dtype=torch.int64, device=self.device)

    def evaluate(self, xs: torch.Tensor, ys: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Run the pipeline on world-coordinate tensors.

        Parameters
        ----------
        xs, ys : torch.Tensor
            World coordinates, same shape

        Returns
        -------
        tuple of torch.Tensor
            (values uint8, indices int64, degenerate bool), each shaped like xs
        """
        profile = self.profile

        n = self.noise_fn(xs, ys)
        bad_noise = ~torch.isfinite(n)
        n = torch.where(bad_noise, torch.zeros_like(n), n)

        px, py = warp_scalar_radius(xs, ys, n)
        px = fold_modulus(px, profile.distance_modulus)
        py = fold_modulus(py, profile.distance_modulus)
        px, py = fractal(px, py, profile)
        px, py = angular(px, py, profile)

        d_scaled = distance_tensor(self.metric, px, py) * profile.curve_scaling * self.curve.index_scaling
        d_scaled = torch.where(bad_noise, torch.full_like(d_scaled, math.nan), d_scaled)
        idx, degenerate = curve_indices(d_scaled, self.curve.width)

        values = self.curve_t[idx]
        checker = profile.checkerboard
        if checker.enabled and checker.step_size > 0:
            flip = checkerboard_mask(distance_tensor(self.metric, xs, ys), checker.step_size)
            values = torch.where(flip, 255 - values, values)

        return values.to(torch.uint8), idx, degenerate

    def dispatch_tile(
        self,
        rows: slice,
        cols: slice,
        width: int,
        height: int,
        scale: float,
        center: Tuple[float, float],
        value_plane: torch.Tensor,
        index_plane: torch.Tensor,
    ) -> None:
        """Evaluate one tile and write it into the full-frame planes."""
        xs, ys = world_grid(rows, cols, width, height, scale, center, device=self.device, dtype=self.dtype)
        values, idx, degenerate = self.evaluate(xs, ys)
        value_plane[rows, cols] = values
        index_plane[rows, cols] = idx
        self.degenerate_total += degenerate.sum()

    def degenerate_count(self) -> int:
        """Degenerate samples so far (synchronizes the device)."""
        return int(self.degenerate_total.item())
