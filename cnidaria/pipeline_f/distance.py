"""Distance metrics for the coordinate pipeline.

Every metric exists twice with identical formulas: a scalar version (math
module, CPU reference path) and a tensor version (torch, GPU kernel). The
GPU kernel is a single parameterized kernel that picks its metric from
``DistanceMetric``; there is no per-metric code generation.

Metrics, with r = sqrt(x² + y²) and θ = atan2(y, x):

    radial         r
    cartesian-x    |x|
    cartesian-y    |y|
    manhattan      |x| + |y|
    chebyshev      max(|x|, |y|)
    minkowski-3    (|x|³ + |y|³)^(1/3)
    hexagonal      max(|x|, |y|, (|x| + |y|) / 2)
    triangular     |x| + |y| + |x + y|
    spiral         r + 10θ
    cross          min(|x|, |y|)
    sine-wave      |sin(0.1x)| + |sin(0.1y)|
    ripple         100 |sin(0.1r)|
    interference   100 |sin(0.1x) sin(0.1y)|
    hyperbolic     0.01 |xy|
    polar-rose     r |cos 4θ|
    lemniscate     sqrt(r⁴ - 2·50²·(x² - y²))     (NaN inside the lobes)
    logarithmic    50 log(r + 1)

Metric outputs are not guaranteed finite (lemniscate, overflow on huge
coordinates); the pipeline treats a non-finite distance as a degenerate
sample.
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Dict, Union

import torch

from cnidaria.utils.validators import DistanceMetric

logger = logging.getLogger(__name__)

LEMNISCATE_SCALE = 50.0


def resolve_metric(name: Union[str, DistanceMetric, None]) -> DistanceMetric:
    """Lenient lookup: unknown or missing names fall back to radial."""
    if isinstance(name, DistanceMetric):
        return name
    if name is None:
        return DistanceMetric.RADIAL
    try:
        return DistanceMetric(name)
    except ValueError:
        logger.warning("Unknown distance metric '%s', using radial", name)
        return DistanceMetric.RADIAL


# ---------------------------------------------------------------------------
# Scalar formulas
# ---------------------------------------------------------------------------

def _s_minkowski3(x: float, y: float) -> float:
    return (abs(x) ** 3 + abs(y) ** 3) ** (1.0 / 3.0)


def _s_lemniscate(x: float, y: float) -> float:
    r2 = x * x + y * y
    inner = r2 * r2 - 2.0 * LEMNISCATE_SCALE * LEMNISCATE_SCALE * (x * x - y * y)
    if math.isnan(inner) or inner < 0:
        return math.nan
    return math.sqrt(inner)


def _s_logarithmic(x: float, y: float) -> float:
    return math.log(math.sqrt(x * x + y * y) + 1.0) * 50.0


_SCALAR: Dict[DistanceMetric, Callable[[float, float], float]] = {
    DistanceMetric.RADIAL: lambda x, y: math.sqrt(x * x + y * y),
    DistanceMetric.CARTESIAN_X: lambda x, y: abs(x),
    DistanceMetric.CARTESIAN_Y: lambda x, y: abs(y),
    DistanceMetric.MANHATTAN: lambda x, y: abs(x) + abs(y),
    DistanceMetric.CHEBYSHEV: lambda x, y: max(abs(x), abs(y)),
    DistanceMetric.MINKOWSKI_3: _s_minkowski3,
    DistanceMetric.HEXAGONAL: lambda x, y: max(abs(x), max(abs(y), (abs(x) + abs(y)) * 0.5)),
    DistanceMetric.TRIANGULAR: lambda x, y: abs(x) + abs(y) + abs(x + y),
    DistanceMetric.SPIRAL: lambda x, y: math.sqrt(x * x + y * y) + math.atan2(y, x) * 10.0,
    DistanceMetric.CROSS: lambda x, y: min(abs(x), abs(y)),
    DistanceMetric.SINE_WAVE: lambda x, y: abs(math.sin(x * 0.1)) + abs(math.sin(y * 0.1)),
    DistanceMetric.RIPPLE: lambda x, y: abs(math.sin(math.sqrt(x * x + y * y) * 0.1)) * 100.0,
    DistanceMetric.INTERFERENCE: lambda x, y: abs(math.sin(x * 0.1) * math.sin(y * 0.1)) * 100.0,
    DistanceMetric.HYPERBOLIC: lambda x, y: abs(x * y) * 0.01,
    DistanceMetric.POLAR_ROSE: lambda x, y: math.sqrt(x * x + y * y) * abs(math.cos(4.0 * math.atan2(y, x))),
    DistanceMetric.LEMNISCATE: _s_lemniscate,
    DistanceMetric.LOGARITHMIC: _s_logarithmic,
}


def distance_scalar(metric: Union[str, DistanceMetric], x: float, y: float) -> float:
    """Distance of (x, y) from the origin under ``metric``.

    Returns NaN/Inf rather than raising when the formula leaves its domain.
    """
    fn = _SCALAR[resolve_metric(metric)]
    try:
        return fn(x, y)
    except (ValueError, OverflowError):
        return math.nan


# ---------------------------------------------------------------------------
# Tensor formulas
# ---------------------------------------------------------------------------

def _t_radial(x: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
    return torch.sqrt(x * x + y * y)


def _t_lemniscate(x: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
    r2 = x * x + y * y
    return torch.sqrt(r2 * r2 - 2.0 * LEMNISCATE_SCALE * LEMNISCATE_SCALE * (x * x - y * y))


_TENSOR: Dict[DistanceMetric, Callable[[torch.Tensor, torch.Tensor], torch.Tensor]] = {
    DistanceMetric.RADIAL: _t_radial,
    DistanceMetric.CARTESIAN_X: lambda x, y: torch.abs(x),
    DistanceMetric.CARTESIAN_Y: lambda x, y: torch.abs(y),
    DistanceMetric.MANHATTAN: lambda x, y: torch.abs(x) + torch.abs(y),
    DistanceMetric.CHEBYSHEV: lambda x, y: torch.maximum(torch.abs(x), torch.abs(y)),
    DistanceMetric.MINKOWSKI_3: lambda x, y: torch.pow(
        torch.pow(torch.abs(x), 3.0) + torch.pow(torch.abs(y), 3.0), 1.0 / 3.0
    ),
    DistanceMetric.HEXAGONAL: lambda x, y: torch.maximum(
        torch.abs(x), torch.maximum(torch.abs(y), (torch.abs(x) + torch.abs(y)) * 0.5)
    ),
    DistanceMetric.TRIANGULAR: lambda x, y: torch.abs(x) + torch.abs(y) + torch.abs(x + y),
    DistanceMetric.SPIRAL: lambda x, y: _t_radial(x, y) + torch.atan2(y, x) * 10.0,
    DistanceMetric.CROSS: lambda x, y: torch.minimum(torch.abs(x), torch.abs(y)),
    DistanceMetric.SINE_WAVE: lambda x, y: torch.abs(torch.sin(x * 0.1)) + torch.abs(torch.sin(y * 0.1)),
    DistanceMetric.RIPPLE: lambda x, y: torch.abs(torch.sin(_t_radial(x, y) * 0.1)) * 100.0,
    DistanceMetric.INTERFERENCE: lambda x, y: torch.abs(torch.sin(x * 0.1) * torch.sin(y * 0.1)) * 100.0,
    DistanceMetric.HYPERBOLIC: lambda x, y: torch.abs(x * y) * 0.01,
    DistanceMetric.POLAR_ROSE: lambda x, y: _t_radial(x, y) * torch.abs(torch.cos(4.0 * torch.atan2(y, x))),
    DistanceMetric.LEMNISCATE: _t_lemniscate,
    DistanceMetric.LOGARITHMIC: lambda x, y: torch.log(_t_radial(x, y) + 1.0) * 50.0,
}


def distance_tensor(metric: Union[str, DistanceMetric], x: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
    """Elementwise ``distance_scalar`` over tensors (NaN where undefined)."""
    return _TENSOR[resolve_metric(metric)](x, y)
