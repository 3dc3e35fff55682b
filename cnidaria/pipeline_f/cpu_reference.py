"""CPU reference implementation of the coordinate pipeline.

This is the deterministic, scalar ground truth. The GPU coordinate kernel
must agree with it pixel for pixel (up to float rounding on band edges).

Pipeline, per coordinate (x, y). The order is a compatibility contract:
stored patterns depend on it.

    1. n = noise(x, y)
    2. scalar-radius warp:   (x, y) ← (x, y) · n / hypot(x, y)   ((0, 0) at the origin)
    3. distance modulus:     v ← ((v + m/2) mod m) − m/2 per axis  (floor mod, m > 0)
    4. fractal distortion:   x += sin(y·s)·k·w ; y += cos(x·s)·k·w  for (s, w) in
                             (scale1, 0.3), (scale2, 0.2), (scale3, 0.1)
    5. angular distortion:   θ = atan2(y, x) + offset·π/180 ; θ += sin(θ·f)·a·0.01
    6. d  = metric(x, y)
    7. d' = d · curve_scaling · curve.index_scaling
    8. idx = floor(d' mod W), negative → +W, clamped to W − 1 ; value = curve[idx]
    9. checkerboard:         odd floor(metric(x₀, y₀) / step) → value = 255 − value,
                             measured at the ORIGINAL coordinate

A noise function that raises, a non-finite noise value, or a non-finite d'
is a degenerate sample: it takes curve index 0 and the render continues.

Usage:
    from cnidaria.pipeline_f.cpu_reference import CPUReferenceRenderer, process
    from cnidaria.pipeline_f.expression import compile_expression

    sample = process(3.0, 4.0, compile_expression("sqrt(x*x + y*y)"), curve, profile)
    render = CPUReferenceRenderer(job).render(progress_cb=print)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Tuple

import numpy as np

from cnidaria.errors import NumericDegenerate
from cnidaria.pipeline_f.distance import distance_scalar, resolve_metric
from cnidaria.pipeline_f.expression import CompiledExpression, compile_expression, resolve_noise_expression
from cnidaria.utils.compute import grid_to_world
from cnidaria.utils.validators import (
    AngularDistortion,
    CurveV1,
    DistortionProfileV1,
    FractalDistortion,
    JobV1,
)

logger = logging.getLogger(__name__)

# Progress is reported whenever (pixels_done & MASK) == 0, i.e. every 16384 pixels
PROGRESS_UPDATE_MASK = 0x3FFF

FRACTAL_WEIGHTS = (0.3, 0.2, 0.1)

NoiseFn = Callable[[float, float], float]
ProgressFn = Callable[[int, int], None]


@dataclass(frozen=True)
class PipelineSample:
    """Result of one coordinate: curve value (after checkerboard) and index."""
    value: int
    index: int
    degenerate: bool = False


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------

def warp_point_scalar_radius(x: float, y: float, n: float) -> Tuple[float, float]:
    """Rescale (x, y) so its Euclidean length becomes ``n``.

    The origin maps to (0, 0) regardless of ``n``.
    """
    r = math.hypot(x, y)
    if r > 0:
        s = n / r
        return x * s, y * s
    return 0.0, 0.0


def fold_distance_modulus(v: float, modulus: float) -> float:
    """Fold ``v`` into [-m/2, m/2) (floor-mod); identity when modulus <= 0.

    Idempotent: folding a folded value returns it unchanged.
    """
    if modulus <= 0:
        return v
    half = modulus / 2.0
    return ((v + half) % modulus) - half


def apply_fractal_distortion(x: float, y: float, fractal: FractalDistortion) -> Tuple[float, float]:
    """Three cross-coupled octaves; each y update sees the x just updated."""
    if not fractal.enabled:
        return x, y
    k = fractal.strength
    for scale, weight in zip((fractal.scale1, fractal.scale2, fractal.scale3), FRACTAL_WEIGHTS):
        x += math.sin(y * scale) * k * weight
        y += math.cos(x * scale) * k * weight
    return x, y


def apply_angular_distortion(x: float, y: float, angular: AngularDistortion) -> Tuple[float, float]:
    """Perturb the polar angle, keeping the radius."""
    if not angular.effective:
        return x, y
    angle = math.atan2(y, x) + angular.offset_deg * math.pi / 180.0
    angle += math.sin(angle * angular.frequency) * angular.amplitude * 0.01
    r = math.hypot(x, y)
    return r * math.cos(angle), r * math.sin(angle)


def curve_index(d_scaled: float, width: int) -> int:
    """Wrap a scaled distance onto [0, width).

    Raises
    ------
    NumericDegenerate
        If ``d_scaled`` is NaN or infinite
    """
    if not math.isfinite(d_scaled):
        raise NumericDegenerate(f"non-finite distance {d_scaled!r}")
    width = max(1, int(width))
    idx = math.floor(math.fmod(d_scaled, width))
    if idx < 0:
        idx += width
    if idx >= width:
        idx = width - 1
    return idx


def checkerboard_step(distance: float, step_size: float) -> int:
    """Band number of ``distance``; 0 when banding is disabled or undefined."""
    if step_size <= 0 or not math.isfinite(distance):
        return 0
    return math.floor(distance / step_size)


def apply_checkerboard(value: int, distance: float, step_size: float) -> int:
    """Invert ``value`` on odd bands. Applying it twice restores ``value``."""
    if checkerboard_step(distance, step_size) % 2 == 1:
        return 255 - value
    return value


def _sample_noise(noise_fn: NoiseFn, x: float, y: float) -> float:
    # Compiled expressions coerce NaN/Inf to 0 when called; read the raw value
    if isinstance(noise_fn, CompiledExpression):
        noise_fn = noise_fn.evaluate_raw
    try:
        n = noise_fn(x, y)
    except (ArithmeticError, ValueError, TypeError) as e:
        raise NumericDegenerate(f"noise function raised {type(e).__name__}: {e}") from e
    n = float(n)
    if not math.isfinite(n):
        raise NumericDegenerate(f"noise function returned {n!r}")
    return n


def process(
    x: float,
    y: float,
    noise_fn: NoiseFn,
    curve: CurveV1,
    profile: DistortionProfileV1,
) -> PipelineSample:
    """Run the full pipeline for one coordinate.

    Parameters
    ----------
    x, y : float
        World coordinate
    noise_fn : callable
        (x, y) → float, typically a CompiledExpression
    curve : CurveV1
        Curve record
    profile : DistortionProfileV1
        Distortion settings

    Returns
    -------
    PipelineSample
        ``index`` in [0, curve.width), ``value`` in [0, 255]. Degenerate
        samples report index 0 and ``degenerate=True``.
    """
    metric = resolve_metric(profile.distance_metric)
    data = curve.data

    try:
        n = _sample_noise(noise_fn, x, y)
        px, py = warp_point_scalar_radius(x, y, n)
        px = fold_distance_modulus(px, profile.distance_modulus)
        py = fold_distance_modulus(py, profile.distance_modulus)
        px, py = apply_fractal_distortion(px, py, profile.fractal)
        px, py = apply_angular_distortion(px, py, profile.angular)
        d_scaled = distance_scalar(metric, px, py) * profile.curve_scaling * curve.index_scaling
        idx = curve_index(d_scaled, curve.width)
        degenerate = False
    except NumericDegenerate as e:
        logger.debug("Degenerate sample at (%r, %r): %s", x, y, e)
        idx = 0
        degenerate = True

    value = int(data[idx])
    checker = profile.checkerboard
    if checker.enabled and checker.step_size > 0:
        value = apply_checkerboard(value, distance_scalar(metric, x, y), checker.step_size)
    return PipelineSample(value=value, index=idx, degenerate=degenerate)


# ---------------------------------------------------------------------------
# Fill order
# ---------------------------------------------------------------------------

def center_spiral(width: int, height: int) -> Iterator[Tuple[int, int, int, int]]:
    """Visit every pixel once, spiralling out from the center pixel.

    Yields
    ------
    tuple of int
        (sx, sy, ix, iy): offset from the center pixel (W // 2, H // 2) and
        the image column/row

    Notes
    -----
    Runs right, up, left, down with run lengths 1, 1, 2, 2, 3, 3, ...;
    positions outside the image are skipped.
    """
    total = width * height
    if total <= 0:
        return
    cx, cy = width // 2, height // 2
    directions = ((1, 0), (0, -1), (-1, 0), (0, 1))

    sx = sy = 0
    yielded = 1
    yield 0, 0, cx, cy

    step_len = 1
    dir_index = 0
    while yielded < total:
        for _ in range(2):
            dx, dy = directions[dir_index]
            for _ in range(step_len):
                sx += dx
                sy += dy
                ix, iy = cx + sx, cy + sy
                if 0 <= ix < width and 0 <= iy < height:
                    yield sx, sy, ix, iy
                    yielded += 1
                    if yielded >= total:
                        return
            dir_index = (dir_index + 1) & 3
        step_len += 1


# ---------------------------------------------------------------------------
# Whole-job renderer
# ---------------------------------------------------------------------------

@dataclass
class ReferenceRender:
    """Planes produced by the CPU renderer."""
    value_plane: np.ndarray
    index_plane: np.ndarray
    degenerate_count: int


class CPUReferenceRenderer:
    """Scalar renderer for a whole job, in center-out spiral order.

    Attributes
    ----------
    job : JobV1
        Job being rendered
    noise_fn : CompiledExpression
        Compiled noise expression (compiled in __init__, so an invalid
        expression raises InvalidExpression before any pixel is touched)
    """

    def __init__(self, job: JobV1, noise_fn: Optional[NoiseFn] = None):
        self.job = job
        if noise_fn is None:
            noise_fn = compile_expression(resolve_noise_expression(job.expression_source))
        self.noise_fn = noise_fn

    def render(
        self,
        progress_cb: Optional[ProgressFn] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> ReferenceRender:
        """Render value and index planes.

        Parameters
        ----------
        progress_cb : callable, optional
            Called as progress_cb(done, total) every 16384 pixels and once at
            the end
        should_stop : callable, optional
            Polled at each progress point; returning True aborts with
            InterruptedError

        Returns
        -------
        ReferenceRender
        """
        job = self.job
        width, height = job.width, job.height
        total = width * height
        value_plane = np.zeros((height, width), dtype=np.uint8)
        index_plane = np.zeros((height, width), dtype=np.int64)
        degenerate = 0

        logger.info(
            "CPU reference render %dx%d, metric=%s, expression=%r",
            width, height, job.distortion.distance_metric.value, job.expression_source,
        )

        done = 0
        for _, _, ix, iy in center_spiral(width, height):
            x, y = grid_to_world(ix, iy, width, height, job.scale, job.center)
            sample = process(x, y, self.noise_fn, job.curve, job.distortion)
            value_plane[iy, ix] = sample.value
            index_plane[iy, ix] = sample.index
            degenerate += sample.degenerate

            done += 1
            if (done & PROGRESS_UPDATE_MASK) == 0:
                if should_stop is not None and should_stop():
                    raise InterruptedError(f"render cancelled after {done}/{total} pixels")
                if progress_cb is not None:
                    progress_cb(done, total)

        if progress_cb is not None and (done & PROGRESS_UPDATE_MASK) != 0:
            progress_cb(done, total)
        if degenerate:
            logger.info("%d of %d samples were degenerate (index 0 substituted)", degenerate, total)

        return ReferenceRender(value_plane=value_plane, index_plane=index_plane, degenerate_count=degenerate)
