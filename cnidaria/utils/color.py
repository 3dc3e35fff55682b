"""Palette construction and normalization.

Provides:
    - hsl_to_rgb(): scalar HSL → RGB in [0, 1]
    - Spectrum presets (default, rainbow, terrain, thermal, grayscale) and
      spectrum_to_palette() sampling 256 entries from a preset
    - palette_to_array(): coerce palette records (dicts, tuples, hex strings,
      pydantic PaletteColor) into an (N, 4) uint8 RGBA array
    - normalize_palette(): the 256-entry contract used by the compositor

Palette arrays are always (N, 4) uint8 in RGBA byte order. No gamma or
color-space conversion is applied anywhere: palette bytes are copied to
pixels verbatim.

Invariants:
    - A normalized palette has exactly PALETTE_SIZE (256) entries
    - Missing/empty palettes fall back to a grayscale ramp, alpha 255
    - Short palettes are padded with their last entry; long ones truncated
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import numpy as np

PALETTE_SIZE = 256


@dataclass(frozen=True)
class SpectrumConfig:
    """HSL spectrum description used to synthesize a 256-entry palette."""
    type: str
    saturation: float
    lightness: float
    hue_range: Tuple[float, float]


SPECTRUM_PRESETS: Dict[str, SpectrumConfig] = {
    "default": SpectrumConfig("hsl", 0.7, 0.5, (0.0, 360.0)),
    "rainbow": SpectrumConfig("rainbow", 0.8, 0.6, (0.0, 300.0)),
    "terrain": SpectrumConfig("terrain", 0.6, 0.4, (240.0, 60.0)),
    "thermal": SpectrumConfig("thermal", 0.9, 0.5, (240.0, 0.0)),
    "grayscale": SpectrumConfig("custom", 0.0, 0.5, (0.0, 0.0)),
}


def hsl_to_rgb(h: float, s: float, l: float) -> Tuple[float, float, float]:
    """Convert HSL to RGB.

    Parameters
    ----------
    h : float
        Hue as a fraction of the full circle (wrapped into [0, 1))
    s, l : float
        Saturation and lightness in [0, 1]

    Returns
    -------
    tuple of float
        (r, g, b) in [0, 1]
    """
    h = h % 1.0
    c = (1.0 - abs(2.0 * l - 1.0)) * s
    x = c * (1.0 - abs((h * 6.0) % 2.0 - 1.0))
    m = l - c / 2.0

    sector = int(h * 6.0)
    r, g, b = [
        (c, x, 0.0),
        (x, c, 0.0),
        (0.0, c, x),
        (0.0, x, c),
        (x, 0.0, c),
        (c, 0.0, x),
    ][min(sector, 5)]
    return r + m, g + m, b + m


def _to_byte(v: float) -> int:
    # round-half-up, matching the palettes stored by the admin tooling
    return int(min(255, max(0, math.floor(v * 255.0 + 0.5))))


def _spectrum_sample(spectrum: SpectrumConfig, t: float) -> Tuple[float, float, float]:
    kind = spectrum.type
    if kind in ("hsl", "rainbow", "thermal"):
        lo, hi = spectrum.hue_range
        return hsl_to_rgb((lo + t * (hi - lo)) / 360.0, spectrum.saturation, spectrum.lightness)
    if kind == "terrain":
        if t < 0.3:
            hue = (240.0 - (t / 0.3) * 60.0) / 360.0
            return hsl_to_rgb(hue, spectrum.saturation, spectrum.lightness)
        if t < 0.7:
            return hsl_to_rgb(120.0 / 360.0, spectrum.saturation, spectrum.lightness + (t - 0.3) * 0.2)
        return hsl_to_rgb(30.0 / 360.0, spectrum.saturation * 0.5, spectrum.lightness + (t - 0.7) * 0.4)
    if kind == "custom" and spectrum.saturation == 0:
        return t, t, t
    return hsl_to_rgb(t, 0.7, 0.5)


def spectrum_to_palette(spectrum: SpectrumConfig) -> np.ndarray:
    """Sample a spectrum into a (256, 4) uint8 RGBA palette (alpha 255)."""
    out = np.empty((PALETTE_SIZE, 4), dtype=np.uint8)
    for i in range(PALETTE_SIZE):
        r, g, b = _spectrum_sample(spectrum, i / 255.0)
        out[i] = (_to_byte(r), _to_byte(g), _to_byte(b), 255)
    return out


def palette_by_name(name: Optional[str]) -> np.ndarray:
    """Preset palette by name; unknown names fall back to "default"."""
    spectrum = SPECTRUM_PRESETS.get(name or "default", SPECTRUM_PRESETS["default"])
    return spectrum_to_palette(spectrum)


def grayscale_palette() -> np.ndarray:
    """(256, 4) ramp where entry i is (i, i, i, 255)."""
    ramp = np.arange(PALETTE_SIZE, dtype=np.uint8)
    return np.stack([ramp, ramp, ramp, np.full_like(ramp, 255)], axis=1)


def parse_hex_color(text: str) -> Tuple[int, int, int, int]:
    """Parse "#rrggbb" or "#rrggbbaa" (leading '#' optional).

    Raises
    ------
    ValueError
        If the string is not 6 or 8 hex digits
    """
    digits = text.strip().lstrip("#")
    if len(digits) not in (6, 8):
        raise ValueError(f"Hex color must have 6 or 8 digits, got '{text}'")
    try:
        values = [int(digits[i:i + 2], 16) for i in range(0, len(digits), 2)]
    except ValueError as e:
        raise ValueError(f"Invalid hex color '{text}'") from e
    if len(values) == 3:
        values.append(255)
    return tuple(values)


def _color_tuple(color: Any) -> Tuple[float, float, float, float]:
    if isinstance(color, str):
        return parse_hex_color(color)
    if isinstance(color, dict):
        a = color.get("a")
        return color["r"], color["g"], color["b"], 255 if a is None else a
    if hasattr(color, "r") and hasattr(color, "g") and hasattr(color, "b"):
        a = getattr(color, "a", None)
        return color.r, color.g, color.b, 255 if a is None else a
    values = tuple(color)
    if len(values) == 3:
        return (*values, 255)
    if len(values) == 4:
        return values
    raise ValueError(f"Palette entry must have 3 or 4 components, got {len(values)}")


def palette_to_array(colors: Iterable[Any]) -> np.ndarray:
    """Coerce palette entries into an (N, 4) uint8 RGBA array.

    Parameters
    ----------
    colors : iterable
        Entries as {"r", "g", "b", "a"?} dicts, objects with r/g/b(/a)
        attributes, 3/4-tuples, or hex strings. Missing alpha means 255.

    Notes
    -----
    Components are rounded half-up and clamped to [0, 255].
    """
    if isinstance(colors, np.ndarray):
        arr = np.asarray(colors)
        if arr.ndim != 2 or arr.shape[1] not in (3, 4):
            raise ValueError(f"Palette array must be (N, 3) or (N, 4), got {arr.shape}")
        if arr.shape[1] == 3:
            arr = np.concatenate([arr, np.full((arr.shape[0], 1), 255, dtype=arr.dtype)], axis=1)
        return np.clip(np.floor(arr.astype(np.float64) + 0.5), 0, 255).astype(np.uint8)

    rows = [_color_tuple(c) for c in colors]
    if not rows:
        return np.zeros((0, 4), dtype=np.uint8)
    arr = np.asarray(rows, dtype=np.float64)
    return np.clip(np.floor(arr + 0.5), 0, 255).astype(np.uint8)


def normalize_palette(colors: Optional[Sequence[Any]]) -> np.ndarray:
    """Normalize any palette to exactly 256 RGBA entries.

    Parameters
    ----------
    colors : sequence or None
        Palette entries accepted by palette_to_array()

    Returns
    -------
    np.ndarray
        (256, 4) uint8

    Examples
    --------
    >>> normalize_palette(None)[200].tolist()
    [200, 200, 200, 255]
    >>> normalize_palette([(255, 0, 0), (0, 0, 255)])[255].tolist()
    [0, 0, 255, 255]
    """
    if colors is None:
        return grayscale_palette()
    arr = palette_to_array(colors)
    if arr.shape[0] == 0:
        return grayscale_palette()

    arr = arr[:PALETTE_SIZE]
    if arr.shape[0] < PALETTE_SIZE:
        pad = np.repeat(arr[-1:], PALETTE_SIZE - arr.shape[0], axis=0)
        arr = np.concatenate([arr, pad], axis=0)
    return np.ascontiguousarray(arr)
