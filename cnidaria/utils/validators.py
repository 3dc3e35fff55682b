"""Record schemas and config loading.

Provides centralized validation for every record the engine consumes, using
pydantic:
    - Curve (curve.v1): 1-D byte array indexed by the coordinate pipeline
    - Distortion profile (distortion.v1): warps, folds, metric, checkerboard
    - Palette (palette.v1): RGBA entries, hex list, or spectrum preset
    - Noise expression (noise.v1): user expression text
    - Job (pattern_job.v1): complete render request

Records come from two places: YAML files written by hand, and JSON exported
by the pattern CRUD store. The store uses hyphenated keys ("curve-width",
"distance-modulus", "angular-frequency", ...) and a flat distortion layout;
both spellings validate to the same frozen models.

All loaders fail fast with actionable messages (offending key, expected range).

Usage:
    from cnidaria.utils import validators

    job = validators.load_job_config("configs/jobs/radial_demo.v1.yaml")
    curve = validators.load_curve("exports/curve-42.json")
"""

from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CURVE_HEIGHT = 255
MAX_EXPRESSION_LENGTH = 1024
MAX_IMAGE_SIDE = 16384


class DistanceMetric(str, Enum):
    """Distance metric names accepted by distortion profiles."""
    RADIAL = "radial"
    CARTESIAN_X = "cartesian-x"
    CARTESIAN_Y = "cartesian-y"
    MANHATTAN = "manhattan"
    CHEBYSHEV = "chebyshev"
    MINKOWSKI_3 = "minkowski-3"
    HEXAGONAL = "hexagonal"
    TRIANGULAR = "triangular"
    SPIRAL = "spiral"
    CROSS = "cross"
    SINE_WAVE = "sine-wave"
    RIPPLE = "ripple"
    INTERFERENCE = "interference"
    HYPERBOLIC = "hyperbolic"
    POLAR_ROSE = "polar-rose"
    LEMNISCATE = "lemniscate"
    LOGARITHMIC = "logarithmic"


def _unwrap_store_envelope(data: Any) -> Any:
    """Strip the {"success": ..., "data": {...}} envelope of store exports."""
    if isinstance(data, dict) and "success" in data and isinstance(data.get("data"), dict):
        return data["data"]
    return data


# ============================================================================
# CURVE SCHEMA V1
# ============================================================================

class CurveV1(BaseModel):
    """1-D curve of byte values (curve.v1 schema).

    ``width`` may be omitted, in which case it is taken from ``len(data)``.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str = Field("", description="Store identifier")
    name: str = Field("curve", description="Human-readable name")
    width: int = Field(..., ge=1, alias="curve-width", description="Number of entries")
    data: Tuple[int, ...] = Field(..., alias="curve-data", description="Values in [0, 255]")
    index_scaling: float = Field(1.0, alias="curve-index-scaling", description="Multiplier on the final distance")
    coordinate_noise: str = Field("radial", alias="coordinate-noise", description="Default noise expression name")

    @model_validator(mode='before')
    @classmethod
    def default_width(cls, values: Any) -> Any:
        values = _unwrap_store_envelope(values)
        if isinstance(values, dict):
            has_width = "width" in values or "curve-width" in values
            data = values.get("data", values.get("curve-data"))
            if not has_width and data is not None:
                values = {**values, "width": len(data)}
        return values

    @field_validator('data')
    @classmethod
    def validate_bytes(cls, v: Tuple[int, ...]) -> Tuple[int, ...]:
        for i, value in enumerate(v):
            if not 0 <= value <= CURVE_HEIGHT:
                raise ValueError(f"curve data[{i}]={value} out of range [0, {CURVE_HEIGHT}]")
        return v

    @model_validator(mode='after')
    def validate_length(self) -> 'CurveV1':
        if len(self.data) != self.width:
            raise ValueError(f"curve data has {len(self.data)} entries but width is {self.width}")
        return self

    def as_array(self) -> np.ndarray:
        """Curve values as a (width,) uint8 array."""
        return np.asarray(self.data, dtype=np.uint8)


# ============================================================================
# DISTORTION PROFILE SCHEMA V1
# ============================================================================

class AngularDistortion(BaseModel):
    """Sinusoidal angular warp (angle += sin(angle·frequency)·amplitude·0.01)."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    frequency: float = 0.0
    amplitude: float = 0.0
    offset_deg: float = Field(0.0, description="Angle offset in degrees")

    @property
    def effective(self) -> bool:
        """Enabled and at least one parameter non-zero."""
        return self.enabled and (self.frequency != 0 or self.amplitude != 0 or self.offset_deg != 0)


class FractalDistortion(BaseModel):
    """Three-octave cross-coupled sine/cosine displacement."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    scale1: float = 0.0
    scale2: float = 0.0
    scale3: float = 0.0
    strength: float = 1.0


class Checkerboard(BaseModel):
    """Invert values on odd distance bands of width ``step_size``."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    step_size: float = Field(50.0, ge=0.0, description="Band width in world units; 0 disables")


_FLAT_DISTORTION_KEYS = {
    "angular-distortion": ("angular", "enabled"),
    "angular-frequency": ("angular", "frequency"),
    "angular-amplitude": ("angular", "amplitude"),
    "angular-offset": ("angular", "offset_deg"),
    "fractal-distortion": ("fractal", "enabled"),
    "fractal-scale-1": ("fractal", "scale1"),
    "fractal-scale-2": ("fractal", "scale2"),
    "fractal-scale-3": ("fractal", "scale3"),
    "fractal-strength": ("fractal", "strength"),
    "checkerboard-pattern": ("checkerboard", "enabled"),
    "checkerboard-steps": ("checkerboard", "step_size"),
}


class DistortionProfileV1(BaseModel):
    """Distortion profile (distortion.v1 schema).

    Accepts the nested layout below or the store's flat hyphenated layout
    ("angular-frequency", "fractal-scale-1", "checkerboard-steps", ...).
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    name: str = "default"
    angular: AngularDistortion = Field(default_factory=AngularDistortion)
    fractal: FractalDistortion = Field(default_factory=FractalDistortion)
    distance_modulus: float = Field(0.0, ge=0.0, alias="distance-modulus")
    distance_metric: DistanceMetric = Field(DistanceMetric.RADIAL, alias="distance-calculation")
    curve_scaling: float = Field(1.0, alias="curve-scaling")
    checkerboard: Checkerboard = Field(default_factory=Checkerboard)

    @model_validator(mode='before')
    @classmethod
    def nest_flat_keys(cls, values: Any) -> Any:
        values = _unwrap_store_envelope(values)
        if not isinstance(values, dict):
            return values
        if not any(key in values for key in _FLAT_DISTORTION_KEYS):
            return values

        nested: Dict[str, Any] = {
            k: v for k, v in values.items() if k not in _FLAT_DISTORTION_KEYS
        }
        for key, (group, field) in _FLAT_DISTORTION_KEYS.items():
            if key in values:
                section = dict(nested.get(group) or {})
                section[field] = values[key]
                nested[group] = section
        return nested


# ============================================================================
# PALETTE SCHEMA V1
# ============================================================================

class PaletteColor(BaseModel):
    """Single RGBA palette entry (bytes)."""
    model_config = ConfigDict(frozen=True)

    r: int = Field(..., ge=0, le=255)
    g: int = Field(..., ge=0, le=255)
    b: int = Field(..., ge=0, le=255)
    a: int = Field(255, ge=0, le=255)


class PaletteV1(BaseModel):
    """Palette (palette.v1 schema).

    Exactly one source is used, in priority order: ``colors``, ``hex_colors``,
    ``preset``. With none set the palette is the grayscale ramp.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    name: str = "palette"
    colors: Optional[List[PaletteColor]] = None
    hex_colors: Optional[List[str]] = Field(None, alias="hexColors")
    preset: Optional[str] = Field(None, description="Spectrum preset: default, rainbow, terrain, thermal, grayscale")

    @model_validator(mode='before')
    @classmethod
    def unwrap(cls, values: Any) -> Any:
        return _unwrap_store_envelope(values)

    @field_validator('hex_colors')
    @classmethod
    def validate_hex(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        from .color import parse_hex_color
        for color in v:
            parse_hex_color(color)
        return v

    @field_validator('preset')
    @classmethod
    def validate_preset(cls, v: Optional[str]) -> Optional[str]:
        from .color import SPECTRUM_PRESETS
        if v is not None and v not in SPECTRUM_PRESETS:
            raise ValueError(f"Unknown palette preset '{v}', expected one of {sorted(SPECTRUM_PRESETS)}")
        return v

    def entries(self) -> np.ndarray:
        """Palette as given (un-normalized), (N, 4) uint8."""
        from .color import palette_by_name, palette_to_array
        if self.colors:
            return palette_to_array(self.colors)
        if self.hex_colors:
            return palette_to_array(self.hex_colors)
        if self.preset:
            return palette_by_name(self.preset)
        return np.zeros((0, 4), dtype=np.uint8)

    def to_array(self) -> np.ndarray:
        """Normalized (256, 4) uint8 palette."""
        from .color import normalize_palette
        return normalize_palette(self.entries())


# ============================================================================
# NOISE EXPRESSION SCHEMA V1
# ============================================================================

class NoiseExpressionV1(BaseModel):
    """Stored noise expression (noise.v1 schema).

    Only shape is checked here; sandbox validation happens at compile time.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    name: str
    expression: str = Field(..., alias="gpuExpression")
    category: str = "custom"
    description: str = ""

    @model_validator(mode='before')
    @classmethod
    def unwrap(cls, values: Any) -> Any:
        return _unwrap_store_envelope(values)

    @field_validator('expression')
    @classmethod
    def validate_expression_text(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("expression must be non-empty")
        if len(v) > MAX_EXPRESSION_LENGTH:
            raise ValueError(f"expression is {len(v)} characters, limit is {MAX_EXPRESSION_LENGTH}")
        return v


# ============================================================================
# JOB SCHEMA V1
# ============================================================================

class JobV1(BaseModel):
    """Complete render job (pattern_job.v1 schema).

    ``expression`` is either literal expression text or the name of a
    built-in noise; when omitted the curve's ``coordinate_noise`` is used.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    schema_version: str = Field("pattern_job.v1", alias="schema", description="Schema version")
    id: str = Field(..., min_length=1, description="Job identifier (used in logs and output names)")
    width: int = Field(..., ge=1, le=MAX_IMAGE_SIDE)
    height: int = Field(..., ge=1, le=MAX_IMAGE_SIDE)
    curve: CurveV1
    distortion: DistortionProfileV1 = Field(default_factory=DistortionProfileV1)
    palette: Optional[PaletteV1] = None
    expression: Optional[str] = Field(None, description="Noise expression text or built-in noise name")
    center: Tuple[float, float] = Field((0.0, 0.0), description="World coordinate at the image center")
    scale: float = Field(1.0, gt=0.0, description="World units per pixel")
    sort_by_distance: bool = Field(False, description="Also return pixels sorted by distance from center")
    sort_descending: bool = False
    backend: Literal["gpu", "cpu"] = "gpu"

    @field_validator('schema_version')
    @classmethod
    def validate_schema(cls, v: str) -> str:
        if v != "pattern_job.v1":
            raise ValueError(f"Expected schema 'pattern_job.v1', got '{v}'")
        return v

    @property
    def expression_source(self) -> str:
        """Noise expression text after resolving built-in names."""
        return self.expression if self.expression is not None else self.curve.coordinate_noise

    @property
    def pixel_count(self) -> int:
        return self.width * self.height


# ============================================================================
# LOADERS
# ============================================================================

def _load_record(path: Union[str, Path], what: str) -> Tuple[Path, Any]:
    from . import fs

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"{what} not found: {path}")
    return path, fs.load_record(path)


def load_job_config(path: Union[str, Path]) -> JobV1:
    """Load and validate a job config from YAML or JSON.

    Parameters
    ----------
    path : Union[str, Path]
        Path to a pattern_job.v1 file

    Returns
    -------
    JobV1
        Validated job

    Raises
    ------
    FileNotFoundError
        If path doesn't exist
    ValueError
        If validation fails (with actionable error message)
    """
    path, data = _load_record(path, "Job config")
    try:
        return JobV1(**data)
    except Exception as e:
        raise ValueError(f"Job config validation failed at {path}: {e}") from e


def load_curve(path: Union[str, Path]) -> CurveV1:
    """Load and validate a curve record (YAML or store JSON export)."""
    path, data = _load_record(path, "Curve")
    try:
        return CurveV1.model_validate(data)
    except Exception as e:
        raise ValueError(f"Curve validation failed at {path}: {e}") from e


def load_distortion_profile(path: Union[str, Path]) -> DistortionProfileV1:
    """Load and validate a distortion profile (nested or flat layout)."""
    path, data = _load_record(path, "Distortion profile")
    try:
        return DistortionProfileV1.model_validate(data)
    except Exception as e:
        raise ValueError(f"Distortion profile validation failed at {path}: {e}") from e


def load_palette(path: Union[str, Path]) -> PaletteV1:
    """Load and validate a palette record."""
    path, data = _load_record(path, "Palette")
    try:
        return PaletteV1.model_validate(data)
    except Exception as e:
        raise ValueError(f"Palette validation failed at {path}: {e}") from e


def job_from_dict(data: Dict[str, Any]) -> JobV1:
    """Validate an in-memory job record (e.g. from a request body).

    Raises
    ------
    ValueError
        If validation fails
    """
    try:
        return JobV1.model_validate(data)
    except Exception as e:
        raise ValueError(f"Job validation failed: {e}") from e


def load_noise_expression(path: Union[str, Path]) -> NoiseExpressionV1:
    """Load and validate a stored noise expression (noise.v1 record)."""
    path, data = _load_record(path, "Noise expression")
    try:
        return NoiseExpressionV1.model_validate(data)
    except Exception as e:
        raise ValueError(f"Noise expression validation failed at {path}: {e}") from e
