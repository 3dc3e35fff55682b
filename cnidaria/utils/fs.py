"""Atomic filesystem operations for render artifacts and record loading.

Provides:
    - Atomic writes: tmp file → fsync → rename (prevents partial reads)
    - RGBA / grayscale PNG export via Pillow
    - YAML load/save (PyYAML safe_load / safe_dump)
    - JSON record load (exports from the pattern CRUD store)
    - Directory creation with exist_ok semantics

Viewers polling an output directory never observe a half-written PNG: every
artifact is written next to its target and renamed into place.

Usage:
    from cnidaria.utils import fs
    fs.atomic_save_image(result.pixel_buffer, out_dir / "pattern.png")
    fs.atomic_yaml_dump(metadata, out_dir / "metadata.yaml")

Note: Module named `fs.py` to avoid shadowing stdlib `io`.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np
import torch
import yaml
from PIL import Image


def ensure_dir(p: Union[str, Path]) -> Path:
    """Create directory if it doesn't exist, return Path object.

    Parameters
    ----------
    p : Union[str, Path]
        Directory path

    Returns
    -------
    Path
        Path object (guaranteed to exist)
    """
    p = Path(p)
    p.mkdir(parents=True, exist_ok=True)
    return p


def atomic_write_bytes(
    path: Union[str, Path],
    data: bytes,
    tmp_suffix: str = ".tmp"
) -> None:
    """Write bytes to file atomically (tmp → fsync → rename).

    Parameters
    ----------
    path : Union[str, Path]
        Target file path
    data : bytes
        Data to write
    tmp_suffix : str
        Temporary file suffix, default ".tmp"

    Notes
    -----
    Uses same directory for tmp file to ensure atomic rename on same filesystem.
    """
    path = Path(path)
    ensure_dir(path.parent)

    tmp_path = path.with_suffix(path.suffix + tmp_suffix)

    try:
        with open(tmp_path, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        tmp_path.replace(path)
    except Exception as e:
        if tmp_path.exists():
            tmp_path.unlink()
        raise RuntimeError(f"Failed to write {path} atomically: {e}") from e


def atomic_write_text(
    path: Union[str, Path],
    text: str,
    encoding: str = "utf-8"
) -> None:
    """Write text to file atomically (wrapper around atomic_write_bytes)."""
    atomic_write_bytes(path, text.encode(encoding))


def atomic_save_image(
    img: Union[np.ndarray, torch.Tensor],
    path: Union[str, Path],
    pil_kwargs: Optional[Dict[str, Any]] = None
) -> None:
    """Save image atomically (prevents partial reads).

    Parameters
    ----------
    img : Union[np.ndarray, torch.Tensor]
        Image data, uint8:
        - (H, W, 4) RGBA pixel buffer
        - (H, W, 3) RGB
        - (H, W) grayscale value plane
    path : Union[str, Path]
        Target file path (extension determines format)
    pil_kwargs : Optional[Dict[str, Any]]
        Additional kwargs for PIL.Image.save (e.g., compress_level=6)

    Notes
    -----
    Tensors are moved to host memory first. Non-uint8 arrays are clipped to
    [0, 255]; no gamma or color management is applied.
    """
    path = Path(path)
    pil_kwargs = pil_kwargs or {}
    ensure_dir(path.parent)

    if isinstance(img, torch.Tensor):
        img = img.detach().cpu().numpy()

    img = np.ascontiguousarray(img)
    if img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)

    if img.ndim == 3 and img.shape[2] == 1:
        img = img.squeeze(2)

    # (H, W, 4) uint8 is read as RGBA
    pil_img = Image.fromarray(img)

    # tmp keeps the real extension so PIL picks the right encoder
    tmp_path = path.with_name(path.stem + ".tmp" + path.suffix)
    try:
        pil_img.save(tmp_path, **pil_kwargs)
        tmp_path.replace(path)
    except Exception as e:
        if tmp_path.exists():
            tmp_path.unlink()
        raise RuntimeError(f"Failed to save image {path} atomically: {e}") from e


def load_image_rgba(path: Union[str, Path]) -> np.ndarray:
    """Load a PNG back as an (H, W, 4) uint8 array."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Image not found: {path}")
    with Image.open(path) as im:
        return np.asarray(im.convert("RGBA"), dtype=np.uint8).copy()


def atomic_yaml_dump(obj: Any, path: Union[str, Path]) -> None:
    """Save object as YAML atomically.

    Parameters
    ----------
    obj : Any
        Python object (dict, list, primitives)
    path : Union[str, Path]
        Target YAML file path

    Notes
    -----
    Uses PyYAML safe_dump; key order is preserved.
    """
    yaml_str = yaml.safe_dump(
        obj,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True
    )
    atomic_write_text(path, yaml_str)


def load_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """Load YAML file safely.

    Parameters
    ----------
    path : Union[str, Path]
        YAML file path

    Returns
    -------
    Dict[str, Any]
        Parsed YAML content

    Raises
    ------
    FileNotFoundError
        If file doesn't exist
    yaml.YAMLError
        If YAML parsing fails
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"YAML file not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Failed to parse YAML file {path}: {e}") from e


def load_json(path: Union[str, Path]) -> Any:
    """Load a JSON record exported from the pattern store.

    Raises
    ------
    FileNotFoundError
        If file doesn't exist
    ValueError
        If the file is not valid JSON
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"JSON file not found: {path}")

    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse JSON file {path}: {e}") from e


def load_record(path: Union[str, Path]) -> Any:
    """Load a YAML or JSON record, dispatching on the file extension."""
    path = Path(path)
    if path.suffix.lower() == ".json":
        return load_json(path)
    return load_yaml(path)
