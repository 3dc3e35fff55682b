"""SHA-256 hashing for render provenance and cache keys.

Provides:
    - sha256_file(): Hash file contents (exported PNGs, job YAMLs)
    - sha256_array(): Hash numpy arrays (value planes, pixel buffers)
    - sha256_tensor(): Hash tensor values (device-resident planes)
    - sha256_string(): Hash strings (canonical expression source)
    - hash_dict(): Hash JSON-serializable records (sorted keys)

Deterministic hashing:
    - Tensors converted to bytes via .cpu().numpy().tobytes()
    - Files read in chunks (1 MB default) for memory efficiency
    - Results are hex strings (64 chars)

A value-plane hash is recorded in every job result so two renders of the
same job on different devices can be compared without shipping pixels.

Note: Module named `hashing.py` to avoid shadowing builtin `hash()`.
"""

import hashlib
import json
from pathlib import Path
from typing import Union

import numpy as np
import torch


def sha256_file(path: Union[str, Path], chunk_size: int = 1 << 20) -> str:
    """Compute SHA-256 hash of file contents.

    Parameters
    ----------
    path : Union[str, Path]
        File path
    chunk_size : int
        Read chunk size in bytes, default 1 MB

    Returns
    -------
    str
        SHA-256 hex digest (64 characters)

    Raises
    ------
    FileNotFoundError
        If file doesn't exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    sha256 = hashlib.sha256()
    with open(path, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            sha256.update(chunk)

    return sha256.hexdigest()


def sha256_array(a: np.ndarray) -> str:
    """Compute SHA-256 hash of array values.

    Notes
    -----
    Shape and dtype are folded into the digest, so a (4, 4) and a (16,)
    plane with the same bytes hash differently.
    """
    a = np.ascontiguousarray(a)
    sha256 = hashlib.sha256()
    sha256.update(f"{a.dtype.str}:{a.shape}".encode('utf-8'))
    sha256.update(a.tobytes())
    return sha256.hexdigest()


def sha256_tensor(t: torch.Tensor) -> str:
    """Compute SHA-256 hash of tensor values.

    Notes
    -----
    Hash is invariant to device but NOT to dtype/shape; equal to
    ``sha256_array`` of the same values on host.
    """
    return sha256_array(t.detach().cpu().numpy())


def sha256_string(s: str) -> str:
    """Compute SHA-256 hash of string.

    Examples
    --------
    >>> key = sha256_string(compiled.to_source())
    """
    sha256 = hashlib.sha256()
    sha256.update(s.encode('utf-8'))
    return sha256.hexdigest()


def hash_dict(d: dict) -> str:
    """Compute SHA-256 hash of dictionary (sorted keys, JSON-serializable)."""
    return sha256_string(json.dumps(d, sort_keys=True, default=str))
