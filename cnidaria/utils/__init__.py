"""Cross-cutting utilities (lowest dependency layer).

This package provides shared primitives for:
    - Record validation (validators)
    - Grid mapping, tiling & memory guards (compute)
    - Palettes and spectra (color)
    - Atomic I/O (fs)
    - Torch device policy (torch_utils)
    - Profiling (profiler)
    - Hashing for provenance (hashing)
    - Unified logging (logging_config)

No module in utils/ may import from upper layers (pipeline_f, gpu, orchestrator).

Convenience imports:
    from cnidaria.utils import fs, compute, color, validators
    from cnidaria.utils.logging_config import setup_logging, get_logger
"""

from . import color
from . import compute
from . import fs
from . import hashing
from . import logging_config
from . import profiler
from . import torch_utils
from . import validators

from .logging_config import get_logger, push_context, setup_logging

__all__ = [
    # Modules
    'color',
    'compute',
    'fs',
    'hashing',
    'logging_config',
    'profiler',
    'torch_utils',
    'validators',
    # Direct exports
    'setup_logging',
    'get_logger',
    'push_context',
]
