"""Pipeline F: the per-coordinate pattern math.

Modules:
    - expression: sandboxed noise-expression compiler (scalar + tensor lowering)
    - distance: distance metric table (scalar + tensor)
    - cpu_reference: scalar coordinate pipeline, spiral fill order, CPU renderer

Depends only on cnidaria.utils and cnidaria.errors. The GPU kernel in
cnidaria.gpu reuses the AST and metric tables defined here.
"""

from .cpu_reference import CPUReferenceRenderer, PipelineSample, center_spiral, process
from .distance import distance_scalar, distance_tensor, resolve_metric
from .expression import (
    DEFAULT_NOISE_EXPRESSIONS,
    CompiledExpression,
    compile_expression,
    get_default_noise_expression,
    validate_expression,
)

__all__ = [
    'CPUReferenceRenderer',
    'PipelineSample',
    'center_spiral',
    'process',
    'distance_scalar',
    'distance_tensor',
    'resolve_metric',
    'DEFAULT_NOISE_EXPRESSIONS',
    'CompiledExpression',
    'compile_expression',
    'get_default_noise_expression',
    'validate_expression',
]
