"""Cnidaria pattern engine: deterministic procedural 2D patterns.

For every grid coordinate the engine evaluates a sandboxed noise expression,
warps and folds the coordinate, measures a distance, indexes a 1-D curve of
byte values and maps the result through a 256-entry RGBA palette. The same
pipeline runs as a scalar CPU reference or batched on a GPU through torch.

Architecture layers (strict one-way dependency):
    scripts/ → cnidaria/orchestrator/ → cnidaria/gpu/ → cnidaria/pipeline_f/ → cnidaria/utils/

Key invariants:
    - Curve index is always in [0, curve width)
    - Identical inputs produce identical value planes on every backend
    - Expressions are parsed, never evaluated as host code
    - Device buffers are owned per job and released when the job ends
"""

__version__ = "0.4.0"
