"""Device-side stages: capability negotiation, buffers and compute kernels.

Modules:
    - capability: device probing, profile negotiation, GPUContext, self-test, watchdog
    - buffers: per-job device tensor ownership (BufferArena)
    - coordinate_kernel: batched coordinate pipeline
    - bitonic_sort: distance sort engine
    - compositor: palette lookup and packed RGBA staging
"""

from .bitonic_sort import BitonicSorter, SortResult
from .buffers import BufferArena
from .capability import (
    GPUCapabilityProfile,
    GPUContext,
    ProfileMode,
    calculate_dispatch_groups,
    capability_status,
    check_requirements,
    negotiate,
    run_self_test,
    wait_for_completion,
)
from .compositor import composite, composite_packed, unpack_rgba
from .coordinate_kernel import CoordinateKernel

__all__ = [
    'BitonicSorter',
    'SortResult',
    'BufferArena',
    'GPUCapabilityProfile',
    'GPUContext',
    'ProfileMode',
    'calculate_dispatch_groups',
    'capability_status',
    'check_requirements',
    'negotiate',
    'run_self_test',
    'wait_for_completion',
    'composite',
    'composite_packed',
    'unpack_rgba',
    'CoordinateKernel',
]
