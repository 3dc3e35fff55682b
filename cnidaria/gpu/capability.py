"""GPU capability negotiation and the explicit device context.

Probes the torch device once per session, chooses a workgroup shape and a
dispatch profile, and owns the device for the rest of the session through a
``GPUContext`` object (there is no module-level device state).

Workgroup shapes are tried in priority order and the first that fits the
device limits wins::

    16×16×1, 8×16×2, 8×8×4, 8×8×1, 4×4×1

A shape fits when each axis is within the per-axis limit and the product is
within ``max_invocations_per_workgroup``. The profile is **Full** only if the
device allows at least 1024 invocations per workgroup, Reduced mode is not
forced, and the chosen shape has more than 256 invocations; otherwise it is
**Reduced**:

    ========  ========  ================
    mode      tile_px   per_frame_budget
    ========  ========  ================
    Reduced   128       2
    Full      256       4
    ========  ========  ================

With the default candidate list every shape has at most 256 invocations, so
negotiation always lands on Reduced; Full is reachable by passing larger
candidates (see ``FULL_FIDELITY_CANDIDATES``).

Torch has no user-visible workgroups; the chosen shape sizes tiles and is
reported to operators, and ``calculate_dispatch_groups`` keeps the dispatch
arithmetic identical to a shader backend.

Usage:
    from cnidaria.gpu.capability import GPUContext, run_self_test

    with GPUContext.init() as ctx:
        result = run_self_test(ctx)
        print(capability_status(ctx))
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import torch

from cnidaria.errors import CapabilityUnavailable
from cnidaria.utils.compute import ceil_div
from cnidaria.utils.profiler import synchronize_and_time, synchronize_device
from cnidaria.utils.torch_utils import dtype_for_device, resolve_device

logger = logging.getLogger(__name__)

WORKGROUP_CANDIDATES: Tuple[Tuple[int, int, int], ...] = (
    (16, 16, 1),
    (8, 16, 2),
    (8, 8, 4),
    (8, 8, 1),
    (4, 4, 1),
)
FULL_FIDELITY_CANDIDATES: Tuple[Tuple[int, int, int], ...] = ((32, 32, 1), (16, 16, 4)) + WORKGROUP_CANDIDATES

FULL_MIN_INVOCATIONS = 1024
REDUCED_MAX_WORKGROUP_TOTAL = 256

SELF_TEST_SIZE = 128
SELF_TEST_BUDGET_MS = 50.0

# Emulated (CPU) device limits: reduced-class hardware
_EMULATED_LIMITS = dict(
    max_workgroup_size_x=256,
    max_workgroup_size_y=256,
    max_workgroup_size_z=64,
    max_invocations_per_workgroup=256,
    max_buffer_size=1 << 30,
    max_storage_buffer_binding_size=1 << 30,
)

_MPS_FALLBACK_MEMORY = 4 << 30


# ---------------------------------------------------------------------------
# Data containers
# ---------------------------------------------------------------------------


class ProfileMode(str, Enum):
    """Dispatch profile class."""

    REDUCED = "reduced"
    FULL = "full"


@dataclass(frozen=True)
class WorkgroupShape:
    """Workgroup dimensions and their product."""

    x: int
    y: int
    z: int

    @property
    def total(self) -> int:
        return self.x * self.y * self.z

    def __str__(self) -> str:
        return f"{self.x}x{self.y}x{self.z}"


@dataclass(frozen=True)
class DeviceLimits:
    """Compute limits reported by (or assumed for) a device."""

    max_workgroup_size_x: int
    max_workgroup_size_y: int
    max_workgroup_size_z: int
    max_invocations_per_workgroup: int
    max_buffer_size: int
    max_storage_buffer_binding_size: int
    device_name: str = "unknown"
    backend: str = "unknown"


@dataclass(frozen=True)
class GPUCapabilityProfile:
    """Negotiated dispatch profile. Immutable; shared read-only by all jobs."""

    workgroup: WorkgroupShape
    tile_px: int
    per_frame_budget: int
    mode: ProfileMode
    message: str


@dataclass(frozen=True)
class DispatchGroups:
    x: int
    y: int
    z: int

    @property
    def total(self) -> int:
        return self.x * self.y * self.z


@dataclass
class SelfTestResult:
    """Outcome of the trivial-kernel self-test."""

    success: bool
    timing_ms: float
    message: str
    attempts: int = 1


@dataclass
class RequirementsReport:
    """Human-readable compatibility assessment of a device."""

    compatible: bool
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)


REDUCED_MESSAGE = (
    "Reduced mode (<=256 invocations): smaller tiles and paced dispatch. "
    "All features enabled; throughput scaled for this device."
)
FULL_MESSAGE = "Full fidelity (>=1024 invocations): larger tiles and higher per-frame budget."

SAFE_FALLBACK_PROFILE = GPUCapabilityProfile(
    workgroup=WorkgroupShape(8, 8, 1),
    tile_px=64,
    per_frame_budget=1,
    mode=ProfileMode.REDUCED,
    message="Safe fallback: 8x8x1 workgroups, 64 px tiles, one tile per frame.",
)


# ---------------------------------------------------------------------------
# Negotiation (pure)
# ---------------------------------------------------------------------------


def choose_workgroup(
    limits: DeviceLimits,
    candidates: Sequence[Tuple[int, int, int]] = WORKGROUP_CANDIDATES,
) -> WorkgroupShape:
    """First candidate shape that fits ``limits``.

    Raises
    ------
    CapabilityUnavailable
        If no candidate fits
    """
    for x, y, z in candidates:
        if (
            x <= limits.max_workgroup_size_x
            and y <= limits.max_workgroup_size_y
            and z <= limits.max_workgroup_size_z
            and x * y * z <= limits.max_invocations_per_workgroup
        ):
            return WorkgroupShape(x, y, z)
    raise CapabilityUnavailable(
        f"No workgroup shape fits device limits "
        f"({limits.max_workgroup_size_x}x{limits.max_workgroup_size_y}x{limits.max_workgroup_size_z}, "
        f"{limits.max_invocations_per_workgroup} invocations)"
    )


def negotiate(
    limits: DeviceLimits,
    force_reduced: bool = False,
    candidates: Sequence[Tuple[int, int, int]] = WORKGROUP_CANDIDATES,
) -> GPUCapabilityProfile:
    """Choose workgroup shape and dispatch profile for a device.

    Parameters
    ----------
    limits : DeviceLimits
        Device limits (from probe_device_limits)
    force_reduced : bool
        Operator override forcing Reduced mode
    candidates : sequence of (x, y, z)
        Shapes in priority order, default WORKGROUP_CANDIDATES

    Returns
    -------
    GPUCapabilityProfile

    Notes
    -----
    Pure: the same inputs always give the same profile. Re-run it when the
    device changes instead of editing an existing profile.
    """
    workgroup = choose_workgroup(limits, candidates)
    full_capable = limits.max_invocations_per_workgroup >= FULL_MIN_INVOCATIONS
    if full_capable and not force_reduced and workgroup.total > REDUCED_MAX_WORKGROUP_TOTAL:
        return GPUCapabilityProfile(workgroup, 256, 4, ProfileMode.FULL, FULL_MESSAGE)
    return GPUCapabilityProfile(workgroup, 128, 2, ProfileMode.REDUCED, REDUCED_MESSAGE)


def calculate_dispatch_groups(
    profile: GPUCapabilityProfile,
    width: int,
    height: int,
    depth: int = 1,
) -> DispatchGroups:
    """Workgroups needed to cover a width × height × depth domain."""
    wg = profile.workgroup
    return DispatchGroups(
        x=ceil_div(width, wg.x),
        y=ceil_div(height, wg.y),
        z=ceil_div(depth, wg.z),
    )


def check_requirements(limits: Optional[DeviceLimits]) -> RequirementsReport:
    """Assess whether a device meets full-acceleration requirements.

    A device can fail these checks and still run in Reduced mode; the report
    is advisory and surfaced by ``scripts/gpu_status.py``.
    """
    report = RequirementsReport(compatible=True)
    if limits is None:
        report.compatible = False
        report.issues.append("No GPU device available")
        report.recommendations.append("Install a CUDA or MPS enabled torch build, or run the CPU backend")
        return report

    if limits.max_workgroup_size_x < 256:
        report.issues.append(f"Workgroup X size too small: {limits.max_workgroup_size_x} (minimum 256)")
    if limits.max_workgroup_size_y < 256:
        report.issues.append(f"Workgroup Y size too small: {limits.max_workgroup_size_y} (minimum 256)")

    min_buffer = 512 * 512 * 4 * 4
    if limits.max_storage_buffer_binding_size < min_buffer:
        report.issues.append(
            f"Storage buffer too small: {limits.max_storage_buffer_binding_size} bytes (minimum {min_buffer})"
        )
        report.recommendations.append("Device may not hold a full 512x512 job; use smaller images")

    if limits.max_invocations_per_workgroup < FULL_MIN_INVOCATIONS:
        report.issues.append(
            f"Max invocations per workgroup too small: {limits.max_invocations_per_workgroup} "
            f"(minimum {FULL_MIN_INVOCATIONS})"
        )

    report.compatible = not report.issues
    if report.compatible:
        report.recommendations.append("All requirements met; full acceleration available")
    else:
        report.recommendations.append("Device will run in reduced mode")
    return report


# ---------------------------------------------------------------------------
# Device probing
# ---------------------------------------------------------------------------


def probe_device_limits(device: torch.device) -> DeviceLimits:
    """Read compute limits for a torch device.

    CUDA reports its block limits (1024 threads, 1024×1024×64) and total
    memory. MPS reports Metal threadgroup limits and the recommended working
    set. CPU is only valid as an emulated device and reports reduced-class
    limits.
    """
    if device.type == "cuda":
        props = torch.cuda.get_device_properties(device)
        return DeviceLimits(
            max_workgroup_size_x=1024,
            max_workgroup_size_y=1024,
            max_workgroup_size_z=64,
            max_invocations_per_workgroup=1024,
            max_buffer_size=int(props.total_memory),
            max_storage_buffer_binding_size=int(props.total_memory),
            device_name=props.name,
            backend="cuda",
        )
    if device.type == "mps":
        recommended = getattr(torch.mps, "recommended_max_memory", None)
        memory = int(recommended()) if recommended is not None else _MPS_FALLBACK_MEMORY
        return DeviceLimits(
            max_workgroup_size_x=1024,
            max_workgroup_size_y=1024,
            max_workgroup_size_z=1024,
            max_invocations_per_workgroup=1024,
            max_buffer_size=memory,
            max_storage_buffer_binding_size=memory,
            device_name="Apple MPS",
            backend="mps",
        )
    if device.type == "cpu":
        return DeviceLimits(device_name="cpu-emulated", backend="cpu", **_EMULATED_LIMITS)
    raise CapabilityUnavailable(f"Unsupported device type '{device.type}'")


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------


class GPUContext:
    """Owns the compute device for one session.

    Create with ``GPUContext.init()`` at session start and call
    ``teardown()`` on shutdown (or use it as a context manager). Jobs take
    the context explicitly; nothing is global.

    Parameters
    ----------
    device : torch.device
        Compute device
    limits : DeviceLimits
        Probed limits
    profile : GPUCapabilityProfile
        Negotiated profile
    emulated : bool
        True when running on the CPU test-harness device
    force_reduced : bool
        Operator override used for negotiation
    """

    def __init__(
        self,
        device: torch.device,
        limits: DeviceLimits,
        profile: GPUCapabilityProfile,
        *,
        emulated: bool = False,
        force_reduced: bool = False,
    ) -> None:
        self.device = device
        self.limits = limits
        self.profile = profile
        self.emulated = emulated
        self.force_reduced = force_reduced
        self.candidates: Tuple[Tuple[int, int, int], ...] = WORKGROUP_CANDIDATES
        self.dtype = dtype_for_device(device)
        self.degraded = False
        self.degraded_reason: Optional[str] = None
        self._closed = False
        self._lock = threading.Lock()

    @classmethod
    def init(
        cls,
        device: Optional[Union[str, torch.device]] = None,
        *,
        force_reduced: bool = False,
        allow_emulation: bool = False,
        candidates: Sequence[Tuple[int, int, int]] = WORKGROUP_CANDIDATES,
    ) -> "GPUContext":
        """Probe the device and negotiate a profile.

        Parameters
        ----------
        device : str or torch.device, optional
            Explicit device; None auto-selects CUDA, then MPS
        force_reduced : bool
            Force Reduced mode regardless of limits
        allow_emulation : bool
            Permit the CPU as an emulated device (tests, CI)
        candidates : sequence of (x, y, z)
            Workgroup candidates in priority order

        Raises
        ------
        CapabilityUnavailable
            If no GPU is present (and emulation is not allowed), or the
            device fits no workgroup shape
        """
        resolved = resolve_device(device)
        if resolved is None:
            if not allow_emulation:
                raise CapabilityUnavailable("No CUDA or MPS device available")
            resolved = torch.device("cpu")

        emulated = resolved.type == "cpu"
        if emulated and not allow_emulation:
            raise CapabilityUnavailable("CPU device requested without allow_emulation=True")
        if resolved.type == "cuda" and not torch.cuda.is_available():
            raise CapabilityUnavailable(f"CUDA device {resolved} requested but CUDA is unavailable")

        limits = probe_device_limits(resolved)
        profile = negotiate(limits, force_reduced=force_reduced, candidates=candidates)
        ctx = cls(resolved, limits, profile, emulated=emulated, force_reduced=force_reduced)
        ctx.candidates = tuple(candidates)

        logger.info(
            "GPU context on %s (%s): workgroup %s, mode=%s, tile=%dpx, budget=%d",
            resolved, limits.device_name, profile.workgroup, profile.mode.value,
            profile.tile_px, profile.per_frame_budget,
        )
        logger.debug("Device limits: %s", limits)
        return ctx

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def ensure_open(self) -> None:
        if self._closed:
            raise CapabilityUnavailable("GPU context has been torn down")

    def renegotiate(self, force_reduced: Optional[bool] = None) -> GPUCapabilityProfile:
        """Re-run negotiation (e.g. after toggling the Reduced override)."""
        self.ensure_open()
        if force_reduced is not None:
            self.force_reduced = force_reduced
        with self._lock:
            self.profile = negotiate(self.limits, force_reduced=self.force_reduced, candidates=self.candidates)
            self.degraded = False
            self.degraded_reason = None
        logger.info("Renegotiated profile: mode=%s", self.profile.mode.value)
        return self.profile

    def mark_degraded(self, reason: str) -> None:
        """Switch to the safe fallback profile and remember why."""
        with self._lock:
            if not self.degraded:
                logger.warning("capability negotiation degraded: %s", reason)
            self.degraded = True
            self.degraded_reason = reason
            self.profile = replace(
                SAFE_FALLBACK_PROFILE,
                message=f"{SAFE_FALLBACK_PROFILE.message} ({reason})",
            )

    def synchronize(self) -> None:
        synchronize_device(self.device)

    def empty_cache(self) -> None:
        """Return cached allocator blocks to the driver."""
        if self.device.type == "cuda":
            torch.cuda.empty_cache()
        elif self.device.type == "mps":
            torch.mps.empty_cache()

    def teardown(self) -> None:
        """Release cached device memory; the context is unusable afterwards."""
        if self._closed:
            return
        try:
            self.synchronize()
        finally:
            self.empty_cache()
            self._closed = True
            logger.info("GPU context on %s torn down", self.device)

    def __enter__(self) -> "GPUContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()

    def __repr__(self) -> str:
        return (
            f"GPUContext(device={self.device}, mode={self.profile.mode.value}, "
            f"workgroup={self.profile.workgroup}, degraded={self.degraded})"
        )


# ---------------------------------------------------------------------------
# Self-test and watchdog
# ---------------------------------------------------------------------------


def _self_test_kernel(ctx: GPUContext) -> torch.Tensor:
    gx = torch.arange(SELF_TEST_SIZE, device=ctx.device, dtype=torch.float32)
    gy = torch.arange(SELF_TEST_SIZE, device=ctx.device, dtype=torch.float32)
    return gy[:, None] + gx[None, :]


def run_self_test(
    ctx: GPUContext,
    budget_ms: float = SELF_TEST_BUDGET_MS,
    attempts: int = 3,
) -> SelfTestResult:
    """Dispatch a trivial 128×128 kernel and time it.

    The first attempt may include one-off driver warm-up, so up to
    ``attempts`` runs are made. If none finishes correctly within
    ``budget_ms`` the context is marked degraded (safe fallback profile)
    and the failure is reported, not raised.
    """
    ctx.ensure_open()
    timing_ms = 0.0
    last_error = ""

    for attempt in range(1, attempts + 1):
        try:
            out, elapsed = synchronize_and_time(_self_test_kernel, ctx, device=ctx.device)
            timing_ms = elapsed * 1000.0
            probe = float(out[5, 7].item())
            if probe != 12.0:
                last_error = f"kernel produced {probe} at (7, 5), expected 12.0"
                continue
        except RuntimeError as e:
            last_error = f"kernel failed: {e}"
            logger.debug("Self-test attempt %d failed", attempt, exc_info=True)
            continue

        if timing_ms < budget_ms:
            message = f"Self-test passed in {timing_ms:.2f}ms"
            logger.info(message)
            return SelfTestResult(True, timing_ms, message, attempts=attempt)
        last_error = f"slow: {timing_ms:.2f}ms (expected <{budget_ms:.0f}ms)"

    message = f"capability negotiation degraded: self-test {last_error}"
    ctx.mark_degraded(f"self-test {last_error}")
    return SelfTestResult(False, timing_ms, message, attempts=attempts)


def wait_for_completion(ctx: GPUContext, timeout_s: float) -> float:
    """Wait for queued device work, bounded by a watchdog.

    Returns
    -------
    float
        Seconds spent waiting

    Raises
    ------
    CapabilityUnavailable
        If the device does not finish within ``timeout_s`` or reports an
        error while synchronizing. The context is marked degraded first.
    """
    ctx.ensure_open()
    errors: List[BaseException] = []

    def _sync() -> None:
        try:
            ctx.synchronize()
        except Exception as e:
            errors.append(e)

    start = time.perf_counter()
    waiter = threading.Thread(target=_sync, name="gpu-watchdog", daemon=True)
    waiter.start()
    waiter.join(timeout_s)
    elapsed = time.perf_counter() - start

    if waiter.is_alive():
        reason = f"device unresponsive after {timeout_s:.1f}s"
        ctx.mark_degraded(reason)
        raise CapabilityUnavailable(f"capability negotiation degraded: {reason}")
    if errors:
        reason = f"device error during synchronize: {errors[0]}"
        ctx.mark_degraded(reason)
        raise CapabilityUnavailable(f"capability negotiation degraded: {reason}") from errors[0]
    return elapsed


def capability_status(ctx: Optional[GPUContext]) -> Dict[str, Any]:
    """Read-only status for UI and ops tooling."""
    if ctx is None or ctx.closed:
        return {
            "available": False,
            "mode": None,
            "message": "No GPU context",
            "degraded": False,
        }
    profile = ctx.profile
    return {
        "available": True,
        "device": str(ctx.device),
        "device_name": ctx.limits.device_name,
        "backend": ctx.limits.backend,
        "emulated": ctx.emulated,
        "mode": profile.mode.value,
        "workgroup": {
            "x": profile.workgroup.x,
            "y": profile.workgroup.y,
            "z": profile.workgroup.z,
            "total": profile.workgroup.total,
        },
        "tile_px": profile.tile_px,
        "per_frame_budget": profile.per_frame_budget,
        "force_reduced": ctx.force_reduced,
        "degraded": ctx.degraded,
        "degraded_reason": ctx.degraded_reason,
        "max_buffer_size": ctx.limits.max_buffer_size,
        "dtype": str(ctx.dtype).replace("torch.", ""),
        "message": profile.message,
    }
