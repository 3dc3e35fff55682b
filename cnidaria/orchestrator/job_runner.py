"""Job orchestrator: compile, dispatch, composite, sort.

A job runs on a worker thread so ``submit()`` returns at once. Within a job
control flow is sequential:

    compile expression (synchronous, in submit)
      → coordinate dispatch, tile groups of ``per_frame_budget``
      → compositing through the palette
      → optional distance sort of world coordinates
      → readback to host

After each tile group the orchestrator waits for the device behind the
watchdog and emits a ``ProgressEvent``. Every job ends with exactly one
``CompletedEvent`` or ``ErrorEvent``. Device tensors live in a per-job
``BufferArena`` and are released before the terminal event, on success and
on failure alike; a failed job never hands back partial buffers.

Jobs with ``backend: cpu`` run the scalar reference renderer instead and
need no GPU context.

Usage:
    ctx = GPUContext.init()
    with Orchestrator(ctx) as orch:
        handle = orch.submit(load_job_config("configs/jobs/radial_demo.v1.yaml"))
        for event in handle.events():
            print(event)
        result = handle.result()
"""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Union

import numpy as np
import torch

from cnidaria.errors import CapabilityUnavailable, PatternEngineError
from cnidaria.gpu.bitonic_sort import BitonicSorter, sort_values
from cnidaria.gpu.buffers import BufferArena
from cnidaria.gpu.capability import GPUContext, capability_status, wait_for_completion
from cnidaria.gpu.compositor import composite, composite_packed, unpack_rgba
from cnidaria.gpu.coordinate_kernel import CoordinateKernel
from cnidaria.pipeline_f.cpu_reference import CPUReferenceRenderer
from cnidaria.pipeline_f.expression import CompiledExpression, compile_expression, resolve_noise_expression
from cnidaria.utils import fs
from cnidaria.utils.color import normalize_palette
from cnidaria.utils.compute import estimate_job_bytes, tile_slices, world_grid
from cnidaria.utils.hashing import sha256_array
from cnidaria.utils.logging_config import job_context
from cnidaria.utils.profiler import TimerAccumulator, nvtx_range, timer
from cnidaria.utils.torch_utils import to_numpy
from cnidaria.utils.validators import JobV1, job_from_dict

logger = logging.getLogger(__name__)

DEFAULT_WATCHDOG_TIMEOUT_S = 30.0
DEFAULT_KERNEL_CACHE_SIZE = 32


# ---------------------------------------------------------------------------
# State and events
# ---------------------------------------------------------------------------


class JobState(Enum):
    """Lifecycle of a submitted job."""

    QUEUED = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()


@dataclass
class ProgressEvent:
    """Pixels finished so far."""

    job_id: str
    done: int
    total: int

    @property
    def fraction(self) -> float:
        return self.done / self.total if self.total else 1.0


@dataclass
class JobResult:
    """Host-side outputs of a finished job.

    Attributes
    ----------
    pixel_buffer : np.ndarray
        (H, W, 4) uint8 RGBA image
    value_plane : np.ndarray
        (H, W) uint8 curve values after checkerboard
    index_plane : np.ndarray
        (H, W) int64 curve indices, each in [0, curve width)
    sorted_distances, sorted_indices : np.ndarray or None
        Distance sort of pixel world coordinates from the job center (flat,
        row-major pixel indices); None unless the job asked for it
    degenerate_count : int
        Samples that fell back to curve index 0
    value_plane_sha256 : str
        Fingerprint of ``value_plane``, identical across backends for
        identical inputs
    timings : dict
        Stage name → seconds
    """

    job_id: str
    backend: str
    width: int
    height: int
    pixel_buffer: np.ndarray
    value_plane: np.ndarray
    index_plane: np.ndarray
    degenerate_count: int
    value_plane_sha256: str
    sorted_distances: Optional[np.ndarray] = None
    sorted_indices: Optional[np.ndarray] = None
    profile_mode: Optional[str] = None
    timings: Dict[str, float] = field(default_factory=dict)

    def metadata(self) -> Dict[str, Any]:
        """JSON-safe summary (written next to rendered images)."""
        return {
            "job_id": self.job_id,
            "backend": self.backend,
            "width": self.width,
            "height": self.height,
            "profile_mode": self.profile_mode,
            "degenerate_count": self.degenerate_count,
            "value_plane_sha256": self.value_plane_sha256,
            "sorted": self.sorted_indices is not None,
            "timings": {k: round(v, 6) for k, v in self.timings.items()},
        }

    def save_png(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        fs.atomic_save_image(self.pixel_buffer, path)
        return path


@dataclass
class CompletedEvent:
    job_id: str
    result: JobResult


@dataclass
class ErrorEvent:
    job_id: str
    message: str
    error_type: str


_TERMINAL = (CompletedEvent, ErrorEvent)


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------


class JobHandle:
    """Caller's view of a submitted job.

    Events arrive in order: zero or more ``ProgressEvent`` then one terminal
    ``CompletedEvent`` or ``ErrorEvent``.
    """

    def __init__(self, job: JobV1) -> None:
        self.job = job
        self.job_id = job.id
        self.state = JobState.QUEUED
        self._events: "queue.Queue[object]" = queue.Queue()
        self._cancel_flag = threading.Event()
        self._future: Optional[Future] = None

    def _put(self, event: object) -> None:
        self._events.put(event)

    def events(self, timeout: Optional[float] = None) -> Iterator[object]:
        """Yield events until the terminal one.

        Parameters
        ----------
        timeout : float, optional
            Maximum seconds to wait for each event

        Raises
        ------
        TimeoutError
            If no event arrives within ``timeout``
        """
        while True:
            try:
                event = self._events.get(timeout=timeout)
            except queue.Empty:
                raise TimeoutError(f"No event from job {self.job_id} within {timeout}s") from None
            yield event
            if isinstance(event, _TERMINAL):
                return

    def result(self, timeout: Optional[float] = None) -> JobResult:
        """Block for the result; re-raises the job's error."""
        if self._future is None:
            raise RuntimeError(f"Job {self.job_id} was never started")
        return self._future.result(timeout=timeout)

    def cancel(self) -> None:
        """Request cancellation; takes effect at the next tile group."""
        self._cancel_flag.set()
        logger.info("Cancel requested for job %s", self.job_id)

    @property
    def cancelled(self) -> bool:
        return self._cancel_flag.is_set()

    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def __repr__(self) -> str:
        return f"JobHandle(job_id={self.job_id!r}, state={self.state.name})"


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class Orchestrator:
    """Runs pattern jobs against one device context.

    Parameters
    ----------
    ctx : GPUContext, optional
        Device context; required for ``backend: gpu`` jobs
    max_workers : int
        Concurrent jobs (each job is sequential internally)
    watchdog_timeout_s : float
        Bound on each wait for device completion
    kernel_cache_size : int
        Lowered noise expressions kept, least recently used evicted first

    Notes
    -----
    Only queued and running jobs keep a handle here. A finished job is
    dropped from the table and counted under its final state, so a
    long-lived orchestrator does not grow with every job it has run.
    """

    def __init__(
        self,
        ctx: Optional[GPUContext] = None,
        max_workers: int = 1,
        watchdog_timeout_s: float = DEFAULT_WATCHDOG_TIMEOUT_S,
        kernel_cache_size: int = DEFAULT_KERNEL_CACHE_SIZE,
    ) -> None:
        if kernel_cache_size < 1:
            raise ValueError(f"kernel_cache_size must be >= 1, got {kernel_cache_size}")
        self._ctx = ctx
        self._watchdog_timeout_s = watchdog_timeout_s
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="pattern-job")
        self._lock = threading.Lock()
        self._handles: Dict[str, JobHandle] = {}
        self._finished: Dict[str, int] = {}
        self._kernel_cache: "OrderedDict[str, Callable[..., torch.Tensor]]" = OrderedDict()
        self._kernel_cache_size = kernel_cache_size
        self._progress_cb: Optional[Callable[[ProgressEvent], None]] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Common
    # ------------------------------------------------------------------

    @property
    def ctx(self) -> Optional[GPUContext]:
        return self._ctx

    def set_progress_callback(self, fn: Callable[[ProgressEvent], None]) -> None:
        """Register a callback invoked on every progress event (any job)."""
        self._progress_cb = fn

    def _notify(self, handle: JobHandle, done: int, total: int) -> None:
        event = ProgressEvent(handle.job_id, done, total)
        handle._put(event)
        if self._progress_cb is not None:
            try:
                self._progress_cb(event)
            except Exception as exc:  # noqa: BLE001
                logger.error("Progress callback error: %s", exc)

    def status(self) -> Dict[str, Any]:
        """Capability and queue snapshot for UI and ops tooling.

        ``jobs`` counts every job by state: live handles by their current
        state plus finished jobs by the state they ended in.
        """
        with self._lock:
            states: Dict[str, int] = dict(self._finished)
            for handle in self._handles.values():
                name = handle.state.name.lower()
                states[name] = states.get(name, 0) + 1
            live = len(self._handles)
            cached = len(self._kernel_cache)
        return {
            "capability": capability_status(self._ctx),
            "jobs": states,
            "live_jobs": live,
            "kernel_cache_entries": cached,
            "accepting": not self._closed,
        }

    def _retire(self, handle: JobHandle) -> None:
        """Move a finished job out of the handle table into the state counts."""
        with self._lock:
            if self._handles.get(handle.job_id) is handle:
                del self._handles[handle.job_id]
            name = handle.state.name.lower()
            self._finished[name] = self._finished.get(name, 0) + 1

    def _finish(self, handle: JobHandle, event: object) -> None:
        # Retire first so status() is current once the caller sees the event
        self._retire(handle)
        handle._put(event)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, job: Union[JobV1, Dict[str, Any]]) -> JobHandle:
        """Validate and compile a job, then queue it.

        Raises
        ------
        InvalidExpression
            If the noise expression is rejected (nothing is queued)
        CapabilityUnavailable
            If a GPU job is submitted without a usable device context
        """
        if self._closed:
            raise RuntimeError("Orchestrator is shut down")
        if isinstance(job, dict):
            job = job_from_dict(job)

        compiled = compile_expression(resolve_noise_expression(job.expression_source))

        if job.backend == "gpu":
            if self._ctx is None:
                raise CapabilityUnavailable(f"Job {job.id} needs a GPU context; none was provided")
            self._ctx.ensure_open()

        handle = JobHandle(job)
        with self._lock:
            if job.id in self._handles:
                handle.job_id = f"{job.id}-{uuid.uuid4().hex[:8]}"
            self._handles[handle.job_id] = handle

        try:
            handle._future = self._pool.submit(self._run, handle, compiled)
        except RuntimeError:
            with self._lock:
                self._handles.pop(handle.job_id, None)
            raise
        logger.info(
            "Queued job %s (%dx%d, backend=%s)", handle.job_id, job.width, job.height, job.backend,
        )
        return handle

    def run(self, job: Union[JobV1, Dict[str, Any]], timeout: Optional[float] = None) -> JobResult:
        """Submit and block for the result."""
        return self.submit(job).result(timeout=timeout)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _run(self, handle: JobHandle, compiled: CompiledExpression) -> JobResult:
        job = handle.job
        with job_context(job_id=handle.job_id, backend=job.backend):
            handle.state = JobState.RUNNING
            start = time.perf_counter()
            try:
                if job.backend == "cpu":
                    result = self._run_cpu(handle, compiled)
                else:
                    result = self._run_gpu(handle, compiled)
            except InterruptedError as e:
                handle.state = JobState.CANCELLED
                logger.info("Job cancelled: %s", e)
                self._finish(handle, ErrorEvent(handle.job_id, str(e), type(e).__name__))
                raise
            except PatternEngineError as e:
                handle.state = JobState.FAILED
                logger.error("Job failed (%s): %s", type(e).__name__, e)
                self._finish(handle, ErrorEvent(handle.job_id, str(e), type(e).__name__))
                raise
            except Exception as e:
                handle.state = JobState.FAILED
                logger.exception("Job failed unexpectedly")
                self._finish(handle, ErrorEvent(handle.job_id, str(e), type(e).__name__))
                raise

            result.timings["total"] = time.perf_counter() - start
            handle.state = JobState.COMPLETED
            logger.info(
                "Job complete in %.3fs (degenerate=%d, sha256=%s)",
                result.timings["total"], result.degenerate_count, result.value_plane_sha256[:12],
            )
            self._finish(handle, CompletedEvent(handle.job_id, result))
            return result

    def _noise_tensor_fn(self, compiled: CompiledExpression) -> Callable[..., torch.Tensor]:
        key = compiled.cache_key
        with self._lock:
            fn = self._kernel_cache.get(key)
            if fn is not None:
                self._kernel_cache.move_to_end(key)
                return fn
            fn = compiled.lower_to_torch(coerce_nonfinite=False)
            self._kernel_cache[key] = fn
            logger.debug("Kernel cache miss for %s", compiled.to_source())
            while len(self._kernel_cache) > self._kernel_cache_size:
                evicted, _ = self._kernel_cache.popitem(last=False)
                logger.debug("Kernel cache evicted %s", evicted[:12])
        return fn

    @staticmethod
    def _palette(job: JobV1) -> np.ndarray:
        return job.palette.to_array() if job.palette is not None else normalize_palette(None)

    def _check_cancel(self, handle: JobHandle, done: int, total: int) -> None:
        if handle.cancelled:
            raise InterruptedError(f"job cancelled after {done}/{total} pixels")

    def _run_gpu(self, handle: JobHandle, compiled: CompiledExpression) -> JobResult:
        ctx = self._ctx
        job = handle.job
        profile = ctx.profile
        width, height = job.width, job.height
        total = width * height
        timings: Dict[str, float] = {}
        float_bytes = torch.empty((), dtype=ctx.dtype).element_size()

        logger.info(
            "GPU dispatch on %s: mode=%s, tile=%dpx, budget=%d",
            ctx.device, profile.mode.value, profile.tile_px, profile.per_frame_budget,
        )

        with BufferArena(ctx, handle.job_id) as arena:
            arena.reserve(estimate_job_bytes(width, height, profile.tile_px, float_bytes, job.sort_by_distance))
            value_plane = arena.zeros("value_plane", (height, width), torch.uint8)
            index_plane = arena.zeros("index_plane", (height, width), torch.int64)
            kernel = CoordinateKernel(
                ctx, job.curve, job.distortion, compiled, noise_fn=self._noise_tensor_fn(compiled),
            )

            tiles = tile_slices(height, width, profile.tile_px)
            budget = max(1, profile.per_frame_budget)
            group_timer = TimerAccumulator("tile_group")
            done = 0
            with timer("dispatch", sink=timings.__setitem__):
                for start in range(0, len(tiles), budget):
                    self._check_cancel(handle, done, total)
                    with group_timer.measure(), nvtx_range(f"tiles {start}-{start + budget - 1}"):
                        for rows, cols in tiles[start:start + budget]:
                            kernel.dispatch_tile(
                                rows, cols, width, height, job.scale, job.center, value_plane, index_plane,
                            )
                            done += (rows.stop - rows.start) * (cols.stop - cols.start)
                        wait_for_completion(ctx, self._watchdog_timeout_s)
                    self._notify(handle, done, total)
            timings["tile_group_mean"] = group_timer.mean()
            logger.debug("%d tile groups, %s", group_timer.count, group_timer)

            with timer("composite", sink=timings.__setitem__):
                palette_t = torch.as_tensor(self._palette(job), device=ctx.device)
                packed = arena.adopt("packed_rgba", composite_packed(value_plane, palette_t))
                wait_for_completion(ctx, self._watchdog_timeout_s)

            sorted_distances = sorted_indices = None
            if job.sort_by_distance:
                self._check_cancel(handle, done, total)
                with timer("sort", sink=timings.__setitem__):
                    xs, ys = world_grid(
                        slice(0, height), slice(0, width), width, height, job.scale, job.center,
                        device=ctx.device, dtype=ctx.dtype,
                    )
                    points = arena.adopt("sort_points", torch.stack([xs.reshape(-1), ys.reshape(-1)], dim=1))
                    ordered = BitonicSorter(ctx, arena).sort_by_distance(
                        points, center=job.center, ascending=not job.sort_descending,
                    )
                    wait_for_completion(ctx, self._watchdog_timeout_s)
                    sorted_distances = to_numpy(ordered.sorted_values)
                    sorted_indices = to_numpy(ordered.sorted_indices)

            with timer("readback", sink=timings.__setitem__):
                values_host = to_numpy(value_plane)
                indices_host = to_numpy(index_plane)
                pixels_host = unpack_rgba(packed, height, width)
                degenerate = kernel.degenerate_count()

        return JobResult(
            job_id=handle.job_id,
            backend="gpu",
            width=width,
            height=height,
            pixel_buffer=pixels_host,
            value_plane=values_host,
            index_plane=indices_host,
            degenerate_count=degenerate,
            value_plane_sha256=sha256_array(values_host),
            sorted_distances=sorted_distances,
            sorted_indices=sorted_indices,
            profile_mode=profile.mode.value,
            timings=timings,
        )

    def _run_cpu(self, handle: JobHandle, compiled: CompiledExpression) -> JobResult:
        job = handle.job
        width, height = job.width, job.height
        timings: Dict[str, float] = {}

        with timer("dispatch", sink=timings.__setitem__):
            render = CPUReferenceRenderer(job, noise_fn=compiled).render(
                progress_cb=lambda done, total: self._notify(handle, done, total),
                should_stop=lambda: handle.cancelled,
            )

        with timer("composite", sink=timings.__setitem__):
            pixels = composite(render.value_plane, self._palette(job))

        sorted_distances = sorted_indices = None
        if job.sort_by_distance:
            with timer("sort", sink=timings.__setitem__):
                iy, ix = np.indices((height, width), dtype=np.float64)
                xs = (ix - width // 2) * job.scale + job.center[0]
                ys = (iy - height // 2) * job.scale + job.center[1]
                distances = np.hypot(xs - job.center[0], ys - job.center[1]).reshape(-1)
                ordered = sort_values(distances, ascending=not job.sort_descending)
                sorted_distances = to_numpy(ordered.sorted_values)
                sorted_indices = to_numpy(ordered.sorted_indices)

        return JobResult(
            job_id=handle.job_id,
            backend="cpu",
            width=width,
            height=height,
            pixel_buffer=pixels,
            value_plane=render.value_plane,
            index_plane=render.index_plane,
            degenerate_count=render.degenerate_count,
            value_plane_sha256=sha256_array(render.value_plane),
            sorted_distances=sorted_distances,
            sorted_indices=sorted_indices,
            timings=timings,
        )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def shutdown(self, wait: bool = True, cancel_running: bool = False) -> None:
        """Stop accepting jobs; optionally cancel in-flight ones."""
        self._closed = True
        if cancel_running:
            with self._lock:
                for handle in self._handles.values():
                    if not handle.done():
                        handle.cancel()
        self._pool.shutdown(wait=wait)
        logger.info("Orchestrator shut down")

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True)
