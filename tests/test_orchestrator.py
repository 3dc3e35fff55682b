"""Test the job orchestrator.

Tests for cnidaria.orchestrator.job_runner:
    - Event order: progress events, then exactly one terminal event
    - CPU and GPU (emulated) backends produce the same value plane
    - Submission-time failures (bad expression, no device)
    - Job failures surface as ErrorEvent and re-raise from result()
    - Cancellation, watchdog timeout, distance sort, status snapshot

Run:
    pytest tests/test_orchestrator.py -v
"""

import threading
from dataclasses import replace

import numpy as np
import pytest
from PIL import Image

from cnidaria.errors import CapabilityUnavailable, InvalidExpression, ResourceExhausted
from cnidaria.gpu.capability import GPUContext
from cnidaria.orchestrator import (
    CompletedEvent,
    ErrorEvent,
    JobState,
    Orchestrator,
    ProgressEvent,
)

TIMEOUT = 60.0


def job_record(**overrides):
    record = {
        "id": "orch-test",
        "width": 40,
        "height": 30,
        "expression": "sqrt(x*x + y*y)",
        "curve": {"curve-width": 8, "curve-data": [0, 32, 64, 96, 128, 160, 192, 224]},
        "palette": {"hexColors": ["#ff0000", "#00ff00", "#0000ff"]},
        "backend": "gpu",
    }
    record.update(overrides)
    return record


@pytest.fixture
def ctx():
    ctx = GPUContext.init("cpu", allow_emulation=True)
    yield ctx
    ctx.teardown()


@pytest.fixture
def orch(ctx):
    with Orchestrator(ctx, watchdog_timeout_s=10.0) as orch:
        yield orch


def collect(handle):
    return list(handle.events(timeout=TIMEOUT))


# ============================================================================
# EVENTS
# ============================================================================

def test_gpu_job_events(orch):
    """300x300 at 128px tiles is 9 tiles; budget 2 gives 5 progress events."""
    handle = orch.submit(job_record(width=300, height=300))
    events = collect(handle)

    progress = [e for e in events if isinstance(e, ProgressEvent)]
    assert isinstance(events[-1], CompletedEvent)
    assert all(isinstance(e, ProgressEvent) for e in events[:-1])
    assert len(progress) == 5
    assert [e.done for e in progress] == sorted(e.done for e in progress)
    assert progress[-1].done == progress[-1].total == 90000
    assert progress[-1].fraction == 1.0
    assert handle.state is JobState.COMPLETED


def test_cpu_job_events(orch):
    handle = orch.submit(job_record(backend="cpu"))
    events = collect(handle)
    assert [type(e) for e in events] == [ProgressEvent, CompletedEvent]
    assert events[0].done == 40 * 30


def test_progress_callback_sees_every_event(orch):
    seen = []
    orch.set_progress_callback(seen.append)
    orch.run(job_record(width=300, height=130), timeout=TIMEOUT)
    assert len(seen) == 3
    assert all(e.job_id == "orch-test" for e in seen)


def test_progress_callback_errors_do_not_fail_job(orch, caplog):
    def broken(event):
        raise RuntimeError("ui gone")

    orch.set_progress_callback(broken)
    result = orch.run(job_record(), timeout=TIMEOUT)
    assert result.width == 40
    assert "ui gone" in caplog.text


# ============================================================================
# RESULTS
# ============================================================================

def test_gpu_result_contents(orch):
    result = orch.run(job_record(), timeout=TIMEOUT)
    assert result.backend == "gpu"
    assert result.profile_mode == "reduced"
    assert result.pixel_buffer.shape == (30, 40, 4)
    assert result.pixel_buffer.dtype == np.uint8
    assert result.value_plane.shape == (30, 40)
    assert result.index_plane.min() >= 0 and result.index_plane.max() < 8
    assert result.degenerate_count == 0
    assert len(result.value_plane_sha256) == 64
    assert {"dispatch", "composite", "readback", "total"} <= set(result.timings)

    # Center pixel: d = 0 → index 0 → value 0 → first palette entry (red)
    assert result.value_plane[15, 20] == 0
    assert result.pixel_buffer[15, 20].tolist() == [255, 0, 0, 255]
    # Values past the third entry clamp to the last palette entry (blue)
    bright = result.value_plane >= 2
    assert np.all(result.pixel_buffer[bright] == [0, 0, 255, 255])


def test_backends_agree(orch):
    """Same inputs give the same value plane fingerprint on both backends."""
    gpu = orch.run(job_record(), timeout=TIMEOUT)
    cpu = orch.run(job_record(backend="cpu"), timeout=TIMEOUT)
    assert gpu.value_plane_sha256 == cpu.value_plane_sha256
    assert np.array_equal(gpu.pixel_buffer, cpu.pixel_buffer)


def test_sort_by_distance(orch):
    gpu = orch.run(job_record(width=8, height=6, sort_by_distance=True), timeout=TIMEOUT)
    cpu = orch.run(job_record(width=8, height=6, sort_by_distance=True, backend="cpu"), timeout=TIMEOUT)

    for result in (gpu, cpu):
        assert sorted(result.sorted_indices.tolist()) == list(range(48))
        assert np.all(np.diff(result.sorted_distances) >= 0)
        # Center pixel (4, 3) has distance 0
        assert result.sorted_indices[0] == 3 * 8 + 4
        assert result.sorted_distances[0] == 0.0
    assert np.array_equal(gpu.sorted_indices, cpu.sorted_indices)
    assert "sort" in gpu.timings


def test_sort_descending(orch):
    result = orch.run(job_record(width=8, height=6, sort_by_distance=True, sort_descending=True), timeout=TIMEOUT)
    assert np.all(np.diff(result.sorted_distances) <= 0)
    assert result.sorted_indices[-1] == 3 * 8 + 4


def test_no_sort_by_default(orch):
    result = orch.run(job_record(), timeout=TIMEOUT)
    assert result.sorted_indices is None
    assert result.metadata()["sorted"] is False


def test_metadata_and_png(orch, tmp_path):
    result = orch.run(job_record(), timeout=TIMEOUT)
    meta = result.metadata()
    assert meta["job_id"] == "orch-test"
    assert meta["value_plane_sha256"] == result.value_plane_sha256

    path = result.save_png(tmp_path / "out" / "pattern.png")
    with Image.open(path) as img:
        assert img.size == (40, 30)
        assert img.mode == "RGBA"


# ============================================================================
# FAILURES
# ============================================================================

def test_invalid_expression_rejected_at_submit(orch):
    with pytest.raises(InvalidExpression):
        orch.submit(job_record(expression="__import__('os')"))
    assert orch.status()["jobs"] == {}


def test_gpu_job_without_context():
    with Orchestrator(None) as orch:
        with pytest.raises(CapabilityUnavailable):
            orch.submit(job_record())
        # CPU jobs need no device
        assert orch.run(job_record(backend="cpu"), timeout=TIMEOUT).backend == "cpu"


def test_invalid_record_rejected(orch):
    with pytest.raises(ValueError):
        orch.submit(job_record(width=0))


def test_resource_exhausted(ctx, orch):
    ctx.limits = replace(ctx.limits, max_buffer_size=1024)
    handle = orch.submit(job_record())
    events = collect(handle)

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].error_type == "ResourceExhausted"
    with pytest.raises(ResourceExhausted):
        handle.result(timeout=TIMEOUT)
    assert handle.state is JobState.FAILED


def test_watchdog_timeout_fails_job(ctx):
    release = threading.Event()
    ctx.synchronize = lambda: release.wait(5.0)
    try:
        with Orchestrator(ctx, watchdog_timeout_s=0.05) as orch:
            handle = orch.submit(job_record())
            events = collect(handle)
            assert isinstance(events[-1], ErrorEvent)
            assert events[-1].error_type == "CapabilityUnavailable"
            assert ctx.degraded
    finally:
        release.set()
        del ctx.synchronize


def test_cancel_between_tile_groups(orch):
    handles = []
    submitted = threading.Event()

    def cancel_on_first_progress(event):
        submitted.wait(TIMEOUT)
        handles[0].cancel()

    orch.set_progress_callback(cancel_on_first_progress)
    handles.append(orch.submit(job_record(width=300, height=300)))
    submitted.set()
    events = collect(handles[0])

    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].error_type == "InterruptedError"
    assert sum(isinstance(e, ProgressEvent) for e in events) == 1
    assert handles[0].state is JobState.CANCELLED
    with pytest.raises(InterruptedError):
        handles[0].result(timeout=TIMEOUT)


# ============================================================================
# STATUS AND LIFECYCLE
# ============================================================================

def test_status_snapshot(orch):
    orch.run(job_record(), timeout=TIMEOUT)
    orch.run(job_record(), timeout=TIMEOUT)
    status = orch.status()
    # The second run re-uses the finished job's id; both are counted
    assert status["jobs"] == {"completed": 2}
    assert status["live_jobs"] == 0
    assert status["kernel_cache_entries"] == 1
    assert status["capability"]["available"]
    assert status["accepting"]


def test_kernel_cache_is_keyed_by_canonical_source(orch):
    orch.run(job_record(expression="sqrt(x*x+y*y)"), timeout=TIMEOUT)
    orch.run(job_record(expression=" sqrt( (x * x) + (y * y) ) "), timeout=TIMEOUT)
    assert orch.status()["kernel_cache_entries"] == 1


def test_finished_jobs_leave_handle_table(orch):
    for i in range(20):
        orch.run(job_record(id=f"batch-{i}", width=6, height=4, backend="cpu"), timeout=TIMEOUT)
    with pytest.raises(InvalidExpression):
        orch.submit(job_record(expression="import os"))
    status = orch.status()
    assert status["live_jobs"] == 0
    assert status["jobs"] == {"completed": 20}


def test_failed_job_is_counted_after_retiring(ctx, orch):
    ctx.limits = replace(ctx.limits, max_buffer_size=1024)
    handle = orch.submit(job_record())
    collect(handle)
    status = orch.status()
    assert status["live_jobs"] == 0
    assert status["jobs"] == {"failed": 1}


def test_kernel_cache_evicts_least_recently_used(ctx):
    with Orchestrator(ctx, watchdog_timeout_s=10.0, kernel_cache_size=2) as orch:
        for expression in ("x", "y", "x + y", "x * y", "x - y"):
            orch.run(job_record(expression=expression, width=8, height=6), timeout=TIMEOUT)
        assert orch.status()["kernel_cache_entries"] == 2

        # Still correct after its lowered kernel was evicted
        again = orch.run(job_record(expression="x", width=8, height=6), timeout=TIMEOUT)
        cpu = orch.run(job_record(expression="x", width=8, height=6, backend="cpu"), timeout=TIMEOUT)
        assert again.value_plane_sha256 == cpu.value_plane_sha256
        assert orch.status()["kernel_cache_entries"] == 2


def test_kernel_cache_size_must_be_positive(ctx):
    with pytest.raises(ValueError):
        Orchestrator(ctx, kernel_cache_size=0)


def test_submit_after_shutdown(ctx):
    orch = Orchestrator(ctx)
    orch.shutdown()
    with pytest.raises(RuntimeError):
        orch.submit(job_record())
    assert not orch.status()["accepting"]
