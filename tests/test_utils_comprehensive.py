#!/usr/bin/env python3
"""Test suite for the shared utils modules.

This combined test suite includes:
- Atomic writes, PNG export/reload, YAML/JSON record loading
- Hashing (files, arrays, tensors, strings, dicts)
- Grid mapping (scalar vs tensor), tiling, integer helpers
- Finite guards and memory estimates
- Device resolution and dtype policy
- Logging idempotency, JSON output, contextual fields
- Profiler timers, accumulators, synchronized timing

Run with: pytest tests/test_utils_comprehensive.py -v
"""

import json
import logging
import threading

import numpy as np
import pytest
import torch
import yaml

from cnidaria.utils import (
    compute,
    fs,
    hashing,
    logging_config,
    profiler,
    torch_utils,
)


@pytest.fixture
def restore_logging():
    """Undo setup_logging() side effects on the root logger."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    logging_config.pop_context()


def test_imports():
    """Smoke test: all utils modules expose their public helpers."""
    from cnidaria import utils
    assert callable(utils.setup_logging)
    assert callable(utils.push_context)
    assert callable(utils.get_logger)
    assert utils.validators is not None
    assert utils.color is not None


# ============================================================================
# FILESYSTEM TESTS
# ============================================================================

def test_ensure_dir_nested(tmp_path):
    target = fs.ensure_dir(tmp_path / "a" / "b" / "c")
    assert target.is_dir()
    # Second call is a no-op
    assert fs.ensure_dir(target) == target


def test_atomic_write_text_leaves_no_tmp(tmp_path):
    path = tmp_path / "out" / "note.txt"
    fs.atomic_write_text(path, "first")
    fs.atomic_write_text(path, "second")
    assert path.read_text() == "second"
    assert sorted(p.name for p in path.parent.iterdir()) == ["note.txt"]


def test_atomic_save_image_rgba_roundtrip(tmp_path):
    rng = np.random.default_rng(0)
    img = rng.integers(0, 256, size=(12, 20, 4), dtype=np.uint8)
    path = tmp_path / "img.png"
    fs.atomic_save_image(img, path)
    back = fs.load_image_rgba(path)
    assert back.shape == (12, 20, 4)
    assert np.array_equal(back, img)
    assert sorted(p.name for p in tmp_path.iterdir()) == ["img.png"]


def test_atomic_save_image_grayscale_tensor(tmp_path):
    plane = torch.arange(0, 256, dtype=torch.int32).reshape(16, 16)
    path = tmp_path / "values.png"
    fs.atomic_save_image(plane, path)
    back = fs.load_image_rgba(path)
    # Gray expands to equal channels with opaque alpha
    assert back[..., 0].tolist() == plane.numpy().astype(np.uint8).tolist()
    assert np.all(back[..., 0] == back[..., 2])
    assert np.all(back[..., 3] == 255)


def test_atomic_save_image_clips_non_uint8(tmp_path):
    img = np.array([[-10.0, 300.0]], dtype=np.float64)
    path = tmp_path / "clip.png"
    fs.atomic_save_image(img, path)
    assert fs.load_image_rgba(path)[0, :, 0].tolist() == [0, 255]


def test_load_image_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        fs.load_image_rgba(tmp_path / "nope.png")


def test_yaml_dump_preserves_order(tmp_path):
    path = tmp_path / "meta.yaml"
    fs.atomic_yaml_dump({"zeta": 1, "alpha": [1, 2]}, path)
    assert list(fs.load_yaml(path)) == ["zeta", "alpha"]


def test_load_yaml_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        fs.load_yaml(tmp_path / "missing.yaml")
    bad = tmp_path / "bad.yaml"
    bad.write_text("key: [unclosed\n")
    with pytest.raises(yaml.YAMLError):
        fs.load_yaml(bad)


def test_load_json_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        fs.load_json(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    with pytest.raises(ValueError, match="bad.json"):
        fs.load_json(bad)


def test_load_record_dispatches_on_extension(tmp_path):
    (tmp_path / "r.json").write_text(json.dumps({"kind": "json"}))
    (tmp_path / "r.yaml").write_text("kind: yaml\n")
    assert fs.load_record(tmp_path / "r.json") == {"kind": "json"}
    assert fs.load_record(tmp_path / "r.yaml") == {"kind": "yaml"}


# ============================================================================
# HASHING TESTS
# ============================================================================

def test_sha256_file_matches_bytes(tmp_path):
    path = tmp_path / "blob.bin"
    data = bytes(range(256)) * 10
    path.write_bytes(data)
    # Small chunks exercise the streaming loop
    assert hashing.sha256_file(path, chunk_size=7) == hashing.sha256_file(path)
    with pytest.raises(FileNotFoundError):
        hashing.sha256_file(tmp_path / "missing.bin")


def test_sha256_array_folds_shape_and_dtype():
    a = np.arange(16, dtype=np.uint8)
    assert hashing.sha256_array(a) == hashing.sha256_array(a.copy())
    assert hashing.sha256_array(a) != hashing.sha256_array(a.reshape(4, 4))
    assert hashing.sha256_array(a) != hashing.sha256_array(a.astype(np.int16))


def test_sha256_tensor_matches_array():
    t = torch.arange(12, dtype=torch.int64).reshape(3, 4)
    assert hashing.sha256_tensor(t) == hashing.sha256_array(t.numpy())
    # Non-contiguous views hash by value
    assert hashing.sha256_tensor(t.t()) == hashing.sha256_array(np.ascontiguousarray(t.numpy().T))


def test_sha256_string_known_digest():
    assert hashing.sha256_string("") == (
        "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    )


def test_hash_dict_ignores_key_order():
    assert hashing.hash_dict({"a": 1, "b": [1, 2]}) == hashing.hash_dict({"b": [1, 2], "a": 1})
    assert hashing.hash_dict({"a": 1}) != hashing.hash_dict({"a": 2})


# ============================================================================
# COMPUTE TESTS
# ============================================================================

def test_grid_to_world_center_pixel():
    assert compute.grid_to_world(50, 40, 100, 80) == (0.0, 0.0)
    assert compute.grid_to_world(0, 0, 100, 80, scale=2.0, center=(5.0, -1.0)) == (-95.0, -81.0)
    # Odd sizes: W // 2 is the center column
    assert compute.grid_to_world(3, 2, 7, 5) == (0.0, 0.0)


def test_world_grid_matches_scalar_mapping():
    W, H, scale, center = 13, 9, 0.37, (2.5, -7.25)
    xs, ys = compute.world_grid(slice(2, 7), slice(4, 13), W, H, scale, center)
    assert xs.shape == ys.shape == (5, 9)
    assert xs.dtype == torch.float64
    for r, iy in enumerate(range(2, 7)):
        for c, ix in enumerate(range(4, 13)):
            x, y = compute.grid_to_world(ix, iy, W, H, scale, center)
            assert xs[r, c].item() == x
            assert ys[r, c].item() == y


def test_tile_slices_cover_exactly_once():
    H, W, tile = 70, 45, 32
    counts = np.zeros((H, W), dtype=np.int32)
    slices = compute.tile_slices(H, W, tile)
    for sh, sw in slices:
        counts[sh, sw] += 1
    assert np.all(counts == 1)
    assert len(slices) == 3 * 2
    # Row-major order, ragged last tiles
    assert slices[0] == (slice(0, 32), slice(0, 32))
    assert slices[-1] == (slice(64, 70), slice(32, 45))


def test_tile_slices_invalid():
    with pytest.raises(ValueError):
        compute.tile_slices(10, 10, 0)
    with pytest.raises(ValueError):
        compute.tile_slices(10, 10, 4, overlap=4)


@pytest.mark.parametrize("n,expected", [(0, 1), (1, 1), (2, 2), (3, 4), (64, 64), (65, 128)])
def test_next_power_of_two(n, expected):
    assert compute.next_power_of_two(n) == expected


def test_ceil_div():
    assert compute.ceil_div(300, 128) == 3
    assert compute.ceil_div(256, 128) == 2
    assert compute.ceil_div(0, 8) == 0
    with pytest.raises(ValueError):
        compute.ceil_div(1, 0)


def test_estimate_job_bytes_grows_with_sort():
    base = compute.estimate_job_bytes(64, 64, 128)
    # Outputs 13 B/px plus a 64x64 working tile of 12 float64 temporaries
    assert base == 64 * 64 * 13 + 64 * 64 * 8 * 12
    assert compute.estimate_job_bytes(64, 64, 128, sort_points=True) > base
    assert compute.estimate_job_bytes(64, 64, 128, float_bytes=4) < base


def test_nonfinite_to_zero():
    x = torch.tensor([1.0, float("nan"), float("inf"), -float("inf"), -2.0])
    assert compute.nonfinite_to_zero(x).tolist() == [1.0, 0.0, 0.0, 0.0, -2.0]


def test_assert_finite():
    compute.assert_finite(torch.ones(3))
    with pytest.raises(ValueError, match="1 NaNs, 1 Infs"):
        compute.assert_finite(torch.tensor([float("nan"), float("inf"), 0.0]), name="plane")


def test_is_out_of_memory():
    assert compute.is_out_of_memory(RuntimeError("CUDA out of memory. Tried to allocate"))
    assert not compute.is_out_of_memory(RuntimeError("shape mismatch"))
    assert not compute.is_out_of_memory(MemoryError("out of memory"))


# ============================================================================
# TORCH UTILS TESTS
# ============================================================================

def test_resolve_device_explicit():
    assert torch_utils.resolve_device("cpu") == torch.device("cpu")
    assert torch_utils.resolve_device(torch.device("cpu")).type == "cpu"


def test_resolve_device_auto_matches_availability():
    device = torch_utils.resolve_device()
    if torch_utils.accelerator_available():
        assert device is not None and device.type in ("cuda", "mps")
    else:
        assert device is None


def test_dtype_policy():
    assert torch_utils.dtype_for_device(torch.device("cpu")) == torch.float64
    assert torch_utils.dtype_for_device(torch.device("mps")) == torch.float32


def test_to_numpy_detaches():
    t = torch.ones(3, requires_grad=True) * 2
    arr = torch_utils.to_numpy(t)
    assert isinstance(arr, np.ndarray)
    assert arr.tolist() == [2.0, 2.0, 2.0]


# ============================================================================
# LOGGING TESTS
# ============================================================================

def test_logging_idempotency(tmp_path, restore_logging):
    """Repeated setup replaces handlers instead of duplicating output."""
    log_path = tmp_path / "test.log"
    for message in ("hello", "world"):
        logging_config.setup_logging(
            log_level="INFO",
            log_file=str(log_path),
            json=True,
            to_stderr=False,
            context={"app": "test"},
        )
        logging_config.get_logger("utils_test").info(message)

    lines = log_path.read_text().strip().splitlines()
    assert len(lines) == 2
    rec = json.loads(lines[0])
    assert rec["msg"] == "hello"
    assert rec["lvl"] == "INFO"
    assert rec["name"] == "utils_test"
    assert rec.get("app") == "test"


def test_logging_human_format_includes_context(tmp_path, restore_logging):
    log_path = tmp_path / "human.log"
    logging_config.setup_logging(log_file=str(log_path), to_stderr=False, capture_warnings=False)
    with logging_config.job_context(job_id="j1", stage="sort"):
        logging_config.get_logger("utils_test").warning("Sorting")
    logging_config.get_logger("utils_test").warning("Done")

    first, second = log_path.read_text().strip().splitlines()
    assert "job_id=j1 stage=sort | Sorting" in first
    assert "WARNING" in first
    assert "job_id" not in second


def test_push_pop_context(restore_logging):
    logging_config.pop_context()
    logging_config.push_context(app="render", job_id="demo")
    assert logging_config.get_context() == {"app": "render", "job_id": "demo"}
    logging_config.pop_context(["job_id", "unknown"])
    assert logging_config.get_context() == {"app": "render"}
    logging_config.pop_context()
    assert logging_config.get_context() == {}


def test_job_context_restores_on_error(restore_logging):
    logging_config.pop_context()
    logging_config.push_context(app="render")
    with pytest.raises(RuntimeError):
        with logging_config.job_context(job_id="boom"):
            assert logging_config.get_context()["job_id"] == "boom"
            raise RuntimeError("fail")
    assert logging_config.get_context() == {"app": "render"}


def test_setup_logging_keeps_foreign_handlers(tmp_path, restore_logging):
    """Re-running setup replaces only its own handlers and quiets PIL."""
    foreign = logging.NullHandler()
    logging.getLogger().addHandler(foreign)
    try:
        first = logging_config.setup_logging(log_file=str(tmp_path / "a.log"), to_stderr=False)
        second = logging_config.setup_logging(log_file=str(tmp_path / "b.log"), to_stderr=False)
        root = logging.getLogger()
        assert foreign in root.handlers
        assert first["handlers"][0] not in root.handlers
        assert second["handlers"][0] in root.handlers
        assert logging.getLogger("PIL").level == logging.WARNING
    finally:
        logging.getLogger().removeHandler(foreign)


def test_setup_logging_rejects_unknown_level(restore_logging):
    with pytest.raises(ValueError, match="log level"):
        logging_config.setup_logging(log_level="chatty", to_stderr=False)


def test_context_is_per_thread(tmp_path, restore_logging):
    """A worker thread's job fields do not leak into the caller's records."""
    log_path = tmp_path / "threads.log"
    logging_config.setup_logging(log_file=str(log_path), json=True, to_stderr=False, capture_warnings=False)
    log = logging_config.get_logger("utils_test")

    def worker():
        with logging_config.job_context(job_id="worker-job", backend="cpu"):
            log.warning("in worker")

    thread = threading.Thread(target=worker)
    thread.start()
    thread.join()
    log.warning("in caller")

    worker_rec, caller_rec = [json.loads(line) for line in log_path.read_text().splitlines()]
    assert worker_rec["job_id"] == "worker-job"
    assert worker_rec["backend"] == "cpu"
    assert "job_id" not in caller_rec


# ============================================================================
# PROFILER TESTS
# ============================================================================

def test_profiler_timer_sink():
    times = {}
    with profiler.timer("op", sink=times.__setitem__):
        _ = torch.rand(64, 64) @ torch.rand(64, 64)
    assert list(times) == ["op"]
    assert times["op"] >= 0.0


def test_profiler_timer_records_on_error():
    times = {}
    with pytest.raises(ValueError):
        with profiler.timer("fails", sink=times.__setitem__):
            raise ValueError("x")
    assert "fails" in times


def test_timer_accumulator():
    acc = profiler.TimerAccumulator("tile")
    assert acc.mean() == 0.0
    for _ in range(3):
        with acc.measure():
            pass
    assert acc.count == 3
    assert acc.mean() >= 0.0
    assert "tile" in repr(acc)
    acc.reset()
    assert acc.count == 0 and acc.total_time == 0.0


def test_synchronize_and_time():
    result, elapsed = profiler.synchronize_and_time(lambda a, b=0: a + b, 2, b=3, device=torch.device("cpu"))
    assert result == 5
    assert elapsed >= 0.0


def test_nvtx_range_is_safe_without_cuda():
    with profiler.nvtx_range("tiles 0-1"):
        value = 1
    assert value == 1
