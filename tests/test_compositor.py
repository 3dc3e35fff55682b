"""Test palette compositing.

Tests for cnidaria.gpu.compositor:
    - Host lookup clamps to the last palette entry
    - Packed 0xAABBGGRR words unpack to the same RGBA bytes
    - Device (emulated) and host paths agree
    - Malformed palettes are rejected

Run:
    pytest tests/test_compositor.py -v
"""

import numpy as np
import pytest
import torch

from cnidaria.gpu.compositor import composite, composite_packed, pack_palette, unpack_rgba
from cnidaria.utils.color import normalize_palette, palette_by_name

RGB3 = np.array([
    [255, 0, 0, 255],
    [0, 255, 0, 255],
    [0, 0, 255, 255],
], dtype=np.uint8)


def test_short_palette_clamps_to_last_entry():
    """Value 200 with a 3-entry palette uses the last (blue) entry."""
    out = composite(np.array([200]), RGB3)
    assert out.tolist() == [[0, 0, 255, 255]]


def test_lookup_is_verbatim():
    out = composite(np.array([[0, 1], [2, 1]]), RGB3)
    assert out.shape == (2, 2, 4)
    assert out.dtype == np.uint8
    assert out[0, 0].tolist() == [255, 0, 0, 255]
    assert out[0, 1].tolist() == [0, 255, 0, 255]
    assert out[1, 0].tolist() == [0, 0, 255, 255]


def test_negative_values_clamp_to_first_entry():
    assert composite(np.array([-3]), RGB3).tolist() == [[255, 0, 0, 255]]


def test_grayscale_default_palette():
    values = np.arange(256, dtype=np.uint8)
    out = composite(values, normalize_palette(None))
    assert np.array_equal(out[:, 0], values)
    assert np.all(out[:, 3] == 255)


def test_accepts_tensors():
    out = composite(torch.tensor([1, 2]), torch.from_numpy(RGB3))
    assert out.tolist() == [[0, 255, 0, 255], [0, 0, 255, 255]]


@pytest.mark.parametrize("palette", [
    np.zeros((0, 4), dtype=np.uint8),
    np.zeros((3, 3), dtype=np.uint8),
    np.zeros(4, dtype=np.uint8),
])
def test_rejects_bad_palette(palette):
    with pytest.raises(ValueError):
        composite(np.array([0]), palette)


def test_packed_rejects_bad_palette():
    with pytest.raises(ValueError):
        composite_packed(torch.zeros(4, dtype=torch.uint8), torch.zeros((0, 4), dtype=torch.uint8))


# ============================================================================
# PACKED PIXELS
# ============================================================================

def test_pack_palette_layout():
    """R in the low byte, A in the high byte; high-alpha words wrap negative."""
    palette = torch.tensor([[0x11, 0x22, 0x33, 0x44], [0xFF, 0x00, 0x00, 0xFF]], dtype=torch.uint8)
    words = pack_palette(palette)
    assert words.dtype == torch.int32
    assert words[0].item() == 0x44332211
    assert words[1].item() == 0xFF0000FF - (1 << 32)


def test_unpack_restores_rgba():
    palette = torch.from_numpy(RGB3)
    values = torch.tensor([[0, 1, 2], [2, 9, 0]], dtype=torch.uint8)
    packed = composite_packed(values, palette)
    rgba = unpack_rgba(packed, 2, 3)
    assert rgba.shape == (2, 3, 4)
    assert rgba[0, 0].tolist() == [255, 0, 0, 255]
    assert rgba[1, 1].tolist() == [0, 0, 255, 255]


def test_unpack_size_mismatch():
    with pytest.raises(ValueError):
        unpack_rgba(np.zeros(5, dtype=np.int32), 2, 3)


@pytest.mark.parametrize("name", ["default", "thermal", "terrain", "grayscale"])
def test_device_and_host_paths_agree(name):
    palette = palette_by_name(name)
    rng = np.random.default_rng(7)
    values = rng.integers(0, 256, size=(17, 23), dtype=np.uint8)

    host = composite(values, palette)
    packed = composite_packed(torch.from_numpy(values), torch.from_numpy(palette))
    device = unpack_rgba(packed, 17, 23)
    assert np.array_equal(host, device)
