"""
Pytest configuration and fixtures for stereo correlation tests.
"""

import pytest
import numpy as np
import cv2

from stereo_corr.utils.config_manager import ConfigManager, CorrelationSettings
from stereo_corr.utils.raster_io import ArrayProducer


def pytest_configure(config):
    config.addinivalue_line("markers", "property: property-based tests")
    config.addinivalue_line("markers", "slow: long-running end-to-end tests")


def make_texture(rows, cols, seed=0, sigma=1.5):
    """Blurred random texture normalized to [0, 1]."""
    rng = np.random.default_rng(seed)
    noise = rng.random((rows, cols)).astype(np.float32)
    texture = cv2.GaussianBlur(noise, (0, 0), sigma)
    texture -= texture.min()
    return texture / max(float(texture.max()), 1e-6)


def make_shifted_pair(rows, cols, dx, dy, seed=0):
    """
    Left/right pair with left(x, y) == right(x + dx, y + dy) wherever both exist.

    dx and dy must be non-negative.
    """
    base = make_texture(rows + dy, cols + dx, seed)
    left = base[dy:dy + rows, dx:dx + cols].copy()
    right = base[:rows, :cols].copy()
    return left, right


def make_sloped_pair(rows, cols, dx_start, dx_end, seed=0):
    """
    Left/right pair whose horizontal disparity grows linearly across the columns.

    left(x, y) == right(x + dx(x), y) with dx running from dx_start to dx_end.
    """
    base = make_texture(rows, cols + int(np.ceil(dx_end)) + 1, seed)
    xs = np.arange(cols, dtype=np.float32)
    dx = dx_start + (dx_end - dx_start) * xs / max(cols - 1, 1)
    map_x = np.tile(xs + dx, (rows, 1)).astype(np.float32)
    map_y = np.repeat(np.arange(rows, dtype=np.float32)[:, None], cols, axis=1)
    left = cv2.remap(base, map_x, map_y, cv2.INTER_LINEAR)
    right = base[:, :cols].copy()
    return left, right


def producers(left, right, left_mask=None, right_mask=None):
    """ArrayProducers for a pair, with all-valid masks by default."""
    if left_mask is None:
        left_mask = np.ones(left.shape, dtype=np.uint8)
    if right_mask is None:
        right_mask = np.ones(right.shape, dtype=np.uint8)
    return (ArrayProducer(left), ArrayProducer(right),
            ArrayProducer(left_mask), ArrayProducer(right_mask))


@pytest.fixture
def config_manager():
    """Fixture providing a configuration manager instance."""
    return ConfigManager()


@pytest.fixture
def settings():
    """Fixture providing default correlation settings."""
    return CorrelationSettings()


@pytest.fixture
def shifted_pair():
    """Fixture providing a 128x128 textured pair shifted by (5, 2)."""
    return make_shifted_pair(128, 128, 5, 2)


@pytest.fixture
def workspace(tmp_path):
    """Fixture returning a writer of full-resolution inputs; it returns the output prefix."""

    def write(left, right, left_mask=None, right_mask=None, name="run"):
        prefix = tmp_path / name
        if left_mask is None:
            left_mask = np.ones(left.shape, dtype=np.uint8)
        if right_mask is None:
            right_mask = np.ones(right.shape, dtype=np.uint8)
        np.save(str(prefix) + "-L.npy", left.astype(np.float32))
        np.save(str(prefix) + "-R.npy", right.astype(np.float32))
        np.save(str(prefix) + "-lMask.npy", left_mask.astype(np.uint8))
        np.save(str(prefix) + "-rMask.npy", right_mask.astype(np.uint8))
        return str(prefix)

    return write
