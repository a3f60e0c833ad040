"""
Tests for per-tile local homographies
"""

import pytest
import numpy as np

from stereo_corr.data_models import BBox, DisparityField
from stereo_corr.seed.local_homography import (LocalHomographyProvider, transform_disparities,
                                               transform_vectors)
from stereo_corr.utils.config_manager import CorrelationSettings
from stereo_corr.utils.raster_io import CheckpointStore


def constant_seed(rows, cols, dx, dy, scale=(1.0, 1.0)):
    disparity = np.zeros((rows, cols, 2), dtype=np.int32)
    disparity[...] = (dx, dy)
    return DisparityField(disparity, np.ones((rows, cols), dtype=bool), scale)


def translation(tx, ty):
    return np.array([[1, 0, tx], [0, 1, ty], [0, 0, 1]], dtype=float)


class TestTransforms:
    """Test suite for moving disparities through a homography."""

    def test_transform_disparities(self):
        field = constant_seed(5, 6, 3, -2)
        field.valid[0, 0] = False
        result = transform_disparities(BBox(10, 20, 16, 25), translation(-3, 2), field)
        assert np.all(result.disparity == 0)
        assert not result.valid[0, 0]
        assert result.valid_count == 29

    def test_transform_disparities_rounds(self):
        field = constant_seed(2, 2, 0, 0)
        result = transform_disparities(BBox(0, 0, 2, 2), translation(1.6, -0.4), field)
        assert np.all(result.disparity == (2, 0))

    def test_transform_vectors(self):
        field = constant_seed(3, 3, 1, 1)
        vectors = transform_vectors(BBox(0, 0, 3, 3), translation(2, 0), field.disparity, field.valid)
        assert vectors.shape == (9, 2)
        assert np.allclose(vectors, (3, 1))


class TestLocalHomographyProvider:
    """Test suite for fitting and persisting the homography grid."""

    @pytest.fixture
    def provider(self, tmp_path):
        settings = CorrelationSettings(tile_size=20, homography_min_points=4)
        return LocalHomographyProvider(settings, CheckpointStore(str(tmp_path / "run")))

    def test_fit_recovers_translation(self, provider):
        seed = constant_seed(40, 40, 3, -2)
        homography = provider.fit(seed, BBox(0, 0, 40, 40))
        assert np.allclose(homography, translation(-3, 2), atol=1e-3)

    def test_fit_with_few_points(self, provider):
        seed = DisparityField.invalid(10, 10)
        seed.valid[0, :3] = True
        assert np.array_equal(provider.fit(seed, BBox(0, 0, 10, 10)), np.eye(3))

    def test_grid_shape(self, provider):
        assert provider.grid_shape((40, 60)) == (2, 3)
        assert provider.grid_shape((41, 60)) == (3, 3)

    def test_seed_region(self, provider):
        region = provider.seed_region(BBox(20, 0, 40, 20), (0.25, 0.25), (10, 15))
        assert region == BBox(4, 0, 11, 6)

    def test_load_or_compute_persists(self, provider):
        seed = constant_seed(40, 60, 3, -2)
        grid = provider.load_or_compute(seed, (40, 60))
        assert provider.store.local_homography.exists()
        assert grid.grid_shape == (2, 3)
        assert np.allclose(grid.matrices[1, 2], translation(-3, 2), atol=1e-3)

        # an unusable seed shows whether the grid was reloaded or refit
        empty = DisparityField.invalid(40, 60)
        reloaded = provider.load_or_compute(empty, (40, 60))
        assert np.allclose(reloaded.matrices, grid.matrices)

        recomputed = provider.load_or_compute(empty, (40, 60), force=True)
        assert np.array_equal(recomputed.matrices[0, 0], np.eye(3))

    def test_grid_mismatch_recomputes(self, provider):
        seed = constant_seed(40, 60, 1, 0)
        provider.load_or_compute(seed, (40, 60))
        grid = provider.load_or_compute(seed, (80, 60))
        assert grid.grid_shape == (4, 3)

    def test_low_resolution_seed(self, provider):
        # seed at quarter resolution; fit happens in seed coordinates
        seed = constant_seed(10, 15, 2, 0, scale=(0.25, 0.25))
        grid = provider.compute(seed, (40, 60))
        assert np.allclose(grid.matrices[0, 0], translation(-2, 0), atol=1e-3)
