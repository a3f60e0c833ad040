"""
Tests for matching costs, prefilters and semi-global aggregation
"""

import pytest
import numpy as np

from conftest import make_shifted_pair, make_texture
from stereo_corr.data_models import CostMode, PrefilterMode
from stereo_corr.disparity.cost_functions import (MatchingCost, census_transform, gather_image,
                                                  hamming_distance, prefilter_image, prefilter_radius,
                                                  shift_image)
from stereo_corr.disparity.sgm import aggregate_path, semi_global_aggregate


class TestImageAlignment:
    """Test suite for whole-frame shifting and per-pixel gathering."""

    def test_shift_image(self):
        image = np.arange(16, dtype=np.float32).reshape(4, 4)
        shifted = shift_image(image, 1, 2, fill=-1)
        assert shifted[0, 0] == image[2, 1]
        assert shifted[1, 2] == image[3, 3]
        assert np.all(shifted[2:] == -1)
        assert np.all(shifted[:, 3] == -1)

    def test_shift_beyond_image(self):
        image = np.ones((3, 3))
        assert np.all(shift_image(image, 5, 0) == 0)

    def test_gather_matches_shift_for_constant_offsets(self):
        image = make_texture(20, 30)
        dx = np.full(image.shape, -3)
        dy = np.full(image.shape, 2)
        assert np.array_equal(gather_image(image, dx, dy), shift_image(image, -3, 2))

    def test_gather_boolean_fill(self):
        mask = np.ones((4, 4), dtype=bool)
        out = gather_image(mask, np.full((4, 4), 3), np.zeros((4, 4), dtype=int), False)
        assert out[:, 0].all()
        assert not out[:, 1:].any()


class TestPrefilter:
    """Test suite for correlation prefilters."""

    def test_none_returns_copy(self):
        image = make_texture(16, 16)
        out = prefilter_image(image, PrefilterMode.NONE, 1.4)
        assert np.array_equal(out, image)
        assert out is not image

    def test_subtracted_mean_removes_offset(self):
        image = np.full((32, 32), 0.7, dtype=np.float32)
        out = prefilter_image(image, PrefilterMode.SUBTRACTED_MEAN, 2.0)
        assert np.allclose(out, 0.0, atol=1e-5)

    def test_log_is_zero_on_flat_images(self):
        image = np.full((32, 32), 0.3, dtype=np.float32)
        assert np.allclose(prefilter_image(image, PrefilterMode.LOG, 1.4), 0.0, atol=1e-5)

    def test_radius(self):
        assert prefilter_radius(PrefilterMode.NONE, 1.4) == 0
        assert prefilter_radius(PrefilterMode.LOG, 1.4) == 7


class TestCensus:
    """Test suite for census codes."""

    def test_identical_images_have_zero_distance(self):
        image = make_texture(16, 16)
        codes = census_transform(image, (5, 5))
        assert codes.dtype == np.uint64
        assert np.all(hamming_distance(codes, codes) == 0)

    def test_ternary_uses_two_bits_per_neighbour(self):
        image = np.zeros((5, 5), dtype=np.float32)
        image[2, 2] = 1.0
        codes = census_transform(image, (3, 3), ternary_threshold=0.01)
        # every neighbour of the bright centre is darker
        assert bin(int(codes[2, 2])).count('1') == 8

    def test_hamming_distance(self):
        a = np.array([[0b1011]], dtype=np.uint64)
        b = np.array([[0b0001]], dtype=np.uint64)
        assert hamming_distance(a, b)[0, 0] == 2


class TestMatchingCost:
    """Test suite for window-aggregated costs."""

    @pytest.mark.parametrize("mode", [CostMode.ABSOLUTE_DIFFERENCE, CostMode.SQUARED_DIFFERENCE,
                                      CostMode.CROSS_CORRELATION, CostMode.CENSUS_TRANSFORM,
                                      CostMode.TERNARY_CENSUS_TRANSFORM])
    def test_true_shift_has_lowest_cost(self, mode):
        left, right = make_shifted_pair(64, 64, 3, 1)
        cost = MatchingCost(mode, (7, 7))
        left_feats = cost.features(left)
        right_feats = cost.features(right)

        def window_cost(dx, dy):
            aligned = tuple(shift_image(f, dx, dy) for f in right_feats)
            return cost.cost(left_feats, aligned)[20:40, 20:40].mean()

        truth = window_cost(3, 1)
        for dx, dy in [(0, 0), (2, 1), (4, 1), (3, 0), (3, 2)]:
            assert truth < window_cost(dx, dy)

    def test_ncc_is_zero_at_identity(self):
        image = make_texture(32, 32)
        cost = MatchingCost(CostMode.CROSS_CORRELATION, (5, 5))
        feats = cost.features(image)
        assert np.allclose(cost.cost(feats, feats)[5:-5, 5:-5], 0.0, atol=1e-3)

    def test_support_radius_includes_census_window(self):
        assert MatchingCost(CostMode.CROSS_CORRELATION, (9, 7)).support_radius == (4, 3)
        assert MatchingCost(CostMode.CENSUS_TRANSFORM, (9, 7)).support_radius == (6, 5)

    def test_no_pixel_cost_for_ncc(self):
        cost = MatchingCost(CostMode.CROSS_CORRELATION, (5, 5))
        feats = cost.features(make_texture(8, 8))
        with pytest.raises(ValueError):
            cost.pixel_cost(feats, feats)


class TestSemiGlobalAggregation:
    """Test suite for 4-path cost aggregation over 2D labels."""

    def test_uniform_minimum_is_preserved(self):
        volume = np.ones((6, 7, 3, 4), dtype=np.float32)
        volume[..., 1, 2] = 0.0
        total = semi_global_aggregate(volume, 1.0, 4.0)
        best = total.reshape(6, 7, -1).argmin(axis=2)
        assert np.all(best == 1 * 4 + 2)

    def test_isolated_noise_is_smoothed(self):
        volume = np.ones((9, 9, 1, 3), dtype=np.float32)
        volume[..., 0, 1] = 0.0
        # a single pixel slightly prefers another label
        volume[4, 4, 0, 1] = 0.6
        volume[4, 4, 0, 2] = 0.5
        total = semi_global_aggregate(volume, 1.0, 4.0)
        assert total[4, 4].argmin() == 1

    def test_path_starts_with_raw_costs(self):
        volume = np.random.default_rng(1).random((5, 4, 2, 2)).astype(np.float32)
        path = aggregate_path(volume, axis=1, reverse=False, p1=1.0, p2=2.0)
        assert np.array_equal(path[:, 0], volume[:, 0])
        assert path.shape == volume.shape
