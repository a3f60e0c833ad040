"""
Tests for Left-Right Consistency Validator
"""

import pytest
import numpy as np
from hypothesis import given, settings as hypothesis_settings, strategies as st

from stereo_corr.disparity.consistency import ConsistencyValidator


def make_consistent_fields(height, width, dx, dy, noise=None):
    """Left field of constant (dx, dy) and the right field pointing back."""
    left = np.zeros((height, width, 2), dtype=np.int32)
    left[...] = (dx, dy)
    left_valid = np.ones((height, width), dtype=bool)

    right = np.zeros((height, width, 2), dtype=np.int32)
    right[...] = (-dx, -dy)
    if noise is not None:
        right += noise
    right_valid = np.ones((height, width), dtype=bool)
    return left, left_valid, right, right_valid


class TestConsistencyValidator:
    """Test suite for LRC validator."""

    @pytest.fixture
    def validator(self):
        """Fixture providing an LRC validator instance."""
        return ConsistencyValidator()

    def test_validator_initialization(self, validator):
        """Test that LRC validator initializes correctly."""
        assert validator.threshold > 0
        assert hasattr(validator, 'logger')

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValueError):
            ConsistencyValidator(-1.0)

    def test_consistent_fields(self, validator):
        left, left_valid, right, right_valid = make_consistent_fields(40, 60, 7, -2)
        mask, metrics = validator.validate_consistency(left, left_valid, right, right_valid)

        # Targets inside the frame are all consistent, the rest fall outside
        assert mask[2:, :53].all()
        assert not mask[:, 53:].any()
        assert not mask[:2].any()
        assert metrics['consistent_pixels'] == 38 * 53

    def test_inconsistent_fields(self, validator):
        noise = np.zeros((30, 30, 2), dtype=np.int32)
        noise[..., 0] = 5
        left, left_valid, right, right_valid = make_consistent_fields(30, 30, 2, 0, noise)
        mask, metrics = validator.validate_consistency(left, left_valid, right, right_valid)
        assert not mask.any()
        assert metrics['error_rate'] == 1.0

    def test_invalid_right_matches_rejected(self, validator):
        left, left_valid, right, right_valid = make_consistent_fields(20, 20, 1, 0)
        right_valid[:, 10] = False
        mask, _ = validator.validate_consistency(left, left_valid, right, right_valid)
        assert not mask[:, 9].any()
        assert mask[:, 8].all()

    def test_dimension_mismatch(self, validator):
        left = np.zeros((10, 10, 2), dtype=np.int32)
        right = np.zeros((10, 12, 2), dtype=np.int32)
        with pytest.raises(ValueError):
            validator.validate_consistency(left, np.ones((10, 10), bool), right, np.ones((10, 12), bool))

    def test_empty_disparity_maps(self, validator):
        """Test handling of fields without valid cells."""
        left = np.zeros((20, 20, 2), dtype=np.int32)
        valid = np.zeros((20, 20), dtype=bool)
        mask, metrics = validator.validate_consistency(left, valid, left, valid)
        assert not mask.any()
        assert metrics['consistency_ratio'] == 0.0
        assert metrics['error_rate'] == 1.0

    @pytest.mark.property
    @hypothesis_settings(max_examples=30, deadline=None)
    @given(
        threshold=st.integers(min_value=0, max_value=4),
        error=st.integers(min_value=0, max_value=6)
    )
    def test_property_threshold_sensitivity(self, threshold, error):
        """Property test: a round-trip error passes exactly when it is within the threshold."""
        validator = ConsistencyValidator(float(threshold))
        noise = np.zeros((12, 30, 2), dtype=np.int32)
        noise[..., 1] = error
        left, left_valid, right, right_valid = make_consistent_fields(12, 30, 3, 0, noise)

        mask, metrics = validator.validate_consistency(left, left_valid, right, right_valid)

        assert mask[:, :27].all() == (error <= threshold)
        assert 0 <= metrics['consistency_ratio'] <= 1
        assert 0 <= metrics['error_rate'] <= 1
