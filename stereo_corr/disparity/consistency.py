"""
Left-Right Consistency (LRC) Validator

Implements left-right consistency checking of 2D disparity fields: a
left-to-right match survives only if the right-to-left match found at its
target points back to it.
"""

import logging
from typing import Any, Dict, Tuple

import numpy as np


class ConsistencyValidator:
    """Left-Right Consistency validator for 2D vector disparity fields."""

    def __init__(self, threshold: float = 2.0):
        """
        Initialize LRC validator.

        Args:
            threshold: Largest accepted round-trip error per axis, in pixels
        """
        if threshold < 0:
            raise ValueError("LRC threshold must be non-negative")
        self.threshold = threshold
        self.logger = logging.getLogger(__name__)

    def validate_consistency(self,
                             left_disparity: np.ndarray,
                             left_valid: np.ndarray,
                             right_disparity: np.ndarray,
                             right_valid: np.ndarray) -> Tuple[np.ndarray, Dict[str, Any]]:
        """
        Vectorized left-right consistency check.

        Both fields are defined over the same frame; the left field holds
        left-to-right vectors and the right field right-to-left vectors.

        Args:
            left_disparity: (rows, cols, 2) left-to-right vectors
            left_valid: (rows, cols) validity of the left field
            right_disparity: (rows, cols, 2) right-to-left vectors
            right_valid: (rows, cols) validity of the right field

        Returns:
            Tuple of (consistency_mask, metrics)
        """
        if left_disparity.shape != right_disparity.shape:
            raise ValueError("Left and right disparity maps must have same dimensions")

        height, width = left_valid.shape

        # Corresponding coordinates in the right image
        y_coords, x_coords = np.mgrid[0:height, 0:width]
        right_x = x_coords + left_disparity[..., 0]
        right_y = y_coords + left_disparity[..., 1]

        valid_bounds = (right_x >= 0) & (right_x < width) & (right_y >= 0) & (right_y < height)
        candidates = left_valid & valid_bounds

        consistency_mask = np.zeros((height, width), dtype=bool)
        if np.any(candidates):
            ry = right_y[candidates]
            rx = right_x[candidates]
            back = right_disparity[ry, rx]
            round_trip = np.abs(left_disparity[candidates] + back)
            consistent = right_valid[ry, rx] & np.all(round_trip <= self.threshold, axis=1)
            consistency_mask[candidates] = consistent

        total_valid_left = int(np.count_nonzero(left_valid))
        total_consistent = int(np.count_nonzero(consistency_mask))

        metrics = {
            'total_pixels': int(left_valid.size),
            'valid_left_pixels': total_valid_left,
            'consistent_pixels': total_consistent,
            'consistency_ratio': total_consistent / total_valid_left if total_valid_left > 0 else 0.0,
            'error_rate': 1.0 - (total_consistent / total_valid_left) if total_valid_left > 0 else 1.0
        }

        self.logger.debug(f"LRC validation: {total_consistent}/{total_valid_left} pixels consistent "
                          f"({metrics['consistency_ratio']:.3f})")

        return consistency_mask, metrics
