"""
Outlier Removal for Seed Disparities

Cleans a low-resolution disparity field by comparing every valid vector with
the median of its neighbourhood, either against fixed thresholds or against
a multiple of a quantile of the valid disparity magnitudes.
"""

import logging
import warnings
from typing import Tuple

import cv2
import numpy as np

from ..data_models import DisparityField, OutlierMode
from .cost_functions import shift_image


def filter_blobs(valid: np.ndarray, min_area: float) -> np.ndarray:
    """
    Remove small islands of valid pixels.

    Args:
        valid: Boolean validity mask
        min_area: Components with fewer pixels are dropped (8-connectivity)

    Returns:
        Filtered validity mask
    """
    if min_area <= 0 or not np.any(valid):
        return valid.copy()
    _, labels, stats, _ = cv2.connectedComponentsWithStats(valid.astype(np.uint8), connectivity=8)
    keep = stats[:, cv2.CC_STAT_AREA] >= min_area
    keep[0] = False  # background
    return keep[labels]


class OutlierFilter:
    """Neighbourhood-median outlier removal in threshold or quantile mode."""

    def __init__(self, settings):
        """
        Initialize the filter.

        Args:
            settings: CorrelationSettings providing the rm_* options
        """
        self.settings = settings
        self.mode = settings.resolved_outlier_mode
        self.half_kernel = settings.rm_half_kernel
        self.logger = logging.getLogger(__name__)

    @property
    def threshold(self) -> float:
        return self.settings.rm_threshold * self.settings.rm_threshold_scale

    @property
    def min_match_fraction(self) -> float:
        return self.settings.rm_min_matches / 100.0 * self.settings.rm_min_matches_scale

    def neighbourhood_statistics(self, field: DisparityField,
                                 threshold: float = None) -> Tuple[np.ndarray, np.ndarray]:
        """
        Deviation from the neighbourhood median and neighbour agreement of every cell.

        Args:
            field: Disparity field
            threshold: Agreement distance; defaults to the threshold-mode value

        Returns:
            Tuple of (deviation, agreement). Deviation is the per-axis maximum
            distance to the median of the valid neighbours (NaN without any);
            agreement is the fraction of valid neighbours within `threshold`.
        """
        threshold = self.threshold if threshold is None else threshold
        half_w, half_h = self.half_kernel
        vectors = np.where(field.valid[..., None], field.disparity, 0).astype(np.float32)

        neighbours = []
        neighbour_valid = []
        for dy in range(-half_h, half_h + 1):
            for dx in range(-half_w, half_w + 1):
                if dx == 0 and dy == 0:
                    continue
                neighbours.append(shift_image(vectors, dx, dy))
                neighbour_valid.append(shift_image(field.valid, dx, dy, False))

        if not neighbours:
            rows, cols = field.shape
            return np.full((rows, cols), np.nan, dtype=np.float32), np.zeros((rows, cols), dtype=np.float32)

        stack = np.stack(neighbours)
        stack_valid = np.stack(neighbour_valid)
        masked = np.where(stack_valid[..., None], stack, np.nan)

        with warnings.catch_warnings():
            # cells without valid neighbours have an undefined median
            warnings.simplefilter('ignore', RuntimeWarning)
            median = np.nanmedian(masked, axis=0)
        deviation = np.max(np.abs(vectors - median), axis=2)

        distance = np.max(np.abs(stack - vectors[None]), axis=3)
        agreeing = np.count_nonzero(stack_valid & (distance <= threshold), axis=0)
        total = np.count_nonzero(stack_valid, axis=0)
        agreement = np.where(total > 0, agreeing / np.maximum(total, 1), 0.0).astype(np.float32)
        return deviation, agreement

    def apply(self, field: DisparityField) -> DisparityField:
        """
        Remove outliers from a disparity field.

        Args:
            field: Seed disparity field

        Returns:
            Field with outliers marked invalid
        """
        before = field.valid_count
        if before == 0:
            return field

        if self.mode == OutlierMode.THRESHOLD:
            deviation, agreement = self.neighbourhood_statistics(field)
            discard = (agreement < self.min_match_fraction) | (np.nan_to_num(deviation, nan=0.0) > self.threshold)
        else:
            deviation, _ = self.neighbourhood_statistics(field)
            magnitude = np.hypot(*field.disparity[field.valid].astype(np.float64).T)
            quantile = float(np.quantile(magnitude, self.settings.rm_quantile_percentile))
            limit = self.settings.rm_quantile_multiple * max(quantile, self.settings.rm_quantile_min_deviation)
            discard = np.nan_to_num(deviation, nan=0.0) > limit
            self.logger.debug(f"Quantile outlier limit {limit:.3f} (quantile {quantile:.3f})")

        result = field.with_valid(~discard)
        self.logger.info(f"Outlier removal ({self.mode.value}) kept {result.valid_count} of {before} seed matches")
        return result
