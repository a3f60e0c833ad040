"""
Pyramid Block-Matching Correlator

Hierarchical coarse-to-fine block matcher over a bounded integer 2D search
window. A full search runs at the coarsest pyramid level (optionally with
semi-global aggregation); every finer level refines the upsampled estimate
in a small neighbourhood. Optional left-right consistency checking and blob
filtering clean the result.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Optional, Tuple

import cv2
import numpy as np

from ..data_models import BBox, CostMode, DisparityField, PrefilterMode, SearchRange
from ..errors import ConfigurationError
from ..utils.raster_io import ArrayProducer, CropProducer, TileProducer
from .consistency import ConsistencyValidator
from .cost_functions import (MatchingCost, gather_image, prefilter_image,
                             prefilter_radius, shift_image)
from .outlier_filter import filter_blobs
from .sgm import semi_global_aggregate

# Finite stand-in for unmatchable candidates inside SGM cost volumes
INVALID_COST = 1.0e4

# Coarse pixels next to a frame edge that repeated pyrDown borders can reach
PYRAMID_BORDER = 4


@dataclass(frozen=True)
class CorrelatorOptions:
    """Named, validated parameters of one correlator invocation."""
    cost_mode: CostMode = CostMode.CROSS_CORRELATION
    kernel_size: Tuple[int, int] = (21, 21)
    prefilter_mode: PrefilterMode = PrefilterMode.LOG
    prefilter_sigma: float = 1.4
    max_pyramid_levels: int = 5
    pyramid_levels: Optional[int] = None  # fixed level count, None picks one per region
    use_sgm: bool = False
    sgm_p1: float = 1.0
    sgm_p2: float = 4.0
    timeout: float = 0.0  # seconds, 0 = unbounded
    seconds_per_op: float = 0.0
    xcorr_threshold: float = 2.0  # negative disables the left-right check
    collar_size: int = 0
    blob_filter_area: float = 0.0
    ternary_census_threshold: float = 0.01
    refine_radius: int = 2

    def __post_init__(self):
        object.__setattr__(self, 'cost_mode', CostMode.parse(self.cost_mode))
        object.__setattr__(self, 'prefilter_mode', PrefilterMode.parse(self.prefilter_mode))
        object.__setattr__(self, 'kernel_size', tuple(int(k) for k in self.kernel_size))

        if self.cost_mode.requires_sgm and not self.use_sgm:
            raise ConfigurationError(f"Cannot use {self.cost_mode.name.lower()} without SGM")
        if len(self.kernel_size) != 2 or any(k < 1 or k % 2 == 0 for k in self.kernel_size):
            raise ConfigurationError(f"Kernel size must be two odd positive integers, got {self.kernel_size}")
        if self.max_pyramid_levels < 0 or self.refine_radius < 1 or (self.pyramid_levels or 0) < 0:
            raise ConfigurationError("Pyramid levels must be non-negative and refine radius positive")
        if self.timeout < 0 or self.seconds_per_op < 0:
            raise ConfigurationError("Timeout and seconds per op must be non-negative")
        if self.collar_size < 0 or self.blob_filter_area < 0:
            raise ConfigurationError("Collar size and blob filter area must be non-negative")

    @classmethod
    def from_settings(cls, settings, **overrides) -> "CorrelatorOptions":
        """Build options from CorrelationSettings, with per-call overrides."""
        options = cls(
            cost_mode=settings.cost_mode,
            kernel_size=settings.kernel_size,
            prefilter_mode=settings.prefilter_mode,
            prefilter_sigma=settings.prefilter_sigma,
            max_pyramid_levels=settings.max_pyramid_levels,
            use_sgm=settings.use_sgm,
            sgm_p1=settings.sgm_p1,
            sgm_p2=settings.sgm_p2,
            timeout=settings.correlation_timeout,
            xcorr_threshold=settings.xcorr_threshold,
            collar_size=settings.collar_size,
            blob_filter_area=settings.blob_filter_area,
            ternary_census_threshold=settings.ternary_census_threshold,
        )
        return replace(options, **overrides) if overrides else options


class _TimeBudget:
    """Advisory search-effort budget shared by the matching passes of one call."""

    def __init__(self, timeout: float, seconds_per_op: float):
        self.timeout = timeout
        self.seconds_per_op = seconds_per_op
        self.start = time.perf_counter()

    def allows(self, ops: float) -> bool:
        if self.timeout <= 0 or self.seconds_per_op <= 0:
            return True
        elapsed = time.perf_counter() - self.start
        return elapsed + ops * self.seconds_per_op <= self.timeout


class PyramidCorrelator:
    """Coarse-to-fine block matcher producing masked 2D integer disparity fields."""

    def __init__(self, options: Optional[CorrelatorOptions] = None):
        """
        Initialize the correlator.

        Args:
            options: Correlator options; defaults when None
        """
        self.options = options or CorrelatorOptions()
        self.logger = logging.getLogger(__name__)
        self.cost = MatchingCost(self.options.cost_mode, self.options.kernel_size,
                                 self.options.ternary_census_threshold)
        self.consistency = None
        if self.options.xcorr_threshold >= 0:
            self.consistency = ConsistencyValidator(self.options.xcorr_threshold)

    def pyramid_levels(self, shape: Tuple[int, int], search_range: SearchRange) -> int:
        """
        Number of pyramid levels worth building for a region and search range.

        A fixed `pyramid_levels` option overrides the estimate.
        """
        if self.options.pyramid_levels is not None:
            return self.options.pyramid_levels
        rows, cols = shape
        kernel = max(self.options.kernel_size)
        extent = max(search_range.width, search_range.height)
        levels = 0
        while levels < self.options.max_pyramid_levels:
            if extent / 2 ** levels <= 2 * self.options.refine_radius:
                break
            if min(rows, cols) / 2 ** (levels + 1) < 2 * kernel:
                break
            levels += 1
        return levels

    def frame_for(self, bbox: BBox, search_range: SearchRange, levels: int) -> BBox:
        """
        Region that must be read so every output pixel in `bbox` sees its full support.

        The frame origin is a multiple of 2**levels, so coarse pixels of
        overlapping frames cover the same full-resolution pixels.
        """
        support_x, support_y = self.cost.support_radius
        pf = prefilter_radius(self.options.prefilter_mode, self.options.prefilter_sigma)
        scale = 2 ** levels
        slack = 2 if levels == 0 else 2 + PYRAMID_BORDER
        margin_x = (support_x + pf + slack) * scale
        margin_y = (support_y + pf + slack) * scale
        if self.options.blob_filter_area > 0:
            margin_x += self.options.collar_size
            margin_y += self.options.collar_size

        reach_x = max(abs(search_range.min_dx), abs(search_range.max_dx))
        reach_y = max(abs(search_range.min_dy), abs(search_range.max_dy))
        if self.consistency is not None:
            # the reverse pass searches back from every target pixel
            reach_x += search_range.width
            reach_y += search_range.height
        frame = bbox.expand(margin_x + reach_x, margin_y + reach_y)
        return BBox(frame.min_x - frame.min_x % scale, frame.min_y - frame.min_y % scale,
                    frame.max_x, frame.max_y)

    def correlate(self,
                  left: TileProducer,
                  right: TileProducer,
                  left_mask: TileProducer,
                  right_mask: TileProducer,
                  search_range: SearchRange,
                  bbox: BBox,
                  scale: Tuple[float, float] = (1.0, 1.0)) -> DisparityField:
        """
        Correlate the pair over `bbox`.

        Args:
            left: Left image producer
            right: Right image producer (same frame as the left image)
            left_mask: Left validity mask producer (non-zero = valid)
            right_mask: Right validity mask producer
            search_range: Inclusive disparity search window
            bbox: Output region in left-image coordinates
            scale: Resolution recorded on the returned field

        Returns:
            Disparity field covering `bbox`
        """
        if bbox.empty:
            return DisparityField.invalid(bbox.height, bbox.width, scale)

        budget = _TimeBudget(self.options.timeout, self.options.seconds_per_op)
        levels = self.pyramid_levels(bbox.shape, search_range)
        frame = self.frame_for(bbox, search_range, levels)

        left_img = left.read(frame).astype(np.float32)
        right_img = right.read(frame).astype(np.float32)
        left_valid = left_mask.read(frame) != 0
        right_valid = right_mask.read(frame) != 0

        self.logger.debug(f"Correlating {bbox.as_list()} with range {search_range}, "
                          f"{levels} pyramid levels, frame {frame.width}x{frame.height}")

        disparity, valid = self._match(left_img, right_img, left_valid, right_valid,
                                       search_range, levels, budget)

        if self.consistency is not None:
            back, back_valid = self._match(right_img, left_img, right_valid, left_valid,
                                           search_range.negated(), levels, budget)
            consistent, metrics = self.consistency.validate_consistency(disparity, valid, back, back_valid)
            valid &= consistent
            self.logger.debug(f"Left-right check kept {metrics['consistent_pixels']} of "
                              f"{metrics['valid_left_pixels']} matches")

        if self.options.blob_filter_area > 0:
            valid = filter_blobs(valid, self.options.blob_filter_area)

        disparity[~valid] = 0
        rows, cols = bbox.slices_in(frame)
        return DisparityField(disparity[rows, cols].copy(), valid[rows, cols].copy(), scale)

    def _match(self, left, right, left_valid, right_valid, search_range, levels, budget):
        left_pyr = self._image_pyramid(left, levels)
        right_pyr = self._image_pyramid(right, levels)
        left_mask_pyr = self._mask_pyramid(left_valid, levels)
        right_mask_pyr = self._mask_pyramid(right_valid, levels)

        coarse_range = self._level_range(search_range, levels)
        coarse_ops = left_pyr[levels].size * coarse_range.candidate_count * self.cost.kernel_area
        if not budget.allows(coarse_ops):
            self.logger.warning(f"Coarsest level search exceeds the correlation timeout, "
                                f"continuing with a best-effort result")

        disparity, valid = self._full_search(self.cost.features(left_pyr[levels]),
                                             self.cost.features(right_pyr[levels]),
                                             left_mask_pyr[levels], right_mask_pyr[levels],
                                             coarse_range)

        refine_count = (2 * self.options.refine_radius + 1) ** 2
        for level in range(levels - 1, -1, -1):
            shape = left_pyr[level].shape
            ops = left_pyr[level].size * refine_count * self.cost.kernel_area
            if not budget.allows(ops):
                self.logger.warning(f"Correlation timeout reached, stopping refinement at level {level + 1}")
                disparity, valid = _upsample(disparity, valid, left.shape, 2 ** (level + 1))
                disparity[..., 0] = np.clip(disparity[..., 0], search_range.min_dx, search_range.max_dx)
                disparity[..., 1] = np.clip(disparity[..., 1], search_range.min_dy, search_range.max_dy)
                return disparity, valid & left_valid

            disparity, valid = _upsample(disparity, valid, shape, 2)
            disparity, valid = self._refine(self.cost.features(left_pyr[level]),
                                            self.cost.features(right_pyr[level]),
                                            left_mask_pyr[level], right_mask_pyr[level],
                                            disparity, valid,
                                            self._level_range(search_range, level))
        return disparity, valid

    def _image_pyramid(self, image: np.ndarray, levels: int):
        raw = [image]
        for _ in range(levels):
            raw.append(cv2.pyrDown(raw[-1]))
        return [prefilter_image(level, self.options.prefilter_mode, self.options.prefilter_sigma)
                for level in raw]

    @staticmethod
    def _mask_pyramid(mask: np.ndarray, levels: int):
        pyramid = [mask]
        for _ in range(levels):
            # a coarse pixel is valid only when all of its support is
            pyramid.append(cv2.pyrDown(pyramid[-1].astype(np.float32)) > 0.999)
        return pyramid

    @staticmethod
    def _level_range(search_range: SearchRange, level: int) -> SearchRange:
        factor = 1.0 / 2 ** level
        return search_range.scaled(factor, factor)

    def _full_search(self, left_feats, right_feats, left_valid, right_valid, search_range):
        rows, cols = left_valid.shape
        if self.options.use_sgm:
            return self._sgm_search(left_feats, right_feats, left_valid, right_valid, search_range)

        best_cost = np.full((rows, cols), np.inf, dtype=np.float32)
        disparity = np.zeros((rows, cols, 2), dtype=np.int32)
        for dy in range(search_range.min_dy, search_range.max_dy + 1):
            for dx in range(search_range.min_dx, search_range.max_dx + 1):
                aligned = tuple(shift_image(f, dx, dy) for f in right_feats)
                usable = left_valid & shift_image(right_valid, dx, dy, False)
                cost = np.where(usable, self.cost.cost(left_feats, aligned), np.inf)
                better = cost < best_cost
                best_cost[better] = cost[better]
                disparity[better] = (dx, dy)
        return disparity, np.isfinite(best_cost)

    def _sgm_search(self, left_feats, right_feats, left_valid, right_valid, search_range):
        rows, cols = left_valid.shape
        ny, nx = search_range.height + 1, search_range.width + 1
        volume = np.full((rows, cols, ny, nx), INVALID_COST, dtype=np.float32)
        usable_any = np.zeros((rows, cols, ny, nx), dtype=bool)
        for iy, dy in enumerate(range(search_range.min_dy, search_range.max_dy + 1)):
            for ix, dx in enumerate(range(search_range.min_dx, search_range.max_dx + 1)):
                aligned = tuple(shift_image(f, dx, dy) for f in right_feats)
                usable = left_valid & shift_image(right_valid, dx, dy, False)
                cost = self.cost.cost(left_feats, aligned)
                volume[..., iy, ix] = np.where(usable, cost, INVALID_COST)
                usable_any[..., iy, ix] = usable

        aggregated = semi_global_aggregate(volume, self.options.sgm_p1, self.options.sgm_p2)
        best = aggregated.reshape(rows, cols, -1).argmin(axis=2)
        best_y, best_x = np.divmod(best, nx)
        disparity = np.stack([best_x + search_range.min_dx, best_y + search_range.min_dy], axis=2).astype(np.int32)
        valid = np.take_along_axis(usable_any.reshape(rows, cols, -1), best[..., None], axis=2)[..., 0]
        return disparity, valid

    def _refine(self, left_feats, right_feats, left_valid, right_valid, predicted, predicted_valid, search_range):
        rows, cols = left_valid.shape
        radius = self.options.refine_radius
        best_cost = np.full((rows, cols), np.inf, dtype=np.float32)
        disparity = predicted.copy()
        for oy in range(-radius, radius + 1):
            for ox in range(-radius, radius + 1):
                target_x = np.clip(predicted[..., 0] + ox, search_range.min_dx, search_range.max_dx)
                target_y = np.clip(predicted[..., 1] + oy, search_range.min_dy, search_range.max_dy)
                aligned = tuple(gather_image(f, target_x, target_y) for f in right_feats)
                usable = predicted_valid & left_valid & gather_image(right_valid, target_x, target_y, False)
                cost = np.where(usable, self.cost.cost(left_feats, aligned), np.inf)
                better = cost < best_cost
                best_cost[better] = cost[better]
                disparity[better, 0] = target_x[better]
                disparity[better, 1] = target_y[better]
        return disparity, np.isfinite(best_cost)


def _upsample(disparity: np.ndarray, valid: np.ndarray, shape: Tuple[int, int], factor: int):
    """Nearest-neighbour upsampling of a disparity field, scaling the vectors."""
    rows, cols = shape
    up = np.repeat(np.repeat(disparity, factor, axis=0), factor, axis=1) * factor
    up_valid = np.repeat(np.repeat(valid, factor, axis=0), factor, axis=1)
    pad_rows = max(0, rows - up.shape[0])
    pad_cols = max(0, cols - up.shape[1])
    if pad_rows or pad_cols:
        up = np.pad(up, ((0, pad_rows), (0, pad_cols), (0, 0)), mode='edge')
        up_valid = np.pad(up_valid, ((0, pad_rows), (0, pad_cols)), mode='edge')
    return up[:rows, :cols].astype(np.int32), up_valid[:rows, :cols]


def calc_seconds_per_op(cost_mode: CostMode,
                        left: TileProducer,
                        right: TileProducer,
                        kernel_size: Tuple[int, int],
                        sample_size: int = 256) -> float:
    """
    Estimate correlation speed by timing a small sample correlation.

    Args:
        cost_mode: Cost mode to time
        left: Left image producer
        right: Right image producer
        kernel_size: Correlation kernel (width, height)
        sample_size: Side of the square sample taken from the image centre

    Returns:
        Seconds per (pixel x candidate x kernel pixel) operation
    """
    cost_mode = CostMode.parse(cost_mode)
    rows, cols = left.shape
    size = max(1, min(sample_size, rows, cols))
    window = BBox(cols // 2 - size // 2, rows // 2 - size // 2,
                  cols // 2 - size // 2 + size, rows // 2 - size // 2 + size)
    options = CorrelatorOptions(cost_mode=cost_mode, kernel_size=kernel_size,
                                prefilter_mode=PrefilterMode.NONE, max_pyramid_levels=0,
                                use_sgm=cost_mode.requires_sgm, xcorr_threshold=-1)
    ones = ArrayProducer(np.ones((size, size), dtype=np.uint8))
    search_range = SearchRange(0, 0, 7, 1)

    correlator = PyramidCorrelator(options)
    start = time.perf_counter()
    correlator.correlate(CropProducer(left, window), CropProducer(right, window), ones, ones,
                         search_range, BBox(0, 0, size, size))
    elapsed = time.perf_counter() - start

    ops = float(size * size * search_range.candidate_count * kernel_size[0] * kernel_size[1])
    seconds_per_op = max(elapsed / ops, 1e-15)
    logging.getLogger(__name__).debug(f"Calibrated {seconds_per_op:.3e} seconds per op "
                                      f"for {cost_mode.name}")
    return seconds_per_op
