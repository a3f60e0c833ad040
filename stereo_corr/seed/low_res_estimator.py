"""
Low-Resolution Search Estimation (Stage A)

Establishes the global search range and produces the low-resolution seed
disparity that bounds the per-tile search of the full-resolution pass.
"""

import logging
import time
from typing import Callable, Optional, Tuple

from ..data_models import (BBox, CostMode, DisparityField, LowResResult, OutlierMode,
                           PrefilterMode, SearchRange, SeedSpread)
from ..disparity.outlier_filter import OutlierFilter
from ..disparity.pyramid_correlator import CorrelatorOptions, PyramidCorrelator, calc_seconds_per_op
from ..disparity.search_range import approximate_search_range, range_from_matches, read_search_range
from ..errors import CheckpointReadError, ConfigurationError, MissingInputError
from ..utils.raster_io import ArrayProducer, CheckpointStore
from .local_homography import LocalHomographyProvider

# Callable writing the seed disparity and its spread from a DEM
DemSeedProducer = Callable[[CheckpointStore, object], None]


class LowResSearchEstimator:
    """Stage A: global search range, seed disparity and local homographies."""

    def __init__(self, settings, store: CheckpointStore,
                 dem_seed_producer: Optional[DemSeedProducer] = None):
        """
        Initialize the estimator.

        Args:
            settings: CorrelationSettings of the run
            store: Checkpoint store of the run
            dem_seed_producer: Writes the seed from a DEM in seed mode 2
        """
        self.settings = settings
        self.store = store
        self.dem_seed_producer = dem_seed_producer
        self.logger = logging.getLogger(__name__)

    def establish_search_range(self) -> Optional[SearchRange]:
        """
        Global full-resolution search range before any seed exists.

        The user range wins; seed modes 2 and 3 take their range from the
        seed; otherwise tie points are used when present, and a feature
        matching pass over the sub images when not.
        """
        if self.settings.search_range is not None:
            self.logger.info(f"Using user search range {self.settings.search_range}")
            return self.settings.search_range

        if self.settings.seed_mode in (2, 3):
            return None

        if self.store.match_file.exists():
            search_range = self._range_from_match_file()
            if search_range is not None:
                self.logger.info(f"Search range from tie points: {search_range}")
                return search_range
            self.logger.warning(f"No usable tie points in {self.store.match_file}")

        scale = self.store.ensure_low_res_inputs(self.settings.low_res_max_pixels)
        left, right, left_mask, right_mask = self.store.low_res_arrays()
        return approximate_search_range(left, right, left_mask, right_mask, scale)

    def _range_from_match_file(self) -> Optional[SearchRange]:
        try:
            left_points, right_points = self.store.read_matches()
            left_align = self.store.read_alignment(self.store.align_left)
            right_align = self.store.read_alignment(self.store.align_right)
        except CheckpointReadError as e:
            self.logger.warning(f"Ignoring tie points: {e}")
            return None
        return range_from_matches(left_points, right_points,
                                  self.store.image_size(self.store.left_mask),
                                  self.store.image_size(self.store.right_mask),
                                  left_align, right_align)

    def seed_is_cached(self) -> bool:
        """True when a readable seed disparity exists and may be reused."""
        if self.settings.crop_left_and_right:
            return False
        try:
            self.store.read_disparity(self.store.seed_disparity)
        except CheckpointReadError:
            return False
        return True

    def sub_search_range(self, search_range: SearchRange, scale: Tuple[float, float]) -> SearchRange:
        """Full range scaled to the sub images and padded by seed_percent_pad."""
        sub_range = search_range.scaled(scale[0], scale[1])
        pad = self.settings.seed_percent_pad
        return sub_range.expand(int(sub_range.width * pad / 2), int(sub_range.height * pad / 2))

    def compute_seed(self, search_range: SearchRange) -> DisparityField:
        """
        Correlate the sub images over the padded range and clean the result.

        Args:
            search_range: Full-resolution search range

        Returns:
            Filtered low-resolution disparity field, also written to disk
        """
        start_time = time.time()
        scale = self.store.downsample_scale()
        left, right, left_mask, right_mask = (ArrayProducer(a) for a in self.store.low_res_arrays())
        sub_range = self.sub_search_range(search_range, scale)

        mean_scale = (scale[0] + scale[1]) / 2.0
        fits_one_tile = max(left.shape) <= self.settings.tile_size
        if self.settings.resolved_outlier_mode == OutlierMode.THRESHOLD:
            blob_area = self.settings.blob_filter_area * mean_scale
            collar = 0 if fits_one_tile else self.settings.collar_size
        else:
            blob_area = 0
            collar = 0

        timeout = 5 * self.settings.correlation_timeout
        seconds_per_op = 0.0
        if timeout > 0:
            seconds_per_op = calc_seconds_per_op(CostMode.CROSS_CORRELATION, left, right,
                                                 self.settings.kernel_size)

        options = CorrelatorOptions.from_settings(
            self.settings,
            cost_mode=CostMode.CROSS_CORRELATION,
            use_sgm=False,
            prefilter_mode=PrefilterMode.LOG,
            timeout=timeout,
            seconds_per_op=seconds_per_op,
            blob_filter_area=blob_area,
            collar_size=collar,
        )
        self.logger.info(f"Low-resolution correlation of {left.shape[1]}x{left.shape[0]} sub images "
                         f"over range {sub_range}")

        raw = PyramidCorrelator(options).correlate(left, right, left_mask, right_mask, sub_range,
                                                   BBox.from_shape(left.shape), scale)
        seed = OutlierFilter(self.settings).apply(raw)
        self.store.write_disparity(self.store.seed_disparity, seed)

        self.logger.info(f"Wrote seed disparity {self.store.seed_disparity} with {seed.valid_count} "
                         f"valid cells in {time.time() - start_time:.2f}s")
        return seed

    def load_seed(self) -> DisparityField:
        """Read the persisted seed disparity at its resolution."""
        try:
            scale = self.store.downsample_scale()
            return self.store.read_disparity(self.store.seed_disparity, scale)
        except CheckpointReadError as e:
            raise MissingInputError(f"Missing mandatory input: seed disparity ({e})")

    def load_spread(self) -> Optional[SeedSpread]:
        """Seed spread; mandatory in seed modes 2 and 3, optional otherwise."""
        try:
            return self.store.read_spread()
        except CheckpointReadError as e:
            if self.settings.seed_mode in (2, 3):
                raise MissingInputError(f"Missing mandatory input: seed spread {self.store.seed_spread} ({e})")
            self.logger.debug(f"No seed spread available: {e}")
            return None

    def run(self) -> LowResResult:
        """
        Run Stage A.

        Returns:
            LowResResult with the full-resolution range and, for seed modes
            1 to 3, the seed field, its spread and optional homography grid
        """
        mode = self.settings.seed_mode
        search_range = self.establish_search_range()
        if mode == 0:
            if search_range is None:
                raise MissingInputError("Missing mandatory input: no search range could be established")
            self.logger.info(f"Seed mode 0, using global search range {search_range}")
            return LowResResult(search_range)

        self.store.ensure_low_res_inputs(self.settings.low_res_max_pixels)
        recomputed = False
        if mode == 1:
            if self.seed_is_cached():
                self.logger.info(f"Reusing seed disparity {self.store.seed_disparity}")
            else:
                if search_range is None:
                    raise MissingInputError("Missing mandatory input: no search range could be established")
                self.compute_seed(search_range)
                recomputed = True
        elif mode == 2 and self.dem_seed_producer is not None and not self.seed_is_cached():
            self.logger.info("Producing seed disparity from the DEM")
            self.dem_seed_producer(self.store, self.settings)
            recomputed = True

        seed = self.load_seed()
        seed_range = read_search_range(seed, seed.scale)
        if seed_range is None:
            self.logger.warning("Seed disparity has no valid cells")
        else:
            self.logger.info(f"Search range from seed disparity: {seed_range}")

        spread = self.load_spread()
        if spread is not None and spread.shape != seed.shape:
            raise ConfigurationError(f"Seed spread dimensions {spread.shape} do not match "
                                     f"seed disparity dimensions {seed.shape}")

        homographies = None
        if self.settings.use_local_homography:
            full_shape = self.store.image_size(self.store.left_mask)
            homographies = LocalHomographyProvider(self.settings, self.store).load_or_compute(
                seed, full_shape, force=recomputed)

        return LowResResult(seed_range if seed_range is not None else search_range,
                            seed=seed, spread=spread, homographies=homographies, recomputed=recomputed)
