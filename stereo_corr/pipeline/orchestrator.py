"""
Stereo Correlation Pipeline

Runs the two correlation stages: the low-resolution search estimation
(Stage A) and the tile-parallel full-resolution correlation (Stage B).
Stage B only starts after Stage A has persisted all of its products.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Optional, Tuple

from ..data_models import CorrelationResult, LowResResult, SearchRange
from ..disparity.pyramid_correlator import CorrelatorOptions, calc_seconds_per_op
from ..disparity.search_range import read_search_range
from ..errors import MissingInputError
from ..seed.local_homography import LocalHomographyProvider
from ..seed.low_res_estimator import DemSeedProducer, LowResSearchEstimator
from ..utils.raster_io import CheckpointStore, tile_grid
from .seeded_view import SeededCorrelationView
from .tile_writer import TileWriter


class StereoCorrelationPipeline:
    """End-to-end seeded correlation of one stereo pair sharing an output prefix."""

    def __init__(self, settings, out_prefix: str,
                 dem_seed_producer: Optional[DemSeedProducer] = None):
        """
        Initialize the pipeline.

        Args:
            settings: CorrelationSettings of the run
            out_prefix: Prefix of every input and output artifact
            dem_seed_producer: Seed producer used in seed mode 2
        """
        self.settings = settings
        self.store = CheckpointStore(out_prefix)
        self.dem_seed_producer = dem_seed_producer
        self.logger = logging.getLogger(__name__)

    def run(self) -> CorrelationResult:
        """
        Run the stages selected by the settings.

        Returns:
            CorrelationResult summarizing the run
        """
        start_time = time.time()
        stages = []
        low_res = None

        if not (self.settings.skip_low_res and self.settings.seed_mode != 0):
            self.logger.info("Stage A: low-resolution search estimation")
            low_res = LowResSearchEstimator(self.settings, self.store, self.dem_seed_producer).run()
            stages.append('low_res')

        if self.settings.compute_low_res_only:
            self.logger.info("Low-resolution products computed, skipping full-resolution correlation")
            return CorrelationResult(output_path=None,
                                     search_range=low_res.search_range if low_res else None,
                                     tiles_processed=0,
                                     processing_time=time.time() - start_time,
                                     low_res=low_res,
                                     stages_run=tuple(stages))

        self.logger.info("Stage B: full-resolution correlation")
        search_range, tiles = self.correlate_full_resolution(low_res)
        stages.append('full_res')

        processing_time = time.time() - start_time
        self.logger.info(f"Correlation finished in {processing_time:.2f}s")
        return CorrelationResult(output_path=str(self.store.disparity),
                                 search_range=search_range,
                                 tiles_processed=tiles,
                                 processing_time=processing_time,
                                 low_res=low_res,
                                 stages_run=tuple(stages))

    def _log_parameters(self, search_range: SearchRange) -> None:
        s = self.settings
        self.logger.info(f"Cost mode: {s.cost_mode.name}, SGM: {s.use_sgm}")
        self.logger.info(f"Kernel size: {s.kernel_size[0]}x{s.kernel_size[1]}, "
                         f"max pyramid levels: {s.max_pyramid_levels}")
        self.logger.info(f"Prefilter: {s.prefilter_mode.name} (sigma {s.prefilter_sigma})")
        self.logger.info(f"Cross-correlation threshold: {s.xcorr_threshold}")
        self.logger.info(f"Search range: {search_range}")
        self.logger.info(f"Seed mode: {s.seed_mode}, tile size: {s.tile_size}, threads: {s.threads}")

    def correlate_full_resolution(self, low_res: Optional[LowResResult]) -> Tuple[SearchRange, int]:
        """
        Run Stage B.

        Args:
            low_res: Stage A products, None when Stage A was skipped

        Returns:
            Tuple of (global search range, number of tiles written)
        """
        left, right, left_mask, right_mask = self.store.full_res_sources()
        mode = self.settings.seed_mode

        seed = spread = homographies = None
        if mode == 0:
            search_range = low_res.search_range
        else:
            estimator = LowResSearchEstimator(self.settings, self.store, self.dem_seed_producer)
            seed = low_res.seed if low_res is not None and low_res.seed is not None else estimator.load_seed()
            search_range = read_search_range(seed, seed.scale) or self.settings.search_range
            spread = low_res.spread if low_res is not None else estimator.load_spread()
            if self.settings.use_local_homography:
                if low_res is not None and low_res.homographies is not None:
                    homographies = low_res.homographies
                else:
                    homographies = LocalHomographyProvider(self.settings, self.store).load_or_compute(
                        seed, left.shape)

        if search_range is None:
            raise MissingInputError("Missing mandatory input: no search range could be established")

        self._log_parameters(search_range)

        seconds_per_op = 0.0
        if self.settings.correlation_timeout > 0:
            seconds_per_op = calc_seconds_per_op(self.settings.cost_mode, left, right,
                                                 self.settings.kernel_size)
        options = CorrelatorOptions.from_settings(self.settings, seconds_per_op=seconds_per_op)

        view = SeededCorrelationView(self.settings, left, right, left_mask, right_mask, search_range,
                                     seed=seed, spread=spread, homographies=homographies, options=options)
        self.logger.info(f"Pyramid levels: {view.correlator.options.pyramid_levels}")

        tiles = tile_grid(left.shape, self.settings.tile_size)
        self.logger.info(f"Correlating {len(tiles)} tiles of {self.settings.tile_size} pixels")

        with TileWriter(self.store.disparity, left.shape) as writer:
            with ThreadPoolExecutor(max_workers=self.settings.threads) as executor:
                futures = [executor.submit(self._process_tile, view, writer, tile) for tile in tiles]
                try:
                    for done, future in enumerate(as_completed(futures), start=1):
                        future.result()
                        self.logger.debug(f"Tile {done}/{len(tiles)} done")
                except BaseException:
                    for future in futures:
                        future.cancel()
                    raise

        return search_range, len(tiles)

    @staticmethod
    def _process_tile(view: SeededCorrelationView, writer: TileWriter, tile) -> None:
        writer.write(tile, view.produce(tile))
