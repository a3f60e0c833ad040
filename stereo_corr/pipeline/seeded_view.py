"""
Seeded Correlation View

Lazy full-resolution disparity raster. Each requested tile gets its own
search range derived from the seed disparity under it, optionally after
warping the right image with the tile's local homography.
"""

import logging
from dataclasses import replace
from typing import Optional, Tuple

import cv2
import numpy as np

from ..data_models import BBox, DisparityField, HomographyGrid, SearchRange, SeedSpread
from ..disparity.pyramid_correlator import CorrelatorOptions, PyramidCorrelator
from ..errors import ConfigurationError
from ..seed.local_homography import transform_disparities, transform_vectors
from ..utils.raster_io import HomographyProducer, MaskedProducer, TileProducer


class SeededCorrelationView:
    """Produces full-resolution disparity tiles on demand."""

    def __init__(self,
                 settings,
                 left: TileProducer,
                 right: TileProducer,
                 left_mask: TileProducer,
                 right_mask: TileProducer,
                 search_range: SearchRange,
                 seed: Optional[DisparityField] = None,
                 spread: Optional[SeedSpread] = None,
                 homographies: Optional[HomographyGrid] = None,
                 options: Optional[CorrelatorOptions] = None):
        """
        Initialize the view.

        Args:
            settings: CorrelationSettings of the run
            left: Left image producer
            right: Right image producer
            left_mask: Left mask producer
            right_mask: Right mask producer
            search_range: Global full-resolution search range
            seed: Low-resolution seed disparity (None in seed mode 0)
            spread: Optional per-cell seed uncertainty
            homographies: Optional per-tile local homographies
            options: Correlator options; built from `settings` when None
        """
        if spread is not None and seed is not None and spread.shape != seed.shape:
            raise ConfigurationError(f"Seed spread dimensions {spread.shape} do not match "
                                     f"seed disparity dimensions {seed.shape}")

        self.settings = settings
        self.left = left
        self.right = right
        self.left_mask = left_mask
        self.right_mask = right_mask
        self.search_range = search_range
        self.seed = seed if settings.seed_mode != 0 else None
        self.spread = spread
        self.homographies = homographies
        options = options or CorrelatorOptions.from_settings(settings)
        if options.pyramid_levels is None:
            # every tile shares the pyramid depth of the whole raster
            levels = PyramidCorrelator(options).pyramid_levels(left.shape, search_range)
            options = replace(options, pyramid_levels=levels)
        self.correlator = PyramidCorrelator(options)
        self.active_window = settings.active_processing_window
        self.logger = logging.getLogger(__name__)

        if self.seed is not None:
            sx, sy = self.seed.scale
            self.upscale = (1.0 / sx, 1.0 / sy)
        else:
            self.upscale = (1.0, 1.0)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.left.shape

    def seed_region(self, bbox: BBox) -> BBox:
        """Seed cells under a full-resolution box, with a one-cell border."""
        sx, sy = self.seed.scale
        return bbox.scaled_outward(sx, sy).expand(1).intersect(BBox.from_shape(self.seed.shape))

    def _full_res_homography(self, homography: np.ndarray) -> np.ndarray:
        scale = np.diag([self.upscale[0], self.upscale[1], 1.0])
        return scale @ homography @ np.linalg.inv(scale)

    def local_search_range(self, bbox: BBox) -> Tuple[SearchRange, Optional[np.ndarray]]:
        """
        Search range of one tile.

        Args:
            bbox: Full-resolution tile

        Returns:
            Tuple of (search range, full-resolution homography or None)
        """
        if self.seed is None:
            return self.search_range, None

        seed_bbox = self.seed_region(bbox)
        region = self.seed.crop(seed_bbox)
        spread = self.spread.crop(seed_bbox) if self.spread is not None else None
        homography = self.homographies.lookup(bbox) if self.homographies is not None else None

        if homography is None:
            local = region.search_range()
            if local is None:
                return self.search_range, None
            if spread is not None:
                rx, ry = spread.max_radius()
                local = SearchRange.enclosing(local.min_dx - rx, local.min_dy - ry,
                                              local.max_dx + rx, local.max_dy + ry)
        else:
            vectors = region.disparity.astype(np.float64)
            transformed = [transform_vectors(seed_bbox, homography, vectors, region.valid)]
            if spread is not None:
                for sign in (1.0, -1.0):
                    transformed.append(transform_vectors(seed_bbox, homography,
                                                         vectors + sign * spread.radius, region.valid))
            local = SearchRange.from_vectors(np.concatenate(transformed))
            if local is None:
                return self.search_range, None

        local = local.expand(1).scaled(self.upscale[0], self.upscale[1])
        full_homography = self._full_res_homography(homography) if homography is not None else None
        return local, full_homography

    def produce(self, bbox: BBox) -> DisparityField:
        """
        Correlate one full-resolution tile.

        Args:
            bbox: Tile of the output raster

        Returns:
            Disparity field over `bbox`
        """
        if self.active_window is not None and bbox.intersect(self.active_window).empty:
            return DisparityField.invalid(bbox.height, bbox.width)

        search_range, homography = self.local_search_range(bbox)
        self.logger.debug(f"Tile {bbox.as_list()}: search range {search_range}")

        right, right_mask = self.right, self.right_mask
        if homography is not None:
            right = HomographyProducer(MaskedProducer(self.right, self.right_mask), homography)
            right_mask = HomographyProducer(self.right_mask, homography, cv2.INTER_NEAREST)

        field = self.correlator.correlate(self.left, right, self.left_mask, right_mask, search_range, bbox)

        if homography is not None:
            # back to vectors into the unwarped right image
            field = transform_disparities(bbox, np.linalg.inv(homography), field)

        if self.active_window is not None:
            inside = np.zeros(field.shape, dtype=bool)
            window = self.active_window.intersect(bbox)
            inside[window.slices_in(bbox)] = True
            field = field.with_valid(inside)
        return field
