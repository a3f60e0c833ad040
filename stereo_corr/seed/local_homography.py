"""
Local Homography Estimation

Fits one projective transform per full-resolution correlation tile from the
seed disparities under it. Warping the right image by that transform removes
most of the local perspective distortion before fine matching.
"""

import logging
import math
from typing import Tuple

import cv2
import numpy as np

from ..data_models import BBox, DisparityField, HomographyGrid
from ..errors import CheckpointReadError
from ..utils.raster_io import CheckpointStore, apply_homography


def transform_vectors(seed_bbox: BBox, homography: np.ndarray,
                      vectors: np.ndarray, valid: np.ndarray) -> np.ndarray:
    """
    Map disparity vectors through a homography acting on right-image points.

    Args:
        seed_bbox: Region of the vectors in seed coordinates
        homography: 3x3 transform of right points
        vectors: (rows, cols, 2) vectors over `seed_bbox`
        valid: (rows, cols) cells to transform

    Returns:
        (N, 2) float array of H(p + d) - p for the valid cells with a finite image
    """
    ys, xs = np.nonzero(valid)
    px = xs.astype(np.float64) + seed_bbox.min_x
    py = ys.astype(np.float64) + seed_bbox.min_y
    tx, ty = apply_homography(homography, px + vectors[ys, xs, 0], py + vectors[ys, xs, 1])
    finite = np.isfinite(tx) & np.isfinite(ty)
    return np.stack([tx[finite] - px[finite], ty[finite] - py[finite]], axis=1)


def transform_disparities(seed_bbox: BBox, homography: np.ndarray, field: DisparityField) -> DisparityField:
    """Field whose valid vectors d at p are replaced by round(H(p + d)) - p."""
    rows, cols = field.shape
    ys, xs = np.indices((rows, cols))
    px = xs + seed_bbox.min_x
    py = ys + seed_bbox.min_y
    tx, ty = apply_homography(homography, px + field.disparity[..., 0], py + field.disparity[..., 1])
    valid = field.valid & np.isfinite(tx) & np.isfinite(ty)

    disparity = np.zeros((rows, cols, 2), dtype=np.int32)
    disparity[valid, 0] = np.round(tx[valid]).astype(np.int64) - px[valid]
    disparity[valid, 1] = np.round(ty[valid]).astype(np.int64) - py[valid]
    return DisparityField(disparity, valid, field.scale)


class LocalHomographyProvider:
    """Computes, persists and reloads the per-tile homography grid."""

    def __init__(self, settings, store: CheckpointStore):
        """
        Initialize the provider.

        Args:
            settings: CorrelationSettings (tile_size and homography_* options)
            store: Checkpoint store of the run
        """
        self.settings = settings
        self.store = store
        self.tile_size = settings.tile_size
        self.logger = logging.getLogger(__name__)

    def grid_shape(self, full_shape: Tuple[int, int]) -> Tuple[int, int]:
        rows, cols = full_shape
        return math.ceil(rows / self.tile_size), math.ceil(cols / self.tile_size)

    def seed_region(self, tile: BBox, scale: Tuple[float, float], seed_shape: Tuple[int, int]) -> BBox:
        """Seed cells under a full-resolution tile, with a one-cell border."""
        return tile.scaled_outward(scale[0], scale[1]).expand(1).intersect(BBox.from_shape(seed_shape))

    def fit(self, seed: DisparityField, seed_bbox: BBox) -> np.ndarray:
        """
        Fit the transform taking right points to left points over a seed region.

        Args:
            seed: Seed disparity field
            seed_bbox: Region of the seed to use

        Returns:
            3x3 homography, identity when the region cannot support a fit
        """
        region = seed.crop(seed_bbox)
        ys, xs = np.nonzero(region.valid)
        if len(xs) < max(4, self.settings.homography_min_points):
            return np.eye(3)

        left = np.stack([xs + seed_bbox.min_x, ys + seed_bbox.min_y], axis=1).astype(np.float32)
        right = left + region.disparity[ys, xs].astype(np.float32)
        homography, _ = cv2.findHomography(right, left, cv2.RANSAC,
                                           self.settings.homography_ransac_threshold)
        if homography is None or not np.all(np.isfinite(homography)) or abs(homography[2, 2]) < 1e-12:
            self.logger.warning(f"Homography fit failed for seed region {seed_bbox.as_list()}, using identity")
            return np.eye(3)
        return homography / homography[2, 2]

    def compute(self, seed: DisparityField, full_shape: Tuple[int, int]) -> HomographyGrid:
        """Fit the homography of every full-resolution tile."""
        tile_rows, tile_cols = self.grid_shape(full_shape)
        grid = HomographyGrid.identity(tile_rows, tile_cols, self.tile_size)
        for ty in range(tile_rows):
            for tx in range(tile_cols):
                tile = BBox(tx * self.tile_size, ty * self.tile_size,
                            min((tx + 1) * self.tile_size, full_shape[1]),
                            min((ty + 1) * self.tile_size, full_shape[0]))
                grid.matrices[ty, tx] = self.fit(seed, self.seed_region(tile, seed.scale, seed.shape))
        return grid

    def load_or_compute(self, seed: DisparityField, full_shape: Tuple[int, int],
                        force: bool = False) -> HomographyGrid:
        """
        Reuse the persisted grid when it is readable and fits the image, else compute and persist.

        Args:
            seed: Seed disparity field (scale relative to full resolution)
            full_shape: (rows, cols) of the full-resolution left image
            force: Recompute even when a persisted grid exists

        Returns:
            Homography grid
        """
        if not force:
            try:
                grid = self.store.read_homographies()
                if grid.grid_shape == self.grid_shape(full_shape) and grid.tile_size == self.tile_size:
                    self.logger.info(f"Using local homographies from {self.store.local_homography}")
                    return grid
                self.logger.warning("Persisted local homographies do not match the tile grid, recomputing")
            except CheckpointReadError as e:
                self.logger.debug(f"No reusable local homographies: {e}")

        grid = self.compute(seed, full_shape)
        self.store.write_homographies(grid)
        self.logger.info(f"Wrote {grid.grid_shape[0]}x{grid.grid_shape[1]} local homographies "
                         f"to {self.store.local_homography}")
        return grid
