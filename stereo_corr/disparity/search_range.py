"""
Global Search Range Estimation

Derives the full-resolution disparity search range from tie points, from a
feature-matching pass over the low-resolution images, or from an existing
low-resolution disparity field.
"""

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

from ..data_models import DisparityField, SearchRange
from ..errors import MissingInputError
from ..utils.raster_io import apply_homography

logger = logging.getLogger(__name__)


def range_from_matches(left_points: np.ndarray,
                       right_points: np.ndarray,
                       left_shape: Tuple[int, int],
                       right_shape: Tuple[int, int],
                       left_align: Optional[np.ndarray] = None,
                       right_align: Optional[np.ndarray] = None) -> Optional[SearchRange]:
    """
    Bounding disparity range of tie points.

    Points are first moved into the aligned image frames. Pairs falling
    outside either image or mapped through a zero homogeneous coordinate
    are skipped.

    Args:
        left_points: (N, 2) left tie points (x, y)
        right_points: (N, 2) right tie points (x, y)
        left_shape: (rows, cols) of the left image
        right_shape: (rows, cols) of the right image
        left_align: Optional 3x3 alignment of the left image
        right_align: Optional 3x3 alignment of the right image

    Returns:
        Outward-rounded range, or None when no tie point survives
    """
    left_points = np.asarray(left_points, dtype=np.float64).reshape(-1, 2)
    right_points = np.asarray(right_points, dtype=np.float64).reshape(-1, 2)
    left_align = np.eye(3) if left_align is None else np.asarray(left_align, dtype=np.float64)
    right_align = np.eye(3) if right_align is None else np.asarray(right_align, dtype=np.float64)

    lx, ly = apply_homography(left_align, left_points[:, 0], left_points[:, 1])
    rx, ry = apply_homography(right_align, right_points[:, 0], right_points[:, 1])

    usable = np.isfinite(lx) & np.isfinite(ly) & np.isfinite(rx) & np.isfinite(ry)
    usable &= (lx >= 0) & (lx < left_shape[1]) & (ly >= 0) & (ly < left_shape[0])
    usable &= (rx >= 0) & (rx < right_shape[1]) & (ry >= 0) & (ry < right_shape[0])

    skipped = int(np.count_nonzero(~usable))
    if skipped:
        logger.debug(f"Skipped {skipped} tie points outside the images")

    vectors = np.stack([rx[usable] - lx[usable], ry[usable] - ly[usable]], axis=1)
    return SearchRange.from_vectors(vectors)


def _to_uint8(image: np.ndarray, mask: np.ndarray) -> np.ndarray:
    return cv2.normalize(image.astype(np.float32), None, 0, 255, cv2.NORM_MINMAX,
                         dtype=cv2.CV_8U, mask=mask)


def approximate_search_range(left_sub: np.ndarray,
                             right_sub: np.ndarray,
                             left_mask_sub: np.ndarray,
                             right_mask_sub: np.ndarray,
                             scale: Tuple[float, float],
                             max_features: int = 5000,
                             ransac_threshold: float = 3.0) -> SearchRange:
    """
    Estimate the full-resolution search range by matching features on the sub images.

    ORB features are matched with a cross-checked Hamming matcher; the
    inliers of a RANSAC homography fit give the disparity bounds.

    Args:
        left_sub: Low-resolution left image
        right_sub: Low-resolution right image
        left_mask_sub: Low-resolution left mask
        right_mask_sub: Low-resolution right mask
        scale: (sx, sy) of the sub images relative to full resolution
        max_features: ORB feature budget per image
        ransac_threshold: RANSAC reprojection threshold in sub pixels

    Returns:
        Full-resolution search range
    """
    left_mask_u8 = (np.asarray(left_mask_sub) != 0).astype(np.uint8)
    right_mask_u8 = (np.asarray(right_mask_sub) != 0).astype(np.uint8)
    orb = cv2.ORB_create(nfeatures=max_features)
    left_kp, left_desc = orb.detectAndCompute(_to_uint8(left_sub, left_mask_u8), left_mask_u8)
    right_kp, right_desc = orb.detectAndCompute(_to_uint8(right_sub, right_mask_u8), right_mask_u8)

    if left_desc is None or right_desc is None:
        raise MissingInputError("Unable to estimate a search range: no features found. "
                                "Set search_range or provide a match file.")

    matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=True)
    matches = matcher.match(left_desc, right_desc)
    if len(matches) < 4:
        raise MissingInputError(f"Unable to estimate a search range: only {len(matches)} feature matches")

    left_pts = np.float32([left_kp[m.queryIdx].pt for m in matches])
    right_pts = np.float32([right_kp[m.trainIdx].pt for m in matches])

    _, inliers = cv2.findHomography(right_pts, left_pts, cv2.RANSAC, ransac_threshold)
    if inliers is None or not np.any(inliers):
        raise MissingInputError("Unable to estimate a search range: homography fit failed")
    inliers = inliers.ravel().astype(bool)

    sub_range = SearchRange.from_vectors(right_pts[inliers] - left_pts[inliers])
    full_range = sub_range.scaled(1.0 / scale[0], 1.0 / scale[1])
    logger.info(f"Estimated search range {full_range} from {int(inliers.sum())} "
                f"of {len(matches)} feature matches")
    return full_range


def read_search_range(seed: DisparityField, scale: Tuple[float, float]) -> Optional[SearchRange]:
    """
    Full-resolution search range implied by a low-resolution seed field.

    Args:
        seed: Low-resolution disparity field
        scale: (sx, sy) of the seed relative to full resolution

    Returns:
        Outward-rounded range, or None when the seed has no valid cell
    """
    sub_range = seed.search_range()
    if sub_range is None:
        return None
    return sub_range.scaled(1.0 / scale[0], 1.0 / scale[1])
