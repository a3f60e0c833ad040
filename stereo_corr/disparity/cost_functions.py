"""
Matching Costs and Image Prefilters

Window-aggregated matching costs used by the pyramid correlator. Every cost
is "lower is better" and is computed for a whole frame at once, for one
alignment of the right image.
"""

from typing import Tuple

import cv2
import numpy as np

from ..data_models import CostMode, PrefilterMode

# Bit counts of every byte value, used for Hamming distances of census codes
_POPCOUNT_TABLE = np.array([bin(i).count('1') for i in range(256)], dtype=np.uint8)

_EPSILON = 1e-12


def prefilter_radius(mode: PrefilterMode, sigma: float) -> int:
    """Number of pixels a prefilter reads beyond the pixel it writes."""
    if mode == PrefilterMode.NONE:
        return 0
    # Gaussian taps reach 4 sigma, the Laplacian one more pixel
    return int(np.ceil(4.0 * sigma)) + 1


def prefilter_image(image: np.ndarray, mode: PrefilterMode, sigma: float) -> np.ndarray:
    """
    Apply the correlation prefilter.

    Args:
        image: Grayscale image
        mode: NONE, SUBTRACTED_MEAN (image minus its Gaussian blur) or LOG
        sigma: Gaussian sigma in pixels

    Returns:
        Filtered float32 image
    """
    image = image.astype(np.float32, copy=False)
    if mode == PrefilterMode.NONE or sigma <= 0:
        return image.copy()

    blurred = cv2.GaussianBlur(image, (0, 0), sigma)
    if mode == PrefilterMode.SUBTRACTED_MEAN:
        return image - blurred
    return cv2.Laplacian(blurred, cv2.CV_32F)


def shift_image(image: np.ndarray, dx: int, dy: int, fill=0) -> np.ndarray:
    """out[y, x] = image[y + dy, x + dx], `fill` where that falls outside the image."""
    rows, cols = image.shape[:2]
    out = np.full_like(image, fill)
    if abs(dx) >= cols or abs(dy) >= rows:
        return out
    dst_y = slice(max(0, -dy), rows - max(0, dy))
    dst_x = slice(max(0, -dx), cols - max(0, dx))
    src_y = slice(max(0, dy), rows - max(0, -dy))
    src_x = slice(max(0, dx), cols - max(0, -dx))
    out[dst_y, dst_x] = image[src_y, src_x]
    return out


def gather_image(image: np.ndarray, offset_x: np.ndarray, offset_y: np.ndarray, fill=0) -> np.ndarray:
    """out[y, x] = image[y + offset_y[y, x], x + offset_x[y, x]] with per-pixel offsets."""
    rows, cols = image.shape[:2]
    ys, xs = np.indices((rows, cols))
    src_y = ys + offset_y
    src_x = xs + offset_x
    inside = (src_y >= 0) & (src_y < rows) & (src_x >= 0) & (src_x < cols)
    out = image[np.clip(src_y, 0, rows - 1), np.clip(src_x, 0, cols - 1)]
    out[~inside] = fill
    return out


def census_transform(image: np.ndarray, window: Tuple[int, int], ternary_threshold: float = None) -> np.ndarray:
    """
    Census (or ternary census) code of every pixel.

    Binary census sets one bit per neighbour darker than the centre. Ternary
    census sets two bits per neighbour: brighter than centre + threshold, and
    darker than centre - threshold.

    Args:
        image: Float image
        window: (width, height) of the census neighbourhood, at most 5x5
        ternary_threshold: Enables ternary census when not None

    Returns:
        uint64 codes
    """
    half_w, half_h = window[0] // 2, window[1] // 2
    codes = np.zeros(image.shape, dtype=np.uint64)
    bit = 0
    for dy in range(-half_h, half_h + 1):
        for dx in range(-half_w, half_w + 1):
            if dx == 0 and dy == 0:
                continue
            neighbour = shift_image(image, dx, dy, fill=0)
            if ternary_threshold is None:
                codes |= (neighbour < image).astype(np.uint64) << np.uint64(bit)
                bit += 1
            else:
                codes |= (neighbour > image + ternary_threshold).astype(np.uint64) << np.uint64(bit)
                codes |= (neighbour < image - ternary_threshold).astype(np.uint64) << np.uint64(bit + 1)
                bit += 2
    return codes


def hamming_distance(codes_a: np.ndarray, codes_b: np.ndarray) -> np.ndarray:
    """Per-pixel number of differing bits between two uint64 code images."""
    diff = np.ascontiguousarray(codes_a ^ codes_b)
    as_bytes = diff.view(np.uint8).reshape(diff.shape + (8,))
    return _POPCOUNT_TABLE[as_bytes].sum(axis=-1, dtype=np.uint16).astype(np.float32)


class MatchingCost:
    """Window-aggregated matching cost for one cost mode and kernel size."""

    def __init__(self, cost_mode: CostMode, kernel_size: Tuple[int, int],
                 ternary_threshold: float = 0.01):
        self.cost_mode = CostMode.parse(cost_mode)
        self.kernel_size = (int(kernel_size[0]), int(kernel_size[1]))
        self.ternary_threshold = ternary_threshold
        # Census neighbourhoods are capped so codes fit in 64 bits
        self.census_window = (min(self.kernel_size[0], 5), min(self.kernel_size[1], 5))
        # Direct separable taps, so a pixel's cost does not depend on its position in the frame
        self._kernel_x = np.full(self.kernel_size[0], 1.0 / self.kernel_size[0], dtype=np.float32)
        self._kernel_y = np.full(self.kernel_size[1], 1.0 / self.kernel_size[1], dtype=np.float32)

    @property
    def support_radius(self) -> Tuple[int, int]:
        """Pixels read beyond the aggregation centre, per axis."""
        rx, ry = self.kernel_size[0] // 2, self.kernel_size[1] // 2
        if self.cost_mode.requires_sgm:
            rx += self.census_window[0] // 2
            ry += self.census_window[1] // 2
        return rx, ry

    @property
    def kernel_area(self) -> int:
        return self.kernel_size[0] * self.kernel_size[1]

    def _box(self, values: np.ndarray) -> np.ndarray:
        return cv2.sepFilter2D(values.astype(np.float32, copy=False), cv2.CV_32F,
                               self._kernel_x, self._kernel_y, borderType=cv2.BORDER_REFLECT)

    def features(self, image: np.ndarray) -> Tuple[np.ndarray, ...]:
        """
        Per-pixel features of a prefiltered image.

        Alignment of the right image (shift or gather) is applied to every
        returned channel identically, so cost() only sees aligned channels.
        """
        image = image.astype(np.float32, copy=False)
        if self.cost_mode == CostMode.CROSS_CORRELATION:
            mean = self._box(image)
            variance = np.maximum(self._box(image * image) - mean * mean, 0.0)
            return image, mean, variance
        if self.cost_mode == CostMode.CENSUS_TRANSFORM:
            return (census_transform(image, self.census_window),)
        if self.cost_mode == CostMode.TERNARY_CENSUS_TRANSFORM:
            return (census_transform(image, self.census_window, self.ternary_threshold),)
        return (image,)

    def pixel_cost(self, left: Tuple[np.ndarray, ...], right: Tuple[np.ndarray, ...]) -> np.ndarray:
        """Unaggregated per-pixel cost, defined for the difference and census modes."""
        if self.cost_mode == CostMode.ABSOLUTE_DIFFERENCE:
            return np.abs(left[0] - right[0])
        if self.cost_mode == CostMode.SQUARED_DIFFERENCE:
            diff = left[0] - right[0]
            return diff * diff
        if self.cost_mode.requires_sgm:
            return hamming_distance(left[0], right[0])
        raise ValueError(f"No per-pixel cost for {self.cost_mode.name}")

    def cost(self, left: Tuple[np.ndarray, ...], right: Tuple[np.ndarray, ...]) -> np.ndarray:
        """Window-aggregated cost of the aligned feature sets."""
        if self.cost_mode == CostMode.CROSS_CORRELATION:
            l_img, l_mean, l_var = left
            r_img, r_mean, r_var = right
            covariance = self._box(l_img * r_img) - l_mean * r_mean
            ncc = np.clip(covariance / np.sqrt(l_var * r_var + _EPSILON), -1.0, 1.0)
            return (1.0 - ncc).astype(np.float32)
        return self._box(self.pixel_cost(left, right))
