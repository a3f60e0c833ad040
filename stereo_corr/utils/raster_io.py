"""
Raster Access and Checkpoint Storage

Tile producers give lazy, rectangle-addressed access to disk-backed rasters.
Producers compose by wrapping: a crop, a mask, or a projective warp is
another producer around a source. The checkpoint store names and persists
every intermediate product of a run.
"""

import logging
import math
import os
from pathlib import Path
from typing import List, Tuple

import cv2
import numpy as np

from ..data_models import BBox, DisparityField, HomographyGrid, SeedSpread
from ..errors import CheckpointReadError, MissingInputError


class TileProducer:
    """Pure mapping from a requested rectangle to a materialized array."""

    fill_value = 0

    @property
    def shape(self) -> Tuple[int, int]:
        raise NotImplementedError

    @property
    def bbox(self) -> BBox:
        return BBox.from_shape(self.shape)

    def read(self, bbox: BBox) -> np.ndarray:
        """Read `bbox`; pixels outside the raster are set to the fill value."""
        raise NotImplementedError


class ArrayProducer(TileProducer):
    """Producer over an in-memory array or a read-only memmap."""

    def __init__(self, array: np.ndarray, fill_value: float = 0):
        self.array = array
        self.fill_value = fill_value

    @property
    def shape(self) -> Tuple[int, int]:
        return self.array.shape[:2]

    @property
    def dtype(self):
        return self.array.dtype

    def read(self, bbox: BBox) -> np.ndarray:
        out = np.full(bbox.shape + self.array.shape[2:], self.fill_value, dtype=self.array.dtype)
        inner = bbox.intersect(self.bbox)
        if not inner.empty:
            out[inner.slices_in(bbox)] = self.array[inner.slices_in(self.bbox)]
        return out


class CropProducer(TileProducer):
    """Exposes a window of another producer as a raster of its own."""

    def __init__(self, source: TileProducer, window: BBox):
        self.source = source
        self.window = window.intersect(source.bbox)
        self.fill_value = source.fill_value

    @property
    def shape(self) -> Tuple[int, int]:
        return self.window.shape

    def read(self, bbox: BBox) -> np.ndarray:
        inner = bbox.intersect(self.bbox)
        if inner.empty:
            probe = self.source.read(BBox(0, 0, 1, 1))
            return np.full(bbox.shape + probe.shape[2:], self.fill_value, dtype=probe.dtype)
        data = self.source.read(inner.translate(self.window.min_x, self.window.min_y))
        if inner == bbox:
            return data
        out = np.full(bbox.shape + data.shape[2:], self.fill_value, dtype=data.dtype)
        out[inner.slices_in(bbox)] = data
        return out


class MaskedProducer(TileProducer):
    """Image producer whose pixels are set to the fill value where the mask is invalid."""

    def __init__(self, image: TileProducer, mask: TileProducer, fill_value: float = 0):
        if image.shape != mask.shape:
            raise ValueError("Image and mask must have same dimensions")
        self.image = image
        self.mask = mask
        self.fill_value = fill_value

    @property
    def shape(self) -> Tuple[int, int]:
        return self.image.shape

    def read(self, bbox: BBox) -> np.ndarray:
        data = self.image.read(bbox).copy()
        data[self.mask.read(bbox) == 0] = self.fill_value
        return data


class HomographyProducer(TileProducer):
    """
    Warps a source through a projective transform.

    The produced raster satisfies out(H * p) = source(p); it keeps the shape
    of the source.
    """

    def __init__(self, source: TileProducer, homography: np.ndarray,
                 interpolation: int = cv2.INTER_LINEAR):
        self.source = source
        self.homography = np.asarray(homography, dtype=np.float64)
        self.inverse = np.linalg.inv(self.homography)
        self.interpolation = interpolation
        self.fill_value = source.fill_value

    @property
    def shape(self) -> Tuple[int, int]:
        return self.source.shape

    def read(self, bbox: BBox) -> np.ndarray:
        xs, ys = np.meshgrid(np.arange(bbox.min_x, bbox.max_x, dtype=np.float64),
                             np.arange(bbox.min_y, bbox.max_y, dtype=np.float64))
        src_x, src_y = apply_homography(self.inverse, xs, ys)
        finite = np.isfinite(src_x) & np.isfinite(src_y)
        if not np.any(finite):
            probe = self.source.read(BBox(0, 0, 1, 1))
            return np.full(bbox.shape + probe.shape[2:], self.fill_value, dtype=probe.dtype)

        # Source region needed for interpolation, clamped to a sane size
        src_box = BBox(int(math.floor(src_x[finite].min())) - 1, int(math.floor(src_y[finite].min())) - 1,
                       int(math.ceil(src_x[finite].max())) + 2, int(math.ceil(src_y[finite].max())) + 2)
        src_box = src_box.intersect(self.source.bbox.expand(2))
        if src_box.empty:
            probe = self.source.read(BBox(0, 0, 1, 1))
            return np.full(bbox.shape + probe.shape[2:], self.fill_value, dtype=probe.dtype)
        patch = self.source.read(src_box)

        map_x = np.where(finite, src_x - src_box.min_x, -1).astype(np.float32)
        map_y = np.where(finite, src_y - src_box.min_y, -1).astype(np.float32)
        return cv2.remap(patch, map_x, map_y, self.interpolation,
                         borderMode=cv2.BORDER_CONSTANT, borderValue=self.fill_value)


def apply_homography(homography: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Apply a 3x3 projective transform to coordinate arrays."""
    h = homography
    w = h[2, 0] * xs + h[2, 1] * ys + h[2, 2]
    with np.errstate(divide='ignore', invalid='ignore'):
        tx = (h[0, 0] * xs + h[0, 1] * ys + h[0, 2]) / w
        ty = (h[1, 0] * xs + h[1, 1] * ys + h[1, 2]) / w
    return tx, ty


def open_raster(path) -> np.ndarray:
    """
    Open a raster for reading.

    .npy files are memory-mapped so tiles are only materialized on access;
    other formats are decoded with OpenCV.
    """
    path = Path(path)
    if not path.exists():
        raise CheckpointReadError(f"Raster not found: {path}")
    if path.suffix == '.npy':
        try:
            return np.load(str(path), mmap_mode='r')
        except (OSError, ValueError) as e:
            raise CheckpointReadError(f"Cannot read raster {path}: {e}")
    image = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    if image is None:
        raise CheckpointReadError(f"Cannot decode raster: {path}")
    return image


def write_raster(path, array: np.ndarray) -> None:
    """Write an array as .npy through a temporary file so readers never see a partial file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + '.tmp.npy')
    np.save(str(tmp_path), np.ascontiguousarray(array))
    os.replace(tmp_path, path)


def tile_grid(shape: Tuple[int, int], tile_size: int) -> List[BBox]:
    """Row-major list of tiles covering a raster of `shape`."""
    rows, cols = shape
    return [BBox(x, y, min(x + tile_size, cols), min(y + tile_size, rows))
            for y in range(0, rows, tile_size)
            for x in range(0, cols, tile_size)]


class CheckpointStore:
    """Names, reads and writes the persisted artifacts of a run sharing one output prefix."""

    def __init__(self, out_prefix: str):
        self.out_prefix = str(out_prefix)
        self.logger = logging.getLogger(__name__)

    def path(self, suffix: str) -> Path:
        return Path(self.out_prefix + suffix)

    # Artifact names
    @property
    def left_image(self) -> Path:
        return self.path('-L.npy')

    @property
    def right_image(self) -> Path:
        return self.path('-R.npy')

    @property
    def left_mask(self) -> Path:
        return self.path('-lMask.npy')

    @property
    def right_mask(self) -> Path:
        return self.path('-rMask.npy')

    @property
    def left_sub(self) -> Path:
        return self.path('-L_sub.npy')

    @property
    def right_sub(self) -> Path:
        return self.path('-R_sub.npy')

    @property
    def left_mask_sub(self) -> Path:
        return self.path('-lMask_sub.npy')

    @property
    def right_mask_sub(self) -> Path:
        return self.path('-rMask_sub.npy')

    @property
    def seed_disparity(self) -> Path:
        return self.path('-D_sub.npy')

    @property
    def seed_spread(self) -> Path:
        return self.path('-D_sub_spread.npy')

    @property
    def local_homography(self) -> Path:
        return self.path('-local_hom.txt')

    @property
    def disparity(self) -> Path:
        return self.path('-D.npy')

    @property
    def match_file(self) -> Path:
        return self.path('-L__R.match')

    @property
    def align_left(self) -> Path:
        return self.path('-align-L.txt')

    @property
    def align_right(self) -> Path:
        return self.path('-align-R.txt')

    # Inputs
    def _open_input(self, path: Path) -> np.ndarray:
        try:
            return open_raster(path)
        except CheckpointReadError as e:
            raise MissingInputError(f"Missing mandatory input: {e}")

    def full_res_sources(self) -> Tuple[ArrayProducer, ArrayProducer, ArrayProducer, ArrayProducer]:
        """Lazy producers for the full-resolution left/right images and masks."""
        left = self._open_input(self.left_image)
        right = self._open_input(self.right_image)
        left_mask = self._open_input(self.left_mask)
        right_mask = self._open_input(self.right_mask)
        if left.shape[:2] != left_mask.shape[:2] or right.shape[:2] != right_mask.shape[:2]:
            raise MissingInputError("Image and mask dimensions do not match")
        return (ArrayProducer(left), ArrayProducer(right),
                ArrayProducer(left_mask), ArrayProducer(right_mask))

    def low_res_arrays(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """The downsampled images and masks, loaded in memory."""
        return tuple(np.asarray(self._open_input(p)) for p in
                     (self.left_sub, self.right_sub, self.left_mask_sub, self.right_mask_sub))

    def image_size(self, path: Path) -> Tuple[int, int]:
        """(rows, cols) of a raster without loading it."""
        return tuple(self._open_input(path).shape[:2])

    def downsample_scale(self) -> Tuple[float, float]:
        """(sx, sy) resolution of the sub images relative to the full images."""
        rows, cols = self.image_size(self.left_mask)
        sub_rows, sub_cols = self.image_size(self.left_sub)
        return sub_cols / cols, sub_rows / rows

    def ensure_low_res_inputs(self, max_pixels: int) -> Tuple[float, float]:
        """
        Create the downsampled images and masks when they are not on disk yet.

        Args:
            max_pixels: Upper bound on the pixel count of the sub images

        Returns:
            The downsample scale (sx, sy)
        """
        targets = (self.left_sub, self.right_sub, self.left_mask_sub, self.right_mask_sub)
        if all(p.exists() for p in targets):
            return self.downsample_scale()

        for image_path, mask_path, image_sub, mask_sub in (
                (self.left_image, self.left_mask, self.left_sub, self.left_mask_sub),
                (self.right_image, self.right_mask, self.right_sub, self.right_mask_sub)):
            image = np.asarray(self._open_input(image_path), dtype=np.float32)
            mask = np.asarray(self._open_input(mask_path))
            rows, cols = image.shape[:2]
            scale = min(1.0, math.sqrt(max_pixels / float(rows * cols)))
            size = (max(1, int(round(cols * scale))), max(1, int(round(rows * scale))))

            sub_image = cv2.resize(image, size, interpolation=cv2.INTER_AREA)
            # A sub pixel is valid only when every contributing pixel is
            sub_mask = cv2.resize((mask != 0).astype(np.float32), size, interpolation=cv2.INTER_AREA)
            sub_mask = (sub_mask > 0.999).astype(np.uint8)

            write_raster(image_sub, sub_image)
            write_raster(mask_sub, sub_mask)
            self.logger.info(f"Wrote low-resolution input {image_sub} ({size[0]}x{size[1]})")

        return self.downsample_scale()

    # Seed products
    def read_disparity(self, path: Path, scale: Tuple[float, float] = (1.0, 1.0)) -> DisparityField:
        raster = open_raster(path)
        try:
            return DisparityField.from_raster(np.asarray(raster), scale)
        except ValueError as e:
            raise CheckpointReadError(f"Corrupt disparity file {path}: {e}")

    def write_disparity(self, path: Path, field: DisparityField) -> None:
        write_raster(path, field.to_raster())

    def read_spread(self) -> SeedSpread:
        raster = open_raster(self.seed_spread)
        try:
            return SeedSpread.from_raster(np.asarray(raster))
        except ValueError as e:
            raise CheckpointReadError(f"Corrupt spread file {self.seed_spread}: {e}")

    def write_spread(self, spread: SeedSpread) -> None:
        write_raster(self.seed_spread, spread.radius)

    def read_homographies(self) -> HomographyGrid:
        """Read the local homography grid: header 'rows cols tile_size' then 9 values per line."""
        path = self.local_homography
        try:
            with open(path, 'r') as file:
                header = file.readline().split()
                rows, cols, tile_size = (int(v) for v in header)
                values = np.loadtxt(file, ndmin=2)
        except (OSError, ValueError) as e:
            raise CheckpointReadError(f"Cannot read local homographies {path}: {e}")
        if values.shape != (rows * cols, 9):
            raise CheckpointReadError(f"Local homography file {path} has {values.shape[0]} "
                                      f"entries, expected {rows * cols}")
        return HomographyGrid(values.reshape(rows, cols, 3, 3), tile_size)

    def write_homographies(self, grid: HomographyGrid) -> None:
        rows, cols = grid.grid_shape
        path = self.local_homography
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as file:
            file.write(f"{rows} {cols} {grid.tile_size}\n")
            np.savetxt(file, grid.matrices.reshape(rows * cols, 9), fmt='%.17g')

    # Tie points
    def read_matches(self) -> Tuple[np.ndarray, np.ndarray]:
        """Read tie points: one 'x1 y1 x2 y2' line per left/right match."""
        try:
            values = np.loadtxt(self.match_file, ndmin=2)
        except (OSError, ValueError) as e:
            raise CheckpointReadError(f"Cannot read match file {self.match_file}: {e}")
        if values.size == 0:
            return np.zeros((0, 2)), np.zeros((0, 2))
        if values.shape[1] != 4:
            raise CheckpointReadError(f"Match file {self.match_file} must have 4 columns")
        return values[:, 0:2], values[:, 2:4]

    def read_alignment(self, path: Path) -> np.ndarray:
        """3x3 alignment matrix, identity when the file does not exist."""
        if not path.exists():
            return np.eye(3)
        try:
            matrix = np.loadtxt(path)
        except (OSError, ValueError) as e:
            raise CheckpointReadError(f"Cannot read alignment matrix {path}: {e}")
        if matrix.shape != (3, 3):
            raise CheckpointReadError(f"Alignment matrix {path} is not 3x3")
        return matrix
