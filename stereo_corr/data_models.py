"""
Data Models for Seeded Stereo Correlation

Defines all data structures shared by the correlation stages.
"""

import math
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional, Tuple, Union

import numpy as np

from .errors import ConfigurationError

# No-data sentinel written into both channels of invalid disparity cells
NODATA_VALUE = -32768


class CostMode(IntEnum):
    """Matching cost used by the correlation primitive."""
    ABSOLUTE_DIFFERENCE = 0
    SQUARED_DIFFERENCE = 1
    CROSS_CORRELATION = 2
    CENSUS_TRANSFORM = 3
    TERNARY_CENSUS_TRANSFORM = 4

    @classmethod
    def parse(cls, value: Union[int, str, "CostMode"]) -> "CostMode":
        """Parse a cost mode from its integer code or its (case-insensitive) name."""
        if isinstance(value, cls):
            return value
        aliases = {
            'abs-diff': cls.ABSOLUTE_DIFFERENCE,
            'squared-diff': cls.SQUARED_DIFFERENCE,
            'cross-correlation': cls.CROSS_CORRELATION,
            'census': cls.CENSUS_TRANSFORM,
            'ternary-census': cls.TERNARY_CENSUS_TRANSFORM,
        }
        try:
            if isinstance(value, str):
                key = value.strip().lower()
                if key in aliases:
                    return aliases[key]
                if key.isdigit():
                    return cls(int(key))
                return cls[key.upper().replace('-', '_')]
            return cls(int(value))
        except (KeyError, ValueError, TypeError):
            raise ConfigurationError(f"Unknown value {value!r} for cost-mode")

    @property
    def requires_sgm(self) -> bool:
        return self in (CostMode.CENSUS_TRANSFORM, CostMode.TERNARY_CENSUS_TRANSFORM)


class PrefilterMode(IntEnum):
    """Image prefilter applied before matching."""
    NONE = 0
    SUBTRACTED_MEAN = 1
    LOG = 2

    @classmethod
    def parse(cls, value: Union[int, str, "PrefilterMode"]) -> "PrefilterMode":
        if isinstance(value, cls):
            return value
        aliases = {'none': cls.NONE, 'subtracted-mean': cls.SUBTRACTED_MEAN, 'log': cls.LOG}
        try:
            if isinstance(value, str):
                key = value.strip().lower()
                if key in aliases:
                    return aliases[key]
                return cls(int(key))
            return cls(int(value))
        except (ValueError, TypeError):
            raise ConfigurationError(f"Unknown value {value!r} for prefilter-mode")


class OutlierMode(str, Enum):
    """Strategy used to clean the low-resolution seed disparity."""
    AUTO = 'auto'
    THRESHOLD = 'threshold'
    QUANTILE = 'quantile'


@dataclass(frozen=True)
class BBox:
    """Integer pixel rectangle, min inclusive and max exclusive."""
    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @classmethod
    def from_shape(cls, shape: Tuple[int, ...]) -> "BBox":
        return cls(0, 0, int(shape[1]), int(shape[0]))

    @classmethod
    def from_list(cls, values) -> "BBox":
        min_x, min_y, max_x, max_y = (int(v) for v in values)
        return cls(min_x, min_y, max_x, max_y)

    @property
    def width(self) -> int:
        return max(0, self.max_x - self.min_x)

    @property
    def height(self) -> int:
        return max(0, self.max_y - self.min_y)

    @property
    def shape(self) -> Tuple[int, int]:
        """(rows, cols) of a raster covering this box."""
        return self.height, self.width

    @property
    def empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def intersect(self, other: "BBox") -> "BBox":
        min_x = max(self.min_x, other.min_x)
        min_y = max(self.min_y, other.min_y)
        return BBox(min_x, min_y,
                    max(min_x, min(self.max_x, other.max_x)),
                    max(min_y, min(self.max_y, other.max_y)))

    def union(self, other: "BBox") -> "BBox":
        return BBox(min(self.min_x, other.min_x), min(self.min_y, other.min_y),
                    max(self.max_x, other.max_x), max(self.max_y, other.max_y))

    def expand(self, nx: int, ny: Optional[int] = None) -> "BBox":
        ny = nx if ny is None else ny
        return BBox(self.min_x - nx, self.min_y - ny, self.max_x + nx, self.max_y + ny)

    def translate(self, dx: int, dy: int) -> "BBox":
        return BBox(self.min_x + dx, self.min_y + dy, self.max_x + dx, self.max_y + dy)

    def contains_point(self, x: float, y: float) -> bool:
        return self.min_x <= x < self.max_x and self.min_y <= y < self.max_y

    def contains(self, other: "BBox") -> bool:
        return (self.min_x <= other.min_x and self.min_y <= other.min_y and
                other.max_x <= self.max_x and other.max_y <= self.max_y)

    def scaled_outward(self, sx: float, sy: float) -> "BBox":
        """Multiply the corners by (sx, sy), flooring the min and ceiling the max."""
        return BBox(math.floor(self.min_x * sx), math.floor(self.min_y * sy),
                    math.ceil(self.max_x * sx), math.ceil(self.max_y * sy))

    def slices_in(self, frame: "BBox") -> Tuple[slice, slice]:
        """Row and column slices of this box inside an array covering `frame`."""
        return (slice(self.min_y - frame.min_y, self.max_y - frame.min_y),
                slice(self.min_x - frame.min_x, self.max_x - frame.min_x))

    def as_list(self):
        return [self.min_x, self.min_y, self.max_x, self.max_y]


@dataclass(frozen=True)
class SearchRange:
    """Inclusive integer bounding box in disparity space."""
    min_dx: int
    min_dy: int
    max_dx: int
    max_dy: int

    def __post_init__(self):
        for name in ('min_dx', 'min_dy', 'max_dx', 'max_dy'):
            value = getattr(self, name)
            if int(value) != value:
                raise ConfigurationError(f"Search range bound {name}={value} is not an integer")
            object.__setattr__(self, name, int(value))
        if self.min_dx > self.max_dx or self.min_dy > self.max_dy:
            raise ConfigurationError(f"Search range {self} has min greater than max")

    @classmethod
    def enclosing(cls, min_dx: float, min_dy: float, max_dx: float, max_dy: float) -> "SearchRange":
        """Smallest integer range containing the given real bounds (floor min, ceil max)."""
        return cls(math.floor(min_dx), math.floor(min_dy), math.ceil(max_dx), math.ceil(max_dy))

    @classmethod
    def from_list(cls, values) -> "SearchRange":
        if len(values) != 4:
            raise ConfigurationError(f"Search range needs 4 values, got {values!r}")
        return cls.enclosing(*(float(v) for v in values))

    @classmethod
    def from_vectors(cls, vectors: np.ndarray) -> Optional["SearchRange"]:
        """Bounding range of an (N, 2) array of (dx, dy) vectors, or None when empty."""
        vectors = np.asarray(vectors, dtype=np.float64).reshape(-1, 2)
        if len(vectors) == 0:
            return None
        mins = vectors.min(axis=0)
        maxs = vectors.max(axis=0)
        return cls.enclosing(mins[0], mins[1], maxs[0], maxs[1])

    @property
    def width(self) -> int:
        return self.max_dx - self.min_dx

    @property
    def height(self) -> int:
        return self.max_dy - self.min_dy

    @property
    def candidate_count(self) -> int:
        return (self.width + 1) * (self.height + 1)

    def expand(self, nx: int, ny: Optional[int] = None) -> "SearchRange":
        ny = nx if ny is None else ny
        return SearchRange(self.min_dx - nx, self.min_dy - ny, self.max_dx + nx, self.max_dy + ny)

    def grow(self, other: Optional["SearchRange"]) -> "SearchRange":
        if other is None:
            return self
        return SearchRange(min(self.min_dx, other.min_dx), min(self.min_dy, other.min_dy),
                           max(self.max_dx, other.max_dx), max(self.max_dy, other.max_dy))

    def contains(self, other: "SearchRange") -> bool:
        return (self.min_dx <= other.min_dx and self.min_dy <= other.min_dy and
                other.max_dx <= self.max_dx and other.max_dy <= self.max_dy)

    def scaled(self, sx: float, sy: float) -> "SearchRange":
        """Multiply by a positive scale, rounding outward."""
        return SearchRange.enclosing(self.min_dx * sx, self.min_dy * sy,
                                     self.max_dx * sx, self.max_dy * sy)

    def negated(self) -> "SearchRange":
        return SearchRange(-self.max_dx, -self.max_dy, -self.min_dx, -self.min_dy)

    def as_list(self):
        return [self.min_dx, self.min_dy, self.max_dx, self.max_dy]

    def __str__(self) -> str:
        return f"({self.min_dx}, {self.min_dy}) -> ({self.max_dx}, {self.max_dy})"


@dataclass
class DisparityField:
    """Masked 2D integer disparity field and the resolution it was computed at."""
    disparity: np.ndarray  # (rows, cols, 2) int32 holding (dx, dy)
    valid: np.ndarray  # (rows, cols) bool
    scale: Tuple[float, float] = (1.0, 1.0)  # (sx, sy) relative to full resolution

    def __post_init__(self):
        if self.disparity.ndim != 3 or self.disparity.shape[2] != 2:
            raise ValueError(f"Disparity must have shape (rows, cols, 2), got {self.disparity.shape}")
        if self.valid.shape != self.disparity.shape[:2]:
            raise ValueError("Validity mask must match disparity dimensions")

    @classmethod
    def invalid(cls, rows: int, cols: int, scale: Tuple[float, float] = (1.0, 1.0)) -> "DisparityField":
        return cls(np.zeros((rows, cols, 2), dtype=np.int32),
                   np.zeros((rows, cols), dtype=bool), scale)

    @classmethod
    def from_raster(cls, raster: np.ndarray, scale: Tuple[float, float] = (1.0, 1.0)) -> "DisparityField":
        """Decode a persisted (rows, cols, 2) raster carrying the no-data sentinel."""
        raster = np.asarray(raster)
        if raster.ndim != 3 or raster.shape[2] not in (2, 3):
            raise ValueError(f"Not a disparity raster: shape {raster.shape}")
        disparity = raster[..., :2].astype(np.int32)
        valid = ~np.all(disparity == NODATA_VALUE, axis=2)
        if raster.shape[2] == 3:
            valid &= raster[..., 2] != 0
        disparity[~valid] = 0
        return cls(disparity, valid, scale)

    def to_raster(self) -> np.ndarray:
        raster = self.disparity.astype(np.int32)
        raster[~self.valid] = NODATA_VALUE
        return raster

    @property
    def shape(self) -> Tuple[int, int]:
        return self.valid.shape

    @property
    def valid_count(self) -> int:
        return int(np.count_nonzero(self.valid))

    def crop(self, bbox: BBox) -> "DisparityField":
        bbox = bbox.intersect(BBox.from_shape(self.shape))
        rows, cols = bbox.slices_in(BBox.from_shape(self.shape))
        return DisparityField(self.disparity[rows, cols].copy(), self.valid[rows, cols].copy(), self.scale)

    def with_valid(self, valid: np.ndarray) -> "DisparityField":
        """Copy of this field restricted to `valid` (cells can only be removed)."""
        valid = self.valid & valid
        disparity = self.disparity.copy()
        disparity[~valid] = 0
        return DisparityField(disparity, valid, self.scale)

    def search_range(self) -> Optional[SearchRange]:
        """Bounding range of all valid vectors, None when no cell is valid."""
        return SearchRange.from_vectors(self.disparity[self.valid])


@dataclass
class SeedSpread:
    """Per-cell non-negative uncertainty radius attached to a seed field."""
    radius: np.ndarray  # (rows, cols, 2) float32, per axis

    @classmethod
    def from_raster(cls, raster: np.ndarray) -> "SeedSpread":
        raster = np.asarray(raster, dtype=np.float32)
        if raster.ndim == 2:
            raster = np.repeat(raster[..., None], 2, axis=2)
        elif raster.ndim != 3 or raster.shape[2] not in (2, 3):
            raise ValueError(f"Not a spread raster: shape {raster.shape}")
        radius = raster[..., :2].copy()
        # negative and no-data cells carry no extra uncertainty
        radius[~np.isfinite(radius) | (radius < 0)] = 0.0
        return cls(radius)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.radius.shape[:2]

    def crop(self, bbox: BBox) -> "SeedSpread":
        bbox = bbox.intersect(BBox.from_shape(self.shape))
        rows, cols = bbox.slices_in(BBox.from_shape(self.shape))
        return SeedSpread(self.radius[rows, cols].copy())

    def max_radius(self) -> Tuple[float, float]:
        if self.radius.size == 0:
            return 0.0, 0.0
        return float(self.radius[..., 0].max()), float(self.radius[..., 1].max())


@dataclass
class HomographyGrid:
    """One 3x3 projective transform per coarse (full-resolution) correlation tile."""
    matrices: np.ndarray  # (tile_rows, tile_cols, 3, 3)
    tile_size: int

    @classmethod
    def identity(cls, tile_rows: int, tile_cols: int, tile_size: int) -> "HomographyGrid":
        matrices = np.tile(np.eye(3), (tile_rows, tile_cols, 1, 1))
        return cls(matrices, tile_size)

    @property
    def grid_shape(self) -> Tuple[int, int]:
        return self.matrices.shape[:2]

    def lookup(self, bbox: BBox) -> np.ndarray:
        """Transform of the tile whose grid cell contains the corner of `bbox`."""
        tile_x = bbox.min_x // self.tile_size
        tile_y = bbox.min_y // self.tile_size
        rows, cols = self.grid_shape
        if not (0 <= tile_y < rows and 0 <= tile_x < cols):
            raise IndexError(f"Tile ({tile_x}, {tile_y}) outside homography grid {cols}x{rows}")
        return self.matrices[tile_y, tile_x]


@dataclass
class LowResResult:
    """Products of the low-resolution stage."""
    search_range: Optional[SearchRange]  # full-resolution global range
    seed: Optional[DisparityField] = None
    spread: Optional[SeedSpread] = None
    homographies: Optional[HomographyGrid] = None
    recomputed: bool = False


@dataclass
class CorrelationResult:
    """Summary of a complete correlation run."""
    output_path: Optional[str]
    search_range: Optional[SearchRange]
    tiles_processed: int
    processing_time: float
    low_res: Optional[LowResResult] = None
    stages_run: Tuple[str, ...] = field(default_factory=tuple)
