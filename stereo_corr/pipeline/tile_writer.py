"""
Tile Writer

Streams disparity tiles into a memory-mapped .npy raster. The file is
written under a temporary name and moved into place when complete.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Tuple

import numpy as np

from ..data_models import BBox, DisparityField


class TileWriter:
    """Thread-safe sink for disparity tiles of one output raster."""

    def __init__(self, path, shape: Tuple[int, int]):
        self.path = Path(path)
        self.shape = tuple(shape)
        self.tmp_path = self.path.with_name(self.path.name + '.tmp.npy')
        self.lock = threading.Lock()
        self.tiles_written = 0
        self.raster = None
        self.logger = logging.getLogger(__name__)

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        rows, cols = self.shape
        self.raster = np.lib.format.open_memmap(str(self.tmp_path), mode='w+',
                                                dtype=np.int32, shape=(rows, cols, 2))

    def write(self, bbox: BBox, field: DisparityField) -> None:
        """Store one tile; invalid cells carry the no-data sentinel."""
        if field.shape != bbox.shape:
            raise ValueError(f"Tile {bbox.as_list()} does not match field shape {field.shape}")
        values = field.to_raster()
        with self.lock:
            self.raster[bbox.slices_in(BBox.from_shape(self.shape))] = values
            self.tiles_written += 1

    def close(self) -> None:
        self.raster.flush()
        self.raster = None
        os.replace(self.tmp_path, self.path)
        self.logger.info(f"Wrote disparity {self.path} ({self.tiles_written} tiles)")

    def abort(self) -> None:
        self.raster = None
        if self.tmp_path.exists():
            self.tmp_path.unlink()

    def __enter__(self) -> "TileWriter":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
        else:
            self.abort()
