"""
Seeded Multi-Resolution Stereo Correlation

Dense 2D disparity estimation for rectified stereo pairs too large to hold
in memory.

This package implements:
- Low-resolution search range estimation with a cleaned seed disparity
- Pyramid block matching with NCC, census and difference costs and optional SGM
- Per-tile local homographies to remove perspective distortion
- Tile-parallel full-resolution correlation streamed to disk
"""

__version__ = "1.0.0"
__author__ = "Stereo Correlation Team"

from .data_models import (
    BBox, CostMode, CorrelationResult, DisparityField, HomographyGrid,
    LowResResult, OutlierMode, PrefilterMode, SearchRange, SeedSpread
)
from .disparity import ConsistencyValidator, CorrelatorOptions, OutlierFilter, PyramidCorrelator
from .errors import CheckpointReadError, ConfigurationError, MissingInputError, StereoCorrelationError
from .pipeline import SeededCorrelationView, StereoCorrelationPipeline
from .seed import LocalHomographyProvider, LowResSearchEstimator
from .utils import CheckpointStore, ConfigManager, CorrelationSettings

__all__ = [
    # Data Models
    'BBox', 'CostMode', 'CorrelationResult', 'DisparityField', 'HomographyGrid',
    'LowResResult', 'OutlierMode', 'PrefilterMode', 'SearchRange', 'SeedSpread',
    # Disparity
    'ConsistencyValidator', 'CorrelatorOptions', 'OutlierFilter', 'PyramidCorrelator',
    # Errors
    'CheckpointReadError', 'ConfigurationError', 'MissingInputError', 'StereoCorrelationError',
    # Pipeline
    'SeededCorrelationView', 'StereoCorrelationPipeline',
    # Seed
    'LocalHomographyProvider', 'LowResSearchEstimator',
    # Utilities
    'CheckpointStore', 'ConfigManager', 'CorrelationSettings',
]
