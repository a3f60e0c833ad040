"""
Utility Functions and Helpers

Configuration, logging and raster access for the correlation pipeline.
"""

from .config_manager import ConfigManager, CorrelationSettings
from .logging_config import setup_logging
from .raster_io import (ArrayProducer, CheckpointStore, CropProducer, HomographyProducer,
                        MaskedProducer, TileProducer)

__all__ = [
    'ConfigManager', 'CorrelationSettings', 'setup_logging',
    'TileProducer', 'ArrayProducer', 'CropProducer', 'MaskedProducer', 'HomographyProducer',
    'CheckpointStore',
]
