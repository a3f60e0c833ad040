"""
Pipeline Module

Full-resolution seeded correlation and the two-stage orchestration.
"""

from .orchestrator import StereoCorrelationPipeline
from .seeded_view import SeededCorrelationView
from .tile_writer import TileWriter

__all__ = [
    'StereoCorrelationPipeline',
    'SeededCorrelationView',
    'TileWriter',
]
