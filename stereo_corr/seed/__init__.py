"""
Seed Module

Low-resolution search estimation and per-tile local homographies.
"""

from .local_homography import LocalHomographyProvider, transform_disparities, transform_vectors
from .low_res_estimator import LowResSearchEstimator

__all__ = [
    'LowResSearchEstimator',
    'LocalHomographyProvider',
    'transform_disparities',
    'transform_vectors',
]
