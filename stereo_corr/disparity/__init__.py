"""
Disparity Estimation Module

Pyramid block matching with left-right consistency checking, semi-global
aggregation and outlier removal for 2D disparity fields.
"""

from .consistency import ConsistencyValidator
from .outlier_filter import OutlierFilter, filter_blobs
from .pyramid_correlator import CorrelatorOptions, PyramidCorrelator, calc_seconds_per_op

__all__ = [
    'ConsistencyValidator', 'OutlierFilter', 'filter_blobs',
    'CorrelatorOptions', 'PyramidCorrelator', 'calc_seconds_per_op',
]
