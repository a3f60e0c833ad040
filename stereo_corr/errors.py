"""
Exception Types for Stereo Correlation

Fatal configuration and input errors abort a run; checkpoint read errors are
treated by the low-resolution stage as "not yet computed".
"""


class StereoCorrelationError(Exception):
    """Base class for all errors raised by the correlation pipeline."""


class ConfigurationError(StereoCorrelationError, ValueError):
    """Invalid or inconsistent configuration (always fatal)."""


class MissingInputError(StereoCorrelationError, FileNotFoundError):
    """A mandatory input raster or seed product is not available."""


class CheckpointReadError(StereoCorrelationError, IOError):
    """A persisted checkpoint is missing or cannot be parsed."""
