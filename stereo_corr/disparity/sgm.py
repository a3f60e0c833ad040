"""
Semi-Global Matching Cost Aggregation

Aggregates a 2D-label cost volume along four scanline directions. Labels are
laid out on the (dy, dx) disparity grid; neighbouring labels (one step in
either axis, diagonals included) are penalized with P1 and any larger jump
with P2.
"""

import numpy as np


def _label_neighbour_min(costs: np.ndarray) -> np.ndarray:
    """Minimum over the 3x3 label neighbourhood of every label; costs is (n, ny, nx)."""
    padded = np.pad(costs, ((0, 0), (1, 1), (1, 1)), mode='constant', constant_values=np.inf)
    along_x = np.minimum(np.minimum(padded[:, :, :-2], padded[:, :, 1:-1]), padded[:, :, 2:])
    return np.minimum(np.minimum(along_x[:, :-2], along_x[:, 1:-1]), along_x[:, 2:])


def aggregate_path(volume: np.ndarray, axis: int, reverse: bool, p1: float, p2: float) -> np.ndarray:
    """
    Aggregate costs along one scanline direction.

    Args:
        volume: (rows, cols, ny, nx) cost volume
        axis: 0 to walk down columns, 1 to walk along rows
        reverse: Walk from the far edge
        p1: Penalty for a one-step label change
        p2: Penalty for larger label changes

    Returns:
        Path costs with the shape of `volume`
    """
    moved = np.moveaxis(volume, axis, 0)
    if reverse:
        moved = moved[::-1]

    out = np.empty_like(moved)
    previous = moved[0].copy()
    out[0] = previous
    for i in range(1, moved.shape[0]):
        previous_min = previous.min(axis=(1, 2), keepdims=True)
        best = np.minimum(previous, _label_neighbour_min(previous) + p1)
        best = np.minimum(best, previous_min + p2)
        previous = moved[i] + best - previous_min
        out[i] = previous

    if reverse:
        out = out[::-1]
    return np.moveaxis(out, 0, axis)


def semi_global_aggregate(volume: np.ndarray, p1: float, p2: float) -> np.ndarray:
    """Sum of the four horizontal and vertical path aggregations."""
    volume = volume.astype(np.float32, copy=False)
    total = np.zeros_like(volume)
    for axis in (0, 1):
        for reverse in (False, True):
            total += aggregate_path(volume, axis, reverse, p1, p2)
    return total
