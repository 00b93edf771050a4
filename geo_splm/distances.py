"""
Pairwise Euclidean distances between spatial locations.

Distances are computed once and reused by every covariance evaluation in
the sampler, so the arrays held here are read-only.
"""

import numpy as np
from scipy.spatial.distance import cdist
from typing import Dict

from geo_splm.exceptions import CoordsError, DimensionMismatchError
from geo_splm.utils import read_only


def as_coordinate_array(coords, label: str = "coords") -> np.ndarray:
    """
    Convert coordinates to a float array of shape (n, d).

    :param coords: Coordinates as an array or a sequence of points
    :param label: Name used in error messages
    :return: Array of shape (n, d); a 1-D input is read as n points with d = 1
    :raises DimensionMismatchError: If the points do not share one dimensionality
    :raises CoordsError: If coordinates are not finite
    """
    try:
        arr = np.asarray(coords, dtype=float)
    except ValueError as e:
        raise DimensionMismatchError(
            f"{label}: points have inconsistent dimensionality ({e})"
        ) from e

    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    if arr.ndim != 2:
        raise DimensionMismatchError(f"{label}: expected shape (n, d), got {arr.shape}")
    if arr.shape[0] == 0 or arr.shape[1] == 0:
        raise DimensionMismatchError(f"{label}: empty coordinate array {arr.shape}")
    if np.any(~np.isfinite(arr)):
        raise CoordsError(f"{label}: coordinates contain NaN or infinite values")
    return arr


class DistanceMatrix:
    """
    Euclidean distances between locations.

    With a single coordinate set the matrix is symmetric (n, n) with a zero
    diagonal. With two sets it holds the (n, m) cross distances from the
    first set to the second.

    Attributes
    ----------
    values : np.ndarray
        Read-only distance array
    is_square : bool
        True when built from a single coordinate set
    dimension : int
        Spatial dimension d shared by all points
    """

    def __init__(self, coords, other=None):
        a = as_coordinate_array(coords, "coords")
        if other is None:
            values = cdist(a, a)
            # cdist is not exactly symmetric in floating point
            values = 0.5 * (values + values.T)
            np.fill_diagonal(values, 0.0)
        else:
            b = as_coordinate_array(other, "other")
            if a.shape[1] != b.shape[1]:
                raise DimensionMismatchError(
                    f"Coordinate dimensionality differs: {a.shape[1]} vs {b.shape[1]}"
                )
            values = cdist(a, b)

        self.values = read_only(values)
        self.is_square = other is None
        self.dimension = a.shape[1]

    @classmethod
    def cross(cls, coords, other) -> "DistanceMatrix":
        """Cross distances from `coords` (rows) to `other` (columns)."""
        return cls(coords, other)

    @property
    def shape(self):
        return self.values.shape

    @property
    def n_rows(self) -> int:
        return self.values.shape[0]

    @property
    def n_cols(self) -> int:
        return self.values.shape[1]

    def _pairwise(self) -> np.ndarray:
        if self.is_square:
            return self.values[np.triu_indices(self.n_rows, k=1)]
        return self.values.ravel()

    def summary(self) -> Dict[str, float]:
        """
        Scale summary of the pairwise distances.

        :return: Dict with min_distance (smallest positive), median_distance, max_distance
        """
        flat = self._pairwise()
        positive = flat[flat > 0]
        if len(positive) == 0:
            return {'min_distance': 0.0, 'median_distance': 0.0, 'max_distance': 0.0}
        return {
            'min_distance': float(np.min(positive)),
            'median_distance': float(np.median(positive)),
            'max_distance': float(np.max(positive)),
        }

    def has_duplicates(self, tolerance: float = 1e-9) -> bool:
        """True when two distinct locations lie within `tolerance` of each other."""
        flat = self._pairwise()
        return bool(np.any(flat <= tolerance))

    def __repr__(self) -> str:
        kind = "square" if self.is_square else "cross"
        return f"DistanceMatrix({kind}, shape={self.shape}, d={self.dimension})"
