"""
Data containers for the spatial linear model

    y(s) = x(s)' beta + w(s) + eps(s)

ObservationSet and PredictionSet are supplied by the caller and never
modified; ModelParameters is the state vector theta of the sampler.
"""

import numpy as np
from dataclasses import dataclass, replace
from typing import Dict, Optional

from geo_splm.distances import as_coordinate_array
from geo_splm.exceptions import DimensionMismatchError, InvalidParameterError
from geo_splm.utils import read_only


def _as_design_matrix(X, n_rows: int, label: str) -> np.ndarray:
    X = np.asarray(X, dtype=float)
    if X.ndim == 1:
        X = X.reshape(-1, 1)
    if X.ndim != 2:
        raise DimensionMismatchError(f"{label}: expected shape (n, p), got {X.shape}")
    if X.shape[0] != n_rows:
        raise DimensionMismatchError(
            f"{label} has {X.shape[0]} rows but there are {n_rows} locations"
        )
    if np.any(~np.isfinite(X)):
        raise InvalidParameterError(f"{label} contains NaN or infinite values")
    return X


@dataclass(frozen=True, eq=False)
class ObservationSet:
    """
    Observed locations, covariates and responses.

    Attributes
    ----------
    coords : np.ndarray
        Location coordinates (n_obs, d)
    X : np.ndarray
        Covariate (design) matrix (n_obs, p)
    y : np.ndarray
        Response vector (n_obs,)
    """

    coords: np.ndarray
    X: np.ndarray
    y: np.ndarray

    def __post_init__(self):
        coords = as_coordinate_array(self.coords, "coords")
        n = coords.shape[0]

        y = np.asarray(self.y, dtype=float)
        if y.ndim == 2 and y.shape[1] == 1:
            y = y[:, 0]
        if y.ndim != 1:
            raise DimensionMismatchError(f"Expected response shape (n_obs,), got {y.shape}")
        if len(y) != n:
            raise DimensionMismatchError(
                f"Response has {len(y)} values but there are {n} locations"
            )
        if np.any(~np.isfinite(y)):
            raise InvalidParameterError("Response contains NaN or infinite values")

        X = _as_design_matrix(self.X, n, "Covariate matrix")
        if X.shape[1] > n:
            raise DimensionMismatchError(
                f"More covariates ({X.shape[1]}) than observations ({n})"
            )

        object.__setattr__(self, 'coords', read_only(coords))
        object.__setattr__(self, 'X', read_only(X))
        object.__setattr__(self, 'y', read_only(y))

    @property
    def n_obs(self) -> int:
        return len(self.y)

    @property
    def n_covariates(self) -> int:
        return self.X.shape[1]

    @property
    def dimension(self) -> int:
        return self.coords.shape[1]


@dataclass(frozen=True, eq=False)
class PredictionSet:
    """
    New locations for predictive simulation.

    Attributes
    ----------
    coords : np.ndarray
        Prediction coordinates (n_pred, d)
    X : np.ndarray, optional
        Covariates at the prediction locations (n_pred, p); required for
        response-scale predictions only
    """

    coords: np.ndarray
    X: Optional[np.ndarray] = None

    def __post_init__(self):
        coords = as_coordinate_array(self.coords, "prediction coords")
        object.__setattr__(self, 'coords', read_only(coords))
        if self.X is not None:
            X = _as_design_matrix(self.X, coords.shape[0], "Prediction covariate matrix")
            object.__setattr__(self, 'X', read_only(X))

    @property
    def n_pred(self) -> int:
        return self.coords.shape[0]

    @property
    def dimension(self) -> int:
        return self.coords.shape[1]


@dataclass(frozen=True, eq=False)
class ModelParameters:
    """
    Parameter state theta = (beta, sigma2, tau2, phi[, nu]).

    sigma2 is the partial sill, tau2 the nugget and phi the decay of the
    spatial correlation. nu is set only when the Matern smoothness is
    sampled. Instances are immutable; use ``replace`` to change a value.
    """

    beta: np.ndarray
    sigma2: float
    tau2: float
    phi: float
    nu: Optional[float] = None

    def __post_init__(self):
        beta = np.atleast_1d(np.asarray(self.beta, dtype=float))
        if beta.ndim != 1:
            raise DimensionMismatchError(f"beta must be a vector, got shape {beta.shape}")
        object.__setattr__(self, 'beta', read_only(beta))
        object.__setattr__(self, 'sigma2', float(self.sigma2))
        object.__setattr__(self, 'tau2', float(self.tau2))
        object.__setattr__(self, 'phi', float(self.phi))
        if self.nu is not None:
            object.__setattr__(self, 'nu', float(self.nu))

    def replace(self, **changes) -> "ModelParameters":
        """Copy with some fields changed."""
        return replace(self, **changes)

    def validate(self) -> None:
        """
        Check the basic domain of every parameter.

        :raises InvalidParameterError: On non-finite values, sigma2 <= 0, tau2 < 0, phi <= 0 or nu <= 0
        """
        if np.any(~np.isfinite(self.beta)):
            raise InvalidParameterError("beta contains NaN or infinite values")
        if not np.isfinite(self.sigma2) or self.sigma2 <= 0:
            raise InvalidParameterError(f"sigma2 must be positive, got {self.sigma2}")
        if not np.isfinite(self.tau2) or self.tau2 < 0:
            raise InvalidParameterError(f"tau2 must be non-negative, got {self.tau2}")
        if not np.isfinite(self.phi) or self.phi <= 0:
            raise InvalidParameterError(f"phi must be positive, got {self.phi}")
        if self.nu is not None and (not np.isfinite(self.nu) or self.nu <= 0):
            raise InvalidParameterError(f"nu must be positive, got {self.nu}")

    def to_dict(self) -> Dict[str, float]:
        """Flat mapping of parameter names to values (beta[i] per coefficient)."""
        out = {f"beta[{i}]": float(b) for i, b in enumerate(self.beta)}
        out['sigma2'] = self.sigma2
        out['tau2'] = self.tau2
        out['phi'] = self.phi
        if self.nu is not None:
            out['nu'] = self.nu
        return out
