"""
Isotropic spatial covariance families and the dense covariance matrices
built from them.

Every family implements the same contract::

    correlation(d, phi, nu=None) -> rho(d)        rho(0) = 1
    covariance(d, sigma2, phi, nu=None) = sigma2 * rho(d)

with ``phi`` a decay parameter (larger phi, shorter range). Families are
selected by passing a kernel instance, e.g. ``Exponential()`` or
``Matern(nu=1.5)``.
"""

import numpy as np
from collections import OrderedDict
from scipy.linalg import solve_triangular
from scipy.optimize import brentq
from scipy.special import gammaln, kve
from typing import NamedTuple, Optional

from geo_splm.distances import DistanceMatrix
from geo_splm.exceptions import InvalidParameterError, NumericalDivergenceError
from geo_splm.utils import (
    cholesky_lower,
    cholesky_solve,
    log_det_from_cholesky,
    read_only,
)


class CovarianceKernel:
    """
    Base class for isotropic covariance families.

    Subclasses implement ``_correlation(d, phi, nu)`` on validated inputs.
    """

    name = "base"
    has_smoothness = False

    def correlation(self, d, phi: float, nu: Optional[float] = None) -> np.ndarray:
        """
        Correlation at distance(s) d.

        :param d: Distance or array of distances (>= 0)
        :param phi: Decay parameter (> 0)
        :param nu: Smoothness, only meaningful for Matern
        :return: Correlation values with the shape of d
        :raises InvalidParameterError: If phi <= 0 or any distance is negative
        """
        d = np.asarray(d, dtype=float)
        _check_positive("phi", phi)
        if np.any(d < 0):
            raise InvalidParameterError("Distances must be non-negative")
        return self._correlation(d, float(phi), nu)

    def covariance(self, d, sigma2: float, phi: float, nu: Optional[float] = None) -> np.ndarray:
        """
        Covariance sigma2 * rho(d); equals sigma2 at d = 0.

        :raises InvalidParameterError: If sigma2 <= 0, phi <= 0 or any distance is negative
        """
        _check_positive("sigma2", sigma2)
        return sigma2 * self.correlation(d, phi, nu)

    def effective_range(self, phi: float, nu: Optional[float] = None, level: float = 0.05) -> float:
        """
        Distance at which the correlation drops to `level`.

        :param phi: Decay parameter
        :param nu: Smoothness (Matern only)
        :param level: Correlation level in (0, 1)
        :return: Effective range in coordinate units
        """
        if not 0 < level < 1:
            raise InvalidParameterError(f"level must be in (0, 1), got {level}")
        _check_positive("phi", phi)

        def f(d):
            return float(self.correlation(d, phi, nu)) - level

        upper = 1.0 / phi
        while f(upper) > 0:
            upper *= 2.0
        return brentq(f, 0.0, upper)

    def _correlation(self, d: np.ndarray, phi: float, nu: Optional[float]) -> np.ndarray:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Exponential(CovarianceKernel):
    """rho(d) = exp(-phi d); Matern with nu = 1/2."""

    name = "exponential"

    def _correlation(self, d, phi, nu):
        return np.exp(-phi * d)

    def effective_range(self, phi, nu=None, level=0.05):
        _check_positive("phi", phi)
        return -np.log(level) / phi


class Gaussian(CovarianceKernel):
    """rho(d) = exp(-(phi d)^2); infinitely differentiable field."""

    name = "gaussian"

    def _correlation(self, d, phi, nu):
        return np.exp(-(phi * d) ** 2)

    def effective_range(self, phi, nu=None, level=0.05):
        _check_positive("phi", phi)
        return np.sqrt(-np.log(level)) / phi


class Spherical(CovarianceKernel):
    """rho(d) = 1 - 1.5 phi d + 0.5 (phi d)^3 for d < 1/phi, 0 beyond."""

    name = "spherical"

    def _correlation(self, d, phi, nu):
        x = phi * d
        return np.where(x < 1.0, 1.0 - 1.5 * x + 0.5 * x ** 3, 0.0)


class Matern(CovarianceKernel):
    """
    Matern family

        rho(d) = (phi d)^nu K_nu(phi d) / (2^(nu - 1) Gamma(nu))

    The smoothness given at construction is used unless a value is passed
    per call, which is how the sampler evaluates a sampled nu.
    """

    name = "matern"
    has_smoothness = True

    def __init__(self, nu: float = 1.5):
        _check_positive("nu", nu)
        self.nu = float(nu)

    def _correlation(self, d, phi, nu):
        nu = self.nu if nu is None else nu
        _check_positive("nu", nu)
        x = phi * d
        out = np.ones_like(x)
        pos = x > 0
        xp = x[pos]
        # kve(nu, x) = kv(nu, x) * exp(x); work in logs to avoid overflow
        log_rho = (
            nu * np.log(xp)
            + np.log(kve(nu, xp))
            - xp
            - (nu - 1.0) * np.log(2.0)
            - gammaln(nu)
        )
        out[pos] = np.exp(log_rho)
        return np.minimum(out, 1.0)

    def __repr__(self) -> str:
        return f"Matern(nu={self.nu})"


def _check_positive(name: str, value) -> None:
    if value is None or not np.isfinite(value) or value <= 0:
        raise InvalidParameterError(f"{name} must be positive and finite, got {value}")


def correlation_matrix(
    kernel: CovarianceKernel,
    distances: DistanceMatrix,
    phi: float,
    nu: Optional[float] = None,
    jitter: float = 0.0
) -> np.ndarray:
    """
    Correlation matrix R(phi, nu) from pre-computed distances.

    :param kernel: Covariance family
    :param distances: Distance matrix (square or cross)
    :param phi: Decay parameter
    :param nu: Smoothness (Matern only)
    :param jitter: Value added to the diagonal of a square matrix
    :return: Read-only correlation matrix
    """
    R = kernel.correlation(distances.values, phi, nu)
    if distances.is_square and jitter > 0:
        R = R + jitter * np.eye(distances.n_rows)
    return read_only(R)


class CovarianceMatrix:
    """
    Marginal covariance of the observations

        Omega = sigma2 * R(phi, nu) + tau2 * I

    factorized on construction. Instances are never modified; a new one is
    built whenever any parameter changes.

    Attributes
    ----------
    matrix : np.ndarray
        Omega (read-only)
    chol : np.ndarray
        Lower Cholesky factor of Omega
    log_det : float
        log |Omega|
    """

    def __init__(
        self,
        correlation: np.ndarray,
        sigma2: float,
        tau2: float,
        correlation_chol: Optional[np.ndarray] = None
    ):
        _check_positive("sigma2", sigma2)
        if not np.isfinite(tau2) or tau2 < 0:
            raise InvalidParameterError(f"tau2 must be non-negative, got {tau2}")

        n = correlation.shape[0]
        matrix = sigma2 * correlation
        if tau2 > 0:
            matrix = matrix + tau2 * np.eye(n)

        if tau2 == 0 and correlation_chol is not None:
            chol = np.sqrt(sigma2) * correlation_chol
        else:
            chol = cholesky_lower(matrix, "covariance matrix")

        self.matrix = read_only(matrix)
        self.chol = chol
        self.log_det = log_det_from_cholesky(chol)
        self.sigma2 = float(sigma2)
        self.tau2 = float(tau2)

    @classmethod
    def build(
        cls,
        kernel: CovarianceKernel,
        distances: DistanceMatrix,
        sigma2: float,
        tau2: float,
        phi: float,
        nu: Optional[float] = None,
        jitter: float = 0.0
    ) -> "CovarianceMatrix":
        """Build and factorize Omega directly from a square DistanceMatrix."""
        if not distances.is_square:
            raise InvalidParameterError("CovarianceMatrix needs a square DistanceMatrix")
        R = correlation_matrix(kernel, distances, phi, nu, jitter)
        return cls(R, sigma2, tau2)

    @property
    def size(self) -> int:
        return self.matrix.shape[0]

    def solve(self, b: np.ndarray) -> np.ndarray:
        """Omega^{-1} b."""
        return cholesky_solve(self.chol, b)

    def quad_form(self, r: np.ndarray) -> float:
        """r' Omega^{-1} r."""
        z = solve_triangular(self.chol, r, lower=True, check_finite=False)
        return float(z @ z)

    def log_density(self, r: np.ndarray) -> float:
        """Gaussian log density of residual r under N(0, Omega)."""
        return -0.5 * (self.log_det + self.quad_form(r) + self.size * np.log(2.0 * np.pi))


class CorrelationFactor(NamedTuple):
    matrix: np.ndarray
    chol: np.ndarray
    log_det: float


class CorrelationCache:
    """
    Bounded cache of correlation matrices and their Cholesky factors keyed
    by (phi, nu).

    Factorizations are computed lazily; a failed factorization is cached
    too and re-raised on later lookups.
    """

    def __init__(
        self,
        kernel: CovarianceKernel,
        distances: DistanceMatrix,
        jitter: float = 0.0,
        maxsize: int = 4
    ):
        self.kernel = kernel
        self.distances = distances
        self.jitter = jitter
        self.maxsize = max(int(maxsize), 1)
        self._entries = OrderedDict()

    def _entry(self, phi, nu):
        key = (float(phi), None if nu is None else float(nu))
        if key in self._entries:
            self._entries.move_to_end(key)
            return self._entries[key]
        entry = {
            'matrix': correlation_matrix(self.kernel, self.distances, phi, nu, self.jitter),
            'factor': None,
            'error': None,
        }
        self._entries[key] = entry
        while len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)
        return entry

    def matrix(self, phi: float, nu: Optional[float] = None) -> np.ndarray:
        """Correlation matrix R(phi, nu)."""
        return self._entry(phi, nu)['matrix']

    def factor(self, phi: float, nu: Optional[float] = None) -> CorrelationFactor:
        """
        Correlation matrix with its lower Cholesky factor and log determinant.

        :raises NumericalDivergenceError: If R(phi, nu) is not positive definite
        """
        entry = self._entry(phi, nu)
        if entry['error'] is not None:
            raise entry['error']
        if entry['factor'] is None:
            try:
                L = cholesky_lower(entry['matrix'], "correlation matrix")
            except NumericalDivergenceError as e:
                entry['error'] = e
                raise
            entry['factor'] = CorrelationFactor(entry['matrix'], L, log_det_from_cholesky(L))
        return entry['factor']

    def covariance(
        self,
        sigma2: float,
        tau2: float,
        phi: float,
        nu: Optional[float] = None
    ) -> CovarianceMatrix:
        """Omega for the given parameters, reusing the cached R(phi, nu)."""
        if tau2 == 0:
            f = self.factor(phi, nu)
            return CovarianceMatrix(f.matrix, sigma2, tau2, correlation_chol=f.chol)
        return CovarianceMatrix(self.matrix(phi, nu), sigma2, tau2)

    def __len__(self) -> int:
        return len(self._entries)
