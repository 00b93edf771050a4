"""
Prior distributions for the Bayesian spatial linear model.

Conjugate priors are used where the full conditionals allow it
(multivariate normal for beta, inverse-gamma for sigma2 and tau2) and a
bounded prior (uniform or a discrete grid) for the decay phi, which enters
the covariance non-linearly. This module also derives default priors from
the distance scale of the data, following the same idea as the range and
variance heuristics used for PC priors: the spatial range should be
resolvable by the observed locations and the variance should match the
residual variability of the response.
"""

import numpy as np
import warnings
from dataclasses import dataclass, field
from typing import Dict, Literal, Optional, Tuple, Union
from scipy.special import gammaln

from geo_splm.covariance import CovarianceKernel, Exponential
from geo_splm.distances import DistanceMatrix
from geo_splm.exceptions import DimensionMismatchError, InvalidParameterError
from geo_splm.model import ModelParameters, ObservationSet
from geo_splm.utils import read_only

PriorMode = Literal["auto", "tight", "wide", "custom"]


def _finite_positive(value) -> bool:
    return value is not None and np.isfinite(value) and value > 0


@dataclass(frozen=True)
class InverseGamma:
    """
    Inverse-gamma prior with density proportional to
    x^(-shape - 1) exp(-scale / x).
    """

    shape: float
    scale: float

    def validate(self, name: str) -> None:
        if not _finite_positive(self.shape):
            raise InvalidParameterError(f"{name}: inverse-gamma shape must be > 0, got {self.shape}")
        if not _finite_positive(self.scale):
            raise InvalidParameterError(f"{name}: inverse-gamma scale must be > 0, got {self.scale}")

    def log_pdf(self, x: float) -> float:
        if x <= 0:
            return -np.inf
        return (
            self.shape * np.log(self.scale) - gammaln(self.shape)
            - (self.shape + 1.0) * np.log(x) - self.scale / x
        )

    def conditional(self, n: int, quad_form: float) -> "InverseGamma":
        """Full conditional after n Gaussian terms with sum of squares `quad_form`."""
        return InverseGamma(self.shape + 0.5 * n, self.scale + 0.5 * quad_form)

    def sample(self, rng: np.random.Generator, size=None):
        # 1/x ~ Gamma(shape, rate=scale)
        return self.scale / rng.gamma(self.shape, 1.0, size)

    @property
    def mean(self) -> float:
        return self.scale / (self.shape - 1.0) if self.shape > 1 else np.inf


@dataclass(frozen=True)
class PointMass:
    """Degenerate prior fixing a variance component; PointMass(0.0) removes the nugget."""

    value: float = 0.0

    def validate(self, name: str) -> None:
        if self.value is None or not np.isfinite(self.value) or self.value < 0:
            raise InvalidParameterError(f"{name}: point mass must be >= 0, got {self.value}")

    def log_pdf(self, x: float) -> float:
        return 0.0 if x == self.value else -np.inf

    def sample(self, rng: np.random.Generator, size=None):
        if size is None:
            return self.value
        return np.full(size, self.value, dtype=float)


@dataclass(frozen=True)
class Uniform:
    """Uniform prior on [low, high] with 0 < low < high < inf."""

    low: float
    high: float

    def validate(self, name: str) -> None:
        if not (_finite_positive(self.low) and _finite_positive(self.high)):
            raise InvalidParameterError(
                f"{name}: uniform bounds must be positive and finite, got [{self.low}, {self.high}]"
            )
        if self.low >= self.high:
            raise InvalidParameterError(
                f"{name}: uniform lower bound {self.low} must be below upper bound {self.high}"
            )

    def contains(self, x: float) -> bool:
        return self.low <= x <= self.high

    def log_pdf(self, x: float) -> float:
        if not self.contains(x):
            return -np.inf
        return -np.log(self.high - self.low)

    def sample(self, rng: np.random.Generator, size=None):
        return rng.uniform(self.low, self.high, size)

    @property
    def bounds(self) -> Tuple[float, float]:
        return self.low, self.high


@dataclass(frozen=True)
class DiscreteGrid:
    """Uniform prior over a finite set of positive values."""

    values: Tuple[float, ...]

    def __post_init__(self):
        object.__setattr__(self, 'values', tuple(sorted(float(v) for v in self.values)))

    def validate(self, name: str) -> None:
        if len(self.values) == 0:
            raise InvalidParameterError(f"{name}: grid must contain at least one value")
        if not all(_finite_positive(v) for v in self.values):
            raise InvalidParameterError(f"{name}: grid values must be positive and finite")
        if len(set(self.values)) != len(self.values):
            raise InvalidParameterError(f"{name}: grid values must be unique")

    def contains(self, x: float) -> bool:
        return bool(np.any(np.isclose(self.values, x, rtol=1e-12, atol=0.0)))

    def log_pdf(self, x: float) -> float:
        return -np.log(len(self.values)) if self.contains(x) else -np.inf

    def sample(self, rng: np.random.Generator, size=None):
        return rng.choice(np.asarray(self.values), size=size)

    @property
    def bounds(self) -> Tuple[float, float]:
        return self.values[0], self.values[-1]


@dataclass(frozen=True, eq=False)
class MultivariateNormal:
    """Normal prior on the regression coefficients."""

    mean: np.ndarray
    cov: np.ndarray
    precision: np.ndarray = field(init=False, repr=False)

    def __post_init__(self):
        mean = np.atleast_1d(np.asarray(self.mean, dtype=float))
        cov = np.atleast_2d(np.asarray(self.cov, dtype=float))
        if mean.ndim != 1 or cov.shape != (len(mean), len(mean)):
            raise DimensionMismatchError(
                f"beta prior: mean shape {mean.shape} and covariance shape {cov.shape} disagree"
            )
        if np.any(~np.isfinite(mean)) or np.any(~np.isfinite(cov)):
            raise InvalidParameterError("beta prior contains NaN or infinite values")
        if not np.allclose(cov, cov.T):
            raise InvalidParameterError("beta prior covariance must be symmetric")
        try:
            L = np.linalg.cholesky(cov)
        except np.linalg.LinAlgError as e:
            raise InvalidParameterError("beta prior covariance must be positive definite") from e
        L_inv = np.linalg.inv(L)
        object.__setattr__(self, 'mean', read_only(mean))
        object.__setattr__(self, 'cov', read_only(cov))
        object.__setattr__(self, 'precision', read_only(L_inv.T @ L_inv))

    @classmethod
    def isotropic(cls, p: int, variance: float, mean: float = 0.0) -> "MultivariateNormal":
        """N(mean * 1, variance * I) in p dimensions."""
        if not _finite_positive(variance):
            raise InvalidParameterError(f"beta prior variance must be > 0, got {variance}")
        return cls(np.full(p, mean, dtype=float), variance * np.eye(p))

    @property
    def dimension(self) -> int:
        return len(self.mean)

    def sample(self, rng: np.random.Generator, size=None):
        return rng.multivariate_normal(self.mean, self.cov, size=size)


@dataclass(frozen=True, eq=False)
class PriorSpecification:
    """
    One prior per model parameter.

    Attributes
    ----------
    sigma2 : InverseGamma
        Partial sill
    tau2 : InverseGamma or PointMass
        Nugget; PointMass(0.0) gives the model without measurement error
    phi : Uniform or DiscreteGrid
        Spatial decay
    beta : MultivariateNormal, optional
        Regression coefficients; flat (improper) when None
    nu : Uniform, optional
        Matern smoothness; fixed at the kernel's value when None
    """

    sigma2: InverseGamma
    tau2: Union[InverseGamma, PointMass]
    phi: Union[Uniform, DiscreteGrid]
    beta: Optional[MultivariateNormal] = None
    nu: Optional[Uniform] = None

    @property
    def nugget_fixed(self) -> bool:
        return isinstance(self.tau2, PointMass)

    @property
    def phi_is_grid(self) -> bool:
        return isinstance(self.phi, DiscreteGrid)

    def validate(self, n_covariates: int, kernel: Optional[CovarianceKernel] = None) -> None:
        """
        Check every hyperparameter.

        :param n_covariates: Number of columns of the design matrix
        :param kernel: Covariance family used with these priors
        :raises InvalidParameterError: On improper or inconsistent hyperparameters
        """
        if not isinstance(self.sigma2, InverseGamma):
            raise InvalidParameterError("sigma2 prior must be InverseGamma")
        self.sigma2.validate("sigma2")

        if not isinstance(self.tau2, (InverseGamma, PointMass)):
            raise InvalidParameterError("tau2 prior must be InverseGamma or PointMass")
        self.tau2.validate("tau2")

        if not isinstance(self.phi, (Uniform, DiscreteGrid)):
            raise InvalidParameterError("phi prior must be Uniform or DiscreteGrid")
        self.phi.validate("phi")

        if self.beta is not None:
            if not isinstance(self.beta, MultivariateNormal):
                raise InvalidParameterError("beta prior must be MultivariateNormal or None")
            if self.beta.dimension != n_covariates:
                raise DimensionMismatchError(
                    f"beta prior has dimension {self.beta.dimension}, "
                    f"design matrix has {n_covariates} columns"
                )

        if self.nu is not None:
            if not isinstance(self.nu, Uniform):
                raise InvalidParameterError("nu prior must be Uniform")
            self.nu.validate("nu")
            if kernel is not None and not kernel.has_smoothness:
                raise InvalidParameterError(
                    f"A nu prior requires a Matern kernel, got {kernel!r}"
                )

    def check_starting_values(self, params: ModelParameters, n_covariates: int) -> None:
        """
        Check that starting values lie inside the prior support.

        :raises InvalidParameterError: If a value is outside its support
        :raises DimensionMismatchError: If beta has the wrong length
        """
        params.validate()
        if len(params.beta) != n_covariates:
            raise DimensionMismatchError(
                f"Starting beta has length {len(params.beta)}, expected {n_covariates}"
            )
        if self.nugget_fixed:
            if params.tau2 != self.tau2.value:
                raise InvalidParameterError(
                    f"Starting tau2 ({params.tau2}) must equal the fixed nugget ({self.tau2.value})"
                )
        elif params.tau2 <= 0:
            raise InvalidParameterError(f"Starting tau2 must be positive, got {params.tau2}")

        if not self.phi.contains(params.phi):
            raise InvalidParameterError(
                f"Starting phi ({params.phi}) is outside the prior support {self.phi.bounds}"
            )

        if self.nu is None:
            if params.nu is not None:
                raise InvalidParameterError("Starting nu given but no nu prior specified")
        else:
            if params.nu is None:
                raise InvalidParameterError("A nu prior is specified but no starting nu given")
            if not self.nu.contains(params.nu):
                raise InvalidParameterError(
                    f"Starting nu ({params.nu}) is outside the prior support {self.nu.bounds}"
                )


def _ols_residual_variance(observations: ObservationSet) -> Tuple[np.ndarray, float]:
    X, y = observations.X, observations.y
    beta, *_ = np.linalg.lstsq(X, y, rcond=None)
    resid = y - X @ beta
    dof = max(len(y) - X.shape[1], 1)
    return beta, float(resid @ resid / dof)


def suggest_priors(
    observations: ObservationSet,
    kernel: Optional[CovarianceKernel] = None,
    prior_mode: PriorMode = "auto",
    spatial_fraction: float = 0.5,
    user_range: Optional[float] = None,
    distances: Optional[DistanceMatrix] = None
) -> PriorSpecification:
    """
    Derive priors from the distance scale and residual variance of the data.

    The phi bounds are obtained by inverting the kernel's effective range
    (distance where correlation falls to 0.05) over a range interval that
    depends on the mode:

    - "auto": [min, max] pairwise distance
    - "tight": [max(min, 0.1 * median), median], inverse-gamma shape 3
    - "wide": [0.5 * min, 2 * max], inverse-gamma shape 1.5
    - "custom": [0.5 * user_range, 2 * user_range]

    :param observations: Observation set
    :param kernel: Covariance family (default Exponential)
    :param prior_mode: Prior configuration mode
    :param spatial_fraction: Expected share of residual variance due to the spatial field
    :param user_range: Expected effective range for "custom" mode
    :param distances: Pre-computed DistanceMatrix of the observations
    :returns: PriorSpecification with flat beta prior
    """
    kernel = kernel or Exponential()
    if not 0 < spatial_fraction < 1:
        raise InvalidParameterError(
            f"spatial_fraction must be in (0, 1), got {spatial_fraction}"
        )
    if distances is None:
        distances = DistanceMatrix(observations.coords)
    scale = distances.summary()
    min_d, median_d, max_d = (
        scale['min_distance'], scale['median_distance'], scale['max_distance']
    )
    if max_d <= 0:
        raise InvalidParameterError("All observation locations coincide")

    shape = 2.0
    if prior_mode == "auto":
        range_low, range_high = min_d, max_d
    elif prior_mode == "tight":
        range_low, range_high = max(min_d, 0.1 * median_d), median_d
        shape = 3.0
    elif prior_mode == "wide":
        range_low, range_high = 0.5 * min_d, 2.0 * max_d
        shape = 1.5
    elif prior_mode == "custom":
        if not _finite_positive(user_range):
            raise InvalidParameterError("custom prior mode requires a positive user_range")
        range_low, range_high = 0.5 * user_range, 2.0 * user_range
    else:
        raise InvalidParameterError(f"Unknown prior mode: {prior_mode}")

    if range_low >= range_high:
        range_low = 0.5 * range_high

    # effective_range(phi) = factor / phi for every family
    factor = kernel.effective_range(1.0)
    phi_prior = Uniform(factor / range_high, factor / range_low)

    _, resid_var = _ols_residual_variance(observations)
    resid_var = max(resid_var, 1e-8)
    sigma2_prior = InverseGamma(shape, (shape - 1.0) * spatial_fraction * resid_var)
    tau2_prior = InverseGamma(shape, (shape - 1.0) * (1.0 - spatial_fraction) * resid_var)

    return PriorSpecification(sigma2=sigma2_prior, tau2=tau2_prior, phi=phi_prior)


def validate_priors(
    priors: PriorSpecification,
    distances: DistanceMatrix,
    kernel: Optional[CovarianceKernel] = None,
    verbose: bool = True
) -> Dict[str, bool]:
    """
    Check prior choices against the spatial scale of the data.

    :param priors: Prior specification
    :param distances: DistanceMatrix of the observations
    :param kernel: Covariance family (default Exponential)
    :param verbose: Emit warnings
    :returns: Validation results
    """
    kernel = kernel or Exponential()
    validation = {
        'range_resolvable': True,
        'range_within_extent': True,
        'variance_reasonable': True,
    }
    scale = distances.summary()
    phi_low, phi_high = priors.phi.bounds
    shortest = kernel.effective_range(phi_high)
    longest = kernel.effective_range(phi_low)

    if shortest < scale['min_distance'] / 3:
        validation['range_resolvable'] = False
        if verbose:
            warnings.warn(
                f"Prior allows effective ranges ({shortest:.3g}) far below the smallest "
                f"distance between locations ({scale['min_distance']:.3g})"
            )

    if longest > 10 * scale['max_distance']:
        validation['range_within_extent'] = False
        if verbose:
            warnings.warn(
                f"Prior allows effective ranges ({longest:.3g}) much larger than the "
                f"extent of the data ({scale['max_distance']:.3g})"
            )

    sigma2_scale = priors.sigma2.scale
    if sigma2_scale < 1e-10:
        validation['variance_reasonable'] = False
        if verbose:
            warnings.warn(f"Partial sill prior scale is very small ({sigma2_scale:.3g})")

    return validation


def sample_from_prior(
    priors: PriorSpecification,
    n_samples: int = 1000,
    seed=None
) -> Dict[str, np.ndarray]:
    """
    Draw parameters from the prior for prior predictive checks.

    :param priors: Prior specification
    :param n_samples: Number of samples
    :param seed: Seed or numpy Generator
    :returns: Dict of sample arrays keyed by parameter name
    """
    rng = np.random.default_rng(seed)
    samples = {
        'sigma2': np.asarray(priors.sigma2.sample(rng, n_samples), dtype=float),
        'tau2': np.asarray(priors.tau2.sample(rng, n_samples), dtype=float),
        'phi': np.asarray(priors.phi.sample(rng, n_samples), dtype=float),
    }
    if priors.beta is not None:
        samples['beta'] = priors.beta.sample(rng, n_samples)
    if priors.nu is not None:
        samples['nu'] = priors.nu.sample(rng, n_samples)
    return samples


def default_starting_values(
    observations: ObservationSet,
    priors: PriorSpecification
) -> ModelParameters:
    """
    Starting values inside the prior support.

    beta from ordinary least squares, sigma2 and tau2 each half of the
    residual variance, phi at the geometric centre of its bounds (middle
    grid value for a grid prior).
    """
    beta, resid_var = _ols_residual_variance(observations)
    half = max(0.5 * resid_var, 1e-6)

    if priors.phi_is_grid:
        values = priors.phi.values
        phi = values[len(values) // 2]
    else:
        phi = float(np.sqrt(priors.phi.low * priors.phi.high))

    tau2 = priors.tau2.value if priors.nugget_fixed else half
    nu = None
    if priors.nu is not None:
        nu = float(np.sqrt(priors.nu.low * priors.nu.high))

    return ModelParameters(beta=beta, sigma2=half, tau2=tau2, phi=phi, nu=nu)
