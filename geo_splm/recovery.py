"""
Recovery of the latent spatial random effect from a completed chain.

For every retained draw theta the latent field at the observed locations
is drawn from its Gaussian full conditional

    w | theta, y ~ N(sigma2 R Omega^{-1} r, sigma2 R - sigma2 R Omega^{-1} sigma2 R),
    r = y - X beta,

and, for new locations, from the kriging conditional given that draw

    w0 | w, theta ~ N(C' R^{-1} w, sigma2 (R00 - C' R^{-1} C)).

The chain is only read; every call with the same seed returns the same
draws.
"""

import numpy as np
from dataclasses import dataclass
from typing import Dict, Optional, Sequence

from geo_splm.chain import Chain
from geo_splm.covariance import CorrelationCache, CovarianceMatrix, correlation_matrix
from geo_splm.distances import DistanceMatrix
from geo_splm.exceptions import (
    IncompatibleChainError,
    InvalidParameterError,
    NumericalDivergenceError,
)
from geo_splm.model import ObservationSet, PredictionSet
from geo_splm.utils import cholesky_solve, pseudo_solve, psd_sqrt

DEFAULT_QUANTILES = (0.05, 0.5, 0.95)


def draw_latent_field(
    residual: np.ndarray,
    correlation: np.ndarray,
    covariance: CovarianceMatrix,
    rng: np.random.Generator,
    correlation_sqrt: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Draw w | theta, y by perturbing an unconditional draw (Matheron's rule):

        w = w* + sigma2 R Omega^{-1} (r - w* - eps*),
        w* ~ N(0, sigma2 R), eps* ~ N(0, tau2 I)

    Only the factorization of Omega and a square root of R are needed; no
    conditional covariance is formed.

    :param residual: r = y - X beta
    :param correlation: R(phi, nu) at the observed locations
    :param covariance: Factorized Omega for the same parameters
    :param rng: Random generator
    :param correlation_sqrt: Square root of R (lower Cholesky factor) if already available
    :returns: Latent field draw of length n_obs
    """
    sigma2, tau2 = covariance.sigma2, covariance.tau2
    if tau2 == 0:
        # without a nugget the field is determined by the residual
        return np.array(residual, dtype=float, copy=True)

    if correlation_sqrt is None:
        correlation_sqrt = psd_sqrt(correlation)
    n = len(residual)
    w_star = np.sqrt(sigma2) * (correlation_sqrt @ rng.standard_normal(n))
    eps_star = np.sqrt(tau2) * rng.standard_normal(n)
    return w_star + sigma2 * (correlation @ covariance.solve(residual - w_star - eps_star))


def summarize_draws(draws: np.ndarray, quantiles: Sequence[float] = DEFAULT_QUANTILES) -> np.ndarray:
    """
    Per-location quantiles of a (n_samples, n_locations) draw array.

    :returns: Array of shape (len(quantiles), n_locations)
    """
    q = np.asarray(quantiles, dtype=float)
    if np.any((q < 0) | (q > 1)):
        raise InvalidParameterError(f"Quantiles must lie in [0, 1], got {quantiles}")
    draws = np.asarray(draws, dtype=float)
    if draws.ndim != 2 or draws.shape[0] == 0:
        raise InvalidParameterError(f"Expected non-empty (n_samples, n_locations) draws, got {draws.shape}")
    return np.quantile(draws, q, axis=0)


@dataclass(frozen=True, eq=False)
class PredictiveDraws:
    """
    Predictive draws at new locations.

    Attributes
    ----------
    latent : np.ndarray
        Latent field draws (n_samples, n_pred)
    response : np.ndarray, optional
        Response-scale draws x0' beta + w0 (+ nugget noise); None when the
        prediction set has no covariates
    """

    latent: np.ndarray
    response: Optional[np.ndarray] = None

    def quantiles(self, quantiles: Sequence[float] = DEFAULT_QUANTILES) -> Dict[str, np.ndarray]:
        """Per-location quantile summaries of the latent and response draws."""
        out = {'latent': summarize_draws(self.latent, quantiles)}
        if self.response is not None:
            out['response'] = summarize_draws(self.response, quantiles)
        return out


class LatentFieldRecovery:
    """
    Latent field and predictive draws conditional on each retained theta.

    Parameters
    ----------
    chain : Chain
        Completed sampler output
    observations : ObservationSet
        The observations the chain was fitted to
    jitter : float, optional
        Diagonal jitter added to correlation matrices; defaults to the
        value the chain was sampled with
    """

    def __init__(self, chain: Chain, observations: ObservationSet, jitter: Optional[float] = None):
        if not isinstance(chain, Chain):
            raise IncompatibleChainError(f"Expected a Chain, got {type(chain).__name__}")
        if chain.n_obs != observations.n_obs:
            raise IncompatibleChainError(
                f"Chain was fitted to {chain.n_obs} observations, "
                f"observation set has {observations.n_obs}"
            )
        if chain.n_covariates != observations.n_covariates:
            raise IncompatibleChainError(
                f"Chain has {chain.n_covariates} coefficients, "
                f"design matrix has {observations.n_covariates} columns"
            )
        if len(chain) == 0:
            raise IncompatibleChainError("Chain contains no retained draws")

        self.chain = chain
        self.observations = observations
        self.kernel = chain.kernel
        self.jitter = chain.jitter if jitter is None else float(jitter)
        self.distances = DistanceMatrix(observations.coords)
        self._cache = CorrelationCache(self.kernel, self.distances, self.jitter, maxsize=2)

    def _conditioning(self, index: int):
        params = self.chain.parameters(index)
        residual = self.observations.y - self.observations.X @ params.beta
        covariance = self._cache.covariance(params.sigma2, params.tau2, params.phi, params.nu)
        return params, residual, covariance

    def _correlation_sqrt(self, phi, nu) -> np.ndarray:
        try:
            return self._cache.factor(phi, nu).chol
        except NumericalDivergenceError:
            return psd_sqrt(self._cache.matrix(phi, nu))

    def _kriging_weights(self, phi, nu, cross_corr: np.ndarray) -> np.ndarray:
        """R^{-1} C, or the minimum-norm solution when R is singular."""
        try:
            L = self._cache.factor(phi, nu).chol
        except NumericalDivergenceError:
            return pseudo_solve(self._cache.matrix(phi, nu), cross_corr)
        return cholesky_solve(L, cross_corr)

    def recover(self, seed=None, quantiles: Optional[Sequence[float]] = None) -> np.ndarray:
        """
        One latent field draw per retained sample.

        :param seed: Seed or numpy Generator
        :param quantiles: If given, return per-location quantiles instead of draws
        :returns: (n_samples, n_obs) draws or (len(quantiles), n_obs) summary
        """
        rng = np.random.default_rng(seed)
        W = np.empty((len(self.chain), self.observations.n_obs))
        for s in range(len(self.chain)):
            params, residual, covariance = self._conditioning(s)
            R = self._cache.matrix(params.phi, params.nu)
            sqrt_R = None if params.tau2 == 0 else self._correlation_sqrt(params.phi, params.nu)
            W[s] = draw_latent_field(residual, R, covariance, rng, sqrt_R)

        if quantiles is not None:
            return summarize_draws(W, quantiles)
        return W

    def conditional_mean(self) -> np.ndarray:
        """
        Closed-form E[w | theta, y] = sigma2 R Omega^{-1} (y - X beta) per draw.

        :returns: (n_samples, n_obs) array
        """
        means = np.empty((len(self.chain), self.observations.n_obs))
        for s in range(len(self.chain)):
            params, residual, covariance = self._conditioning(s)
            if params.tau2 == 0:
                means[s] = residual
            else:
                R = self._cache.matrix(params.phi, params.nu)
                means[s] = params.sigma2 * (R @ covariance.solve(residual))
        return means

    def predict(
        self,
        prediction_set: PredictionSet,
        latent: Optional[np.ndarray] = None,
        include_nugget: bool = True,
        seed=None
    ) -> PredictiveDraws:
        """
        Predictive draws at new locations.

        :param prediction_set: New locations (and optionally covariates)
        :param latent: Latent draws at the observed locations from ``recover``;
            drawn here when omitted
        :param include_nugget: Add N(0, tau2) noise to response-scale draws
        :param seed: Seed or numpy Generator
        :returns: PredictiveDraws
        :raises IncompatibleChainError: If dimensions disagree with the chain or observations
        """
        if prediction_set.dimension != self.observations.dimension:
            raise IncompatibleChainError(
                f"Prediction locations are {prediction_set.dimension}-dimensional, "
                f"observations are {self.observations.dimension}-dimensional"
            )
        X_new = prediction_set.X
        if X_new is not None and X_new.shape[1] != self.chain.n_covariates:
            raise IncompatibleChainError(
                f"Prediction covariates have {X_new.shape[1]} columns, "
                f"chain has {self.chain.n_covariates} coefficients"
            )

        rng = np.random.default_rng(seed)
        n_samples = len(self.chain)
        if latent is None:
            latent = self.recover(seed=rng)
        latent = np.asarray(latent, dtype=float)
        if latent.shape != (n_samples, self.observations.n_obs):
            raise IncompatibleChainError(
                f"Latent draws have shape {latent.shape}, "
                f"expected ({n_samples}, {self.observations.n_obs})"
            )

        cross = DistanceMatrix.cross(self.observations.coords, prediction_set.coords)
        new = DistanceMatrix(prediction_set.coords)
        m = prediction_set.n_pred

        W0 = np.empty((n_samples, m))
        Y0 = np.empty((n_samples, m)) if X_new is not None else None
        last_key, kriging = None, None
        for s in range(n_samples):
            params = self.chain.parameters(s)
            key = (params.phi, params.nu)
            if key != last_key:
                C = self.kernel.correlation(cross.values, params.phi, params.nu)
                R00 = correlation_matrix(self.kernel, new, params.phi, params.nu, self.jitter)
                A = self._kriging_weights(params.phi, params.nu, C)
                kriging = (A, psd_sqrt(R00 - C.T @ A))
                last_key = key
            A, cond_sqrt = kriging

            noise = np.sqrt(params.sigma2) * (cond_sqrt @ rng.standard_normal(m))
            W0[s] = A.T @ latent[s] + noise

            if Y0 is not None:
                Y0[s] = X_new @ params.beta + W0[s]
                if include_nugget and params.tau2 > 0:
                    Y0[s] += np.sqrt(params.tau2) * rng.standard_normal(m)

        return PredictiveDraws(latent=W0, response=Y0)
