"""
High-level interface to the Bayesian spatial linear model.

This module ties the pieces together:
- Coordinate preprocessing (optional lon/lat projection)
- Prior configuration from the distance scale of the data
- Posterior sampling, latent field recovery and prediction
- Readable prior and posterior reports
"""

import numpy as np
from typing import Dict, List, Optional, Sequence

from geo_splm.chain import Chain
from geo_splm.coords import apply_projection, preprocess_coords
from geo_splm.covariance import CovarianceKernel, Exponential
from geo_splm.diagnostics import ChainDiagnostics, gelman_rubin
from geo_splm.distances import DistanceMatrix
from geo_splm.exceptions import GeoSplmError
from geo_splm.model import ModelParameters, ObservationSet, PredictionSet
from geo_splm.priors import (
    PriorMode,
    PriorSpecification,
    default_starting_values,
    suggest_priors,
    validate_priors,
)
from geo_splm.recovery import LatentFieldRecovery, PredictiveDraws, summarize_draws
from geo_splm.sampler import PosteriorSampler, TuningConfig, run_chains


class SpatialLM:
    """
    Bayesian spatial linear model y = X beta + w + eps with automatic
    prior configuration.

    Examples
    --------
    >>> model = SpatialLM(coords, X, y, kernel=Exponential())
    >>> chain = model.fit(n_iterations=6000, burn_in=1000, seed=1)
    >>> print(model.get_summary_report())
    >>> draws = model.predict(new_coords, X_new)
    """

    def __init__(
        self,
        coords: np.ndarray,
        X: np.ndarray,
        y: np.ndarray,
        kernel: Optional[CovarianceKernel] = None,
        geographic: bool = False,
        prior_mode: PriorMode = "auto",
        spatial_fraction: float = 0.5,
        user_range: Optional[float] = None,
        priors: Optional[PriorSpecification] = None,
        verbose: bool = True
    ) -> None:
        """Preprocess coordinates and configure priors.

        :param coords: Observation coordinates (lon/lat when geographic)
        :param X: Covariate matrix (n_obs, p)
        :param y: Responses (n_obs,)
        :param kernel: Covariance family (default Exponential)
        :param geographic: Project lon/lat coordinates to km
        :param prior_mode: Prior configuration mode when priors are not given
        :param spatial_fraction: Expected share of residual variance due to the spatial field
        :param user_range: Expected effective range for "custom" mode
        :param priors: Explicit priors; overrides the automatic configuration
        :param verbose: Print progress
        """
        self.kernel = kernel or Exponential()
        self.verbose = verbose
        self.prior_mode = "custom" if priors is not None else prior_mode

        self.coords, self.projection_info = preprocess_coords(
            coords, geographic=geographic, verbose=verbose
        )
        self.observations = ObservationSet(self.coords, X, y)
        self.distances = DistanceMatrix(self.coords)

        if priors is None:
            priors = suggest_priors(
                self.observations,
                kernel=self.kernel,
                prior_mode=prior_mode,
                spatial_fraction=spatial_fraction,
                user_range=user_range,
                distances=self.distances
            )
        self.priors = priors
        self.prior_validation = validate_priors(
            priors, self.distances, kernel=self.kernel, verbose=verbose
        )

        self.chain: Optional[Chain] = None
        self.chains: List[Chain] = []
        self._latent = None

    def fit(
        self,
        n_iterations: int = 6000,
        burn_in: int = 1000,
        thin: int = 1,
        starting_values: Optional[ModelParameters] = None,
        tuning: Optional[TuningConfig] = None,
        seed=None,
        jitter: float = 0.0,
        n_chains: int = 1,
        n_jobs: int = 1
    ) -> Chain:
        """Sample the posterior.

        With more than one chain, all chains start from the same values and
        differ only in their spawned seeds; the first chain is kept as
        ``self.chain``.

        :param n_iterations: Total iterations including burn-in
        :param burn_in: Burn-in iterations
        :param thin: Thinning interval
        :param starting_values: Initial state (default from OLS and prior bounds)
        :param tuning: Metropolis settings
        :param seed: Random seed
        :param jitter: Diagonal jitter for correlation matrices
        :param n_chains: Number of independent chains
        :param n_jobs: Worker processes for multiple chains
        :return: The (first) chain
        """
        if starting_values is None:
            starting_values = default_starting_values(self.observations, self.priors)
        self._latent = None

        if n_chains == 1:
            sampler = PosteriorSampler(
                kernel=self.kernel, seed=seed, jitter=jitter, verbose=self.verbose
            )
            self.chains = [sampler.run(
                self.observations, self.priors, starting_values, n_iterations,
                burn_in=burn_in, thin=thin, tuning=tuning
            )]
        else:
            if self.verbose:
                print(f"Running {n_chains} chains on {n_jobs} process(es)")
            self.chains = run_chains(
                self.observations, self.priors, [starting_values] * n_chains, n_iterations,
                burn_in=burn_in, thin=thin, tuning=tuning, kernel=self.kernel,
                seed=seed, jitter=jitter, n_jobs=n_jobs
            )

        self.chain = self.chains[0]
        return self.chain

    def _require_fit(self) -> Chain:
        if self.chain is None:
            raise GeoSplmError("Model has not been fitted; call fit() first")
        return self.chain

    def recover_latent(
        self,
        seed=None,
        quantiles: Optional[Sequence[float]] = None
    ) -> np.ndarray:
        """Latent field draws at the observed locations.

        :param seed: Random seed
        :param quantiles: Return per-location quantiles instead of draws
        :return: (n_samples, n_obs) draws or (len(quantiles), n_obs) summary
        """
        recovery = LatentFieldRecovery(self._require_fit(), self.observations)
        latent = recovery.recover(seed=seed)
        self._latent = latent
        if quantiles is not None:
            return summarize_draws(latent, quantiles)
        return latent

    def predict(
        self,
        coords_new: np.ndarray,
        X_new: Optional[np.ndarray] = None,
        include_nugget: bool = True,
        seed=None
    ) -> PredictiveDraws:
        """Predictive draws at new locations.

        New coordinates are transformed like the observations. The latent
        draws from the last ``recover_latent`` call are reused when present.

        :param coords_new: New coordinates in the input system
        :param X_new: Covariates at the new locations for response-scale draws
        :param include_nugget: Add nugget noise to response-scale draws
        :param seed: Random seed
        :return: PredictiveDraws
        """
        recovery = LatentFieldRecovery(self._require_fit(), self.observations)
        prediction_set = PredictionSet(apply_projection(coords_new, self.projection_info), X_new)
        return recovery.predict(
            prediction_set, latent=self._latent, include_nugget=include_nugget, seed=seed
        )

    def diagnostics(self, verbose: Optional[bool] = None) -> Dict:
        """Convergence checks for the fitted chain(s).

        :param verbose: Emit warnings (defaults to the model's verbosity)
        :return: Validation flags, plus "rhat" when several chains were run
        """
        verbose = self.verbose if verbose is None else verbose
        results = ChainDiagnostics(self._require_fit(), self.observations).check_convergence(
            verbose=verbose
        )
        if len(self.chains) > 1:
            results['rhat'] = gelman_rubin(self.chains)
        return results

    def get_prior_report(self) -> str:
        """Get human-readable prior configuration report.

        :return: Formatted report
        """
        priors = self.priors
        scale = self.distances.summary()
        units = "km" if self.projection_info['coordinate_units'] == 'km' else "units"
        phi_low, phi_high = priors.phi.bounds
        range_short = self.kernel.effective_range(phi_high)
        range_long = self.kernel.effective_range(phi_low)

        if priors.nugget_fixed:
            tau2_line = f"  tau2: fixed at {priors.tau2.value:.4g}"
        else:
            tau2_line = f"  tau2: InverseGamma(shape={priors.tau2.shape:.3g}, scale={priors.tau2.scale:.4g})"
        phi_kind = "grid of %d values" % len(priors.phi.values) if priors.phi_is_grid else "uniform"

        report_parts = [
            "Spatial LM Prior Configuration Report",
            "=====================================",
            "",
            f"Prior Mode: {self.prior_mode}",
            f"Kernel: {self.kernel!r}",
            f"Coordinate system: {self.projection_info['system']}",
            "",
            "Priors:",
            f"  phi: {phi_kind} on [{phi_low:.4g}, {phi_high:.4g}]",
            f"    effective range between {range_short:.3g} and {range_long:.3g} {units}",
            f"  sigma2: InverseGamma(shape={priors.sigma2.shape:.3g}, scale={priors.sigma2.scale:.4g})",
            tau2_line,
            f"  beta: {'flat' if priors.beta is None else 'multivariate normal'}",
        ]
        if priors.nu is not None:
            report_parts.append(f"  nu: uniform on [{priors.nu.low:.3g}, {priors.nu.high:.3g}]")
        report_parts += [
            "",
            "Data:",
            f"  Observation points: {self.observations.n_obs:,}",
            f"  Covariates: {self.observations.n_covariates}",
            f"  Distances: min {scale['min_distance']:.3g}, median {scale['median_distance']:.3g}, "
            f"max {scale['max_distance']:.3g} {units}",
        ]
        failed = [name for name, ok in self.prior_validation.items() if not ok]
        if failed:
            report_parts.append(f"  Prior checks failed: {', '.join(failed)}")
        return "\n".join(report_parts)

    def get_summary_report(self) -> str:
        """Get human-readable posterior summary.

        :return: Formatted report
        """
        report = ChainDiagnostics(self._require_fit(), self.observations).report()
        if len(self.chains) > 1:
            rhat = gelman_rubin(self.chains)
            lines = [f"  {name}: {value:.3f}" for name, value in rhat.items()]
            report += "\n\nSplit R-hat across %d chains:\n" % len(self.chains) + "\n".join(lines)
        return report
