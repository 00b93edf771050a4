"""
Gibbs-within-Metropolis sampler for the Bayesian spatial linear model

    y = X beta + w + eps,   w ~ N(0, sigma2 R(phi, nu)),   eps ~ N(0, tau2 I)

One iteration is a sweep over the blocks

1. beta | sigma2, tau2, phi, y with w integrated out (conjugate normal)
2. sigma2, tau2 either by conjugate inverse-gamma draws given a latent
   field draw ("gibbs") or by log-scale random-walk Metropolis against the
   marginal likelihood ("metropolis")
3. phi by log-scale Metropolis-Hastings (uniform prior) or a categorical
   draw over the grid values (discrete prior)
4. nu by log-scale Metropolis, only with a Matern kernel and a nu prior

A covariance matrix that cannot be factorized rejects the sub-step in
which it was proposed; the current state is kept and the event counted.
"""

import copy
import numpy as np
import warnings
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from scipy.linalg import solve_triangular
from typing import Callable, Dict, List, Literal, Optional, Sequence, Tuple

from geo_splm.chain import Chain, SamplerCheckpoint
from geo_splm.covariance import CorrelationCache, CovarianceKernel, CovarianceMatrix, Exponential
from geo_splm.distances import DistanceMatrix
from geo_splm.exceptions import (
    IncompatibleChainError,
    InvalidParameterError,
    NumericalDivergenceError,
)
from geo_splm.model import ModelParameters, ObservationSet
from geo_splm.priors import PriorSpecification
from geo_splm.recovery import draw_latent_field
from geo_splm.utils import cholesky_lower, cholesky_solve, positive_eigen, psd_sqrt

VarianceUpdate = Literal["gibbs", "metropolis"]
SamplerState = Literal["uninitialized", "burn_in", "sampling", "complete", "stopped"]

MIN_STEP = 1e-4
MAX_STEP = 10.0
DRAW_KEYS = ('iterations', 'beta', 'sigma2', 'tau2', 'phi', 'nu', 'latent')


@dataclass(frozen=True)
class TuningConfig:
    """
    Metropolis step sizes (standard deviations on the log scale) and
    burn-in adaptation settings.

    Attributes
    ----------
    variance_update : str
        "gibbs" for conjugate sigma2/tau2 draws, "metropolis" for log-scale
        random walk on the marginal likelihood
    adapt : bool
        Rescale step sizes during burn-in
    adapt_interval : int
        Iterations between adaptations
    target_acceptance : float
        Acceptance rate the adaptation aims for
    """

    phi_step: float = 0.3
    sigma2_step: float = 0.3
    tau2_step: float = 0.3
    nu_step: float = 0.2
    variance_update: VarianceUpdate = "gibbs"
    adapt: bool = True
    adapt_interval: int = 50
    target_acceptance: float = 0.35

    def validate(self) -> None:
        for name in ('phi', 'sigma2', 'tau2', 'nu'):
            step = self.step(name)
            if not np.isfinite(step) or step <= 0:
                raise InvalidParameterError(f"{name}_step must be positive, got {step}")
        if self.variance_update not in ("gibbs", "metropolis"):
            raise InvalidParameterError(f"Unknown variance update: {self.variance_update}")
        if int(self.adapt_interval) < 1:
            raise InvalidParameterError(f"adapt_interval must be >= 1, got {self.adapt_interval}")
        if not 0 < self.target_acceptance < 1:
            raise InvalidParameterError(
                f"target_acceptance must be in (0, 1), got {self.target_acceptance}"
            )

    def step(self, name: str) -> float:
        return getattr(self, f"{name}_step")


class _SpatialModel:
    """Observations, priors and cached correlation matrices for one run."""

    def __init__(self, observations, priors, kernel, jitter):
        self.X = observations.X
        self.y = observations.y
        self.n = observations.n_obs
        self.priors = priors
        self.kernel = kernel
        self.distances = DistanceMatrix(observations.coords)
        maxsize = len(priors.phi.values) + 2 if priors.phi_is_grid else 4
        self.cache = CorrelationCache(kernel, self.distances, jitter, maxsize=maxsize)

        if priors.beta is not None:
            self.beta_precision = priors.beta.precision
            self.beta_shift = priors.beta.precision @ priors.beta.mean
        else:
            self.beta_precision = None
            self.beta_shift = None

    def metropolis_names(self, tuning: TuningConfig) -> List[str]:
        names = []
        if tuning.variance_update == "metropolis":
            names.append('sigma2')
            if not self.priors.nugget_fixed:
                names.append('tau2')
        if not self.priors.phi_is_grid:
            names.append('phi')
        if self.priors.nu is not None:
            names.append('nu')
        return names

    def prior(self, name: str):
        return getattr(self.priors, name)

    def residual(self, beta: np.ndarray) -> np.ndarray:
        return self.y - self.X @ beta

    def covariance(self, params: ModelParameters) -> CovarianceMatrix:
        return self.cache.covariance(params.sigma2, params.tau2, params.phi, params.nu)

    def correlation_sqrt(self, params: ModelParameters) -> np.ndarray:
        try:
            return self.cache.factor(params.phi, params.nu).chol
        except NumericalDivergenceError:
            return psd_sqrt(self.cache.matrix(params.phi, params.nu))

    def latent_quadratic(self, phi, nu, latent) -> Tuple[float, int, float]:
        """
        w' R^{-1} w, the rank of R and log |R| for R = R(phi, nu).

        A singular R (duplicate locations) is handled through its
        eigendecomposition: pseudo-inverse, rank and pseudo-determinant of
        the non-zero part.
        """
        try:
            factor = self.cache.factor(phi, nu)
        except NumericalDivergenceError:
            eigvals, eigvecs = positive_eigen(self.cache.matrix(phi, nu))
            projected = eigvecs.T @ latent
            quad = float(np.sum(projected ** 2 / eigvals))
            return quad, len(eigvals), float(np.sum(np.log(eigvals)))
        z = solve_triangular(factor.chol, latent, lower=True)
        return float(z @ z), self.n, factor.log_det


class _RunState:
    """Mutable bookkeeping of a single run."""

    def __init__(self, params: ModelParameters, rng: np.random.Generator, steps: Dict[str, float]):
        self.params = params
        self.rng = rng
        self.steps = dict(steps)
        self.iteration = 0
        self.sampling = False
        self.accepted = {name: 0 for name in steps}
        self.proposed = {name: 0 for name in steps}
        self.window_accepted = {name: 0 for name in steps}
        self.window_proposed = {name: 0 for name in steps}
        self.n_divergent = 0
        self.n_divergent_iterations = 0
        self.diverged = False
        self.draws = {key: [] for key in DRAW_KEYS}

    @classmethod
    def from_checkpoint(cls, checkpoint: SamplerCheckpoint) -> "_RunState":
        rng_state = copy.deepcopy(checkpoint.rng_state)
        bit_generator = getattr(np.random, rng_state['bit_generator'])()
        bit_generator.state = rng_state
        state = cls(checkpoint.params, np.random.Generator(bit_generator), checkpoint.steps)
        state.iteration = checkpoint.iteration
        counters = copy.deepcopy(checkpoint.counters)
        state.accepted = counters['accepted']
        state.proposed = counters['proposed']
        state.window_accepted = counters['window_accepted']
        state.window_proposed = counters['window_proposed']
        state.n_divergent = counters['n_divergent']
        state.n_divergent_iterations = counters['n_divergent_iterations']
        state.draws = {key: list(values) for key, values in checkpoint.draws.items()}
        return state

    def counters(self) -> Dict:
        return copy.deepcopy({
            'accepted': self.accepted,
            'proposed': self.proposed,
            'window_accepted': self.window_accepted,
            'window_proposed': self.window_proposed,
            'n_divergent': self.n_divergent,
            'n_divergent_iterations': self.n_divergent_iterations,
        })

    def record_proposal(self, name: str, accepted: bool) -> None:
        if self.sampling:
            self.proposed[name] += 1
            self.accepted[name] += int(accepted)
        else:
            self.window_proposed[name] += 1
            self.window_accepted[name] += int(accepted)

    def record_divergence(self) -> None:
        self.n_divergent += 1
        self.diverged = True

    def acceptance_rates(self) -> Dict[str, float]:
        return {
            name: self.accepted[name] / self.proposed[name] if self.proposed[name] else np.nan
            for name in self.proposed
        }


class PosteriorSampler:
    """
    MCMC sampler for the Bayesian spatial linear model.

    Parameters
    ----------
    kernel : CovarianceKernel
        Covariance family (default Exponential)
    seed : int or numpy.random.SeedSequence, optional
        Seed of the sampler's own random generator
    jitter : float
        Value added to the diagonal of every correlation matrix
    store_latent : bool
        Draw the latent field at every retained iteration
    verbose : bool
        Print progress every `report_every` iterations
    report_every : int
        Progress interval

    Examples
    --------
    >>> sampler = PosteriorSampler(kernel=Exponential(), seed=1)
    >>> chain = sampler.run(obs, priors, start, n_iterations=6000, burn_in=1000)
    >>> np.median(chain.phi)
    """

    def __init__(
        self,
        kernel: Optional[CovarianceKernel] = None,
        seed=None,
        jitter: float = 0.0,
        store_latent: bool = False,
        verbose: bool = False,
        report_every: int = 1000
    ):
        kernel = kernel or Exponential()
        if not isinstance(kernel, CovarianceKernel):
            raise InvalidParameterError(f"kernel must be a CovarianceKernel, got {type(kernel).__name__}")
        if not np.isfinite(jitter) or jitter < 0:
            raise InvalidParameterError(f"jitter must be non-negative, got {jitter}")
        if int(report_every) < 1:
            raise InvalidParameterError(f"report_every must be >= 1, got {report_every}")

        self.kernel = kernel
        self.seed = seed
        self.jitter = float(jitter)
        self.store_latent = store_latent
        self.verbose = verbose
        self.report_every = int(report_every)
        self.state: SamplerState = "uninitialized"

    def run(
        self,
        observations: ObservationSet,
        priors: PriorSpecification,
        starting_values: ModelParameters,
        n_iterations: int,
        burn_in: int = 0,
        thin: int = 1,
        tuning: Optional[TuningConfig] = None,
        should_stop: Optional[Callable[[int], bool]] = None
    ) -> Chain:
        """
        Run the chain from `starting_values`.

        :param observations: Observed locations, covariates and responses
        :param priors: Prior specification
        :param starting_values: Initial parameter state inside the prior support
        :param n_iterations: Total number of iterations including burn-in
        :param burn_in: Leading iterations used for adaptation and discarded
        :param thin: Keep every `thin`-th post burn-in iteration
        :param tuning: Step sizes and adaptation settings
        :param should_stop: Called with the number of completed iterations
            between iterations; returning True stops the run
        :returns: Chain, with status "stopped" and a checkpoint if cancelled
        :raises InvalidParameterError: On invalid configuration or degenerate model
        :raises DimensionMismatchError: On shape disagreement
        """
        tuning = tuning or TuningConfig()
        model = self._setup(observations, priors, starting_values, n_iterations, burn_in, thin, tuning)

        rng = np.random.default_rng(self.seed)
        steps = {name: float(tuning.step(name)) for name in model.metropolis_names(tuning)}
        state = _RunState(starting_values, rng, steps)
        return self._iterate(model, state, n_iterations, burn_in, thin, tuning, should_stop)

    def resume(
        self,
        checkpoint: SamplerCheckpoint,
        observations: ObservationSet,
        priors: PriorSpecification,
        should_stop: Optional[Callable[[int], bool]] = None
    ) -> Chain:
        """
        Continue a stopped run.

        The result equals the chain an uninterrupted run with the same
        seed would have produced.

        :param checkpoint: Checkpoint from a stopped Chain
        :param observations: The observations of the stopped run
        :param priors: The priors of the stopped run
        :param should_stop: As in ``run``
        :returns: Chain
        :raises IncompatibleChainError: If the checkpoint does not match the observations
        """
        if not isinstance(checkpoint, SamplerCheckpoint):
            raise IncompatibleChainError(f"Expected a SamplerCheckpoint, got {type(checkpoint).__name__}")
        if checkpoint.n_obs != observations.n_obs:
            raise IncompatibleChainError(
                f"Checkpoint was taken with {checkpoint.n_obs} observations, "
                f"observation set has {observations.n_obs}"
            )
        if len(checkpoint.params.beta) != observations.n_covariates:
            raise IncompatibleChainError(
                f"Checkpoint has {len(checkpoint.params.beta)} coefficients, "
                f"design matrix has {observations.n_covariates} columns"
            )

        self.kernel = checkpoint.kernel
        self.jitter = checkpoint.jitter
        self.store_latent = checkpoint.store_latent
        tuning = checkpoint.tuning
        model = self._setup(
            observations, priors, checkpoint.params,
            checkpoint.n_iterations, checkpoint.burn_in, checkpoint.thin, tuning
        )
        if set(checkpoint.steps) != set(model.metropolis_names(tuning)):
            raise IncompatibleChainError("Checkpoint step sizes do not match the priors")

        state = _RunState.from_checkpoint(checkpoint)
        return self._iterate(
            model, state, checkpoint.n_iterations, checkpoint.burn_in, checkpoint.thin,
            tuning, should_stop
        )

    def _setup(self, observations, priors, starting_values, n_iterations, burn_in, thin, tuning):
        if not isinstance(observations, ObservationSet):
            raise InvalidParameterError(
                f"observations must be an ObservationSet, got {type(observations).__name__}"
            )
        if not isinstance(priors, PriorSpecification):
            raise InvalidParameterError(
                f"priors must be a PriorSpecification, got {type(priors).__name__}"
            )
        if int(n_iterations) < 1:
            raise InvalidParameterError(f"n_iterations must be >= 1, got {n_iterations}")
        if not 0 <= int(burn_in) < int(n_iterations):
            raise InvalidParameterError(
                f"burn_in must satisfy 0 <= burn_in < n_iterations, got {burn_in}"
            )
        if int(thin) < 1:
            raise InvalidParameterError(f"thin must be >= 1, got {thin}")
        tuning.validate()

        p = observations.n_covariates
        priors.validate(p, self.kernel)
        priors.check_starting_values(starting_values, p)

        if np.linalg.matrix_rank(observations.X) < p:
            raise InvalidParameterError(
                "Covariate matrix is rank deficient; remove collinear columns"
            )

        model = _SpatialModel(observations, priors, self.kernel, self.jitter)
        if (priors.nugget_fixed and priors.tau2.value == 0 and self.jitter == 0
                and model.distances.has_duplicates()):
            raise InvalidParameterError(
                "Duplicate locations give a singular covariance without a nugget; "
                "use a tau2 prior, jitter, or remove duplicates"
            )

        try:
            model.covariance(starting_values)
        except NumericalDivergenceError as e:
            raise InvalidParameterError(
                f"Covariance matrix at the starting values is not positive definite: {e}"
            ) from e
        return model

    def _iterate(self, model, state, n_iterations, burn_in, thin, tuning, should_stop) -> Chain:
        if self.verbose:
            print(
                f"Running {n_iterations} iterations ({burn_in} burn-in, thin {thin}) "
                f"with {model.kernel!r} on {model.n} locations"
            )

        while state.iteration < n_iterations:
            i = state.iteration
            state.sampling = i >= burn_in
            self.state = "sampling" if state.sampling else "burn_in"
            state.diverged = False

            covariance = self._sweep(model, state, tuning)
            if state.diverged:
                state.n_divergent_iterations += 1

            if not state.sampling and tuning.adapt and (i + 1) % tuning.adapt_interval == 0:
                self._adapt(state, tuning)
            if state.sampling and (i - burn_in) % thin == 0:
                self._retain(model, state, covariance)

            state.iteration += 1
            if self.verbose and state.iteration % self.report_every == 0:
                self._print_progress(state, n_iterations)

            if (should_stop is not None and state.iteration < n_iterations
                    and should_stop(state.iteration)):
                self.state = "stopped"
                if self.verbose:
                    print(f"Stopped after {state.iteration} iterations")
                checkpoint = self._checkpoint(model, state, n_iterations, burn_in, thin, tuning)
                return self._build_chain(model, state, n_iterations, burn_in, thin, "stopped", checkpoint)

        self.state = "complete"
        if state.n_divergent_iterations == n_iterations:
            warnings.warn(
                f"Every iteration hit a numerical divergence ({state.n_divergent} rejected "
                "sub-steps); the chain did not explore the posterior",
                RuntimeWarning
            )
        return self._build_chain(model, state, n_iterations, burn_in, thin, "complete", None)

    def _sweep(self, model, state, tuning) -> Optional[CovarianceMatrix]:
        """One full update of theta; returns Omega at the new state when known."""
        covariance = self._guarded(state, self._update_beta, model)

        latent = None
        if tuning.variance_update == "gibbs":
            latent = self._guarded(state, self._update_variances_gibbs, model, covariance)
            covariance = None
        else:
            covariance = self._update_variances_metropolis(model, state, covariance)

        if model.priors.phi_is_grid:
            self._guarded(state, self._update_phi_grid, model, latent, covariance)
            covariance = None
        else:
            covariance = self._metropolis_step(model, state, 'phi', covariance)

        if model.priors.nu is not None:
            covariance = self._metropolis_step(model, state, 'nu', covariance)
        return covariance

    @staticmethod
    def _guarded(state, update, model, *args):
        try:
            return update(model, state, *args)
        except NumericalDivergenceError:
            state.record_divergence()
            return None

    def _propose_log_scale(self, rng: np.random.Generator, value: float, step: float) -> float:
        """Random walk on log(value); the proposal is always positive."""
        return float(value * np.exp(step * rng.standard_normal()))

    def _update_beta(self, model, state) -> CovarianceMatrix:
        params = state.params
        covariance = model.covariance(params)
        omega_inv_X = covariance.solve(model.X)
        precision = model.X.T @ omega_inv_X
        rhs = omega_inv_X.T @ model.y
        if model.beta_precision is not None:
            precision = precision + model.beta_precision
            rhs = rhs + model.beta_shift

        L = cholesky_lower(precision, "beta posterior precision")
        mean = cholesky_solve(L, rhs)
        z = state.rng.standard_normal(len(mean))
        beta = mean + solve_triangular(L.T, z, lower=False)
        state.params = params.replace(beta=beta)
        return covariance

    def _update_variances_gibbs(self, model, state, covariance) -> np.ndarray:
        params = state.params
        if covariance is None:
            covariance = model.covariance(params)
        residual = model.residual(params.beta)
        sqrt_R = None if params.tau2 == 0 else model.correlation_sqrt(params)
        latent = draw_latent_field(
            residual, model.cache.matrix(params.phi, params.nu), covariance, state.rng, sqrt_R
        )

        quad, rank, _ = model.latent_quadratic(params.phi, params.nu, latent)
        sigma2 = model.priors.sigma2.conditional(rank, quad).sample(state.rng)
        tau2 = params.tau2
        if not model.priors.nugget_fixed:
            e = residual - latent
            tau2 = model.priors.tau2.conditional(model.n, e @ e).sample(state.rng)

        state.params = params.replace(sigma2=sigma2, tau2=tau2)
        return latent

    def _update_variances_metropolis(self, model, state, covariance) -> Optional[CovarianceMatrix]:
        covariance = self._metropolis_step(model, state, 'sigma2', covariance)
        if not model.priors.nugget_fixed:
            covariance = self._metropolis_step(model, state, 'tau2', covariance)
        return covariance

    def _metropolis_step(self, model, state, name, covariance) -> Optional[CovarianceMatrix]:
        """
        Log-scale random-walk Metropolis-Hastings for one positive parameter
        against the marginal likelihood N(y | X beta, Omega).

        :returns: Omega at the (possibly unchanged) current state, or None
            if it could not be factorized
        """
        params = state.params
        prior = model.prior(name)
        if covariance is None:
            try:
                covariance = model.covariance(params)
            except NumericalDivergenceError:
                state.record_divergence()
                return None

        current = getattr(params, name)
        proposal = self._propose_log_scale(state.rng, current, state.steps[name])
        log_prior_proposal = prior.log_pdf(proposal)
        if not np.isfinite(log_prior_proposal):
            state.record_proposal(name, False)
            return covariance

        candidate = params.replace(**{name: proposal})
        try:
            proposed_covariance = model.covariance(candidate)
        except NumericalDivergenceError:
            state.record_divergence()
            state.record_proposal(name, False)
            return covariance

        residual = model.residual(params.beta)
        # log(value) terms are the Jacobian of the log-scale proposal
        log_ratio = (
            proposed_covariance.log_density(residual) + log_prior_proposal + np.log(proposal)
            - covariance.log_density(residual) - prior.log_pdf(current) - np.log(current)
        )
        if not np.isfinite(log_ratio):
            state.record_proposal(name, False)
            return covariance

        accepted = bool(np.log(state.rng.uniform()) < log_ratio)
        state.record_proposal(name, accepted)
        if accepted:
            state.params = candidate
            return proposed_covariance
        return covariance

    def _update_phi_grid(self, model, state, latent, covariance) -> None:
        params = state.params
        if latent is None:
            if covariance is None:
                covariance = model.covariance(params)
            sqrt_R = None if params.tau2 == 0 else model.correlation_sqrt(params)
            latent = draw_latent_field(
                model.residual(params.beta), model.cache.matrix(params.phi, params.nu),
                covariance, state.rng, sqrt_R
            )

        values = model.priors.phi.values
        log_weights = np.full(len(values), -np.inf)
        for k, phi in enumerate(values):
            try:
                quad, rank, log_det = model.latent_quadratic(phi, params.nu, latent)
            except NumericalDivergenceError:
                continue
            log_weights[k] = (
                -0.5 * log_det - 0.5 * rank * np.log(2.0 * np.pi * params.sigma2)
                - 0.5 * quad / params.sigma2
            )

        if not np.any(np.isfinite(log_weights)):
            raise NumericalDivergenceError("No grid value of phi gives a positive definite correlation")
        weights = np.exp(log_weights - np.max(log_weights))
        k = state.rng.choice(len(values), p=weights / weights.sum())
        state.params = params.replace(phi=values[k])

    def _adapt(self, state, tuning) -> None:
        for name in state.steps:
            proposed = state.window_proposed[name]
            if proposed == 0:
                continue
            rate = state.window_accepted[name] / proposed
            step = state.steps[name] * np.exp(rate - tuning.target_acceptance)
            state.steps[name] = float(np.clip(step, MIN_STEP, MAX_STEP))
            state.window_accepted[name] = 0
            state.window_proposed[name] = 0

    def _retain(self, model, state, covariance) -> None:
        params = state.params
        draws = state.draws
        draws['iterations'].append(state.iteration)
        draws['beta'].append(params.beta.copy())
        draws['sigma2'].append(params.sigma2)
        draws['tau2'].append(params.tau2)
        draws['phi'].append(params.phi)
        if params.nu is not None:
            draws['nu'].append(params.nu)

        if self.store_latent:
            try:
                if covariance is None:
                    covariance = model.covariance(params)
                sqrt_R = None if params.tau2 == 0 else model.correlation_sqrt(params)
                latent = draw_latent_field(
                    model.residual(params.beta), model.cache.matrix(params.phi, params.nu),
                    covariance, state.rng, sqrt_R
                )
            except NumericalDivergenceError:
                state.record_divergence()
                latent = np.full(model.n, np.nan)
            draws['latent'].append(latent)

    def _print_progress(self, state, n_iterations) -> None:
        p = state.params
        phase = "sampling" if state.sampling else "burn-in"
        line = (
            f"Iteration {state.iteration}/{n_iterations} [{phase}] "
            f"phi={p.phi:.4g} sigma2={p.sigma2:.4g} tau2={p.tau2:.4g}"
        )
        if state.sampling:
            rates = state.acceptance_rates()
            if rates:
                line += " acceptance " + ", ".join(f"{k}={v:.2f}" for k, v in rates.items())
        if state.n_divergent:
            line += f" divergent={state.n_divergent}"
        print(line)

    def _checkpoint(self, model, state, n_iterations, burn_in, thin, tuning) -> SamplerCheckpoint:
        return SamplerCheckpoint(
            params=state.params,
            rng_state=copy.deepcopy(state.rng.bit_generator.state),
            iteration=state.iteration,
            n_iterations=n_iterations,
            burn_in=burn_in,
            thin=thin,
            kernel=model.kernel,
            tuning=tuning,
            steps=dict(state.steps),
            counters=state.counters(),
            draws={key: list(values) for key, values in state.draws.items()},
            n_obs=model.n,
            jitter=self.jitter,
            store_latent=self.store_latent,
        )

    def _build_chain(self, model, state, n_iterations, burn_in, thin, status, checkpoint) -> Chain:
        draws = state.draws
        n = len(draws['sigma2'])
        p = model.X.shape[1]
        latent = None
        if self.store_latent:
            latent = np.array(draws['latent'], dtype=float).reshape(n, model.n)
        nu = None
        if model.priors.nu is not None:
            nu = np.array(draws['nu'], dtype=float)

        return Chain(
            beta=np.array(draws['beta'], dtype=float).reshape(n, p),
            sigma2=np.array(draws['sigma2'], dtype=float),
            tau2=np.array(draws['tau2'], dtype=float),
            phi=np.array(draws['phi'], dtype=float),
            iterations=np.array(draws['iterations'], dtype=int),
            kernel=model.kernel,
            n_obs=model.n,
            n_iterations=n_iterations,
            burn_in=burn_in,
            thin=thin,
            nu=nu,
            latent=latent,
            acceptance=state.acceptance_rates(),
            n_proposals=dict(state.proposed),
            n_divergent=state.n_divergent,
            n_divergent_iterations=state.n_divergent_iterations,
            jitter=self.jitter,
            status=status,
            checkpoint=checkpoint,
        )


def _run_single(job) -> Chain:
    (observations, priors, start, n_iterations, burn_in, thin,
     tuning, kernel, seed, jitter, store_latent) = job
    sampler = PosteriorSampler(kernel=kernel, seed=seed, jitter=jitter, store_latent=store_latent)
    return sampler.run(observations, priors, start, n_iterations, burn_in=burn_in, thin=thin, tuning=tuning)


def run_chains(
    observations: ObservationSet,
    priors: PriorSpecification,
    starting_values: Sequence[ModelParameters],
    n_iterations: int,
    burn_in: int = 0,
    thin: int = 1,
    tuning: Optional[TuningConfig] = None,
    kernel: Optional[CovarianceKernel] = None,
    seed=None,
    jitter: float = 0.0,
    store_latent: bool = False,
    n_jobs: int = 1
) -> List[Chain]:
    """
    Run independent chains, one per starting value.

    Chain seeds are spawned from ``numpy.random.SeedSequence(seed)``, so
    the result does not depend on `n_jobs`.

    :param starting_values: One ModelParameters per chain
    :param n_jobs: Number of worker processes; 1 runs the chains in this process
    :returns: List of Chains in the order of `starting_values`
    """
    if len(starting_values) == 0:
        raise InvalidParameterError("At least one starting value is required")
    if int(n_jobs) < 1:
        raise InvalidParameterError(f"n_jobs must be >= 1, got {n_jobs}")

    seeds = np.random.SeedSequence(seed).spawn(len(starting_values))
    jobs = [
        (observations, priors, start, n_iterations, burn_in, thin,
         tuning, kernel, chain_seed, jitter, store_latent)
        for start, chain_seed in zip(starting_values, seeds)
    ]
    if n_jobs == 1:
        return [_run_single(job) for job in jobs]

    with ProcessPoolExecutor(max_workers=int(n_jobs)) as executor:
        return list(executor.map(_run_single, jobs))
