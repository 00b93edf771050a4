"""
Unit tests for geo_splm.sampler module.

Tests the Gibbs-within-Metropolis sampler: reproducibility, retention
bookkeeping, step size behaviour, cancellation and resume, divergence
handling, setup validation and recovery of known parameters.
"""

import warnings

import pytest
import numpy as np

from geo_splm.covariance import Exponential, Matern
from geo_splm.exceptions import IncompatibleChainError, InvalidParameterError
from geo_splm.model import ModelParameters, ObservationSet
from geo_splm.priors import (
    DiscreteGrid,
    InverseGamma,
    MultivariateNormal,
    PointMass,
    PriorSpecification,
    Uniform,
    default_starting_values,
)
from geo_splm.sampler import PosteriorSampler, TuningConfig, run_chains


class BrokenExponential(Exponential):
    """Exponential kernel returning NaN for large decay."""

    def _correlation(self, d, phi, nu):
        if phi > 5:
            return np.full_like(d, np.nan)
        return super()._correlation(d, phi, nu)


@pytest.fixture
def start(small_observations, default_priors):
    return default_starting_values(small_observations, default_priors)


class TestTuningConfig:
    """Test tuning validation."""

    def test_defaults_valid(self):
        TuningConfig().validate()

    def test_invalid_step(self):
        with pytest.raises(InvalidParameterError, match="phi_step"):
            TuningConfig(phi_step=0.0).validate()

    def test_invalid_variance_update(self):
        with pytest.raises(InvalidParameterError, match="variance update"):
            TuningConfig(variance_update="slice").validate()

    def test_invalid_target(self):
        with pytest.raises(InvalidParameterError, match="target_acceptance"):
            TuningConfig(target_acceptance=1.5).validate()


class TestSamplerRun:
    """Test basic runs and bookkeeping."""

    def test_state_transitions(self, small_observations, default_priors, start):
        sampler = PosteriorSampler(seed=1)
        assert sampler.state == "uninitialized"
        chain = sampler.run(small_observations, default_priors, start, n_iterations=20)
        assert sampler.state == "complete"
        assert chain.status == "complete"
        assert chain.is_complete

    def test_retention_and_thinning(self, small_observations, default_priors, start):
        chain = PosteriorSampler(seed=1).run(
            small_observations, default_priors, start, n_iterations=100, burn_in=20, thin=3
        )
        assert len(chain) == 27
        assert chain.iterations[0] == 20
        assert np.all(np.diff(chain.iterations) == 3)
        assert chain.beta.shape == (27, 2)
        assert chain.n_iterations == 100 and chain.burn_in == 20 and chain.thin == 3

    def test_deterministic_given_seed(self, small_observations, default_priors, start):
        a = PosteriorSampler(seed=42).run(small_observations, default_priors, start, n_iterations=60)
        b = PosteriorSampler(seed=42).run(small_observations, default_priors, start, n_iterations=60)
        np.testing.assert_array_equal(a.beta, b.beta)
        np.testing.assert_array_equal(a.sigma2, b.sigma2)
        np.testing.assert_array_equal(a.tau2, b.tau2)
        np.testing.assert_array_equal(a.phi, b.phi)
        assert a.acceptance == b.acceptance

    def test_different_seeds_differ(self, small_observations, default_priors, start):
        a = PosteriorSampler(seed=1).run(small_observations, default_priors, start, n_iterations=30)
        b = PosteriorSampler(seed=2).run(small_observations, default_priors, start, n_iterations=30)
        assert not np.array_equal(a.sigma2, b.sigma2)

    def test_draws_inside_support(self, small_observations, default_priors, start):
        chain = PosteriorSampler(seed=3).run(
            small_observations, default_priors, start, n_iterations=150, burn_in=50
        )
        assert np.all(chain.sigma2 > 0)
        assert np.all(chain.tau2 > 0)
        assert np.all((chain.phi >= 0.1) & (chain.phi <= 10.0))
        assert 'phi' in chain.acceptance
        assert chain.n_proposals['phi'] == 100

    def test_chain_is_read_only(self, small_observations, default_priors, start):
        chain = PosteriorSampler(seed=3).run(small_observations, default_priors, start, n_iterations=10)
        with pytest.raises(ValueError):
            chain.phi[0] = 1.0

    def test_informative_beta_prior(self, small_observations, start):
        """A tight beta prior pins the coefficients to its mean."""
        priors = PriorSpecification(
            sigma2=InverseGamma(2.0, 1.0),
            tau2=InverseGamma(2.0, 1.0),
            phi=Uniform(0.1, 10.0),
            beta=MultivariateNormal([5.0, -5.0], 1e-8 * np.eye(2)),
        )
        chain = PosteriorSampler(seed=4).run(small_observations, priors, start, n_iterations=30)
        np.testing.assert_allclose(chain.beta.mean(axis=0), [5.0, -5.0], atol=1e-2)

    def test_verbose_progress(self, small_observations, default_priors, start, capsys):
        PosteriorSampler(seed=1, verbose=True, report_every=10).run(
            small_observations, default_priors, start, n_iterations=20, burn_in=5
        )
        out = capsys.readouterr().out
        assert "Iteration 10/20" in out
        assert "Iteration 20/20 [sampling]" in out

    def test_store_latent(self, small_observations, default_priors, start):
        chain = PosteriorSampler(seed=5, store_latent=True).run(
            small_observations, default_priors, start, n_iterations=30, burn_in=10
        )
        assert chain.latent.shape == (20, small_observations.n_obs)
        assert np.all(np.isfinite(chain.latent))


class TestStepSizes:
    """Test Metropolis behaviour as a function of step size."""

    def _acceptance(self, observations, priors, start, step):
        tuning = TuningConfig(phi_step=step, adapt=False)
        chain = PosteriorSampler(seed=8).run(
            observations, priors, start, n_iterations=400, tuning=tuning
        )
        return chain.acceptance['phi']

    def test_acceptance_decreases_with_step(self, small_observations, default_priors, start):
        small = self._acceptance(small_observations, default_priors, start, 0.01)
        large = self._acceptance(small_observations, default_priors, start, 20.0)
        assert small > 0.9
        assert large < 0.1

    def test_adaptation_moves_step(self, small_observations, default_priors, start):
        """A far too large initial step is shrunk during burn-in."""
        tuning = TuningConfig(phi_step=8.0, adapt=True, adapt_interval=20)
        chain = PosteriorSampler(seed=9).run(
            small_observations, default_priors, start, n_iterations=400, burn_in=200,
            tuning=tuning, should_stop=lambda completed: completed == 200
        )
        assert chain.checkpoint.steps['phi'] < 8.0


class TestCheckpointResume:
    """Test cooperative cancellation and resume."""

    def test_resume_matches_uninterrupted_run(self, small_observations, default_priors, start):
        tuning = TuningConfig(adapt_interval=25)
        full = PosteriorSampler(seed=21, store_latent=True).run(
            small_observations, default_priors, start, n_iterations=150, burn_in=50, tuning=tuning
        )

        sampler = PosteriorSampler(seed=21, store_latent=True)
        stopped = sampler.run(
            small_observations, default_priors, start, n_iterations=150, burn_in=50,
            tuning=tuning, should_stop=lambda completed: completed == 57
        )
        assert sampler.state == "stopped"
        assert stopped.status == "stopped"
        assert not stopped.is_complete
        assert len(stopped) == 7
        assert stopped.checkpoint.iteration == 57

        resumed = PosteriorSampler().resume(stopped.checkpoint, small_observations, default_priors)
        assert resumed.status == "complete"
        np.testing.assert_array_equal(resumed.iterations, full.iterations)
        np.testing.assert_array_equal(resumed.beta, full.beta)
        np.testing.assert_array_equal(resumed.sigma2, full.sigma2)
        np.testing.assert_array_equal(resumed.tau2, full.tau2)
        np.testing.assert_array_equal(resumed.phi, full.phi)
        np.testing.assert_array_equal(resumed.latent, full.latent)
        assert resumed.acceptance == full.acceptance
        assert resumed.n_divergent == full.n_divergent

    def test_stop_during_burn_in(self, small_observations, default_priors, start):
        full = PosteriorSampler(seed=22).run(
            small_observations, default_priors, start, n_iterations=80, burn_in=40
        )
        stopped = PosteriorSampler(seed=22).run(
            small_observations, default_priors, start, n_iterations=80, burn_in=40,
            should_stop=lambda completed: completed == 10
        )
        assert len(stopped) == 0
        assert stopped.beta.shape == (0, 2)
        resumed = PosteriorSampler().resume(stopped.checkpoint, small_observations, default_priors)
        np.testing.assert_array_equal(resumed.phi, full.phi)

    def test_checkpoint_is_not_affected_by_resume(self, small_observations, default_priors, start):
        stopped = PosteriorSampler(seed=23).run(
            small_observations, default_priors, start, n_iterations=60,
            should_stop=lambda completed: completed == 30
        )
        first = PosteriorSampler().resume(stopped.checkpoint, small_observations, default_priors)
        second = PosteriorSampler().resume(stopped.checkpoint, small_observations, default_priors)
        np.testing.assert_array_equal(first.phi, second.phi)
        np.testing.assert_array_equal(first.sigma2, second.sigma2)

    def test_resume_with_other_data(self, small_observations, default_priors, start, simulate):
        stopped = PosteriorSampler(seed=24).run(
            small_observations, default_priors, start, n_iterations=40,
            should_stop=lambda completed: completed == 5
        )
        other, _ = simulate(n=20, seed=1)
        with pytest.raises(IncompatibleChainError, match="observations"):
            PosteriorSampler().resume(stopped.checkpoint, other, default_priors)


class TestDivergence:
    """Test rejection of sub-steps whose covariance cannot be factorized."""

    def setup_method(self):
        self.priors = PriorSpecification(
            sigma2=InverseGamma(2.0, 1.0),
            tau2=InverseGamma(2.0, 1.0),
            phi=Uniform(0.1, 100.0),
        )

    def test_divergent_proposal_rejected(self, small_observations, monkeypatch):
        start = ModelParameters(beta=[0.0, 1.0], sigma2=1.0, tau2=0.5, phi=1.0)
        sampler = PosteriorSampler(kernel=BrokenExponential(), seed=31)
        monkeypatch.setattr(sampler, "_propose_log_scale", lambda rng, value, step: 50.0)

        with pytest.warns(RuntimeWarning, match="divergence"):
            chain = sampler.run(
                small_observations, self.priors, start, n_iterations=10,
                tuning=TuningConfig(adapt=False)
            )

        assert chain.status == "complete"
        assert len(chain) == 10
        np.testing.assert_array_equal(chain.phi, 1.0)
        assert chain.n_divergent == 10
        assert chain.n_divergent_iterations == 10
        assert chain.acceptance['phi'] == 0.0

    def test_single_divergence_does_not_warn(self, small_observations, monkeypatch):
        start = ModelParameters(beta=[0.0, 1.0], sigma2=1.0, tau2=0.5, phi=1.0)
        sampler = PosteriorSampler(kernel=BrokenExponential(), seed=32)
        calls = []

        def propose(rng, value, step):
            calls.append(value)
            if len(calls) == 1:
                return 50.0
            return PosteriorSampler._propose_log_scale(sampler, rng, value, min(step, 0.05))

        monkeypatch.setattr(sampler, "_propose_log_scale", propose)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            chain = sampler.run(
                small_observations, self.priors, start, n_iterations=10,
                tuning=TuningConfig(adapt=False)
            )

        assert chain.phi[0] == 1.0
        assert chain.n_divergent >= 1
        assert chain.n_divergent_iterations < 10
        assert not any("divergence" in str(w.message) for w in caught)


class TestSetupValidation:
    """Test rejection of invalid or degenerate configurations before sampling."""

    def test_collinear_covariates_without_nugget(self, small_observations):
        X = np.column_stack([
            np.ones(small_observations.n_obs),
            small_observations.X[:, 1],
            2.0 * small_observations.X[:, 1],
        ])
        obs = ObservationSet(small_observations.coords, X, small_observations.y)
        priors = PriorSpecification(
            sigma2=InverseGamma(2.0, 1.0), tau2=PointMass(0.0), phi=Uniform(0.1, 10.0)
        )
        start = ModelParameters(beta=np.zeros(3), sigma2=1.0, tau2=0.0, phi=1.0)
        sampler = PosteriorSampler(seed=1)
        with pytest.raises(InvalidParameterError, match="rank deficient"):
            sampler.run(obs, priors, start, n_iterations=10)
        assert sampler.state == "uninitialized"

    def test_duplicates_without_nugget(self, small_observations):
        coords = np.array(small_observations.coords)
        coords[1] = coords[0]
        obs = ObservationSet(coords, small_observations.X, small_observations.y)
        priors = PriorSpecification(
            sigma2=InverseGamma(2.0, 1.0), tau2=PointMass(0.0), phi=Uniform(0.1, 10.0)
        )
        start = ModelParameters(beta=[0.0, 1.0], sigma2=1.0, tau2=0.0, phi=1.0)
        with pytest.raises(InvalidParameterError, match="Duplicate"):
            PosteriorSampler(seed=1).run(obs, priors, start, n_iterations=10)

    def test_duplicates_with_nugget_allowed(self, small_observations, default_priors, start):
        coords = np.array(small_observations.coords)
        coords[1] = coords[0]
        obs = ObservationSet(coords, small_observations.X, small_observations.y)
        chain = PosteriorSampler(seed=1).run(obs, default_priors, start, n_iterations=10)
        assert len(chain) == 10

    def test_iteration_counts(self, small_observations, default_priors, start):
        sampler = PosteriorSampler(seed=1)
        with pytest.raises(InvalidParameterError, match="n_iterations"):
            sampler.run(small_observations, default_priors, start, n_iterations=0)
        with pytest.raises(InvalidParameterError, match="burn_in"):
            sampler.run(small_observations, default_priors, start, n_iterations=10, burn_in=10)
        with pytest.raises(InvalidParameterError, match="thin"):
            sampler.run(small_observations, default_priors, start, n_iterations=10, thin=0)

    def test_starting_value_outside_prior(self, small_observations, default_priors, start):
        with pytest.raises(InvalidParameterError, match="phi"):
            PosteriorSampler(seed=1).run(
                small_observations, default_priors, start.replace(phi=50.0), n_iterations=10
            )

    def test_invalid_sampler_arguments(self):
        with pytest.raises(InvalidParameterError, match="kernel"):
            PosteriorSampler(kernel="exponential")
        with pytest.raises(InvalidParameterError, match="jitter"):
            PosteriorSampler(jitter=-1.0)

    def test_nu_prior_needs_matern(self, small_observations, start):
        priors = PriorSpecification(
            sigma2=InverseGamma(2.0, 1.0), tau2=InverseGamma(2.0, 1.0),
            phi=Uniform(0.1, 10.0), nu=Uniform(0.3, 2.5)
        )
        with pytest.raises(InvalidParameterError, match="Matern"):
            PosteriorSampler(seed=1).run(
                small_observations, priors, start.replace(nu=1.0), n_iterations=10
            )


class TestModelVariants:
    """Test the alternative update schemes."""

    def test_grid_phi(self, small_observations):
        grid = DiscreteGrid([0.25, 0.5, 1.0, 2.0, 4.0])
        priors = PriorSpecification(
            sigma2=InverseGamma(2.0, 1.0), tau2=InverseGamma(2.0, 1.0), phi=grid
        )
        start = default_starting_values(small_observations, priors)
        chain = PosteriorSampler(seed=41).run(small_observations, priors, start, n_iterations=120)
        assert set(np.unique(chain.phi)) <= set(grid.values)
        assert 'phi' not in chain.acceptance

    def test_grid_phi_with_metropolis_variances(self, small_observations):
        priors = PriorSpecification(
            sigma2=InverseGamma(2.0, 1.0), tau2=InverseGamma(2.0, 1.0),
            phi=DiscreteGrid([0.5, 1.0, 2.0])
        )
        start = default_starting_values(small_observations, priors)
        chain = PosteriorSampler(seed=42).run(
            small_observations, priors, start, n_iterations=60,
            tuning=TuningConfig(variance_update="metropolis")
        )
        assert set(np.unique(chain.phi)) <= {0.5, 1.0, 2.0}
        assert set(chain.acceptance) == {'sigma2', 'tau2'}

    def test_metropolis_variances(self, small_observations, default_priors, start):
        chain = PosteriorSampler(seed=43).run(
            small_observations, default_priors, start, n_iterations=200, burn_in=100,
            tuning=TuningConfig(variance_update="metropolis")
        )
        assert set(chain.acceptance) == {'sigma2', 'tau2', 'phi'}
        for rate in chain.acceptance.values():
            assert 0.0 < rate <= 1.0
        assert np.all(chain.sigma2 > 0) and np.all(chain.tau2 > 0)

    def test_zero_nugget(self, small_observations):
        priors = PriorSpecification(
            sigma2=InverseGamma(2.0, 1.0), tau2=PointMass(0.0), phi=Uniform(0.1, 10.0)
        )
        start = default_starting_values(small_observations, priors)
        chain = PosteriorSampler(seed=44).run(small_observations, priors, start, n_iterations=50)
        np.testing.assert_array_equal(chain.tau2, 0.0)
        assert np.all(chain.sigma2 > 0)

    def test_matern_smoothness(self, simulate):
        observations, _ = simulate(n=25, kernel=Matern(1.5), seed=5)
        priors = PriorSpecification(
            sigma2=InverseGamma(2.0, 1.0), tau2=InverseGamma(2.0, 1.0),
            phi=Uniform(0.1, 10.0), nu=Uniform(0.3, 2.5)
        )
        start = default_starting_values(observations, priors)
        chain = PosteriorSampler(kernel=Matern(1.5), seed=45).run(
            observations, priors, start, n_iterations=80
        )
        assert chain.nu.shape == (80,)
        assert np.all((chain.nu >= 0.3) & (chain.nu <= 2.5))
        assert 'nu' in chain.acceptance
        assert 'nu' in chain.parameter_names


class TestRunChains:
    """Test independent chains."""

    def test_chains_are_independent_and_reproducible(self, small_observations, default_priors, start):
        chains = run_chains(
            small_observations, default_priors, [start, start], n_iterations=40, seed=7
        )
        again = run_chains(
            small_observations, default_priors, [start, start], n_iterations=40, seed=7
        )
        assert len(chains) == 2
        assert not np.array_equal(chains[0].phi, chains[1].phi)
        np.testing.assert_array_equal(chains[0].phi, again[0].phi)
        np.testing.assert_array_equal(chains[1].sigma2, again[1].sigma2)

    def test_process_pool_matches_serial(self, small_observations, default_priors, start):
        serial = run_chains(
            small_observations, default_priors, [start, start], n_iterations=30, seed=8
        )
        parallel = run_chains(
            small_observations, default_priors, [start, start], n_iterations=30, seed=8, n_jobs=2
        )
        for a, b in zip(serial, parallel):
            np.testing.assert_array_equal(a.phi, b.phi)
            np.testing.assert_array_equal(a.beta, b.beta)

    def test_requires_starting_values(self, small_observations, default_priors):
        with pytest.raises(InvalidParameterError, match="starting value"):
            run_chains(small_observations, default_priors, [], n_iterations=10)


class TestParameterRecovery:
    """Test that the sampler recovers the parameters of simulated data."""

    n_replicates = 50

    def posterior_rank(self, draws, truth, rng):
        """Randomized posterior CDF at the true value; uniform under a calibrated sampler."""
        ties = np.isclose(draws, truth, rtol=1e-12, atol=0.0)
        below = np.mean((draws < truth) & ~ties)
        return below + rng.uniform() * np.mean(ties)

    def interval_coverage(self, simulate, priors, n, seed):
        """
        Share of replicates whose central 80% interval holds the truth, per parameter.

        Each replicate draws its true parameters from the priors, simulates data
        and runs a fresh chain.
        """
        rng = np.random.default_rng(seed)
        covered = {}
        for r in range(self.n_replicates):
            beta = priors.beta.sample(rng)
            truth = {
                'beta[0]': beta[0],
                'beta[1]': beta[1],
                'sigma2': float(priors.sigma2.sample(rng)),
                'tau2': float(priors.tau2.sample(rng)),
                'phi': float(priors.phi.sample(rng)),
            }
            observations, _ = simulate(
                n=n, beta=beta, sigma2=truth['sigma2'], tau2=truth['tau2'],
                phi=truth['phi'], seed=seed + r
            )
            start = default_starting_values(observations, priors)
            chain = PosteriorSampler(seed=seed + r).run(
                observations, priors, start, n_iterations=500, burn_in=200
            )
            assert chain.parameter_names == list(truth)
            for name, value in truth.items():
                u = self.posterior_rank(chain.get(name), value, rng)
                covered[name] = covered.get(name, 0) + int(0.1 <= u <= 0.9)
        return {name: count / self.n_replicates for name, count in covered.items()}

    def test_credible_interval_coverage(self, simulate):
        """Regression coefficients are covered at close to the nominal 80%."""
        priors = PriorSpecification(
            sigma2=InverseGamma(3.0, 2.0),
            tau2=InverseGamma(3.0, 1.0),
            phi=Uniform(0.2, 3.0),
            beta=MultivariateNormal.isotropic(2, 1.0),
        )
        coverage = self.interval_coverage(simulate, priors, n=30, seed=1000)
        assert set(coverage) == {'beta[0]', 'beta[1]', 'sigma2', 'tau2', 'phi'}
        for name in ('beta[0]', 'beta[1]'):
            assert 0.62 <= coverage[name] <= 0.96, (name, coverage)
        for name in ('sigma2', 'tau2', 'phi'):
            assert coverage[name] >= 0.5, (name, coverage)

    def test_grid_phi_coverage(self, simulate):
        """With phi on a grid of well separated ranges, phi is covered at close to 80% too."""
        priors = PriorSpecification(
            sigma2=InverseGamma(3.0, 2.0),
            tau2=InverseGamma(3.0, 1.0),
            phi=DiscreteGrid((0.3, 0.6, 1.2)),
            beta=MultivariateNormal.isotropic(2, 1.0),
        )
        coverage = self.interval_coverage(simulate, priors, n=40, seed=3000)
        for name in ('beta[0]', 'beta[1]', 'phi'):
            assert 0.62 <= coverage[name] <= 0.96, (name, coverage)
        for name in ('sigma2', 'tau2'):
            assert coverage[name] >= 0.5, (name, coverage)

    def test_end_to_end(self, simulate):
        observations, _ = simulate(
            n=100, beta=(0.0, 1.0), sigma2=3.0, tau2=0.5, phi=2.0, extent=10.0, seed=2024
        )
        priors = PriorSpecification(
            sigma2=InverseGamma(2.0, 2.0),
            tau2=InverseGamma(2.0, 1.0),
            phi=Uniform(0.1, 10.0),
        )
        start = default_starting_values(observations, priors)
        chain = PosteriorSampler(kernel=Exponential(), seed=2025).run(
            observations, priors, start, n_iterations=6000, burn_in=1000
        )
        assert len(chain) == 5000
        assert 0.7 <= np.median(chain.get("beta[1]")) <= 1.3
        assert 1.0 <= np.median(chain.phi) <= 3.5
