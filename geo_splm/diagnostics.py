"""
Posterior summaries and convergence checks for sampler output.

Effective sample sizes and R-hat are the rank-normalized estimates of
arviz, computed from the draws arranged as (chain, draw) arrays.
"""

import arviz as az
import numpy as np
import warnings
from typing import Dict, List, Optional, Sequence, Tuple

from geo_splm.chain import Chain
from geo_splm.exceptions import IncompatibleChainError, InvalidParameterError
from geo_splm.model import ObservationSet

DEFAULT_QUANTILES = (0.05, 0.5, 0.95)
MIN_VARIANCE = 1e-12
MIN_DRAWS = 4


def _to_dataset(draws: np.ndarray, names: List[str]):
    """(chain, draw, parameter) array as an arviz posterior dataset."""
    return az.convert_to_dataset({name: draws[:, :, j] for j, name in enumerate(names)})


def effective_sample_size(samples) -> np.ndarray:
    """
    Bulk effective sample size of a single chain (arviz ``ess``).

    Constant draws count as independent; fewer than four draws give their
    number.

    :param samples: Draws of shape (n,) or (n, k)
    :returns: Float for 1-D input, array of length k otherwise
    """
    x = np.asarray(samples, dtype=float)
    if x.ndim == 1:
        return float(effective_sample_size(x[:, None])[0])
    if x.ndim != 2:
        raise InvalidParameterError(f"Expected draws of shape (n,) or (n, k), got {x.shape}")

    n, k = x.shape
    if n < MIN_DRAWS:
        return np.full(k, float(n))

    names = [f"x{j}" for j in range(k)]
    ess_data = az.ess(_to_dataset(x[None, :, :], names))
    ess = np.empty(k)
    for j, name in enumerate(names):
        if np.var(x[:, j]) < MIN_VARIANCE:
            ess[j] = float(n)
        else:
            ess[j] = float(ess_data[name].values)
    return ess


def gelman_rubin(chains: Sequence[Chain]) -> Dict[str, float]:
    """
    Rank-normalized split R-hat per parameter (arviz ``rhat``).

    Chains are split in halves, so a single chain gives a value too.
    Chains are truncated to the shortest length.

    :param chains: Chains from the same model
    :returns: R-hat keyed by parameter name
    :raises IncompatibleChainError: If the chains hold different parameters
        or come from different observation sets
    """
    chains = list(chains)
    if len(chains) == 0:
        raise IncompatibleChainError("No chains given")
    names = chains[0].parameter_names
    for chain in chains[1:]:
        if chain.parameter_names != names:
            raise IncompatibleChainError(
                f"Chains hold different parameters: {names} vs {chain.parameter_names}"
            )
        if chain.n_obs != chains[0].n_obs:
            raise IncompatibleChainError(
                f"Chains were fitted to different data sizes: {chains[0].n_obs} vs {chain.n_obs}"
            )

    n = min(len(chain) for chain in chains)
    if n < MIN_DRAWS:
        return {name: np.nan for name in names}

    stacked = np.stack([chain.as_array()[:n] for chain in chains])  # (m, n, k)
    rhat_data = az.rhat(_to_dataset(stacked, names))

    rhat = {}
    for j, name in enumerate(names):
        column = stacked[:, :, j]
        if np.all(column.var(axis=1) < MIN_VARIANCE):
            rhat[name] = 1.0 if np.ptp(column) < np.sqrt(MIN_VARIANCE) else np.nan
            continue
        rhat[name] = float(rhat_data[name].values)
    return rhat


class ChainDiagnostics:
    """
    Summaries and convergence checks for a single chain.

    Parameters
    ----------
    chain : Chain
        Sampler output
    observations : ObservationSet, optional
        Observations the chain was fitted to; used for consistency checks
        and in the report
    """

    def __init__(self, chain: Chain, observations: Optional[ObservationSet] = None):
        if not isinstance(chain, Chain):
            raise IncompatibleChainError(f"Expected a Chain, got {type(chain).__name__}")
        if observations is not None and observations.n_obs != chain.n_obs:
            raise IncompatibleChainError(
                f"Chain was fitted to {chain.n_obs} observations, "
                f"observation set has {observations.n_obs}"
            )
        self.chain = chain
        self.observations = observations

    def summary(self, quantiles: Sequence[float] = DEFAULT_QUANTILES) -> Dict[str, Dict[str, float]]:
        """
        Posterior mean, standard deviation and quantiles per parameter.

        :param quantiles: Probabilities in [0, 1]; reported as keys "q5", "q50", ...
        :returns: Nested dict keyed by parameter name
        """
        q = np.asarray(quantiles, dtype=float)
        if np.any((q < 0) | (q > 1)):
            raise InvalidParameterError(f"Quantiles must lie in [0, 1], got {quantiles}")

        stats = {}
        for name, draws in self.chain.to_dict().items():
            entry = {'mean': np.nan, 'sd': np.nan}
            entry.update({_quantile_key(p): np.nan for p in q})
            if len(draws) > 0:
                entry['mean'] = float(np.mean(draws))
                entry['sd'] = float(np.std(draws, ddof=1)) if len(draws) > 1 else 0.0
                for p, value in zip(q, np.quantile(draws, q)):
                    entry[_quantile_key(p)] = float(value)
            stats[name] = entry
        return stats

    def acceptance_rates(self) -> Dict[str, float]:
        """Metropolis acceptance rates over the sampling phase."""
        return dict(self.chain.acceptance)

    def effective_sample_sizes(self) -> Dict[str, float]:
        """Effective sample size per parameter."""
        if len(self.chain) == 0:
            return {name: 0.0 for name in self.chain.parameter_names}
        ess = effective_sample_size(self.chain.as_array())
        return dict(zip(self.chain.parameter_names, (float(v) for v in ess)))

    def check_convergence(
        self,
        acceptance_bounds: Tuple[float, float] = (0.15, 0.5),
        min_ess: float = 100.0,
        verbose: bool = True
    ) -> Dict[str, bool]:
        """
        Flag common sampling problems.

        :param acceptance_bounds: Acceptable range of Metropolis acceptance rates
        :param min_ess: Smallest acceptable effective sample size
        :param verbose: Emit a warning per problem found
        :returns: Validation results
        """
        low, high = acceptance_bounds
        validation = {
            'complete': self.chain.is_complete,
            'acceptance_ok': True,
            'no_divergences': self.chain.n_divergent == 0,
            'ess_ok': True,
        }
        problems = []

        if not validation['complete']:
            problems.append(f"Chain was stopped after {self._completed_iterations()} iterations")

        for name, rate in self.chain.acceptance.items():
            if np.isnan(rate):
                continue
            if not low <= rate <= high:
                validation['acceptance_ok'] = False
                problems.append(
                    f"Acceptance rate for {name} is {rate:.3f}, outside [{low}, {high}]"
                )

        if not validation['no_divergences']:
            problems.append(
                f"{self.chain.n_divergent} sub-steps were rejected because a covariance "
                f"matrix could not be factorized ({self.chain.n_divergent_iterations} iterations affected)"
            )

        for name, ess in self.effective_sample_sizes().items():
            if ess < min_ess:
                validation['ess_ok'] = False
                problems.append(f"Effective sample size for {name} is {ess:.0f} (< {min_ess:.0f})")

        if verbose:
            for message in problems:
                warnings.warn(message, RuntimeWarning)
        return validation

    def _completed_iterations(self) -> int:
        if self.chain.checkpoint is not None:
            return self.chain.checkpoint.iteration
        return self.chain.n_iterations

    def report(self) -> str:
        """Human-readable summary of the chain."""
        chain = self.chain
        stats = self.summary()
        ess = self.effective_sample_sizes()

        report_parts = [
            "Posterior Summary Report",
            "========================",
            "",
            f"Kernel: {chain.kernel!r}",
            f"Status: {chain.status}",
            f"Iterations: {chain.n_iterations:,} (burn-in {chain.burn_in:,}, thin {chain.thin})",
            f"Retained draws: {len(chain):,}",
        ]
        if self.observations is not None:
            report_parts.append(
                f"Observations: {self.observations.n_obs:,} "
                f"({self.observations.n_covariates} covariates, d={self.observations.dimension})"
            )
        report_parts += [
            "",
            f"{'parameter':<12}{'mean':>11}{'sd':>11}{'q5':>11}{'q50':>11}{'q95':>11}{'ess':>9}",
        ]
        for name, entry in stats.items():
            report_parts.append(
                f"{name:<12}{entry['mean']:>11.4g}{entry['sd']:>11.4g}{entry['q5']:>11.4g}"
                f"{entry['q50']:>11.4g}{entry['q95']:>11.4g}{ess[name]:>9.0f}"
            )

        report_parts += ["", "Acceptance rates:"]
        if chain.acceptance:
            for name, rate in chain.acceptance.items():
                report_parts.append(f"  {name}: {rate:.3f} ({chain.n_proposals.get(name, 0):,} proposals)")
        else:
            report_parts.append("  none (all updates are Gibbs draws)")
        report_parts.append(f"Divergent sub-steps: {chain.n_divergent}")

        return "\n".join(report_parts)


def _quantile_key(p: float) -> str:
    return f"q{100 * p:g}"
