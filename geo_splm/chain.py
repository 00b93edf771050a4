"""
Retained MCMC output.

A Chain is created by PosteriorSampler and never modified afterwards; all
arrays are read-only. A run that was cancelled returns a Chain with status
"stopped" carrying a SamplerCheckpoint from which it can be resumed.
"""

import numpy as np
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from geo_splm.covariance import CovarianceKernel
from geo_splm.exceptions import DimensionMismatchError
from geo_splm.model import ModelParameters
from geo_splm.utils import read_only

ChainStatus = Literal["complete", "stopped"]


@dataclass(frozen=True, eq=False)
class SamplerCheckpoint:
    """
    Everything needed to continue a run between two iterations.

    Attributes
    ----------
    params : ModelParameters
        State after the last completed iteration
    rng_state : dict
        ``numpy.random.Generator.bit_generator.state``
    iteration : int
        Number of completed iterations
    steps : dict
        Current Metropolis step sizes
    counters : dict
        Acceptance / proposal / divergence counters
    draws : dict
        Retained draws so far, lists keyed by parameter name
    """

    params: ModelParameters
    rng_state: Dict[str, Any]
    iteration: int
    n_iterations: int
    burn_in: int
    thin: int
    kernel: CovarianceKernel
    tuning: Any
    steps: Dict[str, float]
    counters: Dict[str, Any]
    draws: Dict[str, List]
    n_obs: int
    jitter: float = 0.0
    store_latent: bool = False


@dataclass(frozen=True, eq=False)
class Chain:
    """
    Ordered sequence of retained posterior draws.

    Attributes
    ----------
    beta : np.ndarray
        Regression coefficients (n_samples, p)
    sigma2, tau2, phi : np.ndarray
        Variance components and decay (n_samples,)
    nu : np.ndarray, optional
        Matern smoothness draws when sampled
    latent : np.ndarray, optional
        Latent field draws at the observed locations (n_samples, n_obs)
    iterations : np.ndarray
        Iteration index of each retained draw
    acceptance : dict
        Metropolis acceptance rate per parameter over the sampling phase
    n_proposals : dict
        Number of Metropolis proposals per parameter over the sampling phase
    n_divergent : int
        Sub-steps rejected because a covariance matrix failed to factorize
    jitter : float
        Diagonal jitter the sampler added to correlation matrices
    """

    beta: np.ndarray
    sigma2: np.ndarray
    tau2: np.ndarray
    phi: np.ndarray
    iterations: np.ndarray
    kernel: CovarianceKernel
    n_obs: int
    n_iterations: int
    burn_in: int
    thin: int
    nu: Optional[np.ndarray] = None
    latent: Optional[np.ndarray] = None
    acceptance: Dict[str, float] = field(default_factory=dict)
    n_proposals: Dict[str, int] = field(default_factory=dict)
    n_divergent: int = 0
    n_divergent_iterations: int = 0
    jitter: float = 0.0
    status: ChainStatus = "complete"
    checkpoint: Optional[SamplerCheckpoint] = None

    def __post_init__(self):
        beta = np.asarray(self.beta, dtype=float)
        n = len(self.sigma2)
        if beta.ndim == 1:
            beta = beta.reshape(n, -1)
        if beta.ndim != 2 or beta.shape[0] != n:
            raise DimensionMismatchError(f"beta draws have shape {beta.shape}, expected ({n}, p)")
        object.__setattr__(self, 'beta', read_only(beta))
        for name in ('sigma2', 'tau2', 'phi'):
            values = np.asarray(getattr(self, name), dtype=float)
            if values.shape != (n,):
                raise DimensionMismatchError(f"{name} draws have shape {values.shape}, expected ({n},)")
            object.__setattr__(self, name, read_only(values))
        object.__setattr__(self, 'iterations', read_only(self.iterations, dtype=int))
        if self.nu is not None:
            object.__setattr__(self, 'nu', read_only(self.nu))
        if self.latent is not None:
            latent = np.asarray(self.latent, dtype=float)
            if latent.shape != (n, self.n_obs):
                raise DimensionMismatchError(
                    f"latent draws have shape {latent.shape}, expected ({n}, {self.n_obs})"
                )
            object.__setattr__(self, 'latent', read_only(latent))
        object.__setattr__(self, 'acceptance', dict(self.acceptance))
        object.__setattr__(self, 'n_proposals', dict(self.n_proposals))

    def __len__(self) -> int:
        return len(self.sigma2)

    @property
    def n_samples(self) -> int:
        return len(self)

    @property
    def n_covariates(self) -> int:
        return self.beta.shape[1]

    @property
    def is_complete(self) -> bool:
        return self.status == "complete"

    @property
    def parameter_names(self) -> List[str]:
        names = [f"beta[{i}]" for i in range(self.n_covariates)]
        names += ['sigma2', 'tau2', 'phi']
        if self.nu is not None:
            names.append('nu')
        return names

    def get(self, name: str) -> np.ndarray:
        """Draws of one scalar parameter, e.g. "phi" or "beta[1]"."""
        if name.startswith("beta[") and name.endswith("]"):
            return self.beta[:, int(name[5:-1])]
        if name == 'nu' and self.nu is None:
            raise KeyError("nu was not sampled")
        if name not in ('sigma2', 'tau2', 'phi', 'nu'):
            raise KeyError(f"Unknown parameter: {name}")
        return getattr(self, name)

    def as_array(self) -> np.ndarray:
        """Draws as an (n_samples, n_parameters) array ordered like ``parameter_names``."""
        columns = [self.beta, self.sigma2[:, None], self.tau2[:, None], self.phi[:, None]]
        if self.nu is not None:
            columns.append(self.nu[:, None])
        return np.hstack(columns)

    def to_dict(self) -> Dict[str, np.ndarray]:
        """Draws keyed by parameter name."""
        return {name: self.get(name) for name in self.parameter_names}

    def parameters(self, index: int) -> ModelParameters:
        """The retained draw at position `index` as ModelParameters."""
        return ModelParameters(
            beta=self.beta[index],
            sigma2=self.sigma2[index],
            tau2=self.tau2[index],
            phi=self.phi[index],
            nu=None if self.nu is None else self.nu[index],
        )

    def __repr__(self) -> str:
        return (
            f"Chain(status={self.status}, n_samples={len(self)}, "
            f"n_obs={self.n_obs}, kernel={self.kernel!r})"
        )
