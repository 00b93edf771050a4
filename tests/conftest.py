import numpy as np
import pytest
from scipy.spatial.distance import cdist

from geo_splm.covariance import Exponential
from geo_splm.model import ObservationSet
from geo_splm.priors import InverseGamma, PriorSpecification, Uniform


def simulate_observations(
    n=30,
    beta=(0.0, 1.0),
    sigma2=1.0,
    tau2=0.5,
    phi=1.0,
    extent=10.0,
    seed=0,
    kernel=None
):
    """Simulate y = X beta + w + eps on [0, extent]^2; returns (observations, w)."""
    kernel = kernel or Exponential()
    rng = np.random.default_rng(seed)
    coords = rng.uniform(0.0, extent, size=(n, 2))
    X = np.column_stack([np.ones(n), rng.standard_normal(n)])
    R = kernel.correlation(cdist(coords, coords), phi)
    L = np.linalg.cholesky(sigma2 * R + 1e-10 * np.eye(n))
    w = L @ rng.standard_normal(n)
    y = X @ np.asarray(beta) + w + np.sqrt(tau2) * rng.standard_normal(n)
    return ObservationSet(coords, X, y), w


@pytest.fixture
def simulate():
    return simulate_observations


@pytest.fixture
def small_observations():
    observations, _ = simulate_observations(n=30, seed=11)
    return observations


@pytest.fixture
def default_priors():
    return PriorSpecification(
        sigma2=InverseGamma(2.0, 1.0),
        tau2=InverseGamma(2.0, 1.0),
        phi=Uniform(0.1, 10.0),
    )
