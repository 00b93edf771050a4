"""
GEO_SPLM: Bayesian spatial linear models with Gibbs/Metropolis sampling
"""

__version__ = "0.1.0"

# High-level API
from .spatial_lm import SpatialLM

# Covariance families
from .covariance import (
    CovarianceKernel,
    Exponential,
    Gaussian,
    Spherical,
    Matern,
    CovarianceMatrix,
)
from .distances import DistanceMatrix

# Data and priors
from .model import ObservationSet, PredictionSet, ModelParameters
from .priors import (
    PriorMode,
    PriorSpecification,
    InverseGamma,
    PointMass,
    Uniform,
    DiscreteGrid,
    MultivariateNormal,
    suggest_priors,
    validate_priors,
    sample_from_prior,
    default_starting_values,
)

# Inference
from .sampler import PosteriorSampler, TuningConfig, run_chains
from .chain import Chain, SamplerCheckpoint
from .recovery import LatentFieldRecovery, PredictiveDraws
from .diagnostics import ChainDiagnostics, effective_sample_size, gelman_rubin

# Coordinates
from .coords import preprocess_coords, apply_projection

# Exceptions
from .exceptions import (
    GeoSplmError,
    InvalidParameterError,
    DimensionMismatchError,
    NumericalDivergenceError,
    IncompatibleChainError,
    CoordsError,
)

__all__ = [
    # Main API
    'SpatialLM',

    # Covariance
    'CovarianceKernel',
    'Exponential',
    'Gaussian',
    'Spherical',
    'Matern',
    'CovarianceMatrix',
    'DistanceMatrix',

    # Data and priors
    'ObservationSet',
    'PredictionSet',
    'ModelParameters',
    'PriorMode',
    'PriorSpecification',
    'InverseGamma',
    'PointMass',
    'Uniform',
    'DiscreteGrid',
    'MultivariateNormal',
    'suggest_priors',
    'validate_priors',
    'sample_from_prior',
    'default_starting_values',

    # Inference
    'PosteriorSampler',
    'TuningConfig',
    'run_chains',
    'Chain',
    'SamplerCheckpoint',
    'LatentFieldRecovery',
    'PredictiveDraws',
    'ChainDiagnostics',
    'effective_sample_size',
    'gelman_rubin',

    # Coordinates
    'preprocess_coords',
    'apply_projection',

    # Exceptions
    'GeoSplmError',
    'InvalidParameterError',
    'DimensionMismatchError',
    'NumericalDivergenceError',
    'IncompatibleChainError',
    'CoordsError',
]
