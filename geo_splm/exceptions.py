"""Custom exceptions for geo_splm package"""

class GeoSplmError(Exception):
    """Base exception for geo_splm package"""
    pass

class InvalidParameterError(GeoSplmError, ValueError):
    """Raised when a hyperparameter, starting value or kernel argument is outside its domain"""
    pass

class DimensionMismatchError(GeoSplmError, ValueError):
    """Raised when coordinate, covariate and response sizes disagree"""
    pass

class NumericalDivergenceError(GeoSplmError):
    """Raised when a covariance matrix cannot be factorized (not positive definite)"""
    pass

class IncompatibleChainError(GeoSplmError):
    """Raised when a chain does not match the observation or prediction metadata"""
    pass

class CoordsError(GeoSplmError):
    """Raised for coordinate processing errors"""
    pass
