"""
Dense linear algebra helpers shared by the sampler and latent field recovery.
"""

import numpy as np
from scipy import linalg

from geo_splm.exceptions import NumericalDivergenceError


def read_only(array, dtype=float) -> np.ndarray:
    """
    Copy an array and mark the copy as non-writeable.

    :param array: Array-like input
    :param dtype: Target dtype

    :returns: Read-only copy
    """
    out = np.array(array, dtype=dtype, copy=True)
    out.setflags(write=False)
    return out


def cholesky_lower(matrix: np.ndarray, label: str = "covariance matrix") -> np.ndarray:
    """
    Lower Cholesky factor of a symmetric positive definite matrix.

    :param matrix: Square symmetric matrix
    :param label: Name used in the error message

    :returns: Lower triangular factor L with L @ L.T == matrix
    :raises NumericalDivergenceError: If the matrix has non-finite entries or is not positive definite
    """
    if not np.all(np.isfinite(matrix)):
        raise NumericalDivergenceError(f"{label} contains NaN or infinite entries")
    try:
        L = linalg.cholesky(matrix, lower=True, check_finite=False)
    except linalg.LinAlgError as e:
        raise NumericalDivergenceError(f"{label} is not positive definite: {e}") from e
    if np.any(np.diag(L) <= 0):
        raise NumericalDivergenceError(f"{label} is numerically singular")
    return L


def log_det_from_cholesky(L: np.ndarray) -> float:
    """Log determinant of L @ L.T."""
    return 2.0 * float(np.sum(np.log(np.diag(L))))


def cholesky_solve(L: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Solve (L @ L.T) x = b given the lower factor L."""
    return linalg.cho_solve((L, True), b, check_finite=False)


def psd_sqrt(matrix: np.ndarray) -> np.ndarray:
    """
    Square root factor of a positive semi-definite matrix.

    Tries a Cholesky factorization first and falls back to a symmetric
    eigendecomposition with negative round-off eigenvalues set to zero.
    Conditional covariances at prediction locations that coincide with
    observed ones are singular.

    :param matrix: Symmetric positive semi-definite matrix (m, m)

    :returns: Factor S with S @ S.T approximately equal to matrix
    """
    matrix = 0.5 * (matrix + matrix.T)
    try:
        return linalg.cholesky(matrix, lower=True, check_finite=False)
    except linalg.LinAlgError:
        eigvals, eigvecs = linalg.eigh(matrix, check_finite=False)
        eigvals = np.clip(eigvals, 0.0, None)
        return eigvecs * np.sqrt(eigvals)


def positive_eigen(matrix: np.ndarray, label: str = "correlation matrix"):
    """
    Eigenpairs spanning the non-null part of a positive semi-definite matrix.

    Eigenvalues below ``max_eigenvalue * n * eps`` count as zero, which is
    what duplicate locations produce in a correlation matrix.

    :param matrix: Symmetric positive semi-definite matrix (n, n)
    :param label: Name used in the error message

    :returns: Tuple (eigvals, eigvecs) of the retained eigenpairs
    :raises NumericalDivergenceError: If the matrix is non-finite or has no positive eigenvalue
    """
    if not np.all(np.isfinite(matrix)):
        raise NumericalDivergenceError(f"{label} contains NaN or infinite entries")
    eigvals, eigvecs = linalg.eigh(matrix, check_finite=False)
    keep = eigvals > eigvals[-1] * matrix.shape[0] * np.finfo(float).eps
    if eigvals[-1] <= 0 or not np.any(keep):
        raise NumericalDivergenceError(f"{label} has no positive eigenvalues")
    return eigvals[keep], eigvecs[:, keep]


def pseudo_solve(matrix: np.ndarray, b: np.ndarray, label: str = "correlation matrix") -> np.ndarray:
    """Minimum-norm solution of matrix @ x = b for a singular PSD matrix."""
    eigvals, eigvecs = positive_eigen(matrix, label)
    projected = eigvecs.T @ b
    if projected.ndim == 1:
        return eigvecs @ (projected / eigvals)
    return eigvecs @ (projected / eigvals[:, None])
