from __future__ import annotations

import logging
from typing import Callable

import numpy as np

from .errors import SingularInformationMatrix

logger = logging.getLogger(__name__)

LOG_2PI = np.log(2.0 * np.pi)


def gaussian_loglik(n_obs: float, sample_cov: np.ndarray, implied_cov: np.ndarray) -> float:
    """Log-likelihood of centred data summarised by ``sample_cov`` under ``implied_cov``."""
    p = implied_cov.shape[0]
    sign, logdet = np.linalg.slogdet(implied_cov)
    if sign <= 0:
        return -np.inf
    trace = np.trace(np.linalg.solve(implied_cov, sample_cov))
    return -0.5 * n_obs * (p * LOG_2PI + logdet + trace)


def nearest_positive_definite(matrix: np.ndarray, floor: float = 1e-6) -> np.ndarray:
    """Clip eigenvalues so the matrix is usable as a covariance."""
    sym = 0.5 * (matrix + matrix.T)
    values, vectors = np.linalg.eigh(sym)
    threshold = floor * max(np.trace(sym) / sym.shape[0], 1e-12)
    if values.min() >= threshold:
        return sym
    clipped = np.clip(values, threshold, None)
    return (vectors * clipped) @ vectors.T


def central_jacobian(fun: Callable[[np.ndarray], np.ndarray], x: np.ndarray, step: float) -> np.ndarray:
    """Central-difference Jacobian of a vector valued function; column i is d fun / d x_i."""
    x = np.asarray(x, dtype=float)
    columns = []
    for i in range(x.shape[0]):
        h = step * max(1.0, abs(x[i]))
        up = x.copy()
        down = x.copy()
        up[i] += h
        down[i] -= h
        columns.append((np.asarray(fun(up)) - np.asarray(fun(down))) / (2.0 * h))
    return np.column_stack(columns) if columns else np.zeros((0, 0))


def invert_information(information: np.ndarray, what: str) -> np.ndarray:
    """Invert a symmetric information matrix or raise :class:`SingularInformationMatrix`."""
    sym = 0.5 * (information + information.T)
    if sym.size == 0:
        return sym
    cond = np.linalg.cond(sym)
    if not np.isfinite(cond) or cond > 1e14:
        raise SingularInformationMatrix(f"Information matrix of the {what} is singular (condition number {cond:.3g})")
    try:
        inverse = np.linalg.inv(sym)
    except np.linalg.LinAlgError as exc:
        raise SingularInformationMatrix(f"Information matrix of the {what} cannot be inverted") from exc
    if np.any(np.diag(inverse) < 0):
        logger.warning("Information matrix of the %s is not positive definite", what)
    return 0.5 * (inverse + inverse.T)
