"""
Soft-thresholded co-expression adjacency and Topological Overlap Matrix.

Adjacency (unsigned):  A[i, j] = |r_ij| ** beta
TOM, for i != j:

    Omega[i, j] = (L[i, j] + A[i, j]) / (min(k_i, k_j) + 1 - A[i, j])

    L[i, j] = sum_{u != i, j} A[i, u] * A[u, j]
    k_i     = sum_{u != i} A[i, u]

With A in [0, 1] and the diagonal excluded, L[i, j] <= min(k_i, k_j) - A[i, j],
so Omega stays in [0, 1].

Missing features (zero variance, NaN correlation) keep NaN rows/columns in both
A and Omega. They contribute nothing to L or k of the other features.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .config import NETWORK_TYPES, NetworkParams
from .errors import ConfigurationError, InputShapeError
from .expression import ExpressionMatrix, correlation_matrix

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkResult:
    """Adjacency and TOM for one expression matrix."""

    adjacency: np.ndarray  # (p, p), NaN rows for missing features
    tom: np.ndarray  # (p, p), NaN rows for missing features
    beta: float
    features: tuple
    missing: np.ndarray  # (p,) bool

    @property
    def n_features(self) -> int:
        return self.adjacency.shape[0]


def soft_threshold(corr: np.ndarray, beta: float, network_type: str = "unsigned") -> np.ndarray:
    """
    Turn a correlation matrix into a soft-thresholded adjacency.

    "unsigned":      |r| ** beta
    "signed":        ((1 + r) / 2) ** beta
    "signed hybrid": r ** beta for r > 0, else 0
    """
    if network_type not in NETWORK_TYPES:
        raise ConfigurationError(f"network_type must be one of {NETWORK_TYPES}, got {network_type!r}")
    if network_type == "unsigned":
        base = np.abs(corr)
    elif network_type == "signed":
        base = 0.5 + 0.5 * corr
    else:
        base = np.where(corr > 0, corr, 0.0)
        base[np.isnan(corr)] = np.nan
    adj = np.power(np.clip(base, 0.0, 1.0), beta)
    defined = np.flatnonzero(~np.isnan(np.diag(corr)))
    adj[defined, defined] = 1.0
    return adj


def build_adjacency(
    expr: ExpressionMatrix,
    beta: float,
    network_type: str = "unsigned",
    method: str = "pearson",
    allow_missing: bool = False,
) -> np.ndarray:
    """Soft-thresholded adjacency of the features of *expr*."""
    corr = correlation_matrix(expr.values, method=method, allow_missing=allow_missing, features=expr.features)
    return soft_threshold(corr, beta, network_type)


def missing_features(adjacency: np.ndarray) -> np.ndarray:
    """Features whose off-diagonal adjacency row is entirely NaN."""
    off_diag = np.array(adjacency, dtype=np.float64, copy=True)
    if off_diag.shape[0] < 2:
        return np.zeros(off_diag.shape[0], dtype=bool)
    np.fill_diagonal(off_diag, np.nan)
    return np.isnan(off_diag).all(axis=1)


def topological_overlap(adjacency: np.ndarray) -> np.ndarray:
    """
    TOM similarity of a symmetric adjacency with entries in [0, 1].

    The diagonal of *adjacency* is ignored (it may hold anything, NaN included).
    A feature whose off-diagonal row is all NaN is treated as missing: its TOM
    row and column are NaN, and it is left out of every other feature's
    connectivity and shared-neighbour sums. Any other NaN is an error.

    Returns
    -------
    tom : (p, p) float64, diagonal 1 for non-missing features
    """
    a = np.array(adjacency, dtype=np.float64, copy=True)
    if a.ndim != 2 or a.shape[0] != a.shape[1]:
        raise InputShapeError(f"adjacency must be square, got shape {a.shape}")
    missing = missing_features(a)
    np.fill_diagonal(a, 0.0)
    a[missing, :] = 0.0
    a[:, missing] = 0.0
    if np.isnan(a).any():
        raise InputShapeError("adjacency contains NaN entries between non-missing features")
    if np.isinf(a).any():
        raise InputShapeError("adjacency contains infinite entries")
    if a.min(initial=0.0) < 0.0 or a.max(initial=0.0) > 1.0:
        raise InputShapeError(
            f"adjacency entries must lie in [0, 1], got range [{a.min():.4g}, {a.max():.4g}]"
        )
    if not np.allclose(a, a.T, atol=1e-10, equal_nan=True):
        raise InputShapeError("adjacency must be symmetric")

    k = a.sum(axis=1)
    shared = a @ a  # diagonal of a is zero, so u = i and u = j drop out
    # min(k_i, k_j) >= A[i, j], so the denominator is >= 1
    denom = np.minimum.outer(k, k) + 1.0 - a
    tom = (shared + a) / denom
    np.clip(tom, 0.0, 1.0, out=tom)
    np.fill_diagonal(tom, 1.0)

    tom[missing, :] = np.nan
    tom[:, missing] = np.nan
    return tom


def build_network(expr, beta: float, params: NetworkParams = NetworkParams()) -> NetworkResult:
    """
    Expression → adjacency → TOM for a fixed exponent *beta*.

    ``params.beta`` is ignored here; ``detect_modules`` resolves it (or runs
    the threshold selector) before calling this.
    """
    params.validate()
    if not np.isfinite(beta) or beta <= 0:
        raise ConfigurationError(f"beta must be positive and finite, got {beta}")
    expr = ExpressionMatrix.from_any(expr, max_features=params.max_features)

    adjacency = build_adjacency(
        expr,
        beta,
        network_type=params.network_type,
        method=params.method,
        allow_missing=params.allow_missing,
    )
    tom = topological_overlap(adjacency)
    missing = missing_features(adjacency)
    logger.info(
        "Network: %d features, beta=%g, %s, %d missing",
        expr.n_features,
        beta,
        params.network_type,
        int(missing.sum()),
    )
    return NetworkResult(adjacency=adjacency, tom=tom, beta=float(beta), features=expr.features, missing=missing)
