"""
Parameter objects for every stage.

All parameter sets are frozen dataclasses; ``validate()`` raises
``ConfigurationError`` and is called before any matrix work starts.
"""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass

from .errors import ConfigurationError
from .expression import CORRELATION_METHODS

NETWORK_TYPES = ("unsigned", "signed", "signed hybrid")

# 1..10, then even steps to 20
DEFAULT_POWERS = tuple(range(1, 11)) + tuple(range(12, 21, 2))

# Common WGCNA fallback when no power fits at all
DEFAULT_SOFT_POWER = 6


@dataclass(frozen=True)
class ThresholdParams:
    powers: tuple = DEFAULT_POWERS
    r2_cutoff: float = 0.85  # signed scale-free fit R^2
    n_breaks: int = 10  # connectivity histogram bins
    network_type: str = "unsigned"
    method: str = "pearson"
    default_power: float = DEFAULT_SOFT_POWER
    allow_missing: bool = False

    def validate(self) -> None:
        if len(self.powers) == 0:
            raise ConfigurationError("powers must contain at least one candidate exponent")
        if any((not math.isfinite(b)) or b <= 0 for b in self.powers):
            raise ConfigurationError(f"powers must be positive and finite, got {self.powers}")
        if not 0.0 < self.r2_cutoff <= 1.0:
            raise ConfigurationError(f"r2_cutoff must lie in (0, 1], got {self.r2_cutoff}")
        if self.n_breaks < 2:
            raise ConfigurationError(f"n_breaks must be >= 2, got {self.n_breaks}")
        if self.default_power <= 0:
            raise ConfigurationError(f"default_power must be positive, got {self.default_power}")
        _check_network_type(self.network_type)
        _check_method(self.method)


@dataclass(frozen=True)
class NetworkParams:
    beta: float | None = None  # None → pick with ThresholdSelector
    network_type: str = "unsigned"
    method: str = "pearson"
    allow_missing: bool = False
    max_features: int | None = None

    def validate(self) -> None:
        if self.beta is not None and (not math.isfinite(self.beta) or self.beta <= 0):
            raise ConfigurationError(f"beta must be positive and finite, got {self.beta}")
        if self.max_features is not None and self.max_features < 1:
            raise ConfigurationError(f"max_features must be >= 1, got {self.max_features}")
        _check_network_type(self.network_type)
        _check_method(self.method)


@dataclass(frozen=True)
class ModuleParams:
    min_cluster_size: int = 20
    deep_split: int = 2  # 0 (coarse) .. 4 (most sensitive)
    merge_threshold: float = 0.75  # eigengene correlation above which modules merge
    cut_height: float | None = None  # None → 99% of the dendrogram height range

    def validate(self) -> None:
        if self.min_cluster_size < 1:
            raise ConfigurationError(f"min_cluster_size must be >= 1, got {self.min_cluster_size}")
        if isinstance(self.deep_split, bool) or self.deep_split not in (0, 1, 2, 3, 4):
            raise ConfigurationError(f"deep_split must be an integer in 0..4, got {self.deep_split!r}")
        if not -1.0 <= self.merge_threshold <= 1.0:
            raise ConfigurationError(f"merge_threshold must lie in [-1, 1], got {self.merge_threshold}")
        if self.cut_height is not None and not self.cut_height > 0:
            raise ConfigurationError(f"cut_height must be positive, got {self.cut_height}")


@dataclass(frozen=True)
class SledParams:
    """
    Sparse-leading-eigenvalue permutation test settings.

    ``sparsity_levels``, ``n_permutations`` and ``seed`` have no defaults:
    they drive both the answer and the run time.
    """

    sparsity_levels: tuple
    n_permutations: int
    seed: int
    # applied to leverage v_i ** 2, so 1e-6 keeps features with |v_i| > 1e-3
    leverage_threshold: float = 1e-6
    alpha: float = 0.05
    use_correlation: bool = False
    fisher_z: bool = False  # compare arctanh(r); needs use_correlation
    smoothing: bool = False  # p = (count + 1) / (B + 1) instead of count / B
    max_iter: int = 100
    tol: float = 1e-8
    n_jobs: int = 1
    max_features: int | None = None

    def validate(self) -> None:
        levels = tuple(self.sparsity_levels)
        if len(levels) == 0:
            raise ConfigurationError("sparsity_levels must contain at least one level")
        for s in levels:
            if not (_is_real(s) and math.isfinite(s) and 0.0 < s <= 1.0):
                raise ConfigurationError(f"sparsity level must lie in (0, 1], got {s!r}")
        if len(set(levels)) != len(levels):
            raise ConfigurationError(f"sparsity_levels contains duplicates: {levels}")
        if not _is_integer(self.n_permutations):
            raise ConfigurationError(f"n_permutations must be an integer, got {self.n_permutations!r}")
        if self.n_permutations < 1:
            raise ConfigurationError(f"n_permutations must be positive, got {self.n_permutations}")
        if not _is_integer(self.seed) or self.seed < 0:
            raise ConfigurationError(f"seed must be a non-negative integer, got {self.seed!r}")
        if self.fisher_z and not self.use_correlation:
            raise ConfigurationError("fisher_z compares correlations and needs use_correlation=True")
        if not self.leverage_threshold >= 0:
            raise ConfigurationError(f"leverage_threshold must be >= 0, got {self.leverage_threshold}")
        if not 0.0 < self.alpha < 1.0:
            raise ConfigurationError(f"alpha must lie in (0, 1), got {self.alpha}")
        if self.max_iter < 1:
            raise ConfigurationError(f"max_iter must be >= 1, got {self.max_iter}")
        if not self.tol > 0:
            raise ConfigurationError(f"tol must be positive, got {self.tol}")
        if self.n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be >= 1, got {self.n_jobs}")
        if self.max_features is not None and self.max_features < 1:
            raise ConfigurationError(f"max_features must be >= 1, got {self.max_features}")


def _is_real(value) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _is_integer(value) -> bool:
    return isinstance(value, numbers.Integral) and not isinstance(value, bool)


def _check_network_type(network_type: str) -> None:
    if network_type not in NETWORK_TYPES:
        raise ConfigurationError(f"network_type must be one of {NETWORK_TYPES}, got {network_type!r}")


def _check_method(method: str) -> None:
    if method not in CORRELATION_METHODS:
        raise ConfigurationError(f"method must be one of {CORRELATION_METHODS}, got {method!r}")
