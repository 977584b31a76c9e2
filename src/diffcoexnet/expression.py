"""
Expression matrices and feature-feature correlation.

An ``ExpressionMatrix`` is samples × features (cells/observations × genes),
finite and read-only for the lifetime of a run. Correlations follow the
rank → z-score → matmul route: Spearman(x, y) == Pearson(rank(x), rank(y)),
so both methods reduce to

    C = Z @ Z.T / (M - 1)

with Z the row-wise z-scored (optionally ranked) feature profiles. Features
whose standard deviation is below float64 eps get a NaN z-score row, which
makes their whole correlation row/column NaN ("missing").
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.stats import rankdata

from .errors import DegenerateFeatureError, InputShapeError, NumericalInstabilityError

logger = logging.getLogger(__name__)

CORRELATION_METHODS = ("pearson", "spearman")


@dataclass(frozen=True)
class ExpressionMatrix:
    """Read-only samples × features matrix with feature and sample identifiers."""

    values: np.ndarray
    features: tuple
    samples: tuple

    @classmethod
    def from_any(
        cls,
        data,
        features: Sequence[Hashable] | None = None,
        samples: Sequence[Hashable] | None = None,
        max_features: int | None = None,
    ) -> "ExpressionMatrix":
        """
        Wrap a DataFrame or array-like (samples × features).

        DataFrame columns/index become feature/sample identifiers unless given
        explicitly; plain arrays get positional integer identifiers.
        """
        if isinstance(data, ExpressionMatrix):
            if features is None and samples is None:
                _check_feature_ceiling(data.n_features, max_features)
                return data
            data = data.values
        if isinstance(data, pd.DataFrame):
            features = list(data.columns) if features is None else features
            samples = list(data.index) if samples is None else samples
            data = data.to_numpy(dtype=np.float64)

        values = np.array(data, dtype=np.float64, copy=True)
        if values.ndim != 2:
            raise InputShapeError(f"expression must be 2D (samples, features), got shape {values.shape}")
        n_samples, n_features = values.shape
        _check_feature_ceiling(n_features, max_features)

        if not np.all(np.isfinite(values)):
            bad = np.unique(np.nonzero(~np.isfinite(values))[1])
            raise NumericalInstabilityError(
                f"expression matrix contains non-finite values in feature columns {bad.tolist()}"
            )

        features = tuple(range(n_features)) if features is None else tuple(features)
        samples = tuple(range(n_samples)) if samples is None else tuple(samples)
        if len(features) != n_features:
            raise InputShapeError(f"got {len(features)} feature ids for {n_features} columns")
        if len(samples) != n_samples:
            raise InputShapeError(f"got {len(samples)} sample ids for {n_samples} rows")
        if len(set(features)) != n_features:
            dupes = pd.Index(features)[pd.Index(features).duplicated()].unique().tolist()
            raise InputShapeError(f"feature identifiers must be unique, duplicated: {dupes}")

        values.flags.writeable = False
        return cls(values=values, features=features, samples=samples)

    @property
    def n_samples(self) -> int:
        return self.values.shape[0]

    @property
    def n_features(self) -> int:
        return self.values.shape[1]

    def subset_rows(self, rows) -> "ExpressionMatrix":
        """Return the matrix restricted to *rows* (integer positions or boolean mask)."""
        rows = np.asarray(rows)
        if rows.dtype == bool:
            if rows.shape != (self.n_samples,):
                raise InputShapeError(
                    f"boolean row mask has shape {rows.shape}, expected ({self.n_samples},)"
                )
            rows = np.flatnonzero(rows)
        values = np.ascontiguousarray(self.values[rows])
        values.flags.writeable = False
        return ExpressionMatrix(
            values=values,
            features=self.features,
            samples=tuple(self.samples[i] for i in rows),
        )

    def subset_columns(self, columns) -> "ExpressionMatrix":
        """Return the matrix restricted to feature positions *columns*."""
        columns = np.asarray(columns, dtype=np.int64)
        values = np.ascontiguousarray(self.values[:, columns])
        values.flags.writeable = False
        return ExpressionMatrix(
            values=values,
            features=tuple(self.features[j] for j in columns),
            samples=self.samples,
        )

    def feature_position(self, feature: Hashable) -> int:
        try:
            return self.features.index(feature)
        except ValueError:
            raise InputShapeError(f"unknown feature {feature!r}") from None

    def zero_variance_features(self) -> np.ndarray:
        """Column positions whose standard deviation is numerically zero."""
        return np.flatnonzero(self.values.std(axis=0) < np.finfo(np.float64).eps)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=list(self.samples), columns=list(self.features))


def _check_feature_ceiling(n_features: int, max_features: int | None) -> None:
    if max_features is not None and n_features > max_features:
        raise InputShapeError(
            f"{n_features} features exceed the configured ceiling of {max_features}; "
            "reduce the feature set upstream or raise max_features"
        )


def check_same_features(a: ExpressionMatrix, b: ExpressionMatrix) -> None:
    """Both matrices must carry the same features in the same order."""
    if a.n_features != b.n_features:
        raise InputShapeError(
            f"feature counts differ between compared matrices: {a.n_features} vs {b.n_features}"
        )
    if a.features != b.features:
        mismatch = [i for i, (fa, fb) in enumerate(zip(a.features, b.features)) if fa != fb]
        raise InputShapeError(
            f"feature identifiers/order differ at positions {mismatch[:10]}"
            + (" ..." if len(mismatch) > 10 else "")
        )


# ---------------------------------------------------------------------------
# z-score helpers (rows = features, columns = samples)
# ---------------------------------------------------------------------------
def zscore_rows(x: np.ndarray, ddof: int = 1) -> np.ndarray:
    """Z-score each row; zero-variance rows become NaN."""
    mean = x.mean(axis=1, keepdims=True)
    centered = x - mean
    denom = x.std(axis=1, keepdims=True, ddof=ddof)
    denom = np.where(denom < np.finfo(np.float64).eps, np.nan, denom)
    return centered / denom


def rank_zscore_rows(x: np.ndarray, ddof: int = 1) -> np.ndarray:
    """Rank each row (average ties), then z-score with the given ddof."""
    r = rankdata(x, axis=1, method="average").astype(np.float64)
    return zscore_rows(r, ddof=ddof)


def correlation_matrix(
    values: np.ndarray,
    method: str = "pearson",
    allow_missing: bool = False,
    features: Sequence[Hashable] | None = None,
) -> np.ndarray:
    """
    Feature × feature correlation of a samples × features matrix.

    Parameters
    ----------
    values : (n_samples, n_features)
    method : "pearson" or "spearman"
    allow_missing : if False, zero-variance features raise
        ``DegenerateFeatureError``; if True their rows/columns are NaN.
    features : identifiers used in error messages

    Returns
    -------
    corr : (n_features, n_features) float64, diagonal 1 for defined features
    """
    if method not in CORRELATION_METHODS:
        raise ValueError(f"unknown correlation method {method!r}, expected one of {CORRELATION_METHODS}")
    n_samples = values.shape[0]
    if n_samples < 2:
        raise InputShapeError(f"need at least 2 samples to correlate features, got {n_samples}")

    feature_rows = np.ascontiguousarray(np.asarray(values, dtype=np.float64).T)
    if method == "spearman":
        z = rank_zscore_rows(feature_rows)
    else:
        z = zscore_rows(feature_rows)

    missing = np.isnan(z[:, 0])
    if missing.any():
        names = _names(features, np.flatnonzero(missing))
        if not allow_missing:
            raise DegenerateFeatureError(
                f"{len(names)} zero-variance feature(s): {names[:10]}", features=names
            )
        logger.warning("Marking %d zero-variance feature(s) as missing: %s", len(names), names[:10])

    c_full = (z @ z.T) / float(n_samples - 1)
    np.clip(c_full, -1.0, 1.0, out=c_full)
    defined = np.flatnonzero(~missing)
    c_full[defined, defined] = 1.0
    return c_full


def _names(features: Sequence[Hashable] | None, positions: np.ndarray) -> list:
    if features is None:
        return positions.tolist()
    return [features[i] for i in positions]
