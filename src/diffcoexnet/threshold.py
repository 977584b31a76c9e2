"""
Soft-threshold power selection by scale-free topology fit.

For each candidate power the feature connectivities k_i = sum_{u != i} A[i, u]
are binned into equal-width bins; log10 of the bin frequency is regressed on
log10 of the mean bin connectivity. A scale-free network gives a straight
line with negative slope, so the reported fit index is the signed R^2

    SFT.R.sq = -sign(slope) * R^2

The smallest power whose signed R^2 exceeds the cutoff is chosen. When none
does, the best-fitting power is used (or ``default_power`` if no fit is
defined) and a ``ThresholdSelectionFailure`` warning is issued.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats as scipy_stats

from .config import ThresholdParams
from .errors import ThresholdSelectionFailure
from .expression import ExpressionMatrix, correlation_matrix
from .network import missing_features, soft_threshold

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThresholdResult:
    power: float
    fit_table: pd.DataFrame  # one row per candidate power
    fell_back: bool

    @property
    def r_squared(self) -> float:
        row = self.fit_table.loc[self.fit_table["power"] == self.power]
        return float(row["sft_r2"].iloc[0]) if len(row) else float("nan")


def connectivity(adjacency: np.ndarray) -> np.ndarray:
    """Row sums of *adjacency* without the diagonal; NaN rows stay NaN."""
    a = np.array(adjacency, dtype=np.float64, copy=True)
    missing = missing_features(a)
    np.fill_diagonal(a, 0.0)
    a[:, missing] = 0.0
    k = a.sum(axis=1)
    k[missing] = np.nan
    return k


def scale_free_fit(k: np.ndarray, n_breaks: int = 10) -> dict:
    """
    Fit log10(p(k)) ~ log10(k) over *n_breaks* equal-width connectivity bins.

    Returns
    -------
    dict with sft_r2 (signed), r2, slope; NaN when the fit is undefined
    (fewer than two features or all connectivities equal).
    """
    k = k[np.isfinite(k)]
    nan_fit = {"sft_r2": float("nan"), "r2": float("nan"), "slope": float("nan")}
    if len(k) < 2 or np.ptp(k) <= 0:
        return nan_fit

    breaks = np.linspace(k.min(), k.max(), n_breaks + 1)
    mids = 0.5 * (breaks[:-1] + breaks[1:])
    # right-closed bins (a, b]; the minimum goes to the first bin
    bin_idx = np.clip(np.searchsorted(breaks, k, side="left") - 1, 0, n_breaks - 1)
    counts = np.bincount(bin_idx, minlength=n_breaks).astype(np.float64)
    sums = np.bincount(bin_idx, weights=k, minlength=n_breaks)

    with np.errstate(divide="ignore", invalid="ignore"):
        dk = np.where(counts > 0, sums / counts, mids)
    dk = np.where(dk > 0, dk, mids)
    p_dk = counts / len(k)

    log_dk = np.log10(dk)
    log_p_dk = np.log10(p_dk + 1e-9)
    if np.ptp(log_dk) <= 0:
        return nan_fit

    slope, _, r_value, _, _ = scipy_stats.linregress(log_dk, log_p_dk)
    r2 = float(r_value**2)
    return {"sft_r2": float(-np.sign(slope) * r2), "r2": r2, "slope": float(slope)}


def select_soft_threshold(expr, params: ThresholdParams = ThresholdParams()) -> ThresholdResult:
    """
    Pick the soft-thresholding power for *expr* (samples × features).

    Parameters
    ----------
    expr : ExpressionMatrix, DataFrame or array (samples × features)
    params : candidate powers, fit cutoff, network type, correlation method

    Returns
    -------
    ThresholdResult with the chosen power and the full fit-index table.
    """
    params.validate()
    expr = ExpressionMatrix.from_any(expr)
    corr = correlation_matrix(
        expr.values, method=params.method, allow_missing=params.allow_missing, features=expr.features
    )

    rows = []
    for power in params.powers:
        k = connectivity(soft_threshold(corr, power, params.network_type))
        fit = scale_free_fit(k, params.n_breaks)
        finite_k = k[np.isfinite(k)]
        rows.append(
            {
                "power": power,
                "sft_r2": fit["sft_r2"],
                "slope": fit["slope"],
                "r2": fit["r2"],
                "mean_k": float(finite_k.mean()) if len(finite_k) else float("nan"),
                "median_k": float(np.median(finite_k)) if len(finite_k) else float("nan"),
                "max_k": float(finite_k.max()) if len(finite_k) else float("nan"),
            }
        )
        logger.debug("power=%g  SFT.R.sq=%.3f  slope=%.3f  mean.k=%.2f", power, fit["sft_r2"], fit["slope"], rows[-1]["mean_k"])
    table = pd.DataFrame(rows)

    passing = np.flatnonzero(table["sft_r2"].to_numpy() > params.r2_cutoff)
    if len(passing):
        power = params.powers[int(passing[0])]
        logger.info("Soft threshold: power=%g (SFT.R.sq > %.2f)", power, params.r2_cutoff)
        return ThresholdResult(power=power, fit_table=table, fell_back=False)

    if table["sft_r2"].notna().any():
        power = params.powers[int(np.nanargmax(table["sft_r2"].to_numpy()))]
        reason = f"using power={power} with the highest signed R^2 ({table['sft_r2'].max():.3f})"
    else:
        power = params.default_power
        reason = f"no fit was defined; using default power={power}"
    message = f"No power reached scale-free fit R^2 > {params.r2_cutoff}; {reason}"
    logger.warning(message)
    warnings.warn(message, ThresholdSelectionFailure, stacklevel=2)
    return ThresholdResult(power=power, fit_table=table, fell_back=True)
