"""
Sweeps of the sLED test over many group comparisons.

A comparison is two row sets of one expression matrix (and optionally a
feature subset), identified by a hashable key. Comparisons are independent:
each runs in its own worker when ``n_jobs > 1`` and the collected table is
keyed by comparison, never by completion order. A comparison that fails is
reported with status "failed" and the rest of the sweep carries on.

Comparison builders
-------------------
pairwise_comparisons      every unordered pair of sample groups, each pair
                          tested on its own two groups
marker_split_comparisons  lowest vs highest expressing samples of a marker
                          feature (low_frac / high_frac of all samples)
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
from collections.abc import Hashable, Sequence
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .config import ModuleParams, NetworkParams, SledParams
from .errors import ComparisonCancelled, ConfigurationError, DiffCoexError
from .expression import ExpressionMatrix
from .modules import detect_modules
from .sled import DifferenceTestResult, sled_test

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


@dataclass(frozen=True)
class Comparison:
    key: Hashable
    rows_a: np.ndarray
    rows_b: np.ndarray
    groups: tuple = ("a", "b")
    columns: np.ndarray | None = None  # feature positions; None → all


@dataclass(frozen=True)
class ComparisonOutcome:
    key: Hashable
    status: str
    result: DifferenceTestResult | None = None
    error: str | None = None
    modules: dict | None = None  # group name → ModuleAssignment


@dataclass(frozen=True)
class SweepResult:
    outcomes: dict  # key → ComparisonOutcome
    comparisons: dict  # key → Comparison

    @property
    def results(self) -> dict:
        return {k: o.result for k, o in self.outcomes.items() if o.status == STATUS_OK}

    @property
    def failures(self) -> dict:
        return {k: o.error for k, o in self.outcomes.items() if o.status == STATUS_FAILED}

    def to_frame(self) -> pd.DataFrame:
        """One row per comparison, indexed by comparison key."""
        rows = []
        for key, outcome in self.outcomes.items():
            comp = self.comparisons[key]
            res = outcome.result
            rows.append(
                {
                    "comparison": key,
                    "group_a": comp.groups[0],
                    "group_b": comp.groups[1],
                    "n_a": len(comp.rows_a),
                    "n_b": len(comp.rows_b),
                    "status": outcome.status,
                    "p_value": res.p_value if res else np.nan,
                    "sparsity": res.sparsity if res else np.nan,
                    "statistic": res.statistic if res else np.nan,
                    "branch": res.branch if res else None,
                    "significant": res.significant if res else False,
                    "n_top_features": len(res.top_features) if res else 0,
                    "top_features": ",".join(map(str, res.top_features)) if res else "",
                    "error": outcome.error,
                }
            )
        return pd.DataFrame(rows).set_index("comparison")


# ---------------------------------------------------------------------------
# Comparison builders
# ---------------------------------------------------------------------------
def pairwise_comparisons(groups: Sequence, order: Sequence | None = None) -> list:
    """
    All unordered pairs of sample groups.

    Parameters
    ----------
    groups : per-sample group labels (length n_samples)
    order : group labels to use, in this order; default sorted unique labels

    Returns
    -------
    list of Comparison keyed by (group_i, group_j)
    """
    groups = np.asarray(groups)
    labels = list(order) if order is not None else sorted(pd.unique(groups).tolist())
    comparisons = []
    for ga, gb in itertools.combinations(labels, 2):
        comparisons.append(
            Comparison(
                key=(ga, gb),
                rows_a=np.flatnonzero(groups == ga),
                rows_b=np.flatnonzero(groups == gb),
                groups=(ga, gb),
            )
        )
    return comparisons


def marker_split_comparisons(
    expr,
    markers: Sequence[Hashable],
    low_frac: float = 0.2,
    high_frac: float = 0.2,
    drop_marker: bool = True,
) -> list:
    """
    Low vs high expressing samples for each marker feature.

    Samples are ordered by the marker's expression with a stable sort (ties
    keep sample order); the lowest floor(n * low_frac) form group "low", the
    highest floor(n * high_frac) group "high". With *drop_marker* the marker
    itself is left out of the tested features.
    """
    expr = ExpressionMatrix.from_any(expr)
    n = expr.n_samples
    k_low = int(np.floor(n * low_frac))
    k_high = int(np.floor(n * high_frac))
    if k_low < 2 or k_high < 2:
        raise ConfigurationError(
            f"low/high fraction too small for {n} samples (k_low={k_low}, k_high={k_high})"
        )
    if k_low + k_high > n:
        raise ConfigurationError(f"low_frac + high_frac must not exceed 1, got {low_frac} + {high_frac}")

    comparisons = []
    for marker in markers:
        j = expr.feature_position(marker)
        order = np.argsort(expr.values[:, j], kind="stable")
        columns = np.delete(np.arange(expr.n_features), j) if drop_marker else None
        comparisons.append(
            Comparison(
                key=marker,
                rows_a=np.sort(order[:k_low]),
                rows_b=np.sort(order[n - k_high:]),
                groups=("low", "high"),
                columns=columns,
            )
        )
    return comparisons


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
def run_comparison(
    expr: ExpressionMatrix,
    comparison: Comparison,
    params: SledParams,
    network_params: NetworkParams | None = None,
    module_params: ModuleParams | None = None,
    cancel=None,
) -> ComparisonOutcome:
    """Run one comparison; library errors become a "failed" outcome."""
    key = comparison.key
    try:
        data = expr if comparison.columns is None else expr.subset_columns(comparison.columns)
        x = data.subset_rows(comparison.rows_a)
        y = data.subset_rows(comparison.rows_b)
        result = sled_test(x, y, params, cancel=cancel)

        modules = None
        if network_params is not None:
            modules = {
                name: detect_modules(group, network_params, module_params or ModuleParams()).assignment
                for name, group in zip(comparison.groups, (x, y))
            }
        return ComparisonOutcome(key=key, status=STATUS_OK, result=result, modules=modules)
    except ComparisonCancelled as exc:
        logger.info("Comparison %r cancelled: %s", key, exc)
        return ComparisonOutcome(key=key, status=STATUS_CANCELLED, error=str(exc))
    except (DiffCoexError, np.linalg.LinAlgError) as exc:
        logger.error("Comparison %r failed: %s: %s", key, type(exc).__name__, exc)
        return ComparisonOutcome(key=key, status=STATUS_FAILED, error=f"{type(exc).__name__}: {exc}")


def _check_comparisons(comparisons: list, n_samples: int, n_features: int) -> None:
    if not comparisons:
        raise ConfigurationError("comparison set is empty")
    keys = [c.key for c in comparisons]
    if len(set(keys)) != len(keys):
        dupes = sorted({str(k) for k in keys if keys.count(k) > 1})
        raise ConfigurationError(f"comparison keys must be unique, duplicated: {dupes}")
    for c in comparisons:
        for rows in (c.rows_a, c.rows_b):
            rows = np.asarray(rows)
            if rows.size and (rows.min() < 0 or rows.max() >= n_samples):
                raise ConfigurationError(f"comparison {c.key!r} references rows outside 0..{n_samples - 1}")
        if c.columns is not None:
            columns = np.asarray(c.columns)
            if columns.size and (columns.min() < 0 or columns.max() >= n_features):
                raise ConfigurationError(
                    f"comparison {c.key!r} references columns outside 0..{n_features - 1}"
                )


def run_sweep(
    expr,
    comparisons: Sequence[Comparison],
    params: SledParams,
    n_jobs: int = 1,
    network_params: NetworkParams | None = None,
    module_params: ModuleParams | None = None,
    cancel=None,
) -> SweepResult:
    """
    Run every comparison and collect the outcomes keyed by comparison.

    Parameters
    ----------
    expr : samples × features matrix shared by all comparisons
    comparisons : from ``pairwise_comparisons``/``marker_split_comparisons``
        or built by hand
    params : sLED settings (with n_jobs > 1 here, each test runs serially)
    n_jobs : worker processes across comparisons
    network_params, module_params : when given, modules are also detected
        for both groups of every comparison
    cancel : optional ``threading.Event``; checked between comparisons

    Returns
    -------
    SweepResult
    """
    params.validate()
    if n_jobs < 1:
        raise ConfigurationError(f"n_jobs must be >= 1, got {n_jobs}")
    if network_params is not None:
        network_params.validate()
    if module_params is not None:
        module_params.validate()
    comparisons = list(comparisons)
    expr = ExpressionMatrix.from_any(expr, max_features=params.max_features)
    _check_comparisons(comparisons, expr.n_samples, expr.n_features)

    logger.info("Sweep: %d comparisons, %d workers", len(comparisons), n_jobs)
    outcomes = {}
    if n_jobs == 1:
        for i, comp in enumerate(comparisons):
            if cancel is not None and cancel.is_set():
                outcomes[comp.key] = ComparisonOutcome(key=comp.key, status=STATUS_CANCELLED, error="sweep cancelled")
                continue
            logger.debug("[%d/%d] %r", i + 1, len(comparisons), comp.key)
            outcomes[comp.key] = run_comparison(expr, comp, params, network_params, module_params, cancel=cancel)
    else:
        worker_params = dataclasses.replace(params, n_jobs=1)
        with ProcessPoolExecutor(max_workers=n_jobs) as executor:
            futures = {
                executor.submit(run_comparison, expr, comp, worker_params, network_params, module_params): comp.key
                for comp in comparisons
            }
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                outcomes[futures[future]] = future.result()
                if cancel is not None and cancel.is_set():
                    for f in futures:
                        f.cancel()
        for comp in comparisons:
            if comp.key not in outcomes:
                outcomes[comp.key] = ComparisonOutcome(key=comp.key, status=STATUS_CANCELLED, error="sweep cancelled")

    n_failed = sum(o.status == STATUS_FAILED for o in outcomes.values())
    if n_failed:
        logger.warning("Sweep finished with %d failed comparison(s)", n_failed)
    return SweepResult(
        outcomes={c.key: outcomes[c.key] for c in comparisons},
        comparisons={c.key: c for c in comparisons},
    )
