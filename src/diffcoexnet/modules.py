"""
Co-expression modules from TOM dissimilarity.

Pipeline position
-----------------
ExpressionMatrix → select_soft_threshold → build_network → THIS MODULE

1. dissimilarity = 1 - TOM (missing features get the maximal dissimilarity 1)
2. average-linkage dendrogram (scipy)
3. dynamic branch cut, ``cut_tree(dendrogram, ...)`` → labels
4. eigengene-based merging of close modules

Labels
------
0 is "unassigned"; modules are numbered 1..K by decreasing size (ties by the
smallest member position), so labels are reproducible for identical inputs.

Branch cut
----------
The merge steps are walked bottom-up. A branch counts as a cluster at a merge
of height h when

    size        >= min_cluster_size
    core scatter <= ref_height + max_core_scatter * (cut_height - ref_height)
    h - core scatter >= min_gap * (cut_height - ref_height)

where the core scatter is the mean join height of the branch's tightest
core, ref_height is the 5% quantile of merge heights and max_core_scatter /
min_gap come from ``deep_split`` (0 = coarse, 4 = sensitive). Two clusters
meeting become a composite branch that keeps both; a non-cluster branch
meeting a composite one is left unassigned; two non-clusters simply grow
into one basic branch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from scipy.cluster import hierarchy
from scipy.spatial.distance import squareform

from .config import ModuleParams, NetworkParams, ThresholdParams
from .errors import InputShapeError
from .expression import ExpressionMatrix
from .network import NetworkResult, build_network
from .threshold import ThresholdResult, select_soft_threshold

logger = logging.getLogger(__name__)

UNASSIGNED = 0

# deep_split 0..4
_MAX_CORE_SCATTER = (0.64, 0.73, 0.82, 0.91, 0.95)
_REF_QUANTILE = 0.05


# =============================================================================
# Data types
# =============================================================================

@dataclass(frozen=True)
class Dendrogram:
    """scipy linkage matrix over ``n_leaves`` features, heights non-decreasing."""

    linkage: np.ndarray  # (n_leaves - 1, 4)
    n_leaves: int

    def __post_init__(self) -> None:
        if self.linkage.shape != (max(self.n_leaves - 1, 0), 4):
            raise InputShapeError(
                f"linkage shape {self.linkage.shape} does not fit {self.n_leaves} leaves"
            )
        if np.any(np.diff(self.heights) < -1e-12):
            raise InputShapeError("dendrogram merge heights must be non-decreasing")

    @property
    def heights(self) -> np.ndarray:
        return self.linkage[:, 2]

    @classmethod
    def from_dissimilarity(cls, dissimilarity: np.ndarray) -> "Dendrogram":
        """Average-linkage clustering of a symmetric dissimilarity matrix."""
        d = np.asarray(dissimilarity, dtype=np.float64)
        if d.ndim != 2 or d.shape[0] != d.shape[1]:
            raise InputShapeError(f"dissimilarity must be square, got shape {d.shape}")
        n = d.shape[0]
        if n < 2:
            return cls(linkage=np.zeros((0, 4)), n_leaves=n)
        d = 0.5 * (d + d.T)
        np.fill_diagonal(d, 0.0)
        z = hierarchy.linkage(squareform(d, checks=False), method="average")
        return cls(linkage=z, n_leaves=n)


@dataclass(frozen=True)
class ModuleAssignment:
    """Feature → module label; label 0 is unassigned."""

    labels: np.ndarray  # (p,) int
    features: tuple

    @property
    def n_modules(self) -> int:
        return len(np.setdiff1d(np.unique(self.labels), [UNASSIGNED]))

    def sizes(self) -> dict:
        ids, counts = np.unique(self.labels, return_counts=True)
        return {int(i): int(c) for i, c in zip(ids, counts)}

    def modules(self) -> dict:
        """label → list of features, unassigned included under 0 when present."""
        return {
            int(m): [self.features[i] for i in np.flatnonzero(self.labels == m)]
            for m in np.unique(self.labels)
        }

    def as_series(self) -> pd.Series:
        return pd.Series(self.labels, index=list(self.features), name="module")


@dataclass(frozen=True)
class ModuleResult:
    network: NetworkResult
    dendrogram: Dendrogram
    assignment: ModuleAssignment
    eigengenes: pd.DataFrame  # samples × ME<label>
    threshold: ThresholdResult | None = None

    @property
    def adjacency(self) -> np.ndarray:
        return self.network.adjacency

    @property
    def tom(self) -> np.ndarray:
        return self.network.tom


# =============================================================================
# Dissimilarity and branch cutting
# =============================================================================

def tom_dissimilarity(tom: np.ndarray) -> np.ndarray:
    """1 - TOM, with missing entries set to the maximal dissimilarity 1."""
    diss = 1.0 - np.asarray(tom, dtype=np.float64)
    diss[np.isnan(diss)] = 1.0
    np.fill_diagonal(diss, 0.0)
    return diss


@dataclass
class _Branch:
    members: list
    join_heights: list  # one per member: height at which it first merged
    clusters: list | None = field(default=None)  # None → basic branch

    @property
    def is_basic(self) -> bool:
        return self.clusters is None


def _core_scatter(branch: _Branch, min_cluster_size: int) -> float:
    heights = np.sort(np.asarray(branch.join_heights, dtype=np.float64))
    if len(heights) == 0:
        return 0.0
    size = len(branch.members)
    base = min_cluster_size // 2 + 1
    core = base + int(np.sqrt(size - base)) if size > base else size
    return float(heights[: max(core - 1, 1)].mean())


def cut_tree(
    dendrogram: Dendrogram,
    min_cluster_size: int = 20,
    deep_split: int = 2,
    cut_height: float | None = None,
) -> np.ndarray:
    """
    Dynamic branch cut of *dendrogram*.

    Parameters
    ----------
    dendrogram : average-linkage tree over p features
    min_cluster_size : smallest branch that may become a module
    deep_split : 0..4, higher splits branches more readily
    cut_height : merges above this height are never joined; default is
        99% of the range between the reference height and the top merge

    Returns
    -------
    labels : (p,) int, 0 = unassigned, 1..K by decreasing module size
    """
    ModuleParams(min_cluster_size=min_cluster_size, deep_split=deep_split, cut_height=cut_height).validate()
    n = dendrogram.n_leaves
    if n == 0:
        return np.zeros(0, dtype=np.int64)

    heights = np.sort(dendrogram.heights)
    if len(heights):
        ref_height = float(heights[max(int(round(_REF_QUANTILE * len(heights))) - 1, 0)])
        top = float(heights[-1])
    else:
        ref_height = top = 0.0
    if cut_height is None:
        cut_height = 0.99 * (top - ref_height) + ref_height
    span = max(cut_height - ref_height, 0.0)
    max_core_scatter = _MAX_CORE_SCATTER[deep_split]
    max_abs_core_scatter = ref_height + max_core_scatter * span
    min_abs_gap = (1.0 - max_core_scatter) * 0.75 * span

    def is_cluster(branch: _Branch, height: float) -> bool:
        if len(branch.members) < min_cluster_size:
            return False
        scatter = _core_scatter(branch, min_cluster_size)
        return scatter <= max_abs_core_scatter and height - scatter >= min_abs_gap

    branches = {i: _Branch(members=[i], join_heights=[]) for i in range(n)}
    for step, (a, b, height, _) in enumerate(dendrogram.linkage):
        if height > cut_height:
            break
        left, right = branches.pop(int(a)), branches.pop(int(b))
        for side in (left, right):
            if len(side.members) == 1 and not side.join_heights:
                side.join_heights.append(float(height))
        members = left.members + right.members

        if left.is_basic and right.is_basic:
            if is_cluster(left, height) and is_cluster(right, height):
                merged = _Branch(members, [], clusters=[left.members, right.members])
            else:
                merged = _Branch(members, left.join_heights + right.join_heights)
        elif left.is_basic or right.is_basic:
            composite, basic = (right, left) if left.is_basic else (left, right)
            clusters = list(composite.clusters)
            if is_cluster(basic, height):
                clusters.append(basic.members)
            merged = _Branch(members, [], clusters=clusters)
        else:
            merged = _Branch(members, [], clusters=left.clusters + right.clusters)
        branches[n + step] = merged

    clusters = []
    for branch in branches.values():
        if not branch.is_basic:
            clusters.extend(branch.clusters)
        elif is_cluster(branch, cut_height):
            clusters.append(branch.members)

    labels = np.zeros(n, dtype=np.int64)
    for label, members in enumerate(sorted(clusters, key=lambda m: (-len(m), min(m))), start=1):
        labels[members] = label
    return labels


def relabel_by_size(labels: np.ndarray, min_size: int = 1) -> np.ndarray:
    """Renumber modules 1..K by decreasing size; modules below *min_size* become 0."""
    labels = np.asarray(labels)
    out = np.zeros(len(labels), dtype=np.int64)
    modules = [m for m in np.unique(labels) if m != UNASSIGNED]
    members = {m: np.flatnonzero(labels == m) for m in modules}
    kept = [m for m in modules if len(members[m]) >= min_size]
    for new, m in enumerate(sorted(kept, key=lambda m: (-len(members[m]), members[m][0])), start=1):
        out[members[m]] = new
    return out


# =============================================================================
# Eigengenes and merging
# =============================================================================

def eigengene(values: np.ndarray) -> np.ndarray:
    """
    First principal component of the standardized member profiles.

    Parameters
    ----------
    values : (n_samples, n_members)

    Returns
    -------
    (n_samples,) PC scores, signed to correlate positively with the mean
    standardized profile.
    """
    mean = values.mean(axis=0, keepdims=True)
    std = values.std(axis=0, ddof=1, keepdims=True)
    std = np.where(std < np.finfo(np.float64).eps, 1.0, std)
    scaled = (values - mean) / std
    u, s, _ = np.linalg.svd(scaled, full_matrices=False)
    pc = u[:, 0] * s[0]
    if np.dot(pc, scaled.mean(axis=1)) < 0:
        pc = -pc
    return pc


def module_eigengenes(values: np.ndarray, labels: np.ndarray, samples=None) -> pd.DataFrame:
    """Eigengene of every assigned module as a samples × ME<label> table."""
    modules = [int(m) for m in np.unique(labels) if m != UNASSIGNED]
    data = {f"ME{m}": eigengene(values[:, labels == m]) for m in modules}
    index = list(samples) if samples is not None else None
    return pd.DataFrame(data, index=index, columns=[f"ME{m}" for m in modules])


def merge_close_modules(values: np.ndarray, labels: np.ndarray, merge_threshold: float) -> np.ndarray:
    """
    Merge modules whose eigengenes correlate above *merge_threshold*.

    The most correlated pair is merged first and eigengenes are recomputed,
    until no pair exceeds the threshold. The larger module's label survives.
    """
    labels = relabel_by_size(labels)
    while True:
        modules = [int(m) for m in np.unique(labels) if m != UNASSIGNED]
        if len(modules) < 2:
            break
        eig = np.column_stack([eigengene(values[:, labels == m]) for m in modules])
        with np.errstate(invalid="ignore", divide="ignore"):
            corr = np.corrcoef(eig, rowvar=False)
        np.fill_diagonal(corr, np.nan)
        if np.all(np.isnan(corr)):
            break
        i, j = np.unravel_index(np.nanargmax(corr), corr.shape)
        if not corr[i, j] > merge_threshold:
            break
        keep, drop = modules[min(i, j)], modules[max(i, j)]
        logger.debug("Merging module %d into %d (eigengene r=%.3f)", drop, keep, corr[i, j])
        labels[labels == drop] = keep
        labels = relabel_by_size(labels)
    return labels


# =============================================================================
# Pipeline
# =============================================================================

def assign_modules(
    values: np.ndarray,
    tom: np.ndarray,
    params: ModuleParams = ModuleParams(),
    missing: np.ndarray | None = None,
) -> tuple:
    """
    TOM → dendrogram → branch cut → merged labels.

    Returns
    -------
    (Dendrogram, labels)
    """
    params.validate()
    dendrogram = Dendrogram.from_dissimilarity(tom_dissimilarity(tom))
    labels = cut_tree(dendrogram, params.min_cluster_size, params.deep_split, params.cut_height)
    if missing is not None and missing.any():
        labels[missing] = UNASSIGNED
        labels = relabel_by_size(labels, min_size=params.min_cluster_size)
    n_cut = len(np.setdiff1d(labels, [UNASSIGNED]))
    labels = merge_close_modules(values, labels, params.merge_threshold)
    logger.info(
        "Modules: %d after branch cut, %d after merging, %d unassigned features",
        n_cut,
        len(np.setdiff1d(labels, [UNASSIGNED])),
        int((labels == UNASSIGNED).sum()),
    )
    return dendrogram, labels


def detect_modules(
    expr,
    network_params: NetworkParams = NetworkParams(),
    module_params: ModuleParams = ModuleParams(),
    threshold_params: ThresholdParams | None = None,
) -> ModuleResult:
    """
    Full network pipeline for one expression matrix (samples × features).

    When ``network_params.beta`` is None the power is chosen by
    ``select_soft_threshold``; its network type, correlation method and
    missing-value policy follow *network_params*.
    """
    network_params.validate()
    module_params.validate()
    expr = ExpressionMatrix.from_any(expr, max_features=network_params.max_features)

    threshold = None
    beta = network_params.beta
    if beta is None:
        base = threshold_params or ThresholdParams()
        threshold = select_soft_threshold(
            expr,
            ThresholdParams(
                powers=base.powers,
                r2_cutoff=base.r2_cutoff,
                n_breaks=base.n_breaks,
                network_type=network_params.network_type,
                method=network_params.method,
                default_power=base.default_power,
                allow_missing=network_params.allow_missing,
            ),
        )
        beta = threshold.power

    network = build_network(expr, beta, network_params)
    dendrogram, labels = assign_modules(expr.values, network.tom, module_params, missing=network.missing)
    return ModuleResult(
        network=network,
        dendrogram=dendrogram,
        assignment=ModuleAssignment(labels=labels, features=expr.features),
        eigengenes=module_eigengenes(expr.values, labels, samples=expr.samples),
        threshold=threshold,
    )
