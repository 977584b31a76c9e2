import warnings

import numpy as np
import pytest

from diffcoexnet import (
    UNASSIGNED,
    ConfigurationError,
    Dendrogram,
    InputShapeError,
    ModuleParams,
    NetworkParams,
    ThresholdSelectionFailure,
    cut_tree,
    detect_modules,
    merge_close_modules,
    module_eigengenes,
)
from diffcoexnet.modules import eigengene, relabel_by_size, tom_dissimilarity


def two_group_dissimilarity(group_size: int = 5) -> np.ndarray:
    """Two tight groups (within 0.1 + 0.01 |i - j|) separated by 0.9."""
    n = 2 * group_size
    d = np.full((n, n), 0.9)
    for start in (0, group_size):
        for i in range(start, start + group_size):
            for j in range(start, start + group_size):
                d[i, j] = 0.1 + 0.01 * abs(i - j)
    np.fill_diagonal(d, 0.0)
    return d


class TestDendrogram:
    def test_from_dissimilarity(self):
        dendro = Dendrogram.from_dissimilarity(two_group_dissimilarity())
        assert dendro.n_leaves == 10
        assert dendro.linkage.shape == (9, 4)
        assert np.all(np.diff(dendro.heights) >= 0)
        assert dendro.heights[-1] == pytest.approx(0.9)

    def test_single_leaf(self):
        dendro = Dendrogram.from_dissimilarity(np.zeros((1, 1)))
        assert dendro.linkage.shape == (0, 4)
        np.testing.assert_array_equal(cut_tree(dendro), [UNASSIGNED])

    def test_rejects_bad_linkage(self):
        with pytest.raises(InputShapeError):
            Dendrogram(linkage=np.zeros((2, 4)), n_leaves=5)
        with pytest.raises(InputShapeError):
            Dendrogram(linkage=np.array([[0, 1, 0.5, 2], [2, 3, 0.2, 3]], dtype=float), n_leaves=3)

    def test_rejects_non_square(self):
        with pytest.raises(InputShapeError):
            Dendrogram.from_dissimilarity(np.zeros((2, 3)))


class TestCutTree:
    def test_two_groups(self):
        labels = cut_tree(Dendrogram.from_dissimilarity(two_group_dissimilarity()), min_cluster_size=3)
        np.testing.assert_array_equal(labels, [1] * 5 + [2] * 5)

    def test_min_cluster_size_leaves_features_unassigned(self):
        labels = cut_tree(Dendrogram.from_dissimilarity(two_group_dissimilarity()), min_cluster_size=6)
        assert np.all(labels == UNASSIGNED)

    def test_labels_ordered_by_size(self):
        d = two_group_dissimilarity(group_size=6)
        # drop one member of the first group
        keep = [0, 1, 2, 3, 4] + list(range(6, 12))
        labels = cut_tree(Dendrogram.from_dissimilarity(d[np.ix_(keep, keep)]), min_cluster_size=3)
        np.testing.assert_array_equal(labels, [2] * 5 + [1] * 6)

    def test_explicit_cut_height_above_top_joins_everything(self):
        dendro = Dendrogram.from_dissimilarity(two_group_dissimilarity())
        labels = cut_tree(dendro, min_cluster_size=3, cut_height=2.0)
        # both groups are clusters when they meet, so they stay separate
        assert set(labels[:5]) == {labels[0]}
        assert set(labels[5:]) == {labels[5]}
        assert labels[0] != labels[5]

    @pytest.mark.parametrize("deep_split", [-1, 5, 1.5, True])
    def test_invalid_deep_split(self, deep_split):
        dendro = Dendrogram.from_dissimilarity(two_group_dissimilarity())
        with pytest.raises(ConfigurationError):
            cut_tree(dendro, deep_split=deep_split)

    def test_pure_function(self):
        dendro = Dendrogram.from_dissimilarity(two_group_dissimilarity())
        before = dendro.linkage.copy()
        first = cut_tree(dendro, min_cluster_size=3)
        second = cut_tree(dendro, min_cluster_size=3)
        np.testing.assert_array_equal(first, second)
        np.testing.assert_array_equal(dendro.linkage, before)


def test_relabel_by_size():
    labels = np.array([5, 5, 0, 7, 7, 7, 9])
    np.testing.assert_array_equal(relabel_by_size(labels), [2, 2, 0, 1, 1, 1, 3])
    np.testing.assert_array_equal(relabel_by_size(labels, min_size=2), [2, 2, 0, 1, 1, 1, 0])


def test_tom_dissimilarity_missing_is_maximal():
    tom = np.array([[1.0, 0.4, np.nan], [0.4, 1.0, np.nan], [np.nan, np.nan, np.nan]])
    diss = tom_dissimilarity(tom)
    assert diss[0, 1] == pytest.approx(0.6)
    assert diss[0, 2] == 1.0
    np.testing.assert_array_equal(np.diag(diss), 0.0)


def test_eigengene_follows_mean_profile():
    rng = np.random.default_rng(5)
    driver = rng.normal(size=50)
    members = np.column_stack([driver + 0.3 * rng.normal(size=50) for _ in range(6)])
    me = eigengene(members)
    assert np.corrcoef(me, driver)[0, 1] > 0.9


def test_merge_close_modules():
    rng = np.random.default_rng(6)
    shared, other = rng.normal(size=80), rng.normal(size=80)
    values = np.column_stack(
        [shared + 0.3 * rng.normal(size=80) for _ in range(8)]
        + [other + 0.3 * rng.normal(size=80) for _ in range(4)]
    )
    labels = np.array([1] * 4 + [2] * 4 + [3] * 4)
    merged = merge_close_modules(values, labels, merge_threshold=0.75)
    np.testing.assert_array_equal(merged, [1] * 8 + [2] * 4)

    unmerged = merge_close_modules(values, labels, merge_threshold=0.999)
    assert len(np.unique(unmerged)) == 3


def test_module_eigengenes_columns():
    values = np.random.default_rng(8).normal(size=(20, 5))
    table = module_eigengenes(values, np.array([1, 1, 0, 2, 2]), samples=[f"s{i}" for i in range(20)])
    assert list(table.columns) == ["ME1", "ME2"]
    assert table.index[0] == "s0"


class TestDetectModules:
    params = ModuleParams(min_cluster_size=8, deep_split=2, merge_threshold=0.75)

    def test_recovers_planted_blocks(self, block_expression):
        result = detect_modules(block_expression, NetworkParams(beta=6), self.params)
        labels = result.assignment.as_series()
        for m, label in zip((1, 2, 3), (1, 2, 3)):
            block = labels[[c for c in labels.index if c.startswith(f"M{m}_")]]
            assert set(block) == {label}
        assert result.assignment.n_modules == 3
        assert list(result.eigengenes.columns) == ["ME1", "ME2", "ME3"]
        assert result.network.beta == 6.0
        assert result.threshold is None

    def test_every_feature_in_exactly_one_module(self, block_expression):
        result = detect_modules(block_expression, NetworkParams(beta=6), self.params)
        modules = result.assignment.modules()
        members = [f for group in modules.values() for f in group]
        assert sorted(members) == sorted(block_expression.columns)
        assert len(members) == len(set(members))
        assert sum(result.assignment.sizes().values()) == block_expression.shape[1]

    def test_deterministic(self, block_expression):
        first = detect_modules(block_expression, NetworkParams(beta=6), self.params)
        second = detect_modules(block_expression, NetworkParams(beta=6), self.params)
        np.testing.assert_array_equal(first.assignment.labels, second.assignment.labels)
        np.testing.assert_array_equal(first.dendrogram.linkage, second.dendrogram.linkage)

    def test_missing_feature_is_unassigned(self, block_expression):
        expr = block_expression.copy()
        expr.insert(3, "flat", 2.0)
        result = detect_modules(expr, NetworkParams(beta=6, allow_missing=True), self.params)
        labels = result.assignment.as_series()
        assert labels["flat"] == UNASSIGNED
        assert result.network.missing.sum() == 1
        assert result.assignment.n_modules == 3

    def test_auto_threshold(self, block_expression):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ThresholdSelectionFailure)
            result = detect_modules(block_expression, NetworkParams(), self.params)
        assert result.threshold is not None
        assert result.network.beta == result.threshold.power

    def test_invalid_params(self, block_expression):
        with pytest.raises(ConfigurationError):
            detect_modules(block_expression, NetworkParams(beta=6), ModuleParams(min_cluster_size=0))
        with pytest.raises(ConfigurationError):
            detect_modules(block_expression, NetworkParams(network_type="bogus"))

