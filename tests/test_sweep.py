import threading

import numpy as np
import pytest

from diffcoexnet import (
    Comparison,
    ConfigurationError,
    InputShapeError,
    ModuleParams,
    NetworkParams,
    SledParams,
    marker_split_comparisons,
    pairwise_comparisons,
    run_sweep,
)
from diffcoexnet.sweep import STATUS_CANCELLED, STATUS_FAILED, STATUS_OK

PARAMS = SledParams(sparsity_levels=(0.5,), n_permutations=30, seed=1, use_correlation=True)


def test_pairwise_comparisons_cover_every_pair():
    groups = ["B", "A", "C", "A", "B", "C"]
    comps = pairwise_comparisons(groups)
    assert [c.key for c in comps] == [("A", "B"), ("A", "C"), ("B", "C")]
    ab = comps[0]
    np.testing.assert_array_equal(ab.rows_a, [1, 3])
    np.testing.assert_array_equal(ab.rows_b, [0, 4])
    assert ab.groups == ("A", "B")


def test_pairwise_comparisons_custom_order():
    comps = pairwise_comparisons(["x", "y", "z"], order=["z", "x"])
    assert [c.key for c in comps] == [("z", "x")]


def test_marker_split(three_group_expression):
    expr, _ = three_group_expression
    comps = marker_split_comparisons(expr, ["g3"], low_frac=0.25, high_frac=0.25)
    (comp,) = comps
    values = expr["g3"].to_numpy()
    assert comp.key == "g3"
    assert comp.groups == ("low", "high")
    assert len(comp.rows_a) == len(comp.rows_b) == 45
    assert values[comp.rows_a].max() < values[comp.rows_b].min()
    assert 3 not in comp.columns
    assert len(comp.columns) == 5


def test_marker_split_keeps_marker_on_request(three_group_expression):
    expr, _ = three_group_expression
    (comp,) = marker_split_comparisons(expr, ["g3"], drop_marker=False)
    assert comp.columns is None


@pytest.mark.parametrize("low, high", [(0.01, 0.2), (0.6, 0.6)])
def test_marker_split_bad_fractions(three_group_expression, low, high):
    expr, _ = three_group_expression
    with pytest.raises(ConfigurationError):
        marker_split_comparisons(expr, ["g3"], low_frac=low, high_frac=high)


def test_marker_split_unknown_marker(three_group_expression):
    expr, _ = three_group_expression
    with pytest.raises(InputShapeError):
        marker_split_comparisons(expr, ["nope"])


def test_sweep_keyed_results(three_group_expression):
    expr, groups = three_group_expression
    comps = pairwise_comparisons(groups)
    sweep = run_sweep(expr, comps, PARAMS)

    assert list(sweep.outcomes) == [("A", "B"), ("A", "C"), ("B", "C")]
    assert all(o.status == STATUS_OK for o in sweep.outcomes.values())
    assert sweep.failures == {}
    results = sweep.results
    # genes 0 and 1 co-vary only in group B
    assert results[("A", "B")].p_value < 0.05
    assert results[("B", "C")].p_value < 0.05
    assert set(results[("A", "B")].top_features) >= {"g0", "g1"}

    table = sweep.to_frame()
    assert list(table.index) == [c.key for c in comps]
    assert list(table["n_a"]) == [60, 60, 60]
    assert (table["status"] == STATUS_OK).all()


def test_sweep_parallel_matches_serial(three_group_expression):
    expr, groups = three_group_expression
    comps = pairwise_comparisons(groups)
    serial = run_sweep(expr, comps, PARAMS)
    parallel = run_sweep(expr, comps, PARAMS, n_jobs=2)
    for key in serial.outcomes:
        assert parallel.results[key].p_value == serial.results[key].p_value
        np.testing.assert_array_equal(
            parallel.results[key].leverage.to_numpy(), serial.results[key].leverage.to_numpy()
        )


def test_failed_comparison_does_not_abort_sweep(three_group_expression):
    expr, groups = three_group_expression
    comps = pairwise_comparisons(groups) + [
        Comparison(key="tiny", rows_a=np.array([0]), rows_b=np.arange(60, 120))
    ]
    sweep = run_sweep(expr, comps, PARAMS)
    assert sweep.outcomes["tiny"].status == STATUS_FAILED
    assert "InputShapeError" in sweep.failures["tiny"]
    assert len(sweep.results) == 3

    table = sweep.to_frame()
    assert table.loc["tiny", "status"] == STATUS_FAILED
    assert np.isnan(table.loc["tiny", "p_value"])


def test_empty_comparison_set(three_group_expression):
    expr, _ = three_group_expression
    with pytest.raises(ConfigurationError):
        run_sweep(expr, [], PARAMS)


def test_duplicate_keys(three_group_expression):
    expr, _ = three_group_expression
    comp = Comparison(key="x", rows_a=np.arange(10), rows_b=np.arange(10, 20))
    with pytest.raises(ConfigurationError, match="unique"):
        run_sweep(expr, [comp, comp], PARAMS)


def test_rows_out_of_range(three_group_expression):
    expr, _ = three_group_expression
    comp = Comparison(key="x", rows_a=np.arange(10), rows_b=np.array([5, 500]))
    with pytest.raises(ConfigurationError):
        run_sweep(expr, [comp], PARAMS)


@pytest.mark.parametrize("columns", [[0, 1, 7], [-1, 0, 1]])
def test_columns_out_of_range(columns):
    x = np.random.default_rng(0).normal(size=(40, 5))
    comparisons = [
        Comparison(key="bad", rows_a=np.arange(20), rows_b=np.arange(20, 40), columns=columns),
        Comparison(key="good", rows_a=np.arange(20), rows_b=np.arange(20, 40)),
    ]
    with pytest.raises(ConfigurationError, match="columns outside 0..4"):
        run_sweep(x, comparisons, PARAMS)


def test_invalid_params_fail_before_work(three_group_expression):
    expr, groups = three_group_expression
    bad = SledParams(sparsity_levels=(2.0,), n_permutations=10, seed=1)
    with pytest.raises(ConfigurationError):
        run_sweep(expr, pairwise_comparisons(groups), bad)


def test_cancelled_sweep(three_group_expression):
    expr, groups = three_group_expression
    cancel = threading.Event()
    cancel.set()
    sweep = run_sweep(expr, pairwise_comparisons(groups), PARAMS, cancel=cancel)
    assert {o.status for o in sweep.outcomes.values()} == {STATUS_CANCELLED}
    assert sweep.results == {}


def test_sweep_with_modules(three_group_expression):
    expr, groups = three_group_expression
    sweep = run_sweep(
        expr,
        pairwise_comparisons(groups)[:1],
        PARAMS,
        network_params=NetworkParams(beta=6),
        module_params=ModuleParams(min_cluster_size=2),
    )
    outcome = sweep.outcomes[("A", "B")]
    assert set(outcome.modules) == {"A", "B"}
    assert len(outcome.modules["B"].labels) == 6
