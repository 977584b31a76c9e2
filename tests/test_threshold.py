import warnings

import numpy as np
import pytest

from diffcoexnet import ConfigurationError, ThresholdParams, ThresholdSelectionFailure, select_soft_threshold
from diffcoexnet.threshold import connectivity, scale_free_fit


def test_connectivity_ignores_diagonal_and_missing():
    a = np.array([[1.0, 0.5, np.nan], [0.5, 1.0, np.nan], [np.nan, np.nan, np.nan]])
    k = connectivity(a)
    assert k[0] == pytest.approx(0.5)
    assert k[1] == pytest.approx(0.5)
    assert np.isnan(k[2])


def test_scale_free_fit_undefined_for_flat_connectivity():
    fit = scale_free_fit(np.full(20, 3.0))
    assert np.isnan(fit["sft_r2"])
    assert np.isnan(fit["slope"])


def test_scale_free_fit_on_decaying_distribution():
    # bin i of 10 equal-width bins over [1, 10] holds ~ (i + 1) ** -2 of the mass
    k = np.concatenate(
        [np.full(int(200 * (i + 1) ** -2.0) + 1, 1.0 + 0.9 * i + 0.45) for i in range(10)]
    )
    k = np.concatenate([k, [1.0, 10.0]])
    fit = scale_free_fit(k, n_breaks=10)
    assert fit["slope"] < 0
    assert fit["sft_r2"] == pytest.approx(fit["r2"])
    assert fit["sft_r2"] > 0.5


def test_fit_table_covers_every_power(block_expression):
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", ThresholdSelectionFailure)
        result = select_soft_threshold(block_expression)
    params = ThresholdParams()
    table = result.fit_table
    assert list(table["power"]) == list(params.powers)
    assert {"power", "sft_r2", "slope", "r2", "mean_k", "median_k", "max_k"} <= set(table.columns)
    assert result.power in params.powers
    # connectivity shrinks as the power grows
    assert table["mean_k"].is_monotonic_decreasing


def test_selection_rule_is_consistent(block_expression):
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        result = select_soft_threshold(block_expression, ThresholdParams(r2_cutoff=0.8))
    r2 = result.fit_table["sft_r2"].to_numpy()
    passing = np.flatnonzero(r2 > 0.8)
    if len(passing):
        assert not result.fell_back
        assert result.power == result.fit_table["power"].iloc[passing[0]]
        assert not any(issubclass(w.category, ThresholdSelectionFailure) for w in caught)
    else:
        assert result.fell_back
        assert any(issubclass(w.category, ThresholdSelectionFailure) for w in caught)


def test_fallback_to_best_fit_warns(block_expression):
    with pytest.warns(ThresholdSelectionFailure):
        result = select_soft_threshold(block_expression, ThresholdParams(r2_cutoff=1.0))
    assert result.fell_back
    best = result.fit_table["power"].iloc[int(np.nanargmax(result.fit_table["sft_r2"]))]
    assert result.power == best
    assert result.r_squared == pytest.approx(result.fit_table["sft_r2"].max())


def test_fallback_to_default_power_when_no_fit():
    # two features: every connectivity is identical, so no fit is defined
    x = np.random.default_rng(0).normal(size=(20, 2))
    with pytest.warns(ThresholdSelectionFailure, match="default power"):
        result = select_soft_threshold(x, ThresholdParams(powers=(1, 2, 3), default_power=4))
    assert result.power == 4
    assert result.fell_back


@pytest.mark.parametrize(
    "params",
    [
        ThresholdParams(powers=()),
        ThresholdParams(powers=(1, -2)),
        ThresholdParams(r2_cutoff=0.0),
        ThresholdParams(network_type="weird"),
        ThresholdParams(method="kendall"),
    ],
)
def test_invalid_params(block_expression, params):
    with pytest.raises(ConfigurationError):
        select_soft_threshold(block_expression, params)
