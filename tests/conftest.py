"""
Shared fixtures: synthetic expression matrices with planted structure.
"""

import numpy as np
import pandas as pd
import pytest


def make_block_expression(
    n_samples: int = 60,
    n_modules: int = 3,
    module_size: int = 12,
    n_noise: int = 8,
    noise: float = 0.4,
    seed: int = 7,
) -> pd.DataFrame:
    """
    Samples × genes with ``n_modules`` co-expression blocks driven by
    independent latent profiles, followed by ``n_noise`` independent genes.

    Gene ``M{m}_g{i}`` belongs to block m (1-based); noise genes are ``N_g{i}``.
    """
    rng = np.random.default_rng(seed)
    data = {}
    for m in range(1, n_modules + 1):
        driver = rng.normal(size=n_samples)
        for i in range(module_size):
            data[f"M{m}_g{i:02d}"] = driver + noise * rng.normal(size=n_samples)
    for i in range(n_noise):
        data[f"N_g{i:02d}"] = rng.normal(size=n_samples)
    return pd.DataFrame(data, index=[f"s{i:03d}" for i in range(n_samples)])


def make_group_pair(n: int = 100, p: int = 10, rho: float = 0.9, pair=(1, 2), seed: int = 3):
    """
    Two n × p groups of independent standard normal features, except that in
    X the features in *pair* have correlation *rho*.
    """
    rng = np.random.default_rng(seed)
    x = rng.normal(size=(n, p))
    y = rng.normal(size=(n, p))
    i, j = pair
    x[:, j] = rho * x[:, i] + np.sqrt(1.0 - rho**2) * x[:, j]
    return x, y


def make_exact_group_pair(n: int = 20, p: int = 10, rho: float = 0.9, pair=(1, 2)):
    """
    Two n × p groups built from orthogonal, centred harmonics, so sample
    correlations are exact: Y has identity correlation and X differs from Y
    only in column pair[1], which has correlation *rho* with column pair[0].
    """
    t = np.arange(n)
    waves = []
    for k in range(1, n // 2 + 1):
        waves.append(np.cos(2 * np.pi * k * t / n))
        if 2 * k < n:
            waves.append(np.sin(2 * np.pi * k * t / n))
    basis = np.column_stack(waves[:p])
    basis /= basis.std(axis=0, ddof=1)
    i, j = pair
    x = basis.copy()
    x[:, j] = rho * basis[:, i] + np.sqrt(1.0 - rho**2) * basis[:, j]
    return x, basis.copy()


@pytest.fixture
def block_expression():
    return make_block_expression()


@pytest.fixture
def group_pair():
    return make_group_pair()


@pytest.fixture
def three_group_expression():
    """
    180 samples × 6 genes in groups A, B, C (60 each); genes 0 and 1 are
    correlated only in group B.
    """
    rng = np.random.default_rng(11)
    x = rng.normal(size=(180, 6))
    b_rows = slice(60, 120)
    x[b_rows, 1] = 0.9 * x[b_rows, 0] + np.sqrt(1 - 0.81) * x[b_rows, 1]
    groups = np.array(["A"] * 60 + ["B"] * 60 + ["C"] * 60)
    expr = pd.DataFrame(x, columns=[f"g{j}" for j in range(6)])
    return expr, groups
