"""
Expression matrix loaders.

On disk, matrices are genes × samples (one row per gene), as written by the
HDF5 conversion step of the pipeline:

    /expr          (n_genes, n_samples) float
    /gene_names    (n_genes,) str
    /sample_names  (n_samples,) str

Both loaders return the in-memory orientation, samples × genes.
"""

from __future__ import annotations

import logging
from pathlib import Path

import h5py
import numpy as np
import pandas as pd

from .errors import InputShapeError

logger = logging.getLogger(__name__)


def _decode(names) -> list:
    return [n.decode() if isinstance(n, bytes) else str(n) for n in names]


def load_expression_h5(path: str | Path, dataset: str = "expr") -> pd.DataFrame:
    """Read a genes × samples HDF5 matrix as a samples × genes DataFrame."""
    with h5py.File(path, "r") as f:
        if dataset not in f:
            raise InputShapeError(f"{path}: no dataset {dataset!r} (found {sorted(f.keys())})")
        expr = np.asarray(f[dataset][:], dtype=np.float64)
        if expr.ndim != 2:
            raise InputShapeError(f"{path}:{dataset} must be 2D (genes, samples), got shape {expr.shape}")
        n_genes, n_samples = expr.shape
        genes = _decode(f["gene_names"][:]) if "gene_names" in f else [f"g{i}" for i in range(n_genes)]
        samples = _decode(f["sample_names"][:]) if "sample_names" in f else [f"s{j}" for j in range(n_samples)]
    if len(genes) != n_genes or len(samples) != n_samples:
        raise InputShapeError(
            f"{path}: {len(genes)} gene / {len(samples)} sample names for a {n_genes} × {n_samples} matrix"
        )
    logger.info("Loaded %s: %d genes × %d samples", path, n_genes, n_samples)
    return pd.DataFrame(expr.T, index=samples, columns=genes)


def load_expression_tsv(path: str | Path) -> pd.DataFrame:
    """Read a genes × samples TSV (first column = gene id) as samples × genes."""
    df = pd.read_csv(path, sep="\t", index_col=0)
    logger.info("Loaded %s: %d genes × %d samples", path, df.shape[0], df.shape[1])
    return df.T


def load_expression(path: str | Path) -> pd.DataFrame:
    """Dispatch on suffix: .h5/.hdf5 → HDF5, anything else → TSV."""
    if Path(path).suffix.lower() in (".h5", ".hdf5"):
        return load_expression_h5(path)
    return load_expression_tsv(path)
