#!/usr/bin/env python3
"""
Stage 1: Co-expression modules for one expression matrix.

Expression → soft-threshold power (scale-free fit) → adjacency → TOM →
average-linkage dendrogram → dynamic branch cut → eigengene merging.

Pipeline position
-----------------
Stage 1   THIS SCRIPT                  →  module table on stdout
Stage 2   20sled/01run_sled_sweep.py   →  differential co-expression tests

Input
-----
HDF5 (/expr, /gene_names, /sample_names) or TSV, genes as rows and samples
as columns, transposed to samples × genes on load.

Usage
-----
python src/scripts/10network/01detect_modules.py --in-expr expr.h5 --min-cluster-size 20
python src/scripts/10network/01detect_modules.py --toy
"""

from __future__ import annotations

import argparse
import logging

import numpy as np
import pandas as pd

from diffcoexnet import ModuleParams, NetworkParams, ThresholdParams, detect_modules
from diffcoexnet.io import load_expression


def make_toy_data(n_samples: int = 60, n_modules: int = 3, module_size: int = 12, n_noise: int = 8, seed: int = 1) -> pd.DataFrame:
    """Samples × genes with *n_modules* planted co-expression blocks plus noise genes."""
    rng = np.random.default_rng(seed)
    columns = []
    for m in range(n_modules):
        driver = rng.normal(size=n_samples)
        for g in range(module_size):
            columns.append((f"M{m + 1}_g{g:02d}", driver + 0.4 * rng.normal(size=n_samples)))
    for g in range(n_noise):
        columns.append((f"noise_g{g:02d}", rng.normal(size=n_samples)))
    return pd.DataFrame({name: col for name, col in columns}, index=[f"s{i:03d}" for i in range(n_samples)])


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Soft-threshold TOM network modules for one expression matrix.")
    parser.add_argument(
        "--in-expr",
        type=str,
        default=None,
        help="Expression matrix, genes × samples: HDF5 (.h5, dataset \"expr\") or TSV (first column = gene id).",
    )
    parser.add_argument("--beta", type=float, default=None, help="Soft-threshold power (default: pick by scale-free fit).")
    parser.add_argument("--r2-cutoff", type=float, default=0.85, help="Scale-free fit R^2 cutoff (default: 0.85).")
    parser.add_argument(
        "--network-type",
        type=str,
        default="unsigned",
        choices=["unsigned", "signed", "signed hybrid"],
        help="Adjacency type (default: unsigned).",
    )
    parser.add_argument("--method", type=str, default="pearson", choices=["pearson", "spearman"])
    parser.add_argument("--min-cluster-size", type=int, default=20, help="Smallest module (default: 20).")
    parser.add_argument("--deep-split", type=int, default=2, choices=[0, 1, 2, 3, 4], help="Branch split sensitivity (default: 2).")
    parser.add_argument(
        "--merge-threshold",
        type=float,
        default=0.75,
        help="Merge modules whose eigengenes correlate above this (default: 0.75).",
    )
    parser.add_argument(
        "--allow-missing",
        action="store_true",
        help="Keep zero-variance genes as missing (always unassigned) instead of failing.",
    )
    parser.add_argument("--max-features", type=int, default=None, help="Reject inputs with more genes than this.")
    parser.add_argument("--toy", action="store_true", help="Run on toy data (3 planted modules + noise).")
    return parser.parse_args()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = parse_args()

    if args.toy:
        expr = make_toy_data()
        min_cluster_size = min(args.min_cluster_size, 8)
    else:
        if args.in_expr is None:
            raise SystemExit("Provide --in-expr or use --toy.")
        print(f"Loading expression: {args.in_expr}")
        expr = load_expression(args.in_expr)
        min_cluster_size = args.min_cluster_size
    print(f"  {expr.shape[0]} samples × {expr.shape[1]} genes")

    result = detect_modules(
        expr,
        NetworkParams(
            beta=args.beta,
            network_type=args.network_type,
            method=args.method,
            allow_missing=args.allow_missing,
            max_features=args.max_features,
        ),
        ModuleParams(
            min_cluster_size=min_cluster_size,
            deep_split=args.deep_split,
            merge_threshold=args.merge_threshold,
        ),
        ThresholdParams(r2_cutoff=args.r2_cutoff),
    )

    if result.threshold is not None:
        print("\nScale-free fit:")
        print(result.threshold.fit_table.to_string(index=False, float_format=lambda v: f"{v:.3f}"))
    print(f"\nPower used: {result.network.beta:g}")

    sizes = result.assignment.sizes()
    print(f"\nModules: {result.assignment.n_modules}")
    for label, size in sizes.items():
        name = "unassigned" if label == 0 else f"module {label}"
        print(f"  {name:12s} {size:6d} genes")

    print("\nAssignment:")
    print(result.assignment.as_series().to_string())


if __name__ == "__main__":
    main()
