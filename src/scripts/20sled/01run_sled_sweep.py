#!/usr/bin/env python3
"""
Stage 2: Sparse-leading-eigenvalue (sLED) tests across group comparisons.

Two kinds of sweeps:
- pairwise:  every unordered pair of sample groups from --groups-tsv
- marker:    lowest vs highest expressing samples of each --markers gene

Each comparison gets a permutation p-value, the sparsity level that produced
it, and the genes with non-zero leverage. p-values are per comparison and are
not adjusted for multiple testing.

Pipeline position
-----------------
Stage 1   10network/01detect_modules.py  →  module table
Stage 2   THIS SCRIPT                    →  comparison table on stdout

Usage
-----
python src/scripts/20sled/01run_sled_sweep.py --in-expr expr.h5 --groups-tsv groups.tsv \\
    --sparsity 0.2 --n-permutations 100 --seed 1 --n-jobs 4
python src/scripts/20sled/01run_sled_sweep.py --in-expr expr.h5 --markers GENE1,GENE2 --low-frac 0.2
python src/scripts/20sled/01run_sled_sweep.py --toy
"""

from __future__ import annotations

import argparse
import logging

import numpy as np
import pandas as pd

from diffcoexnet import (
    ModuleParams,
    NetworkParams,
    SledParams,
    marker_split_comparisons,
    pairwise_comparisons,
    run_sweep,
)
from diffcoexnet.io import load_expression


def make_toy_data(n_per_group: int = 40, n_genes: int = 10, seed: int = 1) -> tuple[pd.DataFrame, pd.Series]:
    """
    Three groups of *n_per_group* samples over *n_genes* independent genes;
    in group "B" genes g01 and g02 are strongly correlated.
    """
    rng = np.random.default_rng(seed)
    blocks, labels = [], []
    for group in ("A", "B", "C"):
        x = rng.normal(size=(n_per_group, n_genes))
        if group == "B":
            x[:, 2] = 0.9 * x[:, 1] + np.sqrt(1 - 0.81) * x[:, 2]
        blocks.append(x)
        labels.extend([group] * n_per_group)
    samples = [f"s{i:03d}" for i in range(len(labels))]
    expr = pd.DataFrame(np.vstack(blocks), index=samples, columns=[f"g{j:02d}" for j in range(n_genes)])
    return expr, pd.Series(labels, index=samples, name="group")


def parse_float_list(text: str) -> tuple:
    return tuple(float(v) for v in text.split(",") if v.strip())


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="sLED differential co-expression tests across comparisons.")
    parser.add_argument(
        "--in-expr",
        type=str,
        default=None,
        help="Expression matrix, genes × samples: HDF5 (.h5, dataset \"expr\") or TSV (first column = gene id).",
    )
    parser.add_argument(
        "--groups-tsv",
        type=str,
        default=None,
        help="TSV mapping sample id (first column) to group label (second column) for pairwise sweeps.",
    )
    parser.add_argument("--markers", type=str, default=None, help="Comma-separated marker genes for low/high sweeps.")
    parser.add_argument("--low-frac", type=float, default=0.2, help="Fraction of samples in the low group (default: 0.2).")
    parser.add_argument("--high-frac", type=float, default=0.2, help="Fraction of samples in the high group (default: 0.2).")
    parser.add_argument("--sparsity", type=parse_float_list, required=False, default=None, help="Sparsity levels, e.g. 0.2 or 0.1,0.2,0.5.")
    parser.add_argument("--n-permutations", type=int, default=None, help="Permutations per comparison.")
    parser.add_argument("--seed", type=int, default=None, help="Permutation RNG seed.")
    parser.add_argument("--correlation", action="store_true", help="Compare correlation instead of covariance matrices.")
    parser.add_argument(
        "--fisher-z",
        action="store_true",
        help="Compare arctanh-transformed correlations (implies --correlation); suits small groups.",
    )
    parser.add_argument("--smoothing", action="store_true", help="Report (count + 1) / (B + 1) p-values.")
    parser.add_argument("--alpha", type=float, default=0.05, help="Significance cutoff (default: 0.05).")
    parser.add_argument("--leverage-threshold", type=float, default=1e-6, help="Leverage above which a gene is reported.")
    parser.add_argument("--n-jobs", type=int, default=1, help="Worker processes across comparisons (default: 1).")
    parser.add_argument("--max-features", type=int, default=None, help="Reject inputs with more genes than this.")
    parser.add_argument("--modules", action="store_true", help="Also detect co-expression modules in both groups.")
    parser.add_argument("--min-cluster-size", type=int, default=20, help="Smallest module with --modules (default: 20).")
    parser.add_argument("--toy", action="store_true", help="Run on toy data (3 groups, one with a planted gene pair).")
    return parser.parse_args()


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = parse_args()

    groups = None
    if args.toy:
        expr, groups = make_toy_data()
        sparsity = args.sparsity or (0.2,)
        n_permutations = args.n_permutations or 100
        seed = 1 if args.seed is None else args.seed
    else:
        if args.in_expr is None:
            raise SystemExit("Provide --in-expr or use --toy.")
        if args.sparsity is None or args.n_permutations is None or args.seed is None:
            raise SystemExit("--sparsity, --n-permutations and --seed are required.")
        sparsity, n_permutations, seed = args.sparsity, args.n_permutations, args.seed
        print(f"Loading expression: {args.in_expr}")
        expr = load_expression(args.in_expr)
        if args.groups_tsv:
            groups = pd.read_csv(args.groups_tsv, sep="\t", index_col=0).iloc[:, 0].reindex(expr.index)
            if groups.isna().any():
                raise SystemExit(f"{int(groups.isna().sum())} samples have no group in {args.groups_tsv}")
    print(f"  {expr.shape[0]} samples × {expr.shape[1]} genes")

    if args.markers:
        comparisons = marker_split_comparisons(
            expr, [m.strip() for m in args.markers.split(",")], args.low_frac, args.high_frac
        )
    elif groups is not None:
        comparisons = pairwise_comparisons(groups.to_numpy())
    else:
        raise SystemExit("Provide --groups-tsv or --markers.")
    print(f"  {len(comparisons)} comparisons")

    params = SledParams(
        sparsity_levels=sparsity,
        n_permutations=n_permutations,
        seed=seed,
        leverage_threshold=args.leverage_threshold,
        alpha=args.alpha,
        use_correlation=args.correlation or args.fisher_z,
        fisher_z=args.fisher_z,
        smoothing=args.smoothing,
        max_features=args.max_features,
    )
    sweep = run_sweep(
        expr,
        comparisons,
        params,
        n_jobs=args.n_jobs,
        network_params=NetworkParams() if args.modules else None,
        module_params=ModuleParams(min_cluster_size=args.min_cluster_size) if args.modules else None,
    )

    table = sweep.to_frame()
    print(f"\n{'=' * 60}")
    print("sLED SWEEP SUMMARY")
    print(f"{'=' * 60}")
    print(table.drop(columns=["error"]).to_string(float_format=lambda v: f"{v:.4g}"))
    print(f"\n  Significant (p < {args.alpha}): {int(table['significant'].sum())} / {len(table)}")
    if sweep.failures:
        print("\n  Failed comparisons:")
        for key, error in sweep.failures.items():
            print(f"    {key}: {error}")


if __name__ == "__main__":
    main()
