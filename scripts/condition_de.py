#!/usr/bin/env python
"""
Per-cluster differential expression between two conditions.

Runs on the output of integrate_conditions.py: cells are grouped by their
cluster on the integrated embedding and, within each cluster, condition A is
tested against condition B on the log-normalized expression.

Usage:
    python condition_de.py --config config.yaml
    python condition_de.py --input integrated_conditions.h5ad --condition-key stim \\
        --condition-a STIM --condition-b CTRL --output results/de/
"""

import argparse
import logging
import sys
from pathlib import Path

import scanpy as sc

# Add repository root to path for cellalign
sys.path.insert(0, str(Path(__file__).parent.parent))

from cellalign import DEConfig, compare_all_clusters, load_config


def run_condition_de(
    input_path: str,
    output_dir: str,
    condition_key: str,
    config: DEConfig,
    cluster_key: str = "cluster",
    clusters_to_test=None,
):
    """
    Test condition A against condition B within every cluster.

    Parameters
    ----------
    input_path : str
        Integrated h5ad with cluster and condition columns in obs.
    output_dir : str
        Output directory.
    condition_key : str
        Column in obs with the condition label of each cell.
    config : DEConfig
        Test parameters; must name both conditions.
    cluster_key : str
        Column in obs with the cluster of each cell.
    clusters_to_test : list, optional
        Restrict testing to these clusters.

    Returns
    -------
    BatchResult
    """
    if config.condition_a is None or config.condition_b is None:
        raise ValueError("Both condition_a and condition_b must be set")

    output_path = Path(output_dir)
    (output_path / "per_cluster").mkdir(parents=True, exist_ok=True)

    # Load data
    print(f"Loading {input_path}...")
    adata = sc.read_h5ad(input_path)
    print(f"Shape: {adata.shape}")
    print(f"Clusters ({cluster_key}): {adata.obs[cluster_key].nunique()}")

    # Test
    print(f"\nTesting {config.condition_a} vs {config.condition_b} per cluster...")
    batch = compare_all_clusters(
        adata,
        cluster_key,
        condition_key,
        config.condition_a,
        config.condition_b,
        clusters_to_test=clusters_to_test,
        n_jobs=config.n_jobs,
        min_log_fc=config.min_log_fc,
        only_positive=config.only_positive,
        p_adjust=config.p_adjust,
        sort_by=config.sort_by,
        pseudocount=config.pseudocount,
    )

    results = batch.results
    for cluster, df in results.groupby("cluster", sort=False):
        n_sig = int((df["p_value_adj"] < 0.05).sum())
        print(f"  Cluster {cluster}: {len(df)} genes, {n_sig} with adjusted p < 0.05")
        df.to_csv(output_path / "per_cluster" / f"cluster_{cluster}.tsv", sep="\t", index=False)

    if batch.failures:
        print(f"\nSkipped {len(batch.failures)} clusters:")
        for cluster, exc in batch.failures.items():
            print(f"  Cluster {cluster}: {exc}")

    # Save
    print(f"\nSaving to {output_path}...")
    results.to_csv(output_path / "de_all_clusters.tsv", sep="\t", index=False)

    print("\nDone!")
    return batch


def main():
    parser = argparse.ArgumentParser(description="Per-cluster cross-condition differential expression")
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--input", type=str, help="Integrated h5ad file")
    parser.add_argument("--condition-key", type=str, help="Condition column in obs")
    parser.add_argument("--cluster-key", type=str, default="cluster", help="Cluster column in obs")
    parser.add_argument("--condition-a", type=str, help="Condition tested (positive fold-changes)")
    parser.add_argument("--condition-b", type=str, help="Condition compared against")
    parser.add_argument("--output", type=str, default="./results/de/", help="Output directory")
    parser.add_argument("--min-log-fc", type=float, default=0.25, help="Minimum absolute log2 fold-change")
    parser.add_argument("--only-positive", action="store_true", help="Keep genes up in condition A only")
    parser.add_argument("--p-adjust", type=str, default="fdr_bh", help="Multiple testing correction")
    parser.add_argument("--n-jobs", type=int, default=None, help="Worker threads for clusters")
    parser.add_argument("--clusters", type=str, nargs="+", default=None, help="Clusters to test")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.config:
        config = load_config(args.config)
        clustering = config.get("clustering", {})
        differential = config.get("differential", {})
        run_condition_de(
            input_path=differential.get(
                "h5ad_path", str(Path(config["output"]["dir"]) / "integrated_conditions.h5ad")
            ),
            output_dir=differential.get("output_dir", str(Path(config["output"]["dir"]) / "de")),
            condition_key=config["input"]["condition_key"],
            config=DEConfig.from_dict(differential),
            cluster_key=clustering.get("key", "cluster"),
            clusters_to_test=differential.get("clusters"),
        )
    else:
        if not (args.input and args.condition_key and args.condition_a and args.condition_b):
            parser.error(
                "Either --config or --input, --condition-key, --condition-a and --condition-b required"
            )
        run_condition_de(
            input_path=args.input,
            output_dir=args.output,
            condition_key=args.condition_key,
            config=DEConfig(
                condition_a=args.condition_a,
                condition_b=args.condition_b,
                min_log_fc=args.min_log_fc,
                only_positive=args.only_positive,
                p_adjust=args.p_adjust,
                n_jobs=args.n_jobs,
            ),
            cluster_key=args.cluster_key,
            clusters_to_test=args.clusters,
        )


if __name__ == "__main__":
    main()
