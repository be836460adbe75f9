#!/usr/bin/env python
"""
Anchor-based cross-condition integration for scRNA-seq data.

Usage:
    python integrate_conditions.py --config config.yaml
    python integrate_conditions.py --input pbmc.h5ad --condition-key stim --output results/
"""

import argparse
import logging
import sys
from pathlib import Path

import numpy as np
import scanpy as sc

# Add repository root to path for cellalign
sys.path.insert(0, str(Path(__file__).parent.parent))

from cellalign import (
    IntegrationConfig,
    LeidenClusterAssigner,
    compare_embeddings,
    load_config,
    normalize_and_log,
    run_integration,
)
from cellalign.preprocessing import store_raw_counts


def run_condition_integration(
    input_path: str,
    output_dir: str,
    condition_key: str,
    config: IntegrationConfig,
    normalize: bool = True,
    resolution: float = 0.5,
    n_neighbors: int = 30,
    cluster_key: str = "cluster",
):
    """
    Run the full integration pipeline.

    Parameters
    ----------
    input_path : str
        Path to h5ad file with all conditions.
    output_dir : str
        Output directory.
    condition_key : str
        Column in obs with the condition label of each cell.
    config : IntegrationConfig
        Integration parameters.
    normalize : bool
        Normalize and log-transform raw counts first.
    resolution : float
        Leiden clustering resolution.
    n_neighbors : int
        Number of neighbors for the clustering graph.
    cluster_key : str
        Column in obs for the cluster assignment.
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    (output_path / "metrics").mkdir(exist_ok=True)

    # Load data
    print(f"Loading {input_path}...")
    adata = sc.read_h5ad(input_path)
    print(f"Shape: {adata.shape}")
    print(f"Conditions ({condition_key}): {adata.obs[condition_key].nunique()}")

    if normalize:
        print("\nNormalizing...")
        if "counts" not in adata.layers:
            adata = store_raw_counts(adata, layer_name="counts")
        adata = normalize_and_log(adata)

    # Integration
    print("\nIntegrating conditions...")
    result = run_integration(adata, condition_key, config)
    print(f"Integration features: {len(result.features)}")
    print(f"Anchors: {len(result.anchors)}")
    for exc in result.anchors.failures.values():
        print(f"  Warning: {exc}")

    uncorrected = np.vstack([result.embeddings[name].coords for name in result.layers])
    uncorrected_ids = np.concatenate(
        [result.embeddings[name].cell_ids.to_numpy() for name in result.layers]
    )
    order = adata.obs_names.get_indexer(uncorrected_ids)
    shared = np.empty_like(uncorrected)
    shared[order] = uncorrected
    adata.obsm["X_pca_shared"] = shared
    adata = result.integrated.to_anndata(adata, key="X_integrated")

    # Clustering
    print("\nClustering integrated embedding...")
    assigner = LeidenClusterAssigner(resolution=resolution, n_neighbors=n_neighbors)
    clusters = assigner(result.integrated)
    adata.obs[cluster_key] = clusters.reindex(adata.obs_names).astype("category")
    print(f"  Resolution {resolution}: {adata.obs[cluster_key].nunique()} clusters")

    # Metrics
    print("\nComputing integration metrics...")
    metrics_df = compare_embeddings(
        {"Uncorrected": adata.obsm["X_pca_shared"], "Integrated": adata.obsm["X_integrated"]},
        adata.obs[condition_key].astype(str).to_numpy(),
    )
    print(metrics_df)
    metrics_df.to_csv(output_path / "metrics" / "integration_metrics.csv")

    # Save
    print(f"\nSaving to {output_path}...")
    result.anchors.to_frame().to_csv(output_path / "anchors.tsv", sep="\t", index=False)
    adata.write_h5ad(output_path / "integrated_conditions.h5ad")
    adata.obs.to_csv(output_path / "cell_metadata.tsv", sep="\t")

    print("\nDone!")
    return adata


def main():
    parser = argparse.ArgumentParser(description="Cross-condition integration for scRNA-seq")
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--input", type=str, help="Input h5ad file")
    parser.add_argument("--condition-key", type=str, help="Condition column in obs")
    parser.add_argument("--output", type=str, default="./results/integration/", help="Output directory")
    parser.add_argument("--n-features", type=int, default=2000, help="Number of integration features")
    parser.add_argument("--n-components", type=int, default=30, help="Number of components")
    parser.add_argument("--n-neighbors", type=int, default=5, help="Neighbors for anchor search")
    parser.add_argument("--score-floor", type=float, default=0.0, help="Minimum anchor score")
    parser.add_argument("--n-jobs", type=int, default=None, help="Worker threads for layer pairs")
    parser.add_argument("--resolution", type=float, default=0.5, help="Leiden resolution")
    parser.add_argument("--no-normalize", action="store_true", help="Input is already log-normalized")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.config:
        config = load_config(args.config)
        clustering = config.get("clustering", {})
        run_condition_integration(
            input_path=config["input"]["h5ad_path"],
            output_dir=config["output"]["dir"],
            condition_key=config["input"]["condition_key"],
            config=IntegrationConfig.from_dict(config.get("integration")),
            normalize=config["input"].get("normalize", True),
            resolution=clustering.get("resolution", 0.5),
            n_neighbors=clustering.get("n_neighbors", 30),
            cluster_key=clustering.get("key", "cluster"),
        )
    else:
        if not args.input or not args.condition_key:
            parser.error("Either --config or both --input and --condition-key required")
        run_condition_integration(
            input_path=args.input,
            output_dir=args.output,
            condition_key=args.condition_key,
            config=IntegrationConfig(
                num_variable_features=args.n_features,
                num_components=args.n_components,
                n_neighbors=args.n_neighbors,
                anchor_score_floor=args.score_floor,
                n_jobs=args.n_jobs,
            ),
            normalize=not args.no_normalize,
            resolution=args.resolution,
        )


if __name__ == "__main__":
    main()
