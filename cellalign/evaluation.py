"""
Evaluation metrics for cross-condition integration quality.

Includes metrics for:
- Condition mixing (how well conditions are intermingled after integration)
- Biological conservation (how well clusters match known cell identities)
"""

from typing import Dict, Optional

import numpy as np
import pandas as pd
from scipy.stats import entropy
from sklearn.metrics import adjusted_rand_score, silhouette_score
from sklearn.neighbors import NearestNeighbors


def _subsample(n: int, sample_size: Optional[int], random_state: int) -> np.ndarray:
    if sample_size is None or sample_size >= n:
        return np.arange(n)
    rng = np.random.default_rng(random_state)
    return np.sort(rng.choice(n, sample_size, replace=False))


def condition_mixing_silhouette(
    coords: np.ndarray,
    conditions,
    sample_size: Optional[int] = None,
    random_state: int = 0,
) -> float:
    """
    Compute silhouette-based condition mixing.

    Silhouette on condition labels is high when conditions form separate
    groups. We return 1 - silhouette so that higher = better mixing.

    Parameters
    ----------
    coords : np.ndarray
        Embedding to evaluate (cells x dims).
    conditions : array-like
        Condition label per cell.
    sample_size : int, optional
        If provided, subsample cells for faster computation.
    random_state : int
        Random seed for subsampling.

    Returns
    -------
    float
        Mixing score (range 0 to 2, higher = better mixing).
    """
    conditions = np.asarray(conditions)
    if len(np.unique(conditions)) < 2:
        raise ValueError("Condition mixing needs at least two conditions")
    idx = _subsample(len(conditions), sample_size, random_state)
    return 1.0 - float(silhouette_score(np.asarray(coords)[idx], conditions[idx]))


def condition_entropy(
    coords: np.ndarray,
    conditions,
    n_neighbors: int = 50,
    sample_size: Optional[int] = 5000,
    random_state: int = 0,
) -> float:
    """
    Compute condition entropy in local neighborhoods.

    Parameters
    ----------
    coords : np.ndarray
        Embedding (cells x dims).
    conditions : array-like
        Condition label per cell.
    n_neighbors : int
        Number of neighbors to consider for each cell.
    sample_size : int, optional
        Subsample cells for faster computation.
    random_state : int
        Random seed.

    Returns
    -------
    float
        Mean neighborhood entropy normalized by log2(n_conditions), range 0 to 1.
    """
    coords = np.asarray(coords)
    conditions = np.asarray(conditions)
    unique = np.unique(conditions)
    if len(unique) < 2:
        return 0.0

    n_neighbors = min(n_neighbors, len(conditions) - 1)
    nn = NearestNeighbors(n_neighbors=n_neighbors + 1).fit(coords)
    idx = _subsample(len(conditions), sample_size, random_state)
    _, indices = nn.kneighbors(coords[idx])

    entropies = []
    for neighbor_idx in indices:
        # Skip self (first neighbor)
        neighbor_labels = conditions[neighbor_idx[1:]]
        counts = np.array([(neighbor_labels == c).sum() for c in unique])
        entropies.append(entropy(counts / counts.sum(), base=2))

    return float(np.mean(entropies) / np.log2(len(unique)))


def cluster_purity(clusters, labels) -> float:
    """
    Compute cluster purity (how well clusters match biological labels).

    Parameters
    ----------
    clusters : array-like
        Cluster assignment per cell.
    labels : array-like
        Ground truth labels (e.g., cell type) per cell.

    Returns
    -------
    float
        Purity score (range 0 to 1, higher = better).
    """
    table = pd.crosstab(np.asarray(clusters), np.asarray(labels))
    return float(table.max(axis=1).sum() / table.values.sum())


def adjusted_rand(clusters, labels) -> float:
    """Adjusted Rand Index between clusters and labels."""
    return float(adjusted_rand_score(np.asarray(labels), np.asarray(clusters)))


def summarize_integration(
    coords: np.ndarray,
    conditions,
    clusters=None,
    labels=None,
    sample_size: int = 5000,
) -> Dict[str, float]:
    """
    Compute a summary of integration quality metrics.

    Parameters
    ----------
    coords : np.ndarray
        Embedding to evaluate.
    conditions : array-like
        Condition label per cell.
    clusters : array-like, optional
        Cluster assignment per cell.
    labels : array-like, optional
        Cell type labels per cell.
    sample_size : int
        Sample size for expensive computations.

    Returns
    -------
    dict
        Dictionary with metric names and values.
    """
    metrics = {
        "condition_silhouette": condition_mixing_silhouette(
            coords, conditions, sample_size=sample_size
        ),
        "condition_entropy": condition_entropy(coords, conditions, sample_size=sample_size),
    }
    if clusters is not None and labels is not None:
        metrics["cluster_purity"] = cluster_purity(clusters, labels)
        metrics["ari"] = adjusted_rand(clusters, labels)
    return metrics


def compare_embeddings(
    embeddings: Dict[str, np.ndarray],
    conditions,
    clusters: Optional[Dict[str, np.ndarray]] = None,
    labels=None,
    sample_size: int = 5000,
) -> pd.DataFrame:
    """
    Compare embeddings of the same cells, e.g. before and after integration.

    Parameters
    ----------
    embeddings : dict
        Mapping from method name to embedding (rows in the same cell order).
    conditions : array-like
        Condition label per cell.
    clusters : dict, optional
        Mapping from method name to cluster assignment.
    labels : array-like, optional
        Cell type labels.
    sample_size : int
        Sample size for expensive computations.

    Returns
    -------
    pd.DataFrame
        Comparison table with metrics for each method.
    """
    results = []
    for method_name, coords in embeddings.items():
        method_clusters = clusters.get(method_name) if clusters is not None else None
        metrics = summarize_integration(
            coords,
            conditions,
            clusters=method_clusters,
            labels=labels,
            sample_size=sample_size,
        )
        metrics["method"] = method_name
        results.append(metrics)

    df = pd.DataFrame(results)
    if "method" in df.columns:
        df = df.set_index("method")
    return df
