"""
Per-cluster differential expression between two conditions.

Each cell is treated as an independent observation in a Wilcoxon rank-sum
(Mann-Whitney U) test. This is not a replicate-aware test: with one sample per
condition, cells act as pseudo-replicates and p-values are optimistic.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from anndata import AnnData
from scipy.stats import mannwhitneyu
from statsmodels.stats.multitest import multipletests

from .config import PAdjustMethod
from .errors import EmptyGroupError
from .partition import resolve_labels
from .preprocessing import dense_matrix
from .types import BatchResult, DEResult

LOGGER = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "gene",
    "log2_fold_change",
    "statistic",
    "p_value",
    "p_value_adj",
    "pct_a",
    "pct_b",
    "cluster",
]

Labels = Union[str, pd.Series, Mapping]


def log2_fold_change(mean_a: np.ndarray, mean_b: np.ndarray, pseudocount: float = 1.0) -> np.ndarray:
    """log2 ratio of group means with a pseudocount."""
    return np.log2(mean_a + pseudocount) - np.log2(mean_b + pseudocount)


def adjust_pvalues(pvalues: np.ndarray, method: Union[str, PAdjustMethod] = PAdjustMethod.FDR_BH) -> np.ndarray:
    """
    Apply multiple testing correction.

    Parameters
    ----------
    pvalues : np.ndarray
        Raw p-values; NaN entries are left as NaN.
    method : str or PAdjustMethod
        Correction method ('fdr_bh', 'fdr_by', 'bonferroni', 'holm').

    Returns
    -------
    np.ndarray
        Adjusted p-values.
    """
    method = PAdjustMethod.parse(method)
    pvalues = np.asarray(pvalues, dtype=np.float64)
    adjusted = np.full_like(pvalues, np.nan)
    valid = ~np.isnan(pvalues)
    if valid.any():
        _, adjusted[valid], _, _ = multipletests(pvalues[valid], method=method.value)
    return adjusted


def rank_sum_test(X_a: np.ndarray, X_b: np.ndarray):
    """
    Two-sided Wilcoxon rank-sum test for every column.

    Returns
    -------
    tuple
        (U statistic of group a, p-value); columns tied across both groups get
        p = 1.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        statistic, pvalue = mannwhitneyu(
            X_a, X_b, alternative="two-sided", method="asymptotic", axis=0
        )
    pvalue = np.where(np.isnan(pvalue), 1.0, np.clip(pvalue, 0.0, 1.0))
    return np.asarray(statistic, dtype=np.float64), pvalue


def _sort(frame: pd.DataFrame, sort_by: str) -> pd.DataFrame:
    if sort_by not in frame.columns:
        raise ValueError(f"Cannot sort by '{sort_by}'; expected one of {list(frame.columns)}")
    ascending = sort_by != "log2_fold_change"
    return frame.sort_values(
        [sort_by, "gene"], ascending=[ascending, True], kind="mergesort"
    ).reset_index(drop=True)


def compare_conditions(
    adata: AnnData,
    clusters: Labels,
    conditions: Labels,
    target_cluster,
    condition_a: str,
    condition_b: str,
    min_log_fc: float = 0.25,
    only_positive: bool = False,
    p_adjust: Union[str, PAdjustMethod] = PAdjustMethod.FDR_BH,
    sort_by: str = "p_value_adj",
    layer: Optional[str] = None,
    pseudocount: float = 1.0,
) -> pd.DataFrame:
    """
    Compare two conditions within one cluster.

    Parameters
    ----------
    adata : AnnData
        Merged expression matrix (cells x genes), typically log-normalized.
    clusters : str, pd.Series or mapping
        Cluster id per cell; .obs column name or mapping keyed by cell id.
    conditions : str, pd.Series or mapping
        Condition label per cell.
    target_cluster
        Cluster to test.
    condition_a, condition_b : str
        Conditions compared; positive fold-changes mean higher in ``condition_a``.
    min_log_fc : float
        Genes with absolute log2 fold-change below this are dropped.
    only_positive : bool
        If True, keep only genes enriched in ``condition_a``.
    p_adjust : str or PAdjustMethod
        Multiple testing correction across all tested genes.
    sort_by : str
        Result column to order by (default: adjusted p-value, ascending).
    layer : str, optional
        Layer of ``adata`` to test instead of .X.
    pseudocount : float
        Added to group means before taking log2.

    Returns
    -------
    pd.DataFrame
        One row per retained gene with columns ``RESULT_COLUMNS``.

    Raises
    ------
    EmptyGroupError
        If the cluster has no cells for one of the conditions.
    """
    if str(condition_a) == str(condition_b):
        raise ValueError("condition_a and condition_b must differ")

    cluster_labels = resolve_labels(adata, clusters, kind="cluster").to_numpy()
    condition_labels = resolve_labels(adata, conditions, kind="condition").to_numpy()
    target = str(target_cluster)

    in_cluster = cluster_labels == target
    mask_a = in_cluster & (condition_labels == str(condition_a))
    mask_b = in_cluster & (condition_labels == str(condition_b))
    if not mask_a.any():
        raise EmptyGroupError(target, condition_a)
    if not mask_b.any():
        raise EmptyGroupError(target, condition_b)

    source = adata if layer is None else AnnData(
        X=adata.layers[layer], obs=adata.obs[[]], var=adata.var[[]]
    )
    X_a = dense_matrix(source[mask_a])
    X_b = dense_matrix(source[mask_b])

    statistic, pvalue = rank_sum_test(X_a, X_b)
    lfc = log2_fold_change(X_a.mean(axis=0), X_b.mean(axis=0), pseudocount)
    frame = pd.DataFrame(
        {
            "gene": adata.var_names.astype(str),
            "log2_fold_change": lfc,
            "statistic": statistic,
            "p_value": pvalue,
            "p_value_adj": adjust_pvalues(pvalue, p_adjust),
            "pct_a": (X_a > 0).mean(axis=0),
            "pct_b": (X_b > 0).mean(axis=0),
            "cluster": target,
        }
    )

    keep = np.abs(frame["log2_fold_change"].to_numpy()) >= min_log_fc
    if only_positive:
        keep &= frame["log2_fold_change"].to_numpy() > 0
    frame = frame.loc[keep, RESULT_COLUMNS]
    LOGGER.info(
        "Cluster %s: %d vs %d cells, %d of %d genes pass |log2FC| >= %.2f",
        target, int(mask_a.sum()), int(mask_b.sum()), len(frame), adata.n_vars, min_log_fc,
    )
    return _sort(frame, sort_by)


def _cluster_sort_key(cluster: str):
    return (0, int(cluster), "") if cluster.isdigit() else (1, 0, cluster)


def compare_all_clusters(
    adata: AnnData,
    clusters: Labels,
    conditions: Labels,
    condition_a: str,
    condition_b: str,
    clusters_to_test: Optional[Sequence] = None,
    n_jobs: Optional[int] = None,
    **kwargs,
) -> BatchResult:
    """
    Run ``compare_conditions`` independently for every cluster.

    A cluster missing one of the conditions is recorded in
    ``BatchResult.failures`` and does not stop the other clusters; any other
    error propagates.

    Parameters
    ----------
    adata, clusters, conditions, condition_a, condition_b
        See ``compare_conditions``.
    clusters_to_test : sequence, optional
        Clusters to test (default: all, numeric ids in numeric order).
    n_jobs : int, optional
        Number of worker threads (default: sequential).
    **kwargs
        Passed to ``compare_conditions``.

    Returns
    -------
    BatchResult
        Results concatenated in cluster order, tagged with the cluster id.
    """
    cluster_labels = resolve_labels(adata, clusters, kind="cluster")
    condition_labels = resolve_labels(adata, conditions, kind="condition")
    if clusters_to_test is None:
        targets = sorted(pd.unique(cluster_labels.to_numpy()), key=_cluster_sort_key)
    else:
        targets = [str(c) for c in clusters_to_test]

    def run(target):
        try:
            return compare_conditions(
                adata, cluster_labels, condition_labels, target,
                condition_a, condition_b, **kwargs,
            )
        except EmptyGroupError as exc:
            LOGGER.warning("Skipping cluster %s: %s", target, exc)
            return exc

    if n_jobs is not None and n_jobs > 1 and len(targets) > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            outcomes = list(executor.map(run, targets))
    else:
        outcomes = [run(target) for target in targets]

    frames, failures = [], {}
    for target, outcome in zip(targets, outcomes):
        if isinstance(outcome, EmptyGroupError):
            failures[target] = outcome
        else:
            frames.append(outcome)

    if frames:
        results = pd.concat(frames, ignore_index=True)
    else:
        results = pd.DataFrame(columns=RESULT_COLUMNS)
    return BatchResult(results=results, failures=failures)


def as_records(frame: pd.DataFrame) -> List[DEResult]:
    """Convert a result table to ``DEResult`` records, keeping row order."""
    return [
        DEResult(
            gene=str(row.gene),
            log2_fold_change=float(row.log2_fold_change),
            statistic=float(row.statistic),
            p_value=float(row.p_value),
            p_value_adj=float(row.p_value_adj),
            cluster=None if pd.isna(row.cluster) else str(row.cluster),
        )
        for row in frame.itertuples(index=False)
    ]
