"""
Preprocessing utilities for cross-condition integration.

Normalization follows the standard scanpy workflow; feature selection is done
jointly on the pooled cells of every condition layer so the shared basis is not
biased toward one condition's idiosyncratic genes.
"""

import logging
from typing import Mapping, Sequence, Union

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData

from .types import Layer

LOGGER = logging.getLogger(__name__)


def normalize_and_log(
    adata: AnnData,
    target_sum: float = 1e4,
) -> AnnData:
    """
    Normalize counts and apply log1p transformation.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with raw counts.
    target_sum : float
        Target sum for normalization (default: 10,000).

    Returns
    -------
    AnnData
        Normalized copy; the input is left untouched.
    """
    adata = adata.copy()
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    return adata


def store_raw_counts(adata: AnnData, layer_name: str = "counts") -> AnnData:
    """
    Return a copy of ``adata`` with raw counts stored in a layer.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with raw counts in .X.
    layer_name : str
        Name of the layer to store counts in.
    """
    adata = adata.copy()
    adata.layers[layer_name] = adata.X.copy()
    return adata


def pool_layers(layers: Union[Mapping[str, Layer], Sequence[Layer]]) -> AnnData:
    """Concatenate the cells of all layers (gene order of the first layer)."""
    layer_list = list(layers.values()) if isinstance(layers, Mapping) else list(layers)
    genes = layer_list[0].adata.var_names
    return ad.concat(
        [layer.adata[:, genes] for layer in layer_list],
        join="inner",
        label="_layer",
        keys=[layer.name for layer in layer_list],
    )


def dense_matrix(adata: AnnData, features=None) -> np.ndarray:
    """Dense float64 copy of ``adata.X``, optionally restricted to ``features``."""
    if features is not None:
        adata = adata[:, features]
    X = adata.X
    if hasattr(X, "toarray"):
        X = X.toarray()
    return np.asarray(X, dtype=np.float64)


def select_integration_features(
    layers: Union[Mapping[str, Layer], Sequence[Layer]],
    n_features: int = 2000,
) -> pd.Index:
    """
    Select the most variable genes jointly across all layers.

    Dispersions are computed on the pooled cells of every layer with scanpy's
    dispersion-based method (``flavor="seurat"``), normalized within mean bins,
    and ranked. Ties are broken by gene id.

    Parameters
    ----------
    layers : dict or list of Layer
        Log-normalized condition layers sharing one gene set.
    n_features : int
        Number of genes to select (default: 2000).

    Returns
    -------
    pd.Index
        Selected genes, most variable first.
    """
    pooled = pool_layers(layers)
    result = sc.pp.highly_variable_genes(pooled, flavor="seurat", inplace=False)
    stats = pd.DataFrame(result)
    stats.index = pooled.var_names

    dispersion = stats["dispersions_norm"].to_numpy(dtype=np.float64)
    dispersion = np.where(np.isfinite(dispersion), dispersion, -np.inf)
    genes = pooled.var_names.to_numpy().astype(str)
    order = np.lexsort((genes, -dispersion))

    n_keep = min(int(n_features), len(order))
    selected = pd.Index(genes[order[:n_keep]])
    LOGGER.info(
        "Selected %d integration features from %d genes across %d cells",
        len(selected), pooled.n_vars, pooled.n_obs,
    )
    return selected


def scale_pooled(X: np.ndarray, max_value: float = 10) -> tuple:
    """
    Center and scale columns of ``X`` to unit variance, clipping at ``max_value``.

    Returns
    -------
    tuple
        (scaled matrix, column means, column standard deviations).
    """
    mean = X.mean(axis=0)
    std = X.std(axis=0, ddof=1) if X.shape[0] > 1 else np.ones(X.shape[1])
    std = np.where(std > 0, std, 1.0)
    scaled = np.clip((X - mean) / std, -max_value, max_value)
    return scaled, mean, std
