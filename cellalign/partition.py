"""
Split an expression matrix into per-condition layers and merge them back.
"""

import logging
from typing import Dict, Mapping, Sequence, Union

import anndata as ad
import numpy as np
import pandas as pd
from anndata import AnnData

from .errors import ColumnMismatchError, InvalidLabelError
from .types import Layer

LOGGER = logging.getLogger(__name__)


def resolve_labels(
    adata: AnnData,
    labels: Union[str, pd.Series, Mapping],
    kind: str = "condition",
) -> pd.Series:
    """
    Return one label per cell of ``adata``, in ``adata.obs_names`` order.

    Parameters
    ----------
    adata : AnnData
        Expression matrix.
    labels : str, pd.Series or mapping
        Column name in ``adata.obs``, or a mapping from cell id to label.
    kind : str
        Label kind used in error messages.

    Returns
    -------
    pd.Series
        String labels indexed by cell id.
    """
    if isinstance(labels, str):
        if labels not in adata.obs.columns:
            raise InvalidLabelError(f"{kind} column '{labels}' not found in adata.obs")
        series = adata.obs[labels]
    else:
        series = labels.copy() if isinstance(labels, pd.Series) else pd.Series(dict(labels))
        series.index = series.index.astype(str)
        if series.index.has_duplicates:
            raise InvalidLabelError(f"{kind} labels name some cells more than once")
        extra = series.index.difference(adata.obs_names)
        if len(extra) > 0:
            raise InvalidLabelError(
                f"{kind} labels reference {len(extra)} cells absent from the matrix "
                f"(e.g. {list(extra[:3])})"
            )
        series = series.reindex(adata.obs_names)

    missing = series.isna().to_numpy()
    if missing.any():
        cells = list(adata.obs_names[missing][:3])
        raise InvalidLabelError(
            f"{int(missing.sum())} cells have no {kind} label (e.g. {cells})"
        )
    return pd.Series(series.astype(str).to_numpy(), index=adata.obs_names, name=kind)


def partition(
    adata: AnnData,
    labels: Union[str, pd.Series, Mapping],
) -> Dict[str, Layer]:
    """
    Split ``adata`` into one layer per condition.

    Layers are returned in order of first appearance of each label. The input
    matrix is not modified.

    Parameters
    ----------
    adata : AnnData
        Expression matrix (cells x genes).
    labels : str, pd.Series or mapping
        Condition label per cell; column name in ``adata.obs`` or mapping keyed
        by cell id.

    Returns
    -------
    dict
        Mapping from condition tag to ``Layer``.
    """
    if adata.obs_names.has_duplicates:
        raise InvalidLabelError("Cell identifiers must be unique to partition by condition")

    conditions = resolve_labels(adata, labels)
    values = conditions.to_numpy()

    layers = {}
    for name in pd.unique(values):
        positions = np.flatnonzero(values == name)
        layers[name] = Layer(
            name=name,
            adata=adata[positions].copy(),
            positions=positions,
        )
        LOGGER.info("Layer %s: %d cells", name, len(positions))
    return layers


def merge(layers: Union[Mapping[str, Layer], Sequence[Layer]]) -> AnnData:
    """
    Reconstruct one matrix from layers.

    Gene order follows the first layer. When the layers' positions form a full
    partition of a source matrix, the source row order is restored.

    Parameters
    ----------
    layers : dict or list of Layer
        Layers to merge.

    Returns
    -------
    AnnData
        Merged matrix.
    """
    layer_list = list(layers.values()) if isinstance(layers, Mapping) else list(layers)
    if not layer_list:
        raise ValueError("merge() needs at least one layer")

    genes = layer_list[0].adata.var_names
    parts = []
    for layer in layer_list:
        var_names = layer.adata.var_names
        if len(var_names) != len(genes) or not var_names.isin(genes).all():
            raise ColumnMismatchError(
                f"Layer '{layer.name}' gene set differs from layer "
                f"'{layer_list[0].name}' ({len(var_names)} vs {len(genes)} genes)"
            )
        parts.append(layer.adata if var_names.equals(genes) else layer.adata[:, genes])

    merged = ad.concat(parts, join="inner", merge="same", uns_merge="same")

    positions = np.concatenate([np.asarray(layer.positions) for layer in layer_list])
    n = merged.n_obs
    if len(positions) == n and np.array_equal(np.sort(positions), np.arange(n)):
        order = np.empty(n, dtype=int)
        order[positions] = np.arange(n)
        merged = merged[order].copy()
    return merged
