"""
Shared-basis dimensionality reduction across condition layers.
"""

import logging
from typing import Dict, Mapping, Sequence, Union

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from .errors import InsufficientCellsError
from .preprocessing import dense_matrix, scale_pooled
from .types import Layer, ReducedEmbedding

LOGGER = logging.getLogger(__name__)


def fit_shared_pca(
    layers: Union[Mapping[str, Layer], Sequence[Layer]],
    features: Sequence[str],
    n_components: int = 30,
    max_value: float = 10,
    random_state: int = 0,
) -> Dict[str, ReducedEmbedding]:
    """
    Fit one PCA basis on the pooled layers and project every layer onto it.

    Features are scaled on the pooled cells (zero mean, unit variance, clipped
    at ``max_value``), so every layer is projected with the same transform and
    all embeddings share the same basis and the same number of components.

    Parameters
    ----------
    layers : dict or list of Layer
        Condition layers (log-normalized).
    features : sequence of str
        Genes to use, typically from ``select_integration_features``.
    n_components : int
        Number of principal components k.
    max_value : float
        Clip value for scaled data.
    random_state : int
        Random seed passed to PCA.

    Returns
    -------
    dict
        Mapping from layer name to ``ReducedEmbedding``.
    """
    layer_list = list(layers.values()) if isinstance(layers, Mapping) else list(layers)
    features = pd.Index(features)

    for layer in layer_list:
        if layer.n_cells < n_components:
            raise InsufficientCellsError(layer.name, layer.n_cells, n_components)
    if len(features) < n_components:
        raise ValueError(
            f"Cannot fit {n_components} components on {len(features)} features"
        )

    blocks = [dense_matrix(layer.adata, features) for layer in layer_list]
    scaled, _, _ = scale_pooled(np.vstack(blocks), max_value=max_value)

    pca = PCA(n_components=n_components, svd_solver="full", random_state=random_state)
    pooled_coords = pca.fit_transform(scaled)
    basis = pca.components_.T.copy()
    LOGGER.info(
        "Shared PCA: %d components, %.1f%% variance explained",
        n_components, 100 * pca.explained_variance_ratio_.sum(),
    )

    embeddings = {}
    start = 0
    for layer, block in zip(layer_list, blocks):
        stop = start + block.shape[0]
        embeddings[layer.name] = ReducedEmbedding(
            layer=layer.name,
            cell_ids=pd.Index(layer.cell_ids),
            coords=pooled_coords[start:stop].copy(),
            basis=basis,
            features=features,
        )
        start = stop
    return embeddings
