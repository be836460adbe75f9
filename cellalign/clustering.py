"""
Cluster assignment on an integrated embedding.

Clustering is an external collaborator of the integration core: anything that
maps an ``IntegratedEmbedding`` to a cell -> cluster Series can be plugged in.
``LeidenClusterAssigner`` is the default, built on the scanpy neighbors graph.
"""

from typing import List, Optional, Protocol, Sequence

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData

from .types import IntegratedEmbedding


class ClusterAssigner(Protocol):
    """Maps an integrated embedding to one cluster id per cell."""

    def __call__(self, embedding: IntegratedEmbedding) -> pd.Series:
        ...


def embedding_to_anndata(embedding: IntegratedEmbedding, key: str = "X_integrated") -> AnnData:
    """Wrap an embedding in a minimal AnnData for scanpy graph tools."""
    obs = pd.DataFrame({"layer": embedding.layers.to_numpy()}, index=embedding.cell_ids.astype(str))
    adata = AnnData(obs=obs)
    adata.obsm[key] = np.asarray(embedding.coords)
    return adata


def compute_neighbors(
    adata: AnnData,
    use_rep: str,
    n_neighbors: int = 30,
    metric: str = "euclidean",
    random_state: int = 0,
    key_added: Optional[str] = None,
) -> None:
    """
    Compute the neighbors graph on a given representation.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix.
    use_rep : str
        Key in .obsm to use for neighbor computation.
    n_neighbors : int
        Number of neighbors for the graph.
    metric : str
        Distance metric ('euclidean', 'cosine', etc.).
    random_state : int
        Random seed.
    key_added : str, optional
        Key for storing the neighbors graph (default: 'neighbors').
    """
    sc.pp.neighbors(
        adata,
        use_rep=use_rep,
        n_neighbors=min(n_neighbors, adata.n_obs - 1),
        metric=metric,
        random_state=random_state,
        key_added=key_added,
    )


def run_leiden_clustering(
    adata: AnnData,
    resolutions: Sequence[float] = (0.5,),
    neighbors_key: Optional[str] = None,
    key_prefix: str = "leiden",
    random_state: int = 0,
) -> List[str]:
    """
    Run Leiden clustering at one or more resolutions.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with neighbors computed.
    resolutions : list of float
        Resolution parameters to test.
    neighbors_key : str, optional
        Key for neighbors graph. If None, uses default.
    key_prefix : str
        Prefix for cluster column names in .obs.
    random_state : int
        Random seed.

    Returns
    -------
    list of str
        The .obs columns written, one per resolution.
    """
    keys = []
    for res in resolutions:
        key_added = f"{key_prefix}_{res}"
        sc.tl.leiden(
            adata,
            resolution=res,
            neighbors_key=neighbors_key,
            key_added=key_added,
            random_state=random_state,
        )
        keys.append(key_added)
    return keys


class LeidenClusterAssigner:
    """Leiden clustering of the integrated embedding's neighbors graph."""

    def __init__(
        self,
        resolution: float = 0.5,
        n_neighbors: int = 30,
        metric: str = "euclidean",
        random_state: int = 0,
    ):
        self.resolution = resolution
        self.n_neighbors = n_neighbors
        self.metric = metric
        self.random_state = random_state

    def __call__(self, embedding: IntegratedEmbedding) -> pd.Series:
        adata = embedding_to_anndata(embedding)
        compute_neighbors(
            adata,
            use_rep="X_integrated",
            n_neighbors=self.n_neighbors,
            metric=self.metric,
            random_state=self.random_state,
        )
        (key,) = run_leiden_clustering(
            adata,
            resolutions=[self.resolution],
            random_state=self.random_state,
        )
        clusters = adata.obs[key].astype(str)
        clusters.index = embedding.cell_ids
        clusters.name = "cluster"
        return clusters
