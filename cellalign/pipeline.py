"""
End-to-end integration: partition -> shared reduction -> anchors -> integration.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Union

import pandas as pd
from anndata import AnnData

from .anchors import find_all_anchors
from .config import IntegrationConfig
from .integration import integrate
from .partition import partition
from .preprocessing import select_integration_features
from .reduction import fit_shared_pca
from .types import AnchorSet, IntegratedEmbedding, Layer, ReducedEmbedding

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntegrationResult:
    """Outputs of every integration stage."""

    layers: Dict[str, Layer]
    features: pd.Index
    embeddings: Dict[str, ReducedEmbedding]
    anchors: AnchorSet
    integrated: IntegratedEmbedding


def run_integration(
    adata: AnnData,
    conditions: Union[str, pd.Series, Mapping],
    config: Optional[IntegrationConfig] = None,
    cancel_event: Optional[threading.Event] = None,
) -> IntegrationResult:
    """
    Integrate the conditions of a log-normalized expression matrix.

    Parameters
    ----------
    adata : AnnData
        Log-normalized expression matrix; not modified.
    conditions : str, pd.Series or mapping
        Condition label per cell (.obs column name or mapping by cell id).
    config : IntegrationConfig, optional
        Parameters (default: ``IntegrationConfig()``).
    cancel_event : threading.Event, optional
        Cooperative cancellation for neighbor searches.

    Returns
    -------
    IntegrationResult
        Integrated embedding in the row order of ``adata``, plus every
        intermediate stage output.
    """
    config = config or IntegrationConfig()

    layers = partition(adata, conditions)
    features = select_integration_features(layers, n_features=config.num_variable_features)
    embeddings = fit_shared_pca(layers, features, n_components=config.num_components)

    if len(embeddings) < 2:
        LOGGER.info("Single condition: reduced embedding returned without correction")
    anchors = find_all_anchors(
        embeddings,
        n_neighbors=config.n_neighbors,
        k_score=config.k_score,
        score_floor=config.anchor_score_floor,
        num_cca_components=config.num_cca_components,
        n_jobs=config.n_jobs,
        cancel_event=cancel_event,
    )
    integrated = integrate(
        embeddings,
        anchors,
        k_weight=config.k_weight,
        sd_weight=config.sd_weight,
        k_smooth=config.k_smooth,
        cell_order=adata.obs_names,
        cancel_event=cancel_event,
    )
    return IntegrationResult(
        layers=layers,
        features=features,
        embeddings=embeddings,
        anchors=anchors,
        integrated=integrated,
    )
