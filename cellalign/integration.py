"""
Anchor-based integration of condition layers into one embedding.

Layers are merged one at a time into a growing reference. Each incoming layer
receives a per-cell correction vector, averaged from the anchor differences
to the already integrated cells and smoothed over the layer's
shared-nearest-neighbor graph.
"""

import logging
import threading
from typing import Dict, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from scipy.spatial.distance import cdist

from .errors import NoAnchorsError
from .neighbors import check_cancelled, knn, row_normalize, snn_graph
from .types import AnchorSet, IntegratedEmbedding, ReducedEmbedding

LOGGER = logging.getLogger(__name__)


def anchor_weights(
    coords: np.ndarray,
    locations: np.ndarray,
    scores: np.ndarray,
    k_weight: int = 100,
    sd_weight: float = 1.0,
    chunk_size: int = 1024,
    cancel_event: Optional[threading.Event] = None,
):
    """
    Yield (row slice, weight block) pairs mapping cells to anchors.

    For every cell, the anchors within the distance ``h`` of its
    ``k_weight``-th nearest anchor get weight
    ``score * exp(-(d / h)**2 / (2 * sd_weight**2))``; rows are normalized to
    sum to one. Rows whose weights are all zero stay zero.
    """
    n_anchors = locations.shape[0]
    k = max(1, min(int(k_weight), n_anchors))
    for start in range(0, coords.shape[0], chunk_size):
        check_cancelled(cancel_event)
        stop = min(start + chunk_size, coords.shape[0])
        d = cdist(coords[start:stop], locations)
        radius = np.partition(d, k - 1, axis=1)[:, k - 1 : k]
        bandwidth = np.where(radius > 0, radius, 1.0)
        w = scores[None, :] * np.exp(-((d / bandwidth) ** 2) / (2.0 * sd_weight**2))
        w[d > radius] = 0.0
        total = w.sum(axis=1, keepdims=True)
        w = np.divide(w, total, out=np.zeros_like(w), where=total > 0)
        yield slice(start, stop), w


def correction_field(
    coords: np.ndarray,
    ref_points: np.ndarray,
    query_points: np.ndarray,
    scores: np.ndarray,
    k_weight: int = 100,
    sd_weight: float = 1.0,
    cancel_event: Optional[threading.Event] = None,
) -> np.ndarray:
    """
    Per-cell correction vectors for one query layer.

    Parameters
    ----------
    coords : np.ndarray
        Query layer embedding (cells x k).
    ref_points, query_points : np.ndarray
        Reference-side and query-side coordinates of every anchor
        (anchors x k).
    scores : np.ndarray
        Anchor scores.
    k_weight, sd_weight
        See ``anchor_weights``.

    Returns
    -------
    np.ndarray
        Correction vectors (cells x k).
    """
    diffs = ref_points - query_points
    # anchor location: midpoint of its two cells
    locations = (ref_points + query_points) / 2.0
    correction = np.zeros_like(coords, dtype=np.float64)
    for rows, w in anchor_weights(
        coords, locations, np.asarray(scores, dtype=np.float64),
        k_weight=k_weight, sd_weight=sd_weight, cancel_event=cancel_event,
    ):
        correction[rows] = w @ diffs
    return correction


def smooth_correction(
    coords: np.ndarray,
    correction: np.ndarray,
    cell_ids: Sequence[str],
    k_smooth: int = 20,
    cancel_event: Optional[threading.Event] = None,
) -> np.ndarray:
    """Average correction vectors over the layer's shared-nearest-neighbor graph."""
    if coords.shape[0] < 2:
        return correction
    nn = knn(coords, coords, k_smooth, ref_ids=cell_ids, exclude_self=True, cancel_event=cancel_event)
    graph = row_normalize(snn_graph(nn))
    return np.asarray(graph @ correction)


def _pair_anchors(anchors: AnchorSet, ref: str, query: str):
    for key in ((ref, query), (query, ref)):
        if key in anchors.failures:
            raise anchors.failures[key]
    pair_anchors = anchors.for_pair(ref, query)
    if not pair_anchors:
        raise NoAnchorsError(ref, query, "pair missing from the anchor set")
    return pair_anchors


def integrate(
    embeddings: Mapping[str, ReducedEmbedding],
    anchors: AnchorSet,
    reference_order: Optional[Sequence[str]] = None,
    k_weight: int = 100,
    sd_weight: float = 1.0,
    k_smooth: int = 20,
    cell_order: Optional[Sequence[str]] = None,
    cancel_event: Optional[threading.Event] = None,
) -> IntegratedEmbedding:
    """
    Integrate per-layer embeddings into one embedding of all cells.

    The first layer of ``reference_order`` (default: the order of
    ``embeddings``) is the initial reference. Every following layer is
    corrected toward all layers integrated before it, using the anchors of
    those pairs, then joins the reference.

    Parameters
    ----------
    embeddings : dict
        Layer name to ``ReducedEmbedding`` on a shared basis.
    anchors : AnchorSet
        Output of ``find_all_anchors``.
    reference_order : sequence of str, optional
        Merge order of the layers.
    k_weight : int
        Number of nearest anchors defining each cell's kernel bandwidth.
    sd_weight : float
        Width of the Gaussian kernel relative to that bandwidth.
    k_smooth : int
        Neighbors of the shared-nearest-neighbor graph used for smoothing.
    cell_order : sequence of str, optional
        Row order of the result (default: layer by layer).
    cancel_event : threading.Event, optional
        Cooperative cancellation for neighbor searches.

    Returns
    -------
    IntegratedEmbedding

    Raises
    ------
    NoAnchorsError
        If a layer pair needed for the merge has no anchors.
    """
    order = list(reference_order) if reference_order is not None else list(embeddings)
    if sorted(order) != sorted(embeddings):
        raise ValueError(
            f"reference_order {order} must list every layer exactly once: {list(embeddings)}"
        )
    if len({embeddings[name].n_components for name in order}) > 1:
        raise ValueError("All layers must share the same number of components")

    integrated: Dict[str, np.ndarray] = {order[0]: embeddings[order[0]].coords.copy()}
    for position, query in enumerate(order[1:], start=1):
        emb = embeddings[query]
        ref_points, query_points, scores = [], [], []
        for ref in order[:position]:
            pair_anchors = _pair_anchors(anchors, ref, query)
            ref_idx = embeddings[ref].cell_ids.get_indexer([a.cell_a for a in pair_anchors])
            query_idx = emb.cell_ids.get_indexer([a.cell_b for a in pair_anchors])
            if (ref_idx < 0).any() or (query_idx < 0).any():
                raise ValueError(f"Anchors of {ref}/{query} name cells absent from the embeddings")
            ref_points.append(integrated[ref][ref_idx])
            query_points.append(emb.coords[query_idx])
            scores.extend(a.score for a in pair_anchors)

        correction = correction_field(
            emb.coords,
            np.vstack(ref_points),
            np.vstack(query_points),
            np.asarray(scores),
            k_weight=k_weight,
            sd_weight=sd_weight,
            cancel_event=cancel_event,
        )
        correction = smooth_correction(
            emb.coords, correction, emb.cell_ids.astype(str),
            k_smooth=k_smooth, cancel_event=cancel_event,
        )
        integrated[query] = emb.coords + correction
        LOGGER.info(
            "Integrated layer %s (%d cells) using %d anchors; mean correction %.4f",
            query, emb.coords.shape[0], len(scores),
            float(np.linalg.norm(correction, axis=1).mean()),
        )

    cell_ids = pd.Index(np.concatenate([embeddings[name].cell_ids.to_numpy() for name in order]))
    layers = pd.Series(
        np.concatenate([[name] * len(embeddings[name].cell_ids) for name in order]),
        index=cell_ids,
        name="layer",
    )
    result = IntegratedEmbedding(
        cell_ids=cell_ids,
        layers=layers,
        coords=np.vstack([integrated[name] for name in order]),
    )
    if cell_order is not None:
        result = result.reindex(cell_order)
    return result
