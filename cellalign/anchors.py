"""
Anchor finding between condition layers.

For every pair of layers, both reduced embeddings are aligned in a shared
canonical subspace, mutual nearest neighbors across the two layers become
anchor candidates, and each candidate is scored by how consistently the
neighborhoods of its two cells are anchored to each other.
"""

import itertools
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Mapping, Optional, Tuple

import numpy as np
import scipy.sparse as sp

from .errors import NoAnchorsError
from .neighbors import knn, membership_matrix
from .types import Anchor, AnchorSet, ReducedEmbedding

LOGGER = logging.getLogger(__name__)


def _standardize(coords: np.ndarray, tol: float = 1e-10) -> np.ndarray:
    centered = coords - coords.mean(axis=0)
    if coords.shape[0] < 2:
        return np.zeros_like(centered)
    std = coords.std(axis=0, ddof=1)
    # components constant within the layer (up to rounding) carry no signal
    cutoff = tol * max(float(np.abs(coords).max()), 1.0)
    scale = np.divide(1.0, std, out=np.zeros_like(std), where=std > cutoff)
    return centered * scale


def _l2_normalize(X: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(X, axis=1, keepdims=True)
    return np.divide(X, norms, out=np.zeros_like(X), where=norms > 0)


def canonical_vectors(
    coords_a: np.ndarray,
    coords_b: np.ndarray,
    n_components: Optional[int] = None,
    tol: float = 1e-10,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Canonical cell vectors of two embeddings with different cells.

    The left and right singular vectors of ``Z_a @ Z_b.T`` (standardized
    embeddings) are the projections of each layer's cells that maximize
    cross-layer correlation. They are obtained from the thin QR factors of
    both layers and the SVD of the small k x k core, so the cells x cells
    product is never formed.

    Parameters
    ----------
    coords_a, coords_b : np.ndarray
        Reduced embeddings (cells x k) of the two layers.
    n_components : int, optional
        Dimension k' of the shared subspace (default: all components with a
        non-zero canonical correlation).
    tol : float
        Relative cutoff under which singular values count as zero.

    Returns
    -------
    tuple
        (vectors_a, vectors_b, singular_values); cell vectors are L2-normalized.
    """
    q_a, r_a = np.linalg.qr(_standardize(coords_a))
    q_b, r_b = np.linalg.qr(_standardize(coords_b))
    core = r_a @ r_b.T
    w, s, _ = np.linalg.svd(core)

    n_valid = int(np.sum(s > tol * s[0])) if s.size and s[0] > 0 else 0
    if n_components is not None:
        n_valid = min(n_valid, int(n_components))
    w, s = w[:, :n_valid], s[:n_valid]
    z = (core.T @ w) / s

    u_a = q_a @ w
    u_b = q_b @ z
    if n_valid:
        pivot = u_a[np.argmax(np.abs(u_a), axis=0), np.arange(n_valid)]
        signs = np.where(pivot < 0, -1.0, 1.0)
        u_a = u_a * signs
        u_b = u_b * signs
    return _l2_normalize(u_a), _l2_normalize(u_b), s


def mutual_nearest_neighbors(nn_ab: np.ndarray, nn_ba: np.ndarray) -> sp.csr_matrix:
    """
    Mutual nearest neighbor pairs as a sparse 0/1 matrix (cells A x cells B).

    ``nn_ab[i]`` are the neighbors in B of cell i of A, ``nn_ba[j]`` the
    neighbors in A of cell j of B.
    """
    m_ab = membership_matrix(nn_ab, nn_ba.shape[0])
    m_ba = membership_matrix(nn_ba, nn_ab.shape[0])
    mutual = m_ab.multiply(m_ba.T).tocsr()
    mutual.eliminate_zeros()
    return mutual


def _anchored_fraction(
    anchors: sp.csr_matrix,
    own_neighbors: np.ndarray,
    other_neighbors: np.ndarray,
    own_idx: np.ndarray,
    other_idx: np.ndarray,
) -> np.ndarray:
    """Fraction of each anchor cell's neighbors anchored into its partner's neighborhood."""
    k = own_neighbors.shape[1]
    if k == 0:
        return np.zeros(len(own_idx))
    n_other = other_neighbors.shape[0]
    other_hood = membership_matrix(other_neighbors, n_other, include_self=True)
    # hit[x, y] > 0 when cell x is anchored to some cell in y's neighborhood
    hit = (anchors @ other_hood.T).tocsr()
    hit.data[:] = 1.0
    rows = own_neighbors[own_idx].ravel()
    cols = np.repeat(other_idx, k)
    counts = np.asarray(hit[rows, cols]).reshape(len(own_idx), k).sum(axis=1)
    return counts / k


def score_anchors(
    anchors: sp.csr_matrix,
    neighbors_a: np.ndarray,
    neighbors_b: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Score anchor pairs by shared-neighborhood consistency.

    For an anchor (a, b), the score averages the fraction of a's within-layer
    neighbors that are anchored into b's neighborhood and the mirror fraction
    for b. Scores lie in [0, 1].

    Returns
    -------
    tuple
        (index_a, index_b, score) arrays, one entry per anchor.
    """
    coo = anchors.tocoo()
    idx_a, idx_b = coo.row.astype(int), coo.col.astype(int)
    frac_a = _anchored_fraction(anchors, neighbors_a, neighbors_b, idx_a, idx_b)
    frac_b = _anchored_fraction(anchors.T.tocsr(), neighbors_b, neighbors_a, idx_b, idx_a)
    return idx_a, idx_b, np.clip((frac_a + frac_b) / 2.0, 0.0, 1.0)


def find_anchors(
    emb_a: ReducedEmbedding,
    emb_b: ReducedEmbedding,
    n_neighbors: int = 5,
    k_score: int = 30,
    score_floor: float = 0.0,
    num_cca_components: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> List[Anchor]:
    """
    Find scored anchors between two layers.

    Parameters
    ----------
    emb_a, emb_b : ReducedEmbedding
        Embeddings of the two layers on the shared basis.
    n_neighbors : int
        Neighbors searched across layers for the mutual-nearest-neighbor filter.
    k_score : int
        Within-layer neighbors used to score anchors.
    score_floor : float
        Anchors scoring below this value are dropped.
    num_cca_components : int, optional
        Dimension of the shared canonical subspace (default: k).
    cancel_event : threading.Event, optional
        Cooperative cancellation for the neighbor searches.

    Returns
    -------
    list of Anchor
        Anchors ordered by cell ids, ``cell_a`` from ``emb_a``.

    Raises
    ------
    NoAnchorsError
        If no anchor survives for this pair.
    """
    if emb_a.n_components != emb_b.n_components:
        raise ValueError(
            f"Layers '{emb_a.layer}' and '{emb_b.layer}' have different numbers "
            f"of components ({emb_a.n_components} vs {emb_b.n_components})"
        )
    if n_neighbors < 1:
        raise ValueError("n_neighbors must be a positive integer")

    ids_a = np.asarray(emb_a.cell_ids.astype(str), dtype=str)
    ids_b = np.asarray(emb_b.cell_ids.astype(str), dtype=str)

    vec_a, vec_b, _ = canonical_vectors(emb_a.coords, emb_b.coords, num_cca_components)
    if vec_a.shape[1] == 0:
        raise NoAnchorsError(emb_a.layer, emb_b.layer, "no shared canonical components")

    nn_ab = knn(vec_a, vec_b, n_neighbors, ref_ids=ids_b, cancel_event=cancel_event)
    nn_ba = knn(vec_b, vec_a, n_neighbors, ref_ids=ids_a, cancel_event=cancel_event)
    mutual = mutual_nearest_neighbors(nn_ab, nn_ba)
    if mutual.nnz == 0:
        raise NoAnchorsError(emb_a.layer, emb_b.layer, "no mutual nearest neighbors")

    within_a = knn(vec_a, vec_a, k_score, ref_ids=ids_a, exclude_self=True, cancel_event=cancel_event)
    within_b = knn(vec_b, vec_b, k_score, ref_ids=ids_b, exclude_self=True, cancel_event=cancel_event)
    idx_a, idx_b, scores = score_anchors(mutual, within_a, within_b)

    keep = scores >= score_floor
    LOGGER.info(
        "Layers %s/%s: %d mutual pairs, %d kept at score floor %.3f",
        emb_a.layer, emb_b.layer, len(scores), int(keep.sum()), score_floor,
    )
    if not keep.any():
        raise NoAnchorsError(
            emb_a.layer, emb_b.layer, f"all anchors scored below {score_floor}"
        )

    idx_a, idx_b, scores = idx_a[keep], idx_b[keep], scores[keep]
    order = np.lexsort((ids_b[idx_b], ids_a[idx_a]))
    return [
        Anchor(
            layer_a=emb_a.layer,
            cell_a=str(ids_a[idx_a[i]]),
            layer_b=emb_b.layer,
            cell_b=str(ids_b[idx_b[i]]),
            score=float(scores[i]),
        )
        for i in order
    ]


def find_all_anchors(
    embeddings: Mapping[str, ReducedEmbedding],
    n_neighbors: int = 5,
    k_score: int = 30,
    score_floor: float = 0.0,
    num_cca_components: Optional[int] = None,
    n_jobs: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
) -> AnchorSet:
    """
    Find anchors for every unordered pair of layers.

    Pairs are independent and run on a thread pool when ``n_jobs > 1``. A pair
    without anchors is recorded in ``AnchorSet.failures`` instead of aborting
    the other pairs; any other error propagates.

    Parameters
    ----------
    embeddings : dict
        Layer name to ``ReducedEmbedding``, in reference order.
    n_neighbors, k_score, score_floor, num_cca_components
        See ``find_anchors``.
    n_jobs : int, optional
        Number of worker threads (default: run pairs sequentially).
    cancel_event : threading.Event, optional
        Cooperative cancellation shared by all pairs.

    Returns
    -------
    AnchorSet
    """
    names = list(embeddings)
    ks = {emb.n_components for emb in embeddings.values()}
    if len(ks) > 1:
        raise ValueError(f"Embeddings disagree on the number of components: {sorted(ks)}")

    pairs = list(itertools.combinations(names, 2))
    kwargs = dict(
        n_neighbors=n_neighbors,
        k_score=k_score,
        score_floor=score_floor,
        num_cca_components=num_cca_components,
        cancel_event=cancel_event,
    )

    def run(pair):
        try:
            return find_anchors(embeddings[pair[0]], embeddings[pair[1]], **kwargs)
        except NoAnchorsError as exc:
            LOGGER.warning("%s", exc)
            return exc

    if n_jobs is not None and n_jobs > 1 and len(pairs) > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as executor:
            outcomes = list(executor.map(run, pairs))
    else:
        outcomes = [run(pair) for pair in pairs]

    anchors, failures = [], {}
    for pair, outcome in zip(pairs, outcomes):
        if isinstance(outcome, NoAnchorsError):
            failures[pair] = outcome
        else:
            anchors.extend(outcome)

    params = dict(kwargs, layers=tuple(names))
    params.pop("cancel_event")
    return AnchorSet(anchors=tuple(anchors), failures=failures, params=params)
