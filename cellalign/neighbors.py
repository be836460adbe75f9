"""
Exact nearest-neighbor search and shared-nearest-neighbor graphs.

Searches are brute force over chunks of query cells so a cancel event can be
checked between chunks. Ties in distance are broken by cell identifier.
"""

import threading
from typing import Optional, Sequence

import numpy as np
import scipy.sparse as sp
from scipy.spatial.distance import cdist

from .errors import OperationCancelledError


def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelledError("Neighbor search cancelled")


def knn(
    query: np.ndarray,
    ref: np.ndarray,
    k: int,
    ref_ids: Optional[Sequence[str]] = None,
    exclude_self: bool = False,
    chunk_size: int = 1024,
    cancel_event: Optional[threading.Event] = None,
    return_distance: bool = False,
):
    """
    Find the ``k`` nearest rows of ``ref`` for every row of ``query``.

    Parameters
    ----------
    query : np.ndarray
        Query points (n_query x d).
    ref : np.ndarray
        Reference points (n_ref x d).
    k : int
        Number of neighbors; capped at the number of candidates.
    ref_ids : sequence of str, optional
        Identifiers of ``ref`` rows used to break distance ties. Defaults to
        row order.
    exclude_self : bool
        If True, ``query`` and ``ref`` are the same points and each row's own
        index is never returned.
    chunk_size : int
        Number of query rows per distance block.
    cancel_event : threading.Event, optional
        Checked before every block; raises ``OperationCancelledError`` once set.
    return_distance : bool
        Also return the neighbor distances.

    Returns
    -------
    np.ndarray or tuple
        Neighbor indices into ``ref`` (n_query x k), nearest first, and
        optionally the matching distances.
    """
    n_query, n_ref = query.shape[0], ref.shape[0]
    k = int(min(k, n_ref - 1 if exclude_self else n_ref))
    if k < 1:
        empty = np.empty((n_query, 0), dtype=int)
        return (empty, np.empty((n_query, 0))) if return_distance else empty

    if ref_ids is None:
        perm = np.arange(n_ref)
    else:
        perm = np.argsort(np.asarray(ref_ids).astype(str), kind="stable")
    ref_sorted = ref[perm]
    # position of each ref row inside ref_sorted
    inverse = np.empty(n_ref, dtype=int)
    inverse[perm] = np.arange(n_ref)

    indices = np.empty((n_query, k), dtype=int)
    distances = np.empty((n_query, k), dtype=np.float64)
    for start in range(0, n_query, chunk_size):
        check_cancelled(cancel_event)
        stop = min(start + chunk_size, n_query)
        d = cdist(query[start:stop], ref_sorted)
        if exclude_self:
            rows = np.arange(stop - start)
            d[rows, inverse[start:stop]] = np.inf
        order = np.argsort(d, axis=1, kind="stable")[:, :k]
        indices[start:stop] = perm[order]
        distances[start:stop] = np.take_along_axis(d, order, axis=1)

    if return_distance:
        return indices, distances
    return indices


def membership_matrix(indices: np.ndarray, n_ref: int, include_self: bool = False) -> sp.csr_matrix:
    """Sparse 0/1 matrix with row i marking the neighbors of i (and i itself if asked)."""
    n, k = indices.shape
    rows = np.repeat(np.arange(n), k)
    cols = indices.ravel()
    if include_self:
        rows = np.concatenate([rows, np.arange(n)])
        cols = np.concatenate([cols, np.arange(n)])
    data = np.ones(len(rows), dtype=np.float64)
    M = sp.csr_matrix((data, (rows, cols)), shape=(n, n_ref))
    M.data[:] = 1.0
    return M


def snn_graph(indices: np.ndarray) -> sp.csr_matrix:
    """
    Shared-nearest-neighbor graph with Jaccard weights.

    Parameters
    ----------
    indices : np.ndarray
        Within-set neighbor indices (n x k), self excluded.

    Returns
    -------
    scipy.sparse.csr_matrix
        Symmetric n x n matrix; entry (i, j) is the Jaccard index of the
        neighborhoods of i and j, each neighborhood including the cell itself.
    """
    n = indices.shape[0]
    M = membership_matrix(indices, n, include_self=True)
    shared = (M @ M.T).tocoo()
    sizes = np.asarray(M.sum(axis=1)).ravel()
    union = sizes[shared.row] + sizes[shared.col] - shared.data
    weights = shared.data / union
    return sp.csr_matrix((weights, (shared.row, shared.col)), shape=(n, n))


def row_normalize(W: sp.spmatrix) -> sp.csr_matrix:
    W = sp.csr_matrix(W, dtype=np.float64)
    sums = np.asarray(W.sum(axis=1)).ravel()
    scale = np.divide(1.0, sums, out=np.zeros_like(sums), where=sums > 0)
    return sp.diags(scale) @ W
