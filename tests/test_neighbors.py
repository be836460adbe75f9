import threading

import numpy as np
import pytest
from scipy.spatial.distance import cdist

from cellalign import OperationCancelledError
from cellalign.neighbors import knn, membership_matrix, row_normalize, snn_graph


def test_knn_matches_brute_force():
    rng = np.random.default_rng(1)
    query, ref = rng.normal(size=(25, 4)), rng.normal(size=(40, 4))

    indices, distances = knn(query, ref, 6, chunk_size=7, return_distance=True)

    expected = np.argsort(cdist(query, ref), axis=1, kind="stable")[:, :6]
    np.testing.assert_array_equal(indices, expected)
    np.testing.assert_allclose(distances, np.sort(cdist(query, ref), axis=1)[:, :6])


def test_knn_excludes_self():
    rng = np.random.default_rng(2)
    X = rng.normal(size=(30, 3))
    ids = [f"c{i:02d}" for i in range(30)][::-1]

    indices = knn(X, X, 5, ref_ids=ids, exclude_self=True, chunk_size=8)
    assert indices.shape == (30, 5)
    assert not (indices == np.arange(30)[:, None]).any()


def test_knn_breaks_ties_by_identifier():
    ref = np.zeros((3, 2))
    query = np.ones((1, 2))

    assert list(knn(query, ref, 3, ref_ids=["b", "c", "a"])[0]) == [2, 0, 1]


def test_knn_caps_k_at_candidates():
    X = np.arange(8.0).reshape(4, 2)
    assert knn(X, X, 10, exclude_self=True).shape == (4, 3)


def test_knn_honours_cancel_event():
    event = threading.Event()
    event.set()
    with pytest.raises(OperationCancelledError):
        knn(np.zeros((5, 2)), np.zeros((5, 2)), 2, cancel_event=event)


def test_snn_graph_is_symmetric_jaccard():
    indices = np.array([[1, 2], [0, 2], [0, 1], [4, 2], [3, 2]])
    graph = snn_graph(indices).toarray()

    np.testing.assert_allclose(graph, graph.T)
    np.testing.assert_allclose(np.diag(graph), 1.0)
    # {0, 1, 2} vs {1, 0, 2}
    assert graph[0, 1] == pytest.approx(1.0)
    # {3, 4, 2} vs {0, 1, 2}
    assert graph[3, 0] == pytest.approx(1 / 5)


def test_membership_and_row_normalize():
    M = membership_matrix(np.array([[1, 2], [0, 0]]), 3, include_self=True)
    assert M.toarray().tolist() == [[1, 1, 1], [1, 1, 0]]

    W = row_normalize(M).toarray()
    np.testing.assert_allclose(W.sum(axis=1), 1.0)
