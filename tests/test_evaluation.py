import numpy as np
import pytest

from cellalign import compare_embeddings, condition_entropy, condition_mixing_silhouette
from cellalign.evaluation import adjusted_rand, cluster_purity, summarize_integration

from conftest import make_blobs


@pytest.fixture
def separated():
    coords, labels = make_blobs(n_per_blob=50, n_dims=4, n_blobs=2)
    conditions = np.where(labels == 0, "CTRL", "STIM")
    return coords, conditions


@pytest.fixture
def mixed():
    rng = np.random.default_rng(0)
    coords = rng.normal(size=(100, 4))
    conditions = np.where(np.arange(100) % 2 == 0, "CTRL", "STIM")
    return coords, conditions


def test_silhouette_mixing_ranks_embeddings(separated, mixed):
    assert condition_mixing_silhouette(*separated) < 0.5
    assert condition_mixing_silhouette(*mixed) > 0.9


def test_silhouette_needs_two_conditions(mixed):
    coords, _ = mixed
    with pytest.raises(ValueError):
        condition_mixing_silhouette(coords, ["CTRL"] * len(coords))


def test_entropy_ranks_embeddings(separated, mixed):
    assert condition_entropy(*separated, n_neighbors=10) < 0.1
    assert condition_entropy(*mixed, n_neighbors=10) > 0.8
    coords, _ = mixed
    assert condition_entropy(coords, ["CTRL"] * len(coords)) == 0.0


def test_purity_and_ari():
    clusters = np.array(["0", "0", "1", "1", "1"])
    labels = np.array(["T", "T", "B", "B", "T"])

    assert cluster_purity(clusters, labels) == pytest.approx(4 / 5)
    assert adjusted_rand(clusters, clusters) == pytest.approx(1.0)


def test_summary_and_comparison(separated, mixed):
    coords, conditions = separated
    summary = summarize_integration(coords, conditions, clusters=conditions, labels=conditions)
    assert set(summary) == {"condition_silhouette", "condition_entropy", "cluster_purity", "ari"}

    table = compare_embeddings({"Uncorrected": coords, "Random": mixed[0]}, conditions)
    assert list(table.index) == ["Uncorrected", "Random"]
    assert table.loc["Random", "condition_silhouette"] > table.loc["Uncorrected", "condition_silhouette"]
