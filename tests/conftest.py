import anndata as ad
import numpy as np
import pandas as pd
import pytest

from cellalign import fit_shared_pca, normalize_and_log, partition, select_integration_features

N_GENES = 50
CELL_TYPES = ["T", "B", "Mono"]
CONDITIONS = ["CTRL", "STIM"]
STIM_GENES = [f"g{j:03d}" for j in range(5)]


def make_condition_counts(n_per_group: int = 40, n_genes: int = N_GENES, seed: int = 0) -> ad.AnnData:
    """Poisson counts for three cell types observed under two conditions.

    Each cell type over-expresses its own block of 8 marker genes; STIM cells
    over-express genes g000-g004 in every cell type.
    """
    rng = np.random.default_rng(seed)
    base = rng.gamma(2.0, 1.0, n_genes) + 0.5

    rates, types, conditions = [], [], []
    for t, cell_type in enumerate(CELL_TYPES):
        type_rate = base.copy()
        markers = slice(10 + 8 * t, 18 + 8 * t)
        type_rate[markers] *= 8.0
        for condition in CONDITIONS:
            rate = type_rate.copy()
            if condition == "STIM":
                rate[:5] *= 4.0
            rates.append(np.tile(rate, (n_per_group, 1)))
            types += [cell_type] * n_per_group
            conditions += [condition] * n_per_group

    X = rng.poisson(np.vstack(rates)).astype(np.float32)
    # interleave conditions so the layers are not contiguous blocks
    order = rng.permutation(X.shape[0])
    obs = pd.DataFrame(
        {
            "cell_type": np.asarray(types)[order],
            "condition": np.asarray(conditions)[order],
        },
        index=[f"cell{i:04d}" for i in range(X.shape[0])],
    )
    var = pd.DataFrame(index=[f"g{j:03d}" for j in range(n_genes)])
    return ad.AnnData(X=X[order], obs=obs, var=var)


def make_blobs(n_per_blob: int = 30, n_dims: int = 5, n_blobs: int = 3, seed: int = 0):
    """Well separated Gaussian blobs; returns (coords, blob label per row)."""
    rng = np.random.default_rng(seed)
    centers = rng.normal(scale=10.0, size=(n_blobs, n_dims))
    coords = np.vstack([c + rng.normal(size=(n_per_blob, n_dims)) for c in centers])
    labels = np.repeat(np.arange(n_blobs), n_per_blob)
    return coords, labels


@pytest.fixture
def counts_adata():
    return make_condition_counts()


@pytest.fixture
def adata(counts_adata):
    return normalize_and_log(counts_adata)


@pytest.fixture
def layers(adata):
    return partition(adata, "condition")


@pytest.fixture
def embeddings(layers):
    features = select_integration_features(layers, n_features=40)
    return fit_shared_pca(layers, features, n_components=10)
