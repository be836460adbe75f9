import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from cellalign import InsufficientCellsError, Layer, fit_shared_pca, select_integration_features
from cellalign.preprocessing import dense_matrix, scale_pooled, store_raw_counts


def test_features_are_selected_jointly(layers, adata):
    features = select_integration_features(layers, n_features=20)

    assert len(features) == 20
    assert features.is_unique
    assert features.isin(adata.var_names).all()
    # pooled statistics do not depend on layer order
    reversed_layers = dict(reversed(list(layers.items())))
    assert set(select_integration_features(reversed_layers, n_features=20)) == set(features)


def test_feature_count_is_capped_by_gene_count(layers, adata):
    features = select_integration_features(layers, n_features=10_000)
    assert len(features) == adata.n_vars


def test_embeddings_share_one_basis(embeddings, layers):
    assert list(embeddings) == list(layers)
    bases = [emb.basis for emb in embeddings.values()]
    for emb in embeddings.values():
        assert emb.n_components == 10
        assert emb.coords.shape == (layers[emb.layer].n_cells, 10)
        assert emb.basis.shape == (40, 10)
        assert list(emb.cell_ids) == list(layers[emb.layer].cell_ids)
        np.testing.assert_array_equal(emb.basis, bases[0])


def test_projection_uses_pooled_scaling(embeddings, layers):
    features = next(iter(embeddings.values())).features
    pooled = np.vstack([dense_matrix(layer.adata, features) for layer in layers.values()])
    scaled, _, _ = scale_pooled(pooled)
    basis = next(iter(embeddings.values())).basis

    expected = (scaled - scaled.mean(axis=0)) @ basis
    observed = np.vstack([emb.coords for emb in embeddings.values()])
    np.testing.assert_allclose(observed, expected, atol=1e-8)


def test_duplicated_cells_get_identical_coordinates(adata):
    first = adata[adata.obs["condition"] == "CTRL"].copy()
    twin = first.copy()
    twin.obs_names = [f"{name}_twin" for name in first.obs_names]
    layers = {
        "A": Layer("A", first, np.arange(first.n_obs)),
        "B": Layer("B", twin, np.arange(first.n_obs, 2 * first.n_obs)),
    }

    embeddings = fit_shared_pca(layers, adata.var_names[:30], n_components=5)
    np.testing.assert_allclose(embeddings["A"].coords, embeddings["B"].coords, atol=1e-8)


def test_small_layer_raises_insufficient_cells(layers):
    name, layer = next(iter(layers.items()))
    small = Layer(name, layer.adata[:3].copy(), layer.positions[:3])

    with pytest.raises(InsufficientCellsError) as excinfo:
        fit_shared_pca({name: small}, layer.adata.var_names[:20], n_components=5)
    assert excinfo.value.layer == name
    assert excinfo.value.n_cells == 3
    assert excinfo.value.n_components == 5


def test_too_few_features_is_rejected(layers):
    with pytest.raises(ValueError, match="features"):
        fit_shared_pca(layers, ["g000", "g001"], n_components=5)


def test_scale_pooled_clips_and_handles_constant_columns():
    X = np.column_stack([np.r_[np.zeros(99), 1000.0], np.ones(100)])
    scaled, mean, std = scale_pooled(X, max_value=3)

    assert scaled[:, 0].max() == 3
    np.testing.assert_array_equal(scaled[:, 1], 0.0)
    assert std[1] == 1.0
    assert mean[1] == 1.0


def test_store_raw_counts_copies(counts_adata):
    out = store_raw_counts(counts_adata)
    assert "counts" in out.layers
    assert "counts" not in counts_adata.layers
    np.testing.assert_array_equal(out.layers["counts"], counts_adata.X)


def test_dense_matrix_handles_sparse(adata):
    sparse = adata.copy()
    sparse.X = sp.csr_matrix(sparse.X)
    np.testing.assert_array_equal(dense_matrix(sparse), np.asarray(adata.X, dtype=np.float64))
    assert dense_matrix(sparse, pd.Index(["g001", "g000"])).shape == (adata.n_obs, 2)
