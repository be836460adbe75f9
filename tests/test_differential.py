import numpy as np
import pandas as pd
import pytest

from cellalign import EmptyGroupError, as_records, compare_all_clusters, compare_conditions
from cellalign.differential import RESULT_COLUMNS, adjust_pvalues, rank_sum_test

from conftest import STIM_GENES


def test_swapping_conditions_negates_fold_changes(adata):
    kwargs = dict(min_log_fc=0.0, target_cluster="T")
    ab = compare_conditions(adata, "cell_type", "condition", condition_a="STIM", condition_b="CTRL", **kwargs)
    ba = compare_conditions(adata, "cell_type", "condition", condition_a="CTRL", condition_b="STIM", **kwargs)

    ab, ba = ab.set_index("gene"), ba.set_index("gene").loc[ab["gene"]]
    np.testing.assert_allclose(ab["log2_fold_change"], -ba["log2_fold_change"])
    np.testing.assert_allclose(ab["p_value"], ba["p_value"])
    np.testing.assert_allclose(ab["p_value_adj"], ba["p_value_adj"])


def test_condition_effect_genes_are_detected(adata):
    result = compare_conditions(adata, "cell_type", "condition", "B", "STIM", "CTRL", min_log_fc=0.0)
    hits = result.set_index("gene").loc[STIM_GENES]

    assert (hits["log2_fold_change"] > 0).all()
    assert (hits["p_value_adj"] < 0.05).all()
    assert (result["cluster"] == "B").all()
    assert list(result.columns) == RESULT_COLUMNS


def test_only_positive_keeps_enriched_genes(adata):
    result = compare_conditions(
        adata, "cell_type", "condition", "Mono", "CTRL", "STIM",
        min_log_fc=0.25, only_positive=True,
    )

    assert (result["log2_fold_change"] > 0).all()
    assert (result["log2_fold_change"].abs() >= 0.25).all()
    # STIM genes are depleted in CTRL
    assert not result["gene"].isin(STIM_GENES).any()


def test_min_log_fc_filters_after_adjustment(adata):
    full = compare_conditions(adata, "cell_type", "condition", "T", "STIM", "CTRL", min_log_fc=0.0)
    filtered = compare_conditions(adata, "cell_type", "condition", "T", "STIM", "CTRL", min_log_fc=0.5)

    assert len(full) == adata.n_vars
    expected = full[full["log2_fold_change"].abs() >= 0.5].set_index("gene")
    observed = filtered.set_index("gene").loc[expected.index]
    np.testing.assert_allclose(observed["p_value_adj"], expected["p_value_adj"])


def test_results_are_sorted_with_gene_tie_break(adata):
    result = compare_conditions(adata, "cell_type", "condition", "T", "STIM", "CTRL", min_log_fc=0.0)
    keys = list(zip(result["p_value_adj"], result["gene"]))
    assert keys == sorted(keys)

    by_fc = compare_conditions(
        adata, "cell_type", "condition", "T", "STIM", "CTRL",
        min_log_fc=0.0, sort_by="log2_fold_change",
    )
    assert by_fc["log2_fold_change"].is_monotonic_decreasing

    with pytest.raises(ValueError):
        compare_conditions(adata, "cell_type", "condition", "T", "STIM", "CTRL", sort_by="nope")


def test_runs_are_deterministic(adata):
    first = compare_all_clusters(adata, "cell_type", "condition", "STIM", "CTRL")
    second = compare_all_clusters(adata, "cell_type", "condition", "STIM", "CTRL", n_jobs=3)
    pd.testing.assert_frame_equal(first.results, second.results)


def test_empty_group_raises(adata):
    clusters = adata.obs["cell_type"].astype(str).copy()
    clusters[(adata.obs["condition"] == "STIM").to_numpy() & (clusters == "T").to_numpy()] = "T_stim_only"

    with pytest.raises(EmptyGroupError) as excinfo:
        compare_conditions(adata, clusters, "condition", "T", "STIM", "CTRL")
    assert excinfo.value.cluster == "T"
    assert excinfo.value.condition == "STIM"


def test_empty_cluster_does_not_abort_batch(adata):
    clusters = adata.obs["cell_type"].astype(str).copy()
    clusters[(adata.obs["condition"] == "STIM").to_numpy() & (clusters == "T").to_numpy()] = "T_stim_only"

    batch = compare_all_clusters(adata, clusters, "condition", "STIM", "CTRL", n_jobs=2)

    assert not batch.ok
    assert set(batch.failures) == {"T", "T_stim_only"}
    assert all(isinstance(exc, EmptyGroupError) for exc in batch.failures.values())
    assert list(pd.unique(batch.results["cluster"])) == ["B", "Mono"]


def test_batch_orders_numeric_clusters_numerically(adata):
    numeric = pd.Series(
        np.where(np.arange(adata.n_obs) % 2 == 0, "10", "2"), index=adata.obs_names
    )
    batch = compare_all_clusters(adata, numeric, "condition", "STIM", "CTRL", min_log_fc=0.0)

    assert batch.ok
    assert list(pd.unique(batch.results["cluster"])) == ["2", "10"]


def test_batch_with_only_failures_returns_empty_table(adata):
    batch = compare_all_clusters(
        adata, "cell_type", "condition", "STIM", "CTRL", clusters_to_test=["missing"]
    )
    assert batch.results.empty
    assert list(batch.results.columns) == RESULT_COLUMNS
    assert set(batch.failures) == {"missing"}


def test_identical_conditions_are_rejected(adata):
    with pytest.raises(ValueError):
        compare_conditions(adata, "cell_type", "condition", "T", "STIM", "STIM")


def test_counts_layer_can_be_tested(counts_adata):
    adata = counts_adata.copy()
    adata.layers["counts"] = adata.X.copy()
    adata.X = np.zeros_like(adata.X)

    result = compare_conditions(
        adata, "cell_type", "condition", "T", "STIM", "CTRL", layer="counts"
    )
    assert result["gene"].isin(STIM_GENES).sum() == len(STIM_GENES)


def test_as_records_keeps_order(adata):
    result = compare_conditions(adata, "cell_type", "condition", "T", "STIM", "CTRL", min_log_fc=0.0)
    records = as_records(result)

    assert [r.gene for r in records] == list(result["gene"])
    assert records[0].cluster == "T"
    assert records[0].p_value_adj == pytest.approx(result["p_value_adj"].iloc[0])


def test_adjust_pvalues_methods():
    p = np.array([0.01, 0.04, 0.03, 0.5, np.nan])

    bh = adjust_pvalues(p, "fdr_bh")
    np.testing.assert_allclose(bh[:4], [0.04, 0.16 / 3, 0.16 / 3, 0.5])
    assert np.isnan(bh[4])

    bonferroni = adjust_pvalues(p, "bonferroni")
    np.testing.assert_allclose(bonferroni[:4], [0.04, 0.16, 0.12, 1.0])


def test_rank_sum_constant_gene_has_unit_p_value():
    X_a = np.column_stack([np.zeros(10), np.arange(10.0)])
    X_b = np.column_stack([np.zeros(12), np.arange(10.0, 22.0)])

    statistic, pvalue = rank_sum_test(X_a, X_b)
    assert pvalue[0] == 1.0
    assert pvalue[1] < 0.001
    assert statistic[1] == 0.0
