# tests/test_fold_change.py
import math
import warnings

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from clusterfoldsim.errors import DataError, NumericInstabilityWarning
from clusterfoldsim.fold_change import (
    estimate_fold_changes,
    recommend_n_subsampling,
    shrink_iterations,
)


# ----------------------------------------------------------------------
# Synthetic data
# ----------------------------------------------------------------------
def constant_clusters(profiles, n_cells=10):
    """
    features x cells matrix where every cell of a cluster equals its profile,
    so subsampled means are exact and fold-changes do not depend on the seed.
    """
    cols, labels = [], []
    for label, prof in profiles.items():
        for _ in range(n_cells):
            cols.append(np.asarray(prof, dtype=float))
            labels.append(label)
    return np.column_stack(cols), np.asarray(labels)


def poisson_dataset(n_genes=30, n_per_cluster=40, n_clusters=3, seed=0):
    rng = np.random.default_rng(seed)
    blocks, labels = [], []
    for c in range(n_clusters):
        lam = np.full(n_genes, 1.0)
        lam[c * 5:(c + 1) * 5] = 6.0
        blocks.append(rng.poisson(lam[:, None], size=(n_genes, n_per_cluster)))
        labels += [f"c{c}"] * n_per_cluster
    return np.hstack(blocks).astype(float), np.asarray(labels)


# ----------------------------------------------------------------------
# Fold-change values
# ----------------------------------------------------------------------
def test_constant_clusters_give_expected_shrunk_log2fc():
    X, labels = constant_clusters({"a": [4, 1, 2], "b": [1, 4, 2]})
    T = 6
    sig = estimate_fold_changes(
        X, labels, feature_names=["g0", "g1", "g2"], n_subsampling=T,
        subsample_fraction=0.5, pseudocount=0.1, seed=0,
    )

    keep = T / (T + 1)  # all iterations agree in sign
    up = math.log2(4.1 / 1.1)

    assert sig.clusters == ["a", "b"]
    assert list(sig.features) == ["g0", "g1", "g2"]
    assert sig.fold_changes.loc["a", "g0"] == pytest.approx(up * keep)
    assert sig.fold_changes.loc["a", "g1"] == pytest.approx(-up * keep)
    assert sig.fold_changes.loc["b", "g0"] == pytest.approx(-up * keep)
    # equal means in every iteration: no sign information -> shrunk to zero
    assert sig.fold_changes.loc["a", "g2"] == pytest.approx(0.0)
    assert sig.mean_fold_changes.loc["a", "g0"] == pytest.approx(up)
    assert (sig.iterations_used == T).all()


def test_dataframe_input_uses_index_as_feature_names():
    X, labels = constant_clusters({"a": [3, 1], "b": [1, 3]})
    df = pd.DataFrame(X, index=["CD3E", "MS4A1"])
    sig = estimate_fold_changes(df, labels, n_subsampling=3, seed=1)
    assert list(sig.features) == ["CD3E", "MS4A1"]


def test_sparse_and_dense_inputs_agree():
    X, labels = poisson_dataset(seed=3)
    dense = estimate_fold_changes(X, labels, n_subsampling=5, seed=11)
    sparse = estimate_fold_changes(sp.csr_matrix(X), labels, n_subsampling=5, seed=11)
    np.testing.assert_allclose(dense.fold_changes.to_numpy(), sparse.fold_changes.to_numpy())


def test_undetected_features_are_left_out():
    X, labels = constant_clusters({"a": [3, 0, 1], "b": [1, 0, 3]})
    sig = estimate_fold_changes(X, labels, feature_names=["g0", "empty", "g2"], n_subsampling=3, seed=0)
    assert "empty" not in sig.features
    assert sig.fold_changes.notna().all().all()


def test_numeric_labels_sorted_naturally():
    X, labels = constant_clusters({"10": [3, 1], "2": [1, 3], "1": [2, 2]})
    sig = estimate_fold_changes(X, labels, n_subsampling=2, seed=0)
    assert sig.clusters == ["1", "2", "10"]


# ----------------------------------------------------------------------
# Determinism
# ----------------------------------------------------------------------
def test_same_seed_reproducible_different_seed_differs():
    X, labels = poisson_dataset(seed=5)
    s1 = estimate_fold_changes(X, labels, n_subsampling=8, seed=42)
    s2 = estimate_fold_changes(X, labels, n_subsampling=8, seed=42)
    s3 = estimate_fold_changes(X, labels, n_subsampling=8, seed=43)

    pd.testing.assert_frame_equal(s1.fold_changes, s2.fold_changes)
    assert not np.allclose(s1.fold_changes.to_numpy(), s3.fold_changes.to_numpy())


# ----------------------------------------------------------------------
# Shrinkage
# ----------------------------------------------------------------------
def test_shrink_iterations_sign_consistency():
    # iterations x clusters x features
    stack = np.array(
        [
            [[1.0, 1.0]],
            [[1.0, -1.0]],
            [[1.0, 1.0]],
            [[1.0, -1.0]],
        ]
    )
    shrunk, mean, consistency, used = shrink_iterations(stack)

    # stable sign: q = 4.5 / 5 -> s = 0.8
    assert consistency[0, 0] == pytest.approx(0.8)
    assert shrunk[0, 0] == pytest.approx(0.8)
    # two up, two down: q = 0.5 -> s = 0
    assert mean[0, 1] == pytest.approx(0.0)
    assert shrunk[0, 1] == pytest.approx(0.0)
    assert used.tolist() == [4]


def test_shrink_iterations_ignores_skipped_iterations():
    stack = np.array(
        [
            [[2.0], [np.nan]],
            [[2.0], [1.0]],
            [[2.0], [1.0]],
        ]
    )
    shrunk, mean, consistency, used = shrink_iterations(stack)
    assert used.tolist() == [3, 2]
    assert mean[1, 0] == pytest.approx(1.0)
    # T = 2, all positive: q = 2.5 / 3
    assert consistency[1, 0] == pytest.approx(abs(2 * 2.5 / 3 - 1))


def test_noise_features_shrink_more_than_markers():
    X, labels = poisson_dataset(seed=9)
    sig = estimate_fold_changes(X, labels, n_subsampling=20, seed=0, feature_names=[f"g{i}" for i in range(30)])

    markers = sig.sign_consistency.loc["c0", ["g0", "g1", "g2", "g3", "g4"]]
    noise = sig.sign_consistency.loc["c0", [f"g{i}" for i in range(15, 30)]]
    assert markers.min() > noise.mean()


# ----------------------------------------------------------------------
# Advisory iteration count
# ----------------------------------------------------------------------
def test_recommend_n_subsampling():
    # 30 cells, 10 drawn: 30 * (2/3)^9 < 1 <= 30 * (2/3)^8
    assert recommend_n_subsampling([30], 1 / 3) == 9
    assert recommend_n_subsampling([30, 300], 1 / 3) > 9
    assert recommend_n_subsampling([30, 50], 1.0) == 1


def test_signature_reports_recommendation():
    X, labels = poisson_dataset(n_per_cluster=30, seed=1)
    sig = estimate_fold_changes(X, labels, n_subsampling=2, subsample_fraction=1 / 3, seed=0)
    assert sig.recommended_n_subsampling == 9
    assert sig.cluster_sizes.tolist() == [30, 30, 30]


# ----------------------------------------------------------------------
# Errors and warnings
# ----------------------------------------------------------------------
def test_single_cluster_raises():
    X, labels = constant_clusters({"a": [1, 2]})
    with pytest.raises(DataError, match="2 distinct clusters"):
        estimate_fold_changes(X, labels)


def test_label_count_mismatch_raises():
    X, labels = constant_clusters({"a": [1, 2], "b": [2, 1]})
    with pytest.raises(DataError, match="labels"):
        estimate_fold_changes(X, labels[:-1])


def test_cluster_too_small_to_sample_is_left_out(caplog):
    X, labels = poisson_dataset(n_genes=12, n_per_cluster=30, n_clusters=2, seed=2)
    # 4 cells * 1/3 -> 1 sampled cell: never estimable
    X = np.column_stack([X, np.full((12, 4), 2.0)])
    labels = np.concatenate([labels, ["tiny"] * 4])

    with caplog.at_level("WARNING", logger="clusterfoldsim.fold_change"):
        sig = estimate_fold_changes(X, labels, subsample_fraction=1 / 3, n_subsampling=3, seed=0)

    assert sig.clusters == ["c0", "c1"]
    assert (sig.iterations_used == 3).all()
    assert sig.fold_changes.notna().all().all()
    assert "tiny" in caplog.text


def test_too_few_estimable_clusters_raises():
    X, labels = constant_clusters({"a": [3, 1]}, n_cells=10)
    X = np.column_stack([X, [2.0, 2.0], [2.0, 2.0]])
    labels = np.concatenate([labels, ["tiny", "tiny"]])
    with pytest.raises(DataError, match="tiny"):
        estimate_fold_changes(X, labels, subsample_fraction=1 / 3, n_subsampling=3, seed=0)


def test_missing_labels_raise():
    X, labels = constant_clusters({"a": [3, 1], "b": [1, 3]})
    labels = labels.astype(object)
    labels[[0, 5]] = None
    with pytest.raises(DataError, match="2 cell"):
        estimate_fold_changes(X, labels)


def test_zero_means_emit_numeric_instability_warning():
    X, labels = constant_clusters({"a": [3, 0], "b": [1, 2]})
    with pytest.warns(NumericInstabilityWarning, match="pseudocount"):
        sig = estimate_fold_changes(X, labels, n_subsampling=3, seed=0)
    assert sig.n_pseudocount_corrections > 0


def test_no_warning_without_zero_means():
    X, labels = constant_clusters({"a": [3, 1], "b": [1, 3]})
    with warnings.catch_warnings():
        warnings.simplefilter("error", NumericInstabilityWarning)
        sig = estimate_fold_changes(X, labels, n_subsampling=3, seed=0)
    assert sig.n_pseudocount_corrections == 0
