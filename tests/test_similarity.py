# tests/test_similarity.py
import numpy as np
import pandas as pd
import pytest

from clusterfoldsim.errors import ConfigurationError, DataError
from clusterfoldsim.fold_change import FoldChangeSignature
from clusterfoldsim.similarity import (
    build_comparison_tasks,
    compare_clusters,
    compare_signatures,
    iter_cluster_pairs,
    rank_features,
    score_contributions,
    shared_features,
)


# ----------------------------------------------------------------------
# Hand-built signatures
# ----------------------------------------------------------------------
def make_signature(name, fold_changes):
    """fold_changes: {cluster: {feature: value}}"""
    df = pd.DataFrame(fold_changes).T.astype(float)
    df.index = df.index.astype(str)
    sizes = pd.Series(10, index=df.index)
    return FoldChangeSignature(
        name=name,
        fold_changes=df,
        mean_fold_changes=df.copy(),
        sign_consistency=pd.DataFrame(1.0, index=df.index, columns=df.columns),
        n_iterations=15,
        iterations_used=pd.Series(15, index=df.index),
        cluster_sizes=sizes,
        recommended_n_subsampling=1,
    )


@pytest.fixture
def scenario():
    sig1 = make_signature(
        "1",
        {
            "0": {"A": 2.0, "B": -1.0, "C": 0.1},
            "1": {"A": -2.0, "B": 1.0, "C": -0.1},
        },
    )
    sig2 = make_signature(
        "2",
        {
            "0": {"A": 1.8, "B": -0.9, "C": -0.2},
            "1": {"A": -1.8, "B": 0.9, "C": 0.2},
        },
    )
    return sig1, sig2


# ----------------------------------------------------------------------
# Concrete scenario
# ----------------------------------------------------------------------
def test_scenario_similarity_and_feature_ranking(scenario):
    sig1, sig2 = scenario
    sim, w, ranked = compare_clusters(sig1, "0", sig2, "0", top_n_features=3)

    # contributions: A 3.6, B 0.9, C -0.02; 2 of 3 concordant
    expected = (2 / 3) * (3.6 + 0.9) + (1 / 3) * (-0.02)
    assert sim == pytest.approx(expected)
    assert sim > 0
    assert w == pytest.approx(2 / 3)

    names = [f for f, _ in ranked]
    scores = [s for _, s in ranked]
    assert names == ["A", "B", "C"]
    assert scores == pytest.approx([3.6, 0.9, -0.02])


def test_scenario_matched_clusters_beat_mismatched(scenario):
    sig1, sig2 = scenario
    records = compare_signatures(sig1, sig2, top_n_features=1)
    by_pair = {(r.cluster_l, r.cluster_r): r.similarity for r in records}

    assert len(records) == 4
    assert by_pair[("0", "0")] > by_pair[("0", "1")]
    assert by_pair[("1", "1")] > by_pair[("1", "0")]


def test_compare_signatures_matches_compare_clusters(scenario):
    sig1, sig2 = scenario
    for r in compare_signatures(sig1, sig2, top_n_features=2):
        sim, w, ranked = compare_clusters(sig1, r.cluster_l, sig2, r.cluster_r, top_n_features=2)
        assert r.similarity == sim
        assert r.concordance == w
        assert r.features == ranked


# ----------------------------------------------------------------------
# Concordance weighting
# ----------------------------------------------------------------------
def test_anticorrelated_pair_scores_below_concordant_pairs():
    x = {"A": 1.0, "B": -2.0, "C": 3.0, "D": -0.5}
    sig_a = make_signature("a", {"x": x})
    sig_b = make_signature(
        "b",
        {
            "same": x,
            "weak": {k: 0.1 * v for k, v in x.items()},
            "anti": {k: -v for k, v in x.items()},
        },
    )
    records = {r.cluster_r: r for r in compare_signatures(sig_a, sig_b)}

    assert records["anti"].concordance == 0.0
    assert records["anti"].similarity == pytest.approx(-(1 + 4 + 9 + 0.25))
    assert records["anti"].similarity < records["weak"].similarity < records["same"].similarity
    assert records["same"].concordance == 1.0


def test_score_contributions_discordant_features_dampened():
    P = np.array([[4.0, 1.0, -1.0, -2.0]])
    sim, w = score_contributions(P)
    assert w[0] == pytest.approx(0.5)
    assert sim[0] == pytest.approx(0.5 * 5.0 + 0.5 * -3.0)


def test_score_contributions_all_zero_row():
    sim, w = score_contributions(np.zeros((2, 3)))
    assert sim.tolist() == [0.0, 0.0]
    assert w.tolist() == [0.0, 0.0]


# ----------------------------------------------------------------------
# Feature ranking
# ----------------------------------------------------------------------
def test_rank_features_similar_and_dissimilar_modes():
    contrib = np.array([0.5, -3.0, 2.0, 4.0, -1.0, 1.0])
    names = ["f0", "f1", "f2", "f3", "f4", "f5"]

    top = rank_features(contrib, names, 5)
    assert len(top) == 5
    assert [s for _, s in top] == sorted([s for _, s in top], reverse=True)
    assert [f for f, _ in top] == ["f3", "f2", "f5", "f0", "f4"]

    bottom = rank_features(contrib, names, -3)
    assert len(bottom) == 3
    assert [f for f, _ in bottom] == ["f1", "f4", "f0"]
    assert [s for _, s in bottom] == sorted([s for _, s in bottom])


def test_rank_features_ties_broken_by_name():
    contrib = np.array([1.0, 1.0, 1.0])
    assert [f for f, _ in rank_features(contrib, ["c", "a", "b"], 3)] == ["a", "b", "c"]
    assert [f for f, _ in rank_features(contrib, ["c", "a", "b"], -2)] == ["a", "b"]


def test_rank_features_zero_width_rejected():
    with pytest.raises(ConfigurationError):
        rank_features(np.array([1.0]), ["a"], 0)


# ----------------------------------------------------------------------
# Shared features
# ----------------------------------------------------------------------
def test_shared_features_sorted_intersection():
    sig_a = make_signature("a", {"x": {"B": 1.0, "A": 2.0, "Z": 1.0}})
    sig_b = make_signature("b", {"y": {"Q": 1.0, "A": 1.0, "B": 1.0}})
    assert list(shared_features(sig_a, sig_b)) == ["A", "B"]
    assert list(shared_features(sig_b, sig_a)) == ["A", "B"]


def test_feature_order_does_not_change_similarity():
    x = {"A": 1.0, "B": -2.0, "C": 0.5, "D": 3.0}
    y = {"A": 0.7, "B": -1.0, "C": -0.5, "D": 2.0}
    sig_a = make_signature("a", {"x": x})
    sig_b = make_signature("b", {"y": y})

    rev = list(reversed(list(x)))
    sig_a_perm = make_signature("a", {"x": {k: x[k] for k in rev}})
    sig_b_perm = make_signature("b", {"y": {k: y[k] for k in ["C", "A", "D", "B"]}})

    assert compare_clusters(sig_a, "x", sig_b, "y") == compare_clusters(sig_a_perm, "x", sig_b_perm, "y")


def test_no_shared_features_raises():
    sig_a = make_signature("a", {"x": {"A": 1.0}})
    sig_b = make_signature("b", {"y": {"B": 1.0}})
    with pytest.raises(DataError, match="share no features"):
        compare_signatures(sig_a, sig_b)


# ----------------------------------------------------------------------
# Task list
# ----------------------------------------------------------------------
def test_comparison_tasks_cover_ordered_pairs(scenario):
    tasks = build_comparison_tasks(3)
    assert [(t.left, t.right) for t in tasks] == [(0, 1), (0, 2), (1, 0), (1, 2), (2, 0), (2, 1)]
    assert [t.pair_index for t in tasks] == list(range(6))

    sig1, sig2 = scenario
    assert list(iter_cluster_pairs(sig1, sig2)) == [(0, 0), (0, 1), (1, 0), (1, 1)]
