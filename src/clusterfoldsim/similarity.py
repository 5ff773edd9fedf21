from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError, DataError
from .fold_change import FoldChangeSignature

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Records and tasks
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class SimilarityRecord:
    """Similarity of (dataset_l, cluster_l) -> (dataset_r, cluster_r)."""
    dataset_l: str
    cluster_l: str
    dataset_r: str
    cluster_r: str
    similarity: float
    concordance: float
    features: Tuple[Tuple[str, float], ...]


@dataclass(frozen=True)
class ComparisonTask:
    """One ordered dataset pair. Indices refer to the run's dataset list."""
    pair_index: int
    left: int
    right: int


def build_comparison_tasks(n_datasets: int) -> List[ComparisonTask]:
    """Every ordered pair of distinct datasets, as a flat indexable task list."""
    tasks: List[ComparisonTask] = []
    for i in range(n_datasets):
        for j in range(n_datasets):
            if i == j:
                continue
            tasks.append(ComparisonTask(pair_index=len(tasks), left=i, right=j))
    return tasks


def iter_cluster_pairs(sig_a: FoldChangeSignature, sig_b: FoldChangeSignature) -> Iterator[Tuple[int, int]]:
    """(cluster_l index, cluster_r index) for every cluster pair of a task."""
    for i in range(len(sig_a.clusters)):
        for j in range(len(sig_b.clusters)):
            yield i, j


# -----------------------------------------------------------------------------
# Shared features
# -----------------------------------------------------------------------------
def shared_features(sig_a: FoldChangeSignature, sig_b: FoldChangeSignature) -> pd.Index:
    """
    Sorted intersection of the two signatures' feature names.

    Sorting makes the alignment independent of the row order of either input.
    """
    shared = sig_a.features.intersection(sig_b.features)
    if len(shared) == 0:
        raise DataError(f"Datasets {sig_a.name!r} and {sig_b.name!r} share no features")
    shared = pd.Index(sorted(shared), name="feature")
    if len(shared) == 1:
        LOGGER.warning(
            "Datasets %r and %r share a single feature (%s); similarities rest on one value",
            sig_a.name, sig_b.name, shared[0],
        )
    return shared


# -----------------------------------------------------------------------------
# Scoring
# -----------------------------------------------------------------------------
def score_contributions(P: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Concordance-weighted similarity of each row of a contribution matrix.

    P holds Hadamard products of two fold-change vectors (one row per cluster
    pair). With w the fraction of informative (non-zero) contributions that
    are positive, i.e. of features whose fold-changes agree in sign:

        similarity = w * sum(P > 0) + (1 - w) * sum(P < 0)

    Returns (similarity, w) as 1-D arrays.
    """
    P = np.atleast_2d(P)
    pos_mask = P > 0
    neg_mask = P < 0
    n_pos = pos_mask.sum(axis=1)
    n_inf = n_pos + neg_mask.sum(axis=1)

    w = np.divide(n_pos, n_inf, out=np.zeros(P.shape[0], dtype=float), where=n_inf > 0)
    pos = np.where(pos_mask, P, 0.0).sum(axis=1)
    neg = np.where(neg_mask, P, 0.0).sum(axis=1)
    return w * pos + (1.0 - w) * neg, w


def rank_features(
    contributions: np.ndarray,
    feature_names: Sequence[str],
    top_n_features: int = 1,
) -> Tuple[Tuple[str, float], ...]:
    """
    Top contributing features of one cluster pair.

    top_n_features > 0: most similar, by descending signed contribution.
    top_n_features < 0: most dissimilar, by ascending signed contribution.
    Ties are broken by feature name.
    """
    if top_n_features == 0:
        raise ConfigurationError("top_n_features must be non-zero")

    contributions = np.asarray(contributions, dtype=float)
    names = np.asarray([str(f) for f in feature_names], dtype=str)

    # lexsort: last key is primary
    if top_n_features > 0:
        order = np.lexsort((names, -contributions))
    else:
        order = np.lexsort((names, contributions))

    order = order[: abs(int(top_n_features))]
    return tuple((str(names[k]), float(contributions[k])) for k in order)


def compare_clusters(
    sig_a: FoldChangeSignature,
    cluster_a,
    sig_b: FoldChangeSignature,
    cluster_b,
    shared: Optional[Sequence[str]] = None,
    top_n_features: int = 1,
) -> Tuple[float, float, Tuple[Tuple[str, float], ...]]:
    """
    Similarity of one cluster of sig_a to one cluster of sig_b.

    Returns (similarity, concordance, ranked_features).
    """
    if shared is None:
        shared = shared_features(sig_a, sig_b)
    x = sig_a.vector(cluster_a, shared)
    y = sig_b.vector(cluster_b, shared)
    P = (x * y)[None, :]
    sim, w = score_contributions(P)
    ranked = rank_features(P[0], shared, top_n_features)
    return float(sim[0]), float(w[0]), ranked


def compare_signatures(
    sig_a: FoldChangeSignature,
    sig_b: FoldChangeSignature,
    top_n_features: int = 1,
) -> List[SimilarityRecord]:
    """
    Every (cluster of sig_a) -> (cluster of sig_b) record.

    Each source cluster is scored against all target clusters at once
    (O(F * Cb) per source cluster).
    """
    shared = shared_features(sig_a, sig_b)
    A = sig_a.fold_changes.loc[:, shared].to_numpy(dtype=float)
    B = sig_b.fold_changes.loc[:, shared].to_numpy(dtype=float)

    LOGGER.info(
        "Comparing %s (%d clusters) -> %s (%d clusters) on %d shared features",
        sig_a.name, A.shape[0], sig_b.name, B.shape[0], len(shared),
    )

    records: List[SimilarityRecord] = []
    clusters_a = sig_a.clusters
    clusters_b = sig_b.clusters
    current = -1
    for i, j in iter_cluster_pairs(sig_a, sig_b):
        # pairs arrive source-major: score a source against all targets once
        if i != current:
            P = A[i][None, :] * B
            sims, ws = score_contributions(P)
            current = i
        records.append(
            SimilarityRecord(
                dataset_l=sig_a.name,
                cluster_l=str(clusters_a[i]),
                dataset_r=sig_b.name,
                cluster_r=str(clusters_b[j]),
                similarity=float(sims[j]),
                concordance=float(ws[j]),
                features=rank_features(P[j], shared, top_n_features),
            )
        )
    return records
