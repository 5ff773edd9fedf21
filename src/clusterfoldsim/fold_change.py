from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import scipy.sparse as sp

from .adapters import Dataset, count_missing_labels, natural_sort_key
from .errors import DataError, NumericInstabilityWarning

LOGGER = logging.getLogger(__name__)

SeedLike = Union[None, int, np.random.SeedSequence]


# -----------------------------------------------------------------------------
# Fold-change signature
# -----------------------------------------------------------------------------
# Iterations are a map -> reduce:
#   draw per-cluster subsamples -> one (clusters x features) log2FC matrix
#   stack all iterations -> mean, shrunk by sign consistency
# No accumulator is shared between iterations, so they can be computed in any
# order (or concurrently) and reduced afterwards.
# -----------------------------------------------------------------------------
@dataclass
class FoldChangeSignature:
    """
    Per-cluster, per-feature fold-change estimate of one dataset.

    fold_changes holds the shrunk estimate used for comparisons. Features that
    were never detected in the dataset are absent (not zero).
    """
    name: str
    fold_changes: pd.DataFrame          # clusters x features, shrunk
    mean_fold_changes: pd.DataFrame     # clusters x features, plain mean over iterations
    sign_consistency: pd.DataFrame      # clusters x features, in [0, 1]
    n_iterations: int
    iterations_used: pd.Series          # per cluster
    cluster_sizes: pd.Series
    recommended_n_subsampling: int
    n_pseudocount_corrections: int = 0

    @property
    def clusters(self) -> List[str]:
        return list(self.fold_changes.index)

    @property
    def features(self) -> pd.Index:
        return self.fold_changes.columns

    def vector(self, cluster: Any, features: Optional[Sequence[str]] = None) -> np.ndarray:
        cluster = str(cluster)
        if cluster not in self.fold_changes.index:
            raise KeyError(f"Cluster {cluster!r} not in signature {self.name!r}")
        row = self.fold_changes.loc[cluster]
        if features is not None:
            row = row.reindex(features)
        return row.to_numpy(dtype=float)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _cells_by_features(matrix) -> Any:
    """features x cells (dense or sparse) -> cells x features (CSR or C-contiguous)."""
    if sp.issparse(matrix):
        X = sp.csr_matrix(matrix.T, dtype=float)
        X.eliminate_zeros()
        return X
    return np.ascontiguousarray(np.asarray(matrix, dtype=float).T)


def _detected_cells_per_feature(X) -> np.ndarray:
    if sp.issparse(X):
        return np.asarray(X.getnnz(axis=0)).ravel()
    return (X > 0).sum(axis=0)


def _subsample_size(n_cells: int, fraction: float) -> int:
    return int(min(n_cells, math.floor(fraction * n_cells + 0.5)))


def recommend_n_subsampling(cluster_sizes: Sequence[int], subsample_fraction: float) -> int:
    """
    Coupon-collector estimate of the iterations needed for every cell to be
    drawn at least once.

    For a cluster of n cells sampling k per iteration, the expected number of
    never-drawn cells after T iterations is n * (1 - k/n)^T. Returns the
    smallest T that brings this below 1 for every cluster.
    """
    best = 1
    for n in cluster_sizes:
        n = int(n)
        k = _subsample_size(n, subsample_fraction)
        if n <= 1 or k >= n:
            continue
        if k == 0:
            # never sampled, no finite T covers it
            continue
        p = k / n
        t = int(math.floor(math.log(n) / -math.log1p(-p))) + 1
        best = max(best, t)
    return best


def _make_iteration_rngs(seed: SeedLike, n: int) -> List[np.random.Generator]:
    ss = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    return [np.random.default_rng(child) for child in ss.spawn(n)]


# -----------------------------------------------------------------------------
# Map: one subsampling iteration
# -----------------------------------------------------------------------------
def _subsample_iteration(
    X,
    cluster_cells: List[np.ndarray],
    sample_sizes: np.ndarray,
    rng: np.random.Generator,
    pseudocount: float,
) -> Tuple[np.ndarray, int]:
    """
    One iteration: log2 fold-change of every cluster vs the pooled other
    clusters, on a without-replacement subsample of each cluster.

    Every cluster must draw at least 2 cells. Returns (fc, n_zero_means) with
    fc of shape (n_clusters x n_features).
    """
    n_clusters = len(cluster_cells)
    n_features = X.shape[1]

    picked: List[np.ndarray] = []
    codes: List[np.ndarray] = []
    for c, cells in enumerate(cluster_cells):
        k = int(sample_sizes[c])
        picked.append(rng.choice(cells, size=k, replace=False))
        codes.append(np.full(k, c, dtype=np.int64))

    fc = np.full((n_clusters, n_features), np.nan)
    idx = np.concatenate(picked)
    code_arr = np.concatenate(codes)

    # Indicator matrix G: (sampled cells x clusters); sums = G.T @ X_sub
    G = sp.csr_matrix(
        (np.ones(idx.shape[0], dtype=float), (np.arange(idx.shape[0]), code_arr)),
        shape=(idx.shape[0], n_clusters),
    )
    sums = G.T @ X[idx]
    sums = sums.toarray() if sp.issparse(sums) else np.asarray(sums)

    counts = sample_sizes.astype(float)
    total_sum = sums.sum(axis=0)
    total_n = float(counts.sum())

    n_zero = 0
    for c in range(n_clusters):
        n_in = counts[c]
        n_rest = total_n - n_in
        mean_in = sums[c] / n_in
        mean_rest = (total_sum - sums[c]) / n_rest
        n_zero += int(np.count_nonzero(mean_in == 0) + np.count_nonzero(mean_rest == 0))
        fc[c] = np.log2((mean_in + pseudocount) / (mean_rest + pseudocount))

    return fc, n_zero


# -----------------------------------------------------------------------------
# Reduce: mean + sign-consistency shrinkage
# -----------------------------------------------------------------------------
def shrink_iterations(stack: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Combine per-iteration fold-changes (iterations x clusters x features).

    NaN entries (no estimate for that iteration) are ignored.
    For each entry with T valid iterations, n_pos of them positive (zeros
    count half), the probability of a positive sign is estimated as the
    posterior mean under a Jeffreys Beta(1/2, 1/2) prior:

        q = (n_pos + 1/2) / (T + 1)

    and sign consistency is s = |2q - 1|. The shrunk estimate is mean * s:
    features that flip sign between iterations go to zero, features with a
    stable sign keep a fraction of their magnitude that approaches 1 as T
    grows.

    Returns (shrunk, mean, consistency, used) where used is the number of
    valid iterations per cluster.
    """
    valid = ~np.isnan(stack)
    n_valid = valid.sum(axis=0)
    total = np.where(valid, stack, 0.0).sum(axis=0)

    with np.errstate(invalid="ignore", divide="ignore"):
        mean = np.where(n_valid > 0, total / np.maximum(n_valid, 1), np.nan)

    n_pos = (valid & (stack > 0)).sum(axis=0) + 0.5 * (valid & (stack == 0)).sum(axis=0)
    q = (n_pos + 0.5) / (n_valid + 1.0)
    consistency = np.where(n_valid > 0, np.abs(2.0 * q - 1.0), np.nan)

    shrunk = mean * consistency
    # validity is per (iteration, cluster) row, identical across features
    used = n_valid.max(axis=1)
    return shrunk, mean, consistency, used


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def estimate_fold_changes(
    matrix,
    labels: Sequence[Any],
    *,
    feature_names: Optional[Sequence[str]] = None,
    name: str = "1",
    n_subsampling: int = 15,
    subsample_fraction: float = 1.0 / 3.0,
    pseudocount: float = 0.1,
    min_cells_per_feature: int = 1,
    seed: SeedLike = None,
    warn_numeric: bool = True,
) -> FoldChangeSignature:
    """
    Resampling-based fold-change signature of one dataset.

    Parameters
    ----------
    matrix
        Non-negative features x cells matrix (ndarray, scipy.sparse or
        DataFrame with features as index).
    labels
        One cluster label per cell (matrix column).
    n_subsampling
        Number of subsampling iterations.
    subsample_fraction
        Fraction of each cluster's cells drawn without replacement per iteration.
    pseudocount
        Added to both means before the log-ratio.
    min_cells_per_feature
        Features detected in fewer cells are left out of the signature.
    seed
        int / SeedSequence for reproducible draws; None draws fresh entropy.
    warn_numeric
        Emit a NumericInstabilityWarning when zero means needed the pseudocount.
    """
    if feature_names is None and isinstance(matrix, pd.DataFrame):
        feature_names = matrix.index.astype(str)
    if isinstance(matrix, pd.DataFrame):
        matrix = matrix.to_numpy(dtype=float)

    n_features_in, n_cells = matrix.shape
    n_missing = count_missing_labels(labels)
    if n_missing:
        raise DataError(f"Dataset {name!r}: {n_missing} cell(s) have no cluster label")
    labels_arr = np.asarray(pd.Series(list(labels)).astype(str).to_numpy())
    if labels_arr.shape[0] != n_cells:
        raise DataError(f"Dataset {name!r}: {labels_arr.shape[0]} labels for {n_cells} cells")

    if feature_names is None:
        feature_names = [str(i) for i in range(n_features_in)]
    feature_names = pd.Index([str(f) for f in feature_names])
    if len(feature_names) != n_features_in:
        raise DataError(
            f"Dataset {name!r}: {len(feature_names)} feature names for {n_features_in} matrix rows"
        )

    clusters = sorted(pd.unique(labels_arr), key=natural_sort_key)
    if len(clusters) < 2:
        raise DataError(f"Dataset {name!r}: need >= 2 distinct clusters, got {len(clusters)}")

    X = _cells_by_features(matrix)

    codes = pd.Categorical(labels_arr, categories=clusters).codes
    cluster_cells = [np.where(codes == c)[0] for c in range(len(clusters))]
    cluster_sizes = np.array([cells.size for cells in cluster_cells], dtype=int)
    sample_sizes = np.array([_subsample_size(n, subsample_fraction) for n in cluster_sizes], dtype=int)

    # ---- clusters too small to draw 2 cells from are left out ----
    estimable = sample_sizes >= 2
    if not estimable.all():
        detail = ", ".join(
            f"{clusters[c]} (n={cluster_sizes[c]}, sampled={sample_sizes[c]})"
            for c in np.where(~estimable)[0]
        )
        if estimable.sum() < 2:
            raise DataError(
                f"Dataset {name!r}: fewer than 2 clusters left; cluster(s) with too few cells "
                f"to ever be sampled at subsample_fraction={subsample_fraction:.3f}: {detail}"
            )
        LOGGER.warning(
            "[%s] Leaving out %d cluster(s) with too few cells to sample at subsample_fraction=%.3f: %s",
            name, int((~estimable).sum()), subsample_fraction, detail,
        )
        kept = np.where(estimable)[0]
        clusters = [clusters[c] for c in kept]
        cluster_cells = [cluster_cells[c] for c in kept]
        cluster_sizes = cluster_sizes[kept]
        sample_sizes = sample_sizes[kept]

    # ---- feature filter: undetected features are undefined, not zero ----
    detected = _detected_cells_per_feature(X[np.sort(np.concatenate(cluster_cells))])
    keep = detected >= int(min_cells_per_feature)
    if not keep.any():
        raise DataError(
            f"Dataset {name!r}: no feature detected in >= {min_cells_per_feature} cells"
        )
    if not keep.all():
        LOGGER.info(
            "[%s] Dropping %d/%d features detected in < %d cells",
            name, int((~keep).sum()), n_features_in, min_cells_per_feature,
        )
        X = X[:, np.where(keep)[0]]
        feature_names = feature_names[keep]

    recommended = recommend_n_subsampling(cluster_sizes, subsample_fraction)
    LOGGER.info(
        "[%s] Fold-change estimation: %d cells, %d clusters, %d features, "
        "%d iterations (fraction=%.3f, recommended >= %d)",
        name, n_cells, len(clusters), X.shape[1], n_subsampling, subsample_fraction, recommended,
    )
    if n_subsampling < recommended:
        LOGGER.info(
            "[%s] n_subsampling=%d leaves some cells unsampled in expectation; %d iterations would cover every cell",
            name, n_subsampling, recommended,
        )

    # ---- map ----
    rngs = _make_iteration_rngs(seed, n_subsampling)
    per_iter: List[np.ndarray] = []
    n_zero_total = 0
    for rng in rngs:
        fc, n_zero = _subsample_iteration(X, cluster_cells, sample_sizes, rng, pseudocount)
        per_iter.append(fc)
        n_zero_total += n_zero

    # ---- reduce ----
    stack = np.stack(per_iter, axis=0)
    shrunk, mean, consistency, used = shrink_iterations(stack)

    if n_zero_total:
        LOGGER.debug("[%s] %d zero means corrected by pseudocount=%g", name, n_zero_total, pseudocount)
        if warn_numeric:
            warnings.warn(
                f"Dataset {name!r}: {n_zero_total} zero means required pseudocount correction "
                f"(pseudocount={pseudocount:g})",
                NumericInstabilityWarning,
                stacklevel=2,
            )

    index = pd.Index(clusters, name="cluster")
    columns = pd.Index(feature_names, name="feature")
    return FoldChangeSignature(
        name=str(name),
        fold_changes=pd.DataFrame(shrunk, index=index, columns=columns),
        mean_fold_changes=pd.DataFrame(mean, index=index, columns=columns),
        sign_consistency=pd.DataFrame(consistency, index=index, columns=columns),
        n_iterations=int(n_subsampling),
        iterations_used=pd.Series(used.astype(int), index=index, name="iterations_used"),
        cluster_sizes=pd.Series(cluster_sizes, index=index, name="n_cells"),
        recommended_n_subsampling=int(recommended),
        n_pseudocount_corrections=int(n_zero_total),
    )


def estimate_dataset(dataset: Dataset, seed: SeedLike = None, **kwargs) -> FoldChangeSignature:
    """estimate_fold_changes() on a validated Dataset."""
    return estimate_fold_changes(
        dataset.matrix,
        dataset.labels,
        feature_names=dataset.feature_names,
        name=dataset.name,
        seed=seed,
        **kwargs,
    )


def signature_summary(signatures: Sequence[FoldChangeSignature]) -> pd.DataFrame:
    """One row per (dataset, cluster): size, iterations used, advisory iteration count."""
    rows: List[Dict[str, Any]] = []
    for sig in signatures:
        for cl in sig.clusters:
            rows.append(
                {
                    "dataset": sig.name,
                    "cluster": cl,
                    "n_cells": int(sig.cluster_sizes.loc[cl]),
                    "iterations_used": int(sig.iterations_used.loc[cl]),
                    "n_features": int(sig.fold_changes.shape[1]),
                    "recommended_n_subsampling": sig.recommended_n_subsampling,
                }
            )
    return pd.DataFrame(rows)
