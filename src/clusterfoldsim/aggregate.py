from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, List, Optional, Sequence

import networkx as nx
import pandas as pd

from .adapters import natural_sort_key
from .errors import ConfigurationError
from .similarity import SimilarityRecord

LOGGER = logging.getLogger(__name__)

TABLE_COLUMNS = [
    "datasetL",
    "clusterL",
    "datasetR",
    "clusterR",
    "similarityValue",
    "concordance",
    "topFeatures",
    "featureScores",
]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _is_unbounded(top_n) -> bool:
    return top_n is None or (isinstance(top_n, float) and math.isinf(top_n))


def _rank_map(labels: Iterable[str]) -> Dict[str, int]:
    uniq = sorted(set(labels), key=natural_sort_key)
    return {lab: i for i, lab in enumerate(uniq)}


def _node_id(dataset: str, cluster: str) -> str:
    return f"{dataset}:{cluster}"


def records_to_frame(records: Sequence[SimilarityRecord]) -> pd.DataFrame:
    """Flat table, one row per record, features split into two list columns."""
    rows = [
        {
            "datasetL": r.dataset_l,
            "clusterL": r.cluster_l,
            "datasetR": r.dataset_r,
            "clusterR": r.cluster_r,
            "similarityValue": float(r.similarity),
            "concordance": float(r.concordance),
            "topFeatures": [f for f, _ in r.features],
            "featureScores": [float(s) for _, s in r.features],
        }
        for r in records
    ]
    return pd.DataFrame(rows, columns=TABLE_COLUMNS)


# -----------------------------------------------------------------------------
# Selection
# -----------------------------------------------------------------------------
def aggregate(
    records: Sequence[SimilarityRecord],
    top_n: Optional[float] = 1,
    top_n_features: int = 1,
    dataset_order: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Sort and truncate all pairwise records into the result table.

    Rows are grouped by source (datasetL, clusterL), groups in dataset order
    then cluster order. Within a group rows are sorted by similarityValue
    descending; ties fall back to datasetR name, then clusterR label.
    At most top_n rows are kept per group (None / inf keeps all), each with
    its |top_n_features| leading ranked features.
    """
    if top_n_features == 0:
        raise ConfigurationError("top_n_features must be non-zero")
    if not _is_unbounded(top_n) and int(top_n) < 1:
        raise ConfigurationError(f"top_n must be >= 1 or unbounded, got {top_n!r}")

    df = records_to_frame(records)
    if df.empty:
        return df

    if dataset_order is None:
        dataset_order = list(dict.fromkeys(df["datasetL"].tolist() + df["datasetR"].tolist()))
    ds_rank = {name: i for i, name in enumerate(dataset_order)}
    cl_rank = _rank_map(pd.concat([df["clusterL"], df["clusterR"]]).tolist())

    df["_ds_l"] = df["datasetL"].map(ds_rank)
    df["_cl_l"] = df["clusterL"].map(cl_rank)
    df["_cl_r"] = df["clusterR"].map(cl_rank)

    df = df.sort_values(
        by=["_ds_l", "_cl_l", "similarityValue", "datasetR", "_cl_r"],
        ascending=[True, True, False, True, True],
        kind="mergesort",
    )

    if not _is_unbounded(top_n):
        df = df.groupby(["datasetL", "clusterL"], sort=False).head(int(top_n))

    width = abs(int(top_n_features))
    for col in ("topFeatures", "featureScores"):
        df[col] = pd.Series([list(v[:width]) for v in df[col]], index=df.index, dtype=object)

    df = df.drop(columns=["_ds_l", "_cl_l", "_cl_r"]).reset_index(drop=True)
    LOGGER.info(
        "Result table: %d rows from %d records (top_n=%s, top_n_features=%d)",
        df.shape[0], len(records), "all" if _is_unbounded(top_n) else int(top_n), top_n_features,
    )
    return df


# -----------------------------------------------------------------------------
# Reporting helpers
# -----------------------------------------------------------------------------
def similarity_matrix(table: pd.DataFrame) -> pd.DataFrame:
    """
    Wide (datasetL:clusterL) x (datasetR:clusterR) similarity matrix.

    Pairs missing from the table (truncated or same-dataset) are NaN.
    """
    if table.empty:
        return pd.DataFrame()
    src = [_node_id(d, c) for d, c in zip(table["datasetL"], table["clusterL"])]
    tgt = [_node_id(d, c) for d, c in zip(table["datasetR"], table["clusterR"])]
    long = pd.DataFrame({"source": src, "target": tgt, "value": table["similarityValue"].to_numpy()})
    mat = long.pivot_table(index="source", columns="target", values="value", aggfunc="first")

    order = list(dict.fromkeys(src + tgt))
    mat = mat.reindex(index=[n for n in order if n in mat.index], columns=order)
    mat.index.name = "source"
    mat.columns.name = "target"
    return mat


def similarity_graph(table: pd.DataFrame, positive_only: bool = True) -> nx.DiGraph:
    """Directed graph: one node per (dataset, cluster), one edge per table row."""
    G = nx.DiGraph()
    for row in table.itertuples(index=False):
        u = _node_id(row.datasetL, row.clusterL)
        v = _node_id(row.datasetR, row.clusterR)
        G.add_node(u, dataset=row.datasetL, cluster=row.clusterL)
        G.add_node(v, dataset=row.datasetR, cluster=row.clusterR)
        w = float(row.similarityValue)
        if positive_only and not w > 0:
            continue
        G.add_edge(u, v, weight=w, concordance=float(row.concordance))
    return G


def find_communities(
    table: pd.DataFrame,
    seed: Optional[int] = 0,
    resolution: float = 1.0,
) -> pd.DataFrame:
    """
    Group clusters of all datasets into communities of mutually similar clusters.

    Positive similarities become undirected edge weights (the mean of both
    directions when both are present); communities are found with Louvain.
    Returns one row per (dataset, cluster) with an integer community id.
    """
    D = similarity_graph(table, positive_only=True)

    U = nx.Graph()
    U.add_nodes_from(D.nodes(data=True))
    for u, v, d in D.edges(data=True):
        if U.has_edge(u, v):
            U[u][v]["weight"] = 0.5 * (U[u][v]["weight"] + d["weight"])
        else:
            U.add_edge(u, v, weight=d["weight"])

    if U.number_of_nodes() == 0:
        return pd.DataFrame(columns=["dataset", "cluster", "community"])

    comms = nx.community.louvain_communities(U, weight="weight", resolution=resolution, seed=seed)

    def _first(members) -> tuple:
        return min(
            (U.nodes[n]["dataset"], natural_sort_key(U.nodes[n]["cluster"])) for n in members
        )

    comms = sorted(comms, key=_first)
    rows: List[dict] = []
    for cid, members in enumerate(comms):
        for n in members:
            rows.append({"dataset": U.nodes[n]["dataset"], "cluster": U.nodes[n]["cluster"], "community": cid})

    out = pd.DataFrame(rows)
    out["_k"] = out["cluster"].map(_rank_map(out["cluster"]))
    out = out.sort_values(["community", "dataset", "_k"], kind="mergesort").drop(columns="_k")
    LOGGER.info("Found %d communities across %d clusters", len(comms), out.shape[0])
    return out.reset_index(drop=True)
