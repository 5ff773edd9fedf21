from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Sequence

import matplotlib as mpl
import matplotlib.pyplot as plt
import networkx as nx
import numpy as np
import pandas as pd
import seaborn as sns

from .adapters import natural_sort_key
from .aggregate import similarity_graph

LOGGER = logging.getLogger(__name__)

# -------------------------------------------------------------------------
# Global styling
# -------------------------------------------------------------------------
mpl.rcParams["axes.spines.top"] = False
mpl.rcParams["axes.spines.right"] = False
mpl.rcParams["axes.linewidth"] = 0.6
mpl.rcParams["axes.edgecolor"] = "#555555"
mpl.rcParams["xtick.color"] = "#333333"
mpl.rcParams["ytick.color"] = "#333333"

FIGURE_FORMATS = ["png", "pdf"]
ROOT_FIGDIR: Path | None = None


# -------------------------------------------------------------------------
# Setup + saving
# -------------------------------------------------------------------------
def set_figure_formats(formats: Sequence[str]) -> None:
    global FIGURE_FORMATS
    FIGURE_FORMATS = list(formats)


def setup_figs(figdir: Path, formats: Sequence[str] | None = None) -> None:
    """Set the root figure directory (and formats) used by save_multi()."""
    global ROOT_FIGDIR
    figdir = Path(figdir)
    figdir.mkdir(parents=True, exist_ok=True)
    ROOT_FIGDIR = figdir.resolve()

    if formats is not None:
        set_figure_formats(formats)


def save_multi(stem: str, figdir: Path | str = ".", fig=None) -> List[Path]:
    """
    Save the current matplotlib figure (or a provided figure) to every
    configured format, as <ROOT_FIGDIR>/<ext>/<figdir>/<stem>.<ext>.

    Parameters
    ----------
    stem : str
        Base filename without extension.
    figdir : Path
        Subdirectory below each format directory.
    fig : matplotlib.figure.Figure, optional
        If provided, save this figure instead of the current active one.
    """
    if ROOT_FIGDIR is None:
        raise RuntimeError("ROOT_FIGDIR is not set. Call setup_figs() first.")

    if fig is None:
        fig = plt.gcf()

    figdir = Path(figdir)
    if figdir.is_absolute():
        raise ValueError(f"figdir must be relative to ROOT_FIGDIR, got {figdir}")

    written = []
    for ext in FIGURE_FORMATS:
        outdir = ROOT_FIGDIR / ext / figdir
        outdir.mkdir(parents=True, exist_ok=True)
        outfile = outdir / f"{stem}.{ext}"
        LOGGER.info("Saving figure: %s", outfile)
        fig.savefig(outfile, dpi=300, bbox_inches="tight")
        written.append(outfile)

    plt.close(fig)
    return written


# -------------------------------------------------------------------------
# Internal helpers
# -------------------------------------------------------------------------
def _dataset_colors(datasets: Sequence[str]) -> Dict[str, tuple]:
    cmap = plt.get_cmap("tab10")
    return {d: cmap(i % cmap.N) for i, d in enumerate(datasets)}


def _column_layout(G: nx.DiGraph, datasets: Sequence[str]) -> Dict[str, tuple]:
    """One column per dataset, clusters stacked top to bottom in natural order."""
    pos = {}
    for x, ds in enumerate(datasets):
        nodes = [n for n, d in G.nodes(data=True) if d["dataset"] == ds]
        nodes = sorted(nodes, key=lambda n: natural_sort_key(G.nodes[n]["cluster"]))
        ys = np.linspace(0.5 * (len(nodes) - 1), -0.5 * (len(nodes) - 1), len(nodes)) if nodes else []
        for node, y in zip(nodes, ys):
            pos[node] = (float(x), float(y))
    return pos


# ----------------------------------------------------------------------
# Similarity graph
# ----------------------------------------------------------------------
def plot_similarity_graph(
    table: pd.DataFrame,
    figdir: Path | str = ".",
    stem: str = "similarity_graph",
):
    """
    Directed graph of the result table: nodes are clusters (coloured by
    dataset, laid out one column per dataset), edges point from each source
    cluster to its selected matches with width scaled by similarity.
    Non-positive similarities are not drawn.
    """
    G = similarity_graph(table, positive_only=True)
    if G.number_of_nodes() == 0:
        LOGGER.warning("similarity_graph: empty table, nothing to plot.")
        return None

    datasets = list(dict.fromkeys(table["datasetL"].tolist() + table["datasetR"].tolist()))
    colors = _dataset_colors(datasets)
    pos = _column_layout(G, datasets)

    weights = np.array([d["weight"] for _, _, d in G.edges(data=True)], dtype=float)
    if weights.size:
        wmax = float(weights.max())
        widths = (0.5 + 4.5 * weights / wmax).tolist() if wmax > 0 else [1.0] * weights.size
    else:
        widths = []

    n_rows = max(sum(1 for _, d in G.nodes(data=True) if d["dataset"] == ds) for ds in datasets)
    fig, ax = plt.subplots(figsize=(3.0 + 2.5 * len(datasets), 1.0 + 0.5 * n_rows))

    nx.draw_networkx_edges(
        G,
        pos,
        width=widths,
        edge_color="#777777",
        alpha=0.7,
        arrows=True,
        arrowsize=10,
        connectionstyle="arc3,rad=0.1",
        ax=ax,
    )
    nx.draw_networkx_nodes(
        G,
        pos,
        node_color=[colors[G.nodes[n]["dataset"]] for n in G.nodes],
        node_size=400,
        edgecolors="black",
        linewidths=0.4,
        ax=ax,
    )
    nx.draw_networkx_labels(
        G,
        pos,
        labels={n: G.nodes[n]["cluster"] for n in G.nodes},
        font_size=7,
        ax=ax,
    )

    ax.set_xticks(range(len(datasets)))
    ax.set_xticklabels(datasets)
    ax.tick_params(axis="x", length=0)
    ax.set_yticks([])
    ax.spines["left"].set_visible(False)
    ax.spines["bottom"].set_visible(False)
    ax.set_title("Cluster similarity", fontsize=12)

    save_multi(stem, figdir, fig)
    return G


# ----------------------------------------------------------------------
# Similarity heatmap
# ----------------------------------------------------------------------
def plot_similarity_heatmap(
    matrix: pd.DataFrame,
    figdir: Path | str = ".",
    stem: str = "similarity_heatmap",
    cmap: str = "RdBu_r",
) -> None:
    """Heatmap of a similarity_matrix(); colour scale centred on zero, NaN cells blank."""
    if matrix.empty:
        LOGGER.warning("similarity_heatmap: empty matrix, nothing to plot.")
        return

    values = matrix.to_numpy(dtype=float)
    finite = values[np.isfinite(values)]
    vmax = float(np.abs(finite).max()) if finite.size else 1.0
    vmax = vmax if vmax > 0 else 1.0

    n_rows, n_cols = values.shape
    fig, ax = plt.subplots(figsize=(2.5 + 0.35 * n_cols, 2.0 + 0.35 * n_rows))

    sns.heatmap(
        matrix.astype(float),
        ax=ax,
        cmap=cmap,
        center=0.0,
        vmin=-vmax,
        vmax=vmax,
        mask=~np.isfinite(values),
        linewidths=0,
        cbar_kws={"shrink": 0.6, "label": "similarity"},
    )

    for spine in ax.spines.values():
        spine.set_visible(False)
    ax.tick_params(axis="x", rotation=90, labelsize=7, length=0)
    ax.tick_params(axis="y", rotation=0, labelsize=7, length=0)
    ax.set_xlabel("target cluster")
    ax.set_ylabel("source cluster")

    save_multi(stem, figdir, fig)
