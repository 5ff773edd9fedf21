from __future__ import annotations

import logging

from .aggregate import aggregate, find_communities, similarity_matrix
from .config import CompareConfig, SimilarityConfig
from .fold_change import signature_summary
from .pipeline import SimilarityResult, run_pipeline
from . import io_utils, plot_utils

LOGGER = logging.getLogger(__name__)


def run_compare(cfg: CompareConfig) -> SimilarityResult:
    """
    Load every input, score cluster similarity across datasets and write:
      - <output_name>                  selected matches (top_n per source cluster)
      - similarity_matrix.tsv          all pairwise similarities (write_matrix)
      - communities.tsv                Louvain communities of similar clusters (write_matrix)
      - signature_summary.tsv          per-cluster sizes / iterations used
      - signatures/fold_changes.*.tsv  shrunk fold-change signatures
      - figures/                       similarity graph + heatmap (make_figures)
    """
    LOGGER.info("Comparing %d datasets: %s", len(cfg.input_paths), ", ".join(str(p) for p in cfg.input_paths))
    cfg.output_dir.mkdir(parents=True, exist_ok=True)

    datasets = io_utils.load_datasets(
        cfg.input_paths,
        cfg.cluster_key,
        layer=cfg.layer,
        use_raw=cfg.use_raw,
        normalize=cfg.normalize,
        names=cfg.dataset_names,
    )
    names = [ds.name for ds in datasets]

    result = run_pipeline(datasets, names, SimilarityConfig(**cfg.similarity_kwargs()))

    io_utils.save_table(result.table, cfg.output_path)
    io_utils.save_signatures(result.signatures, cfg.output_dir / "signatures")
    summary = signature_summary(list(result.signatures.values()))
    summary.to_csv(cfg.output_dir / "signature_summary.tsv", sep="\t", index=False)

    for name, rec in result.table.attrs.get("recommended_n_subsampling", {}).items():
        if cfg.n_subsampling < rec:
            LOGGER.warning(
                "Dataset %s: n_subsampling=%d is below the recommended %d for full cell coverage",
                name, cfg.n_subsampling, rec,
            )

    matrix = None
    if cfg.write_matrix:
        full = aggregate(result.records, top_n=None, top_n_features=cfg.top_n_features, dataset_order=names)
        matrix = similarity_matrix(full)
        io_utils.save_matrix(matrix, cfg.output_dir / "similarity_matrix.tsv")

        communities = find_communities(full, seed=cfg.seed if cfg.seed is not None else 0)
        communities.to_csv(cfg.output_dir / "communities.tsv", sep="\t", index=False)

    if cfg.make_figures:
        plot_utils.setup_figs(cfg.figdir, cfg.figure_formats)
        plot_utils.plot_similarity_graph(result.table)
        if matrix is not None:
            plot_utils.plot_similarity_heatmap(matrix)

    LOGGER.info("Finished. Results in %s", cfg.output_dir)
    return result
