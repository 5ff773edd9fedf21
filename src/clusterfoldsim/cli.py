from __future__ import annotations
from typing import Optional, List
import typer
from pathlib import Path
import warnings

from pydantic import ValidationError

from .compare import run_compare
from .config import CompareConfig
from .errors import ClusterFoldSimError, NumericInstabilityWarning
from .logging_utils import init_logging


app = typer.Typer(help="clusterfoldsim CLI: match clusters across single-cell datasets by fold-change similarity.")

# Globally suppress noisy warnings
warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")
warnings.filterwarnings("ignore", message=".*not compatible with tight_layout.*", category=UserWarning)


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------
def _split_names(names: Optional[str]) -> Optional[List[str]]:
    """Comma-separated dataset names -> list (None passes through)."""
    if names is None:
        return None
    out = [x.strip() for x in names.split(",") if x.strip()]
    return out or None


def _parse_top_n(value: str) -> Optional[int]:
    v = value.strip().lower()
    if v in {"inf", "infinity", "all", "unbounded"}:
        return None
    try:
        n = int(v)
    except ValueError:
        raise typer.BadParameter(f"--top-n must be a positive integer or 'inf', got {value!r}")
    if n < 1:
        raise typer.BadParameter(f"--top-n must be >= 1, got {n}")
    return n


@app.callback()
def main() -> None:
    """clusterfoldsim command group."""


# ======================================================================
#  compare
# ======================================================================
@app.command("compare", help="Score cluster similarity between two or more AnnData files.")
def compare(
    # -------------------------------------------------------------
    # I/O
    # -------------------------------------------------------------
    inputs: List[Path] = typer.Argument(
        ...,
        help="[I/O] Two or more .h5ad files (or .zarr stores) with cluster labels in .obs.",
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o",
        help="[I/O] Output directory for tables and figures/.",
    ),
    cluster_key: str = typer.Option(
        "leiden", "--cluster-key", "-k",
        help="[I/O] Column in adata.obs holding cluster labels.",
    ),
    names: Optional[str] = typer.Option(
        None, "--names", "-n",
        help="[I/O] Comma-separated dataset names (default: file stems).",
    ),
    output_name: str = typer.Option(
        "cluster_similarity", "--output-name",
        help="[I/O] Result table filename (.tsv appended unless .tsv/.csv).",
    ),
    layer: Optional[str] = typer.Option(
        None, "--layer", "-l",
        help="[Input] Layer to read instead of .X.",
    ),
    use_raw: bool = typer.Option(False, "--use-raw/--no-use-raw", help="[Input] Read adata.raw."),
    normalize: bool = typer.Option(
        False, "--normalize/--no-normalize",
        help="[Input] normalize_total + log1p before estimation (use for raw counts).",
    ),

    # -------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------
    top_n: str = typer.Option(
        "1", "--top-n",
        help="[Selection] Matches kept per source cluster, or 'inf' for all.",
    ),
    top_n_features: int = typer.Option(
        1, "--top-n-features",
        help="[Selection] Features reported per match; negative = most dissimilar.",
    ),

    # -------------------------------------------------------------
    # Estimation
    # -------------------------------------------------------------
    n_subsampling: int = typer.Option(15, "--n-subsampling", help="[Estimation] Subsampling iterations."),
    subsample_fraction: float = typer.Option(
        1.0 / 3.0, "--subsample-fraction",
        help="[Estimation] Fraction of each cluster drawn per iteration.",
    ),
    pseudocount: float = typer.Option(0.1, "--pseudocount", help="[Estimation] Log-ratio pseudocount."),
    min_cells_per_feature: int = typer.Option(
        1, "--min-cells-per-feature",
        help="[Estimation] Drop features detected in fewer cells.",
    ),
    seed: Optional[int] = typer.Option(None, "--seed", help="Random seed for reproducible subsampling."),

    # -------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------
    parallel: bool = typer.Option(False, "--parallel/--no-parallel", help="Run tasks on a process pool."),
    n_jobs: Optional[int] = typer.Option(None, "--n-jobs", help="Worker processes (default: CPU cores - 1)."),
    allow_partial: bool = typer.Option(
        False, "--allow-partial/--no-allow-partial",
        help="Skip failed datasets/pairs instead of aborting.",
    ),
    write_matrix: bool = typer.Option(
        True, "--write-matrix/--no-write-matrix",
        help="Also write the full similarity matrix and communities.",
    ),

    # -------------------------------------------------------------
    # Figures
    # -------------------------------------------------------------
    make_figures: bool = typer.Option(True, "--make-figures/--no-make-figures"),
    figure_format: List[str] = typer.Option(["png", "pdf"], "--figure-format", "-F"),
    figdir_name: str = typer.Option("figures", "--figdir-name"),
):
    """
    Run the fold-change similarity comparison.
    """
    if len(inputs) < 2:
        raise typer.BadParameter("Provide at least two input files.")

    # ---------------------------------------------------------
    # Logging
    # ---------------------------------------------------------
    log_path = output_dir / "clusterfoldsim.log"
    init_logging(log_path)

    # ---------------------------------------------------------
    # Build config
    # ---------------------------------------------------------
    kwargs = dict(
        input_paths=inputs,
        dataset_names=_split_names(names),
        cluster_key=cluster_key,
        layer=layer,
        use_raw=use_raw,
        normalize=normalize,

        output_dir=output_dir,
        output_name=output_name,
        write_matrix=write_matrix,

        top_n=_parse_top_n(top_n),
        top_n_features=top_n_features,
        n_subsampling=n_subsampling,
        subsample_fraction=subsample_fraction,
        pseudocount=pseudocount,
        min_cells_per_feature=min_cells_per_feature,
        seed=seed,

        parallel=parallel,
        n_jobs=n_jobs,
        allow_partial=allow_partial,

        make_figures=make_figures,
        figdir_name=figdir_name,
        figure_formats=figure_format,

        logfile=log_path,
    )

    try:
        cfg = CompareConfig(**kwargs)
    except ValidationError as e:
        raise typer.BadParameter(str(e))

    # ---------------------------------------------------------
    # Run the module
    # ---------------------------------------------------------
    with warnings.catch_warnings():
        warnings.simplefilter("always", NumericInstabilityWarning)
        try:
            run_compare(cfg)
        except ClusterFoldSimError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
