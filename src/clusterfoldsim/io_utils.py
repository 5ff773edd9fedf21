from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import anndata as ad
import pandas as pd

from .adapters import AnnDataAdapter, Dataset
from .aggregate import TABLE_COLUMNS
from .fold_change import FoldChangeSignature

LOGGER = logging.getLogger(__name__)

LIST_COLUMNS = ("topFeatures", "featureScores")


# -----------------------------------------------------------------------------
# Input
# -----------------------------------------------------------------------------
def load_anndata(path: Path) -> ad.AnnData:
    """Read an .h5ad file or a .zarr store."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input not found: {path}")
    LOGGER.info("Loading %s", path)
    if path.suffix == ".zarr" or path.is_dir():
        return ad.read_zarr(str(path))
    return ad.read_h5ad(str(path))


def load_datasets(
    paths: Sequence[Path],
    cluster_key: str,
    *,
    layer: Optional[str] = None,
    use_raw: bool = False,
    normalize: bool = False,
    names: Optional[Sequence[str]] = None,
) -> List[Dataset]:
    """
    One Dataset per input file. Names default to the file stems
    (made unique with a numeric suffix when stems collide).
    """
    paths = [Path(p) for p in paths]
    if names is None:
        names = []
        seen: Dict[str, int] = {}
        for p in paths:
            stem = p.name.split(".")[0] or p.stem
            seen[stem] = seen.get(stem, 0) + 1
            names.append(stem if seen[stem] == 1 else f"{stem}_{seen[stem]}")

    out: List[Dataset] = []
    for p, name in zip(paths, names):
        adata = load_anndata(p)
        adapter = AnnDataAdapter(adata, cluster_key=cluster_key, layer=layer, use_raw=use_raw, normalize=normalize)
        ds = Dataset.from_adapter(name, adapter)
        LOGGER.info(
            "Dataset %s: %d cells, %d features, %d clusters (%s)",
            name, ds.n_cells, ds.n_features, pd.unique(ds.labels).size, cluster_key,
        )
        out.append(ds)
    return out


# -----------------------------------------------------------------------------
# Output
# -----------------------------------------------------------------------------
def _sep_for(path: Path) -> str:
    return "," if Path(path).suffix == ".csv" else "\t"


def save_table(table: pd.DataFrame, out_path: Path) -> None:
    """Write a result table; list columns are stored as JSON arrays."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    df = table.copy()
    for col in LIST_COLUMNS:
        if col in df.columns:
            df[col] = [json.dumps(list(vals)) for vals in df[col]]

    df.to_csv(out_path, sep=_sep_for(out_path), index=False)
    LOGGER.info("Wrote %d rows to %s", df.shape[0], out_path)


def read_table(path: Path) -> pd.DataFrame:
    """Read a table written by save_table() back into list columns."""
    path = Path(path)
    df = pd.read_csv(path, sep=_sep_for(path), dtype={"datasetL": str, "clusterL": str, "datasetR": str, "clusterR": str})

    def _load(v) -> list:
        if pd.isna(v) or v == "":
            return []
        return json.loads(v)

    if "topFeatures" in df.columns:
        df["topFeatures"] = pd.Series(
            [[str(x) for x in _load(v)] for v in df["topFeatures"]], index=df.index, dtype=object
        )
    if "featureScores" in df.columns:
        df["featureScores"] = pd.Series(
            [[float(x) for x in _load(v)] for v in df["featureScores"]], index=df.index, dtype=object
        )
    cols = [c for c in TABLE_COLUMNS if c in df.columns]
    return df[cols]


def save_matrix(matrix: pd.DataFrame, out_path: Path) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    matrix.to_csv(out_path, sep=_sep_for(out_path))
    LOGGER.info("Wrote %d x %d similarity matrix to %s", matrix.shape[0], matrix.shape[1], out_path)


def save_signatures(signatures: Dict[str, FoldChangeSignature], out_dir: Path) -> List[Path]:
    """One clusters x features TSV of shrunk fold-changes per dataset."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for name, sig in signatures.items():
        p = out_dir / f"fold_changes.{name}.tsv"
        sig.fold_changes.to_csv(p, sep="\t")
        written.append(p)
    LOGGER.info("Wrote %d fold-change signature tables to %s", len(written), out_dir)
    return written
