from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol, Sequence, runtime_checkable

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp

from .errors import DataError

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Adapter contract
# -----------------------------------------------------------------------------
# The core never touches container objects directly. Anything that can hand
# out a feature x cell matrix and one cluster label per cell is a dataset.
# get_feature_names() is optional; DataFrame matrices carry their own names.
# -----------------------------------------------------------------------------
@runtime_checkable
class DatasetAdapter(Protocol):
    def get_matrix(self) -> Any: ...

    def get_labels(self) -> Sequence[Any]: ...


class ArrayAdapter:
    """Adapter over an in-memory feature x cell matrix and a label vector."""

    def __init__(self, matrix, labels, feature_names: Optional[Sequence[str]] = None):
        self.matrix = matrix
        self.labels = labels
        self.feature_names = feature_names

    def get_matrix(self):
        return self.matrix

    def get_labels(self):
        return self.labels

    def get_feature_names(self) -> Optional[Sequence[str]]:
        return self.feature_names


class AnnDataAdapter:
    """
    Adapter over an AnnData object (cells x genes).

    Labels come from ``adata.obs[cluster_key]``; the matrix from ``layer``,
    ``adata.raw`` (use_raw=True) or ``.X``. With normalize=True the chosen
    matrix is library-size normalized and log1p-transformed on a copy.
    """

    def __init__(
        self,
        adata: ad.AnnData,
        cluster_key: str,
        layer: Optional[str] = None,
        use_raw: bool = False,
        normalize: bool = False,
    ):
        if cluster_key not in adata.obs:
            raise DataError(f"cluster_key={cluster_key!r} not in adata.obs")
        if layer is not None and layer not in adata.layers:
            raise DataError(f"layer={layer!r} not in adata.layers")
        if use_raw and adata.raw is None:
            raise DataError("use_raw=True but adata.raw is not set")
        if use_raw and layer is not None:
            raise DataError("use_raw and layer are mutually exclusive")

        self.adata = adata
        self.cluster_key = cluster_key
        self.layer = layer
        self.use_raw = use_raw
        self.normalize = normalize

    def _cells_by_features(self):
        if self.use_raw:
            X = self.adata.raw.X
        elif self.layer is not None:
            X = self.adata.layers[self.layer]
        else:
            X = self.adata.X

        if not self.normalize:
            return X

        tmp = ad.AnnData(X=X.copy())
        sc.pp.normalize_total(tmp, target_sum=1e4)
        sc.pp.log1p(tmp)
        return tmp.X

    def get_matrix(self):
        return self._cells_by_features().T

    def get_labels(self) -> np.ndarray:
        # missing values stay missing; Dataset rejects them
        return self.adata.obs[self.cluster_key].to_numpy(dtype=object)

    def get_feature_names(self) -> pd.Index:
        if self.use_raw:
            return pd.Index(self.adata.raw.var_names.astype(str))
        return pd.Index(self.adata.var_names.astype(str))


def natural_sort_key(label: Any):
    """
    Sort key placing numeric labels first, in numeric order, then the rest by name.

    "nan" / "inf" sort as names. Numerically equal labels ("1", "01") fall
    back to their string form, so the order is total.
    """
    try:
        value = float(label)
    except (TypeError, ValueError):
        return (1, 0.0, str(label))
    if not math.isfinite(value):
        return (1, 0.0, str(label))
    return (0, value, str(label))


def count_missing_labels(labels: Sequence[Any]) -> int:
    return int(pd.isna(pd.Series(list(labels), dtype=object)).sum())


# -----------------------------------------------------------------------------
# Dataset
# -----------------------------------------------------------------------------
def _as_feature_matrix(matrix) -> Any:
    if isinstance(matrix, pd.DataFrame):
        return matrix.to_numpy(dtype=float)
    if sp.issparse(matrix):
        return sp.csr_matrix(matrix, dtype=float)
    return np.asarray(matrix, dtype=float)


def _resolve_feature_names(matrix, feature_names, n_features: int) -> pd.Index:
    if feature_names is not None:
        names = pd.Index([str(f) for f in feature_names])
    elif isinstance(matrix, pd.DataFrame):
        names = pd.Index(matrix.index.astype(str))
    else:
        LOGGER.warning(
            "No feature names supplied; using positional names. "
            "Datasets can only be compared on features that share names."
        )
        names = pd.Index([str(i) for i in range(n_features)])
    return names


@dataclass(frozen=True)
class Dataset:
    name: str
    matrix: Any               # features x cells (ndarray or scipy.sparse)
    labels: np.ndarray        # one label per cell
    feature_names: pd.Index

    @property
    def n_features(self) -> int:
        return int(self.matrix.shape[0])

    @property
    def n_cells(self) -> int:
        return int(self.matrix.shape[1])

    @classmethod
    def from_arrays(cls, name: str, matrix, labels, feature_names=None) -> "Dataset":
        X = _as_feature_matrix(matrix)
        if X.ndim != 2:
            raise DataError(f"Dataset {name!r}: matrix must be 2-D (features x cells), got shape {X.shape}")
        names = _resolve_feature_names(matrix, feature_names, X.shape[0])
        n_missing = count_missing_labels(labels)
        if n_missing:
            raise DataError(f"Dataset {name!r}: {n_missing} cell(s) have no cluster label")
        labels_arr = np.asarray(pd.Series(list(labels)).astype(str).to_numpy())
        ds = cls(name=str(name), matrix=X, labels=labels_arr, feature_names=names)
        ds.validate()
        return ds

    @classmethod
    def from_adapter(cls, name: str, adapter: DatasetAdapter) -> "Dataset":
        get_names = getattr(adapter, "get_feature_names", None)
        feature_names = get_names() if callable(get_names) else None
        return cls.from_arrays(name, adapter.get_matrix(), adapter.get_labels(), feature_names)

    @classmethod
    def from_mapping(cls, name: str, mapping: Mapping[str, Any]) -> "Dataset":
        missing = {"matrix", "labels"} - set(mapping)
        if missing:
            raise DataError(f"Dataset {name!r}: missing key(s) {sorted(missing)}")
        return cls.from_arrays(name, mapping["matrix"], mapping["labels"], mapping.get("feature_names"))

    def validate(self) -> None:
        n_features, n_cells = self.matrix.shape

        if len(self.feature_names) != n_features:
            raise DataError(
                f"Dataset {self.name!r}: {len(self.feature_names)} feature names for {n_features} matrix rows"
            )
        if not self.feature_names.is_unique:
            dups = self.feature_names[self.feature_names.duplicated()].unique().tolist()
            raise DataError(f"Dataset {self.name!r}: duplicated feature names {dups[:5]}")
        if self.labels.shape[0] != n_cells:
            raise DataError(
                f"Dataset {self.name!r}: {self.labels.shape[0]} labels for {n_cells} cells (matrix columns)"
            )

        n_clusters = np.unique(self.labels).size
        if n_clusters < 2:
            raise DataError(f"Dataset {self.name!r}: need >= 2 distinct cluster labels, got {n_clusters}")

        values = self.matrix.data if sp.issparse(self.matrix) else self.matrix
        if values.size:
            if not np.all(np.isfinite(values)):
                raise DataError(f"Dataset {self.name!r}: matrix contains NaN or infinite values")
            if float(values.min()) < 0:
                raise DataError(f"Dataset {self.name!r}: matrix must be non-negative")


def as_dataset(obj: Any, name: str) -> Dataset:
    """Coerce a Dataset, an adapter or a {'matrix', 'labels'} mapping into a Dataset."""
    if isinstance(obj, Dataset):
        if obj.name != name:
            return Dataset(name=name, matrix=obj.matrix, labels=obj.labels, feature_names=obj.feature_names)
        return obj
    if isinstance(obj, ad.AnnData):
        raise DataError(
            f"Dataset {name!r}: wrap AnnData objects in AnnDataAdapter(adata, cluster_key=...)"
        )
    if isinstance(obj, Mapping):
        return Dataset.from_mapping(name, obj)
    if isinstance(obj, DatasetAdapter):
        return Dataset.from_adapter(name, obj)
    raise DataError(f"Dataset {name!r}: unsupported input type {type(obj).__name__}")
