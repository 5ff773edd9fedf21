__version__ = "0.1.0"

from .adapters import AnnDataAdapter, ArrayAdapter, Dataset, DatasetAdapter
from .aggregate import aggregate, find_communities, similarity_matrix
from .errors import ClusterFoldSimError, ConfigurationError, DataError, NumericInstabilityWarning
from .fold_change import FoldChangeSignature, estimate_fold_changes, recommend_n_subsampling
from .pipeline import SimilarityResult, compute_similarity, run_pipeline
from .similarity import SimilarityRecord, compare_clusters, compare_signatures, shared_features

__all__ = [
    "__version__",
    "AnnDataAdapter",
    "ArrayAdapter",
    "Dataset",
    "DatasetAdapter",
    "aggregate",
    "find_communities",
    "similarity_matrix",
    "ClusterFoldSimError",
    "ConfigurationError",
    "DataError",
    "NumericInstabilityWarning",
    "FoldChangeSignature",
    "estimate_fold_changes",
    "recommend_n_subsampling",
    "SimilarityResult",
    "compute_similarity",
    "run_pipeline",
    "SimilarityRecord",
    "compare_clusters",
    "compare_signatures",
    "shared_features",
]
