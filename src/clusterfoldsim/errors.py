from __future__ import annotations

from typing import Any, List, Optional, Tuple


class ClusterFoldSimError(Exception):
    """Base class for all clusterfoldsim errors."""


class ConfigurationError(ClusterFoldSimError, ValueError):
    """Invalid run configuration. Always raised before any computation starts."""


class DataError(ClusterFoldSimError, ValueError):
    """
    Input data cannot support the computation (too few clusters, no shared
    features, label/matrix mismatch, ...).

    When several tasks of one run fail, a single DataError is raised and
    ``failures`` holds one ``(task, message)`` tuple per failed task.
    """

    def __init__(self, message: str, failures: Optional[List[Tuple[Any, str]]] = None):
        super().__init__(message)
        self.failures = list(failures) if failures else []


class NumericInstabilityWarning(UserWarning):
    """A fold-change needed pseudocount correction because an observed mean was zero."""
