from __future__ import annotations

import logging
import multiprocessing as mp
import os
import time
import warnings
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from pydantic import ValidationError

from .adapters import Dataset, as_dataset
from .aggregate import aggregate
from .config import SimilarityConfig
from .errors import ConfigurationError, DataError, NumericInstabilityWarning
from .fold_change import FoldChangeSignature, estimate_dataset
from .similarity import ComparisonTask, SimilarityRecord, build_comparison_tasks, compare_signatures

LOGGER = logging.getLogger(__name__)


@dataclass
class SimilarityResult:
    table: pd.DataFrame
    records: List[SimilarityRecord]
    signatures: Dict[str, FoldChangeSignature]
    failures: List[Tuple[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Workers (top-level so they pickle under the spawn start method)
# -----------------------------------------------------------------------------
def _estimate_worker(payload: dict) -> dict:
    """
    Worker: fold-change signature of one dataset.
    Returns {"index", "status", "signature" | "reason"}.
    """
    idx = int(payload["index"])
    ds: Dataset = payload["dataset"]
    try:
        sig = estimate_dataset(ds, seed=payload["seed"], warn_numeric=False, **payload["params"])
    except DataError as e:
        return {"index": idx, "status": "failed", "reason": str(e)}
    return {"index": idx, "status": "ok", "signature": sig}


def _compare_worker(payload: dict) -> dict:
    """
    Worker: all cluster-pair records of one ordered dataset pair.
    Returns {"task", "status", "records" | "reason"}.
    """
    task: ComparisonTask = payload["task"]
    try:
        records = compare_signatures(payload["sig_a"], payload["sig_b"], payload["top_n_features"])
    except DataError as e:
        return {"task": task, "status": "failed", "reason": str(e)}
    return {"task": task, "status": "ok", "records": records}


# -----------------------------------------------------------------------------
# Execution
# -----------------------------------------------------------------------------
def _default_n_jobs() -> int:
    return max(1, (os.cpu_count() or 1) - 1)


def _run_tasks(
    worker: Callable[[dict], dict],
    payloads: Sequence[dict],
    *,
    parallel: bool,
    n_jobs: Optional[int],
    stage: str,
) -> List[dict]:
    """
    Run worker over payloads, serially or on a spawn process pool.

    Results are returned in payload order, never completion order.
    """
    total = len(payloads)
    if total == 0:
        return []

    t0 = time.perf_counter()
    if not parallel or total == 1:
        results = []
        for i, p in enumerate(payloads, start=1):
            results.append(worker(p))
            LOGGER.debug("%s [%d/%d] done (%.1fs elapsed)", stage, i, total, time.perf_counter() - t0)
        return results

    max_workers = min(total, int(n_jobs) if n_jobs else _default_n_jobs())
    ctx = mp.get_context("spawn")
    LOGGER.info("%s: running in parallel (tasks=%d, max_workers=%d)", stage, total, max_workers)

    results: List[Optional[dict]] = [None] * total
    with ProcessPoolExecutor(max_workers=max_workers, mp_context=ctx) as ex:
        futs = {ex.submit(worker, p): k for k, p in enumerate(payloads)}
        done = 0
        for fut in as_completed(futs):
            k = futs[fut]
            results[k] = fut.result()
            done += 1
            LOGGER.info(
                "%s [%d/%d] done  status=%s elapsed=%.1fs",
                stage, done, total, results[k].get("status", "unknown"), time.perf_counter() - t0,
            )
    return results


def _validate_config(**kwargs) -> SimilarityConfig:
    try:
        return SimilarityConfig(**kwargs)
    except ValidationError as e:
        msgs = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in e.errors()
        )
        raise ConfigurationError(f"Invalid configuration: {msgs}") from e


def _resolve_names(n: int, dataset_names: Optional[Sequence[str]]) -> List[str]:
    if dataset_names is None:
        return [str(i + 1) for i in range(n)]
    names = [str(x) for x in dataset_names]
    if len(names) != n:
        raise ConfigurationError(f"Got {len(names)} dataset names for {n} datasets")
    if len(set(names)) != len(names):
        raise ConfigurationError(f"Dataset names must be unique, got {names}")
    return names


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def run_pipeline(
    datasets: Sequence[Any],
    dataset_names: Optional[Sequence[str]] = None,
    cfg: Optional[SimilarityConfig] = None,
) -> SimilarityResult:
    """
    Full run: one estimation task per dataset, one comparison task per ordered
    dataset pair, then selection.

    Failed tasks are collected. Unless cfg.allow_partial, any failure raises a
    single DataError listing all of them; with allow_partial the affected
    datasets/pairs are left out and listed in result.skipped.
    """
    cfg = cfg or SimilarityConfig()
    datasets = list(datasets)
    if len(datasets) < 2:
        raise ConfigurationError(f"Need at least 2 datasets to compare, got {len(datasets)}")
    names = _resolve_names(len(datasets), dataset_names)

    failures: List[Tuple[str, str]] = []
    skipped: List[str] = []

    # ---- seeds: one child per dataset, drawn in the calling process ----
    children = np.random.SeedSequence(cfg.seed).spawn(len(datasets))

    params = dict(
        n_subsampling=cfg.n_subsampling,
        subsample_fraction=cfg.subsample_fraction,
        pseudocount=cfg.pseudocount,
        min_cells_per_feature=cfg.min_cells_per_feature,
    )

    # ---- stage 1: fold-change signatures ----
    payloads = []
    for i, (obj, name) in enumerate(zip(datasets, names)):
        try:
            ds = as_dataset(obj, name)
        except DataError as e:
            failures.append((f"dataset {name}", str(e)))
            continue
        payloads.append({"index": i, "dataset": ds, "seed": children[i], "params": params})

    LOGGER.info(
        "Estimating fold-change signatures for %d dataset(s) (n_subsampling=%d, fraction=%.3f, seed=%s)",
        len(payloads), cfg.n_subsampling, cfg.subsample_fraction, cfg.seed,
    )
    signatures: Dict[int, FoldChangeSignature] = {}
    for res in _run_tasks(_estimate_worker, payloads, parallel=cfg.parallel, n_jobs=cfg.n_jobs, stage="Fold-change"):
        name = names[res["index"]]
        if res["status"] == "ok":
            signatures[res["index"]] = res["signature"]
        else:
            failures.append((f"dataset {name}", res["reason"]))

    for i in sorted(signatures):
        sig = signatures[i]
        if sig.n_pseudocount_corrections:
            warnings.warn(
                f"Dataset {sig.name!r}: {sig.n_pseudocount_corrections} zero means required "
                f"pseudocount correction (pseudocount={cfg.pseudocount:g})",
                NumericInstabilityWarning,
                stacklevel=2,
            )

    # ---- stage 2: ordered dataset pairs ----
    cmp_payloads = []
    for task in build_comparison_tasks(len(datasets)):
        a, b = names[task.left], names[task.right]
        if task.left not in signatures or task.right not in signatures:
            skipped.append(f"{a} -> {b}")
            continue
        cmp_payloads.append(
            {
                "task": task,
                "sig_a": signatures[task.left],
                "sig_b": signatures[task.right],
                "top_n_features": cfg.top_n_features,
            }
        )

    records: List[SimilarityRecord] = []
    for res in _run_tasks(_compare_worker, cmp_payloads, parallel=cfg.parallel, n_jobs=cfg.n_jobs, stage="Comparison"):
        task = res["task"]
        a, b = names[task.left], names[task.right]
        if res["status"] == "ok":
            records.extend(res["records"])
        else:
            failures.append((f"pair {a} -> {b}", res["reason"]))
            skipped.append(f"{a} -> {b}")

    # ---- failure policy ----
    if failures:
        detail = "\n".join(f"  - {task}: {reason}" for task, reason in failures)
        if not cfg.allow_partial:
            raise DataError(f"{len(failures)} task(s) failed:\n{detail}", failures=failures)
        for task, reason in failures:
            LOGGER.warning("Skipping %s: %s", task, reason)
        if skipped:
            LOGGER.warning("Skipped dataset pairs: %s", ", ".join(skipped))

    if not records:
        raise DataError("No dataset pair could be compared", failures=failures)

    table = aggregate(records, top_n=cfg.top_n, top_n_features=cfg.top_n_features, dataset_order=names)
    table.attrs["skipped"] = list(skipped)
    table.attrs["recommended_n_subsampling"] = {
        signatures[i].name: signatures[i].recommended_n_subsampling for i in sorted(signatures)
    }

    return SimilarityResult(
        table=table,
        records=records,
        signatures={signatures[i].name: signatures[i] for i in sorted(signatures)},
        failures=failures,
        skipped=skipped,
    )


def compute_similarity(
    datasets: Sequence[Any],
    dataset_names: Optional[Sequence[str]] = None,
    top_n: Optional[float] = 1,
    top_n_features: int = 1,
    n_subsampling: int = 15,
    subsample_fraction: float = 1.0 / 3.0,
    parallel: bool = False,
    seed: Optional[int] = None,
    *,
    n_jobs: Optional[int] = None,
    pseudocount: float = 0.1,
    min_cells_per_feature: int = 1,
    allow_partial: bool = False,
) -> pd.DataFrame:
    """
    Similarity table between the clusters of two or more datasets.

    datasets items may be Dataset objects, adapters (get_matrix/get_labels,
    e.g. AnnDataAdapter) or {"matrix", "labels", "feature_names"} mappings,
    with matrices oriented features x cells. top_n=None (or inf / "inf")
    keeps every pairwise record; a negative top_n_features reports the most
    dissimilar features instead of the most similar ones.

    Raises ConfigurationError before any computation on invalid settings and
    DataError when any dataset or dataset pair cannot be processed (unless
    allow_partial=True).
    """
    cfg = _validate_config(
        top_n=top_n,
        top_n_features=top_n_features,
        n_subsampling=n_subsampling,
        subsample_fraction=subsample_fraction,
        parallel=parallel,
        n_jobs=n_jobs,
        seed=seed,
        pseudocount=pseudocount,
        min_cells_per_feature=min_cells_per_feature,
        allow_partial=allow_partial,
    )
    return run_pipeline(datasets, dataset_names, cfg).table
