from __future__ import annotations

import math
from pathlib import Path
from typing import Any, Dict, List, Optional

from matplotlib.figure import Figure
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


UNBOUNDED_TOKENS = {"inf", "infinity", "all", "unbounded", "none"}


# ---------------------------------------------------------------------
# CORE SIMILARITY CONFIG
# ---------------------------------------------------------------------
class SimilarityConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # ---- Selection ----
    top_n: Optional[int] = Field(
        1,
        ge=1,
        description="Matches kept per source cluster. None = every pairwise record.",
    )
    top_n_features: int = Field(
        1,
        description="Contributing features per match. Negative = most dissimilar features.",
    )

    # ---- Fold-change estimation ----
    n_subsampling: int = Field(15, ge=1)
    subsample_fraction: float = Field(
        1.0 / 3.0,
        gt=0.0,
        le=1.0,
        description="Fraction of each cluster's cells drawn (without replacement) per iteration",
    )
    pseudocount: float = Field(0.1, gt=0.0)
    min_cells_per_feature: int = Field(
        1,
        ge=1,
        description="Features detected in fewer cells are left out of a dataset's signature",
    )

    # ---- Execution ----
    parallel: bool = False
    n_jobs: Optional[int] = Field(None, ge=1)
    seed: Optional[int] = None
    allow_partial: bool = Field(
        False,
        description="Return the table without failed datasets/pairs instead of raising.",
    )

    @field_validator("top_n", mode="before")
    @classmethod
    def coerce_unbounded(cls, v: Any):
        if v is None:
            return None
        if isinstance(v, str):
            if v.strip().lower() in UNBOUNDED_TOKENS:
                return None
            return v
        if isinstance(v, float) and math.isinf(v):
            return None
        return v

    @field_validator("top_n_features")
    @classmethod
    def check_top_n_features(cls, v: int) -> int:
        if v == 0:
            raise ValueError("top_n_features must be non-zero (negative selects dissimilar features)")
        return v


# ---------------------------------------------------------------------
# COMPARE (CLI) CONFIG
# ---------------------------------------------------------------------
class CompareConfig(SimilarityConfig):
    # ---- Input ----
    input_paths: List[Path] = Field(..., min_length=2)
    dataset_names: Optional[List[str]] = None
    cluster_key: str = "leiden"
    layer: Optional[str] = None
    use_raw: bool = False
    normalize: bool = Field(
        False,
        description="normalize_total + log1p on a copy of each dataset before estimation",
    )

    # ---- Output ----
    output_dir: Path
    output_name: str = Field("cluster_similarity", validate_default=True)
    write_matrix: bool = True

    # ---- Figures ----
    make_figures: bool = True
    figdir_name: str = "figures"
    figure_formats: List[str] = Field(default_factory=lambda: ["png", "pdf"])

    # ---- Logging ----
    logfile: Optional[Path] = None

    @property
    def figdir(self) -> Path:
        return self.output_dir / self.figdir_name

    @property
    def output_path(self) -> Path:
        return self.output_dir / self.output_name

    def similarity_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for compute_similarity()."""
        return self.model_dump(include=set(SimilarityConfig.model_fields))

    @field_validator("output_name")
    @classmethod
    def coerce_table_suffix(cls, v: str) -> str:
        if not (v.endswith(".tsv") or v.endswith(".csv")):
            v = f"{v}.tsv"
        return v

    @field_validator("figure_formats")
    @classmethod
    def validate_formats(cls, formats: List[str]) -> List[str]:
        supported = Figure().canvas.get_supported_filetypes()
        out = []
        for fmt in formats:
            fmt = fmt.lower()
            if fmt not in supported:
                raise ValueError(
                    f"Unsupported figure format '{fmt}'. "
                    f"Supported formats include: {', '.join(sorted(supported))}"
                )
            out.append(fmt)
        return out

    @model_validator(mode="after")
    def check_dataset_names(self):
        if self.dataset_names is None:
            return self
        if len(self.dataset_names) != len(self.input_paths):
            raise ValueError(
                f"Got {len(self.dataset_names)} dataset names for {len(self.input_paths)} inputs"
            )
        if len(set(self.dataset_names)) != len(self.dataset_names):
            raise ValueError("dataset_names must be unique")
        return self
