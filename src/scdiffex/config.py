from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, model_validator, validator


# ---------------------------------------------------------------------
# DIFF EXPRESSION CONFIG
# ---------------------------------------------------------------------
class DiffExpressionConfig(BaseModel):

    # ---- Input ----
    input_path: Path
    counts_layer: Optional[str] = None
    gene_rank_key: str = "top_gene_list"

    # ---- Output ----
    output_dir: Path
    output_name: str = "de_results"
    save_h5ad: bool = False

    # ---- Comparison ----
    conditions: str
    condition_a: str
    condition_b: List[str] = Field(
        ...,
        description="One or more labels; 'Others' (complement_label) compares A against every other cell.",
    )
    complement_label: str = "Others"

    # ---- Model ----
    fit_type: Literal["parametric", "local"] = "local"
    dispersion_method: Literal["pooled", "pooled-CR", "per-condition", "blind"] = "per-condition"
    gene_limit: Optional[int] = Field(None, ge=1)
    pseudocount: float = Field(1.0, ge=0.0)

    # ---- Compute ----
    n_jobs: int = Field(1, ge=1)
    heartbeat_s: float = Field(60.0, gt=0.0)

    # ---- Logging ----
    logfile: Optional[Path] = None

    # ---- Validators ----
    @validator("condition_b", pre=True)
    def split_condition_b(cls, v):
        if v is None:
            return v
        if isinstance(v, str):
            v = [v]
        out: List[str] = []
        for item in v:
            out.extend(s.strip() for s in str(item).split(",") if s.strip())
        return out

    @model_validator(mode="after")
    def check_conditions(self):
        if not self.condition_b:
            raise ValueError("condition_b needs at least one label")
        if self.condition_a in self.condition_b:
            raise ValueError("condition_a cannot also be listed in condition_b")
        return self
