# src/scdiffex/aggregate.py
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from .de_worker import RESULT_COLUMNS
from .errors import AggregationError

LOGGER = logging.getLogger(__name__)

DE_COLUMNS = ["gene", "baseMean", "meanA", "meanB", "foldChange", "log2FoldChange", "pvalue", "padj"]


def bh_adjust(pvalues) -> np.ndarray:
    """Benjamini-Hochberg over the finite p-values; NaN stays NaN."""
    p = np.asarray(pvalues, dtype=np.float64)
    out = np.full(p.shape, np.nan, dtype=np.float64)
    ok = np.isfinite(p)
    if ok.any():
        out[ok] = multipletests(p[ok], method="fdr_bh")[1]
    return out


def aggregate_results(
    partials: Sequence[pd.DataFrame],
    *,
    pseudocount: float = 1.0,
) -> pd.DataFrame:
    """
    Merge per-chunk results into the final DE table.

    - the pseudocount is removed from the group means before the fold change
    - log2FoldChange = log2(foldChange); inf/NaN are kept as they come
    - padj is Benjamini-Hochberg over all genes
    - rows are sorted by pvalue ascending (stable, NaN last)
    """
    if partials is None or len(partials) == 0:
        raise AggregationError("No partial results to aggregate.")

    for i, df in enumerate(partials):
        missing = [c for c in RESULT_COLUMNS if c not in df.columns]
        if missing:
            raise AggregationError(f"Partial result {i} is missing column(s): {missing}")

    merged = pd.concat([df.loc[:, RESULT_COLUMNS] for df in partials], axis=0, ignore_index=True)
    if merged.empty:
        raise AggregationError("Partial results contain no rows.")

    dup = merged["gene"][merged["gene"].duplicated()].unique()[:5].tolist()
    if dup:
        raise AggregationError(f"Gene(s) reported by more than one chunk: {dup}")

    pc = float(pseudocount)
    mean_a = merged["meanA"].to_numpy(dtype=np.float64)
    mean_b = merged["meanB"].to_numpy(dtype=np.float64)
    with np.errstate(divide="ignore", invalid="ignore"):
        fc = (mean_b - pc) / (mean_a - pc)
        lfc = np.log2(fc)

    out = pd.DataFrame(
        {
            "gene": merged["gene"].astype(str).to_numpy(),
            "baseMean": merged["baseMean"].to_numpy(dtype=np.float64),
            "meanA": mean_a,
            "meanB": mean_b,
            "foldChange": fc,
            "log2FoldChange": lfc,
            "pvalue": merged["pvalue"].to_numpy(dtype=np.float64),
        }
    )
    out["padj"] = bh_adjust(out["pvalue"].to_numpy())

    out = out.sort_values("pvalue", kind="mergesort", na_position="last").reset_index(drop=True)
    out = out.loc[:, DE_COLUMNS]

    n_sig = int(np.sum(out["padj"].to_numpy() < 0.05))
    LOGGER.info("DE: aggregated %d gene(s); %d with padj < 0.05.", len(out), n_sig)
    return out
