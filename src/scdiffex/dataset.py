# src/scdiffex/dataset.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from .errors import InputError

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Read-only accessors over an already-prepared AnnData.
# -----------------------------------------------------------------------------
# The DE pipeline never writes to the dataset (except the opt-in uns store in
# diff_expression.run_diff_expression). Counts are taken from a layer when one
# is named, otherwise from .X. Cell metadata = adata.obs, gene metadata =
# adata.var, the externally computed gene ranking lives in adata.uns.
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class DatasetSpec:
    """Where to find counts, the gene ranking and the condition sentinels."""
    counts_layer: Optional[str] = None  # None -> adata.X
    gene_rank_key: str = "top_gene_list"  # adata.uns[...] ordered gene ids
    complement_label: str = "Others"  # condition_b sentinel: "every cell not in A"
    # obs columns produced by an upstream clustering step
    derived_columns: Tuple[str, ...] = ("cluster", "leiden", "louvain")


def check_dataset(adata) -> ad.AnnData:
    """Raise InputError unless `adata` is an AnnData with unique cell/gene ids."""
    if not isinstance(adata, ad.AnnData):
        raise InputError(
            f"Please supply an AnnData object (got {type(adata).__name__})."
        )
    if not adata.obs_names.is_unique:
        dup = adata.obs_names[adata.obs_names.duplicated()].unique()[:5].tolist()
        raise InputError(f"Cell identifiers must be unique; duplicated: {dup}")
    if not adata.var_names.is_unique:
        dup = adata.var_names[adata.var_names.duplicated()].unique()[:5].tolist()
        raise InputError(f"Gene identifiers must be unique; duplicated: {dup}")
    return adata


def get_cell_info(adata: ad.AnnData) -> pd.DataFrame:
    """Cell metadata keyed by cell identifier."""
    return adata.obs


def obs_column(adata: ad.AnnData, column: str) -> pd.Series:
    """
    Typed lookup of a cell metadata column.

    Values are returned as strings (condition labels are opaque); missing
    values stay missing.
    """
    if column not in adata.obs.columns:
        raise InputError(
            f"Column {column!r} not found in cell metadata. "
            f"Available: {list(map(str, adata.obs.columns))}"
        )
    col = get_cell_info(adata)[column]
    return col.astype(object).astype(str).mask(col.isna())


def _get_counts(adata: ad.AnnData, counts_layer: Optional[str]):
    if counts_layer:
        if counts_layer not in adata.layers:
            raise InputError(
                f"counts_layer={counts_layer!r} not found in adata.layers. "
                f"Available: {list(adata.layers.keys())}"
            )
        X = adata.layers[counts_layer]
    else:
        X = adata.X

    if X is None:
        raise InputError("Counts matrix is None (no .X and no counts layer).")
    return X


def counts_by_gene(
    adata: ad.AnnData,
    cells: Sequence[str],
    *,
    genes: Optional[Sequence[str]] = None,
    counts_layer: Optional[str] = None,
) -> pd.DataFrame:
    """
    Return a dense genes x cells DataFrame restricted to `cells` (and `genes`).

    Rows are sliced before densifying so a sparse matrix is never densified
    as a whole.
    """
    X = _get_counts(adata, counts_layer)

    cell_idx = adata.obs_names.get_indexer(pd.Index(cells))
    if np.any(cell_idx < 0):
        raise InputError("Some requested cells are not present in the dataset.")

    if genes is None:
        gene_index = adata.var_names
        gene_idx = np.arange(adata.n_vars)
    else:
        gene_index = pd.Index(genes)
        gene_idx = adata.var_names.get_indexer(gene_index)
        if np.any(gene_idx < 0):
            raise InputError("Some requested genes are not present in the dataset.")

    sub = X[cell_idx, :][:, gene_idx]
    if sp.issparse(sub):
        dense = sub.toarray()
    else:
        dense = np.asarray(sub)

    return pd.DataFrame(
        dense.T.astype(np.float64, copy=False),
        index=pd.Index(gene_index.astype(str), name="gene"),
        columns=pd.Index(list(cells), name="cell"),
    )


def ranked_genes(adata: ad.AnnData, *, gene_rank_key: str = "top_gene_list") -> list[str]:
    """
    Ordered gene importance ranking.

    Resolution order:
      1) adata.uns[gene_rank_key] (ordered gene ids)
      2) adata.var['highly_variable_rank'] ascending (NaN last)
      3) adata.var_names order
    """
    known = set(adata.var_names.astype(str))

    ranking = adata.uns.get(gene_rank_key, None)
    if ranking is not None:
        ordered = [str(g) for g in list(ranking)]
        kept = [g for g in ordered if g in known]
        if len(kept) < len(ordered):
            LOGGER.warning(
                "Gene ranking %r lists %d gene(s) not present in var_names; ignoring them.",
                gene_rank_key,
                len(ordered) - len(kept),
            )
        # first occurrence wins
        return list(dict.fromkeys(kept))

    if "highly_variable_rank" in adata.var.columns:
        rank = pd.to_numeric(adata.var["highly_variable_rank"], errors="coerce")
        order = rank.sort_values(kind="mergesort", na_position="last").index
        return order.astype(str).tolist()

    return adata.var_names.astype(str).tolist()


def load_dataset(path: Path) -> ad.AnnData:
    """Load an .h5ad file or a .zarr store fully into memory."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")
    LOGGER.info("Loading dataset → %s", path)
    if path.suffix == ".zarr" or path.is_dir():
        return ad.read_zarr(str(path))
    return ad.read_h5ad(str(path))


def save_adata(adata: ad.AnnData, out_path: Path) -> None:
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    adata.write(str(out_path), compression="gzip")
    LOGGER.info("Wrote %s", out_path)
