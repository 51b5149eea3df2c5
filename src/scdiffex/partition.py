# src/scdiffex/partition.py
from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import anndata as ad
import numpy as np
import pandas as pd

from .conditions import ConditionAssignment
from .dataset import DatasetSpec, counts_by_gene, ranked_genes

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkingPolicy:
    """
    Target rows per chunk by filtered gene count.

      n_genes > large_gene_count  -> large_chunk_rows
      n_genes < small_gene_count  -> small_chunk_rows
      otherwise                   -> medium_chunk_rows
    """
    large_gene_count: int = 1000
    small_gene_count: int = 100
    large_chunk_rows: int = 1000
    medium_chunk_rows: int = 100
    small_chunk_rows: int = 10


@dataclass(frozen=True, eq=False)
class Chunk:
    """A contiguous block of genes (rows) over every selected cell (columns)."""
    index: int
    genes: Tuple[str, ...]
    counts: np.ndarray  # genes x cells, int64

    def __post_init__(self):
        if self.counts.shape[0] != len(self.genes):
            raise ValueError(
                f"Chunk {self.index}: {self.counts.shape[0]} count rows for {len(self.genes)} genes."
            )
        self.counts.setflags(write=False)

    @property
    def n_genes(self) -> int:
        return len(self.genes)


def chunk_rows_for(n_genes: int, policy: ChunkingPolicy = ChunkingPolicy()) -> int:
    if n_genes > policy.large_gene_count:
        return int(policy.large_chunk_rows)
    if n_genes < policy.small_gene_count:
        return int(policy.small_chunk_rows)
    return int(policy.medium_chunk_rows)


def n_chunks_for(n_genes: int, policy: ChunkingPolicy = ChunkingPolicy()) -> int:
    """Number of chunks so that no chunk exceeds the policy's target rows."""
    if n_genes <= 0:
        return 0
    return max(1, math.ceil(n_genes / chunk_rows_for(n_genes, policy)))


def select_genes(
    counts: pd.DataFrame,
    ranking: Sequence[str],
    *,
    gene_limit: Optional[int] = None,
) -> List[str]:
    """
    Genes to test, in ranking order.

    1) top `gene_limit` genes of the ranking (all ranked genes when None)
    2) mean > 0 across the selected cells
    3) standard deviation > 0 across the selected cells
    """
    top = list(ranking) if gene_limit is None else list(ranking)[: int(gene_limit)]
    top = [g for g in top if g in counts.index]

    sub = counts.loc[top]
    values = sub.to_numpy(dtype=np.float64, copy=False)
    if values.shape[1] < 2:
        return []
    keep = (values.mean(axis=1) > 0) & (values.std(axis=1, ddof=1) > 0)

    return [g for g, k in zip(top, keep) if k]


def offset_counts(values: np.ndarray, pseudocount: float = 1.0) -> np.ndarray:
    """Add the pseudocount and round half-to-even to integer counts."""
    return np.rint(np.asarray(values, dtype=np.float64) + float(pseudocount)).astype(np.int64)


def split_into_chunks(
    genes: Sequence[str],
    counts: np.ndarray,
    *,
    policy: ChunkingPolicy = ChunkingPolicy(),
) -> List[Chunk]:
    """Split rows into contiguous, balanced, non-overlapping chunks."""
    n = len(genes)
    n_chunks = n_chunks_for(n, policy)
    if n_chunks == 0:
        return []

    genes = list(genes)
    chunks: List[Chunk] = []
    for rows in np.array_split(np.arange(n), n_chunks):
        lo, hi = int(rows[0]), int(rows[-1]) + 1
        chunks.append(
            Chunk(
                index=len(chunks),
                genes=tuple(genes[lo:hi]),
                counts=np.ascontiguousarray(counts[lo:hi, :]),
            )
        )
    return chunks


def prepare_count_chunks(
    adata: ad.AnnData,
    assignment: ConditionAssignment,
    *,
    gene_limit: Optional[int] = None,
    pseudocount: float = 1.0,
    spec: DatasetSpec = DatasetSpec(),
    policy: ChunkingPolicy = ChunkingPolicy(),
) -> List[Chunk]:
    """
    Filter, offset and chunk the count matrix for the resolved cells.

    The dataset is sliced, never modified. Every chunk carries all selected
    cells in assignment order.
    """
    ranking = ranked_genes(adata, gene_rank_key=spec.gene_rank_key)
    candidates = ranking if gene_limit is None else ranking[: int(gene_limit)]

    counts = counts_by_gene(
        adata,
        assignment.cells,
        genes=candidates,
        counts_layer=spec.counts_layer,
    )

    genes = select_genes(counts, candidates)
    LOGGER.info(
        "Gene selection: %d candidate gene(s) (limit=%s) → %d with mean > 0 and sd > 0.",
        len(candidates),
        gene_limit if gene_limit is not None else "all",
        len(genes),
    )
    if not genes:
        LOGGER.warning("No genes left after filtering; nothing to test.")
        return []

    offset = offset_counts(counts.loc[genes].to_numpy(), pseudocount)

    chunks = split_into_chunks(genes, offset, policy=policy)
    LOGGER.info(
        "Chunking %d gene(s) x %d cell(s): target %d rows/chunk → %d chunk(s).",
        len(genes),
        len(assignment.cells),
        chunk_rows_for(len(genes), policy),
        len(chunks),
    )
    return chunks
