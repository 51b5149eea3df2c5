# src/scdiffex/diff_expression.py
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

import anndata as ad
import pandas as pd

from .aggregate import aggregate_results
from .conditions import resolve_conditions
from .dataset import DatasetSpec, load_dataset, save_adata
from .de_worker import WorkerContext
from .errors import AggregationError
from .dispatch import dispatch_chunks
from .logging_utils import init_logging
from .partition import ChunkingPolicy, prepare_count_chunks
from .validation import DERequest, validate_de_inputs

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiffExpressionOptions:
    pseudocount: float = 1.0
    min_disp: float = 1e-8
    heartbeat_s: float = 60.0


def _store_result(
    adata: ad.AnnData,
    store_key: str,
    result: pd.DataFrame,
    request: DERequest,
    summary: pd.DataFrame,
    opts: DiffExpressionOptions,
) -> None:
    block = adata.uns.setdefault(store_key, {})
    # tuples become lists so the block survives an h5ad round trip
    req = {k: (list(v) if isinstance(v, tuple) else v) for k, v in asdict(request).items()}
    if req.get("gene_limit") is None:
        req["gene_limit"] = "all"
    block["diff_expression"] = {
        "request": req,
        "options": asdict(opts),
        "results": result.copy(),
        "summary": summary.copy(),
    }
    LOGGER.info("Stored DE results in adata.uns[%r]['diff_expression'].", store_key)


def run_diff_expression(
    adata: ad.AnnData,
    conditions: Optional[str] = None,
    condition_a: Optional[str] = None,
    condition_b: Optional[Union[str, Sequence[str]]] = None,
    fit_type: Optional[str] = None,
    dispersion_method: Optional[str] = None,
    gene_limit=None,
    *,
    spec: DatasetSpec = DatasetSpec(),
    opts: DiffExpressionOptions = DiffExpressionOptions(),
    policy: ChunkingPolicy = ChunkingPolicy(),
    n_jobs: int = 1,
    store_key: str = "scdiffex_de",
    store: bool = False,
) -> pd.DataFrame:
    """
    Two-condition differential expression over cells.

    Validates the request, resolves the two cell groups, splits the filtered
    and offset count matrix into gene chunks, tests every chunk with a
    DESeq-style negative binomial test (optionally in a process pool), and
    merges the chunk results into one table sorted by p-value.

    Nothing is written to `adata` unless store=True.

    Returns a DataFrame with columns:
      gene, baseMean, meanA, meanB, foldChange, log2FoldChange, pvalue, padj
    """
    request = validate_de_inputs(
        adata,
        conditions,
        condition_a,
        condition_b,
        fit_type=fit_type,
        dispersion_method=dispersion_method,
        gene_limit=gene_limit,
        spec=spec,
    )
    LOGGER.info(
        "DE request: %s (fit_type=%s, dispersion_method=%s, genes=%s, n_jobs=%d).",
        request.describe(),
        request.fit_type,
        request.dispersion_method,
        request.gene_limit if request.gene_limit is not None else "all",
        int(n_jobs),
    )

    assignment = resolve_conditions(adata, request)

    chunks = prepare_count_chunks(
        adata,
        assignment,
        gene_limit=request.gene_limit,
        pseudocount=opts.pseudocount,
        spec=spec,
        policy=policy,
    )
    if not chunks:
        raise AggregationError(
            f"No testable genes for {request.describe()}: every candidate gene has zero mean or zero "
            "variance across the selected cells."
        )

    context = WorkerContext(
        tags=assignment.tags,
        fit_type=request.fit_type,
        dispersion_method=request.dispersion_method,
        min_disp=float(opts.min_disp),
        cell_ids=assignment.cells,
    )

    partials, summary_rows = dispatch_chunks(
        chunks,
        context,
        n_jobs=n_jobs,
        heartbeat_s=opts.heartbeat_s,
    )

    result = aggregate_results(partials, pseudocount=opts.pseudocount)

    if store and store_key:
        _store_result(adata, store_key, result, request, pd.DataFrame(summary_rows), opts)

    return result


def _write_settings(out_dir: Path, name: str, lines: list[str]) -> None:
    out_dir.mkdir(parents=True, exist_ok=True)
    out_path = out_dir / name
    with out_path.open("w", encoding="utf-8") as f:
        f.write("\n".join(lines).rstrip() + "\n")


# -----------------------------------------------------------------------------
# Orchestrator: file in, table out
# -----------------------------------------------------------------------------
def run_de(cfg) -> pd.DataFrame:
    """
    Load a dataset, run one two-condition comparison and export it.

    Writes:
      - <output_dir>/<output_name>.csv
      - <output_dir>/de_settings.txt
      - <output_dir>/<output_name>.h5ad (only with save_h5ad)
    """
    init_logging(getattr(cfg, "logfile", None))
    LOGGER.info("Starting diff-expression...")

    output_dir = Path(getattr(cfg, "output_dir"))
    output_dir.mkdir(parents=True, exist_ok=True)
    output_name = str(getattr(cfg, "output_name", "de_results"))

    adata = load_dataset(getattr(cfg, "input_path"))

    spec = DatasetSpec(
        counts_layer=getattr(cfg, "counts_layer", None),
        gene_rank_key=str(getattr(cfg, "gene_rank_key", "top_gene_list")),
        complement_label=str(getattr(cfg, "complement_label", "Others")),
    )
    opts = DiffExpressionOptions(
        pseudocount=float(getattr(cfg, "pseudocount", 1.0)),
        heartbeat_s=float(getattr(cfg, "heartbeat_s", 60.0)),
    )
    save_h5ad = bool(getattr(cfg, "save_h5ad", False))

    result = run_diff_expression(
        adata,
        getattr(cfg, "conditions"),
        getattr(cfg, "condition_a"),
        list(getattr(cfg, "condition_b")),
        fit_type=getattr(cfg, "fit_type", None),
        dispersion_method=getattr(cfg, "dispersion_method", None),
        gene_limit=getattr(cfg, "gene_limit", None),
        spec=spec,
        opts=opts,
        n_jobs=int(getattr(cfg, "n_jobs", 1)),
        store=save_h5ad,
    )

    csv_path = output_dir / f"{output_name}.csv"
    result.to_csv(csv_path, index=False)
    LOGGER.info("Wrote %s (%d genes)", csv_path, len(result))

    _write_settings(
        output_dir,
        "de_settings.txt",
        [
            f"input_path={getattr(cfg, 'input_path')}",
            f"conditions={getattr(cfg, 'conditions')}",
            f"condition_a={getattr(cfg, 'condition_a')}",
            f"condition_b={','.join(map(str, getattr(cfg, 'condition_b')))}",
            f"fit_type={getattr(cfg, 'fit_type', None)}",
            f"dispersion_method={getattr(cfg, 'dispersion_method', None)}",
            f"gene_limit={getattr(cfg, 'gene_limit', None)}",
            f"counts_layer={spec.counts_layer}",
            f"gene_rank_key={spec.gene_rank_key}",
            f"complement_label={spec.complement_label}",
            f"pseudocount={opts.pseudocount}",
            f"n_jobs={getattr(cfg, 'n_jobs', 1)}",
            f"n_genes_tested={len(result)}",
        ],
    )

    if save_h5ad:
        save_adata(adata, output_dir / f"{output_name}.h5ad")

    LOGGER.info("Finished diff-expression.")
    return result
