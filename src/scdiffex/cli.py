from __future__ import annotations
from typing import Optional, List
import typer
from pathlib import Path
import warnings

from pydantic import ValidationError

from .diff_expression import run_de
from .config import DiffExpressionConfig


app = typer.Typer(help="scDiffEx CLI: chunked two-condition differential expression for single-cell counts.")

# statsmodels warns for every Gamma GLM with an identity link
warnings.filterwarnings("ignore", message=".*identity link.*", category=UserWarning)
warnings.filterwarnings("ignore", message="Variable names are not unique", category=UserWarning, module="anndata")


@app.callback()
def main():
    """
    Differential expression between two groups of cells.
    """


# ---------------------------------------------------------------------
# diff-expression
# ---------------------------------------------------------------------
@app.command("diff-expression", help="Test every ranked gene for differential expression between two conditions.")
def diff_expression(
    # --- I/O ---
    input_path: Path = typer.Option(
        ..., "--input", "-i",
        help="Input dataset (.h5ad or .zarr) with raw counts.",
    ),
    output_dir: Path = typer.Option(
        ..., "--out", "-o",
        help="Output directory for the result table and settings.",
    ),
    output_name: str = typer.Option("de_results", "--output-name"),
    save_h5ad: bool = typer.Option(
        False, "--save-h5ad",
        help="Also store the result in adata.uns and write <output-name>.h5ad.",
    ),

    # --- Comparison ---
    conditions: str = typer.Option(
        ..., "--conditions", "-c",
        help="Cell metadata column holding the condition labels.",
    ),
    condition_a: str = typer.Option(..., "--condition-a", "-a", help="Label of group A."),
    condition_b: List[str] = typer.Option(
        ..., "--condition-b", "-b",
        help="Label(s) of group B; repeat or comma-separate. 'Others' = every other cell.",
    ),
    complement_label: str = typer.Option("Others", "--complement-label"),

    # --- Model ---
    fit_type: str = typer.Option(
        "local", "--fit-type",
        help="Dispersion trend: parametric or local.",
    ),
    dispersion_method: str = typer.Option(
        "per-condition", "--dispersion-method",
        help="pooled, pooled-CR, per-condition or blind.",
    ),
    gene_limit: Optional[int] = typer.Option(
        None, "--n-genes",
        help="Test only the top N ranked genes (default: all).",
    ),
    counts_layer: Optional[str] = typer.Option(None, "--counts-layer", help="Layer with raw counts (default: X)."),
    gene_rank_key: str = typer.Option("top_gene_list", "--gene-rank-key", help="adata.uns key of the gene ranking."),
    pseudocount: float = typer.Option(1.0, "--pseudocount"),

    # --- Compute ---
    n_jobs: int = typer.Option(1, "--n-jobs", help="Worker processes for the chunked test."),
    heartbeat_s: float = typer.Option(
        60.0, "--heartbeat-s",
        help="Seconds between progress lines while waiting on workers.",
    ),
    logfile: Optional[Path] = typer.Option(
        None, "--logfile",
        help="Log file (default: <out>/diff-expression.log).",
    ),
):
    """
    Run the chunked DESeq-style test and write the ranked table.
    """
    try:
        cfg = DiffExpressionConfig(
            input_path=input_path,
            output_dir=output_dir,
            output_name=output_name,
            save_h5ad=save_h5ad,
            conditions=conditions,
            condition_a=condition_a,
            condition_b=condition_b,
            complement_label=complement_label,
            fit_type=fit_type,
            dispersion_method=dispersion_method,
            gene_limit=gene_limit,
            counts_layer=counts_layer,
            gene_rank_key=gene_rank_key,
            pseudocount=pseudocount,
            n_jobs=n_jobs,
            heartbeat_s=heartbeat_s,
            logfile=logfile or output_dir / "diff-expression.log",
        )
    except ValidationError as e:
        raise typer.BadParameter(str(e))

    run_de(cfg)


if __name__ == "__main__":
    app()
