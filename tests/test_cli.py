import pytest
from typer.testing import CliRunner
from unittest.mock import patch

from scdiffex.cli import app

runner = CliRunner()


# ---------------------------------------------------------
# Top-level CLI
# ---------------------------------------------------------
def test_cli_help():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    assert "scDiffEx CLI" in result.output


# ---------------------------------------------------------
# diff-expression
# ---------------------------------------------------------
def test_diff_expression_help():
    result = runner.invoke(app, ["diff-expression", "--help"])
    assert result.exit_code == 0
    assert "--condition-a" in result.output


def test_diff_expression_requires_conditions():
    result = runner.invoke(app, ["diff-expression", "-i", "in.h5ad", "-o", "outdir"])
    assert result.exit_code != 0


@patch("scdiffex.cli.run_de")
def test_diff_expression_dispatch(mock_run, tmp_path):
    result = runner.invoke(
        app,
        [
            "diff-expression",
            "-i", "in.h5ad",
            "-o", str(tmp_path / "outdir"),
            "-c", "condition",
            "-a", "ctrl",
            "-b", "treat,stim",
            "-b", "other",
            "--fit-type", "parametric",
            "--dispersion-method", "pooled",
            "--n-genes", "500",
            "--n-jobs", "3",
        ],
    )
    assert result.exit_code == 0, result.output
    mock_run.assert_called_once()
    cfg = mock_run.call_args[0][0]
    assert cfg.conditions == "condition"
    assert cfg.condition_a == "ctrl"
    assert cfg.condition_b == ["treat", "stim", "other"]
    assert cfg.fit_type == "parametric"
    assert cfg.dispersion_method == "pooled"
    assert cfg.gene_limit == 500
    assert cfg.n_jobs == 3
    assert cfg.output_dir.name == "outdir"
    assert cfg.logfile.name == "diff-expression.log"
    assert cfg.heartbeat_s == 60.0


@patch("scdiffex.cli.run_de")
def test_diff_expression_rejects_bad_fit_type(mock_run, tmp_path):
    result = runner.invoke(
        app,
        [
            "diff-expression",
            "-i", "in.h5ad",
            "-o", str(tmp_path / "outdir"),
            "-c", "condition",
            "-a", "ctrl",
            "-b", "treat",
            "--fit-type", "mean",
        ],
    )
    assert result.exit_code != 0
    mock_run.assert_not_called()


@patch("scdiffex.cli.run_de")
def test_diff_expression_heartbeat_and_logfile(mock_run, tmp_path):
    log = tmp_path / "logs" / "run.log"
    result = runner.invoke(
        app,
        [
            "diff-expression",
            "-i", "in.h5ad",
            "-o", str(tmp_path / "outdir"),
            "-c", "condition",
            "-a", "ctrl",
            "-b", "treat",
            "--heartbeat-s", "5",
            "--logfile", str(log),
        ],
    )
    assert result.exit_code == 0, result.output
    cfg = mock_run.call_args[0][0]
    assert cfg.heartbeat_s == 5.0
    assert cfg.logfile == log


@patch("scdiffex.cli.run_de")
def test_diff_expression_rejects_zero_heartbeat(mock_run, tmp_path):
    result = runner.invoke(
        app,
        [
            "diff-expression",
            "-i", "in.h5ad",
            "-o", str(tmp_path / "outdir"),
            "-c", "condition",
            "-a", "ctrl",
            "-b", "treat",
            "--heartbeat-s", "0",
        ],
    )
    assert result.exit_code != 0
    mock_run.assert_not_called()
