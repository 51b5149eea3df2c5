import numpy as np
import pandas as pd
import pytest

from scdiffex.aggregate import DE_COLUMNS, aggregate_results, bh_adjust
from scdiffex.errors import AggregationError


def _partial(genes, mean_a, mean_b, pvalues):
    mean_a = np.asarray(mean_a, dtype=float)
    mean_b = np.asarray(mean_b, dtype=float)
    return pd.DataFrame(
        {
            "gene": genes,
            "baseMean": (mean_a + mean_b) / 2,
            "meanA": mean_a,
            "meanB": mean_b,
            "pvalue": pvalues,
            "foldChange": mean_b / mean_a,
        }
    )


def test_fold_change_removes_offset():
    out = aggregate_results([_partial(["g"], [5.0], [10.0], [0.01])])

    assert list(out.columns) == DE_COLUMNS
    assert out.loc[0, "foldChange"] == pytest.approx(2.25)
    assert out.loc[0, "log2FoldChange"] == pytest.approx(1.169925, abs=1e-6)


def test_custom_pseudocount():
    out = aggregate_results([_partial(["g"], [5.0], [10.0], [0.01])], pseudocount=0.0)
    assert out.loc[0, "foldChange"] == pytest.approx(2.0)
    assert out.loc[0, "log2FoldChange"] == pytest.approx(1.0)


def test_non_finite_fold_changes_are_kept():
    out = aggregate_results(
        [_partial(["a_is_one", "b_is_one", "both"], [1.0, 4.0, 1.0], [3.0, 1.0, 1.0], [0.2, 0.3, 0.4])]
    )
    by_gene = out.set_index("gene")

    assert np.isinf(by_gene.loc["a_is_one", "foldChange"])
    assert by_gene.loc["b_is_one", "foldChange"] == 0.0
    assert np.isneginf(by_gene.loc["b_is_one", "log2FoldChange"])
    assert np.isnan(by_gene.loc["both", "foldChange"])


def test_sorted_by_pvalue_with_stable_ties_and_nan_last():
    out = aggregate_results(
        [
            _partial(["t1", "n"], [2, 2], [3, 3], [0.5, np.nan]),
            _partial(["low", "t2"], [2, 2], [3, 3], [0.001, 0.5]),
        ]
    )
    assert out["gene"].tolist() == ["low", "t1", "t2", "n"]
    assert np.isnan(out["padj"].iloc[-1])
    assert out.index.tolist() == [0, 1, 2, 3]


def test_padj_is_benjamini_hochberg():
    p = np.array([0.01, 0.02, 0.03, 0.5])
    expected = np.array([0.04, 0.04, 0.04, 0.5])
    assert np.allclose(bh_adjust(p), expected)

    out = aggregate_results([_partial(["a", "b", "c", "d"], [2] * 4, [3] * 4, p)])
    assert np.allclose(out["padj"].to_numpy(), expected)
    assert (out["padj"] >= out["pvalue"]).all()


def test_order_independent():
    parts = [
        _partial(["a", "b"], [2, 5], [3, 9], [0.04, 0.2]),
        _partial(["c", "d"], [7, 3], [2, 3], [0.001, 0.7]),
        _partial(["e"], [4], [4], [0.3]),
    ]
    ref = aggregate_results(parts)

    for perm in ([2, 0, 1], [1, 2, 0], [2, 1, 0]):
        out = aggregate_results([parts[i] for i in perm])
        pd.testing.assert_frame_equal(out, ref)


def test_order_independent_up_to_ties():
    parts = [_partial(["a"], [2], [3], [0.5]), _partial(["b"], [4], [3], [0.5])]
    ref = aggregate_results(parts).set_index("gene").sort_index()
    out = aggregate_results(parts[::-1]).set_index("gene").sort_index()
    pd.testing.assert_frame_equal(out, ref)


def test_rejects_empty_list():
    with pytest.raises(AggregationError):
        aggregate_results([])


def test_rejects_empty_tables():
    with pytest.raises(AggregationError, match="no rows"):
        aggregate_results([_partial([], [], [], [])])


def test_rejects_missing_columns():
    bad = _partial(["g"], [2], [3], [0.1]).drop(columns=["meanB"])
    with pytest.raises(AggregationError, match="meanB"):
        aggregate_results([bad])


def test_rejects_duplicate_genes():
    with pytest.raises(AggregationError, match="more than one chunk"):
        aggregate_results([_partial(["g"], [2], [3], [0.1]), _partial(["g"], [4], [3], [0.2])])
