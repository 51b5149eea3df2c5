import pytest

from scdiffex.dataset import DatasetSpec
from scdiffex.errors import InputError
from scdiffex.validation import (
    coerce_gene_limit,
    normalize_condition_b,
    validate_de_inputs,
)


# -------------------------------------------------------------------------
# Happy paths
# -------------------------------------------------------------------------
def test_validate_single_label(small_adata):
    req = validate_de_inputs(small_adata, "group", "x", "y")
    assert req.conditions == "group"
    assert req.condition_a == "x"
    assert req.condition_b == ("y",)
    assert req.complement is False
    assert req.fit_type == "local"
    assert req.dispersion_method == "per-condition"
    assert req.gene_limit is None


def test_validate_complement_sentinel(small_adata):
    req = validate_de_inputs(small_adata, "group", "x", "Others")
    assert req.complement is True
    assert req.describe() == "group: x vs rest"


def test_validate_custom_complement_label(small_adata):
    spec = DatasetSpec(complement_label="REST")
    req = validate_de_inputs(small_adata, "group", "x", ["REST"], spec=spec)
    assert req.complement is True


def test_validate_multi_label_b(small_adata):
    req = validate_de_inputs(small_adata, "group", "x", ["y", "z", "y"])
    assert req.condition_b == ("y", "z")
    assert req.complement is False


def test_validate_integer_labels(small_adata):
    small_adata.obs["cluster"] = [0, 0, 1, 1, 2, 2, 2]
    req = validate_de_inputs(small_adata, "cluster", 0, 1)
    assert req.condition_a == "0"
    assert req.condition_b == ("1",)
    assert req.describe() == "cluster: 0 vs 1"


def test_validate_gene_limit_and_options(small_adata):
    req = validate_de_inputs(
        small_adata, "group", "x", "y",
        fit_type="parametric", dispersion_method="pooled-CR", gene_limit=3.0,
    )
    assert req.gene_limit == 3
    assert req.fit_type == "parametric"
    assert req.dispersion_method == "pooled-CR"


# -------------------------------------------------------------------------
# Error paths
# -------------------------------------------------------------------------
def test_rejects_non_anndata():
    with pytest.raises(InputError, match="AnnData"):
        validate_de_inputs({"not": "adata"}, "group", "x", "y")


@pytest.mark.parametrize(
    "conditions,a,b",
    [(None, "x", "y"), ("group", None, "y"), ("group", "x", None), ("", "x", "y"), ("group", "x", [])],
)
def test_rejects_missing_arguments(small_adata, conditions, a, b):
    with pytest.raises(InputError, match="supply your conditions"):
        validate_de_inputs(small_adata, conditions, a, b)


def test_rejects_clustering_column_before_clustering(small_adata):
    with pytest.raises(InputError, match="run clustering"):
        validate_de_inputs(small_adata, "leiden", "0", "1")


def test_rejects_unknown_column(small_adata):
    with pytest.raises(InputError, match="not found"):
        validate_de_inputs(small_adata, "nope", "x", "y")


def test_rejects_absent_condition_a(small_adata):
    with pytest.raises(InputError, match="condition A"):
        validate_de_inputs(small_adata, "group", "w", "y")


def test_rejects_absent_condition_b_single(small_adata):
    with pytest.raises(InputError, match="condition B"):
        validate_de_inputs(small_adata, "group", "x", "w")


def test_rejects_absent_condition_b_multi(small_adata):
    with pytest.raises(InputError, match="all conditions in condition B"):
        validate_de_inputs(small_adata, "group", "x", ["y", "w"])


def test_rejects_a_in_b(small_adata):
    with pytest.raises(InputError, match="cannot also be part"):
        validate_de_inputs(small_adata, "group", "x", ["x", "y"])


@pytest.mark.parametrize("limit", ["ten", True, [3]])
def test_rejects_non_numeric_gene_limit(small_adata, limit):
    with pytest.raises(InputError, match="is a number"):
        validate_de_inputs(small_adata, "group", "x", "y", gene_limit=limit)


@pytest.mark.parametrize("limit", [0, -5, 2.5])
def test_rejects_bad_gene_limit(small_adata, limit):
    with pytest.raises(InputError, match="positive whole number"):
        validate_de_inputs(small_adata, "group", "x", "y", gene_limit=limit)


def test_rejects_unknown_fit_type(small_adata):
    with pytest.raises(InputError, match="fit_type"):
        validate_de_inputs(small_adata, "group", "x", "y", fit_type="mean")


def test_rejects_unknown_dispersion_method(small_adata):
    with pytest.raises(InputError, match="dispersion_method"):
        validate_de_inputs(small_adata, "group", "x", "y", dispersion_method="maximum")


def test_input_error_is_value_error(small_adata):
    with pytest.raises(ValueError):
        validate_de_inputs(small_adata, "group", "w", "y")


# -------------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------------
def test_normalize_condition_b():
    assert normalize_condition_b("a") == ("a",)
    assert normalize_condition_b(["b", "a", "b"]) == ("b", "a")
    assert normalize_condition_b((1, 2)) == ("1", "2")
    assert normalize_condition_b(2) == ("2",)
    assert normalize_condition_b(2.5) == ("2.5",)


def test_coerce_gene_limit():
    assert coerce_gene_limit(None) is None
    assert coerce_gene_limit(5) == 5
    assert coerce_gene_limit(7.0) == 7
