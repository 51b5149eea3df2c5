# src/scdiffex/validation.py
from __future__ import annotations

import logging
import numbers
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd

from .dataset import DatasetSpec, check_dataset, obs_column
from .errors import InputError

LOGGER = logging.getLogger(__name__)

FIT_TYPES: Tuple[str, ...] = ("parametric", "local")
DISPERSION_METHODS: Tuple[str, ...] = ("pooled", "pooled-CR", "per-condition", "blind")

DEFAULT_FIT_TYPE = "local"
DEFAULT_DISPERSION_METHOD = "per-condition"


@dataclass(frozen=True)
class DERequest:
    """Validated, normalized arguments of one DE invocation."""
    conditions: str
    condition_a: str
    condition_b: Tuple[str, ...]
    complement: bool
    fit_type: str = DEFAULT_FIT_TYPE
    dispersion_method: str = DEFAULT_DISPERSION_METHOD
    gene_limit: Optional[int] = None

    def describe(self) -> str:
        b = "rest" if self.complement else "+".join(self.condition_b)
        return f"{self.conditions}: {self.condition_a} vs {b}"


def _is_missing(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def normalize_condition_b(condition_b: Union[str, Sequence[str]]) -> Tuple[str, ...]:
    """Condition B may be one label or a sequence of labels; always return a tuple of str."""
    if isinstance(condition_b, str):
        return (condition_b,)
    if not isinstance(condition_b, (list, tuple, set, np.ndarray, pd.Index, pd.Series)):
        return (str(condition_b),)
    labels = [str(x) for x in condition_b]
    # keep order, drop repeats
    return tuple(dict.fromkeys(labels))


def coerce_gene_limit(gene_limit) -> Optional[int]:
    if gene_limit is None:
        return None
    if isinstance(gene_limit, bool) or not isinstance(gene_limit, numbers.Real):
        raise InputError(
            f"Please ensure the gene limit is a number (got {gene_limit!r})."
        )
    value = float(gene_limit)
    if not value.is_integer() or value < 1:
        raise InputError(
            f"The gene limit must be a positive whole number (got {gene_limit!r})."
        )
    return int(value)


def validate_de_inputs(
    adata: ad.AnnData,
    conditions: Optional[str],
    condition_a: Optional[str],
    condition_b: Optional[Union[str, Sequence[str]]],
    *,
    fit_type: Optional[str] = None,
    dispersion_method: Optional[str] = None,
    gene_limit=None,
    spec: DatasetSpec = DatasetSpec(),
) -> DERequest:
    """
    Pre-flight checks for run_diff_expression.

    Pure validation: nothing is computed or written. Raises InputError with a
    descriptive message on the first failed check.
    """
    check_dataset(adata)

    if _is_missing(conditions) or _is_missing(condition_a) or _is_missing(condition_b):
        raise InputError("Please supply your conditions (conditions, condition_a, condition_b) and try again.")

    conditions = str(conditions)
    condition_a = str(condition_a)
    labels_b = normalize_condition_b(condition_b)

    if conditions in spec.derived_columns and conditions not in adata.obs.columns:
        raise InputError(
            f"Column {conditions!r} is produced by clustering; "
            "please run clustering on this dataset before using it as conditions."
        )

    present = set(obs_column(adata, conditions).dropna().unique().tolist())

    if condition_a not in present:
        raise InputError(f"Please make sure condition A ({condition_a!r}) is in column {conditions!r}.")

    complement = len(labels_b) == 1 and labels_b[0] == spec.complement_label
    if not complement:
        missing_b = [b for b in labels_b if b not in present]
        if missing_b:
            if len(labels_b) > 1:
                raise InputError(
                    f"Please make sure all conditions in condition B are in column {conditions!r} "
                    f"(missing: {missing_b})."
                )
            raise InputError(f"Please make sure condition B ({labels_b[0]!r}) is in column {conditions!r}.")
        if condition_a in labels_b:
            raise InputError(f"Condition A ({condition_a!r}) cannot also be part of condition B.")

    limit = coerce_gene_limit(gene_limit)

    fit_type = DEFAULT_FIT_TYPE if fit_type is None else str(fit_type)
    if fit_type not in FIT_TYPES:
        raise InputError(f"fit_type must be one of {list(FIT_TYPES)} (got {fit_type!r}).")

    dispersion_method = DEFAULT_DISPERSION_METHOD if dispersion_method is None else str(dispersion_method)
    if dispersion_method not in DISPERSION_METHODS:
        raise InputError(
            f"dispersion_method must be one of {list(DISPERSION_METHODS)} (got {dispersion_method!r})."
        )

    return DERequest(
        conditions=conditions,
        condition_a=condition_a,
        condition_b=labels_b,
        complement=complement,
        fit_type=fit_type,
        dispersion_method=dispersion_method,
        gene_limit=limit,
    )
