# src/scdiffex/conditions.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import anndata as ad
import numpy as np

from .dataset import obs_column
from .errors import InputError
from .validation import DERequest

LOGGER = logging.getLogger(__name__)

TAG_A = "A"
TAG_B = "B"


@dataclass(frozen=True)
class ConditionAssignment:
    """
    Cells taking part in one comparison and their group tag.

    Group A cells come first (obs order), then group B cells (obs order).
    Tags are the synthetic "A"/"B", never the user labels, so a label can not
    collide with the complement group.
    """
    column: str
    label_a: str
    labels_b: Tuple[str, ...]
    complement: bool
    cells: Tuple[str, ...]
    tags: Tuple[str, ...]

    @property
    def n_a(self) -> int:
        return sum(1 for t in self.tags if t == TAG_A)

    @property
    def n_b(self) -> int:
        return sum(1 for t in self.tags if t == TAG_B)

    @property
    def mask_a(self) -> np.ndarray:
        return np.asarray(self.tags) == TAG_A

    @property
    def label_b(self) -> str:
        return "rest" if self.complement else "+".join(self.labels_b)


def resolve_conditions(adata: ad.AnnData, request: DERequest) -> ConditionAssignment:
    """
    Build the per-cell condition assignment for a validated request.

    - cells labelled condition_a -> group A
    - complement: every other labelled cell -> group B
    - otherwise: only cells carrying one of the condition_b labels -> group B
    Cells with a missing label never take part.
    """
    labels = obs_column(adata, request.conditions)
    present = labels.notna().to_numpy()

    in_a = present & (labels == request.condition_a).to_numpy()
    if request.complement:
        in_b = present & ~in_a
    else:
        in_b = present & labels.isin(list(request.condition_b)).to_numpy()

    n_a = int(in_a.sum())
    n_b = int(in_b.sum())
    if n_a == 0 or n_b == 0:
        raise InputError(
            f"Empty group: condition A ({request.condition_a!r}) has {n_a} cell(s) and "
            f"condition B ({'rest' if request.complement else list(request.condition_b)}) has {n_b} cell(s) "
            f"in column {request.conditions!r}."
        )

    obs_names = adata.obs_names.astype(str).to_numpy()
    cells = tuple(obs_names[in_a].tolist()) + tuple(obs_names[in_b].tolist())
    tags = (TAG_A,) * n_a + (TAG_B,) * n_b

    LOGGER.info(
        "Conditions resolved on %r: A=%r (%d cells) vs B=%s (%d cells).",
        request.conditions,
        request.condition_a,
        n_a,
        "rest" if request.complement else list(request.condition_b),
        n_b,
    )

    return ConditionAssignment(
        column=request.conditions,
        label_a=request.condition_a,
        labels_b=request.condition_b,
        complement=request.complement,
        cells=cells,
        tags=tags,
    )
