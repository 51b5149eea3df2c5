from __future__ import annotations

__version__ = "0.1.0"

from .errors import AggregationError, DiffExpressionError, FitError, InputError
from .dataset import DatasetSpec
from .partition import ChunkingPolicy
from .diff_expression import DiffExpressionOptions, run_de, run_diff_expression

__all__ = [
    "__version__",
    "AggregationError",
    "ChunkingPolicy",
    "DatasetSpec",
    "DiffExpressionError",
    "DiffExpressionOptions",
    "FitError",
    "InputError",
    "run_de",
    "run_diff_expression",
]
