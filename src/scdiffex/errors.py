# src/scdiffex/errors.py
from __future__ import annotations


class DiffExpressionError(Exception):
    """Base class for every error raised by the DE pipeline."""


class InputError(DiffExpressionError, ValueError):
    """User-correctable problem with the dataset or the call arguments."""


class FitError(DiffExpressionError, RuntimeError):
    """A chunk's dispersion fit or significance test is undefined."""


class AggregationError(DiffExpressionError, RuntimeError):
    """Partial results could not be merged into a DE table."""
