"""
Exception hierarchy for deferential_nb.

Structural problems with the inputs abort a run with one of these
exceptions. Per-gene numerical failures are never raised; they are recorded
as :class:`deferential_nb.deseq.GeneStatus` values in the fit and result
records instead.
"""

from __future__ import annotations


class DeferentialError(Exception):
    """Base class for all errors raised by deferential_nb."""


class CountDataError(DeferentialError, ValueError):
    """The count matrix is malformed (negative, non-integer, duplicated names)."""


class DesignError(DeferentialError, ValueError):
    """The design specification, covariates or contrast cannot be used."""


class InsufficientDataError(DeferentialError):
    """Estimation cannot proceed for structural reasons.

    Raised when no gene yields a usable size-factor ratio, a sample has only
    zero counts, the design matrix is not of full column rank, or the design
    leaves no residual degrees of freedom.
    """
