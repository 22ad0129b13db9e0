"""
Input validation utilities for DESeq functions.

Checks on count experiments, design matrices and result tables, raised
before any per-gene work starts.
"""

from __future__ import annotations
from typing import Any, Optional, Sequence
import numpy as np
import pandas as pd

from ..count_init import check_unique_names
from ..errors import DesignError, InsufficientDataError


def check_count_experiment(se: Any, assay: str = "counts") -> None:
    """Check that ``se`` can feed the pipeline from ``assay``.

    Any SummarizedExperiment variant works as long as it holds the counts
    assay and its gene and sample names are unique.

    Raises:
        TypeError: If ``se`` has no assays.
        KeyError: If ``assay`` is missing.
        CountDataError: If gene or sample names are duplicated.
    """
    if not hasattr(se, "assay_names"):
        raise TypeError(f"Expected a SummarizedExperiment with a counts assay, got {type(se).__name__}")
    if assay not in se.assay_names:
        raise KeyError(
            f"No {assay!r} assay; available: {list(se.assay_names)}. "
            "Pass assay=... to name the raw counts"
        )
    check_unique_names(se.row_names, "gene")
    check_unique_names(se.column_names, "sample")


def check_min_samples(n_samples: int, minimum: int = 2) -> None:
    """Size factors and dispersions need at least ``minimum`` samples."""
    if n_samples < minimum:
        raise InsufficientDataError(
            f"At least {minimum} samples are required, got {n_samples}"
        )


def check_design(design: Any, n_samples: Optional[int] = None) -> None:
    """Check that design is a valid numeric pandas DataFrame."""
    if not isinstance(design, pd.DataFrame):
        raise TypeError(
            f"Expected `design` to be a pandas DataFrame, "
            f"got {type(design).__name__}"
        )
    if n_samples is not None and len(design) != n_samples:
        raise DesignError(
            f"Design matrix has {len(design)} rows but expected {n_samples} samples"
        )
    values = design.to_numpy(dtype=float)
    if not np.all(np.isfinite(values)):
        raise DesignError("Design matrix contains missing or infinite values")


def check_full_rank(design: pd.DataFrame) -> None:
    """Require linearly independent design columns and residual degrees of freedom.

    Raises:
        InsufficientDataError: If the design is rank deficient or has as many
            coefficients as samples.
    """
    X = design.to_numpy(dtype=float)
    n_samples, n_coef = X.shape
    if n_coef == 0:
        raise DesignError("Design matrix has no columns")
    rank = np.linalg.matrix_rank(X)
    if rank < n_coef:
        raise InsufficientDataError(
            f"Design matrix is not full rank (rank {rank} < {n_coef} columns); "
            f"remove collinear covariates from {list(design.columns)}"
        )
    if n_samples <= n_coef:
        raise InsufficientDataError(
            f"Design has {n_coef} coefficients for {n_samples} samples; "
            "no residual degrees of freedom for dispersion estimation"
        )


def check_results_match(results: Any, gene_names: Sequence[str]) -> None:
    """Results must come from a model over the same genes, in the same order."""
    genes = results.column("gene")
    if len(genes) != len(gene_names) or any(a != b for a, b in zip(genes, gene_names)):
        raise ValueError("Results were not produced by this model (gene sets differ)")


def check_coef_or_contrast(
    coef: Optional[Any],
    contrast: Optional[Sequence],
) -> None:
    """Check that at most one of coef or contrast is provided."""
    if coef is not None and contrast is not None:
        raise DesignError("Specify either `coef` or `contrast`, not both")
