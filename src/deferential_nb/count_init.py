"""
Count-matrix initialization utilities for SummarizedExperiment objects.

This module validates and coerces a raw count assay of any BiocPy
SummarizedExperiment variant (SE, RSE, SCE, CountExperiment) so the DESeq
functions can rely on a dense, non-negative integer matrix with unique
gene and sample identifiers.

Usage:
    >>> from deferential_nb import initialize_counts
    >>> se = initialize_counts(se, assay="counts")
    >>> counts = get_counts(se)  # np.ndarray[int64], genes x samples
"""

from __future__ import annotations
from typing import Any, Optional, Sequence, TypeVar
import numpy as np
import pandas as pd

from .errors import CountDataError

# Type variable for SummarizedExperiment variants
SE = TypeVar("SE")  # SummarizedExperiment, RangedSE, SingleCellExperiment


def validate_count_matrix(counts: Any) -> np.ndarray:
    """
    Coerce ``counts`` to a dense int64 matrix, checking the count invariants.

    Args:
        counts: Array-like of shape (genes, samples). Sparse matrices are
            densified.

    Returns:
        np.ndarray of dtype int64.

    Raises:
        CountDataError: If the matrix is not 2D, has non-finite, negative or
            non-integer entries.
    """
    if hasattr(counts, "toarray"):
        counts = counts.toarray()
    arr = np.asarray(counts)
    if arr.ndim != 2:
        raise CountDataError(f"Count matrix must be 2D, got {arr.ndim}D")
    if arr.dtype == object or arr.dtype.kind not in "biuf":
        raise CountDataError(f"Count matrix must be numeric, got dtype {arr.dtype}")
    if arr.dtype.kind == "f":
        if not np.all(np.isfinite(arr)):
            raise CountDataError("Count matrix contains NaN or infinite values")
        if not np.all(arr == np.round(arr)):
            raise CountDataError("Count matrix contains non-integer values")
    if arr.size and arr.min() < 0:
        raise CountDataError("Count matrix contains negative values")
    return arr.astype(np.int64)


def check_unique_names(names: Optional[Sequence[str]], what: str) -> None:
    """Raise CountDataError when identifiers are duplicated."""
    if names is None:
        return
    index = pd.Index([str(n) for n in names])
    if index.has_duplicates:
        dups = index[index.duplicated()].unique().tolist()[:5]
        raise CountDataError(f"Duplicated {what} identifiers: {dups}")


def initialize_counts(
    se: SE,
    assay: str = "counts",
    in_place: bool = False,
) -> SE:
    """
    Validate a count assay and store it as a dense int64 matrix.

    Works with any BiocPy SummarizedExperiment variant:
    - SummarizedExperiment
    - RangedSummarizedExperiment
    - SingleCellExperiment
    - CountExperiment

    Args:
        se: Input SummarizedExperiment (any variant).
        assay: Name of the count assay. Default: "counts".
        in_place: If True, modify se in place. If False, return a new SE.

    Returns:
        The same SE type with the assay replaced by its validated int64 copy.

    Raises:
        KeyError: If the specified assay does not exist.
        CountDataError: If the counts or identifiers are invalid.

    Example:
        >>> from summarizedexperiment import SummarizedExperiment
        >>> se = SummarizedExperiment(assays={"counts": counts_array})
        >>> se = initialize_counts(se, assay="counts")
    """
    if assay not in se.assay_names:
        raise KeyError(f"Assay '{assay}' not found. Available: {list(se.assay_names)}")

    check_unique_names(se.row_names, "gene")
    check_unique_names(se.column_names, "sample")
    arr = validate_count_matrix(se.assays[assay])

    new_assays = dict(se.assays)
    new_assays[assay] = arr
    return se.set_assays(new_assays, in_place=in_place)


def get_counts(se: Any, assay: str = "counts") -> np.ndarray:
    """
    Extract a validated int64 count matrix (genes x samples) from an SE.

    Raises:
        KeyError: If the assay does not exist.
        CountDataError: If the counts are invalid.
    """
    if assay not in se.assay_names:
        raise KeyError(f"Assay '{assay}' not found. Available: {list(se.assay_names)}")
    return validate_count_matrix(se.assays[assay])


def gene_names(se: Any) -> list:
    """Row identifiers of ``se``, or positional ids when the SE has none."""
    if se.row_names is not None:
        return [str(n) for n in se.row_names]
    return [f"gene_{i}" for i in range(se.shape[0])]


def sample_names(se: Any) -> list:
    """Column identifiers of ``se``, or positional ids when the SE has none."""
    if se.column_names is not None:
        return [str(n) for n in se.column_names]
    return [f"sample_{i}" for i in range(se.shape[1])]
