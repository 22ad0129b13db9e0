"""
Median-of-ratios size factors and normalized counts.

This module provides functional interfaces to estimate per-sample size
factors, store them in the column_data of a SummarizedExperiment, and
expose normalized counts as an assay.
"""

from __future__ import annotations
import logging
from typing import Any, Optional, Sequence, TypeVar
import numpy as np
import pandas as pd

from ..count_init import get_counts, gene_names, sample_names, validate_count_matrix
from ..errors import InsufficientDataError
from .checks import check_count_experiment, check_min_samples
from .config import SizeFactorMethod
from .utils import freeze

logger = logging.getLogger(__name__)

# Type variable for SummarizedExperiment variants
SE = TypeVar("SE")


def log_geometric_means(counts: np.ndarray, method: SizeFactorMethod = "ratio") -> np.ndarray:
    """
    Per-gene log geometric mean used as the pseudo-reference sample.

    With ``"ratio"`` any zero makes the gene's reference ``-inf`` so it is
    excluded. With ``"poscounts"`` the log counts of positive entries are
    summed and divided by the number of samples; all-zero genes get ``-inf``.
    """
    counts = np.asarray(counts, dtype=float)
    with np.errstate(divide="ignore"):
        log_counts = np.log(counts)
    if method == "ratio":
        return log_counts.mean(axis=1)
    if method == "poscounts":
        pos = counts > 0
        summed = np.where(pos, log_counts, 0.0).sum(axis=1) / counts.shape[1]
        return np.where(pos.any(axis=1), summed, -np.inf)
    raise ValueError(f"Unknown size factor method: {method!r}")


def size_factors_from_matrix(
    counts: Any,
    method: SizeFactorMethod = "ratio",
    control_genes: Optional[Sequence[bool]] = None,
    normalize: bool = True,
) -> np.ndarray:
    """
    Median-of-ratios size factors for a genes x samples count matrix.

    Args:
        counts: Non-negative integer counts, genes x samples.
        method: Zero handling of the reference. ``"ratio"`` drops genes with
            any zero count; ``"poscounts"`` keeps them and only uses the
            positive entries of each sample.
        control_genes: Optional boolean mask (or integer indices) of genes
            allowed in the reference, e.g. housekeeping genes.
        normalize: Rescale so the geometric mean of the factors is 1.

    Returns:
        np.ndarray of shape (n_samples,), strictly positive.

    Raises:
        InsufficientDataError: With fewer than 2 samples, a sample whose counts
            are all zero, or a sample without any usable ratio.
    """
    counts = validate_count_matrix(counts).astype(float)
    n_genes, n_samples = counts.shape
    check_min_samples(n_samples)

    empty = np.flatnonzero(counts.sum(axis=0) == 0)
    if empty.size:
        raise InsufficientDataError(f"Samples with all-zero counts at positions {empty.tolist()}")

    loggeo = log_geometric_means(counts, method)
    usable = np.isfinite(loggeo)
    if control_genes is not None:
        mask = np.zeros(n_genes, dtype=bool)
        mask[np.asarray(control_genes)] = True
        usable &= mask
    if not usable.any():
        hint = " Try size_factor_method='poscounts' for sparse data." if method == "ratio" else ""
        raise InsufficientDataError(
            f"No gene has a finite geometric mean for the size factor reference.{hint}"
        )

    sf = np.empty(n_samples)
    for j in range(n_samples):
        cnts = counts[usable, j]
        keep = cnts > 0
        if not keep.any():
            raise InsufficientDataError(
                f"Sample at position {j} has no gene with a defined count ratio"
            )
        sf[j] = np.exp(np.median(np.log(cnts[keep]) - loggeo[usable][keep]))

    if normalize:
        sf = sf / np.exp(np.mean(np.log(sf)))
    logger.info(
        "Size factors (%s) from %d of %d genes: min %.3g, max %.3g",
        method, int(usable.sum()), n_genes, sf.min(), sf.max(),
    )
    return freeze(sf)


def estimate_size_factors(
    se: SE,
    assay: str = "counts",
    method: SizeFactorMethod = "ratio",
    control_genes: Optional[Sequence[bool]] = None,
    normalize: bool = True,
    in_place: bool = False,
) -> SE:
    """
    Compute size factors and store them in column_data.

    The factors are stored in ``column_data["size_factor"]``.

    Works with any BiocPy SummarizedExperiment variant (SE, RSE, SCE).

    Args:
        se: Input SummarizedExperiment with a raw count assay.
        assay: Name of the counts assay. Default: "counts".
        method: ``"ratio"`` or ``"poscounts"``.
        control_genes: Optional mask of genes used for the reference.
        normalize: Rescale to geometric mean 1. Default: True.
        in_place: If True, modify se in place. Default: False.

    Returns:
        SummarizedExperiment with 'size_factor' in column_data.

    Example:
        >>> import deferential_nb.deseq as deseq
        >>> se = deseq.estimate_size_factors(se, method="poscounts")
        >>> se.column_data["size_factor"]
    """
    check_count_experiment(se, assay)

    sf = size_factors_from_matrix(
        get_counts(se, assay), method=method, control_genes=control_genes, normalize=normalize
    )

    output = se._define_output(in_place=in_place)
    coldata = output.get_column_data()
    new_coldata = coldata.set_column("size_factor", np.asarray(sf))
    return output.set_column_data(new_coldata, in_place=True)


def get_size_factors(se: Any) -> np.ndarray:
    """Read size factors from column_data, raising if they were not estimated."""
    coldata = se.get_column_data()
    if coldata is None or "size_factor" not in coldata.column_names:
        raise KeyError("column_data has no 'size_factor'; run estimate_size_factors() first")
    return np.asarray(coldata["size_factor"], dtype=float)


def normalized_counts(
    se: SE,
    assay: str = "counts",
    size_factors: Optional[Sequence[float]] = None,
    as_assay: bool = False,
    in_place: bool = False,
) -> Any:
    """
    Counts divided by per-sample size factors.

    Args:
        se: SummarizedExperiment with raw counts.
        assay: Counts assay name.
        size_factors: Explicit factors; defaults to ``column_data["size_factor"]``.
        as_assay: If True, return an SE with a ``"normalized_counts"`` assay
            instead of a DataFrame.
        in_place: With ``as_assay``, modify se in place.

    Returns:
        pd.DataFrame (genes x samples) or SummarizedExperiment.
    """
    check_count_experiment(se, assay)
    counts = get_counts(se, assay).astype(float)
    sf = get_size_factors(se) if size_factors is None else np.asarray(size_factors, dtype=float)
    if sf.shape != (counts.shape[1],):
        raise ValueError(f"Expected {counts.shape[1]} size factors, got {sf.shape}")
    norm = counts / sf[np.newaxis, :]

    if not as_assay:
        return pd.DataFrame(norm, index=gene_names(se), columns=sample_names(se))

    output = se._define_output(in_place=in_place)
    new_assays = dict(output.assays)
    new_assays["normalized_counts"] = norm
    return output.set_assays(new_assays, in_place=True)
