"""
Benjamini-Hochberg adjustment and independent filtering on mean expression.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict
import numpy as np
import pandas as pd

from .utils import freeze

logger = logging.getLogger(__name__)


def p_adjust_bh(p_values: np.ndarray) -> np.ndarray:
    """
    Benjamini-Hochberg adjusted p-values.

    NaN entries are ignored and stay NaN. With no finite p-value the result
    is all NaN (an empty input gives an empty array).

    Args:
        p_values: Raw p-values.

    Returns:
        np.ndarray: ``min_{j >= i} (n / j) p_(j)`` capped at 1, in input order.
    """
    p = np.asarray(p_values, dtype=float)
    out = np.full(p.shape, np.nan)
    ok = np.isfinite(p)
    n = int(ok.sum())
    if n == 0:
        return out
    pv = p[ok]
    order = np.argsort(pv, kind="mergesort")[::-1]
    ranks = np.arange(n, 0, -1)
    adj = np.minimum.accumulate(pv[order] * n / ranks)
    res = np.empty(n)
    res[order] = np.minimum(adj, 1.0)
    out[ok] = res
    return out


@dataclass(frozen=True)
class FilterResult:
    """Outcome of independent filtering.

    Attributes:
        adj_p_value: BH-adjusted p-values of genes passing the filter, NaN
            for filtered or untested genes.
        filtered: Tested genes removed by the filter.
        threshold: Chosen base-mean cutoff (genes below it are filtered).
        quantile: Quantile of base mean that gave ``threshold``.
        rejections: Table of ``theta``, ``cutoff`` and ``n_rejections`` for
            every candidate threshold.
        alpha: FDR level used to count rejections.
    """
    adj_p_value: np.ndarray
    filtered: np.ndarray
    threshold: float
    quantile: float
    rejections: pd.DataFrame
    alpha: float

    @property
    def n_filtered(self) -> int:
        return int(self.filtered.sum())

    def summary(self) -> Dict[str, Any]:
        return {
            "threshold": self.threshold,
            "quantile": self.quantile,
            "n_filtered": self.n_filtered,
            "alpha": self.alpha,
            "rejections": self.rejections.copy(),
        }


def independent_filtering(
    p_values: np.ndarray,
    base_mean: np.ndarray,
    alpha: float = 0.1,
    n_theta: int = 50,
    max_quantile: float = 0.95,
    enabled: bool = True,
) -> FilterResult:
    """
    Choose the base-mean threshold that maximises BH rejections at ``alpha``.

    Candidate thresholds are the base-mean quantiles at ``n_theta`` evenly
    spaced probabilities from the fraction of genes with zero base mean up to
    ``max_quantile``. For each, genes with ``base_mean`` below the cutoff are
    dropped and the remaining non-NaN p-values BH-adjusted. The first
    threshold reaching the maximum number of rejections wins.

    Args:
        p_values: Raw p-values (NaN for untested genes).
        base_mean: Mean of normalised counts per gene.
        alpha: FDR level.
        n_theta: Number of candidate thresholds.
        max_quantile: Largest quantile considered.
        enabled: With ``False`` only BH is applied.

    Returns:
        FilterResult.
    """
    p = np.asarray(p_values, dtype=float)
    base_mean = np.asarray(base_mean, dtype=float)
    if p.shape != base_mean.shape:
        raise ValueError("p_values and base_mean must have the same shape")
    tested = np.isfinite(p)

    if not enabled or p.size == 0 or not tested.any():
        rejections = pd.DataFrame({"theta": [], "cutoff": [], "n_rejections": []})
        return FilterResult(
            adj_p_value=freeze(p_adjust_bh(p)),
            filtered=freeze(np.zeros(p.shape, dtype=bool)),
            threshold=0.0 if p.size else np.nan,
            quantile=0.0 if p.size else np.nan,
            rejections=rejections,
            alpha=alpha,
        )

    lower = float(np.mean(base_mean == 0))
    upper = max_quantile if lower < max_quantile else 1.0
    theta = np.linspace(lower, upper, n_theta)
    cutoffs = np.quantile(base_mean, theta)

    n_rej = np.empty(n_theta, dtype=int)
    for i, cutoff in enumerate(cutoffs):
        keep = base_mean >= cutoff
        adj = p_adjust_bh(np.where(keep, p, np.nan))
        n_rej[i] = int(np.sum(adj < alpha))
    best = int(np.argmax(n_rej))

    keep = base_mean >= cutoffs[best]
    adj_p = p_adjust_bh(np.where(keep, p, np.nan))
    filtered = tested & ~keep
    logger.info(
        "Independent filtering: base mean cutoff %.4g (quantile %.3f) removed %d of %d tested genes; "
        "%d rejections at alpha=%g",
        cutoffs[best], theta[best], int(filtered.sum()), int(tested.sum()), n_rej[best], alpha,
    )
    return FilterResult(
        adj_p_value=freeze(adj_p),
        filtered=freeze(filtered),
        threshold=float(cutoffs[best]),
        quantile=float(theta[best]),
        rejections=pd.DataFrame({"theta": theta, "cutoff": cutoffs, "n_rejections": n_rej}),
        alpha=alpha,
    )
