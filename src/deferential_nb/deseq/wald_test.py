"""
Wald tests of single coefficients or contrasts on an NBGLMFit.

Results are reported on the log2 scale. Genes that were not fitted, failed
to fit, or carry more influential samples than allowed keep their row with
NaN p-values and a non-``ok`` status.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union
import numpy as np
from scipy.stats import norm, t as t_dist

from .design import contrast_vector
from .nbinom_glm import LOG2, NBGLMFit
from .status import GeneStatus
from .utils import freeze

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TestResult:
    """Per-gene outcome of a Wald or likelihood-ratio test.

    Attributes:
        test: ``"wald"`` or ``"lrt"``.
        label: Description of the tested coefficient, contrast or reduced model.
        log2_fc: Estimated log2 fold change.
        lfc_se: Standard error of ``log2_fc``.
        stat: Wald statistic or likelihood-ratio statistic.
        p_value: Raw p-value (NaN for genes without a valid test).
        status: GeneStatus per gene.
        df: Degrees of freedom of the reference distribution (None for the
            normal distribution).
    """
    __test__ = False

    test: str
    label: str
    log2_fc: np.ndarray
    lfc_se: np.ndarray
    stat: np.ndarray
    p_value: np.ndarray
    status: np.ndarray
    df: Optional[float] = None

    @property
    def n_tested(self) -> int:
        return int(np.isfinite(self.p_value).sum())


def gene_test_status(fit: NBGLMFit, max_cooks_outliers: int = 0) -> np.ndarray:
    """
    Status used for testing: fit status, with COOKS_OUTLIER for fitted genes
    having more influential samples than ``max_cooks_outliers``.
    """
    status = np.array(fit.status, dtype=object)
    too_many = (fit.n_influential > max_cooks_outliers) & (status == GeneStatus.OK)
    status[too_many] = GeneStatus.COOKS_OUTLIER
    return status


def _log_status(status: np.ndarray, test: str) -> None:
    n_cooks = int(np.sum(status == GeneStatus.COOKS_OUTLIER))
    n_failed = int(np.sum(status == GeneStatus.FIT_FAILED))
    n_unfit = int(np.sum(status == GeneStatus.UNFITTABLE))
    logger.info(
        "%s test: %d genes tested, %d unfittable, %d failed fits, %d Cook's outliers",
        test, int(np.sum(status == GeneStatus.OK)), n_unfit, n_failed, n_cooks,
    )


def contrast_estimates(fit: NBGLMFit, vec: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Natural-log scale estimate c'beta and its standard error sqrt(c' Sigma c)."""
    estimate = fit.coef @ vec
    var = np.einsum("i,gij,j->g", vec, fit.cov, vec)
    return estimate, np.sqrt(np.clip(var, 0.0, None))


def wald_test(
    fit: NBGLMFit,
    coef: Optional[Union[str, int]] = None,
    contrast: Optional[Union[Sequence[float], Tuple[str, str, str]]] = None,
    use_t: bool = False,
    lfc_threshold: float = 0.0,
    max_cooks_outliers: int = 0,
) -> TestResult:
    """
    Wald test of a coefficient or contrast for every gene.

    Args:
        fit: NBGLMFit from ``fit_nbinom_glm``.
        coef: Coefficient name or 0-based index. Defaults to the last
            design column.
        contrast: Numeric contrast vector or ``(variable, numerator,
            denominator)`` tuple.
        use_t: Use a Student-t reference with ``n_samples - n_coef`` degrees
            of freedom instead of the standard normal.
        lfc_threshold: Non-negative log2 fold-change threshold. When
            positive, tests ``|LFC| > lfc_threshold``.
        max_cooks_outliers: Genes with more influential samples get NaN
            p-values and status ``cooks_outlier``.

    Returns:
        TestResult.

    Example:
        >>> res = wald_test(fit, contrast=("condition", "treated", "control"))
        >>> res.p_value[:5]
    """
    if lfc_threshold < 0:
        raise ValueError("lfc_threshold must be non-negative")
    vec, label = contrast_vector(fit.design, coef=coef, contrast=contrast)
    estimate, se = contrast_estimates(fit, vec)
    log2_fc = estimate / LOG2
    lfc_se = se / LOG2

    n_samples, n_coef = fit.design.shape
    df = float(n_samples - n_coef) if use_t else None
    dist = t_dist(df) if use_t else norm()

    with np.errstate(divide="ignore", invalid="ignore"):
        if lfc_threshold > 0:
            shifted = (np.abs(log2_fc) - lfc_threshold) / lfc_se
            stat = np.sign(log2_fc) * np.maximum(shifted, 0.0)
            p_value = np.minimum(1.0, 2.0 * dist.sf(shifted))
        else:
            stat = log2_fc / lfc_se
            p_value = 2.0 * dist.sf(np.abs(stat))

    status = gene_test_status(fit, max_cooks_outliers)
    untested = status != GeneStatus.OK
    p_value = np.where(untested, np.nan, p_value)
    _log_status(status, "Wald")
    return TestResult(
        test="wald",
        label=label,
        log2_fc=freeze(log2_fc),
        lfc_se=freeze(lfc_se),
        stat=freeze(stat),
        p_value=freeze(p_value),
        status=freeze(status),
        df=df,
    )
