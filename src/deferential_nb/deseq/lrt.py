"""Likelihood-ratio test of a full against a reduced design."""

from __future__ import annotations
from typing import Any, Optional, Union
import numpy as np
import pandas as pd
from scipy.stats import chi2

from ..errors import DesignError
from .config import DESeqConfig
from .design import contrast_vector
from .nbinom_glm import LOG2, NBGLMFit, fit_nbinom_glm
from .status import GeneStatus
from .utils import freeze
from .wald_test import TestResult, _log_status, contrast_estimates, gene_test_status


def likelihood_ratio_test(
    counts: np.ndarray,
    fit: NBGLMFit,
    reduced: pd.DataFrame,
    coef: Optional[Union[str, int]] = None,
    config: Optional[DESeqConfig] = None,
    **kwargs: Any,
) -> TestResult:
    """
    Compare the full fit against a refit with the reduced design.

    The statistic is deviance(reduced) - deviance(full), referred to a
    chi-squared distribution with ``n_coef(full) - n_coef(reduced)`` degrees
    of freedom. Both models use the same size factors and dispersions. The
    reported log2 fold change and its SE come from the full model (``coef``,
    default last column).

    Args:
        counts: Raw counts, genes x samples, as used for ``fit``.
        fit: Full-model NBGLMFit.
        reduced: Reduced design matrix with the same samples.
        coef: Coefficient of the full model whose LFC is reported.
        config: Pipeline configuration; keyword arguments override fields.

    Returns:
        TestResult with ``test="lrt"``.

    Raises:
        DesignError: If the reduced design has as many or more columns than
            the full design, or a different number of samples.
    """
    config = config or DESeqConfig()
    if kwargs:
        config = config.update(**kwargs)
    if len(reduced) != len(fit.design):
        raise DesignError(
            f"Reduced design has {len(reduced)} samples, full design has {len(fit.design)}"
        )
    if reduced.shape[1] < 1:
        raise DesignError("Reduced design needs at least one column, e.g. '~ 1'")
    df = fit.design.shape[1] - reduced.shape[1]
    if df < 1:
        raise DesignError("Reduced design must have fewer columns than the full design")

    reduced_fit = fit_nbinom_glm(
        counts, fit.size_factors, reduced, fit.dispersions,
        cooks_dispersions=np.zeros(len(fit.dispersions)), config=config.update(cooks_cutoff=False),
    )
    stat = np.clip(reduced_fit.deviance - fit.deviance, 0.0, None)
    p_value = chi2.sf(stat, df)

    vec, _ = contrast_vector(fit.design, coef=coef)
    estimate, se = contrast_estimates(fit, vec)
    status = gene_test_status(fit, config.max_cooks_outliers)
    status[(reduced_fit.status == GeneStatus.FIT_FAILED) & (status == GeneStatus.OK)] = GeneStatus.FIT_FAILED
    p_value = np.where(status != GeneStatus.OK, np.nan, p_value)
    _log_status(status, "LRT")

    label = f"LRT: {' + '.join(fit.coef_names)} vs {' + '.join(reduced.columns) or '1'}"
    return TestResult(
        test="lrt",
        label=label,
        log2_fc=freeze(estimate / LOG2),
        lfc_se=freeze(se / LOG2),
        stat=freeze(stat),
        p_value=freeze(p_value),
        status=freeze(status),
        df=float(df),
    )
